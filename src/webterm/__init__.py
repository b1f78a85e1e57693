"""webterm — persistent named shells in the browser."""

__version__ = "0.1.0"
