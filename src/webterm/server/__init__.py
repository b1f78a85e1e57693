"""Browser-facing server: HTTP session API and the terminal stream."""

from webterm.server.app import create_app
from webterm.server.stream import StreamHandler, Transport, TransportClosed

__all__ = [
    "StreamHandler",
    "Transport",
    "TransportClosed",
    "create_app",
]
