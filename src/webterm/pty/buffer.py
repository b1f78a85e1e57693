"""Scrollback buffer for terminal sessions."""

from __future__ import annotations

import threading

DEFAULT_SCROLLBACK_BYTES = 1 << 20  # 1 MiB


class ScrollbackBuffer:
    """Thread-safe bounded byte log of a session's output.

    Holds at most ``max_bytes`` bytes. Writes append at the end; once the
    cap is exceeded the oldest bytes are evicted, so the buffer always
    contains the most recently written ``max_bytes`` bytes in order.
    """

    def __init__(self, max_bytes: int = DEFAULT_SCROLLBACK_BYTES) -> None:
        if max_bytes <= 0:
            raise ValueError(f"max_bytes must be positive, got {max_bytes}")
        self._data = bytearray()
        self._max_bytes = max_bytes
        self._lock = threading.Lock()

    def write(self, data: bytes) -> None:
        """Append bytes, evicting the oldest bytes past the cap."""
        if not data:
            return
        with self._lock:
            if len(data) >= self._max_bytes:
                self._data[:] = data[-self._max_bytes :]
            else:
                self._data += data
                excess = len(self._data) - self._max_bytes
                if excess > 0:
                    del self._data[:excess]

    def snapshot(self) -> bytes:
        """Return an independent copy of the buffered bytes."""
        with self._lock:
            return bytes(self._data)

    def tail(self, n: int = 256) -> bytes:
        """Return a copy of the last ``n`` bytes."""
        if n <= 0:
            return b""
        with self._lock:
            return bytes(self._data[-n:])

    @property
    def max_bytes(self) -> int:
        return self._max_bytes

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)
