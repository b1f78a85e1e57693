"""Terminal session — a named shell with scrollback and a single live owner."""

from __future__ import annotations

import asyncio
import enum
import logging
import os
import signal
import subprocess
import threading
import uuid
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from webterm.pty.buffer import ScrollbackBuffer

logger = logging.getLogger(__name__)

DEFAULT_OUTPUT_QUEUE_SIZE = 256


def _now() -> datetime:
    return datetime.now(timezone.utc)


class SessionStatus(enum.Enum):
    """Lifecycle states for a terminal session."""

    RUNNING = "running"
    KILLED = "killed"  # Killed by us
    EXITED = "exited"  # Process exited on its own


class Signal:
    """A set-once notification that any number of tasks can wait on."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._lock = threading.Lock()

    def fire(self) -> bool:
        """Set the signal. Returns True only for the call that set it."""
        with self._lock:
            if self._event.is_set():
                return False
            self._event.set()
            return True

    def is_set(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


class OutputChannel:
    """Bounded FIFO of live output chunks for one attached connection.

    ``offer()`` never blocks: a full or closed channel drops the chunk.
    ``close()`` always succeeds, evicting a pending chunk if needed to make
    room for the end marker, and iteration stops once it is reached.
    """

    def __init__(self, maxsize: int = DEFAULT_OUTPUT_QUEUE_SIZE) -> None:
        self._queue: asyncio.Queue[bytes | None] = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    def offer(self, chunk: bytes) -> bool:
        if self._closed:
            return False
        try:
            self._queue.put_nowait(chunk)
        except asyncio.QueueFull:
            return False
        return True

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        while True:
            try:
                self._queue.put_nowait(None)
                return
            except asyncio.QueueFull:
                self._queue.get_nowait()

    async def __aiter__(self) -> AsyncIterator[bytes]:
        while True:
            chunk = await self._queue.get()
            if chunk is None:
                return
            yield chunk


@dataclass(eq=False)
class Session:
    """A live shell bound to a pseudo-terminal.

    Owns:
    - the child process and pty master handle (set by a spawner)
    - a bounded scrollback buffer replayed to every new attachment
    - the single-owner attachment state (output channel + displacement signal)
    - a termination signal fired exactly once when the process output ends

    Attachment fields are guarded by a per-session lock, so activity on one
    session never contends with another.
    """

    name: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=_now)
    last_active: datetime = field(default_factory=_now)
    scrollback: ScrollbackBuffer = field(default_factory=ScrollbackBuffer)

    # Internal state
    process: subprocess.Popen | None = field(default=None, init=False, repr=False)
    master_fd: int = field(default=-1, init=False, repr=False)
    terminated: Signal = field(default_factory=Signal, init=False, repr=False)
    _read_transport: asyncio.ReadTransport | None = field(
        default=None, init=False, repr=False
    )
    _pgid: int = field(default=0, init=False, repr=False)
    _status: SessionStatus = field(default=SessionStatus.RUNNING, init=False)
    _owner: OutputChannel | None = field(default=None, init=False, repr=False)
    _displaced: Signal | None = field(default=None, init=False, repr=False)
    _connected: bool = field(default=False, init=False)
    _attach_lock: threading.Lock = field(
        default_factory=threading.Lock, init=False, repr=False
    )

    def bind(
        self,
        master_fd: int,
        read_transport: asyncio.ReadTransport,
        process: subprocess.Popen | None = None,
    ) -> None:
        """Take ownership of the handles created by a spawner."""
        self.master_fd = master_fd
        self._read_transport = read_transport
        self.process = process
        if process is not None:
            self._pgid = os.getpgid(process.pid)

    # -- attachment ---------------------------------------------------------

    def set_client(self, channel: OutputChannel) -> Signal:
        """Install ``channel`` as the sole owner, displacing any previous one.

        Returns the displacement signal that fires if this channel is itself
        displaced later.
        """
        displaced = Signal()
        with self._attach_lock:
            if self._displaced is not None:
                self._displaced.fire()
                logger.info("Session %s: previous client displaced", self.id)
            self._owner = channel
            self._displaced = displaced
            self._connected = True
        return displaced

    def clear_client(self, channel: OutputChannel) -> None:
        """Detach ``channel``. State is only cleared if it is still the owner."""
        with self._attach_lock:
            if self._owner is channel:
                self._owner = None
                self._displaced = None
                self._connected = False
        channel.close()

    def feed(self, data: bytes) -> None:
        """Record process output and forward it to the owner without blocking."""
        self.scrollback.write(data)
        self.last_active = _now()
        with self._attach_lock:
            if self._owner is not None:
                self._owner.offer(data)

    @property
    def connected(self) -> bool:
        with self._attach_lock:
            return self._connected

    def scrollback_snapshot(self) -> bytes:
        return self.scrollback.snapshot()

    # -- lifecycle ----------------------------------------------------------

    def mark_exited(self) -> bool:
        """Record the end of process output. Returns True the first time."""
        if self._status == SessionStatus.RUNNING:
            self._status = SessionStatus.EXITED
        return self.terminated.fire()

    def kill(self) -> None:
        """Kill the process group and close the pty master."""
        if self._status == SessionStatus.RUNNING:
            self._status = SessionStatus.KILLED
        if self._pgid:
            try:
                os.killpg(self._pgid, signal.SIGKILL)
                logger.info("Killed session %s (pgid=%d)", self.id, self._pgid)
            except ProcessLookupError:
                logger.debug("Process group already gone: %d", self._pgid)
            except OSError as e:
                logger.warning("Error killing session %s: %s", self.id, e)
        self.close_pty()

    def close_pty(self) -> None:
        """Close the pty master and stop the read transport. Idempotent."""
        if self._read_transport is not None:
            self._read_transport.close()
            self._read_transport = None
        if self.master_fd >= 0:
            try:
                os.close(self.master_fd)
            except OSError:
                pass
            self.master_fd = -1

    @property
    def pty_closed(self) -> bool:
        return self.master_fd < 0

    @property
    def alive(self) -> bool:
        return not self.terminated.is_set()

    @property
    def status(self) -> SessionStatus:
        return self._status

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "created_at": self.created_at,
            "last_active": self.last_active,
            "connected": self.connected,
        }
