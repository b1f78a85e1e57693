"""PTY engine — spawns shells behind pseudo-terminals and drains their output.

Two spawners share the same read loop:

* ``PtySpawner`` runs a real login shell on a pty slave.
* ``PipeSpawner`` wires an ``os.pipe()`` so every byte written to the session
  comes straight back as output. It needs no terminal, which makes the whole
  attach/replay/stream protocol testable in-process.

Output is read through an asyncio read-pipe transport rather than a thread
per session, so a session's read task never ties up an executor worker.
"""

from __future__ import annotations

import asyncio
import errno
import fcntl
import logging
import os
import pty
import struct
import subprocess
import termios
from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence

from webterm.pty.session import Session

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 4096
WRITE_TIMEOUT = 10.0

OnExit = Callable[[str], None]


class Spawner(ABC):
    """Starts the process behind a session and its read task."""

    def __init__(self, chunk_size: int = READ_CHUNK_SIZE) -> None:
        self.chunk_size = chunk_size
        self._tasks: set[asyncio.Task] = set()

    @abstractmethod
    async def spawn(self, session: Session, on_exit: OnExit) -> None:
        """Start the session's process and its read task.

        Raises on failure; the session is left unbound in that case.
        """

    async def _start_reader(
        self,
        session: Session,
        read_fd: int,
        on_exit: OnExit,
        master_fd: int,
        process: subprocess.Popen | None = None,
    ) -> None:
        loop = asyncio.get_running_loop()
        reader = asyncio.StreamReader(limit=max(self.chunk_size, 2**16))
        protocol = asyncio.StreamReaderProtocol(reader)
        pipe = os.fdopen(read_fd, "rb", buffering=0)
        try:
            transport, _ = await loop.connect_read_pipe(lambda: protocol, pipe)
        except BaseException:
            pipe.close()
            raise

        try:
            session.bind(master_fd, transport, process)
        except BaseException:
            transport.close()
            raise

        task = asyncio.create_task(
            read_loop(session, reader, on_exit, self.chunk_size),
            name=f"pty-read-{session.id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)


class PtySpawner(Spawner):
    """Runs an interactive login shell on a fresh pseudo-terminal."""

    def __init__(
        self,
        shell: Sequence[str] = ("bash", "--login"),
        term: str = "xterm-256color",
        cwd: str | None = None,
        chunk_size: int = READ_CHUNK_SIZE,
    ) -> None:
        super().__init__(chunk_size)
        self.shell = list(shell)
        self.term = term
        self.cwd = cwd

    async def spawn(self, session: Session, on_exit: OnExit) -> None:
        master_fd, slave_fd = pty.openpty()

        env = dict(os.environ)
        env["TERM"] = self.term

        try:
            # Popen instead of os.fork: forking from inside a running event
            # loop is unsafe on some platforms.
            proc = subprocess.Popen(
                self.shell,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                start_new_session=True,  # New session and process group
                preexec_fn=_acquire_controlling_tty,
                env=env,
                cwd=self.cwd,
            )
        except OSError:
            os.close(master_fd)
            raise
        finally:
            # Parent always closes slave fd
            os.close(slave_fd)

        try:
            await self._start_reader(
                session, os.dup(master_fd), on_exit, master_fd, proc
            )
        except BaseException:
            proc.kill()
            os.close(master_fd)
            raise

        logger.info(
            "Session %s (%s) started: pid=%d cmd=%s",
            session.id,
            session.name,
            proc.pid,
            " ".join(self.shell),
        )


def _acquire_controlling_tty() -> None:
    # Runs in the child after setsid(); stdin is the pty slave.
    fcntl.ioctl(0, termios.TIOCSCTTY, 0)


class PipeSpawner(Spawner):
    """In-process echo double: input written to the session is read back."""

    async def spawn(self, session: Session, on_exit: OnExit) -> None:
        read_fd, write_fd = os.pipe()
        os.set_blocking(write_fd, False)
        try:
            await self._start_reader(session, read_fd, on_exit, write_fd)
        except BaseException:
            os.close(write_fd)
            raise
        logger.debug("Session %s (%s) started on a pipe", session.id, session.name)


async def read_loop(
    session: Session,
    reader: asyncio.StreamReader,
    on_exit: OnExit,
    chunk_size: int = READ_CHUNK_SIZE,
) -> None:
    """Drain process output into the session until end-of-stream or error."""
    try:
        while True:
            data = await reader.read(chunk_size)
            if not data:
                break
            session.feed(data)
    except OSError as e:
        # EIO is how a pty master reports that the slave side hung up
        if e.errno == errno.EIO:
            logger.debug("Session %s pty closed: %s", session.id, e)
        else:
            logger.warning("Session %s PTY read error: %s", session.id, e)
    finally:
        session.mark_exited()
        logger.info("Session %s ended (%s)", session.id, session.status.value)
        logger.debug("Session %s last output: %r", session.id, session.scrollback.tail(200))
        try:
            on_exit(session.id)
        except Exception:
            logger.exception("Error in on_exit callback for session %s", session.id)
        session.close_pty()
        await _reap(session)


async def _reap(session: Session) -> None:
    proc = session.process
    if proc is None:
        return
    try:
        code = await asyncio.to_thread(proc.wait, 5)
        logger.debug("Session %s process exited (code=%s)", session.id, code)
    except subprocess.TimeoutExpired:
        logger.warning("Session %s process %d did not exit", session.id, proc.pid)


async def write(session: Session, data: bytes) -> int:
    """Write all of ``data`` to the session's pty master.

    Raises OSError if the pty is closed or the write fails, and TimeoutError
    if the terminal stops accepting input for ``WRITE_TIMEOUT`` seconds.
    """
    view = memoryview(data)
    written = 0
    while written < len(view):
        if session.pty_closed:
            raise OSError(errno.EBADF, "pty is closed")
        fd = session.master_fd
        try:
            written += os.write(fd, view[written:])
        except BlockingIOError:
            await _wait_writable(fd)
    return written


async def _wait_writable(fd: int) -> None:
    loop = asyncio.get_running_loop()
    ready = loop.create_future()

    def _on_writable() -> None:
        if not ready.done():
            ready.set_result(None)

    loop.add_writer(fd, _on_writable)
    try:
        await asyncio.wait_for(ready, WRITE_TIMEOUT)
    finally:
        loop.remove_writer(fd)


def resize(session: Session, cols: int, rows: int) -> bool:
    """Set the pty window size. Non-positive dimensions are ignored.

    Returns True if the size was applied. Failures are logged, never raised.
    """
    if cols <= 0 or rows <= 0:
        return False
    try:
        winsize = struct.pack("HHHH", rows, cols, 0, 0)
        fcntl.ioctl(session.master_fd, termios.TIOCSWINSZ, winsize)
    except (OSError, struct.error) as e:
        logger.warning("Session %s resize to %dx%d failed: %s", session.id, cols, rows, e)
        return False
    return True
