"""Session Manager — owns the registry of live terminal sessions."""

from __future__ import annotations

import logging
import threading

from webterm.pty.buffer import DEFAULT_SCROLLBACK_BYTES, ScrollbackBuffer
from webterm.pty.engine import PtySpawner, Spawner
from webterm.pty.session import Session

logger = logging.getLogger(__name__)


class SessionError(Exception):
    """Base class for session registry errors."""


class NameTakenError(SessionError):
    def __init__(self, name: str) -> None:
        super().__init__(f"session name already in use: {name!r}")
        self.name = name


class SessionNotFoundError(SessionError):
    def __init__(self, session_id: str) -> None:
        super().__init__(f"session not found: {session_id}")
        self.session_id = session_id


class SessionManager:
    """Manages the lifecycle of named shell sessions.

    The manager ensures:
    - Names are unique among live sessions (and freed when a session ends)
    - Sessions can be looked up by ID
    - Sessions whose process exits are removed automatically
    - All sessions are killed on cleanup (no orphan processes)

    The registry lock only guards the id -> session mapping; a session's
    scrollback and attachment state have their own locks.
    """

    def __init__(
        self,
        spawner: Spawner | None = None,
        scrollback_bytes: int = DEFAULT_SCROLLBACK_BYTES,
    ) -> None:
        self._sessions: dict[str, Session] = {}
        self._spawning: set[str] = set()
        self._lock = threading.Lock()
        self._spawner = spawner or PtySpawner()
        self._scrollback_bytes = scrollback_bytes

    async def create(self, name: str) -> Session:
        """Spawn a new session named ``name``.

        Raises:
            NameTakenError: a live session (or one being spawned) has this name.
            OSError: the process could not be started; nothing is registered.
        """
        with self._lock:
            if name in self._spawning or any(
                s.name == name for s in self._sessions.values()
            ):
                raise NameTakenError(name)
            self._spawning.add(name)

        try:
            session = Session(
                name=name, scrollback=ScrollbackBuffer(self._scrollback_bytes)
            )
            await self._spawner.spawn(session, self._remove)
            with self._lock:
                # The process may already have ended while spawning.
                if session.alive:
                    self._sessions[session.id] = session
        finally:
            with self._lock:
                self._spawning.discard(name)

        logger.info("Created session %s (%s)", session.id, name)
        return session

    def list(self) -> list[Session]:
        """List all live sessions."""
        with self._lock:
            return list(self._sessions.values())

    def get(self, session_id: str) -> Session | None:
        """Get a session by ID."""
        with self._lock:
            return self._sessions.get(session_id)

    def kill(self, session_id: str) -> None:
        """Kill a session and remove it from tracking."""
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None:
            raise SessionNotFoundError(session_id)
        session.kill()

    def _remove(self, session_id: str) -> None:
        """Exit callback from the read task. Safe if already removed."""
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is not None:
            logger.info("Removed exited session %s (%s)", session_id, session.name)

    async def cleanup(self) -> None:
        """Kill all sessions. Called on shutdown."""
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            session.kill()
        logger.info("All sessions cleaned up")

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
