"""Terminal sessions — named shells on pseudo-terminals.

Each session runs one shell in its own process group, keeps a bounded
scrollback of everything it printed, and streams live output to at most
one attached client at a time.
"""

from webterm.pty.buffer import ScrollbackBuffer
from webterm.pty.engine import PipeSpawner, PtySpawner, Spawner
from webterm.pty.manager import (
    NameTakenError,
    SessionError,
    SessionManager,
    SessionNotFoundError,
)
from webterm.pty.session import OutputChannel, Session, SessionStatus, Signal

__all__ = [
    "NameTakenError",
    "OutputChannel",
    "PipeSpawner",
    "PtySpawner",
    "ScrollbackBuffer",
    "Session",
    "SessionError",
    "SessionManager",
    "SessionNotFoundError",
    "SessionStatus",
    "Signal",
    "Spawner",
]
