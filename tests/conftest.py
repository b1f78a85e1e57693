from __future__ import annotations

from collections.abc import AsyncIterator

import pytest

from webterm.pty.engine import PipeSpawner
from webterm.pty.manager import SessionManager


@pytest.fixture
async def manager() -> AsyncIterator[SessionManager]:
    """A session manager whose sessions echo their input (no real pty)."""
    mgr = SessionManager(spawner=PipeSpawner())
    yield mgr
    await mgr.cleanup()
