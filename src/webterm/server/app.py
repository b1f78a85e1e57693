"""HTTP and WebSocket surface for the session manager."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import APIRouter, FastAPI, HTTPException, Request, Response, WebSocket

from webterm import __version__
from webterm.config import WebTermConfig
from webterm.pty.engine import PtySpawner
from webterm.pty.manager import NameTakenError, SessionManager, SessionNotFoundError
from webterm.server.messages import CreateSessionRequest, SessionInfo
from webterm.server.stream import StreamHandler, WebSocketTransport

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")


def _manager(request: Request | WebSocket) -> SessionManager:
    return request.app.state.manager


@router.get("/sessions", response_model=list[SessionInfo])
async def list_sessions(request: Request) -> list[dict]:
    return [s.to_dict() for s in _manager(request).list()]


@router.post("/sessions", status_code=201, response_model=SessionInfo)
async def create_session(body: CreateSessionRequest, request: Request) -> dict:
    try:
        session = await _manager(request).create(body.name)
    except NameTakenError:
        raise HTTPException(status_code=409, detail="session name already in use")
    except OSError as e:
        logger.error("Failed to spawn session %r: %s", body.name, e)
        raise HTTPException(status_code=500, detail="failed to create session")
    return session.to_dict()


@router.get("/sessions/{session_id}", response_model=SessionInfo)
async def get_session(session_id: str, request: Request) -> dict:
    session = _manager(request).get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="session not found")
    return session.to_dict()


@router.delete("/sessions/{session_id}", status_code=204)
async def kill_session(session_id: str, request: Request) -> Response:
    try:
        _manager(request).kill(session_id)
    except SessionNotFoundError:
        raise HTTPException(status_code=404, detail="session not found")
    return Response(status_code=204)


@router.websocket("/sessions/{session_id}/ws")
async def session_stream(websocket: WebSocket, session_id: str) -> None:
    session = _manager(websocket).get(session_id)
    if session is None:
        # Rejected during the handshake, so the client sees a plain HTTP 404
        await websocket.send_denial_response(Response(status_code=404))
        return

    await websocket.accept()
    config: WebTermConfig = websocket.app.state.config
    handler = StreamHandler(
        session,
        WebSocketTransport(websocket),
        ping_interval=config.stream.ping_interval,
        queue_size=config.session.output_queue_size,
    )
    await handler.run()


def create_app(
    config: WebTermConfig | None = None,
    manager: SessionManager | None = None,
) -> FastAPI:
    """Build the application.

    Args:
        config: Settings; defaults are used when omitted.
        manager: Session manager to serve. Built from ``config`` (real pty
            shells) when omitted.
    """
    config = config or WebTermConfig()
    if manager is None:
        manager = SessionManager(
            spawner=PtySpawner(
                shell=config.session.shell,
                term=config.session.term,
                chunk_size=config.session.read_chunk_size,
            ),
            scrollback_bytes=config.session.scrollback_bytes,
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        await app.state.manager.cleanup()

    app = FastAPI(title="webterm", version=__version__, lifespan=lifespan)
    app.state.config = config
    app.state.manager = manager
    app.include_router(router)
    return app
