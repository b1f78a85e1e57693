"""Streaming protocol — bridges one client connection and one session.

Per connection:

* the scrollback snapshot is replayed before anything else,
* a pump forwards live output from the session's owner channel,
* a watcher closes the connection when the session ends (with a
  ``closed`` notice) or when a newer connection displaces this one
  (without a notice, so the client can tell the two apart),
* a keepalive pings the peer on a fixed interval,
* the receive loop forwards input and resize requests until the peer goes
  away, then teardown detaches from the session.

The session keeps running whatever happens to the connection.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Protocol

from pydantic import ValidationError
from starlette.websockets import WebSocket, WebSocketDisconnect, WebSocketState

from webterm.pty import engine
from webterm.pty.session import (
    DEFAULT_OUTPUT_QUEUE_SIZE,
    OutputChannel,
    Session,
    Signal,
)
from webterm.server.messages import (
    ClientMessage,
    MessageType,
    closed_message,
    output_message,
    ping_message,
)

logger = logging.getLogger(__name__)

PING_INTERVAL = 30.0


class TransportClosed(Exception):
    """The peer disconnected or the transport was closed locally."""


class Transport(Protocol):
    """Message-oriented, bidirectional connection to one client."""

    async def send_json(self, message: dict[str, Any]) -> None: ...

    async def receive_text(self) -> str:
        """Return the next frame. Raises TransportClosed when the peer is gone."""
        ...

    async def ping(self) -> None: ...

    async def close(self) -> None: ...


class WebSocketTransport:
    """Transport over an accepted Starlette/FastAPI WebSocket.

    ASGI gives applications no access to protocol ping frames, so ``ping()``
    sends a ``{"type": "ping"}`` heartbeat message that clients ignore. Dead
    peers are detected by the server's protocol-level pings.
    """

    def __init__(self, websocket: WebSocket) -> None:
        self._ws = websocket

    async def send_json(self, message: dict[str, Any]) -> None:
        await self._ws.send_json(message)

    async def receive_text(self) -> str:
        try:
            message = await self._ws.receive()
        except (WebSocketDisconnect, RuntimeError) as e:
            raise TransportClosed(str(e)) from e
        if message["type"] == "websocket.disconnect":
            raise TransportClosed(f"peer disconnected (code={message.get('code')})")
        if message.get("text") is not None:
            return message["text"]
        return (message.get("bytes") or b"").decode("utf-8", errors="replace")

    async def ping(self) -> None:
        await self.send_json(ping_message())

    async def close(self) -> None:
        if self._ws.application_state != WebSocketState.CONNECTED:
            return
        try:
            await self._ws.close()
        except RuntimeError:
            # Already closed by the other side
            pass


class StreamHandler:
    """Runs the attach/replay/stream protocol for one connection."""

    def __init__(
        self,
        session: Session,
        transport: Transport,
        ping_interval: float = PING_INTERVAL,
        queue_size: int = DEFAULT_OUTPUT_QUEUE_SIZE,
    ) -> None:
        self.session = session
        self.transport = transport
        self.ping_interval = ping_interval
        self.queue_size = queue_size
        # Every send on the transport goes through this lock
        self._write_lock = asyncio.Lock()
        self._closing = Signal()

    async def _send(self, message: dict[str, Any]) -> None:
        async with self._write_lock:
            await self.transport.send_json(message)

    async def run(self) -> None:
        """Serve the connection until it ends. Never raises on peer failures."""
        session = self.session
        channel = OutputChannel(self.queue_size)
        displaced = session.set_client(channel)
        tasks: list[asyncio.Task] = []
        logger.info("Client attached to session %s", session.id)

        try:
            snapshot = session.scrollback_snapshot()
            if snapshot:
                try:
                    await self._send(output_message(snapshot))
                except Exception as e:
                    logger.warning("Scrollback replay to %s failed: %s", session.id, e)
                    return

            tasks = [
                asyncio.create_task(self._pump(channel)),
                asyncio.create_task(self._watch(displaced)),
                asyncio.create_task(self._keepalive()),
            ]
            await self._receive_loop()
        finally:
            self._closing.fire()
            session.clear_client(channel)
            if tasks:
                # Tasks end on _closing
                await asyncio.wait(tasks)
            logger.info("Client detached from session %s", session.id)

    async def _pump(self, channel: OutputChannel) -> None:
        async for chunk in channel:
            try:
                await self._send(output_message(chunk))
            except Exception as e:
                logger.debug("Output pump for %s stopped: %s", self.session.id, e)
                return

    async def _watch(self, displaced: Signal) -> None:
        waiters = {
            asyncio.create_task(self.session.terminated.wait()): "terminated",
            asyncio.create_task(displaced.wait()): "displaced",
            asyncio.create_task(self._closing.wait()): "closing",
        }
        try:
            done, _ = await asyncio.wait(
                waiters, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for waiter in waiters:
                waiter.cancel()

        reasons = {waiters[t] for t in done}
        if "closing" in reasons:
            return
        if "terminated" in reasons:
            try:
                await self._send(closed_message())
            except Exception as e:
                logger.debug("Could not send closed notice to %s: %s", self.session.id, e)
        else:
            logger.info("Connection to session %s displaced", self.session.id)
        await self._close_transport()

    async def _keepalive(self) -> None:
        while True:
            try:
                await asyncio.wait_for(self._closing.wait(), self.ping_interval)
                return
            except asyncio.TimeoutError:
                pass
            try:
                async with self._write_lock:
                    await self.transport.ping()
            except Exception as e:
                logger.debug("Keepalive ping for %s failed: %s", self.session.id, e)
                return

    async def _close_transport(self) -> None:
        try:
            await self.transport.close()
        except Exception as e:
            logger.debug("Error closing transport for %s: %s", self.session.id, e)

    async def _receive_loop(self) -> None:
        while True:
            try:
                text = await self.transport.receive_text()
            except TransportClosed:
                return

            try:
                msg = ClientMessage.model_validate_json(text)
            except ValidationError as e:
                logger.debug("Undecodable message on %s: %s", self.session.id, e)
                return

            if msg.type == MessageType.INPUT:
                data = msg.payload()
                if data is None:
                    continue
                try:
                    await engine.write(self.session, data)
                except (OSError, asyncio.TimeoutError) as e:
                    logger.warning("PTY write error on %s: %s", self.session.id, e)
                    return
            elif msg.type == MessageType.RESIZE:
                if msg.cols and msg.rows:
                    engine.resize(self.session, msg.cols, msg.rows)
