"""Wire messages exchanged with the browser.

Client -> server:
    {"type": "input", "data": "<base64>"}
    {"type": "resize", "cols": 120, "rows": 40}

Server -> client:
    {"type": "output", "data": "<base64>"}
    {"type": "closed"}
    {"type": "ping"}
"""

from __future__ import annotations

import base64
import binascii
import enum
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class MessageType(enum.StrEnum):
    INPUT = "input"
    RESIZE = "resize"
    OUTPUT = "output"
    CLOSED = "closed"
    PING = "ping"


class ClientMessage(BaseModel):
    """A decoded client frame. Unknown ``type`` values are accepted and ignored."""

    type: str = ""
    data: str = ""
    cols: int | None = Field(default=None, ge=0, le=65535)
    rows: int | None = Field(default=None, ge=0, le=65535)

    def payload(self) -> bytes | None:
        """Decode the base64 ``data`` field. Returns None if it is not valid base64."""
        try:
            return base64.b64decode(self.data, validate=True)
        except (binascii.Error, ValueError):
            return None


def output_message(data: bytes) -> dict[str, Any]:
    return {
        "type": MessageType.OUTPUT.value,
        "data": base64.b64encode(data).decode("ascii"),
    }


def closed_message() -> dict[str, Any]:
    return {"type": MessageType.CLOSED.value}


def ping_message() -> dict[str, Any]:
    return {"type": MessageType.PING.value}


# ---------------------------------------------------------------------------
# HTTP schemas
# ---------------------------------------------------------------------------


class CreateSessionRequest(BaseModel):
    name: str = Field(min_length=1, max_length=128)


class SessionInfo(BaseModel):
    id: str
    name: str
    created_at: datetime
    last_active: datetime
    connected: bool
