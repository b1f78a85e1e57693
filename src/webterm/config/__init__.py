"""Configuration — Pydantic models for webterm settings."""

from __future__ import annotations

import json
import os
import shlex
from typing import Any

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

from webterm.pty.buffer import DEFAULT_SCROLLBACK_BYTES


class ServerConfig(BaseModel):
    """HTTP listener settings."""

    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8080, ge=1, le=65535)
    log_level: str = Field(default="info")


class SessionConfig(BaseModel):
    """Shell session settings."""

    shell: list[str] = Field(
        default_factory=lambda: ["bash", "--login"],
        description="Command started behind each session's pty",
    )
    term: str = Field(default="xterm-256color", description="TERM for the shell")
    scrollback_bytes: int = Field(
        default=DEFAULT_SCROLLBACK_BYTES,
        gt=0,
        description="Scrollback retained per session and replayed on attach",
    )
    output_queue_size: int = Field(
        default=256,
        gt=0,
        description=(
            "Live output chunks buffered per connection. Chunks beyond this "
            "are dropped from the live view (scrollback still keeps them)."
        ),
    )
    read_chunk_size: int = Field(default=4096, gt=0)


class StreamConfig(BaseModel):
    """Keepalive settings for terminal connections."""

    ping_interval: float = Field(default=30.0, gt=0)
    pong_wait: float = Field(
        default=60.0,
        gt=0,
        description="Peer silence after which the connection is dropped",
    )

    @model_validator(mode="after")
    def _check_pong_wait(self) -> StreamConfig:
        if self.pong_wait <= self.ping_interval:
            raise ValueError("pong_wait must be greater than ping_interval")
        return self


class WebTermConfig(BaseModel):
    """Top-level webterm configuration."""

    server: ServerConfig = Field(default_factory=ServerConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    stream: StreamConfig = Field(default_factory=StreamConfig)

    @classmethod
    def load(cls, config_path: str | None = None) -> WebTermConfig:
        """Load config from file, env vars, or defaults.

        Priority: env vars > config file > defaults.

        Env vars:
            PORT / WEBTERM_PORT        - Listen port (WEBTERM_PORT wins)
            WEBTERM_HOST               - Listen address
            WEBTERM_LOG_LEVEL          - uvicorn/root log level
            WEBTERM_SHELL              - Shell command line (shell-quoted)
            WEBTERM_TERM               - TERM value for spawned shells
            WEBTERM_SCROLLBACK_BYTES   - Scrollback cap per session
            WEBTERM_PING_INTERVAL      - Seconds between keepalive pings
            WEBTERM_PONG_WAIT          - Seconds of peer silence before disconnect
        """
        load_dotenv()

        config_data: dict[str, Any] = {}
        if config_path and os.path.exists(config_path):
            with open(config_path) as f:
                config_data = json.load(f)

        # Server overrides
        server = config_data.get("server", {})

        env_port = os.environ.get("WEBTERM_PORT") or os.environ.get("PORT")
        if env_port:
            server["port"] = int(env_port)

        env_host = os.environ.get("WEBTERM_HOST")
        if env_host:
            server["host"] = env_host

        env_log_level = os.environ.get("WEBTERM_LOG_LEVEL")
        if env_log_level:
            server["log_level"] = env_log_level.lower()

        # Session overrides
        session = config_data.get("session", {})

        env_shell = os.environ.get("WEBTERM_SHELL")
        if env_shell:
            session["shell"] = shlex.split(env_shell)

        env_term = os.environ.get("WEBTERM_TERM")
        if env_term:
            session["term"] = env_term

        env_scrollback = os.environ.get("WEBTERM_SCROLLBACK_BYTES")
        if env_scrollback:
            session["scrollback_bytes"] = int(env_scrollback)

        # Keepalive overrides
        stream = config_data.get("stream", {})

        env_ping_interval = os.environ.get("WEBTERM_PING_INTERVAL")
        if env_ping_interval:
            stream["ping_interval"] = float(env_ping_interval)

        env_pong_wait = os.environ.get("WEBTERM_PONG_WAIT")
        if env_pong_wait:
            stream["pong_wait"] = float(env_pong_wait)

        for key, value in (("server", server), ("session", session), ("stream", stream)):
            if value:
                config_data[key] = value

        return cls.model_validate(config_data)
