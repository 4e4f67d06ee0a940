"""Pydantic v2 models for codexbridge.yaml configuration."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, field_validator

from codexbridge.constants import (
    CLIENT_NAME,
    CLIENT_TITLE,
    CLIENT_VERSION,
    DEFAULT_CODEX_ARGS,
    DEFAULT_CODEX_PATH,
    HEARTBEAT_INTERVAL,
    READY_TIMEOUT,
    REQUEST_TIMEOUT,
    SESSION_IDLE_TIMEOUT,
    SUBSCRIBER_QUEUE_SIZE,
    SWEEP_INTERVAL,
)


class ClientInfo(BaseModel):
    """Identity sent to the agent in the ``initialize`` request."""

    model_config = ConfigDict(extra="forbid")

    name: str = Field(default=CLIENT_NAME, description="Client identifier")
    title: str = Field(default=CLIENT_TITLE, description="Human-readable client name")
    version: str = Field(default=CLIENT_VERSION, description="Client version")


class AgentConfig(BaseModel):
    """How to launch and talk to the agent subprocess."""

    model_config = ConfigDict(extra="forbid")

    codex_path: str = Field(
        default=DEFAULT_CODEX_PATH,
        description="Agent executable (name on PATH or absolute path)",
    )
    args: list[str] = Field(
        default_factory=lambda: list(DEFAULT_CODEX_ARGS),
        description="Arguments that start the JSON-RPC server mode",
    )
    env: dict[str, str] = Field(
        default_factory=dict,
        description="Extra environment variables for the subprocess",
    )
    request_timeout: float = Field(
        default=REQUEST_TIMEOUT,
        gt=0,
        description="Seconds to wait for each JSON-RPC response",
    )
    client_info: ClientInfo = Field(default_factory=ClientInfo)

    @field_validator("codex_path")
    @classmethod
    def _non_empty_path(cls, value: str) -> str:
        if not value.strip():
            msg = "codex_path must not be empty"
            raise ValueError(msg)
        return value

    @property
    def command(self) -> list[str]:
        return [self.codex_path, *self.args]


class SessionsConfig(BaseModel):
    """Session lifetime and fan-out settings."""

    model_config = ConfigDict(extra="forbid")

    idle_timeout: float = Field(
        default=SESSION_IDLE_TIMEOUT,
        gt=0,
        description="Seconds without activity before a session is evicted",
    )
    sweep_interval: float = Field(
        default=SWEEP_INTERVAL,
        gt=0,
        description="Seconds between idle-eviction sweeps",
    )
    ready_timeout: float = Field(
        default=READY_TIMEOUT,
        gt=0,
        description="Seconds a caller waits for a pending session",
    )
    queue_size: int = Field(
        default=SUBSCRIBER_QUEUE_SIZE,
        ge=1,
        description="Per-stream event queue bound",
    )


class ServerConfig(BaseModel):
    """HTTP listener settings."""

    model_config = ConfigDict(extra="forbid")

    host: str = Field(default="127.0.0.1", description="Bind address")
    port: int = Field(default=3001, ge=0, le=65535, description="Bind port")
    heartbeat_interval: float = Field(
        default=HEARTBEAT_INTERVAL,
        gt=0,
        description="Seconds between SSE keepalive comments",
    )


class BridgeConfig(BaseModel):
    """Top-level codexbridge.yaml configuration."""

    model_config = ConfigDict(extra="forbid")

    agent: AgentConfig = Field(default_factory=AgentConfig)
    sessions: SessionsConfig = Field(default_factory=SessionsConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
