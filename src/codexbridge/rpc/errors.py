"""Error taxonomy for the transport, bridge and session registry."""

from __future__ import annotations

from typing import Any


class BridgeError(Exception):
    """Base class for every error raised by codexbridge."""


class StartupError(BridgeError):
    """The agent subprocess could not be spawned."""


class HandshakeError(BridgeError):
    """The ``initialize`` handshake failed or timed out."""


class RequestTimeoutError(BridgeError, TimeoutError):
    """A request received no matching response in time."""

    def __init__(self, method: str, timeout: float) -> None:
        self.method = method
        self.timeout = timeout
        super().__init__(f"Request {method} timed out after {timeout:g}s")


class RemoteError(BridgeError):
    """The subprocess answered a request with a JSON-RPC error object."""

    def __init__(self, code: int, message: str, data: Any = None) -> None:
        self.code = code
        self.message = message
        self.data = data
        super().__init__(message)

    @classmethod
    def from_payload(cls, payload: object) -> RemoteError:
        """Build from the ``error`` member of a response line."""
        if not isinstance(payload, dict):
            return cls(-32603, str(payload) or "Unknown error")
        code = payload.get("code")
        return cls(
            code if isinstance(code, int) else -32603,
            str(payload.get("message") or "Unknown error"),
            payload.get("data"),
        )

    def __repr__(self) -> str:
        return f"RemoteError(code={self.code}, message={self.message!r})"


class NotRunningError(BridgeError):
    """A write was attempted while the subprocess is not running."""


class SessionNotFoundError(BridgeError):
    """An operation referenced a session id with no record."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__("Session not found")


class InitTimeoutError(BridgeError, TimeoutError):
    """A caller waited past the session readiness deadline."""

    def __init__(self, session_id: str, timeout: float) -> None:
        self.session_id = session_id
        self.timeout = timeout
        super().__init__("Session initialization timeout")


class NoActiveTurnError(BridgeError):
    """An interrupt was requested with no current thread or turn."""

    def __init__(self) -> None:
        super().__init__("No active turn to interrupt")
