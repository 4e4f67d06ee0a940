"""JSON-RPC plumbing: subprocess transport, request correlation and notification routing."""

from codexbridge.rpc.correlator import PendingRequest, RequestCorrelator
from codexbridge.rpc.errors import (
    BridgeError,
    HandshakeError,
    InitTimeoutError,
    NoActiveTurnError,
    NotRunningError,
    RemoteError,
    RequestTimeoutError,
    SessionNotFoundError,
    StartupError,
)
from codexbridge.rpc.router import EVENT_MAP, NotificationRouter, build_event
from codexbridge.rpc.transport import Transport

__all__ = [
    "EVENT_MAP",
    "BridgeError",
    "HandshakeError",
    "InitTimeoutError",
    "NoActiveTurnError",
    "NotRunningError",
    "NotificationRouter",
    "PendingRequest",
    "RemoteError",
    "RequestCorrelator",
    "RequestTimeoutError",
    "SessionNotFoundError",
    "StartupError",
    "Transport",
    "build_event",
]
