"""Shared constants and type aliases for the bridge runtime."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

#: Executable used when neither config nor ``CODEX_PATH`` names one.
DEFAULT_CODEX_PATH = "codex"

#: Arguments that put the agent binary into JSON-RPC server mode.
DEFAULT_CODEX_ARGS = ("app-server",)

#: Seconds a single JSON-RPC request may wait for its response.
REQUEST_TIMEOUT = 30.0

#: Seconds without activity before a session is evicted.
SESSION_IDLE_TIMEOUT = 30 * 60.0

#: Seconds between idle-eviction sweeps.
SWEEP_INTERVAL = 60.0

#: Seconds a caller may wait for a pending session to become ready.
READY_TIMEOUT = 30.0

#: Seconds between SSE keepalive comments on an idle stream.
HEARTBEAT_INTERVAL = 15.0

#: Per-subscriber queue bound on the session event channel.
SUBSCRIBER_QUEUE_SIZE = 1000

#: Identity sent in the ``initialize`` handshake.
CLIENT_NAME = "codex-web"
CLIENT_TITLE = "Codex Web UI"
CLIENT_VERSION = "0.1.0"

#: Callback type for notification listeners: receives one event dict.
EventListener = Callable[[dict[str, Any]], None]
