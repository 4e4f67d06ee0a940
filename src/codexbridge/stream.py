"""Event stream: turns a session subscription into SSE-ready payloads."""

from __future__ import annotations

import asyncio
import json
from typing import Any

from codexbridge.constants import HEARTBEAT_INTERVAL
from codexbridge.session.channel import ChannelMessage, Subscription

HEARTBEAT_FRAME = b": heartbeat\n\n"


def message_payload(message: ChannelMessage) -> dict[str, Any]:
    """The JSON object a stream consumer sees for one channel message."""
    if message.kind == "error":
        return {"type": "error", "error": message.payload}
    if message.kind == "exit":
        return {"type": "exit", **message.payload.model_dump()}
    return message.payload


def format_sse(payload: dict[str, Any] | None) -> bytes:
    """Encode one payload as an SSE frame; ``None`` is a heartbeat comment."""
    if payload is None:
        return HEARTBEAT_FRAME
    return f"data: {json.dumps(payload)}\n\n".encode()


class EventStream:
    """Async iterator over one consumer's view of a session.

    Yields a ``connected`` payload first, then one payload per channel
    message.  Every *heartbeat_interval* seconds after connecting it
    yields ``None`` so the caller can emit a keepalive, whether or not
    events are flowing.  An ``exit`` payload is the last one; the
    subscription is detached whenever iteration ends or ``close()`` is
    called.
    """

    def __init__(
        self,
        subscription: Subscription,
        session_id: str,
        heartbeat_interval: float = HEARTBEAT_INTERVAL,
    ) -> None:
        self._subscription = subscription
        self.session_id = session_id
        self._heartbeat_interval = heartbeat_interval
        self._connected = False
        self._done = False
        self._next_heartbeat = 0.0

    @property
    def closed(self) -> bool:
        return self._done

    def close(self) -> None:
        self._done = True
        self._subscription.detach()

    def __aiter__(self) -> EventStream:
        return self

    async def __anext__(self) -> dict[str, Any] | None:
        loop = asyncio.get_running_loop()
        if not self._connected:
            self._connected = True
            self._next_heartbeat = loop.time() + self._heartbeat_interval
            return {"type": "connected", "sessionId": self.session_id}
        if self._done:
            raise StopAsyncIteration

        remaining = self._next_heartbeat - loop.time()
        if remaining <= 0:
            return self._heartbeat(loop)
        try:
            message = await asyncio.wait_for(self._subscription.get(), timeout=remaining)
        except TimeoutError:
            return self._heartbeat(loop)

        if message is None:
            self.close()
            raise StopAsyncIteration
        if message.kind == "exit":
            self.close()
        return message_payload(message)

    def _heartbeat(self, loop: asyncio.AbstractEventLoop) -> None:
        self._next_heartbeat = max(
            self._next_heartbeat + self._heartbeat_interval,
            loop.time(),
        )
        return None

    async def __aenter__(self) -> EventStream:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.close()
