"""Notification router: maps subprocess notifications onto app events."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

from codexbridge.constants import EventListener

logger = logging.getLogger(__name__)

#: Known notification methods and the event type each one is published as.
#: Methods missing from this table are published under their own name.
EVENT_MAP: dict[str, str] = {
    "thread/started": "thread/started",
    "turn/started": "turn/started",
    "turn/completed": "turn/completed",
    "item/started": "item/started",
    "item/completed": "item/completed",
    "item/agentMessage/delta": "item/agentMessage/delta",
    "item/commandExecution/outputDelta": "item/commandExecution/outputDelta",
    "item/reasoning/summaryTextDelta": "item/reasoning/summaryTextDelta",
    "item/reasoning/textDelta": "item/reasoning/textDelta",
    "error": "error",
    "account/updated": "account/updated",
}

MethodListener = Callable[[dict[str, Any]], None]


def build_event(method: str, params: dict[str, Any] | None) -> dict[str, Any]:
    """Spread *params* onto ``{"type": <mapped name>}``.

    A ``type`` key inside *params* replaces the mapped name.
    """
    event: dict[str, Any] = {"type": EVENT_MAP.get(method, method)}
    if params:
        event.update(params)
    return event


class NotificationRouter:
    """Re-emits each notification as one event plus a raw-method signal.

    Listeners run synchronously, in registration order, on the reader
    task.  A listener that raises is logged and skipped so that one bad
    consumer never stalls the line reader.
    """

    def __init__(self, name: str = "codex") -> None:
        self._name = name
        self._listeners: list[EventListener] = []
        self._method_listeners: dict[str, list[MethodListener]] = {}
        self._expectations: dict[str, list[asyncio.Future[dict[str, Any]]]] = {}

    # ------------------------------------------------------------------ #
    # Registration
    # ------------------------------------------------------------------ #

    def add_listener(self, listener: EventListener) -> None:
        """Receive every routed event."""
        self._listeners.append(listener)

    def remove_listener(self, listener: EventListener) -> None:
        """Stop receiving routed events.  Unknown listeners are ignored."""
        if listener in self._listeners:
            self._listeners.remove(listener)

    def on(self, method: str, listener: MethodListener) -> None:
        """Receive the raw ``params`` of every *method* notification."""
        self._method_listeners.setdefault(method, []).append(listener)

    def off(self, method: str, listener: MethodListener) -> None:
        listeners = self._method_listeners.get(method)
        if listeners and listener in listeners:
            listeners.remove(listener)
            if not listeners:
                del self._method_listeners[method]

    def expect(self, method: str) -> asyncio.Future[dict[str, Any]]:
        """Return a future resolved with the params of the next *method*."""
        loop = asyncio.get_running_loop()
        future: asyncio.Future[dict[str, Any]] = loop.create_future()
        self._expectations.setdefault(method, []).append(future)
        return future

    def cancel_expectations(self) -> None:
        """Cancel all pending ``expect()`` futures (used on teardown)."""
        for futures in self._expectations.values():
            for future in futures:
                if not future.done():
                    future.cancel()
        self._expectations.clear()

    @property
    def listener_count(self) -> int:
        return len(self._listeners) + sum(
            len(v) for v in self._method_listeners.values()
        )

    # ------------------------------------------------------------------ #
    # Dispatch
    # ------------------------------------------------------------------ #

    def route(self, method: str, params: dict[str, Any] | None) -> dict[str, Any]:
        """Publish one notification.  Returns the event that was emitted."""
        event = build_event(method, params)

        for listener in list(self._listeners):
            self._call(listener, event, method)

        raw = params or {}
        for listener in list(self._method_listeners.get(method, ())):
            self._call(listener, raw, method)

        for future in self._expectations.pop(method, ()):
            if not future.done():
                future.set_result(raw)

        return event

    def _call(
        self,
        listener: Callable[[dict[str, Any]], None],
        payload: dict[str, Any],
        method: str,
    ) -> None:
        try:
            listener(payload)
        except Exception:
            logger.exception(
                "%s: listener %r failed on %s", self._name, listener, method
            )
