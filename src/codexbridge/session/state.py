"""Conversation snapshot accumulated from app-server notifications."""

from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError

from codexbridge.session.models import (
    AgentMessageItem,
    CommandExecutionItem,
    ReasoningItem,
    Thread,
    ThreadItem,
    Turn,
    thread_item_adapter,
)

logger = logging.getLogger(__name__)

#: Delta notifications: event type -> (item class, field receiving the text).
_DELTA_TARGETS: dict[str, tuple[type, str]] = {
    "item/agentMessage/delta": (AgentMessageItem, "text"),
    "item/commandExecution/outputDelta": (CommandExecutionItem, "aggregated_output"),
    "item/reasoning/summaryTextDelta": (ReasoningItem, "summary"),
    "item/reasoning/textDelta": (ReasoningItem, "content"),
}


def _append(current: Any, delta: str) -> str | list[str]:
    if isinstance(current, list):
        if not current:
            return [delta]
        return [*current[:-1], current[-1] + delta]
    return (current or "") + delta


class SessionState:
    """Current thread, current turn and items-by-id for one session.

    Threads and turns are only ever replaced wholesale.  Items are
    replaced on ``item/started``/``item/completed`` and extended in
    place by delta notifications.  A delta for an unknown item id is
    ignored.
    """

    def __init__(self) -> None:
        self.current_thread: Thread | None = None
        self.current_turn: Turn | None = None
        self.items: dict[str, ThreadItem] = {}

    def apply(self, event: dict[str, Any]) -> bool:
        """Fold one routed event into the snapshot.

        Returns True if the snapshot changed.  Payloads that fail
        validation are logged and skipped.
        """
        event_type = event.get("type")
        try:
            match event_type:
                case "thread/started":
                    self.current_thread = Thread.model_validate(event["thread"])
                case "turn/started" | "turn/completed":
                    self.current_turn = Turn.model_validate(event["turn"])
                case "item/started" | "item/completed":
                    item = thread_item_adapter.validate_python(event["item"])
                    self.items[item.id] = item
                case _ if event_type in _DELTA_TARGETS:
                    return self._apply_delta(event_type, event)
                case _:
                    return False
        except (KeyError, TypeError, ValidationError) as exc:
            logger.warning("Ignoring malformed %s event: %s", event_type, exc)
            return False
        return True

    def _apply_delta(self, event_type: str, event: dict[str, Any]) -> bool:
        item_cls, field = _DELTA_TARGETS[event_type]
        item = self.items.get(str(event.get("itemId", "")))
        delta = event.get("delta")
        if not isinstance(item, item_cls) or not isinstance(delta, str):
            return False
        setattr(item, field, _append(getattr(item, field), delta))
        return True

    def clear_items(self) -> None:
        self.items.clear()

    def snapshot(self) -> dict[str, Any]:
        """JSON-ready view using wire field names."""
        return {
            "thread": self.current_thread.to_wire() if self.current_thread else None,
            "turn": self.current_turn.to_wire() if self.current_turn else None,
            "items": [item.to_wire() for item in self.items.values()],
        }
