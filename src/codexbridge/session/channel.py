"""Per-session broadcast channel with one bounded queue per subscriber."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Literal

from codexbridge.constants import SUBSCRIBER_QUEUE_SIZE
from codexbridge.session.models import ExitInfo

logger = logging.getLogger(__name__)

MessageKind = Literal["event", "error", "exit"]


@dataclass(frozen=True)
class ChannelMessage:
    """One item delivered to a subscriber."""

    kind: MessageKind
    payload: Any


#: Queued after the last message to wake a blocked consumer.
_CLOSED = object()


class Subscription:
    """A single consumer's view of an EventChannel.

    Iterate with ``async for``; iteration ends when the subscription is
    detached, the channel is closed, or the queue overflowed.
    """

    def __init__(self, channel: EventChannel, maxsize: int) -> None:
        self._channel = channel
        # One slot is reserved for the close marker.
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=maxsize + 1)
        self._maxsize = maxsize
        self._closed = False
        self.overflowed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def _offer(self, message: ChannelMessage) -> bool:
        """Queue *message*; returns False if the subscriber fell behind."""
        if self._closed:
            return True
        if self._queue.qsize() >= self._maxsize:
            return False
        self._queue.put_nowait(message)
        return True

    def _close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._queue.put_nowait(_CLOSED)
        except asyncio.QueueFull:
            pass

    def detach(self) -> None:
        """Stop receiving messages.  Safe to call more than once."""
        self._channel._remove(self)
        self._close()

    async def get(self) -> ChannelMessage | None:
        """Next message, or None once the subscription has ended."""
        if self._closed and self._queue.empty():
            return None
        item = await self._queue.get()
        if item is _CLOSED:
            return None
        return item

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> ChannelMessage:
        message = await self.get()
        if message is None:
            raise StopAsyncIteration
        return message


class EventChannel:
    """Fan-out of one session's events to any number of subscribers.

    ``publish_*`` never blocks and never raises: a subscriber whose
    queue is full is detached as a slow consumer instead of stalling
    the publisher.  Messages reach each subscriber in publish order.
    """

    def __init__(self, name: str = "session", queue_size: int = SUBSCRIBER_QUEUE_SIZE) -> None:
        self._name = name
        self._queue_size = queue_size
        self._subscribers: list[Subscription] = []
        self._closed = False

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    @property
    def closed(self) -> bool:
        return self._closed

    def subscribe(self, maxsize: int | None = None) -> Subscription:
        subscription = Subscription(self, maxsize or self._queue_size)
        if self._closed:
            subscription._close()
        else:
            self._subscribers.append(subscription)
        return subscription

    def publish_event(self, event: dict[str, Any]) -> None:
        self._publish(ChannelMessage("event", event))

    def publish_error(self, message: str) -> None:
        self._publish(ChannelMessage("error", message))

    def publish_exit(self, info: ExitInfo) -> None:
        self._publish(ChannelMessage("exit", info))

    def close(self) -> None:
        """End every subscription and refuse new messages."""
        self._closed = True
        subscribers, self._subscribers = self._subscribers, []
        for subscription in subscribers:
            subscription._close()

    def _publish(self, message: ChannelMessage) -> None:
        if self._closed:
            return
        for subscription in list(self._subscribers):
            if not subscription._offer(message):
                logger.warning(
                    "%s: subscriber fell behind by %d messages, detaching",
                    self._name,
                    subscription._maxsize,
                )
                subscription.overflowed = True
                subscription.detach()

    def _remove(self, subscription: Subscription) -> None:
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)
