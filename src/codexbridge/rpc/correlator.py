"""Request correlator: pending-request table keyed by JSON-RPC id."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from codexbridge.rpc.errors import RemoteError, RequestTimeoutError

logger = logging.getLogger(__name__)


@dataclass
class PendingRequest:
    """One request awaiting its response line."""

    id: int
    method: str
    future: asyncio.Future[Any]
    created_at: float = field(default_factory=time.monotonic)
    timer: asyncio.TimerHandle | None = None


class RequestCorrelator:
    """Allocates request ids and settles futures from response lines.

    Ids are monotonic for the lifetime of the correlator and are never
    reused, so a late or duplicate response can never match a newer
    request.  Every entry leaves the table exactly once: on response,
    on timeout, on discard, on cancellation of its caller, or on
    ``fail_all``.

    Must be used from a single event loop; no locking is done.
    """

    def __init__(self, name: str = "rpc") -> None:
        self._name = name
        self._last_id = 0
        self._pending: dict[int, PendingRequest] = {}

    @property
    def pending_count(self) -> int:
        """Number of requests still awaiting a response."""
        return len(self._pending)

    @property
    def last_id(self) -> int:
        """The most recently allocated request id (0 before any)."""
        return self._last_id

    def register(self, method: str, timeout: float) -> PendingRequest:
        """Allocate the next id and start its timeout clock."""
        loop = asyncio.get_running_loop()
        self._last_id += 1
        request_id = self._last_id
        future: asyncio.Future[Any] = loop.create_future()
        pending = PendingRequest(id=request_id, method=method, future=future)
        pending.timer = loop.call_later(timeout, self._expire, request_id, timeout)
        self._pending[request_id] = pending
        future.add_done_callback(lambda _f: self._forget(request_id))
        return pending

    def resolve(self, message: dict[str, Any]) -> bool:
        """Settle the request matching ``message["id"]``.

        Returns ``False`` when no live request has that id (late,
        duplicate or unknown response); such lines are dropped.
        """
        request_id = message.get("id")
        pending = self._pending.pop(request_id, None)  # type: ignore[arg-type]
        if pending is None:
            logger.debug(
                "%s: dropping response for unknown id %s", self._name, request_id
            )
            return False
        self._cancel_timer(pending)
        if pending.future.done():
            return False

        error = message.get("error")
        if error is not None:
            pending.future.set_exception(RemoteError.from_payload(error))
        else:
            pending.future.set_result(message.get("result"))
        return True

    def discard(self, request_id: int) -> None:
        """Drop an entry without settling it (its write never happened)."""
        pending = self._pending.pop(request_id, None)
        if pending is not None:
            self._cancel_timer(pending)
            if not pending.future.done():
                pending.future.cancel()

    def fail_all(self, make_error: Callable[[PendingRequest], BaseException]) -> int:
        """Reject every outstanding request; returns how many were rejected.

        *make_error* builds a fresh exception per request.
        """
        pending = list(self._pending.values())
        self._pending.clear()
        for entry in pending:
            self._cancel_timer(entry)
            if not entry.future.done():
                entry.future.set_exception(make_error(entry))
        return len(pending)

    # ------------------------------------------------------------------ #
    # Internal
    # ------------------------------------------------------------------ #

    def _expire(self, request_id: int, timeout: float) -> None:
        pending = self._pending.pop(request_id, None)
        if pending is None:
            return
        logger.warning(
            "%s: request %s (id %d) timed out after %.1fs",
            self._name,
            pending.method,
            request_id,
            timeout,
        )
        if not pending.future.done():
            pending.future.set_exception(RequestTimeoutError(pending.method, timeout))

    def _forget(self, request_id: int) -> None:
        """Done-callback: a cancelled caller must not leave its entry behind."""
        pending = self._pending.get(request_id)
        if pending is not None and pending.future.cancelled():
            self._pending.pop(request_id, None)
            self._cancel_timer(pending)

    @staticmethod
    def _cancel_timer(pending: PendingRequest) -> None:
        if pending.timer is not None:
            pending.timer.cancel()
            pending.timer = None
