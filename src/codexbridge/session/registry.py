"""Session registry: one agent subprocess per browser session."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from typing import Any

from codexbridge.bridge import CodexBridge, UserInput
from codexbridge.config.models import BridgeConfig
from codexbridge.rpc.errors import InitTimeoutError, NoActiveTurnError, SessionNotFoundError
from codexbridge.session.channel import EventChannel
from codexbridge.session.models import ExitInfo, SessionStatus, Thread, ThreadPage, Turn
from codexbridge.session.state import SessionState

logger = logging.getLogger(__name__)

BridgeFactory = Callable[[str], CodexBridge]


class Session:
    """Ties one session id to one bridge and its accumulated state.

    ``status`` moves from ``pending`` to ``ready`` or ``error`` exactly
    once; both are terminal for this instance.
    """

    def __init__(self, session_id: str, bridge: CodexBridge, channel: EventChannel) -> None:
        self.id = session_id
        self.bridge = bridge
        self.channel = channel
        self.state = SessionState()
        self.status: SessionStatus = "pending"
        self.error: str | None = None
        self.created_at = time.time()
        self.last_activity = time.monotonic()
        self._ready: asyncio.Future[Session] = asyncio.get_running_loop().create_future()
        self._ready.add_done_callback(_consume_exception)

    def __repr__(self) -> str:
        return f"Session(id={self.id!r}, status={self.status!r})"

    # ------------------------------------------------------------------ #
    # Activity
    # ------------------------------------------------------------------ #

    def touch(self) -> None:
        self.last_activity = time.monotonic()

    @property
    def idle_seconds(self) -> float:
        return time.monotonic() - self.last_activity

    @property
    def current_thread(self) -> Thread | None:
        return self.state.current_thread

    @property
    def current_turn(self) -> Turn | None:
        return self.state.current_turn

    @property
    def items(self) -> dict[str, Any]:
        return self.state.items

    # ------------------------------------------------------------------ #
    # Readiness
    # ------------------------------------------------------------------ #

    def _mark_ready(self) -> None:
        self.status = "ready"
        if not self._ready.done():
            self._ready.set_result(self)

    def _mark_failed(self, exc: BaseException) -> None:
        self.status = "error"
        self.error = str(exc) or "Failed to start bridge"
        if not self._ready.done():
            self._ready.set_exception(exc)
        self.channel.publish_error(self.error)

    # ------------------------------------------------------------------ #
    # Bridge signals
    # ------------------------------------------------------------------ #

    def _on_event(self, event: dict[str, Any]) -> None:
        self.touch()
        self.state.apply(event)
        self.channel.publish_event(event)

    def _on_error(self, exc: BaseException) -> None:
        self.channel.publish_error(str(exc) or type(exc).__name__)

    def _on_exit(self, info: ExitInfo) -> None:
        self.channel.publish_exit(info)

    def _wire(self) -> None:
        self.bridge.router.add_listener(self._on_event)
        self.bridge.on_error(self._on_error)
        self.bridge.on_exit(self._on_exit)

    def _unwire(self) -> None:
        self.bridge.router.remove_listener(self._on_event)

    # ------------------------------------------------------------------ #
    # Conversation operations
    # ------------------------------------------------------------------ #

    async def start_thread(
        self, *, model: str | None = None, cwd: str | None = None, **options: Any
    ) -> Thread:
        """Start a fresh thread; items from the previous one are dropped."""
        self.touch()
        self.state.clear_items()
        return await self.bridge.start_thread(model=model, cwd=cwd, **options)

    async def resume_thread(self, thread_id: str) -> Thread:
        self.touch()
        self.state.clear_items()
        thread = await self.bridge.resume_thread(thread_id)
        self.state.current_thread = thread
        return thread

    async def list_threads(
        self, cursor: str | None = None, limit: int | None = None
    ) -> ThreadPage:
        self.touch()
        return await self.bridge.list_threads(cursor, limit)

    async def start_turn(self, thread_id: str, input: UserInput, **options: Any) -> Turn:
        self.touch()
        return await self.bridge.start_turn(thread_id, input, **options)

    async def interrupt_turn(self) -> None:
        """Interrupt the current turn of the current thread."""
        self.touch()
        thread, turn = self.state.current_thread, self.state.current_turn
        if thread is None or turn is None:
            raise NoActiveTurnError
        await self.bridge.interrupt_turn(thread.id, turn.id)

    def snapshot(self) -> dict[str, Any]:
        return {
            "sessionId": self.id,
            "status": self.status,
            "error": self.error,
            "running": self.bridge.is_running(),
            "createdAt": self.created_at,
            **self.state.snapshot(),
        }


def _consume_exception(future: asyncio.Future[Any]) -> None:
    """Mark a failed readiness future as retrieved; callers may never wait."""
    if not future.cancelled():
        future.exception()


class SessionRegistry:
    """Authoritative map from session id to Session.

    Sessions are registered *before* their bridge starts so that a
    stream attaching right after creation finds a ``pending`` record
    and can wait for it.  Explicit deletion, lazy eviction in
    ``has_live_session`` and the periodic sweep all funnel into
    ``_evict``.
    """

    def __init__(
        self,
        config: BridgeConfig | None = None,
        *,
        bridge_factory: BridgeFactory | None = None,
    ) -> None:
        self._config = config or BridgeConfig()
        settings = self._config.sessions
        self.idle_timeout = settings.idle_timeout
        self.sweep_interval = settings.sweep_interval
        self.ready_timeout = settings.ready_timeout
        self._queue_size = settings.queue_size
        self._bridge_factory = bridge_factory or self._default_bridge
        self._sessions: dict[str, Session] = {}
        self._stop_tasks: set[asyncio.Task[None]] = set()
        self._sweeper: asyncio.Task[None] | None = None
        self._closed = False

    def _default_bridge(self, session_id: str) -> CodexBridge:
        return CodexBridge(self._config.agent, name=f"codex[{session_id[:8]}]")

    # ------------------------------------------------------------------ #
    # Container protocol
    # ------------------------------------------------------------------ #

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    @property
    def session_ids(self) -> list[str]:
        return list(self._sessions)

    def sessions(self) -> list[Session]:
        return list(self._sessions.values())

    @property
    def pending_stops(self) -> set[asyncio.Task[None]]:
        """Transport shutdowns still in flight."""
        return self._stop_tasks

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    async def start(self) -> None:
        """Start the periodic idle sweep."""
        if self._sweeper is None:
            self._sweeper = asyncio.create_task(self._sweep_loop(), name="session-sweeper")

    async def stop_sweeper(self) -> None:
        if self._sweeper is not None and not self._sweeper.done():
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
        self._sweeper = None

    def close_streams(self) -> int:
        """End every open subscription without stopping any subprocess."""
        count = 0
        for session in self._sessions.values():
            count += session.channel.subscriber_count
            session.channel.close()
        return count

    def stop_all(self, reason: str = "shutdown") -> int:
        """Evict every session and refuse new ones; returns the count."""
        self._closed = True
        sessions = list(self._sessions.values())
        for session in sessions:
            self._evict(session, reason=reason)
        return len(sessions)

    async def shutdown(self) -> None:
        """Stop the sweep and every session's subprocess."""
        await self.stop_sweeper()
        self.stop_all()
        await self.drain()

    async def drain(self, timeout: float | None = None) -> bool:
        """Wait for in-flight transport stops; False if *timeout* hit."""
        pending = list(self._stop_tasks)
        if not pending:
            return True
        done, not_done = await asyncio.wait(pending, timeout=timeout)
        return not not_done

    async def __aenter__(self) -> SessionRegistry:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.shutdown()

    # ------------------------------------------------------------------ #
    # Sessions
    # ------------------------------------------------------------------ #

    async def create_session(self, session_id: str) -> Session:
        """Return the live session for *session_id*, creating it if needed.

        A new session is registered in ``pending`` state, then its bridge
        is started.  Start failures leave the session registered with
        status ``error``; they are not raised.
        """
        if self._closed:
            msg = "Session registry is shut down"
            raise RuntimeError(msg)

        existing = self._sessions.get(session_id)
        if existing is not None:
            if not self._is_stale(existing):
                existing.touch()
                return existing
            self._evict(existing, reason="stale")

        bridge = self._bridge_factory(session_id)
        session = Session(
            session_id,
            bridge,
            EventChannel(name=f"session[{session_id[:8]}]", queue_size=self._queue_size),
        )
        self._sessions[session_id] = session
        session._wire()
        logger.info("Creating session %s", session_id)

        try:
            await bridge.start()
        except Exception as exc:
            logger.error("Session %s failed to start: %s", session_id, exc)
            session._mark_failed(exc)
        else:
            session._mark_ready()
            logger.info("Session %s ready", session_id)
        return session

    def get_session(self, session_id: str) -> Session | None:
        """Look up a session (any status) and record activity on it."""
        session = self._sessions.get(session_id)
        if session is not None:
            session.touch()
        return session

    def has_live_session(self, session_id: str) -> bool:
        """True if the session exists and is not idle past the timeout.

        A stale session is evicted on the spot.
        """
        session = self._sessions.get(session_id)
        if session is None:
            return False
        if self._is_stale(session):
            self._evict(session, reason="stale")
            return False
        return True

    async def wait_for_ready(self, session_id: str, timeout: float | None = None) -> Session:
        """Wait until the session's handshake has finished.

        Raises:
            SessionNotFoundError: No session with this id.
            InitTimeoutError: Still pending after *timeout* seconds.
            Exception: The start failure, if the session errored.
        """
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)

        ready = session._ready
        if not ready.done():
            wait_for = self.ready_timeout if timeout is None else timeout
            await asyncio.wait({ready}, timeout=wait_for)
            if not ready.done():
                raise InitTimeoutError(session_id, wait_for)
        return ready.result()

    async def get_ready(self, session_id: str) -> Session:
        """Return a ready session, waiting for a pending one."""
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        if session.status == "ready":
            session.touch()
            return session
        if session.status == "error":
            return session._ready.result()
        return await self.wait_for_ready(session_id)

    async def delete_session(self, session_id: str) -> bool:
        """Remove a session and wait for its subprocess to stop."""
        session = self._sessions.get(session_id)
        if session is None:
            return False
        task = self._evict(session, reason="deleted")
        await asyncio.wait({task})
        return True

    def sweep(self) -> list[str]:
        """Evict every idle session; returns the evicted ids."""
        stale = [s for s in self._sessions.values() if self._is_stale(s)]
        for session in stale:
            self._evict(session, reason="stale")
        return [s.id for s in stale]

    # ------------------------------------------------------------------ #
    # Internal
    # ------------------------------------------------------------------ #

    def _is_stale(self, session: Session) -> bool:
        return session.idle_seconds > self.idle_timeout

    def _evict(self, session: Session, reason: str) -> asyncio.Task[None]:
        """Unregister *session*, end its streams and stop its subprocess."""
        if self._sessions.get(session.id) is session:
            del self._sessions[session.id]
        logger.info("Cleaning up %s session: %s", reason, session.id)
        session._unwire()
        session.channel.close()
        task = asyncio.create_task(session.bridge.stop(), name=f"stop-{session.id[:8]}")
        self._stop_tasks.add(task)
        task.add_done_callback(self._stop_done)
        return task

    def _stop_done(self, task: asyncio.Task[None]) -> None:
        self._stop_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Error stopping session bridge: %s", task.exception())

    async def _sweep_loop(self) -> None:
        try:
            while True:
                await asyncio.sleep(self.sweep_interval)
                try:
                    evicted = self.sweep()
                except Exception:
                    logger.exception("Session sweep failed")
                    continue
                if evicted:
                    logger.info("Evicted %d idle session(s)", len(evicted))
        except asyncio.CancelledError:
            return
