"""ShutdownManager — orchestrates the 4-step graceful server shutdown."""

from __future__ import annotations

import asyncio
import logging
import time

import click
from aiohttp import web

from codexbridge.pidfile import remove_pidfile
from codexbridge.session.registry import Session, SessionRegistry

logger = logging.getLogger(__name__)


def _format_duration(seconds: float) -> str:
    """Format a duration as '1m 22s' or '34.2s'."""
    if seconds >= 60:
        minutes = int(seconds // 60)
        secs = int(seconds % 60)
        return f"{minutes}m {secs:02d}s"
    return f"{seconds:.1f}s"


class ShutdownManager:
    """Orchestrates the 4-step graceful shutdown sequence.

    Steps:
        1. SIGNAL  -- set shutdown flag, stop the sweeper, end event streams
        2. DRAIN   -- stop every session and wait for the subprocesses
        3. KILL    -- SIGKILL anything still running
        4. CLOSE   -- stop the HTTP runner, remove pidfile, print summary
    """

    DRAIN_TIMEOUT = 10.0  # seconds

    def __init__(
        self,
        registry: SessionRegistry,
        shutdown_event: asyncio.Event,
        runner: web.AppRunner | None = None,
        started_at: float | None = None,
    ) -> None:
        self._registry = registry
        self._shutdown_event = shutdown_event
        self._runner = runner
        self._start_time = started_at if started_at is not None else time.monotonic()
        self._sessions: list[Session] = []

    async def execute(self, reason: str) -> None:
        """Run the full shutdown sequence."""
        await self._signal()
        drained = await self._drain()
        if not drained:
            await self._kill()
        await self._close(reason)

    # ------------------------------------------------------------------ #
    # Step 1: SIGNAL
    # ------------------------------------------------------------------ #

    async def _signal(self) -> None:
        """Stop the sweeper and end open streams so handlers return."""
        self._shutdown_event.set()
        await self._registry.stop_sweeper()
        self._registry.close_streams()

    # ------------------------------------------------------------------ #
    # Step 2: DRAIN
    # ------------------------------------------------------------------ #

    async def _drain(self) -> bool:
        """Stop every session's subprocess with timeout.

        Returns True if all stops completed, False if timeout hit.
        """
        self._sessions = self._registry.sessions()
        if self._registry.stop_all() == 0 and not self._registry.pending_stops:
            return True

        click.echo(f"\nStopping {len(self._sessions)} session(s)...")
        drained = await self._registry.drain(timeout=self.DRAIN_TIMEOUT)
        if not drained:
            logger.warning(
                "Drain timeout: %d session(s) still stopping",
                len(self._registry.pending_stops),
            )
        return drained

    # ------------------------------------------------------------------ #
    # Step 3: KILL
    # ------------------------------------------------------------------ #

    async def _kill(self) -> None:
        """SIGKILL leftover subprocesses and cancel their stop tasks."""
        killed = 0
        for session in self._sessions:
            try:
                if session.bridge.kill():
                    killed += 1
            except Exception:
                logger.exception("Error killing session '%s'", session.id)

        remaining = list(self._registry.pending_stops)
        for task in remaining:
            task.cancel()
        if remaining:
            await asyncio.gather(*remaining, return_exceptions=True)

        if killed:
            click.echo(f"Killed {killed} agent process(es).")

    # ------------------------------------------------------------------ #
    # Step 4: CLOSE
    # ------------------------------------------------------------------ #

    async def _close(self, reason: str) -> None:
        """Tear down the HTTP runner, remove the pidfile, print summary."""
        if self._runner is not None:
            try:
                await self._runner.cleanup()
            except Exception:
                logger.exception("Error stopping HTTP server")

        remove_pidfile()

        elapsed = time.monotonic() - self._start_time
        summary_parts = [
            f"\nServer stopped ({reason})",
            _format_duration(elapsed),
            f"{len(self._sessions)} session(s)",
        ]
        click.echo(" | ".join(summary_parts))
