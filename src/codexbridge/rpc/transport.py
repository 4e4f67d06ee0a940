"""Transport: one agent subprocess speaking line-delimited JSON-RPC."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import signal
from collections import deque
from collections.abc import Callable, Mapping, Sequence
from typing import Any

from codexbridge.constants import REQUEST_TIMEOUT
from codexbridge.rpc.correlator import RequestCorrelator
from codexbridge.rpc.errors import (
    HandshakeError,
    NotRunningError,
    RemoteError,
    RequestTimeoutError,
    StartupError,
)
from codexbridge.session.models import ExitInfo

logger = logging.getLogger(__name__)

#: Maximum bytes per JSONL line from subprocess stdout (1 MB).
_MAX_LINE_BYTES = 1_048_576

#: Seconds to wait after SIGTERM before SIGKILL.
_SIGTERM_WAIT = 3.0

#: Seconds the reader gets to observe EOF after the process has exited.
_READER_DRAIN_WAIT = 1.0

#: Number of stderr lines kept for diagnostics.
_STDERR_TAIL_LINES = 50

NotificationCallback = Callable[[str, dict[str, Any] | None], Any]
ErrorCallback = Callable[[BaseException], None]
ExitCallback = Callable[[ExitInfo], None]


def format_stderr_preview(lines: Sequence[str], max_lines: int = 5) -> str:
    """Format the last N non-empty stderr lines for a log message."""
    kept = [line for line in lines if line.strip()]
    return "\n  ".join(kept[-max_lines:])


def exit_info_from_returncode(returncode: int | None) -> ExitInfo:
    """Negative asyncio return codes mean the process died from a signal."""
    if returncode is None or returncode >= 0:
        return ExitInfo(code=returncode, signal=None)
    try:
        name = signal.Signals(-returncode).name
    except ValueError:
        name = f"SIG{-returncode}"
    return ExitInfo(code=None, signal=name)


class Transport:
    """Owns one subprocess and multiplexes JSON-RPC over its stdio.

    Requests are correlated by id, so responses may arrive in any
    order.  Notifications are handed to *on_notification* in the exact
    order their lines are read.  A single reader task processes lines
    one at a time; nothing here is thread-safe.

    A Transport is single-use: once stopped or exited it cannot be
    started again.
    """

    def __init__(
        self,
        command: Sequence[str],
        *,
        client_info: Mapping[str, str],
        request_timeout: float = REQUEST_TIMEOUT,
        env: Mapping[str, str] | None = None,
        cwd: str | None = None,
        name: str = "codex",
        on_notification: NotificationCallback | None = None,
        on_error: ErrorCallback | None = None,
        on_exit: ExitCallback | None = None,
        fail_pending_on_exit: bool = True,
    ) -> None:
        if not command:
            msg = "Transport needs a command to run"
            raise ValueError(msg)
        self.name = name
        self._command = list(command)
        self._client_info = dict(client_info)
        self._request_timeout = request_timeout
        self._env = dict(env) if env else {}
        self._cwd = cwd
        self._on_notification = on_notification
        self._on_error = on_error
        self._on_exit = on_exit
        self._fail_pending_on_exit = fail_pending_on_exit

        self._correlator = RequestCorrelator(name)
        self._process: asyncio.subprocess.Process | None = None
        self._read_task: asyncio.Task[None] | None = None
        self._stderr_task: asyncio.Task[None] | None = None
        self._stderr_tail: deque[str] = deque(maxlen=_STDERR_TAIL_LINES)
        self._initialized = False
        self._exited = False
        self._stopping = False
        self._exit_info: ExitInfo | None = None

    # ------------------------------------------------------------------ #
    # Properties
    # ------------------------------------------------------------------ #

    @property
    def is_running(self) -> bool:
        """True once the handshake has completed and until exit/stop."""
        return self._process is not None and self._initialized and not self._exited

    @property
    def pid(self) -> int | None:
        if self._process is None or self._exited:
            return None
        return self._process.pid

    @property
    def exit_info(self) -> ExitInfo | None:
        """How the subprocess ended, once it has."""
        return self._exit_info

    @property
    def pending_count(self) -> int:
        return self._correlator.pending_count

    @property
    def stderr_tail(self) -> list[str]:
        return list(self._stderr_tail)

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    async def start(self) -> None:
        """Spawn the subprocess and perform the ``initialize`` handshake.

        Raises:
            StartupError: The executable could not be spawned, or the
                Transport was already used.
            HandshakeError: ``initialize`` failed, timed out, or the
                process died before answering.
        """
        if self._process is not None or self._stopping:
            msg = f"Transport '{self.name}' already started"
            raise StartupError(msg)

        env = {**os.environ, "TERM": "dumb", **self._env}
        try:
            self._process = await asyncio.create_subprocess_exec(
                *self._command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=_MAX_LINE_BYTES,
                env=env,
                cwd=self._cwd,
                start_new_session=True,
            )
        except FileNotFoundError as exc:
            msg = f"Agent executable not found: {self._command[0]}"
            raise StartupError(msg) from exc
        except OSError as exc:
            msg = f"Failed to spawn {self._command[0]}: {exc}"
            raise StartupError(msg) from exc

        logger.info(
            "%s: spawned %s (pid %s)",
            self.name,
            " ".join(self._command),
            self._process.pid,
        )
        self._read_task = asyncio.create_task(
            self._read_loop(), name=f"{self.name}-stdout"
        )
        self._stderr_task = asyncio.create_task(
            self._stderr_loop(), name=f"{self.name}-stderr"
        )

        try:
            await self.request("initialize", {"clientInfo": self._client_info})
            await self.notify("initialized", {})
        except (RequestTimeoutError, RemoteError, NotRunningError) as exc:
            await self.stop()
            msg = f"initialize handshake failed: {exc}"
            raise HandshakeError(msg) from exc

        self._initialized = True
        logger.info("%s: handshake complete", self.name)

    async def stop(self, grace: float = _SIGTERM_WAIT) -> None:
        """Terminate the subprocess and release the readers.  Idempotent."""
        if self._stopping:
            return
        self._stopping = True
        self._initialized = False

        proc = self._process
        if proc is not None and proc.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                proc.terminate()
            try:
                await asyncio.wait_for(proc.wait(), timeout=grace)
            except TimeoutError:
                logger.warning(
                    "%s: pid %s did not exit after SIGTERM, sending SIGKILL",
                    self.name,
                    proc.pid,
                )
                with contextlib.suppress(ProcessLookupError):
                    proc.kill()
                with contextlib.suppress(TimeoutError):
                    await asyncio.wait_for(proc.wait(), timeout=grace)

        # Let the reader see EOF so the exit is reported before teardown.
        if self._read_task is not None and not self._read_task.done():
            await asyncio.wait({self._read_task}, timeout=_READER_DRAIN_WAIT)

        for task in (self._read_task, self._stderr_task):
            if task is not None and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task

        if proc is not None and proc.stdin is not None:
            with contextlib.suppress(Exception):
                proc.stdin.close()

        self._correlator.fail_all(
            lambda p: NotRunningError(f"Transport stopped before {p.method} completed")
        )

    def kill(self) -> bool:
        """SIGKILL the subprocess without waiting; True if a signal was sent."""
        proc = self._process
        if proc is None or proc.returncode is not None:
            return False
        try:
            proc.kill()
        except ProcessLookupError:
            return False
        return True

    # ------------------------------------------------------------------ #
    # Messaging
    # ------------------------------------------------------------------ #

    async def request(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> Any:
        """Send a request and wait for the ``result`` of its response.

        Raises:
            NotRunningError: The subprocess is not running.
            RequestTimeoutError: No response arrived in time.
            RemoteError: The response carried an ``error`` object.
        """
        self._ensure_writable()
        pending = self._correlator.register(
            method, self._request_timeout if timeout is None else timeout
        )
        message: dict[str, Any] = {"method": method, "id": pending.id}
        if params is not None:
            message["params"] = params

        try:
            await self._write(message)
        except NotRunningError:
            self._correlator.discard(pending.id)
            raise
        return await pending.future

    async def notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        """Send a notification; no response is expected."""
        await self._write({"method": method, "params": params or {}})

    def _ensure_writable(self) -> asyncio.StreamWriter:
        """The subprocess stdin, or NotRunningError if it cannot take a line."""
        proc = self._process
        if (
            proc is None
            or proc.stdin is None
            or self._exited
            or self._stopping
            or proc.stdin.is_closing()
        ):
            msg = "Process not running or stdin not writable"
            raise NotRunningError(msg)
        return proc.stdin

    async def _write(self, message: dict[str, Any]) -> None:
        """Write one complete line; the only writer to stdin."""
        stdin = self._ensure_writable()
        line = json.dumps(message, separators=(",", ":")) + "\n"
        try:
            stdin.write(line.encode())
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError, OSError) as exc:
            msg = f"Failed to write to subprocess: {exc}"
            raise NotRunningError(msg) from exc

    # ------------------------------------------------------------------ #
    # Background readers
    # ------------------------------------------------------------------ #

    async def _read_loop(self) -> None:
        """Read stdout line by line until EOF, then report the exit."""
        proc = self._process
        if proc is None or proc.stdout is None:
            return

        try:
            while True:
                try:
                    line = await proc.stdout.readline()
                except ValueError:
                    # Line exceeded the StreamReader limit; the buffer is dropped.
                    logger.warning(
                        "%s: stdout line exceeds %d bytes, skipping",
                        self.name,
                        _MAX_LINE_BYTES,
                    )
                    continue
                if not line:
                    break
                self._handle_line(line)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("%s: read loop error", self.name)
            self._emit_error(exc)

        await self._finish(proc)

    def _handle_line(self, raw: bytes) -> None:
        """Classify one stdout line as a response or a notification."""
        line = raw.decode(errors="replace").strip()
        if not line:
            return

        try:
            message = json.loads(line)
        except json.JSONDecodeError:
            logger.warning("%s: failed to parse line: %s", self.name, line[:200])
            return
        if not isinstance(message, dict):
            logger.warning("%s: ignoring non-object line: %s", self.name, line[:200])
            return

        msg_id = message.get("id")
        if isinstance(msg_id, int) and not isinstance(msg_id, bool):
            self._correlator.resolve(message)
            return

        method = message.get("method")
        if isinstance(method, str):
            params = message.get("params")
            self._emit_notification(method, params if isinstance(params, dict) else None)
            return

        logger.warning("%s: unrecognized message: %s", self.name, line[:200])

    async def _stderr_loop(self) -> None:
        proc = self._process
        if proc is None or proc.stderr is None:
            return
        try:
            while True:
                try:
                    line = await proc.stderr.readline()
                except ValueError:
                    continue
                if not line:
                    return
                text = line.decode(errors="replace").rstrip()
                if text:
                    self._stderr_tail.append(text)
                    logger.debug("%s stderr: %s", self.name, text)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("%s: stderr reader error", self.name)

    async def _finish(self, proc: asyncio.subprocess.Process) -> None:
        """Mark the Transport terminated and report how the process ended."""
        returncode = await proc.wait()
        self._exited = True
        self._initialized = False
        info = exit_info_from_returncode(returncode)
        self._exit_info = info

        if self._fail_pending_on_exit:
            failed = self._correlator.fail_all(
                lambda p: NotRunningError(
                    f"Process exited before responding to {p.method}"
                )
            )
            if failed:
                logger.info("%s: rejected %d pending request(s)", self.name, failed)

        if not self._stopping:
            preview = format_stderr_preview(self._stderr_tail)
            logger.warning(
                "%s: agent exited (code=%s, signal=%s)%s",
                self.name,
                info.code,
                info.signal,
                f"\n  {preview}" if preview else "",
            )
        self._emit_exit(info)

    # ------------------------------------------------------------------ #
    # Callbacks
    # ------------------------------------------------------------------ #

    def _emit_notification(self, method: str, params: dict[str, Any] | None) -> None:
        if self._on_notification is None:
            return
        try:
            self._on_notification(method, params)
        except Exception:
            logger.exception("%s: notification handler failed on %s", self.name, method)

    def _emit_error(self, exc: BaseException) -> None:
        if self._on_error is None:
            return
        try:
            self._on_error(exc)
        except Exception:
            logger.exception("%s: error handler failed", self.name)

    def _emit_exit(self, info: ExitInfo) -> None:
        if self._on_exit is None:
            return
        try:
            self._on_exit(info)
        except Exception:
            logger.exception("%s: exit handler failed", self.name)

