"""Tests for the subprocess transport over a fake app-server."""

from __future__ import annotations

import asyncio
import json
from typing import Any
from unittest.mock import patch

import pytest
from conftest import FakeAppServer, RpcFailure, settle

from codexbridge.rpc.errors import (
    HandshakeError,
    NotRunningError,
    RemoteError,
    RequestTimeoutError,
    StartupError,
)
from codexbridge.rpc.transport import (
    Transport,
    exit_info_from_returncode,
    format_stderr_preview,
)
from codexbridge.session.models import ExitInfo

CLIENT_INFO = {"name": "codex-web", "title": "Codex Web UI", "version": "0.1.0"}


def _make_transport(**kwargs: Any) -> tuple[Transport, list[tuple[str, Any]], list[Any]]:
    """Transport plus lists capturing its notifications and exits."""
    notes: list[tuple[str, Any]] = []
    exits: list[Any] = []
    transport = Transport(
        ["codex", "app-server"],
        client_info=CLIENT_INFO,
        request_timeout=kwargs.pop("request_timeout", 2.0),
        on_notification=lambda method, params: notes.append((method, params)),
        on_exit=exits.append,
        **kwargs,
    )
    return transport, notes, exits


# ------------------------------------------------------------------ #
# Startup and handshake
# ------------------------------------------------------------------ #


class TestStart:
    async def test_handshake_sends_initialize_then_initialized(
        self, app_server: FakeAppServer, spawn: Any
    ) -> None:
        transport, _, _ = _make_transport()
        await transport.start()

        init = app_server.request_for("initialize")
        assert init["id"] == 1
        assert init["params"] == {"clientInfo": CLIENT_INFO}
        assert app_server.notifications == [{"method": "initialized", "params": {}}]
        assert transport.is_running
        assert transport.pid == app_server.pid

        args, kwargs = spawn.call_args
        assert args == ("codex", "app-server")
        assert kwargs["env"]["TERM"] == "dumb"
        assert kwargs["start_new_session"] is True
        await transport.stop()

    async def test_extra_env_is_passed(self, app_server: FakeAppServer, spawn: Any) -> None:
        transport, _, _ = _make_transport(env={"RUST_LOG": "debug"})
        await transport.start()
        assert spawn.call_args.kwargs["env"]["RUST_LOG"] == "debug"
        await transport.stop()

    async def test_missing_executable_is_startup_error(self, spawn: Any) -> None:
        spawn.side_effect = FileNotFoundError("codex")
        transport, _, _ = _make_transport()
        with pytest.raises(StartupError, match="not found"):
            await transport.start()
        assert not transport.is_running

    async def test_second_start_is_startup_error(self, app_server: FakeAppServer) -> None:
        transport, _, _ = _make_transport()
        await transport.start()
        with pytest.raises(StartupError):
            await transport.start()
        await transport.stop()

    async def test_rejected_initialize_is_handshake_error(
        self, app_server: FakeAppServer
    ) -> None:
        def _reject(params: dict[str, Any]) -> Any:
            raise RpcFailure(-32000, "unsupported client")

        app_server.handlers["initialize"] = _reject
        transport, _, _ = _make_transport()
        with pytest.raises(HandshakeError, match="unsupported client") as exc_info:
            await transport.start()
        assert isinstance(exc_info.value.__cause__, RemoteError)
        assert app_server.terminate_calls == 1
        assert not transport.is_running

    async def test_initialize_timeout_is_handshake_error(
        self, app_server: FakeAppServer
    ) -> None:
        del app_server.handlers["initialize"]
        transport, _, _ = _make_transport(request_timeout=0.05)
        with pytest.raises(HandshakeError) as exc_info:
            await transport.start()
        assert isinstance(exc_info.value.__cause__, RequestTimeoutError)

    async def test_exit_during_handshake_is_handshake_error(
        self, app_server: FakeAppServer
    ) -> None:
        del app_server.handlers["initialize"]
        transport, _, exits = _make_transport()
        task = asyncio.create_task(transport.start())
        await app_server.wait_for_request("initialize")
        app_server.exit(1)
        with pytest.raises(HandshakeError):
            await task
        assert exits == [ExitInfo(code=1, signal=None)]


# ------------------------------------------------------------------ #
# Requests
# ------------------------------------------------------------------ #


class TestRequest:
    async def test_request_returns_result(self, app_server: FakeAppServer) -> None:
        app_server.handlers["model/list"] = lambda p: {"data": [{"id": "gpt-5"}]}
        transport, _, _ = _make_transport()
        await transport.start()
        assert await transport.request("model/list", {}) == {"data": [{"id": "gpt-5"}]}
        await transport.stop()

    async def test_wire_format_is_one_compact_line(self, app_server: FakeAppServer) -> None:
        app_server.handlers["thread/resume"] = lambda p: {}
        transport, _, _ = _make_transport()
        await transport.start()
        await transport.request("thread/resume", {"threadId": "t1"})
        line = app_server.stdin.lines[-1]
        assert json.loads(line) == {"method": "thread/resume", "id": 2, "params": {"threadId": "t1"}}
        assert b" " not in line
        await transport.stop()

    async def test_out_of_order_responses(self, app_server: FakeAppServer) -> None:
        transport, _, _ = _make_transport()
        await transport.start()

        thread_task = asyncio.create_task(transport.request("thread/start", {}))
        turn_task = asyncio.create_task(transport.request("turn/start", {"threadId": "t"}))
        thread_req = await app_server.wait_for_request("thread/start")
        turn_req = await app_server.wait_for_request("turn/start")
        assert thread_req["id"] != turn_req["id"]

        app_server.respond(turn_req["id"], {"turn": {"id": "u1"}})
        app_server.respond(thread_req["id"], {"thread": {"id": "t1"}})

        assert await thread_task == {"thread": {"id": "t1"}}
        assert await turn_task == {"turn": {"id": "u1"}}
        await transport.stop()

    async def test_remote_error_only_fails_its_caller(self, app_server: FakeAppServer) -> None:
        transport, _, _ = _make_transport()
        await transport.start()

        bad = asyncio.create_task(transport.request("turn/start", {}))
        good = asyncio.create_task(transport.request("model/list", {}))
        bad_req = await app_server.wait_for_request("turn/start")
        good_req = await app_server.wait_for_request("model/list")

        app_server.respond_error(bad_req["id"], -32602, "threadId required")
        app_server.respond(good_req["id"], [])

        with pytest.raises(RemoteError, match="threadId required"):
            await bad
        assert await good == []
        assert transport.is_running
        await transport.stop()

    async def test_timeout_does_not_kill_process(self, app_server: FakeAppServer) -> None:
        transport, _, _ = _make_transport()
        await transport.start()
        with pytest.raises(RequestTimeoutError):
            await transport.request("thread/list", {}, timeout=0.02)
        assert transport.is_running
        assert transport.pending_count == 0
        await transport.stop()

    async def test_request_after_exit_is_not_running(self, app_server: FakeAppServer) -> None:
        transport, _, _ = _make_transport()
        await transport.start()
        app_server.exit(0)
        await settle(lambda: not transport.is_running)
        with pytest.raises(NotRunningError):
            await transport.request("model/list", {})

    async def test_request_before_start_is_not_running(self) -> None:
        transport, _, _ = _make_transport()
        with pytest.raises(NotRunningError):
            await transport.request("model/list", {})

    async def test_broken_pipe_is_not_running(self, app_server: FakeAppServer) -> None:
        transport, _, _ = _make_transport()
        await transport.start()
        app_server.stdin.write = _raise_broken_pipe  # type: ignore[method-assign]
        with pytest.raises(NotRunningError):
            await transport.request("model/list", {})
        assert transport.pending_count == 0
        await transport.stop()

    async def test_notify_with_closed_stdin_is_not_running(
        self, app_server: FakeAppServer
    ) -> None:
        transport, _, _ = _make_transport()
        await transport.start()
        app_server.stdin.close()
        with pytest.raises(NotRunningError, match="stdin not writable"):
            await transport.notify("initialized", {})
        assert app_server.notifications == [{"method": "initialized", "params": {}}]
        await transport.stop()


def _raise_broken_pipe(data: bytes) -> None:
    raise BrokenPipeError("pipe closed")


# ------------------------------------------------------------------ #
# Notifications and malformed output
# ------------------------------------------------------------------ #


class TestReading:
    async def test_notifications_delivered_in_order(self, app_server: FakeAppServer) -> None:
        transport, notes, _ = _make_transport()
        await transport.start()
        app_server.notify("turn/started", {"turn": {"id": "u1"}})
        app_server.notify("item/agentMessage/delta", {"itemId": "i1", "delta": "a"})
        await settle(lambda: len(notes) == 2)
        assert [m for m, _ in notes] == ["turn/started", "item/agentMessage/delta"]
        await transport.stop()

    async def test_malformed_line_between_notifications(
        self, app_server: FakeAppServer
    ) -> None:
        transport, notes, _ = _make_transport()
        await transport.start()
        app_server.notify("item/started", {"item": {"id": "a"}})
        app_server.stdout.feed('{"method": "item/started", "params": {"item"')
        app_server.stdout.feed("[1, 2, 3]")
        app_server.notify("item/completed", {"item": {"id": "a"}})
        await settle(lambda: len(notes) == 2)
        assert [m for m, _ in notes] == ["item/started", "item/completed"]
        assert transport.is_running
        await transport.stop()

    async def test_overlong_line_is_skipped(self, app_server: FakeAppServer) -> None:
        transport, notes, _ = _make_transport()
        await transport.start()
        app_server.stdout.feed_error(ValueError("Separator is not found, and chunk exceed the limit"))
        app_server.notify("turn/completed", {"turn": {"id": "u1"}})
        await settle(lambda: len(notes) == 1)
        assert transport.is_running
        await transport.stop()

    async def test_unknown_response_id_is_ignored(self, app_server: FakeAppServer) -> None:
        transport, notes, _ = _make_transport()
        await transport.start()
        app_server.respond(999, {"late": True})
        app_server.notify("account/updated", {})
        await settle(lambda: len(notes) == 1)
        assert transport.is_running
        await transport.stop()

    async def test_numeric_id_with_method_is_a_response(
        self, app_server: FakeAppServer
    ) -> None:
        transport, notes, _ = _make_transport()
        await transport.start()
        task = asyncio.create_task(transport.request("model/list", {}))
        request = await app_server.wait_for_request("model/list")
        app_server.stdout.feed(
            json.dumps({"id": request["id"], "method": "model/list", "result": ["m"]})
        )
        assert await task == ["m"]
        assert notes == []
        await transport.stop()

    async def test_failing_notification_callback_does_not_stop_reader(
        self, app_server: FakeAppServer
    ) -> None:
        seen: list[str] = []

        def _callback(method: str, params: Any) -> None:
            seen.append(method)
            if method == "error":
                raise RuntimeError("consumer bug")

        transport = Transport(
            ["codex"], client_info=CLIENT_INFO, on_notification=_callback
        )
        await transport.start()
        app_server.notify("error", {})
        app_server.notify("turn/completed", {})
        await settle(lambda: len(seen) == 2)
        await transport.stop()

    async def test_stderr_is_kept_for_diagnostics(self, app_server: FakeAppServer) -> None:
        transport, _, _ = _make_transport()
        await transport.start()
        app_server.stderr.feed("warning: config not found")
        await settle(lambda: bool(transport.stderr_tail))
        assert transport.stderr_tail == ["warning: config not found"]
        await transport.stop()


# ------------------------------------------------------------------ #
# Exit and stop
# ------------------------------------------------------------------ #


class TestExit:
    async def test_exit_rejects_outstanding_requests(self, app_server: FakeAppServer) -> None:
        transport, _, exits = _make_transport(request_timeout=5.0)
        await transport.start()
        task = asyncio.create_task(transport.request("turn/start", {}))
        await app_server.wait_for_request("turn/start")
        app_server.exit(1)
        with pytest.raises(NotRunningError, match="turn/start"):
            await asyncio.wait_for(task, timeout=1.0)
        assert exits == [ExitInfo(code=1, signal=None)]
        assert transport.exit_info == ExitInfo(code=1, signal=None)

    async def test_exit_can_leave_requests_to_time_out(
        self, app_server: FakeAppServer
    ) -> None:
        transport, _, _ = _make_transport(request_timeout=0.1, fail_pending_on_exit=False)
        await transport.start()
        task = asyncio.create_task(transport.request("turn/start", {}))
        await app_server.wait_for_request("turn/start")
        app_server.exit(0)
        with pytest.raises(RequestTimeoutError):
            await task

    async def test_stop_terminates_and_reports_signal(self, app_server: FakeAppServer) -> None:
        transport, _, exits = _make_transport()
        await transport.start()
        await transport.stop()
        assert app_server.terminate_calls == 1
        assert app_server.stdin.closed
        assert exits == [ExitInfo(code=None, signal="SIGTERM")]
        assert not transport.is_running
        assert transport.pid is None

    async def test_stop_is_idempotent(self, app_server: FakeAppServer) -> None:
        transport, _, exits = _make_transport()
        await transport.start()
        await transport.stop()
        await transport.stop()
        assert app_server.terminate_calls == 1
        assert len(exits) == 1

    async def test_stop_escalates_to_kill(self) -> None:
        server = FakeAppServer(exit_on_terminate=False)
        transport, _, exits = _make_transport()

        async def _spawn(*args: Any, **kwargs: Any) -> FakeAppServer:
            return server

        with patch("asyncio.create_subprocess_exec", side_effect=_spawn):
            await transport.start()
            await transport.stop(grace=0.05)
        assert server.kill_calls == 1
        assert exits == [ExitInfo(code=None, signal="SIGKILL")]

    async def test_stop_before_start(self) -> None:
        transport, _, _ = _make_transport()
        await transport.stop()
        assert not transport.is_running


class TestHelpers:
    def test_exit_info_from_returncode(self) -> None:
        assert exit_info_from_returncode(0) == ExitInfo(code=0, signal=None)
        assert exit_info_from_returncode(-9) == ExitInfo(code=None, signal="SIGKILL")
        assert exit_info_from_returncode(None) == ExitInfo(code=None, signal=None)

    def test_stderr_preview_keeps_last_lines(self) -> None:
        lines = [f"line {i}" for i in range(10)]
        preview = format_stderr_preview(lines, max_lines=2)
        assert "line 8" in preview and "line 9" in preview
        assert "line 7" not in preview
        assert format_stderr_preview([]) == ""
