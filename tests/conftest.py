"""Shared fakes: an in-memory codex app-server behind asyncio's subprocess API."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable, Iterator
from typing import Any
from unittest.mock import patch

import pytest

# ------------------------------------------------------------------ #
# Fake process
# ------------------------------------------------------------------ #


class RpcFailure(Exception):
    """Raise from a FakeAppServer handler to answer with a JSON-RPC error."""

    def __init__(self, code: int, message: str, data: Any = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.data = data


class FakeStream:
    """Queue-fed stand-in for ``asyncio.StreamReader``.

    ``readline()`` blocks until a line is fed.  Once EOF is fed every
    further read returns ``b""``.  Feeding an exception makes the next
    read raise it.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[bytes | BaseException] = asyncio.Queue()
        self._eof = False

    def feed(self, data: bytes | str) -> None:
        if isinstance(data, str):
            data = data.encode()
        if not data.endswith(b"\n"):
            data += b"\n"
        self._queue.put_nowait(data)

    def feed_error(self, exc: BaseException) -> None:
        self._queue.put_nowait(exc)

    def feed_eof(self) -> None:
        if not self._eof:
            self._eof = True
            self._queue.put_nowait(b"")

    async def readline(self) -> bytes:
        item = await self._queue.get()
        if isinstance(item, BaseException):
            raise item
        if item == b"":
            self._queue.put_nowait(b"")
        return item


class FakeStdin:
    """Collects written lines and hands each parsed message to *on_message*."""

    def __init__(self, on_message: Callable[[dict[str, Any]], None]) -> None:
        self._on_message = on_message
        self._buffer = b""
        self.closed = False
        self.lines: list[bytes] = []

    def write(self, data: bytes) -> None:
        if self.closed:
            raise BrokenPipeError("stdin closed")
        self._buffer += data
        while b"\n" in self._buffer:
            line, self._buffer = self._buffer.split(b"\n", 1)
            self.lines.append(line)
            self._on_message(json.loads(line))

    async def drain(self) -> None:
        if self.closed:
            raise BrokenPipeError("stdin closed")

    def is_closing(self) -> bool:
        return self.closed

    def close(self) -> None:
        self.closed = True


class FakeAppServer:
    """In-memory codex app-server process.

    Requests whose method has an entry in ``handlers`` are answered
    immediately with the handler's return value (or an error if it
    raises RpcFailure).  Other requests stay unanswered until the test
    calls ``respond`` or ``respond_error``.
    """

    _next_pid = 4000

    def __init__(self, *, exit_on_terminate: bool = True) -> None:
        FakeAppServer._next_pid += 1
        self.pid = FakeAppServer._next_pid
        self.returncode: int | None = None
        self.stdout = FakeStream()
        self.stderr = FakeStream()
        self.stdin = FakeStdin(self._receive)
        self.exit_on_terminate = exit_on_terminate
        self.terminate_calls = 0
        self.kill_calls = 0
        self.requests: list[dict[str, Any]] = []
        self.notifications: list[dict[str, Any]] = []
        self.handlers: dict[str, Callable[[dict[str, Any]], Any]] = {
            "initialize": lambda params: {"userAgent": "codex-test/0.0"},
        }
        self._exited = asyncio.Event()

    # -- process API --------------------------------------------------

    async def wait(self) -> int:
        await self._exited.wait()
        assert self.returncode is not None
        return self.returncode

    def terminate(self) -> None:
        self.terminate_calls += 1
        if self.exit_on_terminate:
            self.exit(-15)

    def kill(self) -> None:
        self.kill_calls += 1
        self.exit(-9)

    # -- test controls ------------------------------------------------

    def exit(self, returncode: int = 0) -> None:
        if self.returncode is not None:
            return
        self.returncode = returncode
        self.stdout.feed_eof()
        self.stderr.feed_eof()
        self._exited.set()

    def respond(self, request_id: int, result: Any = None) -> None:
        self.stdout.feed(json.dumps({"id": request_id, "result": result}))

    def respond_error(self, request_id: int, code: int, message: str, data: Any = None) -> None:
        error: dict[str, Any] = {"code": code, "message": message}
        if data is not None:
            error["data"] = data
        self.stdout.feed(json.dumps({"id": request_id, "error": error}))

    def notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        self.stdout.feed(json.dumps({"method": method, "params": params or {}}))

    def request_for(self, method: str) -> dict[str, Any]:
        """The most recent request sent with *method*."""
        for message in reversed(self.requests):
            if message["method"] == method:
                return message
        raise AssertionError(f"no {method} request was sent")

    async def wait_for_request(self, method: str, timeout: float = 2.0) -> dict[str, Any]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while loop.time() < deadline:
            if any(m["method"] == method for m in self.requests):
                return self.request_for(method)
            await asyncio.sleep(0.005)
        raise AssertionError(f"timed out waiting for {method} request")

    def _receive(self, message: dict[str, Any]) -> None:
        if "id" not in message:
            self.notifications.append(message)
            return
        self.requests.append(message)
        handler = self.handlers.get(message["method"])
        if handler is None:
            return
        try:
            result = handler(message.get("params") or {})
        except RpcFailure as exc:
            self.respond_error(message["id"], exc.code, exc.message, exc.data)
        else:
            self.respond(message["id"], result)


async def settle(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Yield to the loop until *predicate* holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() >= deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


# ------------------------------------------------------------------ #
# Fixtures
# ------------------------------------------------------------------ #


@pytest.fixture
def app_servers() -> list[FakeAppServer]:
    """Every FakeAppServer spawned during the test, in spawn order."""
    return []


@pytest.fixture
def spawn(app_servers: list[FakeAppServer]) -> Iterator[Any]:
    """Patch subprocess creation so each spawn yields a new FakeAppServer."""

    async def _create(*args: Any, **kwargs: Any) -> FakeAppServer:
        server = FakeAppServer()
        app_servers.append(server)
        return server

    with patch("asyncio.create_subprocess_exec", side_effect=_create) as mock:
        yield mock


@pytest.fixture
def app_server(spawn: Any, app_servers: list[FakeAppServer]) -> FakeAppServer:
    """A single pre-registered FakeAppServer for the next spawn."""
    server = FakeAppServer()
    spawn.side_effect = _single(server, app_servers)
    return server


def _single(server: FakeAppServer, spawned: list[FakeAppServer]) -> Callable[..., Any]:
    async def _create(*args: Any, **kwargs: Any) -> FakeAppServer:
        spawned.append(server)
        return server

    return _create
