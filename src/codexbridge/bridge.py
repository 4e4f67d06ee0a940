"""CodexBridge: domain API over one app-server subprocess."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any, Literal

from codexbridge.config.models import AgentConfig
from codexbridge.rpc.errors import NotRunningError, RemoteError
from codexbridge.rpc.router import NotificationRouter
from codexbridge.rpc.transport import Transport
from codexbridge.session.models import (
    DeviceLogin,
    ExitInfo,
    LoginResult,
    Thread,
    ThreadPage,
    Turn,
)

logger = logging.getLogger(__name__)

ReviewTarget = Literal["uncommitted", "base", "commit", "custom"]

UserInput = str | list[dict[str, Any]]


def normalize_input(value: UserInput) -> list[dict[str, Any]]:
    """A bare string becomes a single text input."""
    if isinstance(value, str):
        return [{"type": "text", "text": value}]
    return list(value)


def _drop_none(**params: Any) -> dict[str, Any]:
    return {k: v for k, v in params.items() if v is not None}


class CodexBridge:
    """Owns a Transport and a NotificationRouter for one agent process.

    Each domain method is a thin ``request(method, params)`` call that
    returns the decoded ``result``.  Every method raises
    ``NotRunningError`` until ``start()`` has completed the handshake.
    """

    def __init__(
        self,
        config: AgentConfig | None = None,
        *,
        name: str = "codex",
        fail_pending_on_exit: bool = True,
    ) -> None:
        self._config = config or AgentConfig()
        self.name = name
        self.router = NotificationRouter(name)
        self._error_listeners: list[Callable[[BaseException], None]] = []
        self._exit_listeners: list[Callable[[ExitInfo], None]] = []
        self.transport = Transport(
            self._config.command,
            client_info=self._config.client_info.model_dump(),
            request_timeout=self._config.request_timeout,
            env=self._config.env,
            name=name,
            on_notification=self.router.route,
            on_error=self._emit_error,
            on_exit=self._emit_exit,
            fail_pending_on_exit=fail_pending_on_exit,
        )

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    async def start(self) -> None:
        """Spawn the agent and complete the handshake."""
        await self.transport.start()

    async def stop(self) -> None:
        """Kill the agent and release all listeners.  Idempotent."""
        await self.transport.stop()
        self.router.cancel_expectations()

    def kill(self) -> bool:
        return self.transport.kill()

    def is_running(self) -> bool:
        return self.transport.is_running

    def on_error(self, listener: Callable[[BaseException], None]) -> None:
        self._error_listeners.append(listener)

    def on_exit(self, listener: Callable[[ExitInfo], None]) -> None:
        self._exit_listeners.append(listener)

    def _emit_error(self, exc: BaseException) -> None:
        for listener in list(self._error_listeners):
            try:
                listener(exc)
            except Exception:
                logger.exception("%s: error listener failed", self.name)

    def _emit_exit(self, info: ExitInfo) -> None:
        for listener in list(self._exit_listeners):
            try:
                listener(info)
            except Exception:
                logger.exception("%s: exit listener failed", self.name)

    async def _call(self, method: str, params: dict[str, Any] | None = None) -> Any:
        if not self.transport.is_running:
            msg = "CodexBridge not initialized"
            raise NotRunningError(msg)
        return await self.transport.request(method, params if params is not None else {})

    # ------------------------------------------------------------------ #
    # Threads and turns
    # ------------------------------------------------------------------ #

    async def start_thread(
        self,
        *,
        model: str | None = None,
        cwd: str | None = None,
        approval_policy: str | None = None,
        sandbox: str | None = None,
    ) -> Thread:
        params = _drop_none(
            model=model, cwd=cwd, approvalPolicy=approval_policy, sandbox=sandbox
        )
        result = await self._call("thread/start", params)
        return Thread.model_validate(result["thread"])

    async def resume_thread(self, thread_id: str) -> Thread:
        result = await self._call("thread/resume", {"threadId": thread_id})
        return Thread.model_validate(result["thread"])

    async def list_threads(
        self, cursor: str | None = None, limit: int | None = None
    ) -> ThreadPage:
        params: dict[str, Any] = {}
        if cursor:
            params["cursor"] = cursor
        if limit:
            params["limit"] = limit
        result = await self._call("thread/list", params)
        return ThreadPage.model_validate(result or {})

    async def archive_thread(self, thread_id: str) -> None:
        await self._call("thread/archive", {"threadId": thread_id})

    async def start_turn(
        self,
        thread_id: str,
        input: UserInput,
        *,
        cwd: str | None = None,
        model: str | None = None,
        effort: str | None = None,
        approval_policy: str | None = None,
        sandbox_policy: dict[str, Any] | None = None,
    ) -> Turn:
        params = _drop_none(
            threadId=thread_id,
            input=normalize_input(input),
            cwd=cwd,
            model=model,
            effort=effort,
            approvalPolicy=approval_policy,
            sandboxPolicy=sandbox_policy,
        )
        result = await self._call("turn/start", params)
        return Turn.model_validate(result["turn"])

    async def interrupt_turn(self, thread_id: str, turn_id: str) -> None:
        await self._call("turn/interrupt", {"threadId": thread_id, "turnId": turn_id})

    # ------------------------------------------------------------------ #
    # Account and authentication
    # ------------------------------------------------------------------ #

    async def get_account(self) -> Any:
        return await self._call("account/read", {"refreshToken": False})

    async def logout(self) -> None:
        await self._call("account/logout")

    async def get_rate_limits(self) -> Any:
        return await self._call("account/rateLimits/read")

    async def get_auth_status(self) -> Any:
        return await self._call("getAuthStatus")

    async def login_api_key(self, api_key: str) -> LoginResult:
        """Log in with an API key; a rejection is reported, not raised."""
        try:
            await self._call("loginApiKey", {"apiKey": api_key})
        except RemoteError as exc:
            return LoginResult(success=False, error=exc.message or "Login failed")
        return LoginResult(success=True)

    async def login_device(self) -> DeviceLogin:
        result = await self._call("loginChatGpt")
        return DeviceLogin.from_result(result if isinstance(result, dict) else None)

    async def cancel_login_device(self) -> None:
        await self._call("cancelLoginChatGpt")

    async def get_user_info(self) -> Any:
        return await self._call("userInfo")

    # ------------------------------------------------------------------ #
    # Models and configuration
    # ------------------------------------------------------------------ #

    async def list_models(self) -> Any:
        return await self._call("model/list")

    async def set_default_model(self, model: str) -> None:
        await self._call("setDefaultModel", {"model": model})

    async def read_config(self, key: str | None = None) -> Any:
        return await self._call("config/read", {"key": key} if key else {})

    async def write_config(self, key: str, value: Any) -> None:
        await self._call("config/value/write", {"key": key, "value": value})

    async def list_skills(self) -> Any:
        return await self._call("skills/list")

    # ------------------------------------------------------------------ #
    # Tools
    # ------------------------------------------------------------------ #

    async def start_review(
        self,
        target: ReviewTarget,
        *,
        base_branch: str | None = None,
        commit_sha: str | None = None,
        instructions: str | None = None,
    ) -> Any:
        params = _drop_none(
            target=target,
            baseBranch=base_branch,
            commitSha=commit_sha,
            instructions=instructions,
        )
        return await self._call("review/start", params)

    async def get_mcp_server_status(self) -> Any:
        return await self._call("mcpServerStatus/list")

    async def mcp_oauth_login(self, server_name: str) -> Any:
        return await self._call("mcpServer/oauth/login", {"serverName": server_name})

    async def fuzzy_file_search(self, query: str, limit: int | None = None) -> Any:
        params: dict[str, Any] = {"query": query}
        if limit:
            params["limit"] = limit
        return await self._call("fuzzyFileSearch", params)

    async def git_diff_to_remote(self, branch: str | None = None) -> Any:
        return await self._call("gitDiffToRemote", {"branch": branch} if branch else {})

    async def upload_feedback(
        self, type: str, message: str, include_logs: bool | None = None
    ) -> None:
        params = _drop_none(type=type, message=message, includeLogs=include_logs)
        await self._call("feedback/upload", params)

    async def respond_to_approval(self, item_id: str, approved: bool) -> None:
        await self._call("item/approval/respond", {"itemId": item_id, "approved": approved})
