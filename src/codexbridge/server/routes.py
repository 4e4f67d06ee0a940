"""Route handlers for the ``/api/codex/`` HTTP surface."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Mapping
from typing import Any

from aiohttp import web

from codexbridge.config.models import BridgeConfig
from codexbridge.rpc.errors import InitTimeoutError
from codexbridge.session.registry import Session, SessionRegistry
from codexbridge.stream import EventStream, format_sse

logger = logging.getLogger(__name__)

REGISTRY_KEY = web.AppKey("registry", SessionRegistry)
CONFIG_KEY = web.AppKey("config", BridgeConfig)

API_PREFIX = "/api/codex"

SSE_HEADERS = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
}


class MissingParameterError(ValueError):
    """A required query or body parameter was absent."""


# ------------------------------------------------------------------ #
# Parameter helpers
# ------------------------------------------------------------------ #


def _require(values: Mapping[str, Any], *names: str) -> tuple[Any, ...]:
    """Return *names* from *values*, failing if any is missing or empty."""
    found = tuple(values.get(name) for name in names)
    if any(value in (None, "") for value in found):
        msg = f"{' and '.join(names)} required"
        raise MissingParameterError(msg)
    return found


async def _body(request: web.Request) -> dict[str, Any]:
    """JSON body as a dict; an absent or malformed body is empty."""
    if not request.can_read_body:
        return {}
    try:
        data = await request.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _registry(request: web.Request) -> SessionRegistry:
    return request.app[REGISTRY_KEY]


async def _ready_session(request: web.Request, session_id: str) -> Session:
    return await _registry(request).get_ready(session_id)


async def _query_session(request: web.Request) -> Session:
    (session_id,) = _require(request.query, "sessionId")
    return await _ready_session(request, session_id)


def _message(text: str, **extra: Any) -> web.Response:
    return web.json_response({"message": text, **extra})


# ------------------------------------------------------------------ #
# Sessions and events
# ------------------------------------------------------------------ #


async def create_session(request: web.Request) -> web.Response:
    registry = _registry(request)
    existing = (await _body(request)).get("sessionId")

    if existing and registry.has_live_session(existing):
        session = registry.get_session(existing)
        return web.json_response(
            {
                "sessionId": existing,
                "reused": True,
                "status": session.status if session else None,
                "message": "Session resumed successfully",
            }
        )

    session = await registry.create_session(str(uuid.uuid4()))
    return web.json_response(
        {
            "sessionId": session.id,
            "reused": False,
            "status": session.status,
            "error": session.error,
            "message": "Session created successfully",
        }
    )


async def get_session(request: web.Request) -> web.Response:
    (session_id,) = _require(request.query, "sessionId")
    session = _registry(request).get_session(session_id)
    if session is None:
        return web.json_response({"error": "Session not found"}, status=404)
    return web.json_response(session.snapshot())


async def delete_session(request: web.Request) -> web.Response:
    (session_id,) = _require(request.query, "sessionId")
    await _registry(request).delete_session(session_id)
    return _message("Session deleted")


async def stream_events(request: web.Request) -> web.StreamResponse:
    """Server-sent events for one session.

    The subscription is taken before waiting for readiness so nothing
    published during the handshake is missed.
    """
    session_id = request.query.get("sessionId")
    if not session_id:
        return web.Response(text="sessionId required", status=400)

    registry = _registry(request)
    session = registry.get_session(session_id)
    if session is None:
        return web.Response(text="Session not found", status=404)

    heartbeat = request.app[CONFIG_KEY].server.heartbeat_interval
    stream = EventStream(session.channel.subscribe(), session_id, heartbeat)

    failure: str | None = None
    try:
        await registry.wait_for_ready(session_id)
    except InitTimeoutError as exc:
        stream.close()
        return web.json_response({"error": str(exc)}, status=408)
    except Exception as exc:
        failure = session.error or str(exc)

    response = web.StreamResponse(status=200, headers=SSE_HEADERS)
    await response.prepare(request)
    logger.info("SSE client connected session=%s", session_id)

    try:
        async with stream:
            if failure is not None:
                await response.write(format_sse(await anext(stream)))
                await response.write(format_sse({"type": "error", "error": failure}))
                return response
            async for payload in stream:
                await response.write(format_sse(payload))
    except ConnectionResetError:
        logger.debug("SSE client went away session=%s", session_id)
    finally:
        logger.info("SSE client disconnected session=%s", session_id)
    return response


# ------------------------------------------------------------------ #
# Threads and turns
# ------------------------------------------------------------------ #


async def start_thread(request: web.Request) -> web.Response:
    body = await _body(request)
    (session_id,) = _require(body, "sessionId")
    session = await _ready_session(request, session_id)
    thread = await session.start_thread(model=body.get("model"), cwd=body.get("cwd"))
    return web.json_response({"thread": thread.to_wire()})


async def list_threads(request: web.Request) -> web.Response:
    session = await _query_session(request)
    limit = _int_param(request, "limit")
    page = await session.list_threads(request.query.get("cursor"), limit)
    return web.json_response(page.to_wire())


async def resume_thread(request: web.Request) -> web.Response:
    session_id, thread_id = _require(await _body(request), "sessionId", "threadId")
    session = await _ready_session(request, session_id)
    thread = await session.resume_thread(thread_id)
    return web.json_response({"thread": thread.to_wire()})


async def archive_thread(request: web.Request) -> web.Response:
    session_id, thread_id = _require(request.query, "sessionId", "threadId")
    session = await _ready_session(request, session_id)
    await session.bridge.archive_thread(thread_id)
    return _message("Thread archived successfully")


async def start_turn(request: web.Request) -> web.Response:
    body = await _body(request)
    session_id, thread_id = _require(body, "sessionId", "threadId")
    (user_input,) = _require(body, "input")
    session = await _ready_session(request, session_id)
    turn = await session.start_turn(
        thread_id,
        user_input,
        model=body.get("model"),
        cwd=body.get("cwd"),
        effort=body.get("effort"),
    )
    return web.json_response({"turn": turn.to_wire()})


async def interrupt_turn(request: web.Request) -> web.Response:
    session = await _query_session(request)
    await session.interrupt_turn()
    return _message("Turn interrupted")


# ------------------------------------------------------------------ #
# Account and authentication
# ------------------------------------------------------------------ #


async def get_account(request: web.Request) -> web.Response:
    session = await _query_session(request)
    return web.json_response(await session.bridge.get_account())


async def get_auth_status(request: web.Request) -> web.Response:
    session = await _query_session(request)
    return web.json_response(await session.bridge.get_auth_status())


async def login(request: web.Request) -> web.Response:
    body = await _body(request)
    (session_id,) = _require(body, "sessionId")
    method = body.get("method")
    if not method:
        raise MissingParameterError("method required (apiKey or device)")

    session = await _ready_session(request, session_id)
    if method == "apiKey":
        if not body.get("apiKey"):
            raise MissingParameterError("apiKey required for apiKey method")
        result = await session.bridge.login_api_key(body["apiKey"])
        return web.json_response(result.model_dump(exclude_none=True))
    if method == "device":
        device = await session.bridge.login_device()
        return web.json_response(device.to_wire())
    return web.json_response({"error": "Invalid method"}, status=400)


async def logout(request: web.Request) -> web.Response:
    session = await _query_session(request)
    if request.query.get("action", "logout") == "cancelDevice":
        await session.bridge.cancel_login_device()
        return _message("Device auth cancelled")
    await session.bridge.logout()
    return _message("Logged out successfully")


async def get_user_info(request: web.Request) -> web.Response:
    session = await _query_session(request)
    return web.json_response(await session.bridge.get_user_info())


async def get_rate_limits(request: web.Request) -> web.Response:
    session = await _query_session(request)
    return web.json_response(await session.bridge.get_rate_limits())


# ------------------------------------------------------------------ #
# Models, configuration and skills
# ------------------------------------------------------------------ #


async def list_models(request: web.Request) -> web.Response:
    session = await _query_session(request)
    return web.json_response(await session.bridge.list_models())


async def set_default_model(request: web.Request) -> web.Response:
    body = await _body(request)
    (session_id,) = _require(body, "sessionId")
    (model,) = _require(body, "model")
    session = await _ready_session(request, session_id)
    await session.bridge.set_default_model(model)
    return _message("Default model set", model=model)


async def read_config(request: web.Request) -> web.Response:
    session = await _query_session(request)
    key = request.query.get("key") or None
    return web.json_response(await session.bridge.read_config(key))


async def write_config(request: web.Request) -> web.Response:
    body = await _body(request)
    (session_id,) = _require(body, "sessionId")
    (key,) = _require(body, "key")
    session = await _ready_session(request, session_id)
    await session.bridge.write_config(key, body.get("value"))
    return _message("Config updated", key=key, value=body.get("value"))


async def list_skills(request: web.Request) -> web.Response:
    session = await _query_session(request)
    return web.json_response(await session.bridge.list_skills())


# ------------------------------------------------------------------ #
# Tools
# ------------------------------------------------------------------ #


async def start_review(request: web.Request) -> web.Response:
    body = await _body(request)
    (session_id,) = _require(body, "sessionId")
    if not body.get("target"):
        raise MissingParameterError("target required (uncommitted, base, commit, or custom)")
    session = await _ready_session(request, session_id)
    result = await session.bridge.start_review(
        body["target"],
        base_branch=body.get("baseBranch"),
        commit_sha=body.get("commitSha"),
        instructions=body.get("instructions"),
    )
    return web.json_response(result)


async def get_mcp_status(request: web.Request) -> web.Response:
    session = await _query_session(request)
    return web.json_response(await session.bridge.get_mcp_server_status())


async def mcp_oauth_login(request: web.Request) -> web.Response:
    body = await _body(request)
    (session_id,) = _require(body, "sessionId")
    (server_name,) = _require(body, "serverName")
    session = await _ready_session(request, session_id)
    return web.json_response(await session.bridge.mcp_oauth_login(server_name))


async def search_files(request: web.Request) -> web.Response:
    (session_id,) = _require(request.query, "sessionId")
    (query,) = _require(request.query, "query")
    limit = _int_param(request, "limit")
    session = await _ready_session(request, session_id)
    return web.json_response(await session.bridge.fuzzy_file_search(query, limit))


async def git_diff(request: web.Request) -> web.Response:
    session = await _query_session(request)
    branch = request.query.get("branch") or None
    return web.json_response(await session.bridge.git_diff_to_remote(branch))


async def upload_feedback(request: web.Request) -> web.Response:
    body = await _body(request)
    (session_id,) = _require(body, "sessionId")
    feedback_type, message = _require(body, "type", "message")
    session = await _ready_session(request, session_id)
    await session.bridge.upload_feedback(feedback_type, message, body.get("includeLogs"))
    return _message("Feedback submitted successfully")


async def respond_to_approval(request: web.Request) -> web.Response:
    body = await _body(request)
    (session_id,) = _require(body, "sessionId")
    (item_id,) = _require(body, "itemId")
    approved = body.get("approved")
    if not isinstance(approved, bool):
        raise MissingParameterError("approved (boolean) required")
    session = await _ready_session(request, session_id)
    await session.bridge.respond_to_approval(item_id, approved)
    return _message("Approval response sent")


def _int_param(request: web.Request, name: str) -> int | None:
    raw = request.query.get(name)
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        msg = f"{name} must be an integer"
        raise MissingParameterError(msg) from None


# ------------------------------------------------------------------ #
# Table
# ------------------------------------------------------------------ #


def setup_routes(app: web.Application) -> None:
    r = app.router
    p = API_PREFIX
    # Sessions
    r.add_post(f"{p}/session", create_session)
    r.add_get(f"{p}/session", get_session)
    r.add_delete(f"{p}/session", delete_session)
    r.add_get(f"{p}/events", stream_events)
    # Conversation
    r.add_post(f"{p}/thread", start_thread)
    r.add_get(f"{p}/thread", list_threads)
    r.add_put(f"{p}/thread", resume_thread)
    r.add_delete(f"{p}/thread", archive_thread)
    r.add_post(f"{p}/turn", start_turn)
    r.add_delete(f"{p}/turn", interrupt_turn)
    r.add_post(f"{p}/approval", respond_to_approval)
    # Account
    r.add_get(f"{p}/account", get_account)
    r.add_get(f"{p}/auth", get_auth_status)
    r.add_post(f"{p}/auth", login)
    r.add_delete(f"{p}/auth", logout)
    r.add_get(f"{p}/user", get_user_info)
    r.add_get(f"{p}/ratelimits", get_rate_limits)
    # Models and configuration
    r.add_get(f"{p}/models", list_models)
    r.add_put(f"{p}/models", set_default_model)
    r.add_get(f"{p}/config", read_config)
    r.add_put(f"{p}/config", write_config)
    r.add_get(f"{p}/skills", list_skills)
    # Tools
    r.add_post(f"{p}/review", start_review)
    r.add_get(f"{p}/mcp", get_mcp_status)
    r.add_post(f"{p}/mcp/oauth", mcp_oauth_login)
    r.add_get(f"{p}/search", search_files)
    r.add_get(f"{p}/git", git_diff)
    r.add_post(f"{p}/feedback", upload_feedback)
