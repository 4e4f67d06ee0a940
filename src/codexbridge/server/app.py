"""aiohttp application factory and error translation."""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable

from aiohttp import web

from codexbridge.config.models import BridgeConfig
from codexbridge.rpc.errors import InitTimeoutError, SessionNotFoundError
from codexbridge.server.routes import (
    CONFIG_KEY,
    REGISTRY_KEY,
    MissingParameterError,
    setup_routes,
)
from codexbridge.session.registry import SessionRegistry

logger = logging.getLogger(__name__)

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


def error_status(exc: BaseException) -> int:
    """HTTP status for an exception escaping a route handler."""
    if isinstance(exc, SessionNotFoundError):
        return 404
    if isinstance(exc, InitTimeoutError):
        return 408
    if isinstance(exc, MissingParameterError):
        return 400
    return 500


@web.middleware
async def error_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    """Log each request and turn handler exceptions into ``{"error": ...}``."""
    start = time.monotonic()
    try:
        response = await handler(request)
    except web.HTTPException:
        raise
    except Exception as exc:
        status = error_status(exc)
        if status == 500:
            logger.exception("HTTP %s %s failed", request.method, request.path_qs)
        else:
            logger.info("HTTP %s %s status=%d: %s", request.method, request.path_qs, status, exc)
        message = str(exc) or type(exc).__name__
        return web.json_response({"error": message}, status=status)
    logger.debug(
        "HTTP %s %s status=%s duration_ms=%.1f",
        request.method,
        request.path_qs,
        response.status,
        (time.monotonic() - start) * 1000,
    )
    return response


async def _start_registry(app: web.Application) -> None:
    await app[REGISTRY_KEY].start()


async def _close_streams(app: web.Application) -> None:
    closed = app[REGISTRY_KEY].close_streams()
    if closed:
        logger.info("Closed %d event stream(s)", closed)


async def _shutdown_registry(app: web.Application) -> None:
    await app[REGISTRY_KEY].shutdown()


def create_app(
    config: BridgeConfig | None = None,
    registry: SessionRegistry | None = None,
) -> web.Application:
    """Build the HTTP application around one session registry.

    The registry's sweeper starts with the app.  Open event streams are
    ended on shutdown and every session is stopped on cleanup.
    """
    config = config or BridgeConfig()
    app = web.Application(middlewares=[error_middleware])
    app[CONFIG_KEY] = config
    app[REGISTRY_KEY] = registry or SessionRegistry(config)
    app.on_startup.append(_start_registry)
    app.on_shutdown.append(_close_streams)
    app.on_cleanup.append(_shutdown_registry)
    setup_routes(app)
    return app
