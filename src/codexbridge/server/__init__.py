"""HTTP boundary: aiohttp routes over the session registry."""

from codexbridge.server.app import create_app, error_middleware, error_status
from codexbridge.server.routes import (
    API_PREFIX,
    CONFIG_KEY,
    REGISTRY_KEY,
    MissingParameterError,
    setup_routes,
)

__all__ = [
    "API_PREFIX",
    "CONFIG_KEY",
    "REGISTRY_KEY",
    "MissingParameterError",
    "create_app",
    "error_middleware",
    "error_status",
    "setup_routes",
]
