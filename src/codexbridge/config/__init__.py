"""Configuration models and parser for codexbridge.yaml."""

from codexbridge.config.models import (
    AgentConfig,
    BridgeConfig,
    ClientInfo,
    ServerConfig,
    SessionsConfig,
)
from codexbridge.config.parser import ConfigError, load_config

__all__ = [
    "AgentConfig",
    "BridgeConfig",
    "ClientInfo",
    "ConfigError",
    "ServerConfig",
    "SessionsConfig",
    "load_config",
]
