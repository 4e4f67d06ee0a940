"""Load, validate, and resolve codexbridge.yaml configuration."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv
from pydantic import ValidationError

from codexbridge.config.models import BridgeConfig

DEFAULT_CONFIG_NAME = "codexbridge.yaml"

#: Environment variable that overrides ``agent.codex_path``.
CODEX_PATH_ENV = "CODEX_PATH"


class ConfigError(Exception):
    """User-facing configuration error."""


def load_config(path: Path | None = None) -> BridgeConfig:
    """Load and validate a codexbridge.yaml file.

    Args:
        path: Explicit config file path. If None, looks for
              codexbridge.yaml in the current directory and falls back
              to built-in defaults when there is none.

    Returns:
        A validated BridgeConfig instance.

    Raises:
        ConfigError: On a missing explicit file, bad YAML, or validation
            failure.
    """
    config_path = _resolve_path(path)
    if config_path is None:
        _load_env(Path.cwd())
        raw: dict[str, Any] = {}
    else:
        raw = _read_yaml(config_path)
        _load_env(config_path.parent)
    _apply_env_overrides(raw)
    return _validate(raw)


def _resolve_path(path: Path | None) -> Path | None:
    if path is not None:
        resolved = Path(path)
        if not resolved.is_file():
            msg = f"Config file not found: {resolved}"
            raise ConfigError(msg)
        return resolved

    default = Path.cwd() / DEFAULT_CONFIG_NAME
    return default if default.is_file() else None


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        msg = f"Cannot read config file: {exc}"
        raise ConfigError(msg) from exc

    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        detail = ""
        if hasattr(exc, "problem_mark") and exc.problem_mark is not None:
            mark = exc.problem_mark
            detail = f" (line {mark.line + 1}, column {mark.column + 1})"
        msg = f"Invalid YAML in {path.name}{detail}"
        raise ConfigError(msg) from exc

    if data is None:
        return {}
    if not isinstance(data, dict):
        msg = f"Expected a YAML mapping in {path.name}, got {type(data).__name__}"
        raise ConfigError(msg)

    return data


def _load_env(config_dir: Path) -> None:
    env_path = config_dir / ".env"
    if env_path.is_file():
        load_dotenv(env_path)


def _apply_env_overrides(raw: dict[str, Any]) -> None:
    codex_path = os.environ.get(CODEX_PATH_ENV)
    if not codex_path:
        return
    agent = raw.setdefault("agent", {})
    if isinstance(agent, dict):
        agent["codex_path"] = codex_path


def _validate(raw: dict[str, Any]) -> BridgeConfig:
    try:
        return BridgeConfig.model_validate(raw)
    except ValidationError as exc:
        parts: list[str] = []
        for err in exc.errors():
            loc = " → ".join(str(s) for s in err["loc"])
            msg = err["msg"]
            if "field required" in msg.lower():
                msg = "This field is required"
            elif "input should be" in msg.lower():
                msg = f"Invalid value: {msg}"
            elif "extra inputs are not permitted" in msg.lower():
                msg = "Unknown setting"
            parts.append(f"  {loc}: {msg}")
        joined = "\n".join(parts)
        msg = f"Config validation failed:\n{joined}"
        raise ConfigError(msg) from exc
