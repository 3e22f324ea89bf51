from __future__ import annotations

import json
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Mapping
from urllib.parse import urlparse

__all__ = [
    "DEFAULT_BACKEND_URL",
    "DEFAULT_TIMEOUT",
    "ClientConfig",
    "default_config_path",
    "load_client_config",
    "normalize_base_url",
]

DEFAULT_BACKEND_URL = "http://localhost:5001"
DEFAULT_TIMEOUT = 15.0
CONFIG_ENV = "VERSEMARK_CONFIG"

_ENV_KEYS = {
    "base_url": "VERSEMARK_BACKEND_URL",
    "token": "VERSEMARK_TOKEN",
    "timeout": "VERSEMARK_TIMEOUT",
    "include_friends": "VERSEMARK_INCLUDE_FRIENDS",
}
_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


@dataclass(slots=True)
class ClientConfig:
    base_url: str = DEFAULT_BACKEND_URL
    token: str | None = None
    timeout: float = DEFAULT_TIMEOUT
    include_friends: bool = True


def normalize_base_url(base_url: str) -> str:
    trimmed = base_url.strip()
    if not trimmed:
        raise ValueError("Backend URL cannot be empty.")
    if "://" not in trimmed:
        trimmed = f"http://{trimmed}"
    parsed = urlparse(trimmed)
    if parsed.scheme not in {"http", "https"}:
        raise ValueError(f"Unsupported backend URL scheme: {parsed.scheme}")
    if not parsed.hostname:
        raise ValueError(f"Invalid backend URL: {base_url}")
    return trimmed.rstrip("/")


def default_config_path() -> Path:
    override = os.environ.get(CONFIG_ENV)
    if override:
        return Path(override).expanduser()
    base = os.environ.get("XDG_CONFIG_HOME")
    root = Path(base).expanduser() if base else Path.home() / ".config"
    return root / "versemark" / "config.json"


def _parse_bool(value: object, name: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_VALUES:
            return True
        if lowered in _FALSE_VALUES:
            return False
    raise ValueError(f"{name} must be a boolean.")


def _parse_timeout(value: object, name: str) -> float:
    if isinstance(value, bool):
        raise ValueError(f"{name} must be a positive number.")
    try:
        timeout = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be a positive number.") from exc
    if timeout <= 0:
        raise ValueError(f"{name} must be a positive number.")
    return timeout


def _apply(config: ClientConfig, values: Mapping[str, object], source: str) -> ClientConfig:
    updates: dict[str, object] = {}
    base_url = values.get("base_url")
    if base_url is not None:
        if not isinstance(base_url, str):
            raise ValueError(f"{source}: base_url must be a string.")
        updates["base_url"] = normalize_base_url(base_url)
    token = values.get("token")
    if token is not None:
        if not isinstance(token, str):
            raise ValueError(f"{source}: token must be a string.")
        updates["token"] = token.strip() or None
    timeout = values.get("timeout")
    if timeout is not None:
        updates["timeout"] = _parse_timeout(timeout, f"{source}: timeout")
    include_friends = values.get("include_friends")
    if include_friends is not None:
        updates["include_friends"] = _parse_bool(include_friends, f"{source}: include_friends")
    if not updates:
        return config
    return replace(config, **updates)


def _read_config_file(path: Path) -> dict[str, object]:
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return {}
    except (OSError, json.JSONDecodeError) as exc:
        raise ValueError(f"Failed to parse config file: {path}") from exc
    if not isinstance(raw, dict):
        raise ValueError(f"{path.name} must contain a JSON object.")
    return raw


def load_client_config(
    path: Path | None = None,
    *,
    overrides: Mapping[str, object] | None = None,
    env: Mapping[str, str] | None = None,
) -> ClientConfig:
    """
    Resolve the client configuration.

    Later sources win: defaults, the JSON config file, ``VERSEMARK_*``
    environment variables, then ``overrides`` (CLI flags). ``None`` values in
    ``overrides`` are ignored.
    """
    if env is None:
        env = os.environ
    config = ClientConfig()
    config_path = path if path is not None else default_config_path()
    config = _apply(config, _read_config_file(config_path), config_path.name)
    env_values = {
        key: env[name]
        for key, name in _ENV_KEYS.items()
        if env.get(name)
    }
    config = _apply(config, env_values, "environment")
    if overrides:
        config = _apply(
            config,
            {key: value for key, value in overrides.items() if value is not None},
            "arguments",
        )
    return config
