from __future__ import annotations

import json
import os
import warnings
from dataclasses import dataclass
from pathlib import Path
from typing import Any

DEFAULT_CONFIG_PATH = Path("~/.config/convomem/config.json").expanduser()
DEFAULT_DB_PATH = Path("~/.convomem/store.sqlite").expanduser()

CONFIG_ENV_OVERRIDES = {
    "db_path": "CONVOMEM_DB_PATH",
    "user_id": "CONVOMEM_USER_ID",
    "flush_every": "CONVOMEM_FLUSH_EVERY",
    "search_limit": "CONVOMEM_SEARCH_LIMIT",
    "context_radius": "CONVOMEM_CONTEXT_RADIUS",
    "short_term_size": "CONVOMEM_SHORT_TERM_SIZE",
    "long_term_limit": "CONVOMEM_LONG_TERM_LIMIT",
    "emotional_limit": "CONVOMEM_EMOTIONAL_LIMIT",
    "contextual_limit": "CONVOMEM_CONTEXTUAL_LIMIT",
    "linked_reference_limit": "CONVOMEM_LINKED_REFERENCE_LIMIT",
    "completion_model": "CONVOMEM_COMPLETION_MODEL",
    "completion_api_key": "CONVOMEM_COMPLETION_API_KEY",
    "completion_base_url": "CONVOMEM_COMPLETION_BASE_URL",
    "completion_timeout_s": "CONVOMEM_COMPLETION_TIMEOUT_S",
    "log_level": "CONVOMEM_LOG_LEVEL",
}

_INT_KEYS = {
    "flush_every",
    "search_limit",
    "context_radius",
    "short_term_size",
    "long_term_limit",
    "emotional_limit",
    "contextual_limit",
    "linked_reference_limit",
    "completion_timeout_s",
}


def get_config_path(path: Path | None = None) -> Path:
    candidate = path or Path(os.getenv("CONVOMEM_CONFIG", DEFAULT_CONFIG_PATH))
    return candidate.expanduser()


def read_config_file(path: Path | None = None) -> dict[str, Any]:
    config_path = get_config_path(path)
    if not config_path.exists():
        return {}
    raw = config_path.read_text()
    if not raw.strip():
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError("invalid config json") from exc
    if not isinstance(data, dict):
        raise ValueError("config must be an object")
    return data


def get_env_overrides() -> dict[str, str]:
    overrides: dict[str, str] = {}
    for key, env_var in CONFIG_ENV_OVERRIDES.items():
        value = os.getenv(env_var)
        if value is not None:
            overrides[key] = value
    return overrides


@dataclass
class ConvomemConfig:
    db_path: str = str(DEFAULT_DB_PATH)
    # Empty means "use the device id stored alongside the data".
    user_id: str = ""
    flush_every: int = 10
    search_limit: int = 50
    context_radius: int = 2
    short_term_size: int = 50
    long_term_limit: int = 500
    emotional_limit: int = 2000
    contextual_limit: int = 1000
    linked_reference_limit: int = 10
    completion_model: str = "gpt-4o-mini"
    completion_api_key: str | None = None
    completion_base_url: str | None = None
    completion_timeout_s: int = 30
    log_level: str = "WARNING"


def _parse_int(value: object, default: int, *, key: str) -> int:
    if value is None:
        return default
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        warnings.warn(f"Invalid int for {key}: {value!r}", RuntimeWarning, stacklevel=2)
        return default


def load_config(path: Path | None = None) -> ConvomemConfig:
    """File values first, then ``CONVOMEM_*`` env overrides. A broken file is skipped."""

    cfg = ConvomemConfig()
    try:
        data = read_config_file(path)
    except ValueError as exc:
        warnings.warn(f"Ignoring config file: {exc}", RuntimeWarning, stacklevel=2)
        data = {}
    cfg = _apply_dict(cfg, data)
    return _apply_dict(cfg, get_env_overrides())


def _apply_dict(cfg: ConvomemConfig, data: dict[str, Any]) -> ConvomemConfig:
    for key, value in data.items():
        if not hasattr(cfg, key):
            continue
        if key in _INT_KEYS:
            setattr(cfg, key, _parse_int(value, getattr(cfg, key), key=key))
            continue
        setattr(cfg, key, value)
    return cfg
