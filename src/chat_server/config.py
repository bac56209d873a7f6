"""Configuration loading utilities for the chat server.

This module handles layered configuration:
1. Explicit path argument (highest precedence)
2. Environment variable CHAT_SERVER_CONFIG
3. Fallback to "config/default.yaml"

The loaded file is deep-merged over :data:`DEFAULTS`, so every section is
always present. It also supports optional overrides from environment
variables with prefix ``CHAT_SERVER__`` (e.g.,
CHAT_SERVER__STREAMS__BACKEND=redis), plus a handful of well-known
deployment variables such as ``REDIS_URL`` and ``PLATFORM_API_KEY``.
"""

from __future__ import annotations

import copy
import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger(__name__)

DEFAULTS: Dict[str, Any] = {
    "server": {"cors_origins": ["*"]},
    "logging": {
        "level": "INFO",
        "format": "%(asctime)s %(levelname)s %(name)s: %(message)s",
    },
    "storage": {"backend": "memory", "data_dir": "data"},
    "streams": {
        # memory | redis | none
        "backend": "memory",
        "redis_url": None,
        "key_prefix": "chat-stream:",
        "buffer_size": 2048,
        "retention_seconds": 3600,
        "lease_seconds": 10,
        "resume_window_seconds": 15,
    },
    "turns": {
        "max_rounds": 5,
        "deadline_seconds": 60,
        "chunking": "word",
        "system_prompt": (
            "You are a friendly assistant! Keep your responses concise and helpful. "
            "When asked about a Polish company by its KRS number, use the "
            "getCompanyByKRS tool."
        ),
    },
    "quota": {
        "window_hours": 24,
        "max_messages_per_day": {"guest": 20, "regular": 100},
    },
    "models": {
        "default": "chat-model",
        "title_model": "title-model",
        "providers": {},
    },
    "tools": {
        "company_registry": {"base_url": None, "api_key": None, "timeout": 10.0},
    },
    "auth": {"tokens": {}},
}

# Deployment variables honoured without the CHAT_SERVER__ prefix.
_WELL_KNOWN_ENV = {
    "REDIS_URL": ("streams", "redis_url"),
    "PLATFORM_API_BASE_URL": ("tools", "company_registry", "base_url"),
    "PLATFORM_API_KEY": ("tools", "company_registry", "api_key"),
}

_SECRET_KEY_RE = re.compile(r"(api_?key|secret|password|^tokens?$)", re.I)
_URL_CREDS_RE = re.compile(r"(://)[^/@\s]+@")


def deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Return a copy of ``base`` with ``override`` merged in recursively."""
    out = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(out.get(key), dict):
            out[key] = deep_merge(out[key], value)
        else:
            out[key] = copy.deepcopy(value)
    return out


def _coerce(value: str) -> Any:
    if value.lower() in {"true", "false"}:
        return value.lower() == "true"
    try:
        if "." in value:
            return float(value)
        return int(value)
    except ValueError:
        return value


def _set_path(cfg: Dict[str, Any], parts: tuple, value: Any) -> None:
    sub = cfg
    for p in parts[:-1]:
        if p not in sub or not isinstance(sub[p], dict):
            sub[p] = {}
        sub = sub[p]
    sub[parts[-1]] = value


def _apply_env_overrides(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Apply environment variable overrides with prefix CHAT_SERVER__."""
    for key, path in _WELL_KNOWN_ENV.items():
        value = os.environ.get(key)
        if value:
            _set_path(cfg, path, value)
    if os.environ.get("REDIS_URL") and "CHAT_SERVER__STREAMS__BACKEND" not in os.environ:
        cfg["streams"]["backend"] = "redis"

    prefix = "CHAT_SERVER__"
    for key, value in os.environ.items():
        if not key.startswith(prefix):
            continue
        # e.g., CHAT_SERVER__TURNS__MAX_ROUNDS -> cfg["turns"]["max_rounds"]
        parts = tuple(key[len(prefix):].lower().split("__"))
        _set_path(cfg, parts, _coerce(value))
    return cfg


def load_config(path: Optional[str] = None) -> Dict[str, Any]:
    """Load YAML configuration for the chat server.

    Parameters
    ----------
    path : str | None
        Optional path to a configuration file. If not provided, the
        environment variable ``CHAT_SERVER_CONFIG`` is consulted. As a
        last resort ``config/default.yaml`` is used.

    Returns
    -------
    Dict[str, Any]
        Parsed configuration merged over the defaults, with environment
        overrides applied.
    """
    # Resolve path precedence
    if path is None:
        path = os.environ.get("CHAT_SERVER_CONFIG", "config/default.yaml")

    path_obj = Path(path)
    if not path_obj.exists():
        logger.warning("Config file not found at %s; using defaults.", path_obj)
        return _apply_env_overrides(deep_merge(DEFAULTS, {}))

    with path_obj.open("r", encoding="utf-8") as f:
        try:
            loaded = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise RuntimeError(f"Failed to parse config file {path_obj}: {e}")

    if not isinstance(loaded, dict):
        raise RuntimeError(f"Invalid config format in {path_obj}, expected dict.")

    return _apply_env_overrides(deep_merge(DEFAULTS, loaded))


def redact_config(cfg: Any) -> Any:
    """Mask credentials before a config is exposed over HTTP."""
    if isinstance(cfg, dict):
        out: Dict[str, Any] = {}
        for k, v in cfg.items():
            if _SECRET_KEY_RE.search(str(k)) and v not in (None, "", {}):
                out[k] = "***"
            else:
                out[k] = redact_config(v)
        return out
    if isinstance(cfg, list):
        return [redact_config(v) for v in cfg]
    if isinstance(cfg, str):
        return _URL_CREDS_RE.sub(r"\1***@", cfg)
    return cfg


def configure_logging(cfg: Dict[str, Any]) -> None:
    log_cfg = cfg.get("logging", {}) or {}
    logging.basicConfig(
        level=str(log_cfg.get("level", "INFO")).upper(),
        format=log_cfg.get("format") or DEFAULTS["logging"]["format"],
    )
