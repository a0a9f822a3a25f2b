"""Configuration loading utilities for the chat relay.

This module handles layered configuration:
1. Explicit path argument (highest precedence)
2. Environment variable CHAT_RELAY_CONFIG
3. Fallback to "config/default.yaml"

Values missing from the file are filled from :data:`DEFAULTS`. Environment
variables with prefix ``CHAT_RELAY__`` override any key
(e.g., CHAT_RELAY__MEMORY__BACKEND=session).
"""

from __future__ import annotations

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict, Mapping

import yaml

from .errors import ConfigError

logger = logging.getLogger(__name__)

ENV_PREFIX = "CHAT_RELAY__"

DEFAULT_SYSTEM_PROMPT = (
    "Your task is to help the user to prepare a meal according to the ingredients "
    "they have in the fridge. You may receive multiple messages from the user, each "
    "containing a list of ingredients. Based on the ingredients provided, suggest a "
    "recipe that can be made with those ingredients. If the user provides additional "
    "ingredients in subsequent messages, update your recipe suggestion accordingly. "
    "Always aim to create a delicious and feasible meal plan based on the available "
    "ingredients."
)

DEFAULTS: Dict[str, Any] = {
    "server": {
        "cors_origin": "*",
        "session_header": "X-Session-ID",
        "ip_header": "CF-Connecting-IP",
        "static_dir": None,
    },
    "memory": {
        "backend": "kv",
        "max_messages": 50,
        "ttl_seconds": 60 * 60 * 24 * 7,
        "key_prefix": "conversation:",
        "kv": {"url": "memory://"},
        "session": {"data_dir": "data/sessions", "max_messages": None, "max_resident": 1024},
    },
    "inference": {
        "base_url": "https://api.cloudflare.com/client/v4",
        "account_id": "",
        "api_token": "",
        "model": "@cf/meta/llama-3.3-70b-instruct-fp8-fast",
        "max_tokens": 1024,
        "timeout": 60.0,
    },
    "prompt": {
        "system": DEFAULT_SYSTEM_PROMPT,
        "fallback_reply": "Sorry, I couldn't come up with a reply just now. Please try again.",
    },
    "logging": {"level": "INFO"},
}


def _merge(base: Dict[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    """Recursively merge ``override`` into a copy of ``base``."""
    out = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(out.get(key), dict):
            out[key] = _merge(out[key], value)
        else:
            out[key] = copy.deepcopy(value)
    return out


def _coerce(value: str) -> Any:
    if value.lower() in {"true", "false"}:
        return value.lower() == "true"
    if value.lower() in {"null", "none"}:
        return None
    try:
        if "." in value:
            return float(value)
        return int(value)
    except ValueError:
        return value


def _apply_env_overrides(cfg: Dict[str, Any], environ: Mapping[str, str]) -> Dict[str, Any]:
    """Apply environment variable overrides with prefix CHAT_RELAY__."""
    for key, value in environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        # e.g., CHAT_RELAY__MEMORY__KV__URL -> cfg["memory"]["kv"]["url"]
        parts = key[len(ENV_PREFIX):].lower().split("__")
        sub = cfg
        for p in parts[:-1]:
            if p not in sub or not isinstance(sub[p], dict):
                sub[p] = {}
            sub = sub[p]
        sub[parts[-1]] = _coerce(value)
    return cfg


def load_config(path: str | None = None, environ: Mapping[str, str] | None = None) -> Dict[str, Any]:
    """Load YAML configuration for the chat relay.

    Parameters
    ----------
    path : str | None
        Optional path to a configuration file. If not provided, the
        environment variable ``CHAT_RELAY_CONFIG`` is consulted. As a
        last resort ``config/default.yaml`` is used.
    environ : Mapping[str, str] | None
        Environment to read overrides from (defaults to ``os.environ``).

    Returns
    -------
    Dict[str, Any]
        Defaults merged with the file contents, then environment overrides.
    """
    env = os.environ if environ is None else environ
    if path is None:
        path = env.get("CHAT_RELAY_CONFIG", "config/default.yaml")

    path_obj = Path(path)
    if not path_obj.exists():
        logger.warning("Config file not found at %s. Using defaults.", path_obj)
        return _apply_env_overrides(copy.deepcopy(DEFAULTS), env)

    with path_obj.open("r", encoding="utf-8") as f:
        try:
            loaded = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Failed to parse config file {path_obj}: {e}") from e

    if not isinstance(loaded, dict):
        raise ConfigError(f"Invalid config format in {path_obj}, expected a mapping.")

    return _apply_env_overrides(_merge(DEFAULTS, loaded), env)


def resolve_config(cfg: Mapping[str, Any] | None) -> Dict[str, Any]:
    """Fill a partial, already-loaded config dict with defaults."""
    return _merge(DEFAULTS, cfg or {})


def setup_logging(cfg: Mapping[str, Any]) -> None:
    level_name = str(cfg.get("logging", {}).get("level", "INFO")).upper()
    level = getattr(logging, level_name, None)
    if not isinstance(level, int):
        raise ConfigError(f"Unknown logging level: {level_name!r}")
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
