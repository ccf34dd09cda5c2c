"""Configuration loading utilities for the chat client.

This module handles layered configuration:
1. Explicit path argument (highest precedence)
2. Environment variable AGENT_CHAT_CONFIG
3. Fallback to "config/default.yaml"

Values missing from the file come from :data:`DEFAULTS`. It also supports
overrides from environment variables with prefix ``AGENT_CHAT__``
(e.g., AGENT_CHAT__API__BASE_URL=http://127.0.0.1:4111).
"""

from __future__ import annotations

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict

import yaml

logger = logging.getLogger(__name__)

ENV_PREFIX = "AGENT_CHAT__"
ENV_CONFIG_PATH = "AGENT_CHAT_CONFIG"
DEFAULT_CONFIG_PATH = "config/default.yaml"

DEFAULTS: Dict[str, Any] = {
    "api": {
        "base_url": "http://localhost:4111",
        "connect_timeout": 5.0,
        "read_timeout": 60.0,
        "max_retries": 3,
        "backoff": 0.75,
    },
    "client": {
        "state_file": "data/client_state.json",
        "fallback_agents": [],
    },
    "stream": {
        # None: quoted-text frames are accepted on any tag
        "text_tags": None,
    },
    "bridge": {
        "host": "127.0.0.1",
        "port": 8765,
        "cors_origins": ["*"],
    },
    "logging": {"level": "INFO"},
}


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    out = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(out.get(key), dict):
            out[key] = _merge(out[key], value)
        else:
            out[key] = value
    return out


def _apply_env_overrides(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Apply environment variable overrides with prefix AGENT_CHAT__."""
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        # e.g., AGENT_CHAT__API__MAX_RETRIES -> cfg["api"]["max_retries"]
        parts = key[len(ENV_PREFIX):].lower().split("__")
        sub = cfg
        for p in parts[:-1]:
            if p not in sub or not isinstance(sub[p], dict):
                sub[p] = {}
            sub = sub[p]
        leaf = parts[-1]
        # Attempt to parse simple types (bool, int, float)
        if value.lower() in {"true", "false"}:
            sub[leaf] = value.lower() == "true"
        else:
            try:
                if "." in value:
                    sub[leaf] = float(value)
                else:
                    sub[leaf] = int(value)
            except ValueError:
                sub[leaf] = value
    return cfg


def load_config(path: str | None = None) -> Dict[str, Any]:
    """Load YAML configuration for the chat client.

    Parameters
    ----------
    path : str | None
        Optional path to a configuration file. If not provided, the
        environment variable ``AGENT_CHAT_CONFIG`` is consulted. As a
        last resort ``config/default.yaml`` is used.

    Returns
    -------
    Dict[str, Any]
        Defaults merged with the file contents, environment overrides applied.
    """
    if path is None:
        path = os.environ.get(ENV_CONFIG_PATH, DEFAULT_CONFIG_PATH)

    path_obj = Path(path)
    if not path_obj.exists():
        logger.warning("Config file not found at %s. Using defaults.", path_obj)
        return _apply_env_overrides(copy.deepcopy(DEFAULTS))

    with path_obj.open("r", encoding="utf-8") as f:
        try:
            cfg = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise RuntimeError(f"Failed to parse config file {path_obj}: {e}") from e

    if not isinstance(cfg, dict):
        raise RuntimeError(f"Invalid config format in {path_obj}, expected dict.")

    return _apply_env_overrides(_merge(DEFAULTS, cfg))
