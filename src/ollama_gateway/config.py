"""Configuration loading utilities for the gateway.

This module handles layered configuration:
1. Explicit path argument (highest precedence)
2. Environment variable OLLAMA_GATEWAY_CONFIG
3. Fallback to "config/default.yaml"

It also supports optional overrides from environment variables with prefix
``OLLAMA_GATEWAY__`` (e.g., OLLAMA_GATEWAY__BACKEND__BASE_URL=http://gpu:11434).

The merged dictionary is turned into a :class:`GatewayConfig` once at process
start and handed to :func:`ollama_gateway.server.create_app`.
"""

from __future__ import annotations

import copy
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

logger = logging.getLogger(__name__)

ENV_PREFIX = "OLLAMA_GATEWAY__"
ENV_CONFIG_PATH = "OLLAMA_GATEWAY_CONFIG"
DEFAULT_CONFIG_PATH = "config/default.yaml"

DEFAULTS: Dict[str, Any] = {
    "backend": {
        "base_url": "http://localhost:11434",
        "default_model": "llama3.2",
        "generate_path": "/api/generate",
        "models_path": "/api/tags",
        "timeout": None,
        "options": {},
    },
    "database": {
        "url": "sqlite:///data/gateway.db",
        "echo": False,
    },
    "server": {
        "cors_origins": ["*"],
        "history_window": 10,
    },
    "logging": {
        "level": "INFO",
    },
}


# -----------------------------
# Typed config
# -----------------------------
@dataclass
class BackendConfig:
    base_url: str = "http://localhost:11434"
    default_model: str = "llama3.2"
    generate_path: str = "/api/generate"
    models_path: str = "/api/tags"
    timeout: Optional[float] = None  # no upstream timeout unless configured
    options: Dict[str, Any] = field(default_factory=dict)


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///data/gateway.db"
    echo: bool = False


@dataclass
class ServerConfig:
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    history_window: int = 10


@dataclass
class LoggingConfig:
    level: str = "INFO"


@dataclass
class GatewayConfig:
    backend: BackendConfig = field(default_factory=BackendConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, cfg: Dict[str, Any]) -> "GatewayConfig":
        """Build a config from a (possibly partial) nested dictionary."""
        backend = dict(cfg.get("backend") or {})
        database = dict(cfg.get("database") or {})
        server = dict(cfg.get("server") or {})
        log_cfg = dict(cfg.get("logging") or {})

        timeout = backend.get("timeout")
        return cls(
            backend=BackendConfig(
                base_url=str(backend.get("base_url", BackendConfig.base_url)).rstrip("/"),
                default_model=str(backend.get("default_model", BackendConfig.default_model)),
                generate_path=str(backend.get("generate_path", BackendConfig.generate_path)),
                models_path=str(backend.get("models_path", BackendConfig.models_path)),
                timeout=None if timeout is None else float(timeout),
                options=dict(backend.get("options") or {}),
            ),
            database=DatabaseConfig(
                url=str(database.get("url", DatabaseConfig.url)),
                echo=bool(database.get("echo", False)),
            ),
            server=ServerConfig(
                cors_origins=list(server.get("cors_origins") or ["*"]),
                history_window=int(server.get("history_window", 10)),
            ),
            logging=LoggingConfig(level=str(log_cfg.get("level", "INFO")).upper()),
        )


# -----------------------------
# Loading
# -----------------------------
def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge ``override`` into a copy of ``base``."""
    out = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(out.get(key), dict):
            out[key] = _merge(out[key], value)
        else:
            out[key] = value
    return out


def _apply_env_overrides(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Apply environment variable overrides with prefix OLLAMA_GATEWAY__."""
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        # e.g., OLLAMA_GATEWAY__BACKEND__BASE_URL -> cfg["backend"]["base_url"]
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
    """Load YAML configuration for the gateway.

    Parameters
    ----------
    path : str | None
        Optional path to a configuration file. If not provided, the
        environment variable ``OLLAMA_GATEWAY_CONFIG`` is consulted. As a
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


def load_gateway_config(path: str | None = None) -> GatewayConfig:
    """Shortcut for ``GatewayConfig.from_dict(load_config(path))``."""
    return GatewayConfig.from_dict(load_config(path))
