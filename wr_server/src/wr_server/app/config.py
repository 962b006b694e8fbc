"""
Unified server configuration for the workspace reconciler (wr_server).

This module centralizes:
- Defaults for all server settings
- Loading from environment variables
- Optional .env file hydration (only for allowed keys, via python-dotenv)
- Helpers for derived names (containers, volumes, images)

Usage:
    from wr_server.app.config import get_settings

    settings = get_settings()
    print(settings.engine_base_url)

Notes:
- Environment variables always take precedence over .env values.
- The container engine endpoint is an explicit value here and is passed into
  the engine adapter and reconciler; nothing reads it from ambient state.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import List, Optional
from urllib.parse import urlparse

from dotenv import dotenv_values


# ----------------------------
# Helpers: env, parsing, types
# ----------------------------

_ALLOWED_DOTENV_KEYS = {
    # Auth
    "WORKSPACE_API_KEY",
    "WORKSPACE_API_KEY_HEADER",
    "WORKSPACE_API_KEYS",
    # Container engine
    "WORKSPACE_ENGINE_URL",
    "WORKSPACE_ENGINE_TIMEOUT",
    "WORKSPACE_ENGINE_PLATFORM",
    "WORKSPACE_ENGINE_SOCKET",
    # Naming
    "WORKSPACE_CONTAINER_PREFIX",
    "WORKSPACE_VOLUME_PREFIX",
    "WORKSPACE_IMAGE_PREFIX",
    # Templates and state
    "WORKSPACE_TEMPLATES_DIR",
    "WORKSPACE_TEMPLATES_FAIL_FAST",
    "WORKSPACE_STATE_DIR",
    # Agent handshake
    "WORKSPACE_AGENT_TOKEN_SECRET",
    "WORKSPACE_AGENT_TOKEN_TTL_SECONDS",
    "WORKSPACE_ACCESS_URL",
    "WORKSPACE_HANDSHAKE_TIMEOUT_SECONDS",
    "WORKSPACE_HANDSHAKE_POLL_SECONDS",
    # Reconciler behavior
    "WORKSPACE_VOLUME_WORKERS",
    "WORKSPACE_PURGE_ON_DELETE",
    "WORKSPACE_STOP_TIMEOUT_SECONDS",
    # Service
    "WORKSPACE_RECONCILER_VERSION",
    "CORS_ALLOW_ORIGINS",
    "LOG_LEVEL",
}

_DEFAULT_ENGINE_URL = "unix:///var/run/docker.sock"
_DEFAULT_SOCKET_TARGET = "/var/run/docker.sock"


def _str2bool(val: str | None, default: bool = False) -> bool:
    if val is None:
        return default
    s = val.strip().lower()
    return s in ("1", "true", "yes", "y", "on")


def _split_csv(s: str | None) -> List[str]:
    if not s:
        return []
    return [part.strip() for part in s.split(",") if part.strip()]


def _int_env(name: str, default: int, minimum: Optional[int] = None) -> int:
    try:
        value = int(os.getenv(name, str(default)))
    except ValueError:
        value = default
    if minimum is not None:
        value = max(minimum, value)
    return value


def _float_env(name: str, default: float, minimum: Optional[float] = None) -> float:
    try:
        value = float(os.getenv(name, str(default)))
    except ValueError:
        value = default
    if minimum is not None:
        value = max(minimum, value)
    return value


def _socket_path_from_url(engine_url: str) -> Optional[str]:
    """
    Derive the host path of the engine control socket from a unix:// URL.
    Returns None for TCP endpoints (nothing to mount).
    """
    parsed = urlparse(engine_url)
    if parsed.scheme in ("unix", "npipe"):
        return parsed.path or None
    return None


def _load_dotenv_into_env(dotenv_path: Optional[Path] = None, allowed_keys: Optional[set[str]] = None) -> None:
    """
    Hydrate os.environ from a .env file:
    - Looks for .env in the working directory and the package ancestors by default
    - Only sets variables from allowed_keys that are not already present
    """
    if dotenv_path:
        path: Optional[Path] = Path(dotenv_path)
    else:
        path = None
        here = Path(__file__).resolve()
        for ancestor in [Path.cwd(), *list(here.parents)[:5]]:
            candidate = ancestor / ".env"
            if candidate.is_file():
                path = candidate
                break
    if path is None or not path.is_file():
        return
    allow = set(allowed_keys or _ALLOWED_DOTENV_KEYS)
    for key, val in dotenv_values(path).items():
        if key in allow and val is not None and key not in os.environ:
            os.environ[key] = val


# ----------------------------
# Unified configuration object
# ----------------------------

@dataclass(frozen=True)
class ServerConfig:
    """
    Unified configuration for the workspace reconciler.

    All fields are immutable once created. Use from_env() to construct an instance.
    """

    # Security / auth
    api_key: Optional[str]
    api_key_header_name: str
    api_keys: List[str]

    # Container engine endpoint
    engine_base_url: str
    engine_timeout: int
    engine_platform: Optional[str]
    engine_socket_path: Optional[str]
    engine_socket_target: str

    # Resource naming
    container_name_prefix: str
    volume_name_prefix: str
    image_name_prefix: str

    # Templates and workspace state
    templates_dir: Optional[str]
    templates_fail_fast: bool
    state_dir: Optional[str]

    # Agent handshake
    agent_token_secret: str
    agent_token_ttl_seconds: int
    access_url: str
    handshake_timeout_seconds: float
    handshake_poll_seconds: float

    # Reconciler behavior
    volume_workers: int
    purge_on_delete: bool
    stop_timeout_seconds: int

    # CORS and service metadata
    cors_allow_origins: List[str]
    service_version: str
    log_level: str

    @staticmethod
    def from_env(dotenv: bool = True, dotenv_path: Optional[str | Path] = None) -> "ServerConfig":
        """
        Construct ServerConfig with values pulled from the current environment,
        optionally hydrated by a .env file if dotenv=True.
        """
        if dotenv:
            _load_dotenv_into_env(Path(dotenv_path) if dotenv_path else None, _ALLOWED_DOTENV_KEYS)

        # Security
        api_key = os.getenv("WORKSPACE_API_KEY") or None
        api_key_header = os.getenv("WORKSPACE_API_KEY_HEADER", "X-API-Key")
        api_keys = _split_csv(os.getenv("WORKSPACE_API_KEYS"))
        if api_key and api_key not in api_keys:
            api_keys.insert(0, api_key)

        # Engine
        engine_url = os.getenv("WORKSPACE_ENGINE_URL") or _DEFAULT_ENGINE_URL
        socket_path = os.getenv("WORKSPACE_ENGINE_SOCKET") or _socket_path_from_url(engine_url)

        # Agent token secret: a fixed development value keeps local runs working
        token_secret = os.getenv("WORKSPACE_AGENT_TOKEN_SECRET") or "dev-agent-token-secret"

        return ServerConfig(
            api_key=api_key,
            api_key_header_name=api_key_header,
            api_keys=api_keys,
            engine_base_url=engine_url,
            engine_timeout=_int_env("WORKSPACE_ENGINE_TIMEOUT", 600, minimum=1),
            engine_platform=os.getenv("WORKSPACE_ENGINE_PLATFORM") or None,
            engine_socket_path=socket_path,
            engine_socket_target=_DEFAULT_SOCKET_TARGET,
            container_name_prefix=os.getenv("WORKSPACE_CONTAINER_PREFIX", "wr-ws-"),
            volume_name_prefix=os.getenv("WORKSPACE_VOLUME_PREFIX", "wr-"),
            image_name_prefix=os.getenv("WORKSPACE_IMAGE_PREFIX", "wr-ws-"),
            templates_dir=os.getenv("WORKSPACE_TEMPLATES_DIR") or None,
            templates_fail_fast=_str2bool(os.getenv("WORKSPACE_TEMPLATES_FAIL_FAST"), default=False),
            state_dir=os.getenv("WORKSPACE_STATE_DIR") or None,
            agent_token_secret=token_secret,
            agent_token_ttl_seconds=_int_env("WORKSPACE_AGENT_TOKEN_TTL_SECONDS", 7 * 24 * 3600, minimum=60),
            access_url=(os.getenv("WORKSPACE_ACCESS_URL") or "http://127.0.0.1:8081").rstrip("/"),
            handshake_timeout_seconds=_float_env("WORKSPACE_HANDSHAKE_TIMEOUT_SECONDS", 120.0, minimum=0.0),
            handshake_poll_seconds=_float_env("WORKSPACE_HANDSHAKE_POLL_SECONDS", 1.0, minimum=0.05),
            volume_workers=_int_env("WORKSPACE_VOLUME_WORKERS", 4, minimum=1),
            purge_on_delete=_str2bool(os.getenv("WORKSPACE_PURGE_ON_DELETE"), default=False),
            stop_timeout_seconds=_int_env("WORKSPACE_STOP_TIMEOUT_SECONDS", 10, minimum=0),
            cors_allow_origins=_split_csv(os.getenv("CORS_ALLOW_ORIGINS", "*")) or ["*"],
            service_version=os.getenv("WORKSPACE_RECONCILER_VERSION", "0.1.0"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )

    # ----------------------------
    # Derived helpers / utilities
    # ----------------------------

    def workspace_container_name(self, workspace_id: str) -> str:
        """
        Deterministic container (instance) name for a workspace.
        """
        return f"{self.container_name_prefix}{workspace_id}"

    def workspace_volume_name(self, workspace_id: str, category: str) -> str:
        """
        Deterministic volume name for a (workspace, category) pair.
        """
        return f"{self.volume_name_prefix}{workspace_id}-{category}"

    def workspace_image_repository(self, workspace_id: str) -> str:
        return f"{self.image_name_prefix}{workspace_id}"


# ----------------------------
# Cached accessor
# ----------------------------

@lru_cache(maxsize=1)
def get_settings() -> ServerConfig:
    """
    Cached settings accessor. Safe to import and call across the app.
    """
    return ServerConfig.from_env(dotenv=True)


__all__ = [
    "ServerConfig",
    "get_settings",
]
