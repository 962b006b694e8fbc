from __future__ import annotations

"""
Shared FastAPI dependencies for the workspace reconciler service.

Contents:
- get_settings(): cached accessor for ServerConfig.
- enforce_api_key(): API key authentication dependency for platform routes.
- agent_token(): agent token extraction for agent callback routes.
- get_engine() / get_reconciler(): process-wide engine and reconciler built
  from configuration. The engine endpoint is always explicit.

Project policy notes:
- No lazy imports.
- No try/except guards around imports; failures should be explicit.
"""

import threading
from typing import Optional

from fastapi import Depends, Header, HTTPException, Security, status
from fastapi.security.api_key import APIKeyHeader

from wr_server.app.config import ServerConfig, get_settings as _config_get_settings
from wr_server.app.engine.base import ContainerEngine
from wr_server.app.engine.docker_engine import DockerEngine
from wr_server.app.reconciler.apps import ExposedApplicationRegistry
from wr_server.app.reconciler.core import Reconciler
from wr_server.app.reconciler.handshake import AgentHandshake
from wr_server.app.reconciler.store import store_from_settings
from wr_server.app.templates.registry import get_template_registry


# -------------
# Configuration
# -------------

def get_settings() -> ServerConfig:
    """
    Cached settings accessor.
    """
    return _config_get_settings()


# -------------------
# API Key Auth (FastAPI)
# -------------------

api_key_header = APIKeyHeader(name=get_settings().api_key_header_name, auto_error=False)


async def enforce_api_key(
    provided_key: Optional[str] = Security(api_key_header)
) -> None:
    """
    Enforce API key authentication using the configured header.

    - If WORKSPACE_API_KEY or WORKSPACE_API_KEYS are set, requests must provide
      an exact match of one of the configured keys.
    - If neither is set, authentication is disabled (accept all).
    """
    settings = get_settings()
    allowed: set[str] = set()
    if settings.api_key:
        allowed.add(settings.api_key)
    for k in settings.api_keys or []:
        if k:
            allowed.add(k)
    if not allowed:
        return
    if not provided_key or provided_key not in allowed:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key.",
        )


# -------------------
# Agent token
# -------------------

AGENT_TOKEN_HEADER = "X-Agent-Token"


async def agent_token(
    x_agent_token: Optional[str] = Header(default=None, alias=AGENT_TOKEN_HEADER),
    authorization: Optional[str] = Header(default=None),
) -> str:
    """
    Agent callbacks authenticate with the per-instance token, either in
    X-Agent-Token or as 'Authorization: Bearer <token>'.
    """
    if x_agent_token:
        return x_agent_token.strip()
    if authorization and authorization.lower().startswith("bearer "):
        return authorization[7:].strip()
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing agent token.")


# --------------------------
# Engine and reconciler
# --------------------------

_lock = threading.Lock()
_engine: Optional[ContainerEngine] = None
_reconciler: Optional[Reconciler] = None


def build_engine(settings: ServerConfig) -> DockerEngine:
    return DockerEngine(
        settings.engine_base_url,
        timeout=settings.engine_timeout,
        platform=settings.engine_platform,
    )


def build_reconciler(settings: ServerConfig, engine: ContainerEngine) -> Reconciler:
    return Reconciler(
        engine=engine,
        store=store_from_settings(settings),
        templates=get_template_registry(settings),
        handshake=AgentHandshake(settings.agent_token_secret, settings.agent_token_ttl_seconds),
        apps=ExposedApplicationRegistry(),
        settings=settings,
    )


def get_engine(settings: ServerConfig = Depends(get_settings)) -> ContainerEngine:
    global _engine
    with _lock:
        if _engine is None:
            _engine = build_engine(settings)
        return _engine


def get_reconciler(
    settings: ServerConfig = Depends(get_settings),
    engine: ContainerEngine = Depends(get_engine),
) -> Reconciler:
    global _reconciler
    with _lock:
        if _reconciler is None:
            _reconciler = build_reconciler(settings, engine)
        return _reconciler


def reset_singletons() -> None:
    """
    Drop the cached engine and reconciler (closing the engine).
    """
    global _engine, _reconciler
    with _lock:
        if _engine is not None:
            _engine.close()
        _engine = None
        _reconciler = None


__all__ = [
    "get_settings",
    "enforce_api_key",
    "AGENT_TOKEN_HEADER",
    "agent_token",
    "build_engine",
    "build_reconciler",
    "get_engine",
    "get_reconciler",
    "reset_singletons",
]
