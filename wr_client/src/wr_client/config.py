"""
wr_client settings.

Values come from the process environment (or an explicit mapping) and are
validated by the same transport rules the client applies to constructor
arguments:
- the base URL must be http or https;
- http needs WR_ALLOW_INSECURE_HTTP=true;
- WR_VERIFY_TLS=false needs WR_ALLOW_INSECURE_TLS=true.

Variables: WR_BASE_URL, WORKSPACE_API_KEY, WORKSPACE_API_KEY_HEADER,
WR_REQUEST_TIMEOUT, WR_RECONCILE_TIMEOUT (create/start/reconcile may build an
image, so they get the longer timeout), WR_VERIFY_TLS, WR_ALLOW_INSECURE_HTTP,
WR_ALLOW_INSECURE_TLS.

get_settings() caches the environment-derived config; call
get_settings.cache_clear() after changing the environment.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Dict, Mapping, Optional
from urllib.parse import urlparse

from .constants import (
    DEFAULT_API_KEY_HEADER,
    DEFAULT_BASE_URL,
    DEFAULT_RECONCILE_TIMEOUT,
    DEFAULT_REQUEST_TIMEOUT,
    ENV_ALLOW_INSECURE_HTTP,
    ENV_ALLOW_INSECURE_TLS,
    ENV_API_KEY,
    ENV_API_KEY_HEADER,
    ENV_BASE_URL,
    ENV_RECONCILE_TIMEOUT,
    ENV_REQUEST_TIMEOUT,
    ENV_VERIFY_TLS,
)

_TRUE = ("1", "true", "yes", "y", "on")


def _flag(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in _TRUE


def _seconds(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    try:
        value = int(raw) if raw is not None else default
    except ValueError:
        return default
    return value if value > 0 else default


def check_transport(
    base_url: str,
    *,
    verify_tls: bool,
    allow_insecure_http: bool,
    allow_insecure_tls: bool,
    http_opt_in: str = f"{ENV_ALLOW_INSECURE_HTTP}=true",
    tls_opt_in: str = f"{ENV_ALLOW_INSECURE_TLS}=true",
) -> str:
    """
    Validate a base URL against the transport rules and return it without a
    trailing slash. Raises ValueError naming the opt-in that would allow it.
    """
    url = (base_url or "").rstrip("/")
    scheme = (urlparse(url).scheme or "").lower()
    if scheme not in ("http", "https"):
        raise ValueError(f"Unsupported reconciler base_url scheme: {scheme or 'missing'} ({url!r})")
    if scheme == "http" and not allow_insecure_http:
        raise ValueError(
            f"Plain HTTP base URLs are disabled; set {http_opt_in} only on a trusted development network."
        )
    if not verify_tls and not allow_insecure_tls:
        raise ValueError(f"TLS verification cannot be disabled unless {tls_opt_in}.")
    return url


@dataclass(frozen=True)
class ClientConfig:
    base_url: str
    verify_tls: bool
    allow_insecure_http: bool
    allow_insecure_tls: bool
    api_key: Optional[str]
    api_key_header_name: str
    request_timeout: int
    reconcile_timeout: int

    @property
    def base_url_normalized(self) -> str:
        return self.base_url.rstrip("/")

    def auth_headers(self) -> Dict[str, str]:
        return {self.api_key_header_name: self.api_key} if self.api_key else {}

    @staticmethod
    def from_env(environ: Optional[Mapping[str, str]] = None) -> "ClientConfig":
        env = os.environ if environ is None else environ
        verify_tls = _flag(env, ENV_VERIFY_TLS, default=True)
        allow_http = _flag(env, ENV_ALLOW_INSECURE_HTTP, default=False)
        allow_tls = _flag(env, ENV_ALLOW_INSECURE_TLS, default=False)
        base_url = check_transport(
            env.get(ENV_BASE_URL) or DEFAULT_BASE_URL,
            verify_tls=verify_tls,
            allow_insecure_http=allow_http,
            allow_insecure_tls=allow_tls,
        )
        return ClientConfig(
            base_url=base_url,
            verify_tls=verify_tls,
            allow_insecure_http=allow_http,
            allow_insecure_tls=allow_tls,
            api_key=env.get(ENV_API_KEY) or None,
            api_key_header_name=env.get(ENV_API_KEY_HEADER) or DEFAULT_API_KEY_HEADER,
            request_timeout=_seconds(env, ENV_REQUEST_TIMEOUT, DEFAULT_REQUEST_TIMEOUT),
            reconcile_timeout=_seconds(env, ENV_RECONCILE_TIMEOUT, DEFAULT_RECONCILE_TIMEOUT),
        )


@lru_cache(maxsize=1)
def get_settings() -> ClientConfig:
    return ClientConfig.from_env()


__all__ = ["ClientConfig", "check_transport", "get_settings"]
