"""
Centralized constants for wr_client.

Shared defaults used by the workspace reconciler Python client.
"""

from __future__ import annotations

# HTTP/API defaults
DEFAULT_API_KEY_HEADER = "X-API-Key"
DEFAULT_BASE_URL = "https://127.0.0.1:8081"

# Timeouts (seconds)
DEFAULT_REQUEST_TIMEOUT = 60
# Starting a workspace may build an image
DEFAULT_RECONCILE_TIMEOUT = 1800

# Environment variable names
ENV_BASE_URL = "WR_BASE_URL"
ENV_API_KEY = "WORKSPACE_API_KEY"
ENV_API_KEY_HEADER = "WORKSPACE_API_KEY_HEADER"
ENV_REQUEST_TIMEOUT = "WR_REQUEST_TIMEOUT"
ENV_RECONCILE_TIMEOUT = "WR_RECONCILE_TIMEOUT"
ENV_VERIFY_TLS = "WR_VERIFY_TLS"
ENV_ALLOW_INSECURE_HTTP = "WR_ALLOW_INSECURE_HTTP"
ENV_ALLOW_INSECURE_TLS = "WR_ALLOW_INSECURE_TLS"

__all__ = [
    "DEFAULT_API_KEY_HEADER",
    "DEFAULT_BASE_URL",
    "DEFAULT_REQUEST_TIMEOUT",
    "DEFAULT_RECONCILE_TIMEOUT",
    "ENV_BASE_URL",
    "ENV_API_KEY",
    "ENV_API_KEY_HEADER",
    "ENV_REQUEST_TIMEOUT",
    "ENV_RECONCILE_TIMEOUT",
    "ENV_VERIFY_TLS",
    "ENV_ALLOW_INSECURE_HTTP",
    "ENV_ALLOW_INSECURE_TLS",
]
