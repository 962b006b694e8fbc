from __future__ import annotations

"""
Agent handshake: the platform side of instance registration.

Overview
- At reconciliation time the platform issues an agent token bound to
  (workspace_id, instance name) and injects it into the instance environment.
- The instance's main process is the agent init script. It calls back to
  /agent/register with the token, receives its bootstrap payload, starts the
  startup script in the background and reports the outcome to
  /agent/lifecycle. The instance counts as started as soon as the agent
  registers; a slow or failing startup script never fails the start.

Token format (string)
    v1.<base64url(payload_json)>.<base64url(signature_bytes)>

Where payload_json is the canonical JSON encoding of:
    {
      "v": 1,
      "ws": "<workspace_id>",
      "inst": "<instance name>",
      "iat": <issued_at_epoch>,
      "exp": <expires_epoch>
    }
and signature_bytes = HMAC_SHA256(secret, payload_json_bytes).
"""

import base64
import enum
import hashlib
import hmac
import json
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from wr_server.app.errors import InvalidTokenError, TokenExpiredError
from wr_server.app.reconciler.labels import now_utc_iso

logger = logging.getLogger("workspace_reconciler")


# -----------------------
# Token helpers
# -----------------------

_TOKEN_VERSION = 1
_TOKEN_PREFIX = "v1"


def _b64u_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _b64u_decode(data_str: str) -> bytes:
    s = data_str.strip()
    padding = "=" * (-len(s) % 4)
    return base64.urlsafe_b64decode(s + padding)


def _canonical_json_bytes(obj: Dict[str, Any]) -> bytes:
    return json.dumps(obj, sort_keys=True, separators=(",", ":")).encode("utf-8")


def _sign(secret: str, payload_bytes: bytes) -> bytes:
    return hmac.new(secret.encode("utf-8"), payload_bytes, hashlib.sha256).digest()


@dataclass(frozen=True)
class AgentTokenPayload:
    version: int
    workspace_id: str
    instance: str
    issued_at: int
    expires_at: int


def generate_agent_token(
    *,
    secret: str,
    workspace_id: str,
    instance: str,
    ttl_seconds: int,
    issued_at: Optional[int] = None,
) -> str:
    """
    Issue an HMAC-signed token authenticating one agent for one instance.
    """
    if not secret:
        raise ValueError("A non-empty secret is required to issue agent tokens.")
    if not workspace_id or not instance:
        raise ValueError("workspace_id and instance must be non-empty strings.")
    if not isinstance(ttl_seconds, int) or ttl_seconds <= 0:
        raise ValueError("ttl_seconds must be a positive integer.")

    iat = int(issued_at if issued_at is not None else time.time())
    payload = {
        "v": _TOKEN_VERSION,
        "ws": workspace_id,
        "inst": instance,
        "iat": iat,
        "exp": iat + ttl_seconds,
    }
    payload_bytes = _canonical_json_bytes(payload)
    sig = _sign(secret, payload_bytes)
    return f"{_TOKEN_PREFIX}.{_b64u_encode(payload_bytes)}.{_b64u_encode(sig)}"


def parse_and_verify_agent_token(*, secret: str, token: str, now_s: Optional[int] = None) -> AgentTokenPayload:
    """
    Verify signature and expiry of an agent token and return its payload.

    Raises:
        InvalidTokenError: malformed token or signature mismatch.
        TokenExpiredError: validly signed but expired.
    """
    if not isinstance(token, str) or token.count(".") != 2:
        raise InvalidTokenError("Malformed token.")
    prefix, b64_payload, b64_sig = token.split(".")
    if prefix != _TOKEN_PREFIX:
        raise InvalidTokenError("Unsupported token format or version.")
    try:
        payload_bytes = _b64u_decode(b64_payload)
        sig_bytes = _b64u_decode(b64_sig)
    except ValueError as e:
        raise InvalidTokenError(f"Invalid token encoding: {e}")

    if not hmac.compare_digest(_sign(secret, payload_bytes), sig_bytes):
        raise InvalidTokenError("Signature verification failed.")

    try:
        obj = json.loads(payload_bytes.decode("utf-8"))
    except ValueError:
        raise InvalidTokenError("Payload is not valid JSON.")
    if not isinstance(obj, dict) or obj.get("v") != _TOKEN_VERSION:
        raise InvalidTokenError("Unsupported token version.")

    ws, inst, iat, exp = obj.get("ws"), obj.get("inst"), obj.get("iat"), obj.get("exp")
    if not isinstance(ws, str) or not ws or not isinstance(inst, str) or not inst:
        raise InvalidTokenError("Payload is missing a valid 'ws'/'inst'.")
    if not isinstance(iat, int) or not isinstance(exp, int):
        raise InvalidTokenError("Payload is missing valid 'iat'/'exp' timestamps.")

    now = int(now_s if now_s is not None else time.time())
    if exp < now:
        raise TokenExpiredError("Token has expired.")
    return AgentTokenPayload(version=_TOKEN_VERSION, workspace_id=ws, instance=inst, issued_at=iat, expires_at=exp)


# -----------------------
# Agent state
# -----------------------

class AgentLifecycle(str, enum.Enum):
    created = "created"
    starting = "starting"
    ready = "ready"
    start_error = "start_error"


@dataclass
class AgentSession:
    workspace_id: str
    instance: str
    bootstrap: Dict[str, Any]
    lifecycle: AgentLifecycle = AgentLifecycle.created
    registered_at: Optional[str] = None
    lifecycle_at: Optional[str] = None
    exit_code: Optional[int] = None

    @property
    def registered(self) -> bool:
        return self.registered_at is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "instance": self.instance,
            "registered": self.registered,
            "registered_at": self.registered_at,
            "lifecycle": self.lifecycle.value,
            "lifecycle_at": self.lifecycle_at,
            "exit_code": self.exit_code,
        }


# -----------------------
# Init script
# -----------------------

_ACCESS_URL_MARKER = "@@WR_ACCESS_URL@@"

_INIT_SCRIPT = """\
set -u
WR_URL="@@WR_ACCESS_URL@@"
WR_HDR="X-Agent-Token: ${WORKSPACE_AGENT_TOKEN}"
WR_STARTUP="${TMPDIR:-/tmp}/wr-startup.sh"
wr_report() {
  curl -fsS -X POST -H "$WR_HDR" -H "Content-Type: application/json" \\
    -d "{\\"state\\":\\"$1\\",\\"exit_code\\":$2}" "$WR_URL/agent/lifecycle" >/dev/null 2>&1 || true
}
n=0
until curl -fsS -X POST -H "$WR_HDR" "$WR_URL/agent/register?format=script" -o "$WR_STARTUP"; do
  n=$((n + 1))
  if [ "$n" -ge 60 ]; then echo "agent registration failed" >&2; break; fi
  sleep 2
done
if [ -s "$WR_STARTUP" ]; then
  (
    wr_report starting null
    if sh "$WR_STARTUP" >"${TMPDIR:-/tmp}/wr-startup.log" 2>&1; then
      wr_report ready 0
    else
      wr_report start_error $?
    fi
  ) &
elif [ "$n" -lt 60 ]; then
  wr_report ready 0
fi
exec tail -f /dev/null
"""


def render_init_script(access_url: str) -> str:
    """
    Agent init script for an instance that reaches the platform at access_url.
    The agent token is read from the instance environment at run time.
    """
    return _INIT_SCRIPT.replace(_ACCESS_URL_MARKER, access_url.rstrip("/"))


# -----------------------
# Handshake registry
# -----------------------

class AgentHandshake:
    """
    Issues agent tokens and tracks registrations per workspace.
    """

    def __init__(
        self,
        secret: str,
        ttl_seconds: int = 86400,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if not secret:
            raise ValueError("agent token secret must be configured")
        self._secret = secret
        self._ttl = int(ttl_seconds)
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._sessions: Dict[str, AgentSession] = {}

    def issue_token(self, workspace_id: str, instance: str, bootstrap: Optional[Dict[str, Any]] = None) -> str:
        """
        Issue a token for (workspace_id, instance) and stage its bootstrap
        payload. A session for the same instance keeps its registration.
        """
        token = generate_agent_token(
            secret=self._secret, workspace_id=workspace_id, instance=instance, ttl_seconds=self._ttl
        )
        with self._lock:
            current = self._sessions.get(workspace_id)
            if current is not None and current.instance == instance:
                current.bootstrap = dict(bootstrap or {})
            else:
                self._sessions[workspace_id] = AgentSession(
                    workspace_id=workspace_id, instance=instance, bootstrap=dict(bootstrap or {})
                )
        return token

    def restart(self, workspace_id: str) -> None:
        """
        Forget the registration of the current session. Called right before a
        new instance is created so that only its agent counts as registered.
        """
        with self._lock:
            session = self._sessions.get(workspace_id)
            if session is None:
                return
            session.registered_at = None
            session.lifecycle = AgentLifecycle.created
            session.lifecycle_at = None
            session.exit_code = None

    def restore_registration(self, workspace_id: str, instance: str, registered_at: str) -> None:
        """
        Mark (workspace_id, instance) as registered from persisted state, for
        an instance that survived a service restart with its agent still up.
        """
        with self._lock:
            session = self._sessions.get(workspace_id)
            if session is None or session.instance != instance:
                session = AgentSession(workspace_id=workspace_id, instance=instance, bootstrap={})
                self._sessions[workspace_id] = session
            if not session.registered:
                session.registered_at = registered_at

    def _session_for(self, token: str) -> AgentSession:
        payload = parse_and_verify_agent_token(secret=self._secret, token=token)
        session = self._sessions.get(payload.workspace_id)
        if session is None:
            raise InvalidTokenError("No agent session for this workspace.")
        if session.instance != payload.instance:
            raise InvalidTokenError("Token was issued for a different instance.")
        return session

    def register(self, token: str) -> Dict[str, Any]:
        """
        Record the agent registration and return the bootstrap payload.

        Raises:
            InvalidTokenError / TokenExpiredError for bad tokens.
        """
        with self._lock:
            session = self._session_for(token)
            session.registered_at = now_utc_iso()
            bootstrap = dict(session.bootstrap)
            ws = session.workspace_id
        logger.info("Agent registered for workspace %s", ws)
        return bootstrap

    def report_lifecycle(self, token: str, state: str, exit_code: Optional[int] = None) -> AgentSession:
        """
        Record a lifecycle report (starting, ready, start_error) from the agent.
        """
        lifecycle = AgentLifecycle(state)
        with self._lock:
            session = self._session_for(token)
            session.lifecycle = lifecycle
            session.lifecycle_at = now_utc_iso()
            session.exit_code = exit_code
        if lifecycle is AgentLifecycle.start_error:
            logger.warning(
                "Startup script failed in workspace %s (exit_code=%s)", session.workspace_id, exit_code
            )
        else:
            logger.info("Agent lifecycle for workspace %s: %s", session.workspace_id, lifecycle.value)
        return session

    def workspace_for_token(self, token: str) -> str:
        return parse_and_verify_agent_token(secret=self._secret, token=token).workspace_id

    def is_registered(self, workspace_id: str, instance: Optional[str] = None) -> bool:
        with self._lock:
            session = self._sessions.get(workspace_id)
            if session is None or not session.registered:
                return False
            return instance is None or session.instance == instance

    def status(self, workspace_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            session = self._sessions.get(workspace_id)
            return session.to_dict() if session is not None else None

    def wait_for_registration(
        self,
        workspace_id: str,
        instance: Optional[str],
        timeout: float,
        interval: float = 1.0,
    ) -> bool:
        """
        Poll until the agent registers or timeout elapses. Returns False on
        timeout. Never waits for the startup script itself.
        """
        deadline = self._clock() + max(0.0, float(timeout))
        while True:
            if self.is_registered(workspace_id, instance):
                return True
            remaining = deadline - self._clock()
            if remaining <= 0:
                return False
            self._sleep(min(max(interval, 0.01), remaining))

    def reset(self, workspace_id: str) -> None:
        with self._lock:
            self._sessions.pop(workspace_id, None)


__all__ = [
    "AgentTokenPayload",
    "AgentLifecycle",
    "AgentSession",
    "AgentHandshake",
    "generate_agent_token",
    "parse_and_verify_agent_token",
    "render_init_script",
]
