from __future__ import annotations

"""
Exposed application registry.

An app is reachable once its instance exists, the agent handshake for that
instance has completed, and (when a health check is declared) the check has
succeeded at least once. Each evaluation makes at most one probe attempt per
app and never sleeps; attempts are spaced at least `interval` seconds apart
and counted on the app. An app whose check has failed `threshold` times ends
up unreachable until a later attempt succeeds.
"""

import enum
import logging
import threading
import time
from dataclasses import dataclass, replace
from typing import Callable, Dict, List, Optional

from wr_server.app.engine.base import ContainerEngine
from wr_server.app.errors import EngineError
from wr_server.app.templates.model import HealthcheckSpec

logger = logging.getLogger("workspace_reconciler")

Probe = Callable[[str, str], bool]


class AppState(str, enum.Enum):
    pending = "pending"
    reachable = "reachable"
    unreachable = "unreachable"


@dataclass(frozen=True)
class AppRef:
    workspace_id: str
    instance: str
    slug: str
    port: Optional[int] = None
    url: Optional[str] = None
    display_name: Optional[str] = None
    healthcheck: Optional[HealthcheckSpec] = None
    state: AppState = AppState.pending
    attempts: int = 0
    last_probe_at: Optional[float] = None
    detail: Optional[str] = None

    def to_dict(self) -> Dict[str, object]:
        return {
            "slug": self.slug,
            "display_name": self.display_name or self.slug,
            "instance": self.instance,
            "port": self.port,
            "url": self.url,
            "healthcheck": self.healthcheck.model_dump(mode="json") if self.healthcheck else None,
            "state": self.state.value,
            "attempts": self.attempts,
            "detail": self.detail,
        }


def engine_http_probe(engine: ContainerEngine, timeout: int = 5) -> Probe:
    """
    Probe that issues an HTTP GET from inside the instance (curl, then wget).
    """

    def _probe(instance: str, url: str) -> bool:
        script = (
            f"curl -fsS -o /dev/null --max-time {timeout} '{url}' "
            f"|| wget -q -O /dev/null -T {timeout} '{url}'"
        )
        try:
            return engine.exec_probe(instance, ["sh", "-c", script], timeout=timeout + 2) == 0
        except EngineError as exc:
            logger.debug("Health probe for %s in %s failed: %s", url, instance, exc)
            return False

    return _probe


class ExposedApplicationRegistry:
    """
    Tracks declared apps per workspace and evaluates their reachability.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._apps: Dict[str, Dict[str, AppRef]] = {}

    def register(
        self,
        instance: str,
        port: Optional[int],
        slug: str,
        healthcheck: Optional[HealthcheckSpec] = None,
        *,
        workspace_id: str,
        display_name: Optional[str] = None,
        url: Optional[str] = None,
    ) -> AppRef:
        """
        Declare an app bound to a port inside instance. Re-registering the same
        slug for the same instance keeps its current state.
        """
        ref = AppRef(
            workspace_id=workspace_id,
            instance=instance,
            slug=slug,
            port=port,
            url=url or (f"http://localhost:{port}" if port else None),
            display_name=display_name,
            healthcheck=healthcheck,
        )
        with self._lock:
            apps = self._apps.setdefault(workspace_id, {})
            current = apps.get(slug)
            if current is not None and current.instance == instance:
                ref = replace(
                    ref,
                    state=current.state,
                    attempts=current.attempts,
                    last_probe_at=current.last_probe_at,
                    detail=current.detail,
                )
            apps[slug] = ref
        return ref

    def list(self, workspace_id: str) -> List[AppRef]:
        with self._lock:
            return list(self._apps.get(workspace_id, {}).values())

    def get(self, workspace_id: str, slug: str) -> Optional[AppRef]:
        with self._lock:
            return self._apps.get(workspace_id, {}).get(slug)

    def _set(self, ref: AppRef) -> AppRef:
        with self._lock:
            apps = self._apps.get(ref.workspace_id)
            if apps is not None and ref.slug in apps:
                apps[ref.slug] = ref
        return ref

    def mark_unreachable(self, workspace_id: str, detail: str) -> List[AppRef]:
        return [self._set(replace(a, state=AppState.unreachable, detail=detail)) for a in self.list(workspace_id)]

    def _check(self, app: AppRef, probe: Probe) -> AppRef:
        hc = app.healthcheck
        if hc is None:
            return replace(app, state=AppState.reachable, detail=None)
        now = self._clock()
        if app.last_probe_at is not None and now - app.last_probe_at < hc.interval:
            return app
        attempt = app.attempts + 1
        if probe(app.instance, hc.url):
            logger.info("App %s healthy after %d attempt(s)", app.slug, attempt)
            return replace(app, state=AppState.reachable, attempts=attempt, last_probe_at=now, detail=None)
        if attempt < hc.threshold:
            return replace(
                app,
                state=AppState.pending,
                attempts=attempt,
                last_probe_at=now,
                detail=f"health check {hc.url} failed ({attempt}/{hc.threshold})",
            )
        if attempt == hc.threshold:
            logger.warning("App %s failed its health check %d time(s); unreachable", app.slug, attempt)
        return replace(
            app,
            state=AppState.unreachable,
            attempts=attempt,
            last_probe_at=now,
            detail=f"health check {hc.url} did not succeed within {hc.threshold} attempts",
        )

    def evaluate(
        self,
        workspace_id: str,
        *,
        agent_connected: bool,
        instance_alive: bool,
        probe: Probe,
    ) -> List[AppRef]:
        """
        Apply the reachability rule to every app of the workspace.

        Without a live instance or a registered agent, apps stay pending (or
        unreachable when the instance is gone). An app that already passed its
        health check once stays reachable. Otherwise at most one probe is made,
        so callers re-evaluate to make progress on a slow app.
        """
        results: List[AppRef] = []
        for app in self.list(workspace_id):
            if not instance_alive:
                updated = replace(app, state=AppState.unreachable, detail="instance is not running")
            elif not agent_connected:
                updated = replace(app, state=AppState.pending, detail="waiting for agent registration")
            elif app.state is AppState.reachable:
                updated = app
            else:
                updated = self._check(app, probe)
            results.append(self._set(updated))
        return results

    def clear(self, workspace_id: str) -> None:
        with self._lock:
            self._apps.pop(workspace_id, None)


__all__ = [
    "AppState",
    "AppRef",
    "Probe",
    "engine_http_probe",
    "ExposedApplicationRegistry",
]
