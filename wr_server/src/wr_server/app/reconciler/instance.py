from __future__ import annotations

"""
Instance reconciler: create or destroy the single workspace container so that
it matches the lifecycle gate.

A running instance is created in one engine call carrying the full mount,
environment and command set; if the engine fails half way the adapter
removes what it created, so no partial instance is left behind. The
instance's main process is the agent init script.

The spec digest stored on the container (LABEL_SPEC_DIGEST) covers image,
mounts, environment (minus the per-instance agent token), command and
resource limits. An existing running instance with the same digest is kept;
anything else is removed and recreated. Volumes are never touched here.
"""

import hashlib
import json
import logging
import math
import re
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Mapping, Optional

from wr_server.app.config import ServerConfig
from wr_server.app.engine.base import ContainerEngine, ImageArtifactRef, InstanceRef, InstanceSpec, Mount, VolumeRef
from wr_server.app.errors import (
    EngineError,
    EngineResourceError,
    InstanceCreateFailure,
    ReconcileError,
    ResourceSpecInvalid,
    StageOrderingError,
)
from wr_server.app.reconciler.gate import LifecycleGate
from wr_server.app.reconciler.labels import (
    LABEL_MANAGED,
    LABEL_SPEC_DIGEST,
    LABEL_TEMPLATE,
    LABEL_WORKSPACE_ID,
    managed_labels,
)
from wr_server.app.templates.model import Template
from wr_server.app.templates.parameters import ParameterValue

logger = logging.getLogger("workspace_reconciler")

STAGE = "instance"

ENV_AGENT_TOKEN = "WORKSPACE_AGENT_TOKEN"
ENV_WORKSPACE_NAME = "WORKSPACE_NAME"
ENV_WORKSPACE_ID = "WORKSPACE_ID"

HOST_GATEWAY_NAME = "host.docker.internal"

_GIB = 2 ** 30
_NANO = 10 ** 9
_LOOPBACK_RE = re.compile(r"(?<![\w.-])(localhost|127\.0\.0\.1)(?![\w-])")


# -----------------------
# Resource coercion
# -----------------------

def _exact_decimal(field: str, value: Any) -> Decimal:
    if isinstance(value, bool) or value is None:
        raise ResourceSpecInvalid(field, f"expected a number, got {value!r}")
    if isinstance(value, float) and not math.isfinite(value):
        raise ResourceSpecInvalid(field, f"expected a finite number, got {value!r}")
    try:
        # str() keeps the shortest decimal spelling of a float (2.5 stays 2.5)
        d = Decimal(str(value)) if isinstance(value, float) else Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise ResourceSpecInvalid(field, f"expected a number, got {value!r}")
    if not d.is_finite():
        raise ResourceSpecInvalid(field, f"expected a finite number, got {value!r}")
    if d < 0:
        raise ResourceSpecInvalid(field, f"must not be negative, got {value!r}")
    return d


def _to_int(field: str, scaled: Decimal, original: Any, unit: str) -> int:
    if scaled != scaled.to_integral_value():
        raise ResourceSpecInvalid(field, f"{original!r} is not a whole number of {unit}")
    return int(scaled)


def memory_gb_to_bytes(value: Any, field: str = "memory") -> int:
    """
    Convert a memory size in GiB to an exact byte count (GiB * 2**30).
    """
    return _to_int(field, _exact_decimal(field, value) * _GIB, value, "bytes")


def cpu_cores_to_nano_cpus(value: Any, field: str = "cpu") -> int:
    """
    Convert a core count to the engine's integer nano-CPU field.
    """
    return _to_int(field, _exact_decimal(field, value) * _NANO, value, "nano-CPUs")


def rewrite_loopback(script: str) -> str:
    """
    Point loopback hosts at the host gateway so the agent can reach a
    platform listening on the engine host.
    """
    return _LOOPBACK_RE.sub(HOST_GATEWAY_NAME, script)


def spec_digest(spec: InstanceSpec) -> str:
    """
    Digest of everything that should force a recreate. The agent token is
    excluded: a fresh token alone does not replace a healthy instance.
    """
    env = {k: v for k, v in spec.environment.items() if k != ENV_AGENT_TOKEN}
    labels = {k: v for k, v in spec.labels.items() if k != LABEL_SPEC_DIGEST}
    doc = {
        "image": spec.image,
        "command": list(spec.command),
        "environment": env,
        "mounts": sorted(
            [[m.target, m.source, m.kind, m.read_only] for m in spec.mounts]
        ),
        "labels": labels,
        "hostname": spec.hostname,
        "mem_limit_bytes": spec.mem_limit_bytes,
        "nano_cpus": spec.nano_cpus,
        "extra_hosts": dict(spec.extra_hosts),
        "platform": spec.platform,
    }
    raw = json.dumps(doc, sort_keys=True, separators=(",", ":")).encode("utf-8")
    return hashlib.sha256(raw).hexdigest()


# -----------------------
# Reconciler
# -----------------------

class InstanceReconciler:
    """
    Converges the workspace container onto the lifecycle gate.
    """

    def __init__(self, engine: ContainerEngine, settings: ServerConfig) -> None:
        self._engine = engine
        self._settings = settings

    def instance_name(self, workspace_id: str) -> str:
        return self._settings.workspace_container_name(workspace_id)

    def build_spec(
        self,
        *,
        workspace_id: str,
        workspace_name: str,
        template: Template,
        image: ImageArtifactRef,
        volumes: Mapping[str, VolumeRef],
        params: Mapping[str, ParameterValue],
        agent_token: str,
        init_script: str,
        owner: Optional[str] = None,
    ) -> InstanceSpec:
        """
        Assemble the full instance spec. Resource coercion failures raise
        ResourceSpecInvalid before any engine call.
        """
        environment: Dict[str, str] = dict(template.render_environment(params))
        environment[ENV_AGENT_TOKEN] = agent_token
        environment[ENV_WORKSPACE_NAME] = workspace_name
        environment[ENV_WORKSPACE_ID] = workspace_id

        mounts: List[Mount] = []
        for vol in template.volumes:
            ref = volumes.get(vol.category)
            if ref is None:
                raise StageOrderingError(
                    f"volume category '{vol.category}' was not ensured before instance creation", stage=STAGE
                )
            mounts.append(Mount(target=vol.mount_path, source=ref.name, kind="volume"))
        if template.mount_engine_socket and self._settings.engine_socket_path:
            mounts.append(
                Mount(target=self._settings.engine_socket_target, source=self._settings.engine_socket_path, kind="bind")
            )

        mem_limit = None
        nano_cpus = None
        if template.resources.memory_gb_parameter:
            name = template.resources.memory_gb_parameter
            mem_limit = memory_gb_to_bytes(params.get(name), field=name)
        if template.resources.cpu_parameter:
            name = template.resources.cpu_parameter
            nano_cpus = cpu_cores_to_nano_cpus(params.get(name), field=name)

        labels = managed_labels(workspace_id, owner)
        labels[LABEL_TEMPLATE] = template.name

        spec = InstanceSpec(
            name=self.instance_name(workspace_id),
            image=image.tag,
            command=["sh", "-c", rewrite_loopback(init_script)],
            environment=environment,
            mounts=mounts,
            labels=labels,
            hostname=workspace_name,
            mem_limit_bytes=mem_limit,
            nano_cpus=nano_cpus,
            extra_hosts={HOST_GATEWAY_NAME: "host-gateway"},
            platform=self._settings.engine_platform,
        )
        spec.labels[LABEL_SPEC_DIGEST] = spec_digest(spec)
        return spec

    def _check_preconditions(self, spec: InstanceSpec) -> None:
        try:
            if not self._engine.image_exists(spec.image):
                raise StageOrderingError(f"image '{spec.image}' is not built", stage=STAGE)
            for m in spec.mounts:
                if m.kind == "volume" and self._engine.get_volume(m.source) is None:
                    raise StageOrderingError(f"volume '{m.source}' does not exist", stage=STAGE)
        except EngineError as exc:
            raise ReconcileError(str(exc), stage=STAGE) from exc

    def observe(self, workspace_id: str) -> Optional[InstanceRef]:
        try:
            return self._engine.find_container(self.instance_name(workspace_id))
        except EngineError as exc:
            raise ReconcileError(str(exc), stage=STAGE) from exc

    def reconcile(
        self,
        gate: LifecycleGate,
        workspace_id: str,
        spec: Optional[InstanceSpec] = None,
        before_create: Optional[Callable[[], None]] = None,
    ) -> Optional[InstanceRef]:
        """
        Make the engine match the gate.

        stopped: remove the instance if present (absent is a no-op), return None.
        running: keep a running instance whose spec digest matches, otherwise
        replace it with one created from spec. before_create runs right before
        a new instance is submitted.
        """
        if gate is LifecycleGate.stopped:
            self.ensure_absent(workspace_id)
            return None

        if spec is None:
            raise StageOrderingError("no instance spec supplied for a running gate", stage=STAGE)
        self._check_preconditions(spec)

        existing = self.observe(workspace_id)
        if existing is not None:
            if existing.labels.get(LABEL_MANAGED) != "true" or existing.labels.get(LABEL_WORKSPACE_ID) != workspace_id:
                raise InstanceCreateFailure(f"container name '{spec.name}' is taken by an unmanaged container")
            if existing.running and existing.labels.get(LABEL_SPEC_DIGEST) == spec.labels.get(LABEL_SPEC_DIGEST):
                logger.debug("Instance %s up to date for workspace %s", existing.name, workspace_id)
                return existing
            logger.info(
                "Replacing instance %s for workspace %s (running=%s, spec changed=%s)",
                existing.name,
                workspace_id,
                existing.running,
                existing.labels.get(LABEL_SPEC_DIGEST) != spec.labels.get(LABEL_SPEC_DIGEST),
            )
            self.ensure_absent(workspace_id)

        if before_create is not None:
            before_create()
        try:
            ref = self._engine.create_container(spec)
        except EngineResourceError as exc:
            raise ResourceSpecInvalid(exc.field, str(exc)) from exc
        except EngineError as exc:
            raise InstanceCreateFailure(str(exc)) from exc
        logger.info("Created instance %s for workspace %s", ref.name, workspace_id)
        return ref

    def ensure_absent(self, workspace_id: str) -> None:
        name = self.instance_name(workspace_id)
        try:
            self._engine.remove_container(name, timeout=self._settings.stop_timeout_seconds)
        except EngineError as exc:
            raise ReconcileError(str(exc), stage=STAGE) from exc
        logger.debug("Instance %s absent for workspace %s", name, workspace_id)


__all__ = [
    "ENV_AGENT_TOKEN",
    "ENV_WORKSPACE_NAME",
    "ENV_WORKSPACE_ID",
    "HOST_GATEWAY_NAME",
    "InstanceReconciler",
    "memory_gb_to_bytes",
    "cpu_cores_to_nano_cpus",
    "rewrite_loopback",
    "spec_digest",
]
