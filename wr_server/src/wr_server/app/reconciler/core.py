from __future__ import annotations

"""
Workspace reconciler.

Converges a workspace (template + parameter values + lifecycle gate) onto
the container engine. For a running gate the resource graph is:

    fingerprint -> image ----------------\\
    volume:<category> (concurrent) -------> instance -> handshake -> apps

For a stopped gate only the instance is removed; images and volumes are
left untouched. Applied state is persisted after every stage so an attempt
aborted at any point can simply be re-run. Each workspace has its own lock;
distinct workspaces reconcile independently.

Failures are recorded on the workspace record (last_error, status=failed)
and re-raised. Nothing is rolled back.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from wr_server.app.config import ServerConfig
from wr_server.app.engine.base import ContainerEngine, ImageArtifactRef, InstanceRef, VolumeRef
from wr_server.app.errors import (
    BuildFailure,
    EngineError,
    HandshakeTimeout,
    ReconcileError,
)
from wr_server.app.logging_setup import log_context
from wr_server.app.reconciler.apps import AppRef, ExposedApplicationRegistry, Probe, engine_http_probe
from wr_server.app.reconciler.gate import LifecycleGate
from wr_server.app.reconciler.graph import ResourceGraph
from wr_server.app.reconciler.handshake import AgentHandshake, render_init_script
from wr_server.app.reconciler.images import BuildContext, ImageBuilder, ImageResolution
from wr_server.app.reconciler.instance import InstanceReconciler
from wr_server.app.reconciler.labels import LABEL_SPEC_DIGEST, gen_workspace_id
from wr_server.app.reconciler.store import (
    AppliedImage,
    LastError,
    WorkspaceRecord,
    WorkspaceStatus,
    WorkspaceStore,
    instance_from_ref,
)
from wr_server.app.reconciler.volumes import DurableVolumeSet, volume_stage
from wr_server.app.templates.model import Template
from wr_server.app.templates.parameters import ParameterValue, resolve_parameters
from wr_server.app.templates.registry import TemplateRegistry

logger = logging.getLogger("workspace_reconciler")


@dataclass
class ReconcileResult:
    workspace_id: str
    gate: LifecycleGate
    status: WorkspaceStatus
    stages: List[str] = field(default_factory=list)
    image: Optional[str] = None
    image_built: bool = False
    instance: Optional[str] = None
    instance_created: bool = False
    agent_registered: bool = False
    apps: List[Dict[str, Any]] = field(default_factory=list)
    error: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "workspace_id": self.workspace_id,
            "gate": self.gate.value,
            "status": self.status.value,
            "stages": list(self.stages),
            "image": self.image,
            "image_built": self.image_built,
            "instance": self.instance,
            "instance_created": self.instance_created,
            "agent_registered": self.agent_registered,
            "apps": list(self.apps),
            "error": self.error,
        }


def bootstrap_payload(template: Template, params: Dict[str, ParameterValue]) -> Dict[str, Any]:
    """
    Payload handed to the agent on registration. The startup script is inert
    here; it only runs inside the instance.
    """
    agent = template.agent
    return {
        "os": agent.os,
        "arch": agent.arch,
        "user": agent.user,
        "directory": agent.directory,
        "startup_script": agent.startup_script,
        "startup_script_behavior": agent.startup_script_behavior.value,
        "metadata": [m.model_dump(mode="json") for m in agent.metadata],
        "environment": template.render_environment(params),
    }


class Reconciler:
    """
    Entry point for workspace lifecycle operations.
    """

    def __init__(
        self,
        engine: ContainerEngine,
        store: WorkspaceStore,
        templates: TemplateRegistry,
        handshake: AgentHandshake,
        apps: ExposedApplicationRegistry,
        settings: ServerConfig,
        probe: Optional[Probe] = None,
    ) -> None:
        self.engine = engine
        self.store = store
        self.templates = templates
        self.handshake = handshake
        self.apps = apps
        self.settings = settings
        self.images = ImageBuilder(engine)
        self.volumes = DurableVolumeSet(engine, settings.workspace_volume_name)
        self.instances = InstanceReconciler(engine, settings)
        self._probe = probe or engine_http_probe(engine)
        self._locks_guard = threading.Lock()
        self._locks: Dict[str, threading.RLock] = {}

    # -----------------------
    # Locking
    # -----------------------

    def _lock_for(self, workspace_id: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(workspace_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[workspace_id] = lock
            return lock

    # -----------------------
    # Desired state
    # -----------------------

    def create_workspace(
        self,
        template: str,
        name: str,
        *,
        owner: Optional[str] = None,
        parameters: Optional[Dict[str, Any]] = None,
        start: bool = True,
        wait_for_agent: Optional[bool] = None,
    ) -> Tuple[WorkspaceRecord, Optional[ReconcileResult]]:
        """
        Validate parameters, persist the workspace and optionally start it.

        Parameter and template errors are raised before anything is stored or
        any engine call is made. A failed start is returned in the result; the
        workspace itself stays recorded.
        """
        tpl = self.templates.get(template)
        params = resolve_parameters(tpl.parameters, parameters)
        record = WorkspaceRecord(
            id=gen_workspace_id(),
            name=name,
            owner=owner,
            template=tpl.name,
            parameters=params,
            gate=LifecycleGate.running if start else LifecycleGate.stopped,
            status=WorkspaceStatus.pending if start else WorkspaceStatus.stopped,
        )
        self.store.put(record)
        logger.info("Created workspace %s (%s) from template %s", record.id, name, tpl.name)
        if not start:
            return record, None
        try:
            result = self.reconcile(record.id, wait_for_agent=wait_for_agent)
        except ReconcileError as exc:
            result = ReconcileResult(
                workspace_id=record.id,
                gate=LifecycleGate.running,
                status=WorkspaceStatus.failed,
                error=exc.to_dict(),
            )
        return self.store.require(record.id), result

    def update_parameters(self, workspace_id: str, parameters: Dict[str, Any]) -> WorkspaceRecord:
        """
        Reconfigure a workspace. Only mutable parameters may change; the new
        values apply on the next start or reconcile.
        """
        with self._lock_for(workspace_id):
            record = self.store.require(workspace_id)
            tpl = self.templates.get(record.template)
            record.parameters = resolve_parameters(tpl.parameters, parameters, previous=record.parameters)
            self.store.put(record)
        logger.info("Updated parameters of workspace %s", workspace_id)
        return record

    def set_gate(self, workspace_id: str, gate: LifecycleGate) -> WorkspaceRecord:
        with self._lock_for(workspace_id):
            record = self.store.require(workspace_id)
            record.gate = LifecycleGate(gate)
            self.store.put(record)
        return record

    def start(self, workspace_id: str, wait_for_agent: Optional[bool] = None) -> ReconcileResult:
        self.set_gate(workspace_id, LifecycleGate.running)
        return self.reconcile(workspace_id, wait_for_agent=wait_for_agent)

    def stop(self, workspace_id: str) -> ReconcileResult:
        self.set_gate(workspace_id, LifecycleGate.stopped)
        return self.reconcile(workspace_id)

    def get_workspace(self, workspace_id: str) -> WorkspaceRecord:
        return self.store.require(workspace_id)

    def list_workspaces(self, owner: Optional[str] = None) -> List[WorkspaceRecord]:
        return self.store.list(owner)

    # -----------------------
    # Convergence
    # -----------------------

    def reconcile(self, workspace_id: str, wait_for_agent: Optional[bool] = None) -> ReconcileResult:
        """
        Converge one workspace onto its desired state.

        Raises:
            ReconcileError subclasses naming the failed stage. The error is also
            recorded on the workspace record.
        """
        with self._lock_for(workspace_id), log_context(workspace=workspace_id):
            record = self.store.require(workspace_id)
            try:
                if record.gate is LifecycleGate.stopped:
                    return self._converge_stopped(record)
                return self._converge_running(record, wait_for_agent)
            except ReconcileError as exc:
                logger.error("Reconcile of workspace %s failed: %s", workspace_id, exc)
                failed = self.store.require(workspace_id)
                failed.status = WorkspaceStatus.failed
                failed.last_error = LastError(error=exc.kind, stage=exc.stage, detail=exc.detail)
                self.store.put(failed)
                raise

    def _converge_stopped(self, record: WorkspaceRecord) -> ReconcileResult:
        self.instances.ensure_absent(record.id)
        self.apps.clear(record.id)
        self.handshake.reset(record.id)
        record.applied.instance = None
        record.status = WorkspaceStatus.stopped
        record.last_error = None
        self.store.put(record)
        logger.info("Workspace %s stopped", record.id)
        return ReconcileResult(
            workspace_id=record.id,
            gate=LifecycleGate.stopped,
            status=WorkspaceStatus.stopped,
            stages=["instance"],
            image=record.applied.image.tag if record.applied.image else None,
        )

    def _converge_running(self, record: WorkspaceRecord, wait_for_agent: Optional[bool]) -> ReconcileResult:
        ws = record.id
        tpl = self.templates.get(record.template)
        # Stored values are re-validated before any engine call
        params = resolve_parameters(tpl.parameters, {}, previous=record.parameters)
        wait = (self.settings.handshake_timeout_seconds > 0) if wait_for_agent is None else bool(wait_for_agent)
        persist_lock = threading.Lock()
        instance_name = self.instances.instance_name(ws)
        created: List[bool] = []

        def _save() -> None:
            with persist_lock:
                self.store.put(record)

        def fingerprint_stage(_: Dict[str, Any]) -> Tuple[BuildContext, str]:
            context = BuildContext(
                context_dir=tpl.context_dir(),
                dockerfile=tpl.build.dockerfile,
                build_args=tpl.render_build_args(params),
            )
            try:
                return context, context.fingerprint()
            except FileNotFoundError as exc:
                raise BuildFailure(str(exc), stage="fingerprint") from exc

        def image_stage(out: Dict[str, Any]) -> ImageResolution:
            context, digest = out["fingerprint"]
            recorded = record.applied.image.to_ref() if record.applied.image else None
            resolution = self.images.resolve(
                context,
                repository=self.settings.workspace_image_repository(ws),
                workspace_id=ws,
                recorded=recorded,
                template=tpl.name,
                fingerprint=digest,
            )
            with persist_lock:
                record.applied.image = AppliedImage.from_ref(resolution.artifact)
            _save()
            return resolution

        def volume_stage_fn(category: str):
            def _ensure(_: Dict[str, Any]) -> VolumeRef:
                ref = self.volumes.ensure(ws, category, owner=record.owner, workspace_name=record.name)
                with persist_lock:
                    record.applied.volumes[category] = ref.name
                _save()
                return ref
            return _ensure

        def instance_stage(out: Dict[str, Any]) -> InstanceRef:
            artifact: ImageArtifactRef = out["image"].artifact
            volumes = {v.category: out[volume_stage(v.category)] for v in tpl.volumes}
            token = self.handshake.issue_token(ws, instance_name, bootstrap_payload(tpl, params))
            spec = self.instances.build_spec(
                workspace_id=ws,
                workspace_name=record.name,
                template=tpl,
                image=artifact,
                volumes=volumes,
                params=params,
                agent_token=token,
                init_script=render_init_script(self.settings.access_url),
                owner=record.owner,
            )

            def _before_create() -> None:
                created.append(True)
                self.handshake.restart(ws)
                self.apps.clear(ws)

            previous = record.applied.instance
            ref = self.instances.reconcile(LifecycleGate.running, ws, spec, before_create=_before_create)
            applied = instance_from_ref(ref, spec.labels.get(LABEL_SPEC_DIGEST))
            if not created and previous is not None and previous.container_id == ref.container_id:
                applied.agent_registered_at = previous.agent_registered_at
            with persist_lock:
                record.applied.instance = applied
            _save()
            return ref

        def handshake_stage(out: Dict[str, Any]) -> bool:
            ref: InstanceRef = out["instance"]
            registered = self._sync_agent_registration(record, ref)
            if not registered and wait:
                logger.info("Waiting up to %.0fs for agent of workspace %s", self.settings.handshake_timeout_seconds, ws)
                if self.handshake.wait_for_registration(
                    ws,
                    instance_name,
                    timeout=self.settings.handshake_timeout_seconds,
                    interval=self.settings.handshake_poll_seconds,
                ):
                    registered = self._sync_agent_registration(record, ref)
            _save()
            return registered

        def apps_stage(out: Dict[str, Any]) -> List[AppRef]:
            self._register_apps(ws, tpl, instance_name)
            if wait and not out["handshake"]:
                return self.apps.mark_unreachable(ws, "agent did not register")
            return self.apps.evaluate(
                ws,
                agent_connected=bool(out["handshake"]),
                instance_alive=True,
                probe=self._probe,
            )

        graph = ResourceGraph(max_workers=self.settings.volume_workers)
        graph.add("fingerprint", fingerprint_stage)
        graph.add("image", image_stage, ["fingerprint"])
        volume_names = []
        for vol in tpl.volumes:
            name = volume_stage(vol.category)
            graph.add(name, volume_stage_fn(vol.category), concurrent=True)
            volume_names.append(name)
        graph.add("instance", instance_stage, ["image", *volume_names])
        graph.add("handshake", handshake_stage, ["instance"])
        graph.add("apps", apps_stage, ["handshake"])

        logger.info("Reconciling workspace %s (running)", ws)
        outcome = graph.apply()

        registered = bool(outcome.outputs["handshake"])
        resolution: ImageResolution = outcome.outputs["image"]
        instance_ref: InstanceRef = outcome.outputs["instance"]
        apps: List[AppRef] = outcome.outputs["apps"]

        error: Optional[Dict[str, Any]] = None
        if wait and not registered:
            timeout = HandshakeTimeout(
                f"agent did not register within {self.settings.handshake_timeout_seconds:g}s; instance left running"
            )
            logger.warning("Workspace %s degraded: %s", ws, timeout)
            error = timeout.to_dict()
            record.status = WorkspaceStatus.degraded
            record.last_error = LastError(error=timeout.kind, stage=timeout.stage, detail=timeout.detail)
        else:
            record.status = WorkspaceStatus.running
            record.last_error = None
        self.store.put(record)

        return ReconcileResult(
            workspace_id=ws,
            gate=LifecycleGate.running,
            status=record.status,
            stages=list(outcome.order),
            image=resolution.artifact.tag,
            image_built=resolution.built,
            instance=instance_ref.name,
            instance_created=bool(created),
            agent_registered=registered,
            apps=[a.to_dict() for a in apps],
            error=error,
        )

    def _sync_agent_registration(self, record: WorkspaceRecord, ref: Optional[InstanceRef]) -> bool:
        """
        Align the in-memory agent session with the registration persisted on
        the applied instance and report whether the agent of ref registered.

        A live registration is copied onto the record (the caller saves it).
        A persisted one is restored into the handshake only while ref is the
        same running container it was recorded for.
        """
        applied = record.applied.instance
        if applied is None or ref is None:
            return False
        if self.handshake.is_registered(record.id, applied.name):
            if applied.agent_registered_at is None:
                applied.agent_registered_at = (self.handshake.status(record.id) or {}).get("registered_at")
            return True
        if applied.agent_registered_at and ref.running and ref.container_id == applied.container_id:
            self.handshake.restore_registration(record.id, applied.name, applied.agent_registered_at)
            logger.info("Restored agent registration for workspace %s from %s", record.id, applied.agent_registered_at)
            return True
        return False

    def _register_apps(self, workspace_id: str, tpl: Template, instance_name: str) -> None:
        for app in tpl.apps:
            if app.command:
                # Command apps are launched by the platform UI, never probed
                continue
            self.apps.register(
                instance_name,
                app.port,
                app.slug,
                app.healthcheck,
                workspace_id=workspace_id,
                display_name=app.display_name,
                url=app.effective_url,
            )

    # -----------------------
    # Observation
    # -----------------------

    def refresh_apps(self, workspace_id: str) -> List[AppRef]:
        """
        Re-evaluate app reachability, e.g. after the agent registered later
        than the reconcile call that created the instance.
        """
        with self._lock_for(workspace_id), log_context(workspace=workspace_id):
            record = self.store.require(workspace_id)
            if record.gate is LifecycleGate.stopped or record.applied.instance is None:
                self.apps.clear(workspace_id)
                return []
            tpl = self.templates.get(record.template)
            instance = self.instances.observe(workspace_id)
            alive = instance is not None and instance.running
            name = self.instances.instance_name(workspace_id)
            self._register_apps(workspace_id, tpl, name)
            before = record.applied.instance.agent_registered_at
            registered = alive and self._sync_agent_registration(record, instance)
            apps = self.apps.evaluate(
                workspace_id,
                agent_connected=registered,
                instance_alive=alive,
                probe=self._probe,
            )
            changed = record.applied.instance.agent_registered_at != before
            if registered and record.status is WorkspaceStatus.degraded:
                record.status = WorkspaceStatus.running
                record.last_error = None
                changed = True
            if changed:
                self.store.put(record)
        return apps

    def describe(self, workspace_id: str) -> Dict[str, Any]:
        """
        Desired state, last applied state, and what the engine reports now.
        """
        record = self.store.require(workspace_id)
        instance = self.instances.observe(workspace_id)
        return {
            "workspace": record.model_dump(mode="json"),
            "observed": {
                "instance": None
                if instance is None
                else {
                    "name": instance.name,
                    "container_id": instance.container_id,
                    "image": instance.image,
                    "running": instance.running,
                },
                "agent": self.handshake.status(workspace_id),
                "apps": [a.to_dict() for a in self.apps.list(workspace_id)],
            },
        }

    # -----------------------
    # Destruction
    # -----------------------

    def destroy_workspace(self, workspace_id: str, purge: Optional[bool] = None) -> Dict[str, Any]:
        """
        Remove the instance and forget the workspace. Volumes and images are
        removed only when purge is requested.
        """
        purge = self.settings.purge_on_delete if purge is None else bool(purge)
        with self._lock_for(workspace_id), log_context(workspace=workspace_id):
            record = self.store.require(workspace_id)
            self.instances.ensure_absent(workspace_id)
            self.apps.clear(workspace_id)
            self.handshake.reset(workspace_id)
            removed_volumes: List[str] = []
            removed_image: Optional[str] = None
            if purge:
                categories = set(record.applied.volumes)
                try:
                    categories.update(v.category for v in self.templates.get(record.template).volumes)
                except ReconcileError:
                    logger.warning("Template %s no longer available; purging recorded volumes only", record.template)
                for category in sorted(categories):
                    self.volumes.remove(workspace_id, category)
                    removed_volumes.append(self.volumes.volume_name(workspace_id, category))
                if record.applied.image is not None:
                    try:
                        self.engine.remove_image(record.applied.image.tag)
                    except EngineError as exc:
                        raise ReconcileError(str(exc), stage="image") from exc
                    removed_image = record.applied.image.tag
            self.store.delete(workspace_id)
        with self._locks_guard:
            self._locks.pop(workspace_id, None)
        logger.info("Destroyed workspace %s (purge=%s)", workspace_id, purge)
        return {
            "workspace_id": workspace_id,
            "purged": purge,
            "removed_volumes": removed_volumes,
            "removed_image": removed_image,
        }


__all__ = ["Reconciler", "ReconcileResult", "bootstrap_payload"]
