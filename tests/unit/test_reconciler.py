import dataclasses

import pytest

from wr_server.app.engine.base import VolumeRef
from wr_server.app.errors import BuildFailure, ParameterInvalid, TemplateNotFound, VolumeConflict
from wr_server.app.reconciler.apps import ExposedApplicationRegistry
from wr_server.app.reconciler.core import Reconciler
from wr_server.app.reconciler.gate import LifecycleGate
from wr_server.app.reconciler.handshake import AgentHandshake
from wr_server.app.reconciler.instance import ENV_AGENT_TOKEN
from wr_server.app.reconciler.store import FileWorkspaceStore, WorkspaceStatus


def _create(reconciler, **params):
    record, result = reconciler.create_workspace("basic", "dev", owner="alice", parameters=params)
    return record, result


def _instance_name(reconciler, ws):
    return reconciler.instances.instance_name(ws)


def _agent_token(engine, name):
    return engine.specs[name].environment[ENV_AGENT_TOKEN]


def _service(reconciler, store, clock):
    """
    A fresh Reconciler sharing engine, templates and state with reconciler,
    as after a service restart.
    """
    return Reconciler(
        engine=reconciler.engine,
        store=store,
        templates=reconciler.templates,
        handshake=AgentHandshake(reconciler.settings.agent_token_secret, 3600, clock=clock, sleep=clock.sleep),
        apps=ExposedApplicationRegistry(clock=clock),
        settings=reconciler.settings,
        probe=reconciler._probe,
    )


def test_create_and_start_builds_graph_in_order(reconciler, engine):
    record, result = _create(reconciler)
    assert result.status is WorkspaceStatus.running
    assert result.stages == ["fingerprint", "volume:cache", "volume:home", "image", "instance", "handshake", "apps"]
    assert result.image_built and result.instance_created
    assert result.agent_registered is False
    # Command apps are not tracked; the web app waits for the agent
    assert [(a["slug"], a["state"]) for a in result.apps] == [("web", "pending")]
    assert record.applied.image.tag == result.image
    assert set(record.applied.volumes) == {"home", "cache"}
    assert record.applied.instance.name == _instance_name(reconciler, record.id)


def test_second_reconcile_is_a_no_op(reconciler, engine):
    record, _ = _create(reconciler)
    again = reconciler.reconcile(record.id)
    assert again.image_built is False
    assert again.instance_created is False
    assert engine.count("build_image") == 1
    assert engine.count("create_container") == 1
    assert engine.count("create_volume") == 2


def test_invalid_parameter_fails_before_any_engine_call(reconciler, engine):
    with pytest.raises(ParameterInvalid) as ei:
        _create(reconciler, cpu=0)
    assert ei.value.parameter == "cpu"
    assert engine.calls == []
    assert reconciler.list_workspaces() == []


def test_unknown_template(reconciler, engine):
    with pytest.raises(TemplateNotFound):
        reconciler.create_workspace("nope", "dev")
    assert engine.calls == []


def test_memory_that_is_not_whole_bytes_fails_without_creating(reconciler, engine):
    record, result = _create(reconciler, memory=1.0000000001)
    assert result.status is WorkspaceStatus.failed
    assert result.error["error"] == "resource_spec_invalid"
    assert result.error["stage"] == "instance"
    assert engine.count("create_container") == 0
    stored = reconciler.get_workspace(record.id)
    assert stored.status is WorkspaceStatus.failed
    assert stored.last_error.error == "resource_spec_invalid"


def test_stop_then_start_reattaches_same_volumes(reconciler, engine):
    record, _ = _create(reconciler)
    name = _instance_name(reconciler, record.id)
    volumes_before = sorted(m.source for m in engine.specs[name].mounts if m.kind == "volume")

    stopped = reconciler.stop(record.id)
    assert stopped.status is WorkspaceStatus.stopped
    assert engine.containers == {}
    assert len(engine.volumes) == 2
    assert reconciler.get_workspace(record.id).applied.instance is None

    started = reconciler.start(record.id)
    assert started.instance_created is True
    assert sorted(m.source for m in engine.specs[name].mounts if m.kind == "volume") == volumes_before
    assert engine.count("create_volume") == 2
    assert engine.count("remove_volume") == 0
    assert engine.count("build_image") == 1


def test_stop_of_stopped_workspace_is_a_no_op(reconciler, engine):
    record, result = reconciler.create_workspace("basic", "dev", start=False)
    assert result is None
    out = reconciler.stop(record.id)
    assert out.status is WorkspaceStatus.stopped
    assert engine.count("create_container") == 0
    assert engine.count("build_image") == 0


def test_mutable_parameter_change_replaces_instance_without_rebuild(reconciler, engine):
    record, _ = _create(reconciler)
    reconciler.update_parameters(record.id, {"cpu": 4})
    out = reconciler.reconcile(record.id)
    assert out.instance_created is True
    assert engine.specs[_instance_name(reconciler, record.id)].nano_cpus == 4_000_000_000
    assert engine.count("build_image") == 1


def test_immutable_parameter_change_is_rejected(reconciler, engine):
    record, _ = _create(reconciler, flavor="b")
    with pytest.raises(ParameterInvalid, match="immutable"):
        reconciler.update_parameters(record.id, {"flavor": "a"})
    assert reconciler.get_workspace(record.id).parameters["flavor"] == "b"


def test_build_context_change_triggers_rebuild(reconciler, engine):
    record, _ = _create(reconciler)
    tpl = reconciler.templates.get("basic")
    (tpl.context_dir() / "Dockerfile").write_text("FROM busybox:1.36\n", encoding="utf-8")
    out = reconciler.reconcile(record.id)
    assert out.image_built is True
    assert out.instance_created is True
    assert engine.count("build_image") == 2


def test_build_failure_is_recorded_and_nothing_is_created(reconciler, engine):
    engine.build_error = "failed to solve: process did not complete successfully"
    record, result = _create(reconciler)
    assert result.status is WorkspaceStatus.failed
    assert result.error["stage"] == "image"
    assert engine.count("create_container") == 0
    with pytest.raises(BuildFailure):
        reconciler.reconcile(record.id)
    stored = reconciler.get_workspace(record.id)
    assert stored.last_error.stage == "image"
    assert stored.applied.image is None


def test_volume_conflict_is_reported(reconciler, engine, settings):
    record, _ = reconciler.create_workspace("basic", "dev", start=False)
    name = settings.workspace_volume_name(record.id, "home")
    engine.volumes[name] = VolumeRef(name=name, labels={"wr.managed": "true", "wr.workspace.id": "someone-else"})
    with pytest.raises(VolumeConflict):
        reconciler.start(record.id)
    assert engine.count("create_container") == 0
    assert reconciler.get_workspace(record.id).last_error.stage == "volume:home"


def test_handshake_timeout_degrades_but_keeps_instance(reconciler, engine, settings):
    reconciler.settings = dataclasses.replace(settings, handshake_timeout_seconds=5.0)
    record, result = _create(reconciler)
    assert result.status is WorkspaceStatus.degraded
    assert result.error["error"] == "handshake_timeout"
    assert [a["state"] for a in result.apps] == ["unreachable"]
    assert _instance_name(reconciler, record.id) in engine.containers
    assert reconciler.get_workspace(record.id).status is WorkspaceStatus.degraded


def test_late_registration_recovers_degraded_workspace(reconciler, engine, settings):
    reconciler.settings = dataclasses.replace(settings, handshake_timeout_seconds=5.0)
    record, _ = _create(reconciler)
    name = _instance_name(reconciler, record.id)
    reconciler.handshake.register(_agent_token(engine, name))

    apps = reconciler.refresh_apps(record.id)
    assert [(a.slug, a.state.value) for a in apps] == [("web", "reachable")]
    assert engine.probes == [(name, "http://localhost:8080/healthz")]
    assert reconciler.get_workspace(record.id).status is WorkspaceStatus.running


def test_waiting_start_sees_agent_register(reconciler, engine, settings, clock):
    reconciler.settings = dataclasses.replace(settings, handshake_timeout_seconds=30.0)
    record, _ = reconciler.create_workspace("basic", "dev", start=False)
    name = _instance_name(reconciler, record.id)

    def sleep(seconds):
        clock.sleep(seconds)
        reconciler.handshake.register(_agent_token(engine, name))

    reconciler.handshake._sleep = sleep
    result = reconciler.start(record.id)
    assert result.agent_registered is True
    assert result.status is WorkspaceStatus.running
    assert [a["state"] for a in result.apps] == ["reachable"]


def test_agent_of_replaced_instance_must_register_again(reconciler, engine):
    record, _ = _create(reconciler)
    name = _instance_name(reconciler, record.id)
    reconciler.handshake.register(_agent_token(engine, name))
    assert reconciler.reconcile(record.id).agent_registered is True

    reconciler.update_parameters(record.id, {"memory": 8})
    out = reconciler.reconcile(record.id)
    assert out.instance_created is True
    assert out.agent_registered is False


def test_describe_reports_observed_state(reconciler, engine):
    record, _ = _create(reconciler)
    detail = reconciler.describe(record.id)
    assert detail["workspace"]["gate"] == LifecycleGate.running.value
    assert detail["observed"]["instance"]["running"] is True
    assert detail["observed"]["agent"]["registered"] is False
    assert [a["slug"] for a in detail["observed"]["apps"]] == ["web"]


def test_destroy_keeps_volumes_unless_purged(reconciler, engine):
    record, _ = _create(reconciler)
    out = reconciler.destroy_workspace(record.id)
    assert out["purged"] is False
    assert engine.containers == {}
    assert len(engine.volumes) == 2
    assert reconciler.list_workspaces() == []


def test_destroy_with_purge_removes_volumes_and_image(reconciler, engine):
    record, result = _create(reconciler)
    out = reconciler.destroy_workspace(record.id, purge=True)
    assert out["purged"] is True
    assert len(out["removed_volumes"]) == 2
    assert out["removed_image"] == result.image
    assert engine.volumes == {} and engine.images == {}


def test_workspaces_are_isolated(reconciler, engine):
    a, _ = reconciler.create_workspace("basic", "one", owner="alice")
    b, _ = reconciler.create_workspace("basic", "two", owner="bob")
    assert a.id != b.id
    assert len(engine.containers) == 2
    assert len(engine.volumes) == 4
    assert [r.id for r in reconciler.list_workspaces(owner="bob")] == [b.id]
    reconciler.stop(a.id)
    assert list(engine.containers) == [_instance_name(reconciler, b.id)]


def test_agent_registration_survives_service_restart(reconciler, engine, clock, tmp_path):
    store = FileWorkspaceStore(tmp_path / "state")
    first = _service(reconciler, store, clock)
    record, _ = first.create_workspace("basic", "dev", owner="alice")
    name = _instance_name(first, record.id)
    first.handshake.register(_agent_token(engine, name))
    first.refresh_apps(record.id)
    assert store.get(record.id).applied.instance.agent_registered_at is not None

    second = _service(reconciler, store, clock)
    out = second.reconcile(record.id)
    assert out.instance_created is False
    assert out.agent_registered is True
    assert [a["state"] for a in out.apps] == ["reachable"]
    assert second.get_workspace(record.id).status is WorkspaceStatus.running
    assert engine.count("create_container") == 1


def test_restored_registration_does_not_wait_for_agent(reconciler, engine, clock, settings, tmp_path):
    store = FileWorkspaceStore(tmp_path / "state")
    first = _service(reconciler, store, clock)
    record, _ = first.create_workspace("basic", "dev")
    first.handshake.register(_agent_token(engine, _instance_name(first, record.id)))
    first.refresh_apps(record.id)

    reconciler.settings = dataclasses.replace(settings, handshake_timeout_seconds=30.0)
    second = _service(reconciler, store, clock)
    out = second.start(record.id)
    assert out.status is WorkspaceStatus.running
    assert out.agent_registered is True
    assert clock.sleeps == []


def test_refresh_after_restart_restores_registration(reconciler, engine, clock, tmp_path):
    store = FileWorkspaceStore(tmp_path / "state")
    first = _service(reconciler, store, clock)
    record, _ = first.create_workspace("basic", "dev")
    first.handshake.register(_agent_token(engine, _instance_name(first, record.id)))
    first.refresh_apps(record.id)

    second = _service(reconciler, store, clock)
    apps = second.refresh_apps(record.id)
    assert [(a.slug, a.state.value) for a in apps] == [("web", "reachable")]
    assert second.handshake.is_registered(record.id) is True


def test_persisted_registration_is_dropped_when_container_is_replaced(reconciler, engine, clock, tmp_path):
    store = FileWorkspaceStore(tmp_path / "state")
    first = _service(reconciler, store, clock)
    record, _ = first.create_workspace("basic", "dev")
    name = _instance_name(first, record.id)
    first.handshake.register(_agent_token(engine, name))
    first.refresh_apps(record.id)

    engine.containers.pop(name)
    second = _service(reconciler, store, clock)
    out = second.reconcile(record.id)
    assert out.instance_created is True
    assert out.agent_registered is False
    assert store.get(record.id).applied.instance.agent_registered_at is None


def test_slow_app_becomes_reachable_on_refresh_without_blocking(reconciler, engine, clock):
    record, _ = _create(reconciler)
    name = _instance_name(reconciler, record.id)
    reconciler.handshake.register(_agent_token(engine, name))
    engine.probe_ok = False
    [app] = reconciler.refresh_apps(record.id)
    assert app.state.value == "pending" and app.attempts == 1

    clock.now += 1
    engine.probe_ok = True
    [app] = reconciler.refresh_apps(record.id)
    assert app.state.value == "reachable" and app.attempts == 2
    assert clock.sleeps == []
    assert len(engine.probes) == 2
