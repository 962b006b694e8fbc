from pathlib import Path

import pytest

from wr_server.app.errors import WorkspaceNotFound
from wr_server.app.reconciler.gate import LifecycleGate
from wr_server.app.reconciler.store import (
    AppliedImage,
    AppliedInstance,
    FileWorkspaceStore,
    MemoryWorkspaceStore,
    WorkspaceRecord,
    WorkspaceStatus,
    store_from_settings,
)


def _record(ws="ws1", owner="alice"):
    return WorkspaceRecord(id=ws, name="dev", owner=owner, template="basic", parameters={"cpu": 2})


@pytest.fixture(params=["memory", "file"])
def store(request, tmp_path: Path):
    if request.param == "memory":
        return MemoryWorkspaceStore()
    return FileWorkspaceStore(tmp_path / "state")


def test_put_get_round_trip(store):
    rec = _record()
    rec.gate = LifecycleGate.running
    rec.applied.image = AppliedImage(tag="r:abc", fingerprint="abc")
    rec.applied.volumes["home"] = "wr-ws1-home"
    store.put(rec)
    got = store.get("ws1")
    assert got.gate is LifecycleGate.running
    assert got.applied.image.fingerprint == "abc"
    assert got.applied.volumes == {"home": "wr-ws1-home"}
    assert got.status is WorkspaceStatus.pending


def test_returned_records_are_copies(store):
    store.put(_record())
    got = store.get("ws1")
    got.parameters["cpu"] = 99
    assert store.get("ws1").parameters["cpu"] == 2


def test_list_filters_by_owner(store):
    store.put(_record("a", owner="alice"))
    store.put(_record("b", owner="bob"))
    assert {r.id for r in store.list()} == {"a", "b"}
    assert [r.id for r in store.list("bob")] == ["b"]


def test_delete_and_require(store):
    store.put(_record())
    store.delete("ws1")
    store.delete("ws1")
    assert store.get("ws1") is None
    with pytest.raises(WorkspaceNotFound):
        store.require("ws1")


def test_file_store_survives_reopen(tmp_path: Path):
    FileWorkspaceStore(tmp_path).put(_record())
    assert FileWorkspaceStore(tmp_path).require("ws1").name == "dev"
    assert not list(tmp_path.glob("*.tmp"))



def test_file_store_keeps_agent_registration_of_applied_instance(tmp_path: Path):
    rec = _record()
    rec.applied.volumes["home"] = "wr-ws1-home"
    rec.applied.instance = AppliedInstance(
        name="wr-ws-ws1", container_id="c1", image="img:1", agent_registered_at="2026-01-01T00:00:00Z"
    )
    FileWorkspaceStore(tmp_path).put(rec)
    applied = FileWorkspaceStore(tmp_path).require("ws1").applied
    assert applied.instance.agent_registered_at == "2026-01-01T00:00:00Z"
    assert set(applied.model_dump()) == {"image", "volumes", "instance"}

def test_file_store_rejects_path_like_ids(tmp_path: Path):
    with pytest.raises(WorkspaceNotFound):
        FileWorkspaceStore(tmp_path).get("../etc")


def test_store_from_settings(tmp_path: Path, settings):
    import dataclasses

    assert isinstance(store_from_settings(settings), MemoryWorkspaceStore)
    file_settings = dataclasses.replace(settings, state_dir=str(tmp_path / "s"))
    assert isinstance(store_from_settings(file_settings), FileWorkspaceStore)
