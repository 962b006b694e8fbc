import dataclasses

import pytest
from fastapi.testclient import TestClient

import wr_server.app.deps as deps
from wr_server.app.main import app, status_for_error
from wr_server.app.errors import (
    BuildFailure,
    HandshakeTimeout,
    ParameterInvalid,
    StageOrderingError,
    VolumeConflict,
)
from wr_server.app.reconciler.instance import ENV_AGENT_TOKEN


@pytest.fixture
def client(reconciler):
    # No `with` block: the lifespan engine check is skipped
    app.dependency_overrides[deps.get_reconciler] = lambda: reconciler
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def _create(client, **body):
    payload = {"template": "basic", "name": "Dev-Box", "owner": "alice"}
    payload.update(body)
    return client.post("/workspaces", json=payload)


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["status"] == "ok"


def test_templates_listing(client):
    r = client.get("/templates")
    assert r.status_code == 200
    [tpl] = r.json()["templates"]
    assert tpl["name"] == "basic"
    assert tpl["origin"].startswith("test:")
    assert client.get("/templates/basic").json()["display_name"] == "Basic"
    assert client.get("/templates/errors").json() == {"errors": []}


def test_unknown_template_is_404(client):
    r = client.get("/templates/nope")
    assert r.status_code == 404
    assert r.json() == {"error": "template_not_found", "stage": None, "detail": "template 'nope' not found"}


def test_create_start_and_read_back(client, engine):
    r = _create(client, parameters={"cpu": 3})
    assert r.status_code == 201
    body = r.json()
    ws = body["workspace"]
    assert ws["name"] == "dev-box"
    assert ws["parameters"]["cpu"] == 3
    assert ws["gate"] == "running"
    assert body["reconcile"]["status"] == "running"
    assert body["reconcile"]["image_built"] is True

    detail = client.get(f"/workspaces/{ws['workspace_id']}").json()
    assert detail["observed"]["instance"]["running"] is True
    assert detail["workspace"]["applied"]["volumes"].keys() == {"home", "cache"}

    listing = client.get("/workspaces", params={"owner": "alice"}).json()
    assert [w["workspace_id"] for w in listing["workspaces"]] == [ws["workspace_id"]]


def test_invalid_parameter_is_400_with_stage(client, engine):
    r = _create(client, parameters={"cpu": 0})
    assert r.status_code == 400
    body = r.json()
    assert body["error"] == "parameter_invalid"
    assert body["stage"] == "parameters"
    assert engine.calls == []


def test_invalid_name_is_422(client):
    assert _create(client, name="no_underscores").status_code == 422


def test_failed_start_is_reported_in_body(client, engine):
    engine.build_error = "failed to solve"
    r = _create(client)
    assert r.status_code == 201
    err = r.json()["reconcile"]["error"]
    assert err == {"error": "build_failure", "stage": "image", "detail": "failed to solve"}
    wsid = r.json()["workspace"]["workspace_id"]
    again = client.post(f"/workspaces/{wsid}/reconcile")
    assert again.status_code == 502
    assert again.json()["error"] == "build_failure"


def test_stop_start_and_parameters(client, engine):
    wsid = _create(client).json()["workspace"]["workspace_id"]
    assert client.post(f"/workspaces/{wsid}/stop").json()["status"] == "stopped"
    assert engine.containers == {}

    r = client.patch(f"/workspaces/{wsid}/parameters", json={"parameters": {"memory": 8}})
    assert r.status_code == 200 and r.json()["parameters"]["memory"] == 8

    immutable = client.patch(f"/workspaces/{wsid}/parameters", json={"parameters": {"flavor": "b"}})
    assert immutable.status_code == 400

    started = client.post(f"/workspaces/{wsid}/start")
    assert started.json()["instance_created"] is True
    spec = next(iter(engine.specs.values()))
    assert spec.mem_limit_bytes == 8 * 1073741824


def test_unknown_workspace_is_404(client):
    r = client.post("/workspaces/missing/start")
    assert r.status_code == 404
    assert r.json()["error"] == "workspace_not_found"


def test_delete_with_purge(client, engine):
    wsid = _create(client).json()["workspace"]["workspace_id"]
    r = client.delete(f"/workspaces/{wsid}", params={"purge": "true"})
    assert r.status_code == 200
    assert r.json()["purged"] is True
    assert engine.volumes == {}
    assert client.get(f"/workspaces/{wsid}").status_code == 404


def test_agent_register_and_lifecycle(client, engine):
    wsid = _create(client).json()["workspace"]["workspace_id"]
    name = next(iter(engine.specs))
    token = engine.specs[name].environment[ENV_AGENT_TOKEN]

    script = client.post("/agent/register", params={"format": "script"}, headers={"X-Agent-Token": token})
    assert script.status_code == 200
    assert script.text == "echo ready\n"

    boot = client.post("/agent/register", headers={"Authorization": f"Bearer {token}"})
    assert boot.json()["environment"]["GREETING"] == "hello"

    # Registration triggers an app refresh in the background
    apps = client.get(f"/workspaces/{wsid}/apps").json()["apps"]
    assert [(a["slug"], a["state"]) for a in apps] == [("web", "reachable")]

    r = client.post("/agent/lifecycle", json={"state": "ready", "exit_code": 0}, headers={"X-Agent-Token": token})
    assert r.json() == {"workspace_id": wsid, "lifecycle": "ready", "exit_code": 0}


def test_agent_routes_reject_bad_tokens(client):
    assert client.post("/agent/register").status_code == 401
    assert client.post("/agent/register", headers={"X-Agent-Token": "v1.bad.sig"}).status_code == 401
    r = client.post("/agent/lifecycle", json={"state": "bogus"}, headers={"X-Agent-Token": "x"})
    assert r.status_code == 422


def test_api_key_enforced_when_configured(client, settings, monkeypatch):
    keyed = dataclasses.replace(settings, api_key="s3cret", api_keys=["s3cret"])
    monkeypatch.setattr(deps, "get_settings", lambda: keyed)
    assert client.get("/templates").status_code == 401
    assert client.get("/templates", headers={"X-API-Key": "s3cret"}).status_code == 200
    # Health stays open
    assert client.get("/health").status_code == 200


def test_status_mapping():
    assert status_for_error(ParameterInvalid("cpu", "bad")) == 400
    assert status_for_error(VolumeConflict("taken", stage="volume:home")) == 409
    assert status_for_error(BuildFailure("x")) == 502
    assert status_for_error(StageOrderingError("x")) == 500
    assert status_for_error(HandshakeTimeout("x")) == 502
