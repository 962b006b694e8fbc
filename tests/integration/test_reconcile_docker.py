"""
End-to-end reconcile against a real Docker engine.

Skipped automatically when WORKSPACE_ENGINE_URL (default
unix:///var/run/docker.sock) is not reachable.
"""

from __future__ import annotations

import copy
import dataclasses
import os
import uuid
from pathlib import Path

import pytest

from fakes import BASIC_TEMPLATE, write_template

from wr_server.app.engine.docker_engine import DockerEngine
from wr_server.app.reconciler.apps import ExposedApplicationRegistry
from wr_server.app.reconciler.core import Reconciler
from wr_server.app.reconciler.handshake import AgentHandshake
from wr_server.app.reconciler.store import MemoryWorkspaceStore, WorkspaceStatus
from wr_server.app.templates.registry import TemplateRegistry

pytestmark = pytest.mark.docker


@pytest.fixture
def docker_engine():
    engine = DockerEngine(os.getenv("WORKSPACE_ENGINE_URL") or "unix:///var/run/docker.sock", timeout=120)
    try:
        yield engine
    finally:
        engine.close()


@pytest.fixture
def docker_reconciler(tmp_path: Path, settings, docker_engine):
    doc = copy.deepcopy(BASIC_TEMPLATE)
    # Tests may run concurrently against one engine; keep image tags apart
    doc["name"] = f"it-{uuid.uuid4().hex[:8]}"
    doc["apps"] = [{"slug": "shell", "command": "sh"}]
    root = tmp_path / "templates"
    write_template(root, doc, dockerfile="FROM busybox:1.36\nARG FLAVOR\nRUN echo \"$FLAVOR\" > /flavor\n")
    reconciler = Reconciler(
        engine=docker_engine,
        store=MemoryWorkspaceStore(),
        templates=TemplateRegistry([("it", root)], fail_fast=True),
        handshake=AgentHandshake(settings.agent_token_secret, 3600),
        apps=ExposedApplicationRegistry(),
        settings=dataclasses.replace(settings, handshake_timeout_seconds=0.0),
    )
    return reconciler, doc["name"]


def test_create_stop_start_and_purge(docker_reconciler, docker_engine, settings):
    r, template = docker_reconciler
    record, result = r.create_workspace(template, "integration", owner="it", parameters={"cpu": 1, "memory": 1})
    try:
        assert result.status is WorkspaceStatus.running
        assert result.image_built is True

        name = r.instances.instance_name(record.id)
        found = docker_engine.find_container(name)
        assert found is not None and found.running
        attrs = docker_engine.client.containers.get(name).attrs
        assert attrs["HostConfig"]["NanoCpus"] == 1_000_000_000
        assert attrs["HostConfig"]["Memory"] == 1073741824

        home = settings.workspace_volume_name(record.id, "home")
        assert docker_engine.get_volume(home).labels["wr.workspace.id"] == record.id

        assert r.reconcile(record.id).instance_created is False
        assert docker_engine.exec_probe(name, ["sh", "-c", "echo kept > /home/coder/marker"]) == 0

        r.stop(record.id)
        assert docker_engine.find_container(name) is None
        assert docker_engine.get_volume(home) is not None

        started = r.start(record.id)
        assert started.instance_created is True
        assert started.image_built is False
        assert docker_engine.exec_probe(name, ["grep", "-q", "kept", "/home/coder/marker"]) == 0
    finally:
        out = r.destroy_workspace(record.id, purge=True)
    assert out["purged"] is True
    assert docker_engine.get_volume(settings.workspace_volume_name(record.id, "home")) is None
    assert docker_engine.find_container(r.instances.instance_name(record.id)) is None
