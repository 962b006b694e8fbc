from pathlib import Path
from unittest.mock import MagicMock

import pytest
from docker.errors import APIError, BuildError, ImageNotFound, NotFound
from docker.types import Mount as DockerMount

from wr_server.app.engine.base import InstanceSpec, Mount
from wr_server.app.engine.docker_engine import DockerEngine
from wr_server.app.errors import EngineError, EngineResourceError


def _engine():
    client = MagicMock()
    return DockerEngine("unix:///var/run/docker.sock", client=client), client


def _spec(**overrides):
    base = dict(
        name="wr-ws-abc",
        image="wr-workspace:1234",
        command=["/bin/sh", "-c", "echo hi"],
        environment={"A": "1"},
        mounts=[Mount(target="/home/coder", source="wr-abc-home")],
        labels={"wr.managed": "true"},
        hostname="dev",
        mem_limit_bytes=4 * 1073741824,
        nano_cpus=2_000_000_000,
        extra_hosts={"host.docker.internal": "host-gateway"},
    )
    base.update(overrides)
    return InstanceSpec(**base)


def _container(status="running"):
    c = MagicMock()
    c.name = "wr-ws-abc"
    c.id = "cid"
    c.status = status
    c.labels = {"wr.managed": "true"}
    c.attrs = {"Config": {"Image": "wr-workspace:1234"}}
    return c


def test_missing_volume_is_none_and_remove_is_a_no_op():
    engine, client = _engine()
    client.volumes.get.side_effect = NotFound("no such volume")
    assert engine.get_volume("wr-abc-home") is None
    engine.remove_volume("wr-abc-home")


def test_volume_labels_come_from_attrs():
    engine, client = _engine()
    vol = MagicMock()
    vol.name = "wr-abc-home"
    vol.attrs = {"Labels": {"wr.workspace.id": "abc"}}
    client.volumes.get.return_value = vol
    ref = engine.get_volume("wr-abc-home")
    assert ref.labels == {"wr.workspace.id": "abc"}


def test_api_errors_keep_engine_message():
    engine, client = _engine()
    client.volumes.create.side_effect = APIError("volume name is in use")
    with pytest.raises(EngineError, match="volume name is in use"):
        engine.create_volume("wr-abc-home", {})


def test_image_exists():
    engine, client = _engine()
    assert engine.image_exists("wr-workspace:1") is True
    client.images.get.side_effect = ImageNotFound("nope")
    assert engine.image_exists("wr-workspace:1") is False


def test_build_passes_args_and_maps_build_errors(tmp_path: Path):
    engine, client = _engine()
    image = MagicMock()
    image.id = "sha256:abc"
    client.images.build.return_value = (image, [{"stream": "Step 1/1"}])
    image_id = engine.build_image(
        tmp_path, dockerfile="Dockerfile", build_args={"FLAVOR": "a"}, tag="wr-workspace:1", labels={"x": "y"}
    )
    assert image_id == "sha256:abc"
    kwargs = client.images.build.call_args.kwargs
    assert kwargs["path"] == str(tmp_path)
    assert kwargs["buildargs"] == {"FLAVOR": "a"}
    assert kwargs["tag"] == "wr-workspace:1"

    client.images.build.side_effect = BuildError("failed to solve", [{"stream": "boom"}])
    with pytest.raises(EngineError, match="failed to solve"):
        engine.build_image(tmp_path, dockerfile="Dockerfile", build_args={}, tag="t", labels={})


def test_create_container_kwargs():
    engine, client = _engine()
    client.containers.create.return_value = _container()
    ref = engine.create_container(_spec())
    assert ref.running is True
    assert ref.container_id == "cid"

    args, kwargs = client.containers.create.call_args
    assert args == ("wr-workspace:1234",)
    assert kwargs["entrypoint"] == ["/bin/sh", "-c", "echo hi"]
    assert kwargs["mem_limit"] == 4 * 1073741824
    assert kwargs["nano_cpus"] == 2_000_000_000
    assert kwargs["extra_hosts"] == {"host.docker.internal": "host-gateway"}
    assert kwargs["hostname"] == "dev"
    [mount] = kwargs["mounts"]
    assert isinstance(mount, DockerMount)
    assert mount["Target"] == "/home/coder"
    assert mount["Source"] == "wr-abc-home"
    assert mount["Type"] == "volume"


def test_unset_resources_are_not_sent():
    engine, client = _engine()
    client.containers.create.return_value = _container()
    engine.create_container(_spec(mem_limit_bytes=None, nano_cpus=None, extra_hosts={}))
    kwargs = client.containers.create.call_args.kwargs
    assert "mem_limit" not in kwargs
    assert "nano_cpus" not in kwargs
    assert "extra_hosts" not in kwargs


def test_unmarshal_error_is_a_resource_error():
    engine, client = _engine()
    client.containers.create.side_effect = APIError(
        "json: cannot unmarshal number 2.0 into Go struct field Resources.HostConfig.NanoCpus of type int64"
    )
    with pytest.raises(EngineResourceError) as ei:
        engine.create_container(_spec())
    assert ei.value.field == "NanoCpus"


def test_failed_start_removes_half_created_container():
    engine, client = _engine()
    c = _container(status="created")
    c.start.side_effect = APIError("port is already allocated")
    client.containers.create.return_value = c
    with pytest.raises(EngineError, match="port is already allocated"):
        engine.create_container(_spec())
    c.remove.assert_called_once_with(force=True)


def test_remove_container_stops_running_and_ignores_missing():
    engine, client = _engine()
    c = _container()
    client.containers.get.return_value = c
    engine.remove_container("wr-ws-abc", timeout=3)
    c.stop.assert_called_once_with(timeout=3)
    c.remove.assert_called_once_with(force=True)

    client.containers.get.side_effect = NotFound("gone")
    engine.remove_container("wr-ws-abc")
    assert engine.find_container("wr-ws-abc") is None


def test_exec_probe_exit_codes():
    engine, client = _engine()
    c = _container()
    c.exec_run.return_value = MagicMock(exit_code=0)
    client.containers.get.return_value = c
    assert engine.exec_probe("wr-ws-abc", ["true"]) == 0
    c.exec_run.return_value = MagicMock(exit_code=None)
    assert engine.exec_probe("wr-ws-abc", ["true"]) == 1
    client.containers.get.side_effect = NotFound("gone")
    assert engine.exec_probe("wr-ws-abc", ["true"]) == 127
