from __future__ import annotations

"""
Docker implementation of the container engine boundary.

The client is built from an explicit base_url (e.g. unix:///var/run/docker.sock
or tcp://host:2375) supplied by configuration; docker.from_env() is never used
so the engine endpoint is always visible at the call site.

Notes:
- Containers are created and started in two steps; if start fails the
  half-created container is removed so no partial instance remains.
- Containers are removed without the v flag: named volumes are never touched
  by instance teardown.
"""

import logging
import re
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence

import docker
from docker import DockerClient
from docker.errors import APIError, BuildError, DockerException, ImageNotFound, InvalidArgument, NotFound
from docker.models.containers import Container
from docker.types import Mount as DockerMount

from wr_server.app.engine.base import ContainerEngine, InstanceRef, InstanceSpec, VolumeRef
from wr_server.app.errors import EngineError, EngineResourceError

logger = logging.getLogger("workspace_reconciler")

# Go's JSON decoder rejects decimals for integer HostConfig fields, e.g.
# "json: cannot unmarshal number 2.0 into Go struct field Resources.HostConfig.NanoCpus of type int64"
_UNMARSHAL_RE = re.compile(r"cannot unmarshal \S+ into Go struct field \S*?(?P<field>[A-Za-z]+) of type", re.IGNORECASE)


def _resource_field_from_message(message: str) -> Optional[str]:
    m = _UNMARSHAL_RE.search(message or "")
    if m:
        return m.group("field")
    lowered = (message or "").lower()
    if "mem_limit" in lowered or "memory" in lowered:
        return "Memory"
    if "nano_cpus" in lowered or "nanocpus" in lowered:
        return "NanoCpus"
    return None


def _container_to_ref(c: Container) -> InstanceRef:
    attrs = getattr(c, "attrs", {}) or {}
    image = (attrs.get("Config") or {}).get("Image") or ""
    return InstanceRef(
        name=c.name,
        container_id=c.id,
        image=image,
        running=(c.status == "running"),
        labels=dict(c.labels or {}),
    )


class DockerEngine(ContainerEngine):
    """
    ContainerEngine backed by the Docker Engine API.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: int = 600,
        platform: Optional[str] = None,
        client: Optional[DockerClient] = None,
    ) -> None:
        self.base_url = base_url
        self.platform = platform
        self._client = client or docker.DockerClient(base_url=base_url, timeout=timeout)

    @property
    def client(self) -> DockerClient:
        return self._client

    def ping(self) -> None:
        try:
            self._client.ping()
        except DockerException as exc:
            raise EngineError(str(exc)) from exc

    def close(self) -> None:
        self._client.close()

    # --------------------------
    # Volumes
    # --------------------------

    def get_volume(self, name: str) -> Optional[VolumeRef]:
        try:
            vol = self._client.volumes.get(name)
        except NotFound:
            return None
        except APIError as exc:
            raise EngineError(str(exc)) from exc
        labels = (getattr(vol, "attrs", {}) or {}).get("Labels") or {}
        return VolumeRef(name=vol.name, labels=dict(labels))

    def create_volume(self, name: str, labels: Mapping[str, str]) -> VolumeRef:
        try:
            vol = self._client.volumes.create(name=name, driver="local", labels=dict(labels))
        except APIError as exc:
            raise EngineError(str(exc)) from exc
        created = (getattr(vol, "attrs", {}) or {}).get("Labels") or dict(labels)
        return VolumeRef(name=vol.name, labels=dict(created))

    def remove_volume(self, name: str) -> None:
        try:
            self._client.volumes.get(name).remove(force=True)
        except NotFound:
            return
        except APIError as exc:
            raise EngineError(str(exc)) from exc

    # --------------------------
    # Images
    # --------------------------

    def image_exists(self, tag: str) -> bool:
        try:
            self._client.images.get(tag)
            return True
        except ImageNotFound:
            return False
        except APIError as exc:
            raise EngineError(str(exc)) from exc

    def build_image(
        self,
        context_dir: Path,
        *,
        dockerfile: str,
        build_args: Mapping[str, str],
        tag: str,
        labels: Mapping[str, str],
    ) -> Optional[str]:
        kwargs: Dict[str, object] = dict(
            path=str(context_dir),
            dockerfile=dockerfile,
            buildargs=dict(build_args),
            tag=tag,
            labels=dict(labels),
            rm=True,
            forcerm=True,
        )
        if self.platform:
            kwargs["platform"] = self.platform
        try:
            image, build_log = self._client.images.build(**kwargs)
        except BuildError as exc:
            for chunk in exc.build_log or []:
                if isinstance(chunk, dict) and chunk.get("stream"):
                    logger.debug("build %s: %s", tag, str(chunk["stream"]).rstrip())
            raise EngineError(exc.msg) from exc
        except (APIError, TypeError) as exc:
            raise EngineError(str(exc)) from exc
        for chunk in build_log:
            if isinstance(chunk, dict) and chunk.get("stream"):
                logger.debug("build %s: %s", tag, str(chunk["stream"]).rstrip())
        return getattr(image, "id", None)

    def remove_image(self, tag: str) -> None:
        try:
            self._client.images.remove(tag, force=True)
        except ImageNotFound:
            return
        except APIError as exc:
            raise EngineError(str(exc)) from exc

    # --------------------------
    # Containers
    # --------------------------

    def find_container(self, name: str) -> Optional[InstanceRef]:
        try:
            c = self._client.containers.get(name)
        except NotFound:
            return None
        except APIError as exc:
            raise EngineError(str(exc)) from exc
        return _container_to_ref(c)

    def create_container(self, spec: InstanceSpec) -> InstanceRef:
        mounts: List[DockerMount] = [
            DockerMount(target=m.target, source=m.source, type=m.kind, read_only=m.read_only)
            for m in spec.mounts
        ]
        create_kwargs: Dict[str, object] = dict(
            name=spec.name,
            entrypoint=list(spec.command),
            environment=dict(spec.environment),
            mounts=mounts,
            labels=dict(spec.labels),
            detach=True,
            # The main process is the agent init script; when it exits the instance is stopped
            restart_policy={"Name": "no"},
        )
        if spec.hostname:
            create_kwargs["hostname"] = spec.hostname
        if spec.extra_hosts:
            create_kwargs["extra_hosts"] = dict(spec.extra_hosts)
        if spec.mem_limit_bytes is not None:
            create_kwargs["mem_limit"] = spec.mem_limit_bytes
        if spec.nano_cpus is not None:
            create_kwargs["nano_cpus"] = spec.nano_cpus
        platform = spec.platform or self.platform
        if platform:
            create_kwargs["platform"] = platform

        try:
            c = self._client.containers.create(spec.image, **create_kwargs)
        except (TypeError, InvalidArgument) as exc:
            field = _resource_field_from_message(str(exc)) or "resources"
            raise EngineResourceError(field, str(exc)) from exc
        except APIError as exc:
            field = _resource_field_from_message(str(exc)) if "unmarshal" in str(exc) else None
            if field:
                raise EngineResourceError(field, str(exc)) from exc
            raise EngineError(str(exc)) from exc

        try:
            c.start()
            c.reload()
        except APIError as exc:
            try:
                c.remove(force=True)
            except APIError as cleanup_exc:
                logger.error("Failed to remove half-created container %s: %s", spec.name, cleanup_exc)
            raise EngineError(str(exc)) from exc
        return _container_to_ref(c)

    def remove_container(self, name: str, timeout: int = 10) -> None:
        try:
            c = self._client.containers.get(name)
        except NotFound:
            return
        except APIError as exc:
            raise EngineError(str(exc)) from exc
        try:
            if c.status == "running":
                c.stop(timeout=timeout)
            c.remove(force=True)
        except NotFound:
            return
        except APIError as exc:
            raise EngineError(str(exc)) from exc

    def exec_probe(self, name: str, argv: Sequence[str], timeout: int = 10) -> int:
        try:
            c = self._client.containers.get(name)
            res = c.exec_run(list(argv), demux=True)
        except NotFound:
            return 127
        except APIError as exc:
            raise EngineError(str(exc)) from exc
        exit_code = getattr(res, "exit_code", None)
        return 1 if exit_code is None else int(exit_code)


__all__ = ["DockerEngine"]
