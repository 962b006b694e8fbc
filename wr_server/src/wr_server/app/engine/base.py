from __future__ import annotations

"""
Container engine boundary.

The reconciler consumes exactly these engine operations:
- create/get/remove a named volume
- build an image from a context directory plus build args, tagged by name
- create/remove a container from an InstanceSpec
- query container presence and running state
- run a short probe command inside a running container

Implementations raise EngineError (message is the engine's, unmodified) and
EngineResourceError when a resource field cannot be converted to the engine's
native type. Removing an absent container or volume is a no-op.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence


@dataclass(frozen=True)
class VolumeRef:
    name: str
    labels: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ImageArtifactRef:
    tag: str
    fingerprint: str
    image_id: Optional[str] = None


@dataclass(frozen=True)
class Mount:
    """
    A container mount. kind is "volume" (source is a volume name) or "bind"
    (source is a host path).
    """
    target: str
    source: str
    kind: str = "volume"
    read_only: bool = False


@dataclass(frozen=True)
class InstanceSpec:
    """
    Everything needed to create one workspace instance in a single call.
    """
    name: str
    image: str
    command: List[str]
    environment: Dict[str, str]
    mounts: List[Mount]
    labels: Dict[str, str]
    hostname: Optional[str] = None
    mem_limit_bytes: Optional[int] = None
    nano_cpus: Optional[int] = None
    extra_hosts: Dict[str, str] = field(default_factory=dict)
    platform: Optional[str] = None


@dataclass(frozen=True)
class InstanceRef:
    name: str
    container_id: Optional[str]
    image: str
    running: bool
    labels: Dict[str, str] = field(default_factory=dict)


class ContainerEngine(ABC):
    """
    Abstract container engine used by the reconciler.
    """

    # Volumes

    @abstractmethod
    def get_volume(self, name: str) -> Optional[VolumeRef]:
        raise NotImplementedError

    @abstractmethod
    def create_volume(self, name: str, labels: Mapping[str, str]) -> VolumeRef:
        raise NotImplementedError

    @abstractmethod
    def remove_volume(self, name: str) -> None:
        raise NotImplementedError

    # Images

    @abstractmethod
    def image_exists(self, tag: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    def build_image(
        self,
        context_dir: Path,
        *,
        dockerfile: str,
        build_args: Mapping[str, str],
        tag: str,
        labels: Mapping[str, str],
    ) -> Optional[str]:
        """
        Build and tag an image. Returns the engine's image id when known.
        """
        raise NotImplementedError

    @abstractmethod
    def remove_image(self, tag: str) -> None:
        raise NotImplementedError

    # Containers

    @abstractmethod
    def find_container(self, name: str) -> Optional[InstanceRef]:
        raise NotImplementedError

    @abstractmethod
    def create_container(self, spec: InstanceSpec) -> InstanceRef:
        raise NotImplementedError

    @abstractmethod
    def remove_container(self, name: str, timeout: int = 10) -> None:
        raise NotImplementedError

    @abstractmethod
    def exec_probe(self, name: str, argv: Sequence[str], timeout: int = 10) -> int:
        """
        Run argv inside a running container and return its exit code.
        """
        raise NotImplementedError

    def ping(self) -> None:
        """
        Raise EngineError when the engine is unreachable.
        """
        return

    def close(self) -> None:
        return


__all__ = [
    "VolumeRef",
    "ImageArtifactRef",
    "Mount",
    "InstanceSpec",
    "InstanceRef",
    "ContainerEngine",
]
