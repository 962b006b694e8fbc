from __future__ import annotations

"""
Container engine boundary and its Docker implementation.
"""

from wr_server.app.engine.base import (
    ContainerEngine,
    ImageArtifactRef,
    InstanceRef,
    InstanceSpec,
    Mount,
    VolumeRef,
)
from wr_server.app.engine.docker_engine import DockerEngine

__all__ = [
    "ContainerEngine",
    "ImageArtifactRef",
    "InstanceRef",
    "InstanceSpec",
    "Mount",
    "VolumeRef",
    "DockerEngine",
]
