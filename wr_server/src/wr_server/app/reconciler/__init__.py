from __future__ import annotations

"""
Lifecycle reconciler: build trigger, image builder, durable volumes,
lifecycle gate, instance reconciler, agent handshake and app registry, wired
together as an explicit resource graph by Reconciler.
"""

from wr_server.app.reconciler.apps import AppRef, AppState, ExposedApplicationRegistry
from wr_server.app.reconciler.core import Reconciler, ReconcileResult
from wr_server.app.reconciler.fingerprint import fingerprint
from wr_server.app.reconciler.gate import LifecycleGate
from wr_server.app.reconciler.graph import ResourceGraph
from wr_server.app.reconciler.handshake import AgentHandshake
from wr_server.app.reconciler.images import BuildContext, ImageBuilder
from wr_server.app.reconciler.instance import InstanceReconciler
from wr_server.app.reconciler.store import (
    FileWorkspaceStore,
    MemoryWorkspaceStore,
    WorkspaceRecord,
    WorkspaceStatus,
    WorkspaceStore,
)
from wr_server.app.reconciler.volumes import DurableVolumeSet

__all__ = [
    "AppRef",
    "AppState",
    "ExposedApplicationRegistry",
    "Reconciler",
    "ReconcileResult",
    "fingerprint",
    "LifecycleGate",
    "ResourceGraph",
    "AgentHandshake",
    "BuildContext",
    "ImageBuilder",
    "InstanceReconciler",
    "FileWorkspaceStore",
    "MemoryWorkspaceStore",
    "WorkspaceRecord",
    "WorkspaceStatus",
    "WorkspaceStore",
    "DurableVolumeSet",
]
