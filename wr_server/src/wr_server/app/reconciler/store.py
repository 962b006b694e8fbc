from __future__ import annotations

"""
Workspace records and their persistence.

A WorkspaceRecord is the desired state (template, parameters, gate) plus the
last applied state (image artifact, volumes, instance). The applied image
fingerprint recorded here is what the build trigger compares against.

Two stores:
- MemoryWorkspaceStore: process-local, used by tests and when no state
  directory is configured.
- FileWorkspaceStore: one JSON document per workspace under a directory,
  written to a temp file and atomically replaced.
"""

import enum
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from wr_server.app.engine.base import ImageArtifactRef, InstanceRef
from wr_server.app.errors import WorkspaceNotFound
from wr_server.app.reconciler.gate import LifecycleGate
from wr_server.app.reconciler.labels import now_utc_iso

logger = logging.getLogger("workspace_reconciler")


class WorkspaceStatus(str, enum.Enum):
    pending = "pending"
    running = "running"
    degraded = "degraded"
    stopped = "stopped"
    failed = "failed"


class AppliedImage(BaseModel):
    tag: str
    fingerprint: str
    image_id: Optional[str] = None

    def to_ref(self) -> ImageArtifactRef:
        return ImageArtifactRef(tag=self.tag, fingerprint=self.fingerprint, image_id=self.image_id)

    @classmethod
    def from_ref(cls, ref: ImageArtifactRef) -> "AppliedImage":
        return cls(tag=ref.tag, fingerprint=ref.fingerprint, image_id=ref.image_id)


class AppliedInstance(BaseModel):
    name: str
    container_id: Optional[str] = None
    image: str
    spec_digest: Optional[str] = None
    # Set once the agent inside this container has registered
    agent_registered_at: Optional[str] = None


class AppliedState(BaseModel):
    image: Optional[AppliedImage] = None
    # category -> volume name
    volumes: Dict[str, str] = Field(default_factory=dict)
    instance: Optional[AppliedInstance] = None


class LastError(BaseModel):
    error: str
    stage: Optional[str] = None
    detail: str
    at: str = Field(default_factory=now_utc_iso)


class WorkspaceRecord(BaseModel):
    id: str
    name: str
    owner: Optional[str] = None
    template: str
    parameters: Dict[str, Any] = Field(default_factory=dict)
    gate: LifecycleGate = LifecycleGate.stopped
    status: WorkspaceStatus = WorkspaceStatus.pending
    applied: AppliedState = Field(default_factory=AppliedState)
    last_error: Optional[LastError] = None
    created_at: str = Field(default_factory=now_utc_iso)
    updated_at: str = Field(default_factory=now_utc_iso)

    def touch(self) -> "WorkspaceRecord":
        self.updated_at = now_utc_iso()
        return self


def instance_from_ref(ref: InstanceRef, spec_digest: Optional[str]) -> AppliedInstance:
    return AppliedInstance(name=ref.name, container_id=ref.container_id, image=ref.image, spec_digest=spec_digest)


# -----------------------
# Stores
# -----------------------

class WorkspaceStore(ABC):
    @abstractmethod
    def get(self, workspace_id: str) -> Optional[WorkspaceRecord]:
        raise NotImplementedError

    @abstractmethod
    def put(self, record: WorkspaceRecord) -> WorkspaceRecord:
        raise NotImplementedError

    @abstractmethod
    def delete(self, workspace_id: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def list(self, owner: Optional[str] = None) -> List[WorkspaceRecord]:
        raise NotImplementedError

    def require(self, workspace_id: str) -> WorkspaceRecord:
        rec = self.get(workspace_id)
        if rec is None:
            raise WorkspaceNotFound(workspace_id)
        return rec


class MemoryWorkspaceStore(WorkspaceStore):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: Dict[str, WorkspaceRecord] = {}

    def get(self, workspace_id: str) -> Optional[WorkspaceRecord]:
        with self._lock:
            rec = self._records.get(workspace_id)
            return rec.model_copy(deep=True) if rec is not None else None

    def put(self, record: WorkspaceRecord) -> WorkspaceRecord:
        record.touch()
        with self._lock:
            self._records[record.id] = record.model_copy(deep=True)
        return record

    def delete(self, workspace_id: str) -> None:
        with self._lock:
            self._records.pop(workspace_id, None)

    def list(self, owner: Optional[str] = None) -> List[WorkspaceRecord]:
        with self._lock:
            recs = [r.model_copy(deep=True) for r in self._records.values()]
        if owner is not None:
            recs = [r for r in recs if r.owner == owner]
        return sorted(recs, key=lambda r: r.created_at)


class FileWorkspaceStore(WorkspaceStore):
    """
    One <workspace_id>.json per record under root.
    """

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root)
        self._root.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _path(self, workspace_id: str) -> Path:
        if not workspace_id or "/" in workspace_id or workspace_id.startswith("."):
            raise WorkspaceNotFound(workspace_id)
        return self._root / f"{workspace_id}.json"

    def _read(self, path: Path) -> Optional[WorkspaceRecord]:
        try:
            return WorkspaceRecord.model_validate_json(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None

    def get(self, workspace_id: str) -> Optional[WorkspaceRecord]:
        with self._lock:
            return self._read(self._path(workspace_id))

    def put(self, record: WorkspaceRecord) -> WorkspaceRecord:
        record.touch()
        path = self._path(record.id)
        data = record.model_dump_json(indent=2)
        with self._lock:
            fd, tmp = tempfile.mkstemp(prefix=f".{record.id}.", suffix=".tmp", dir=str(self._root))
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    fh.write(data)
                    fh.flush()
                    os.fsync(fh.fileno())
                os.replace(tmp, path)
            except BaseException:
                if os.path.exists(tmp):
                    os.unlink(tmp)
                raise
        return record

    def delete(self, workspace_id: str) -> None:
        with self._lock:
            try:
                self._path(workspace_id).unlink()
            except FileNotFoundError:
                pass

    def list(self, owner: Optional[str] = None) -> List[WorkspaceRecord]:
        recs: List[WorkspaceRecord] = []
        with self._lock:
            for path in sorted(self._root.glob("*.json")):
                try:
                    rec = self._read(path)
                except ValueError as exc:
                    logger.warning("Skipping unreadable workspace record %s: %s", path, exc)
                    continue
                if rec is not None and (owner is None or rec.owner == owner):
                    recs.append(rec)
        return sorted(recs, key=lambda r: r.created_at)


def store_from_settings(settings: Any) -> WorkspaceStore:
    state_dir = getattr(settings, "state_dir", None)
    if state_dir:
        return FileWorkspaceStore(state_dir)
    return MemoryWorkspaceStore()


__all__ = [
    "WorkspaceStatus",
    "AppliedImage",
    "AppliedInstance",
    "AppliedState",
    "LastError",
    "WorkspaceRecord",
    "instance_from_ref",
    "WorkspaceStore",
    "MemoryWorkspaceStore",
    "FileWorkspaceStore",
    "store_from_settings",
]
