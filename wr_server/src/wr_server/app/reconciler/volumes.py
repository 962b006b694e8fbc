from __future__ import annotations

"""
Durable volume set.

Volume identity is a pure function of (workspace id, category), so
destroying and recreating an instance always reattaches the same volumes.
ensure() never recreates or truncates an existing volume. A volume that
already exists under the derived name but carries labels for a different
workspace or category is a VolumeConflict and is never renamed around.

Removing volumes is not part of instance reconciliation; only an explicit
purge on workspace destruction calls remove().
"""

import logging
from typing import Callable, Mapping, Optional

from wr_server.app.engine.base import ContainerEngine, VolumeRef
from wr_server.app.errors import EngineError, ReconcileError, VolumeConflict
from wr_server.app.reconciler.labels import (
    LABEL_CATEGORY,
    LABEL_MANAGED,
    LABEL_WORKSPACE_ID,
    LABEL_WORKSPACE_NAME_AT_CREATION,
    managed_labels,
)

logger = logging.getLogger("workspace_reconciler")


def volume_stage(category: str) -> str:
    return f"volume:{category}"


class DurableVolumeSet:
    """
    Ensures the per-category durable volumes of a workspace.
    """

    def __init__(self, engine: ContainerEngine, name_for: Callable[[str, str], str]) -> None:
        self._engine = engine
        self._name_for = name_for

    def volume_name(self, workspace_id: str, category: str) -> str:
        return self._name_for(workspace_id, category)

    def ensure(
        self,
        workspace_id: str,
        category: str,
        *,
        owner: Optional[str] = None,
        workspace_name: Optional[str] = None,
    ) -> VolumeRef:
        """
        Return the volume for (workspace_id, category), creating it when absent.

        Raises:
            VolumeConflict when the name is held by another identity.
            ReconcileError (stage volume:<category>) on engine failures.
        """
        stage = volume_stage(category)
        name = self.volume_name(workspace_id, category)
        try:
            existing = self._engine.get_volume(name)
        except EngineError as exc:
            raise ReconcileError(str(exc), stage=stage) from exc

        if existing is not None:
            self._verify_identity(existing, workspace_id, category, stage)
            logger.debug("Volume %s already present for workspace %s", name, workspace_id)
            return existing

        labels = managed_labels(workspace_id, owner)
        labels[LABEL_CATEGORY] = category
        if workspace_name:
            labels[LABEL_WORKSPACE_NAME_AT_CREATION] = workspace_name
        try:
            created = self._engine.create_volume(name, labels)
        except EngineError as exc:
            raise ReconcileError(str(exc), stage=stage) from exc
        logger.info("Created volume %s for workspace %s", name, workspace_id)
        return created

    @staticmethod
    def _verify_identity(volume: VolumeRef, workspace_id: str, category: str, stage: str) -> None:
        labels: Mapping[str, str] = volume.labels or {}
        if labels.get(LABEL_MANAGED) != "true":
            raise VolumeConflict(f"volume '{volume.name}' exists but is not managed by the reconciler", stage=stage)
        owner_ws = labels.get(LABEL_WORKSPACE_ID)
        owner_cat = labels.get(LABEL_CATEGORY)
        if owner_ws != workspace_id or owner_cat != category:
            raise VolumeConflict(
                f"volume '{volume.name}' belongs to workspace={owner_ws!r} category={owner_cat!r}, "
                f"expected workspace={workspace_id!r} category={category!r}",
                stage=stage,
            )

    def remove(self, workspace_id: str, category: str) -> None:
        name = self.volume_name(workspace_id, category)
        try:
            existing = self._engine.get_volume(name)
            if existing is None:
                return
            self._verify_identity(existing, workspace_id, category, volume_stage(category))
            self._engine.remove_volume(name)
        except EngineError as exc:
            raise ReconcileError(str(exc), stage=volume_stage(category)) from exc
        logger.info("Removed volume %s for workspace %s", name, workspace_id)


__all__ = ["DurableVolumeSet", "volume_stage"]
