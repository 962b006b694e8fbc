from __future__ import annotations

"""
Labels, ids and time helpers shared by the reconciler stages.

Every engine object the reconciler creates (image, volume, container) carries
LABEL_MANAGED and LABEL_WORKSPACE_ID so ownership can be verified before the
object is reused.
"""

from datetime import datetime, timezone
from typing import Dict, Optional

import uuid

# --------------------------
# Labels (public constants)
# --------------------------

LABEL_MANAGED = "wr.managed"
LABEL_WORKSPACE_ID = "wr.workspace.id"
LABEL_WORKSPACE_NAME_AT_CREATION = "wr.workspace.name_at_creation"
LABEL_OWNER = "wr.owner"
LABEL_CATEGORY = "wr.volume.category"
LABEL_FINGERPRINT = "wr.image.fingerprint"
LABEL_TEMPLATE = "wr.template"
LABEL_SPEC_DIGEST = "wr.instance.spec_digest"


def managed_labels(workspace_id: str, owner: Optional[str] = None) -> Dict[str, str]:
    """
    Base label set for any engine object owned by a workspace.
    """
    labels = {LABEL_MANAGED: "true", LABEL_WORKSPACE_ID: workspace_id}
    if owner:
        labels[LABEL_OWNER] = owner
    return labels


# --------------------------
# Time helpers
# --------------------------

def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def now_utc_iso() -> str:
    return now_utc().isoformat()


# --------------------------
# Workspace IDs
# --------------------------

def gen_workspace_id() -> str:
    """
    Generate a short, URL-safe workspace id.
    """
    return uuid.uuid4().hex[:12]


__all__ = [
    "LABEL_MANAGED",
    "LABEL_WORKSPACE_ID",
    "LABEL_WORKSPACE_NAME_AT_CREATION",
    "LABEL_OWNER",
    "LABEL_CATEGORY",
    "LABEL_FINGERPRINT",
    "LABEL_TEMPLATE",
    "LABEL_SPEC_DIGEST",
    "managed_labels",
    "now_utc",
    "now_utc_iso",
    "gen_workspace_id",
]
