from __future__ import annotations

"""
Error taxonomy for the workspace reconciler.

Every reconciliation failure is a ReconcileError carrying the name of the
stage that failed and the underlying detail (for engine failures, the engine
message unmodified). Validation errors are raised before any side effect.

Stage names used across the package:
- parameters
- fingerprint
- image
- volume:<category>
- instance
- handshake
- apps
"""

from typing import Any, Dict, Optional


# -----------------------
# Reconciliation errors
# -----------------------

class ReconcileError(Exception):
    """
    Base class for failures surfaced by the reconciler.
    """

    kind = "reconcile_error"

    def __init__(self, detail: str, *, stage: Optional[str] = None) -> None:
        super().__init__(detail)
        self.detail = detail
        self.stage = stage

    def __str__(self) -> str:
        if self.stage:
            return f"[{self.stage}] {self.detail}"
        return self.detail

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.kind, "stage": self.stage, "detail": self.detail}


class ParameterInvalid(ReconcileError):
    """A submitted parameter value violates its declared constraint."""

    kind = "parameter_invalid"

    def __init__(self, name: str, detail: str) -> None:
        super().__init__(f"parameter '{name}': {detail}", stage="parameters")
        self.parameter = name


class BuildFailure(ReconcileError):
    """The image build failed; the previous artifact is left untouched."""

    kind = "build_failure"

    def __init__(self, detail: str, *, stage: Optional[str] = "image") -> None:
        super().__init__(detail, stage=stage)


class ResourceSpecInvalid(ReconcileError):
    """A numeric resource field could not be coerced to the engine's type."""

    kind = "resource_spec_invalid"

    def __init__(self, field: str, detail: str, *, stage: Optional[str] = "instance") -> None:
        super().__init__(f"{field}: {detail}", stage=stage)
        self.field = field


class VolumeConflict(ReconcileError):
    """A volume name is taken by a volume with a different identity."""

    kind = "volume_conflict"


class InstanceCreateFailure(ReconcileError):
    """The engine rejected container creation."""

    kind = "instance_create_failure"

    def __init__(self, detail: str, *, stage: Optional[str] = "instance") -> None:
        super().__init__(detail, stage=stage)


class HandshakeTimeout(ReconcileError):
    """The agent did not register within the expected window."""

    kind = "handshake_timeout"

    def __init__(self, detail: str, *, stage: Optional[str] = "handshake") -> None:
        super().__init__(detail, stage=stage)


class StageOrderingError(ReconcileError):
    """
    A stage ran without the output of a stage it depends on (e.g. the image
    is missing when the instance is created). This is a programming error and
    is never self-healed.
    """

    kind = "stage_ordering_error"


class WorkspaceNotFound(ReconcileError):
    kind = "workspace_not_found"

    def __init__(self, workspace_id: str) -> None:
        super().__init__(f"workspace '{workspace_id}' not found")
        self.workspace_id = workspace_id


class TemplateNotFound(ReconcileError):
    kind = "template_not_found"

    def __init__(self, name: str) -> None:
        super().__init__(f"template '{name}' not found")
        self.template = name


# -----------------------
# Engine boundary
# -----------------------

class EngineError(Exception):
    """Raised by ContainerEngine implementations; message is the engine's."""


class EngineResourceError(EngineError):
    """The engine could not convert a resource field to its native type."""

    def __init__(self, field: str, message: str) -> None:
        super().__init__(message)
        self.field = field


# -----------------------
# Agent tokens
# -----------------------

class InvalidTokenError(ValueError):
    """Raised when a token is malformed or fails signature validation."""


class TokenExpiredError(ValueError):
    """Raised when a token is validly signed but expired."""


__all__ = [
    "ReconcileError",
    "ParameterInvalid",
    "BuildFailure",
    "ResourceSpecInvalid",
    "VolumeConflict",
    "InstanceCreateFailure",
    "HandshakeTimeout",
    "StageOrderingError",
    "WorkspaceNotFound",
    "TemplateNotFound",
    "EngineError",
    "EngineResourceError",
    "InvalidTokenError",
    "TokenExpiredError",
]
