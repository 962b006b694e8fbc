from __future__ import annotations

"""
Pydantic models for the workspace reconciler HTTP API.

These models define the API contracts for:
- Templates and template load errors
- Workspace creation, reconfiguration and lifecycle
- Reconcile results and exposed apps
- Agent registration callbacks
- Error bodies

Parameter values are accepted as raw JSON scalars here; typing and
constraint checks belong to the template's parameter declarations.
"""

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field, field_validator

from wr_server.app.reconciler.gate import LifecycleGate
from wr_server.app.reconciler.store import WorkspaceStatus

RawParameterValue = Union[bool, int, float, str]


# -----------------------
# Errors
# -----------------------

class ErrorBody(BaseModel):
    error: str
    stage: Optional[str] = None
    detail: str


# -----------------------
# Templates
# -----------------------

class TemplateSummary(BaseModel):
    name: str
    display_name: str
    description: str = ""
    icon: Optional[str] = None
    origin: Optional[str] = None
    parameters: List[Dict[str, Any]] = Field(default_factory=list)
    volumes: List[Dict[str, Any]] = Field(default_factory=list)
    apps: List[Dict[str, Any]] = Field(default_factory=list)


class TemplateListResponse(BaseModel):
    templates: List[TemplateSummary]


class TemplateErrorInfo(BaseModel):
    name: str
    origin: str
    error_type: str
    message: str


class TemplateErrorsResponse(BaseModel):
    errors: List[TemplateErrorInfo]


# -----------------------
# Workspaces
# -----------------------

class WorkspaceCreatePayload(BaseModel):
    """
    Request model to instantiate a template as a workspace.
    """
    template: str = Field(..., min_length=1)
    name: str = Field(..., description="Workspace name; also the instance hostname")
    owner: Optional[str] = None
    parameters: Dict[str, RawParameterValue] = Field(default_factory=dict)
    start: bool = True
    wait_for_agent: bool = False

    @field_validator("name")
    def v_name(cls, v: str) -> str:
        v = v.strip().lower()
        # RFC 1123 label: the name doubles as the container hostname
        if not v or len(v) > 63:
            raise ValueError("name must be 1-63 characters")
        if not all(ch.isalnum() or ch == "-" for ch in v) or v[0] == "-" or v[-1] == "-":
            raise ValueError("name may only contain letters, digits and inner hyphens")
        return v

    @field_validator("owner")
    def v_owner(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip()
        return v or None


class ParametersUpdatePayload(BaseModel):
    parameters: Dict[str, RawParameterValue] = Field(default_factory=dict)


class AppliedImageModel(BaseModel):
    tag: str
    fingerprint: str
    image_id: Optional[str] = None


class AppliedInstanceModel(BaseModel):
    name: str
    container_id: Optional[str] = None
    image: str
    spec_digest: Optional[str] = None
    agent_registered_at: Optional[str] = None


class AppliedStateModel(BaseModel):
    image: Optional[AppliedImageModel] = None
    volumes: Dict[str, str] = Field(default_factory=dict)
    instance: Optional[AppliedInstanceModel] = None


class WorkspaceInfo(BaseModel):
    """
    Desired and last applied state of a workspace.
    """
    workspace_id: str
    name: str
    owner: Optional[str] = None
    template: str
    parameters: Dict[str, Any]
    gate: LifecycleGate
    status: WorkspaceStatus
    applied: AppliedStateModel
    last_error: Optional[Dict[str, Any]] = None
    created_at: str
    updated_at: str


class AppInfo(BaseModel):
    slug: str
    display_name: str
    instance: str
    port: Optional[int] = None
    url: Optional[str] = None
    healthcheck: Optional[Dict[str, Any]] = None
    state: str
    attempts: int = 0
    detail: Optional[str] = None


class ReconcileResultModel(BaseModel):
    workspace_id: str
    gate: LifecycleGate
    status: WorkspaceStatus
    stages: List[str] = Field(default_factory=list)
    image: Optional[str] = None
    image_built: bool = False
    instance: Optional[str] = None
    instance_created: bool = False
    agent_registered: bool = False
    apps: List[AppInfo] = Field(default_factory=list)
    error: Optional[ErrorBody] = None


class WorkspaceCreateResponse(BaseModel):
    workspace: WorkspaceInfo
    reconcile: Optional[ReconcileResultModel] = None


class WorkspaceListResponse(BaseModel):
    workspaces: List[WorkspaceInfo]


class WorkspaceDetail(BaseModel):
    workspace: WorkspaceInfo
    observed: Dict[str, Any]


class WorkspaceDeleteResponse(BaseModel):
    workspace_id: str
    purged: bool
    removed_volumes: List[str] = Field(default_factory=list)
    removed_image: Optional[str] = None


class AppListResponse(BaseModel):
    workspace_id: str
    apps: List[AppInfo]


# -----------------------
# Agent callbacks
# -----------------------

class AgentBootstrap(BaseModel):
    os: str
    arch: str
    user: str
    directory: str
    startup_script: str
    startup_script_behavior: str
    metadata: List[Dict[str, Any]] = Field(default_factory=list)
    environment: Dict[str, str] = Field(default_factory=dict)


class AgentLifecyclePayload(BaseModel):
    state: str = Field(..., pattern=r"^(starting|ready|start_error)$")
    exit_code: Optional[int] = None


class AgentLifecycleResponse(BaseModel):
    workspace_id: str
    lifecycle: str
    exit_code: Optional[int] = None


__all__ = [
    "ErrorBody",
    "TemplateSummary",
    "TemplateListResponse",
    "TemplateErrorInfo",
    "TemplateErrorsResponse",
    "WorkspaceCreatePayload",
    "ParametersUpdatePayload",
    "AppliedStateModel",
    "WorkspaceInfo",
    "AppInfo",
    "ReconcileResultModel",
    "WorkspaceCreateResponse",
    "WorkspaceListResponse",
    "WorkspaceDetail",
    "WorkspaceDeleteResponse",
    "AppListResponse",
    "AgentBootstrap",
    "AgentLifecyclePayload",
    "AgentLifecycleResponse",
]
