from __future__ import annotations

"""
Workspace router: creation, reconfiguration, lifecycle gate, reconcile,
destruction and exposed apps.

Reconciler calls block on the container engine, so they run in a worker
thread. Reconcile failures propagate as ReconcileError and are rendered by
the application's exception handler as {error, stage, detail}.
"""

import asyncio
from typing import Optional

from fastapi import APIRouter, Body, Depends, Path, Query, status

from wr_server.app import models as m
from wr_server.app.deps import enforce_api_key, get_reconciler
from wr_server.app.reconciler.core import Reconciler, ReconcileResult
from wr_server.app.reconciler.store import WorkspaceRecord

router = APIRouter(prefix="/workspaces", tags=["workspaces"], dependencies=[Depends(enforce_api_key)])


def workspace_info(record: WorkspaceRecord) -> m.WorkspaceInfo:
    data = record.model_dump(mode="json")
    return m.WorkspaceInfo(
        workspace_id=data["id"],
        name=data["name"],
        owner=data["owner"],
        template=data["template"],
        parameters=data["parameters"],
        gate=record.gate,
        status=record.status,
        applied=m.AppliedStateModel.model_validate(data["applied"]),
        last_error=data["last_error"],
        created_at=data["created_at"],
        updated_at=data["updated_at"],
    )


def result_model(result: ReconcileResult) -> m.ReconcileResultModel:
    return m.ReconcileResultModel.model_validate(result.to_dict())


@router.post("", response_model=m.WorkspaceCreateResponse, status_code=status.HTTP_201_CREATED)
async def create_workspace(
    payload: m.WorkspaceCreatePayload = Body(...),
    reconciler: Reconciler = Depends(get_reconciler),
) -> m.WorkspaceCreateResponse:
    record, result = await asyncio.to_thread(
        reconciler.create_workspace,
        payload.template,
        payload.name,
        owner=payload.owner,
        parameters=dict(payload.parameters),
        start=payload.start,
        wait_for_agent=payload.wait_for_agent,
    )
    return m.WorkspaceCreateResponse(
        workspace=workspace_info(record),
        reconcile=result_model(result) if result is not None else None,
    )


@router.get("", response_model=m.WorkspaceListResponse)
async def list_workspaces(
    owner: Optional[str] = Query(default=None),
    reconciler: Reconciler = Depends(get_reconciler),
) -> m.WorkspaceListResponse:
    records = await asyncio.to_thread(reconciler.list_workspaces, owner)
    return m.WorkspaceListResponse(workspaces=[workspace_info(r) for r in records])


@router.get("/{workspace_id}", response_model=m.WorkspaceDetail)
async def get_workspace(
    workspace_id: str = Path(...),
    reconciler: Reconciler = Depends(get_reconciler),
) -> m.WorkspaceDetail:
    detail = await asyncio.to_thread(reconciler.describe, workspace_id)
    record = WorkspaceRecord.model_validate(detail["workspace"])
    return m.WorkspaceDetail(workspace=workspace_info(record), observed=detail["observed"])


@router.patch("/{workspace_id}/parameters", response_model=m.WorkspaceInfo)
async def update_parameters(
    workspace_id: str = Path(...),
    payload: m.ParametersUpdatePayload = Body(...),
    reconciler: Reconciler = Depends(get_reconciler),
) -> m.WorkspaceInfo:
    record = await asyncio.to_thread(reconciler.update_parameters, workspace_id, dict(payload.parameters))
    return workspace_info(record)


@router.post("/{workspace_id}/start", response_model=m.ReconcileResultModel)
async def start_workspace(
    workspace_id: str = Path(...),
    wait_for_agent: bool = Query(default=False),
    reconciler: Reconciler = Depends(get_reconciler),
) -> m.ReconcileResultModel:
    result = await asyncio.to_thread(reconciler.start, workspace_id, wait_for_agent)
    return result_model(result)


@router.post("/{workspace_id}/stop", response_model=m.ReconcileResultModel)
async def stop_workspace(
    workspace_id: str = Path(...),
    reconciler: Reconciler = Depends(get_reconciler),
) -> m.ReconcileResultModel:
    result = await asyncio.to_thread(reconciler.stop, workspace_id)
    return result_model(result)


@router.post("/{workspace_id}/reconcile", response_model=m.ReconcileResultModel)
async def reconcile_workspace(
    workspace_id: str = Path(...),
    wait_for_agent: bool = Query(default=False),
    reconciler: Reconciler = Depends(get_reconciler),
) -> m.ReconcileResultModel:
    result = await asyncio.to_thread(reconciler.reconcile, workspace_id, wait_for_agent)
    return result_model(result)


@router.delete("/{workspace_id}", response_model=m.WorkspaceDeleteResponse)
async def delete_workspace(
    workspace_id: str = Path(...),
    purge: Optional[bool] = Query(default=None, description="Also remove volumes and images"),
    reconciler: Reconciler = Depends(get_reconciler),
) -> m.WorkspaceDeleteResponse:
    out = await asyncio.to_thread(reconciler.destroy_workspace, workspace_id, purge)
    return m.WorkspaceDeleteResponse(**out)


@router.get("/{workspace_id}/apps", response_model=m.AppListResponse)
async def list_apps(
    workspace_id: str = Path(...),
    refresh: bool = Query(default=False, description="Re-evaluate reachability before answering"),
    reconciler: Reconciler = Depends(get_reconciler),
) -> m.AppListResponse:
    if refresh:
        apps = await asyncio.to_thread(reconciler.refresh_apps, workspace_id)
    else:
        reconciler.get_workspace(workspace_id)
        apps = reconciler.apps.list(workspace_id)
    return m.AppListResponse(
        workspace_id=workspace_id,
        apps=[m.AppInfo.model_validate(a.to_dict()) for a in apps],
    )
