from __future__ import annotations

"""
Agent callback endpoints, called from inside workspace instances.

Authentication is the per-instance agent token, not the platform API key.
A registration schedules a background re-evaluation of the workspace's apps,
since the reconcile call that created the instance does not wait for it.
"""

import logging

from fastapi import APIRouter, BackgroundTasks, Body, Depends, HTTPException, Query, status
from fastapi.responses import PlainTextResponse

from wr_server.app import models as m
from wr_server.app.deps import agent_token, get_reconciler
from wr_server.app.errors import EngineError, InvalidTokenError, ReconcileError, TokenExpiredError
from wr_server.app.reconciler.core import Reconciler

logger = logging.getLogger("workspace_reconciler")

router = APIRouter(prefix="/agent", tags=["agent"])


def _refresh_apps(reconciler: Reconciler, workspace_id: str) -> None:
    try:
        reconciler.refresh_apps(workspace_id)
    except (ReconcileError, EngineError) as exc:
        logger.warning("App refresh after agent registration failed for %s: %s", workspace_id, exc)


@router.post("/register")
async def register_agent(
    background: BackgroundTasks,
    token: str = Depends(agent_token),
    format: str = Query(default="json", pattern=r"^(json|script)$"),
    reconciler: Reconciler = Depends(get_reconciler),
):
    try:
        bootstrap = reconciler.handshake.register(token)
        workspace_id = reconciler.handshake.workspace_for_token(token)
    except TokenExpiredError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Agent token expired.")
    except InvalidTokenError as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(e) or "Invalid agent token.")

    background.add_task(_refresh_apps, reconciler, workspace_id)
    if format == "script":
        return PlainTextResponse(bootstrap.get("startup_script", ""))
    return m.AgentBootstrap(**bootstrap)


@router.post("/lifecycle", response_model=m.AgentLifecycleResponse)
async def report_lifecycle(
    payload: m.AgentLifecyclePayload = Body(...),
    token: str = Depends(agent_token),
    reconciler: Reconciler = Depends(get_reconciler),
) -> m.AgentLifecycleResponse:
    try:
        session = reconciler.handshake.report_lifecycle(token, payload.state, payload.exit_code)
    except TokenExpiredError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Agent token expired.")
    except InvalidTokenError as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(e) or "Invalid agent token.")
    return m.AgentLifecycleResponse(
        workspace_id=session.workspace_id,
        lifecycle=session.lifecycle.value,
        exit_code=session.exit_code,
    )
