from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from wr_server.app.config import get_settings
from wr_server.app.deps import get_engine, reset_singletons
from wr_server.app.errors import (
    BuildFailure,
    EngineError,
    InstanceCreateFailure,
    ParameterInvalid,
    ReconcileError,
    ResourceSpecInvalid,
    StageOrderingError,
    TemplateNotFound,
    VolumeConflict,
    WorkspaceNotFound,
)
from wr_server.app.logging_setup import initialize_from_env
from wr_server.app.routers import agent, templates, workspaces

settings = get_settings()

logger = logging.getLogger("workspace_reconciler")
_LOG_PATH = initialize_from_env(service_name="workspace_reconciler")
logger.info("Workspace reconciler logging to file: %s", _LOG_PATH)


# Reconcile errors -> HTTP status; anything unlisted is an engine-side failure
_STATUS_BY_ERROR = (
    (ParameterInvalid, 400),
    (WorkspaceNotFound, 404),
    (TemplateNotFound, 404),
    (VolumeConflict, 409),
    (ResourceSpecInvalid, 422),
    (BuildFailure, 502),
    (InstanceCreateFailure, 502),
    (StageOrderingError, 500),
)


def status_for_error(exc: ReconcileError) -> int:
    for cls, code in _STATUS_BY_ERROR:
        if isinstance(exc, cls):
            return code
    return 502


def ensure_engine_available_on_startup() -> None:
    """
    Verify the container engine is reachable before serving requests.
    Exits the process with a non-zero status if it is not.
    """
    try:
        get_engine(settings).ping()
    except EngineError as e:
        logger.critical(
            "Container engine at %s is not available; the reconciler cannot start without it. Details: %s",
            settings.engine_base_url,
            e,
        )
        raise SystemExit(1)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Fail fast if the engine is unavailable
    ensure_engine_available_on_startup()
    logger.info("Workspace reconciler startup complete (engine=%s).", settings.engine_base_url)
    try:
        yield
    finally:
        reset_singletons()
        logger.info("Workspace reconciler shutdown complete.")


app = FastAPI(
    title="WorkspaceReconciler",
    version=settings.service_version,
    description="Declarative lifecycle reconciler for parameterized container workspaces.",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allow_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(templates.router)
app.include_router(workspaces.router)
app.include_router(agent.router)


@app.exception_handler(ReconcileError)
async def reconcile_error_handler(request: Request, exc: ReconcileError) -> JSONResponse:
    code = status_for_error(exc)
    if code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=code, content=exc.to_dict())


@app.exception_handler(EngineError)
async def engine_error_handler(request: Request, exc: EngineError) -> JSONResponse:
    logger.error("%s %s engine failure: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=502, content={"error": "engine_error", "stage": None, "detail": str(exc)})


@app.get("/health")
async def health() -> dict:
    """
    Basic health probe; intentionally unauthenticated.
    """
    return {
        "status": "ok",
        "service": "WorkspaceReconciler",
        "version": app.version,
    }
