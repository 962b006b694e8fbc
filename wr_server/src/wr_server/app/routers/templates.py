from __future__ import annotations

"""
Read-only endpoints for the template catalogue.
"""

from fastapi import APIRouter, Depends, Path

from wr_server.app import models as m
from wr_server.app.deps import enforce_api_key, get_reconciler
from wr_server.app.reconciler.core import Reconciler

router = APIRouter(prefix="/templates", tags=["templates"], dependencies=[Depends(enforce_api_key)])


def _summary(reconciler: Reconciler, name: str) -> m.TemplateSummary:
    tpl = reconciler.templates.get(name)
    return m.TemplateSummary(origin=reconciler.templates.origin_of(name), **tpl.summary())


@router.get("", response_model=m.TemplateListResponse)
async def list_templates(reconciler: Reconciler = Depends(get_reconciler)) -> m.TemplateListResponse:
    return m.TemplateListResponse(
        templates=[_summary(reconciler, tpl.name) for tpl in reconciler.templates.list_templates()]
    )


@router.get("/errors", response_model=m.TemplateErrorsResponse)
async def list_template_errors(reconciler: Reconciler = Depends(get_reconciler)) -> m.TemplateErrorsResponse:
    errors = [
        m.TemplateErrorInfo(
            name=err.name,
            origin=err.origin,
            error_type=err.error_type,
            message=err.message,
        )
        for err in reconciler.templates.list_errors()
    ]
    return m.TemplateErrorsResponse(errors=errors)


@router.get("/{name}", response_model=m.TemplateSummary)
async def get_template(
    name: str = Path(...),
    reconciler: Reconciler = Depends(get_reconciler),
) -> m.TemplateSummary:
    return _summary(reconciler, name)
