from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from statewatch.apps.api.deps import Principal, get_db, require_detector_token, require_role
from statewatch.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from statewatch.apps.api.response import SuccessEnvelope, success_response
from statewatch.domain.models import DetectorRun
from statewatch.persistence.repos import detector_runs as runs_repo
from statewatch.services.detector import run_detector


router = APIRouter(prefix="/detector", tags=["detector"], responses=DEFAULT_ERROR_RESPONSES)


class DetectorRunRequest(BaseModel):
    # Omit tenant_id to scan every tenant; omit since to resume from each watermark.
    tenant_id: str | None = None
    since: datetime | None = None


class DetectorSummaryResponse(BaseModel):
    invocation_id: str
    entities_scanned: int
    audit_entries_written: int
    notifications_created: int
    errors: int
    units: list[dict[str, Any]]


class DetectorRunResponse(BaseModel):
    id: str
    invocation_id: str
    entity_type: str
    status: str
    window_start: str | None
    window_end: str | None
    entities_scanned: int
    audit_entries_written: int
    notifications_created: int
    errors: int
    error_message: str | None
    started_at: str
    completed_at: str | None


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _to_response(run: DetectorRun) -> DetectorRunResponse:
    return DetectorRunResponse(
        id=run.id,
        invocation_id=run.invocation_id,
        entity_type=run.entity_type,
        status=run.status,
        window_start=_iso(run.window_start),
        window_end=_iso(run.window_end),
        entities_scanned=run.entities_scanned,
        audit_entries_written=run.audit_entries_written,
        notifications_created=run.notifications_created,
        errors=run.errors,
        error_message=run.error_message,
        started_at=run.started_at.isoformat(),
        completed_at=_iso(run.completed_at),
    )


@router.post(
    "/runs",
    response_model=SuccessEnvelope[DetectorSummaryResponse],
    dependencies=[Depends(require_detector_token)],
)
async def trigger_detector_run(request: Request, body: DetectorRunRequest | None = None) -> dict:
    body = body or DetectorRunRequest()
    summary = await run_detector(tenant_id=body.tenant_id, since=body.since)
    return success_response(request=request, data=DetectorSummaryResponse(**summary.as_dict()))


@router.get("/runs", response_model=SuccessEnvelope[list[DetectorRunResponse]])
async def list_detector_runs(
    request: Request,
    limit: int = Query(default=20, ge=1, le=200),
    entity_type: str | None = None,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    runs = await runs_repo.list_runs(
        db, principal.tenant_scope(), entity_type=entity_type, limit=limit
    )
    return success_response(request=request, data=[_to_response(run) for run in runs])
