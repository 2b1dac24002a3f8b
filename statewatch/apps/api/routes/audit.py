from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from statewatch.apps.api.deps import Principal, get_db, require_role
from statewatch.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from statewatch.apps.api.response import SuccessEnvelope, success_response
from statewatch.services import audit as audit_service


router = APIRouter(prefix="/audit", tags=["audit"], responses=DEFAULT_ERROR_RESPONSES)


class AuditEntryResponse(BaseModel):
    id: int
    tenant_id: str
    subject_type: str
    subject_id: str
    actor_id: str | None
    action: str
    before_state: dict[str, Any] | None
    after_state: dict[str, Any] | None
    created_at: str


class AuditEntriesPage(BaseModel):
    items: list[AuditEntryResponse]
    next_cursor: str | None


@router.get("/entries", response_model=SuccessEnvelope[AuditEntriesPage])
async def list_audit_entries(
    request: Request,
    subject_type: str | None = None,
    subject_id: str | None = None,
    action: str | None = None,
    created_from: datetime | None = Query(default=None, alias="from"),
    created_to: datetime | None = Query(default=None, alias="to"),
    cursor: str | None = None,
    limit: int | None = Query(default=None, ge=1),
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Always scoped to the caller's tenant; there is no tenant override for admins.
    page = await audit_service.query(
        db,
        principal.tenant_scope(),
        audit_service.AuditFilters(
            subject_type=subject_type,
            subject_id=subject_id,
            action=action,
            created_from=created_from,
            created_to=created_to,
        ),
        cursor=cursor,
        limit=limit,
    )
    payload = AuditEntriesPage(
        items=[AuditEntryResponse(**audit_service.entry_to_dict(entry)) for entry in page.items],
        next_cursor=page.next_cursor,
    )
    return success_response(request=request, data=payload)


@router.get("/entries/{entry_id}", response_model=SuccessEnvelope[AuditEntryResponse])
async def get_audit_entry(
    request: Request,
    entry_id: int,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    entry = await audit_service.get(db, principal.tenant_scope(), entry_id)
    return success_response(
        request=request, data=AuditEntryResponse(**audit_service.entry_to_dict(entry))
    )
