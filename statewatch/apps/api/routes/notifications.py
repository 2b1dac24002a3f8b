from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from statewatch.apps.api.deps import Principal, get_current_principal, get_db
from statewatch.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from statewatch.apps.api.response import SuccessEnvelope, success_response
from statewatch.domain.models import Notification
from statewatch.services import notifications as notifications_service


router = APIRouter(prefix="/notifications", tags=["notifications"], responses=DEFAULT_ERROR_RESPONSES)


class NotificationResponse(BaseModel):
    id: str
    audience: str
    kind: str
    subject_type: str
    subject_id: str
    message: str
    deep_link: str | None
    is_read: bool
    created_at: str
    read_at: str | None


class PaginationResponse(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int


class NotificationListResponse(BaseModel):
    items: list[NotificationResponse]
    unread_count: int
    pagination: PaginationResponse


class UnreadCountResponse(BaseModel):
    unread_count: int


def _to_response(notification: Notification) -> NotificationResponse:
    return NotificationResponse(**notifications_service.notification_to_dict(notification))


@router.get("", response_model=SuccessEnvelope[NotificationListResponse])
async def list_notifications(
    request: Request,
    is_read: bool | None = None,
    page: int = Query(default=1),
    limit: int | None = Query(default=None),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Newest first; the total and unread count stay stable across pages for badge rendering.
    result = await notifications_service.list_notifications(
        db,
        principal.audience_scope(),
        is_read=is_read,
        page=page,
        limit=limit,
    )
    payload = NotificationListResponse(
        items=[_to_response(item) for item in result.items],
        unread_count=result.unread_count,
        pagination=PaginationResponse(**result.page_info.as_dict()),
    )
    return success_response(request=request, data=payload)


@router.get("/unread-count", response_model=SuccessEnvelope[UnreadCountResponse])
async def unread_count(
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    count = await notifications_service.unread_count(db, principal.audience_scope())
    return success_response(request=request, data=UnreadCountResponse(unread_count=count))


@router.patch("/{notification_id}/read", response_model=SuccessEnvelope[NotificationResponse])
async def mark_notification_read(
    request: Request,
    notification_id: str,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    notification = await notifications_service.mark_read(
        db, principal.audience_scope(), notification_id
    )
    await db.commit()
    return success_response(request=request, data=_to_response(notification))
