from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from statewatch.core.config import get_settings
from statewatch.core.errors import ConflictError, NotFoundError, ValidationError
from statewatch.domain.models import Notification
from statewatch.persistence.guards import AudienceScope, TenantScope
from statewatch.persistence.repos import notifications as notifications_repo
from statewatch.persistence.types import utc_now
from statewatch.services.pagination import PageInfo, clamp_limit, page_offset


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NotificationDraft:
    tenant_id: str
    audience: str
    kind: str
    subject_type: str
    subject_id: str
    epoch_token: str
    message: str
    deep_link: str | None = None


@dataclass(frozen=True)
class CreateResult:
    notification: Notification
    # False when the epoch already had a notification and the existing row was returned.
    created: bool


@dataclass
class NotificationPage:
    items: list[Notification] = field(default_factory=list)
    unread_count: int = 0
    page_info: PageInfo | None = None


def validate_draft(draft: NotificationDraft) -> None:
    missing = [
        name
        for name in ("tenant_id", "audience", "kind", "subject_type", "subject_id", "epoch_token", "message")
        if not isinstance(getattr(draft, name), str) or not getattr(draft, name).strip()
    ]
    if missing:
        raise ValidationError(f"notification missing required fields: {', '.join(missing)}")


async def _insert_for_epoch(session: AsyncSession, draft: NotificationDraft) -> str:
    inserted_id = await notifications_repo.insert_for_epoch(
        session,
        {
            "tenant_id": draft.tenant_id,
            "audience": draft.audience,
            "kind": draft.kind,
            "subject_type": draft.subject_type,
            "subject_id": draft.subject_id,
            "epoch_token": draft.epoch_token,
            "message": draft.message,
            "deep_link": draft.deep_link,
            "is_read": False,
            "created_at": utc_now(),
        },
    )
    if inserted_id is None:
        raise ConflictError(
            f"notification exists for subject_id={draft.subject_id} kind={draft.kind} epoch={draft.epoch_token}"
        )
    return inserted_id


async def create_notification(session: AsyncSession, draft: NotificationDraft) -> CreateResult:
    """Create the notification for an epoch, or return the one that already exists.

    The epoch uniqueness constraint decides the winner when runs race; the loser
    gets the winner's row back with ``created=False``.
    """
    validate_draft(draft)
    scope = TenantScope(draft.tenant_id)
    try:
        inserted_id = await _insert_for_epoch(session, draft)
    except ConflictError:
        existing = await notifications_repo.get_by_epoch(
            session,
            scope,
            subject_id=draft.subject_id,
            kind=draft.kind,
            epoch_token=draft.epoch_token,
        )
        if existing is None:
            # The conflicting row must be visible within this tenant; anything else is a schema bug.
            raise
        logger.info(
            "notification_epoch_exists tenant_id=%s subject_id=%s kind=%s",
            draft.tenant_id,
            draft.subject_id,
            draft.kind,
        )
        return CreateResult(notification=existing, created=False)
    created = await notifications_repo.get_by_epoch(
        session,
        scope,
        subject_id=draft.subject_id,
        kind=draft.kind,
        epoch_token=draft.epoch_token,
    )
    if created is None or created.id != inserted_id:
        raise NotFoundError("notification vanished after insert")
    return CreateResult(notification=created, created=True)


async def mark_read(
    session: AsyncSession,
    scope: AudienceScope,
    notification_id: str,
    *,
    now: datetime | None = None,
) -> Notification:
    # Unread -> read only; a second call is a no-op. Invisible rows look missing.
    updated = await notifications_repo.mark_read(
        session, scope, notification_id, read_at=now or utc_now()
    )
    notification = await notifications_repo.get_visible(session, scope, notification_id)
    if notification is None:
        raise NotFoundError("notification not found")
    if updated:
        logger.info(
            "notification_marked_read tenant_id=%s actor_id=%s notification_id=%s",
            scope.tenant_id,
            scope.actor_id,
            notification_id,
        )
    return notification


async def unread_count(session: AsyncSession, scope: AudienceScope) -> int:
    return await notifications_repo.count_visible(session, scope, is_read=False)


async def list_notifications(
    session: AsyncSession,
    scope: AudienceScope,
    *,
    is_read: bool | None = None,
    page: int = 1,
    limit: int | None = None,
) -> NotificationPage:
    settings = get_settings()
    page_size = clamp_limit(
        limit,
        default=settings.notifications_default_page_size,
        maximum=settings.notifications_max_page_size,
    )
    page = max(1, page)
    items = await notifications_repo.list_visible(
        session,
        scope,
        is_read=is_read,
        offset=page_offset(page, page_size),
        limit=page_size,
    )
    total = await notifications_repo.count_visible(session, scope, is_read=is_read)
    unread = total if is_read is False else await unread_count(session, scope)
    return NotificationPage(
        items=items,
        unread_count=unread,
        page_info=PageInfo(page=page, limit=page_size, total=total),
    )


def notification_to_dict(notification: Notification) -> dict[str, Any]:
    return {
        "id": notification.id,
        "audience": notification.audience,
        "kind": notification.kind,
        "subject_type": notification.subject_type,
        "subject_id": notification.subject_id,
        "message": notification.message,
        "deep_link": notification.deep_link,
        "is_read": notification.is_read,
        "created_at": notification.created_at.isoformat(),
        "read_at": notification.read_at.isoformat() if notification.read_at else None,
    }
