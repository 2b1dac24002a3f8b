from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from statewatch.domain.models import Notification
from statewatch.persistence.conflicts import insert_or_ignore
from statewatch.persistence.guards import AudienceScope, TenantScope, require_scope


EPOCH_KEY_COLUMNS = ("tenant_id", "subject_id", "kind", "epoch_token")


async def insert_for_epoch(session: AsyncSession, values: dict[str, Any]) -> str | None:
    # None means the epoch uniqueness constraint already holds a row.
    inserted_id = await insert_or_ignore(
        session,
        Notification,
        values=values,
        conflict_columns=EPOCH_KEY_COLUMNS,
        returning=Notification.id,
    )
    return str(inserted_id) if inserted_id is not None else None


async def get_by_epoch(
    session: AsyncSession,
    scope: TenantScope,
    *,
    subject_id: str,
    kind: str,
    epoch_token: str,
) -> Notification | None:
    require_scope(scope, TenantScope)
    result = await session.execute(
        scope.select(Notification).where(
            Notification.subject_id == subject_id,
            Notification.kind == kind,
            Notification.epoch_token == epoch_token,
        )
    )
    return result.scalar_one_or_none()


async def get_visible(
    session: AsyncSession, scope: AudienceScope, notification_id: str
) -> Notification | None:
    require_scope(scope, AudienceScope)
    result = await session.execute(
        select(Notification)
        .where(scope.predicate(Notification), Notification.id == notification_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def mark_read(
    session: AsyncSession, scope: AudienceScope, notification_id: str, *, read_at: datetime
) -> int:
    # Conditional update: only unread rows visible to the caller move to read.
    require_scope(scope, AudienceScope)
    result = await session.execute(
        update(Notification)
        .where(
            scope.predicate(Notification),
            Notification.id == notification_id,
            Notification.is_read.is_(False),
        )
        .values(is_read=True, read_at=read_at)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


async def list_visible(
    session: AsyncSession,
    scope: AudienceScope,
    *,
    is_read: bool | None = None,
    offset: int = 0,
    limit: int = 20,
) -> list[Notification]:
    require_scope(scope, AudienceScope)
    stmt = select(Notification).where(scope.predicate(Notification))
    if is_read is not None:
        stmt = stmt.where(Notification.is_read.is_(is_read))
    stmt = stmt.order_by(Notification.created_at.desc(), Notification.id.desc())
    stmt = stmt.offset(offset).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def count_visible(
    session: AsyncSession, scope: AudienceScope, *, is_read: bool | None = None
) -> int:
    require_scope(scope, AudienceScope)
    stmt = select(func.count()).select_from(Notification).where(scope.predicate(Notification))
    if is_read is not None:
        stmt = stmt.where(Notification.is_read.is_(is_read))
    result = await session.execute(stmt)
    return int(result.scalar() or 0)
