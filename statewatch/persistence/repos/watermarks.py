from __future__ import annotations

from datetime import datetime, timedelta

from sqlalchemy import case, literal, or_, update
from sqlalchemy.ext.asyncio import AsyncSession

from statewatch.domain.models import DetectorWatermark
from statewatch.persistence.conflicts import insert_or_ignore
from statewatch.persistence.guards import TenantScope, require_scope
from statewatch.persistence.types import UTCDateTime


async def ensure_watermark(
    session: AsyncSession, scope: TenantScope, entity_type: str, *, now: datetime
) -> None:
    # First run for a (tenant, entity_type) creates the cursor row; racing creators collapse.
    require_scope(scope, TenantScope)
    await insert_or_ignore(
        session,
        DetectorWatermark,
        values={
            "tenant_id": scope.tenant_id,
            "entity_type": entity_type,
            "last_scanned_at": None,
            "lease_owner": None,
            "lease_expires_at": None,
            "updated_at": now,
        },
        conflict_columns=("tenant_id", "entity_type"),
        returning=DetectorWatermark.entity_type,
    )


async def get_watermark(
    session: AsyncSession, scope: TenantScope, entity_type: str
) -> DetectorWatermark | None:
    require_scope(scope, TenantScope)
    result = await session.execute(
        scope.select(DetectorWatermark)
        .where(DetectorWatermark.entity_type == entity_type)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def try_acquire_lease(
    session: AsyncSession,
    scope: TenantScope,
    entity_type: str,
    *,
    owner: str,
    now: datetime,
    ttl_s: int,
) -> bool:
    # Compare-and-set on the lease columns; the row lock serializes racing runners.
    require_scope(scope, TenantScope)
    result = await session.execute(
        update(DetectorWatermark)
        .where(
            scope.predicate(DetectorWatermark),
            DetectorWatermark.entity_type == entity_type,
            or_(
                DetectorWatermark.lease_owner.is_(None),
                DetectorWatermark.lease_expires_at.is_(None),
                DetectorWatermark.lease_expires_at <= now,
                DetectorWatermark.lease_owner == owner,
            ),
        )
        .values(
            lease_owner=owner,
            lease_expires_at=now + timedelta(seconds=max(1, ttl_s)),
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    return (result.rowcount or 0) == 1


async def advance_and_release(
    session: AsyncSession,
    scope: TenantScope,
    entity_type: str,
    *,
    owner: str,
    scanned_to: datetime,
    now: datetime,
) -> bool:
    # Only the current lease holder may move the cursor; it never moves backwards.
    require_scope(scope, TenantScope)
    result = await session.execute(
        update(DetectorWatermark)
        .where(
            scope.predicate(DetectorWatermark),
            DetectorWatermark.entity_type == entity_type,
            DetectorWatermark.lease_owner == owner,
        )
        .values(
            last_scanned_at=case(
                (
                    or_(
                        DetectorWatermark.last_scanned_at.is_(None),
                        DetectorWatermark.last_scanned_at < scanned_to,
                    ),
                    literal(scanned_to, UTCDateTime()),
                ),
                else_=DetectorWatermark.last_scanned_at,
            ),
            lease_owner=None,
            lease_expires_at=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    return (result.rowcount or 0) == 1


async def release_lease(
    session: AsyncSession,
    scope: TenantScope,
    entity_type: str,
    *,
    owner: str,
    now: datetime,
) -> bool:
    require_scope(scope, TenantScope)
    result = await session.execute(
        update(DetectorWatermark)
        .where(
            scope.predicate(DetectorWatermark),
            DetectorWatermark.entity_type == entity_type,
            DetectorWatermark.lease_owner == owner,
        )
        .values(lease_owner=None, lease_expires_at=None, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return (result.rowcount or 0) == 1
