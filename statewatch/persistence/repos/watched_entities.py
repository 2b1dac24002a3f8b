from __future__ import annotations

from datetime import datetime
from typing import Iterable, Protocol

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from statewatch.domain.models import WatchedEntityRecord
from statewatch.domain.transitions import WatchedEntity
from statewatch.persistence.guards import TenantScope, require_scope


class WatchedEntityReader(Protocol):
    async def list_tenant_ids(
        self, session: AsyncSession, *, entity_types: Iterable[str]
    ) -> list[str]: ...

    async def list_transitions(
        self,
        session: AsyncSession,
        scope: TenantScope,
        *,
        entity_type: str,
        statuses: Iterable[str],
        since: datetime | None,
        until: datetime,
        after: tuple[datetime, str] | None = None,
        limit: int = 500,
    ) -> list[WatchedEntity]: ...


class SqlWatchedEntityReader:
    """Reads the ``watched_entities`` read model owned by the surrounding application."""

    async def list_tenant_ids(
        self, session: AsyncSession, *, entity_types: Iterable[str]
    ) -> list[str]:
        # The one cross-tenant read: enumerating tenants for a batch run. Returns ids only.
        types = sorted(set(entity_types))
        if not types:
            return []
        result = await session.execute(
            select(WatchedEntityRecord.tenant_id)
            .where(WatchedEntityRecord.entity_type.in_(types))
            .distinct()
            .order_by(WatchedEntityRecord.tenant_id)
        )
        return [str(row) for row in result.scalars().all()]

    async def list_transitions(
        self,
        session: AsyncSession,
        scope: TenantScope,
        *,
        entity_type: str,
        statuses: Iterable[str],
        since: datetime | None,
        until: datetime,
        after: tuple[datetime, str] | None = None,
        limit: int = 500,
    ) -> list[WatchedEntity]:
        # Window is (since, until]; pages are keyed on (status_changed_at, entity_id).
        require_scope(scope, TenantScope)
        status_list = sorted(set(statuses))
        if not status_list:
            return []
        stmt = scope.select(WatchedEntityRecord).where(
            WatchedEntityRecord.entity_type == entity_type,
            WatchedEntityRecord.status.in_(status_list),
            WatchedEntityRecord.status_changed_at <= until,
        )
        if since is not None:
            stmt = stmt.where(WatchedEntityRecord.status_changed_at > since)
        if after is not None:
            changed_at, entity_id = after
            stmt = stmt.where(
                or_(
                    WatchedEntityRecord.status_changed_at > changed_at,
                    and_(
                        WatchedEntityRecord.status_changed_at == changed_at,
                        WatchedEntityRecord.entity_id > entity_id,
                    ),
                )
            )
        stmt = stmt.order_by(
            WatchedEntityRecord.status_changed_at.asc(), WatchedEntityRecord.entity_id.asc()
        ).limit(limit)
        result = await session.execute(stmt)
        return [
            WatchedEntity(
                tenant_id=row.tenant_id,
                entity_id=row.entity_id,
                entity_type=row.entity_type,
                status=row.status,
                status_changed_at=row.status_changed_at,
                snapshot=row.snapshot if row.snapshot is not None else {},
            )
            for row in result.scalars().all()
        ]
