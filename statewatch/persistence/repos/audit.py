from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from statewatch.domain.models import AuditEntry
from statewatch.persistence.conflicts import insert_or_ignore
from statewatch.persistence.guards import TenantScope, require_scope
from statewatch.services.pagination import Keyset, keyset_after


async def insert_entry(session: AsyncSession, values: dict[str, Any]) -> tuple[int, bool]:
    # Returns (entry id, created). Entries with a dedupe key collapse onto the existing row.
    dedupe_key = values.get("dedupe_key")
    if dedupe_key is None:
        entry = AuditEntry(**values)
        session.add(entry)
        await session.flush()
        return entry.id, True
    inserted_id = await insert_or_ignore(
        session,
        AuditEntry,
        values=values,
        conflict_columns=("tenant_id", "dedupe_key"),
        returning=AuditEntry.id,
    )
    if inserted_id is not None:
        return int(inserted_id), True
    existing = await session.execute(
        select(AuditEntry.id).where(
            AuditEntry.tenant_id == values["tenant_id"],
            AuditEntry.dedupe_key == dedupe_key,
        )
    )
    return int(existing.scalar_one()), False


async def list_entries(
    session: AsyncSession,
    scope: TenantScope,
    *,
    subject_type: str | None = None,
    subject_id: str | None = None,
    action: str | None = None,
    created_from: datetime | None = None,
    created_to: datetime | None = None,
    after: Keyset | None = None,
    limit: int = 50,
) -> list[AuditEntry]:
    # Scope all audit queries to a tenant to prevent cross-tenant leakage.
    require_scope(scope, TenantScope)
    stmt = scope.select(AuditEntry)
    if subject_type:
        stmt = stmt.where(AuditEntry.subject_type == subject_type)
    if subject_id:
        stmt = stmt.where(AuditEntry.subject_id == subject_id)
    if action:
        stmt = stmt.where(AuditEntry.action == action)
    if created_from:
        stmt = stmt.where(AuditEntry.created_at >= created_from)
    if created_to:
        stmt = stmt.where(AuditEntry.created_at <= created_to)
    if after is not None:
        stmt = stmt.where(
            keyset_after(created_column=AuditEntry.created_at, id_column=AuditEntry.id, keyset=after)
        )
    # Write order: created_at, then the auto-incrementing sequence for ties.
    stmt = stmt.order_by(AuditEntry.created_at.asc(), AuditEntry.id.asc()).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_entry(session: AsyncSession, scope: TenantScope, entry_id: int) -> AuditEntry | None:
    require_scope(scope, TenantScope)
    result = await session.execute(scope.select(AuditEntry).where(AuditEntry.id == entry_id))
    return result.scalar_one_or_none()
