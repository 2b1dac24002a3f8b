from __future__ import annotations

from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from statewatch.domain.models import DetectorRun
from statewatch.persistence.guards import TenantScope, require_scope


async def start_run(
    session: AsyncSession,
    scope: TenantScope,
    *,
    invocation_id: str,
    entity_type: str,
    started_at: datetime,
) -> DetectorRun:
    require_scope(scope, TenantScope)
    run = DetectorRun(
        invocation_id=invocation_id,
        tenant_id=scope.tenant_id,
        entity_type=entity_type,
        status="running",
        started_at=started_at,
    )
    session.add(run)
    await session.flush()
    return run


async def get_run(session: AsyncSession, scope: TenantScope, run_id: str) -> DetectorRun | None:
    require_scope(scope, TenantScope)
    result = await session.execute(scope.select(DetectorRun).where(DetectorRun.id == run_id))
    return result.scalar_one_or_none()


async def list_runs(
    session: AsyncSession,
    scope: TenantScope,
    *,
    entity_type: str | None = None,
    limit: int = 20,
) -> list[DetectorRun]:
    require_scope(scope, TenantScope)
    stmt = scope.select(DetectorRun)
    if entity_type:
        stmt = stmt.where(DetectorRun.entity_type == entity_type)
    stmt = stmt.order_by(DetectorRun.started_at.desc(), DetectorRun.id.desc()).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def finish_run(
    session: AsyncSession,
    scope: TenantScope,
    run_id: str,
    *,
    status: str,
    completed_at: datetime,
    window_start: datetime | None = None,
    window_end: datetime | None = None,
    entities_scanned: int = 0,
    audit_entries_written: int = 0,
    notifications_created: int = 0,
    errors: int = 0,
    error_message: str | None = None,
) -> DetectorRun | None:
    run = await get_run(session, scope, run_id)
    if run is None:
        return None
    run.status = status
    run.completed_at = completed_at
    run.window_start = window_start
    run.window_end = window_end
    run.entities_scanned = entities_scanned
    run.audit_entries_written = audit_entries_written
    run.notifications_created = notifications_created
    run.errors = errors
    # Keep run rows small; full tracebacks live in the logs.
    run.error_message = error_message[:1000] if error_message else None
    await session.flush()
    return run
