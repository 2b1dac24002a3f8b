from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from statewatch.domain.models import WatchedEntityRecord
from statewatch.persistence.db import SessionLocal


def at(hour: int, minute: int = 0, *, day: int = 1) -> datetime:
    # Fixed calendar day so scenario timestamps read like wall-clock times.
    return datetime(2026, 3, day, hour, minute, tzinfo=timezone.utc)


def installment_snapshot(**overrides: Any) -> dict[str, Any]:
    snapshot: dict[str, Any] = {
        "student_name": "Ada Lovelace",
        "amount": "150.00",
        "due_date": "2026-02-28",
    }
    snapshot.update(overrides)
    return snapshot


async def seed_entity(
    *,
    tenant_id: str,
    entity_id: str,
    status: str,
    changed_at: datetime,
    snapshot: Any = None,
    entity_type: str = "installment",
) -> None:
    # Stand-in for the surrounding application updating its read model.
    async with SessionLocal() as session:
        await session.merge(
            WatchedEntityRecord(
                tenant_id=tenant_id,
                entity_type=entity_type,
                entity_id=entity_id,
                status=status,
                status_changed_at=changed_at,
                snapshot=installment_snapshot() if snapshot is None else snapshot,
            )
        )
        await session.commit()
