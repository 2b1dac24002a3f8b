from __future__ import annotations

from datetime import datetime, timezone
import json

import pytest
from sqlalchemy import delete, select, text, update
from sqlalchemy import exc as sa_exc

from statewatch.core.errors import IntegrityError, NotFoundError, ValidationError
from statewatch.domain.models import AuditEntry
from statewatch.persistence.db import SessionLocal, engine
from statewatch.persistence.guards import TenantScope
from statewatch.persistence.immutability import (
    register_immutability_listeners,
    unregister_immutability_listeners,
)
from statewatch.persistence.repos import audit as audit_repo
from statewatch.services import audit as audit_service
from statewatch.services.audit import AuditEntryDraft, AuditFilters


def _draft(**overrides) -> AuditEntryDraft:
    values = {
        "tenant_id": "t1",
        "subject_type": "user",
        "subject_id": "u-1",
        "action": "update",
        "actor_id": "admin-1",
        "before_state": {"role": "reader"},
        "after_state": {"role": "admin"},
    }
    values.update(overrides)
    return AuditEntryDraft(**values)


async def _append(draft: AuditEntryDraft) -> int:
    async with SessionLocal() as session:
        entry_id = await audit_service.append(session, draft)
        await session.commit()
        return entry_id


@pytest.mark.parametrize("missing", ["tenant_id", "subject_id", "action"])
async def test_append_requires_tenant_subject_and_action(missing: str) -> None:
    async with SessionLocal() as session:
        with pytest.raises(ValidationError):
            await audit_service.append(session, _draft(**{missing: ""}))


async def test_append_redacts_secret_material() -> None:
    entry_id = await _append(
        _draft(before_state={"password": "old"}, after_state={"password": "new", "role": "admin"})
    )
    async with SessionLocal() as session:
        entry = await audit_service.get(session, TenantScope("t1"), entry_id)
    assert entry.before_state == {"password": "[REDACTED]"}
    assert entry.after_state == {"password": "[REDACTED]", "role": "admin"}


async def test_orm_update_and_delete_are_rejected() -> None:
    entry_id = await _append(_draft())

    async with SessionLocal() as session:
        entry = await session.get(AuditEntry, entry_id)
        entry.action = "tampered"
        with pytest.raises(IntegrityError):
            await session.flush()

    async with SessionLocal() as session:
        entry = await session.get(AuditEntry, entry_id)
        await session.delete(entry)
        with pytest.raises(IntegrityError):
            await session.flush()

    async with SessionLocal() as session:
        with pytest.raises(IntegrityError):
            await session.execute(
                update(AuditEntry).where(AuditEntry.id == entry_id).values(action="tampered")
            )
        with pytest.raises(IntegrityError):
            await session.execute(delete(AuditEntry).where(AuditEntry.id == entry_id))

    async with SessionLocal() as session:
        entry = await session.get(AuditEntry, entry_id)
        assert entry.action == "update"


async def test_database_triggers_reject_raw_sql_mutations() -> None:
    entry_id = await _append(_draft())
    unregister_immutability_listeners()
    try:
        with pytest.raises(sa_exc.DBAPIError) as update_error:
            async with engine.begin() as conn:
                await conn.execute(
                    text("UPDATE audit_entries SET action = 'tampered' WHERE id = :id"),
                    {"id": entry_id},
                )
        assert "append-only" in str(update_error.value)
        with pytest.raises(sa_exc.DBAPIError):
            async with engine.begin() as conn:
                await conn.execute(text("DELETE FROM audit_entries WHERE id = :id"), {"id": entry_id})
    finally:
        register_immutability_listeners()

    async with SessionLocal() as session:
        entry = await session.get(AuditEntry, entry_id)
        assert entry is not None
        assert entry.action == "update"


async def test_reads_are_byte_identical() -> None:
    entry_id = await _append(_draft(after_state={"role": "admin", "nested": {"b": 2, "a": [1, 2]}}))
    payloads = []
    for _ in range(2):
        async with SessionLocal() as session:
            entry = await audit_service.get(session, TenantScope("t1"), entry_id)
            payloads.append(json.dumps(audit_service.entry_to_dict(entry)).encode("utf-8"))
    assert payloads[0] == payloads[1]


async def test_entries_for_a_subject_come_back_in_write_order() -> None:
    ids = [await _append(_draft(action=f"step-{index}")) for index in range(5)]
    async with SessionLocal() as session:
        page = await audit_service.query(
            session, TenantScope("t1"), AuditFilters(subject_type="user", subject_id="u-1")
        )
    assert [entry.id for entry in page.items] == ids
    assert [entry.action for entry in page.items] == [f"step-{index}" for index in range(5)]
    assert page.next_cursor is None


async def test_timestamp_ties_are_broken_by_sequence_across_pages() -> None:
    same_instant = datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc)
    async with SessionLocal() as session:
        ids = []
        for index in range(5):
            entry_id, _ = await audit_repo.insert_entry(
                session,
                {
                    "tenant_id": "t1",
                    "subject_type": "installment",
                    "subject_id": "E1",
                    "action": f"step-{index}",
                    "created_at": same_instant,
                },
            )
            ids.append(entry_id)
        await session.commit()

    seen: list[int] = []
    cursor = None
    async with SessionLocal() as session:
        while True:
            page = await audit_service.query(
                session, TenantScope("t1"), AuditFilters(subject_id="E1"), cursor=cursor, limit=2
            )
            seen.extend(entry.id for entry in page.items)
            if page.next_cursor is None:
                break
            cursor = page.next_cursor
    assert seen == ids


async def test_filters_by_action_and_date_range() -> None:
    await _append(_draft(action="create"))
    await _append(_draft(action="update"))
    async with SessionLocal() as session:
        page = await audit_service.query(session, TenantScope("t1"), AuditFilters(action="create"))
        assert [entry.action for entry in page.items] == ["create"]
        future = datetime(2999, 1, 1, tzinfo=timezone.utc)
        empty = await audit_service.query(
            session, TenantScope("t1"), AuditFilters(created_from=future)
        )
        assert empty.items == []


async def test_dedupe_key_collapses_repeated_appends() -> None:
    async with SessionLocal() as session:
        first = await audit_service.append_entry(session, _draft(dedupe_key="status-transition:abc"))
        second = await audit_service.append_entry(session, _draft(dedupe_key="status-transition:abc"))
        await session.commit()
    assert first.created is True
    assert second.created is False
    assert second.entry_id == first.entry_id
    async with SessionLocal() as session:
        rows = (await session.execute(select(AuditEntry))).scalars().all()
    assert len(rows) == 1


async def test_record_change_writes_only_tracked_diffs() -> None:
    tracked = ["role", "status", "email", "name"]
    async with SessionLocal() as session:
        unchanged = await audit_service.record_change(
            session,
            tenant_id="t1",
            actor_id="admin-1",
            subject_type="user",
            subject_id="u-1",
            before={"role": "reader", "last_login": "yesterday"},
            after={"role": "reader", "last_login": "today"},
            tracked_fields=tracked,
        )
        changed = await audit_service.record_change(
            session,
            tenant_id="t1",
            actor_id="admin-1",
            subject_type="user",
            subject_id="u-1",
            before={"role": "reader", "email": "a@example.com"},
            after={"role": "admin", "email": "a@example.com"},
            tracked_fields=tracked,
        )
        created = await audit_service.record_change(
            session,
            tenant_id="t1",
            actor_id="admin-1",
            subject_type="user",
            subject_id="u-2",
            before=None,
            after={"role": "reader", "name": "Grace"},
            tracked_fields=tracked,
        )
        await session.commit()

        assert unchanged is None
        update_entry = await audit_service.get(session, TenantScope("t1"), changed)
        create_entry = await audit_service.get(session, TenantScope("t1"), created)
    assert update_entry.action == "update"
    assert update_entry.before_state == {"role": "reader"}
    assert update_entry.after_state == {"role": "admin"}
    assert create_entry.action == "create"
    assert create_entry.before_state is None


async def test_get_from_another_tenant_is_not_found() -> None:
    entry_id = await _append(_draft())
    async with SessionLocal() as session:
        with pytest.raises(NotFoundError):
            await audit_service.get(session, TenantScope("t2"), entry_id)
