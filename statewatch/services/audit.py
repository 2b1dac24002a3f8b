from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
import logging
from typing import Any, Iterable

from sqlalchemy.ext.asyncio import AsyncSession

from statewatch.core.config import get_settings
from statewatch.core.errors import NotFoundError, ValidationError
from statewatch.domain.models import AuditEntry
from statewatch.persistence.guards import TenantScope
from statewatch.persistence.repos import audit as audit_repo
from statewatch.services.pagination import (
    Keyset,
    build_keyset_cursor,
    clamp_limit,
    parse_keyset_cursor,
)


logger = logging.getLogger(__name__)

ACTION_STATUS_TRANSITION = "status-transition"
ACTION_CREATE = "create"
ACTION_UPDATE = "update"
ACTION_DELETE = "delete"

_CURSOR_SCOPE = "audit_entries"
_SENSITIVE_KEY_PATTERNS = ["password", "secret", "token", "api_key", "authorization", "credential"]
_REDACTED_VALUE = "[REDACTED]"


def _is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_snapshot(value: Any) -> Any:
    # Recursively scrub secret material before a snapshot is persisted.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_snapshot(raw_value)
        return sanitized
    if isinstance(value, (list, tuple)):
        return [sanitize_snapshot(item) for item in value]
    return value


@dataclass(frozen=True)
class AuditEntryDraft:
    tenant_id: str
    subject_type: str
    subject_id: str
    action: str
    actor_id: str | None = None
    before_state: dict[str, Any] | None = None
    after_state: dict[str, Any] | None = None
    # Set by automated writers whose retries must not duplicate history.
    dedupe_key: str | None = None


@dataclass(frozen=True)
class AppendResult:
    entry_id: int
    created: bool


@dataclass(frozen=True)
class AuditFilters:
    subject_type: str | None = None
    subject_id: str | None = None
    action: str | None = None
    created_from: datetime | None = None
    created_to: datetime | None = None


@dataclass
class AuditPage:
    items: list[AuditEntry] = field(default_factory=list)
    next_cursor: str | None = None


def validate_draft(draft: AuditEntryDraft) -> None:
    missing = [
        name
        for name in ("tenant_id", "subject_type", "subject_id", "action")
        if not isinstance(getattr(draft, name), str) or not getattr(draft, name).strip()
    ]
    if missing:
        raise ValidationError(f"audit entry missing required fields: {', '.join(missing)}")


async def append_entry(session: AsyncSession, draft: AuditEntryDraft) -> AppendResult:
    """Append one entry inside the caller's transaction.

    Entries are never updated afterwards. A draft carrying a ``dedupe_key`` that
    already exists for the tenant resolves to the existing entry instead of
    writing a second copy.
    """
    validate_draft(draft)
    entry_id, created = await audit_repo.insert_entry(
        session,
        {
            "tenant_id": draft.tenant_id,
            "subject_type": draft.subject_type,
            "subject_id": draft.subject_id,
            "actor_id": draft.actor_id,
            "action": draft.action,
            "before_state": sanitize_snapshot(draft.before_state) if draft.before_state is not None else None,
            "after_state": sanitize_snapshot(draft.after_state) if draft.after_state is not None else None,
            "dedupe_key": draft.dedupe_key,
        },
    )
    if not created:
        logger.info(
            "audit_entry_deduplicated tenant_id=%s subject_id=%s dedupe_key=%s",
            draft.tenant_id,
            draft.subject_id,
            draft.dedupe_key,
        )
    return AppendResult(entry_id=entry_id, created=created)


async def append(session: AsyncSession, draft: AuditEntryDraft) -> int:
    result = await append_entry(session, draft)
    return result.entry_id


async def record_change(
    session: AsyncSession,
    *,
    tenant_id: str,
    actor_id: str | None,
    subject_type: str,
    subject_id: str,
    before: dict[str, Any] | None,
    after: dict[str, Any] | None,
    tracked_fields: Iterable[str],
) -> int | None:
    # Write create/delete unconditionally; updates only when a tracked field changed.
    fields = list(tracked_fields)
    if before is None and after is None:
        raise ValidationError("record_change requires a before or after snapshot")
    if before is None:
        action = ACTION_CREATE
        before_state = None
        after_state = {name: after.get(name) for name in fields}
    elif after is None:
        action = ACTION_DELETE
        before_state = {name: before.get(name) for name in fields}
        after_state = None
    else:
        changed = [name for name in fields if before.get(name) != after.get(name)]
        if not changed:
            return None
        action = ACTION_UPDATE
        before_state = {name: before.get(name) for name in changed}
        after_state = {name: after.get(name) for name in changed}
    return await append(
        session,
        AuditEntryDraft(
            tenant_id=tenant_id,
            subject_type=subject_type,
            subject_id=subject_id,
            action=action,
            actor_id=actor_id,
            before_state=before_state,
            after_state=after_state,
        ),
    )


async def query(
    session: AsyncSession,
    scope: TenantScope,
    filters: AuditFilters | None = None,
    *,
    cursor: str | None = None,
    limit: int | None = None,
) -> AuditPage:
    """Return one page of entries in write order, with an opaque cursor for the next page."""
    settings = get_settings()
    filters = filters or AuditFilters()
    page_size = clamp_limit(
        limit,
        default=settings.audit_default_page_size,
        maximum=settings.audit_max_page_size,
    )
    after = None
    if cursor:
        after = parse_keyset_cursor(
            token=cursor,
            scope=_CURSOR_SCOPE,
            tenant_id=scope.tenant_id,
            secret=settings.cursor_secret,
        )
    entries = await audit_repo.list_entries(
        session,
        scope,
        subject_type=filters.subject_type,
        subject_id=filters.subject_id,
        action=filters.action,
        created_from=filters.created_from,
        created_to=filters.created_to,
        after=after,
        limit=page_size + 1,
    )
    next_cursor = None
    if len(entries) > page_size:
        entries = entries[:page_size]
        last = entries[-1]
        next_cursor = build_keyset_cursor(
            scope=_CURSOR_SCOPE,
            tenant_id=scope.tenant_id,
            keyset=Keyset(created_at=last.created_at, row_id=last.id),
            secret=settings.cursor_secret,
        )
    return AuditPage(items=entries, next_cursor=next_cursor)


async def get(session: AsyncSession, scope: TenantScope, entry_id: int) -> AuditEntry:
    entry = await audit_repo.get_entry(session, scope, entry_id)
    if entry is None:
        raise NotFoundError("audit entry not found")
    return entry


def entry_to_dict(entry: AuditEntry) -> dict[str, Any]:
    return {
        "id": entry.id,
        "tenant_id": entry.tenant_id,
        "subject_type": entry.subject_type,
        "subject_id": entry.subject_id,
        "actor_id": entry.actor_id,
        "action": entry.action,
        "before_state": entry.before_state,
        "after_state": entry.after_state,
        "created_at": entry.created_at.isoformat(),
    }
