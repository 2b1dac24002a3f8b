from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
import logging
import os
import socket
import time
from typing import Any, Iterable
from uuid import uuid4

from sqlalchemy.ext.asyncio import async_sessionmaker

from statewatch.core.config import Settings, get_settings
from statewatch.core.errors import LeaseContentionError, MalformedSnapshotError, ValidationError
from statewatch.domain.transitions import (
    TriggerRule,
    WatchedEntity,
    parse_trigger_rules,
    rules_by_entity_type,
)
from statewatch.persistence.db import SessionLocal
from statewatch.persistence.guards import TenantScope
from statewatch.persistence.repos import detector_runs as runs_repo
from statewatch.persistence.repos import watermarks as watermarks_repo
from statewatch.persistence.repos.watched_entities import SqlWatchedEntityReader, WatchedEntityReader
from statewatch.persistence.types import as_utc, utc_now
from statewatch.services import audit as audit_service
from statewatch.services import notifications as notifications_service
from statewatch.services.detector.epochs import audit_dedupe_key, compute_epoch_token
from statewatch.services.resilience import RetryPolicy, detector_retry_policy, retry_async


logger = logging.getLogger(__name__)

RUN_RUNNING = "running"
RUN_SUCCESS = "success"
RUN_PARTIAL = "partial"
RUN_FAILED = "failed"
RUN_SKIPPED_LEASE = "skipped_lease"

# Optional snapshot key carrying the status the entity left; recorded as before_state.
PREVIOUS_STATUS_KEY = "previous_status"


@dataclass
class UnitSummary:
    """Outcome of one (tenant_id, entity_type) scan."""

    tenant_id: str
    entity_type: str
    status: str = RUN_RUNNING
    run_id: str | None = None
    window_start: datetime | None = None
    window_end: datetime | None = None
    entities_scanned: int = 0
    audit_entries_written: int = 0
    notifications_created: int = 0
    errors: int = 0
    error_message: str | None = None

    def record_error(self, exc: BaseException) -> None:
        self.errors += 1
        if self.error_message is None:
            self.error_message = f"{type(exc).__name__}: {exc}"

    def as_dict(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "entity_type": self.entity_type,
            "status": self.status,
            "run_id": self.run_id,
            "window_start": self.window_start.isoformat() if self.window_start else None,
            "window_end": self.window_end.isoformat() if self.window_end else None,
            "entities_scanned": self.entities_scanned,
            "audit_entries_written": self.audit_entries_written,
            "notifications_created": self.notifications_created,
            "errors": self.errors,
        }


@dataclass
class DetectorSummary:
    invocation_id: str
    units: list[UnitSummary] = field(default_factory=list)

    @property
    def entities_scanned(self) -> int:
        return sum(unit.entities_scanned for unit in self.units)

    @property
    def audit_entries_written(self) -> int:
        return sum(unit.audit_entries_written for unit in self.units)

    @property
    def notifications_created(self) -> int:
        return sum(unit.notifications_created for unit in self.units)

    @property
    def errors(self) -> int:
        return sum(unit.errors for unit in self.units)

    def as_dict(self) -> dict[str, Any]:
        return {
            "invocation_id": self.invocation_id,
            "entities_scanned": self.entities_scanned,
            "audit_entries_written": self.audit_entries_written,
            "notifications_created": self.notifications_created,
            "errors": self.errors,
            "units": [unit.as_dict() for unit in self.units],
        }


class _UnitRun:
    """Scan one (tenant_id, entity_type) window under a watermark lease."""

    def __init__(
        self,
        *,
        scope: TenantScope,
        entity_type: str,
        rules: Iterable[TriggerRule],
        owner: str,
        invocation_id: str,
        now: datetime,
        since: datetime | None,
        reader: WatchedEntityReader,
        session_factory: async_sessionmaker,
        settings: Settings,
        policy: RetryPolicy,
    ) -> None:
        self.scope = scope
        self.entity_type = entity_type
        self.rules = {rule.status: rule for rule in rules}
        self.owner = owner
        self.invocation_id = invocation_id
        self.now = now
        self.since = since
        self.reader = reader
        self.session_factory = session_factory
        self.settings = settings
        self.policy = policy
        self.summary = UnitSummary(tenant_id=scope.tenant_id, entity_type=entity_type)
        self._started = time.monotonic()
        self._blocked = False

    def _clock(self) -> datetime:
        # Offsets from the run's reference time so an injected `now` stays consistent.
        return self.now + timedelta(seconds=time.monotonic() - self._started)

    async def run(self) -> UnitSummary:
        try:
            last_scanned_at = await self._acquire()
        except LeaseContentionError as exc:
            logger.info(
                "detector_lease_held tenant_id=%s entity_type=%s lease_owner=%s",
                exc.tenant_id,
                exc.entity_type,
                exc.lease_owner,
            )
            await self._record_skipped()
            return self.summary

        self.summary.window_end = self.now
        if self.since is not None:
            self.summary.window_start = self.since
        elif last_scanned_at is not None:
            self.summary.window_start = last_scanned_at
        else:
            self.summary.window_start = self.now - timedelta(
                hours=self.settings.detector_initial_lookback_hours
            )

        try:
            await self._scan()
        except LeaseContentionError:
            self._blocked = True
            self.summary.record_error(RuntimeError("watermark lease lost during scan"))
            logger.warning(
                "detector_lease_lost tenant_id=%s entity_type=%s owner=%s",
                self.scope.tenant_id,
                self.entity_type,
                self.owner,
            )
        except Exception as exc:  # noqa: BLE001 - the watermark stays put and the next run rescans
            self._blocked = True
            self.summary.record_error(exc)
            logger.error(
                "detector_scan_failed tenant_id=%s entity_type=%s",
                self.scope.tenant_id,
                self.entity_type,
                exc_info=exc,
            )
        await self._finish()
        return self.summary

    async def _acquire(self) -> datetime | None:
        async with self.session_factory() as session:
            async with session.begin():
                await watermarks_repo.ensure_watermark(
                    session, self.scope, self.entity_type, now=self.now
                )
                acquired = await watermarks_repo.try_acquire_lease(
                    session,
                    self.scope,
                    self.entity_type,
                    owner=self.owner,
                    now=self.now,
                    ttl_s=self.settings.detector_lease_ttl_s,
                )
                watermark = await watermarks_repo.get_watermark(session, self.scope, self.entity_type)
                if not acquired:
                    raise LeaseContentionError(
                        self.scope.tenant_id,
                        self.entity_type,
                        watermark.lease_owner if watermark else None,
                    )
                run = await runs_repo.start_run(
                    session,
                    self.scope,
                    invocation_id=self.invocation_id,
                    entity_type=self.entity_type,
                    started_at=self.now,
                )
                self.summary.run_id = run.id
                return watermark.last_scanned_at if watermark else None

    async def _record_skipped(self) -> None:
        self.summary.status = RUN_SKIPPED_LEASE
        async with self.session_factory() as session:
            async with session.begin():
                run = await runs_repo.start_run(
                    session,
                    self.scope,
                    invocation_id=self.invocation_id,
                    entity_type=self.entity_type,
                    started_at=self.now,
                )
                await runs_repo.finish_run(
                    session,
                    self.scope,
                    run.id,
                    status=RUN_SKIPPED_LEASE,
                    completed_at=self._clock(),
                )
                self.summary.run_id = run.id

    async def _renew_lease(self) -> None:
        async with self.session_factory() as session:
            async with session.begin():
                renewed = await watermarks_repo.try_acquire_lease(
                    session,
                    self.scope,
                    self.entity_type,
                    owner=self.owner,
                    now=self._clock(),
                    ttl_s=self.settings.detector_lease_ttl_s,
                )
        if not renewed:
            raise LeaseContentionError(self.scope.tenant_id, self.entity_type)

    async def _scan(self) -> None:
        batch_size = max(1, self.settings.detector_batch_size)
        after: tuple[datetime, str] | None = None
        while True:
            if after is not None:
                await self._renew_lease()
            # Each page is read in its own short session; no read transaction spans the writes.
            async with self.session_factory() as session:
                page = await self.reader.list_transitions(
                    session,
                    self.scope,
                    entity_type=self.entity_type,
                    statuses=self.rules.keys(),
                    since=self.summary.window_start,
                    until=self.summary.window_end,
                    after=after,
                    limit=batch_size,
                )
            for entity in page:
                self.summary.entities_scanned += 1
                await self._process(entity)
            if len(page) < batch_size:
                return
            last = page[-1]
            after = (last.status_changed_at, last.entity_id)

    async def _process(self, entity: WatchedEntity) -> None:
        rule = self.rules.get(entity.status)
        if rule is None:
            return
        epoch_token = compute_epoch_token(entity.entity_id, entity.status, entity.status_changed_at)
        audit_draft = self._audit_draft(entity, rule, epoch_token)
        try:
            audit_service.validate_draft(audit_draft)
        except ValidationError as exc:
            self._record_malformed(entity, exc)
            return
        # A transition that cannot be rendered is still audited; only its notification is skipped.
        notification_draft: notifications_service.NotificationDraft | None = None
        try:
            notification_draft = self._notification_draft(entity, rule, epoch_token)
            notifications_service.validate_draft(notification_draft)
        except (MalformedSnapshotError, ValidationError) as exc:
            notification_draft = None
            self._record_malformed(entity, exc)
        try:
            audit_created, notification_created = await retry_async(
                lambda: self._write(audit_draft, notification_draft),
                policy=self.policy,
                description=f"detector_entity entity_id={entity.entity_id}",
            )
        except Exception as exc:  # noqa: BLE001 - one entity never aborts the batch
            self._blocked = True
            self.summary.record_error(exc)
            logger.error(
                "detector_entity_failed tenant_id=%s entity_type=%s entity_id=%s",
                self.scope.tenant_id,
                entity.entity_type,
                entity.entity_id,
                exc_info=exc,
            )
            return
        if audit_created:
            self.summary.audit_entries_written += 1
        if notification_created:
            self.summary.notifications_created += 1

    def _record_malformed(self, entity: WatchedEntity, exc: Exception) -> None:
        # Retrying cannot fix the entity's data, so the window still advances.
        self.summary.record_error(exc)
        logger.warning(
            "detector_entity_malformed tenant_id=%s entity_type=%s entity_id=%s error=%s",
            self.scope.tenant_id,
            entity.entity_type,
            entity.entity_id,
            exc,
        )

    def _audit_draft(
        self, entity: WatchedEntity, rule: TriggerRule, epoch_token: str
    ) -> audit_service.AuditEntryDraft:
        after_state: dict[str, Any] = {
            "status": entity.status,
            "status_changed_at": as_utc(entity.status_changed_at).isoformat(),
        }
        previous_status = None
        if isinstance(entity.snapshot, dict):
            previous_status = entity.snapshot.get(PREVIOUS_STATUS_KEY)
            # Only the keys the rule reads are copied out of the read model.
            after_state["snapshot"] = {
                key: entity.snapshot[key]
                for key in sorted(rule.snapshot_fields())
                if key in entity.snapshot
            }
        return audit_service.AuditEntryDraft(
            tenant_id=self.scope.tenant_id,
            subject_type=entity.entity_type,
            subject_id=entity.entity_id,
            action=audit_service.ACTION_STATUS_TRANSITION,
            actor_id=None,
            before_state={"status": previous_status} if previous_status else None,
            after_state=after_state,
            dedupe_key=audit_dedupe_key(epoch_token),
        )

    def _notification_draft(
        self, entity: WatchedEntity, rule: TriggerRule, epoch_token: str
    ) -> notifications_service.NotificationDraft:
        rendered = rule.render(entity)
        return notifications_service.NotificationDraft(
            tenant_id=self.scope.tenant_id,
            audience=rendered.audience,
            kind=rule.kind,
            subject_type=entity.entity_type,
            subject_id=entity.entity_id,
            epoch_token=epoch_token,
            message=rendered.message,
            deep_link=rendered.deep_link,
        )

    async def _write(
        self,
        audit_draft: audit_service.AuditEntryDraft,
        notification_draft: notifications_service.NotificationDraft | None,
    ) -> tuple[bool, bool]:
        # Audit entry and notification commit or roll back together.
        async with self.session_factory() as session:
            async with session.begin():
                audit = await audit_service.append_entry(session, audit_draft)
                if notification_draft is None:
                    return audit.created, False
                result = await notifications_service.create_notification(session, notification_draft)
        return audit.created, result.created

    async def _finish(self) -> None:
        completed_at = self._clock()
        async with self.session_factory() as session:
            async with session.begin():
                if self._blocked:
                    # Leave the cursor where it was; the next run rescans this window.
                    await watermarks_repo.release_lease(
                        session, self.scope, self.entity_type, owner=self.owner, now=completed_at
                    )
                    self.summary.status = RUN_FAILED
                else:
                    advanced = await watermarks_repo.advance_and_release(
                        session,
                        self.scope,
                        self.entity_type,
                        owner=self.owner,
                        scanned_to=self.summary.window_end,
                        now=completed_at,
                    )
                    if not advanced:
                        self.summary.record_error(RuntimeError("watermark lease lost before advance"))
                        logger.warning(
                            "detector_watermark_not_advanced tenant_id=%s entity_type=%s owner=%s",
                            self.scope.tenant_id,
                            self.entity_type,
                            self.owner,
                        )
                        self.summary.status = RUN_FAILED
                    elif self.summary.errors:
                        self.summary.status = RUN_PARTIAL
                    else:
                        self.summary.status = RUN_SUCCESS
                if self.summary.run_id is not None:
                    await runs_repo.finish_run(
                        session,
                        self.scope,
                        self.summary.run_id,
                        status=self.summary.status,
                        completed_at=completed_at,
                        window_start=self.summary.window_start,
                        window_end=self.summary.window_end,
                        entities_scanned=self.summary.entities_scanned,
                        audit_entries_written=self.summary.audit_entries_written,
                        notifications_created=self.summary.notifications_created,
                        errors=self.summary.errors,
                        error_message=self.summary.error_message,
                    )
        logger.info(
            "detector_unit_completed tenant_id=%s entity_type=%s status=%s scanned=%s audit=%s notifications=%s errors=%s",
            self.scope.tenant_id,
            self.entity_type,
            self.summary.status,
            self.summary.entities_scanned,
            self.summary.audit_entries_written,
            self.summary.notifications_created,
            self.summary.errors,
        )


async def run_detector(
    *,
    tenant_id: str | None = None,
    since: datetime | None = None,
    now: datetime | None = None,
    rules: list[TriggerRule] | None = None,
    reader: WatchedEntityReader | None = None,
    session_factory: async_sessionmaker | None = None,
    runner_id: str | None = None,
) -> DetectorSummary:
    """Scan watched entities for transitions into triggering states.

    Processes the window ``(since, now]`` for one tenant, or for every tenant
    with watched entities when ``tenant_id`` is omitted. ``since`` defaults to
    each (tenant, entity_type) watermark. Each unit runs under its own lease;
    a held lease skips the unit with zero work rather than failing the call.
    """
    settings = get_settings()
    run_now = as_utc(now) if now is not None else utc_now()
    if since is not None:
        since = as_utc(since)
        if since >= run_now:
            raise ValidationError("since must be earlier than the run time")
    if tenant_id is not None and not tenant_id.strip():
        raise ValidationError("tenant_id must not be blank")
    if rules is None:
        rules = parse_trigger_rules(settings.detector_triggers_json)
    grouped = rules_by_entity_type(rules)
    reader = reader or SqlWatchedEntityReader()
    session_factory = session_factory or SessionLocal
    policy = detector_retry_policy()

    invocation_id = uuid4().hex
    owner = runner_id or f"{socket.gethostname()}:{os.getpid()}:{invocation_id}"
    summary = DetectorSummary(invocation_id=invocation_id)

    if tenant_id is not None:
        tenant_ids = [tenant_id]
    else:
        async with session_factory() as session:
            tenant_ids = await reader.list_tenant_ids(session, entity_types=grouped.keys())

    logger.info(
        "detector_run_started invocation_id=%s tenants=%s entity_types=%s since=%s now=%s",
        invocation_id,
        len(tenant_ids),
        ",".join(sorted(grouped)),
        since.isoformat() if since else None,
        run_now.isoformat(),
    )
    for current_tenant in tenant_ids:
        scope = TenantScope(current_tenant)
        for entity_type, type_rules in grouped.items():
            unit_run = _UnitRun(
                scope=scope,
                entity_type=entity_type,
                rules=type_rules,
                owner=owner,
                invocation_id=invocation_id,
                now=run_now,
                since=since,
                reader=reader,
                session_factory=session_factory,
                settings=settings,
                policy=policy,
            )
            try:
                unit = await unit_run.run()
            except Exception as exc:  # noqa: BLE001 - remaining tenants still run
                unit = unit_run.summary
                unit.status = RUN_FAILED
                unit.record_error(exc)
                logger.error(
                    "detector_unit_failed tenant_id=%s entity_type=%s",
                    current_tenant,
                    entity_type,
                    exc_info=exc,
                )
            summary.units.append(unit)
    logger.info(
        "detector_run_completed invocation_id=%s scanned=%s audit=%s notifications=%s errors=%s",
        invocation_id,
        summary.entities_scanned,
        summary.audit_entries_written,
        summary.notifications_created,
        summary.errors,
    )
    return summary
