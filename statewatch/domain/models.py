from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from statewatch.persistence.types import JSONType, SequenceId, UTCDateTime, utc_now


# Audience sentinel for notifications visible to every actor of a tenant.
TENANT_WIDE = "*"


def _new_id() -> str:
    return uuid4().hex


class Base(DeclarativeBase):
    pass


class AuditEntry(Base):
    __tablename__ = "audit_entries"
    __table_args__ = (
        # Detector writes carry a dedupe key so a re-scanned epoch never doubles the history.
        UniqueConstraint("tenant_id", "dedupe_key", name="uq_audit_entries_dedupe"),
        Index("ix_audit_entries_tenant_subject", "tenant_id", "subject_type", "subject_id", "id"),
        Index("ix_audit_entries_tenant_created", "tenant_id", "created_at", "id"),
        Index("ix_audit_entries_tenant_action", "tenant_id", "action", "created_at"),
    )

    # Auto-incrementing sequence; breaks created_at ties in write order.
    id: Mapped[int] = mapped_column(SequenceId, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String, nullable=False)
    subject_type: Mapped[str] = mapped_column(String, nullable=False)
    subject_id: Mapped[str] = mapped_column(String, nullable=False)
    # Null actor means the system (e.g. the transition detector).
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    action: Mapped[str] = mapped_column(String, nullable=False)
    before_state: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    after_state: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    dedupe_key: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, nullable=False)


class Notification(Base):
    __tablename__ = "notifications"
    __table_args__ = (
        # Load-bearing dedup constraint: one row per (subject, kind) per open epoch.
        UniqueConstraint(
            "tenant_id", "subject_id", "kind", "epoch_token", name="uq_notifications_epoch"
        ),
        Index("ix_notifications_feed", "tenant_id", "audience", "is_read", "created_at"),
        Index("ix_notifications_subject", "tenant_id", "subject_type", "subject_id"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String, nullable=False)
    # Either a specific actor id or TENANT_WIDE.
    audience: Mapped[str] = mapped_column(String, nullable=False)
    kind: Mapped[str] = mapped_column(String, nullable=False)
    subject_type: Mapped[str] = mapped_column(String, nullable=False)
    subject_id: Mapped[str] = mapped_column(String, nullable=False)
    epoch_token: Mapped[str] = mapped_column(String(64), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    deep_link: Mapped[str | None] = mapped_column(String, nullable=True)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, nullable=False)
    read_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)


class DetectorWatermark(Base):
    __tablename__ = "detector_watermarks"

    tenant_id: Mapped[str] = mapped_column(String, primary_key=True)
    entity_type: Mapped[str] = mapped_column(String, primary_key=True)
    # Upper bound of the last fully processed window.
    last_scanned_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    lease_owner: Mapped[str | None] = mapped_column(String, nullable=True)
    lease_expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utc_now, onupdate=utc_now, nullable=False
    )


class DetectorRun(Base):
    __tablename__ = "detector_runs"
    __table_args__ = (
        Index("ix_detector_runs_tenant_started", "tenant_id", "started_at"),
        Index("ix_detector_runs_invocation", "invocation_id"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    # Shared by every (tenant, entity_type) unit of one detector invocation.
    invocation_id: Mapped[str] = mapped_column(String, nullable=False)
    tenant_id: Mapped[str] = mapped_column(String, nullable=False)
    entity_type: Mapped[str] = mapped_column(String, nullable=False)
    # running -> success | partial | failed | skipped_lease
    status: Mapped[str] = mapped_column(String, nullable=False)
    window_start: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    window_end: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    entities_scanned: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    audit_entries_written: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    notifications_created: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    errors: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)


class WatchedEntityRecord(Base):
    """Read model maintained by the surrounding application; never written here."""

    __tablename__ = "watched_entities"
    __table_args__ = (
        Index(
            "ix_watched_entities_scan",
            "tenant_id",
            "entity_type",
            "status",
            "status_changed_at",
        ),
    )

    tenant_id: Mapped[str] = mapped_column(String, primary_key=True)
    entity_type: Mapped[str] = mapped_column(String, primary_key=True)
    entity_id: Mapped[str] = mapped_column(String, primary_key=True)
    status: Mapped[str] = mapped_column(String, nullable=False)
    status_changed_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    # Denormalized fields used to render notification messages.
    snapshot: Mapped[Any] = mapped_column(JSONType, nullable=True)
