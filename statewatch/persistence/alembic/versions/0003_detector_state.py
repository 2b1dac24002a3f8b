"""add detector watermarks, run log and watched entity read model

Revision ID: 0003_detector_state
Revises: 0002_notifications
Create Date: 2026-10-13
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0003_detector_state"
down_revision = "0002_notifications"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "detector_watermarks",
        sa.Column("tenant_id", sa.String(), primary_key=True),
        sa.Column("entity_type", sa.String(), primary_key=True),
        sa.Column("last_scanned_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("lease_owner", sa.String(), nullable=True),
        sa.Column("lease_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "detector_runs",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("invocation_id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("entity_type", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("window_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("window_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("entities_scanned", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("audit_entries_written", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("notifications_created", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("errors", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_detector_runs_tenant_started",
        "detector_runs",
        ["tenant_id", "started_at"],
        unique=False,
    )
    op.create_index("ix_detector_runs_invocation", "detector_runs", ["invocation_id"], unique=False)

    # Owned by the surrounding application; created here so the detector has a read model to scan.
    op.create_table(
        "watched_entities",
        sa.Column("tenant_id", sa.String(), primary_key=True),
        sa.Column("entity_type", sa.String(), primary_key=True),
        sa.Column("entity_id", sa.String(), primary_key=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("status_changed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("snapshot", postgresql.JSONB(), nullable=True),
    )
    op.create_index(
        "ix_watched_entities_scan",
        "watched_entities",
        ["tenant_id", "entity_type", "status", "status_changed_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_watched_entities_scan", table_name="watched_entities")
    op.drop_table("watched_entities")
    op.drop_index("ix_detector_runs_invocation", table_name="detector_runs")
    op.drop_index("ix_detector_runs_tenant_started", table_name="detector_runs")
    op.drop_table("detector_runs")
    op.drop_table("detector_watermarks")
