"""add notifications with per-epoch uniqueness

Revision ID: 0002_notifications
Revises: 0001_audit_entries
Create Date: 2026-10-12
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "0002_notifications"
down_revision = "0001_audit_entries"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "notifications",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("audience", sa.String(), nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("subject_type", sa.String(), nullable=False),
        sa.Column("subject_id", sa.String(), nullable=False),
        sa.Column("epoch_token", sa.String(length=64), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("deep_link", sa.String(), nullable=True),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
        # The detector relies on this constraint for at-most-once notifications per epoch.
        sa.UniqueConstraint(
            "tenant_id", "subject_id", "kind", "epoch_token", name="uq_notifications_epoch"
        ),
    )
    op.create_index(
        "ix_notifications_feed",
        "notifications",
        ["tenant_id", "audience", "is_read", "created_at"],
        unique=False,
    )
    op.create_index(
        "ix_notifications_subject",
        "notifications",
        ["tenant_id", "subject_type", "subject_id"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_notifications_subject", table_name="notifications")
    op.drop_index("ix_notifications_feed", table_name="notifications")
    op.drop_table("notifications")
