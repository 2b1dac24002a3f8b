"""add append-only audit entries

Revision ID: 0001_audit_entries
Revises:
Create Date: 2026-10-12
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_audit_entries"
down_revision = None
branch_labels = None
depends_on = None


_APPEND_ONLY_FUNCTION = """
CREATE OR REPLACE FUNCTION audit_entries_append_only() RETURNS trigger AS $$
BEGIN
  RAISE EXCEPTION 'audit_entries is append-only' USING ERRCODE = 'integrity_constraint_violation';
END;
$$ LANGUAGE plpgsql
"""


def upgrade() -> None:
    op.create_table(
        "audit_entries",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("subject_type", sa.String(), nullable=False),
        sa.Column("subject_id", sa.String(), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("action", sa.String(), nullable=False),
        sa.Column("before_state", postgresql.JSONB(), nullable=True),
        sa.Column("after_state", postgresql.JSONB(), nullable=True),
        sa.Column("dedupe_key", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("tenant_id", "dedupe_key", name="uq_audit_entries_dedupe"),
    )
    op.create_index(
        "ix_audit_entries_tenant_subject",
        "audit_entries",
        ["tenant_id", "subject_type", "subject_id", "id"],
        unique=False,
    )
    op.create_index(
        "ix_audit_entries_tenant_created",
        "audit_entries",
        ["tenant_id", "created_at", "id"],
        unique=False,
    )
    op.create_index(
        "ix_audit_entries_tenant_action",
        "audit_entries",
        ["tenant_id", "action", "created_at"],
        unique=False,
    )
    # Rows are immutable at the database level, whatever client issues the statement.
    op.execute(_APPEND_ONLY_FUNCTION)
    op.execute(
        "CREATE TRIGGER trg_audit_entries_no_update BEFORE UPDATE ON audit_entries "
        "FOR EACH ROW EXECUTE FUNCTION audit_entries_append_only()"
    )
    op.execute(
        "CREATE TRIGGER trg_audit_entries_no_delete BEFORE DELETE ON audit_entries "
        "FOR EACH ROW EXECUTE FUNCTION audit_entries_append_only()"
    )
    op.execute(
        "CREATE TRIGGER trg_audit_entries_no_truncate BEFORE TRUNCATE ON audit_entries "
        "FOR EACH STATEMENT EXECUTE FUNCTION audit_entries_append_only()"
    )


def downgrade() -> None:
    op.execute("DROP TRIGGER IF EXISTS trg_audit_entries_no_truncate ON audit_entries")
    op.execute("DROP TRIGGER IF EXISTS trg_audit_entries_no_delete ON audit_entries")
    op.execute("DROP TRIGGER IF EXISTS trg_audit_entries_no_update ON audit_entries")
    op.execute("DROP FUNCTION IF EXISTS audit_entries_append_only()")
    op.drop_index("ix_audit_entries_tenant_action", table_name="audit_entries")
    op.drop_index("ix_audit_entries_tenant_created", table_name="audit_entries")
    op.drop_index("ix_audit_entries_tenant_subject", table_name="audit_entries")
    op.drop_table("audit_entries")
