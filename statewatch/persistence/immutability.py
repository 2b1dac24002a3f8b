"""Append-only enforcement for the audit ledger.

Two layers enforce the same rule:

* ORM listeners reject dirty/deleted ``AuditEntry`` instances at flush time and
  ORM bulk ``UPDATE``/``DELETE`` statements at execute time. Both raise
  ``statewatch.core.errors.IntegrityError``.
* Database triggers abort raw SQL ``UPDATE``/``DELETE`` on ``audit_entries``.
  The migration installs the Postgres variant; ``create_all`` installs the
  matching dialect variant through a DDL hook on the table.
"""

from __future__ import annotations

import logging

from sqlalchemy import DDL, event
from sqlalchemy.orm import ORMExecuteState, Session

from statewatch.core.errors import IntegrityError
from statewatch.domain.models import AuditEntry


logger = logging.getLogger(__name__)

AUDIT_TABLE = AuditEntry.__tablename__
_APPEND_ONLY_MESSAGE = "audit_entries is append-only"

SQLITE_TRIGGER_STATEMENTS = [
    (
        "CREATE TRIGGER IF NOT EXISTS trg_audit_entries_no_update "
        "BEFORE UPDATE ON audit_entries "
        f"BEGIN SELECT RAISE(ABORT, '{_APPEND_ONLY_MESSAGE}'); END"
    ),
    (
        "CREATE TRIGGER IF NOT EXISTS trg_audit_entries_no_delete "
        "BEFORE DELETE ON audit_entries "
        f"BEGIN SELECT RAISE(ABORT, '{_APPEND_ONLY_MESSAGE}'); END"
    ),
]

POSTGRES_TRIGGER_STATEMENTS = [
    (
        "CREATE OR REPLACE FUNCTION audit_entries_append_only() RETURNS trigger AS $$\n"
        "BEGIN\n"
        f"  RAISE EXCEPTION '{_APPEND_ONLY_MESSAGE}' USING ERRCODE = 'integrity_constraint_violation';\n"
        "END;\n"
        "$$ LANGUAGE plpgsql"
    ),
    (
        "CREATE TRIGGER trg_audit_entries_no_update BEFORE UPDATE ON audit_entries "
        "FOR EACH ROW EXECUTE FUNCTION audit_entries_append_only()"
    ),
    (
        "CREATE TRIGGER trg_audit_entries_no_delete BEFORE DELETE ON audit_entries "
        "FOR EACH ROW EXECUTE FUNCTION audit_entries_append_only()"
    ),
    (
        "CREATE TRIGGER trg_audit_entries_no_truncate BEFORE TRUNCATE ON audit_entries "
        "FOR EACH STATEMENT EXECUTE FUNCTION audit_entries_append_only()"
    ),
]

POSTGRES_DROP_STATEMENTS = [
    "DROP TRIGGER IF EXISTS trg_audit_entries_no_truncate ON audit_entries",
    "DROP TRIGGER IF EXISTS trg_audit_entries_no_delete ON audit_entries",
    "DROP TRIGGER IF EXISTS trg_audit_entries_no_update ON audit_entries",
    "DROP FUNCTION IF EXISTS audit_entries_append_only()",
]


def _reject_audit_mutations(session: Session, flush_context, instances) -> None:
    for obj in session.deleted:
        if isinstance(obj, AuditEntry):
            logger.error("audit_entry_delete_rejected audit_entry_id=%s", obj.id)
            raise IntegrityError(f"{_APPEND_ONLY_MESSAGE}: delete of entry {obj.id} rejected")
    for obj in session.dirty:
        if isinstance(obj, AuditEntry) and session.is_modified(obj, include_collections=False):
            logger.error("audit_entry_update_rejected audit_entry_id=%s", obj.id)
            raise IntegrityError(f"{_APPEND_ONLY_MESSAGE}: update of entry {obj.id} rejected")


def _reject_bulk_audit_mutations(orm_execute_state: ORMExecuteState) -> None:
    if not (orm_execute_state.is_update or orm_execute_state.is_delete):
        return
    mapper = orm_execute_state.bind_mapper
    if mapper is not None and mapper.class_ is AuditEntry:
        logger.error("audit_entry_bulk_mutation_rejected")
        raise IntegrityError(f"{_APPEND_ONLY_MESSAGE}: bulk mutation rejected")


def register_immutability_listeners() -> None:
    # Idempotent so app factories, workers and tests can all call it.
    if not event.contains(Session, "before_flush", _reject_audit_mutations):
        event.listen(Session, "before_flush", _reject_audit_mutations)
    if not event.contains(Session, "do_orm_execute", _reject_bulk_audit_mutations):
        event.listen(Session, "do_orm_execute", _reject_bulk_audit_mutations)


def unregister_immutability_listeners() -> None:
    # Tests only: lets a test prove the database triggers hold on their own.
    if event.contains(Session, "before_flush", _reject_audit_mutations):
        event.remove(Session, "before_flush", _reject_audit_mutations)
    if event.contains(Session, "do_orm_execute", _reject_bulk_audit_mutations):
        event.remove(Session, "do_orm_execute", _reject_bulk_audit_mutations)


for _statement in SQLITE_TRIGGER_STATEMENTS:
    event.listen(AuditEntry.__table__, "after_create", DDL(_statement).execute_if(dialect="sqlite"))
for _statement in POSTGRES_TRIGGER_STATEMENTS:
    event.listen(
        AuditEntry.__table__, "after_create", DDL(_statement).execute_if(dialect="postgresql")
    )
