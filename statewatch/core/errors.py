from __future__ import annotations


class StatewatchError(Exception):
    """Base error for statewatch."""


class ValidationError(StatewatchError):
    """Malformed input to a write (missing tenant, subject, action or actor)."""


class NotFoundError(StatewatchError):
    """Row does not exist or is not visible to the caller's tenant and audience."""


class ConflictError(StatewatchError):
    """Notification epoch collision; absorbed by the store as a successful no-op."""


class LeaseContentionError(StatewatchError):
    """Another detector run holds a live lease on the watermark."""

    def __init__(self, tenant_id: str, entity_type: str, lease_owner: str | None = None) -> None:
        super().__init__(f"watermark lease held tenant_id={tenant_id} entity_type={entity_type}")
        self.tenant_id = tenant_id
        self.entity_type = entity_type
        self.lease_owner = lease_owner


class IntegrityError(StatewatchError):
    """Attempted mutation of an append-only audit row."""


class MalformedSnapshotError(StatewatchError):
    """Watched entity snapshot cannot satisfy a trigger rule's templates."""


class CursorError(StatewatchError, ValueError):
    """Malformed or tampered pagination cursor."""


class DatabaseError(StatewatchError):
    """Database layer failure."""
