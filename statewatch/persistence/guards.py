"""Tenant/audience authorization filter.

Every read of the audit ledger or the notification store is built from one of
the scope objects below. A scope cannot be constructed without its identifiers,
and repositories only accept scope objects, so a query without a tenant
predicate cannot be expressed through the data-access layer.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from sqlalchemy import and_, or_, select
from sqlalchemy.sql import ColumnElement, Select

from statewatch.domain.models import TENANT_WIDE, Notification


class TenantPredicateError(RuntimeError):
    # Surface missing tenant/audience identifiers at scope construction time.
    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


def _require_identifier(value: Any, name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise TenantPredicateError(f"{name} is required to build a scoped query")
    return value


@dataclass(frozen=True)
class TenantScope:
    """Tenant-only scope used for the audit ledger and detector run log."""

    tenant_id: str

    def __post_init__(self) -> None:
        _require_identifier(self.tenant_id, "tenant_id")

    def predicate(self, model) -> ColumnElement[bool]:
        return model.tenant_id == self.tenant_id

    def select(self, model) -> Select:
        return select(model).where(self.predicate(model))


@dataclass(frozen=True)
class AudienceScope(TenantScope):
    """Tenant plus actor scope used for the notification feed."""

    actor_id: str

    def __post_init__(self) -> None:
        super().__post_init__()
        _require_identifier(self.actor_id, "actor_id")
        if self.actor_id == TENANT_WIDE:
            raise TenantPredicateError("actor_id cannot be the tenant-wide audience sentinel")

    def predicate(self, model=Notification) -> ColumnElement[bool]:
        return and_(
            model.tenant_id == self.tenant_id,
            or_(model.audience == self.actor_id, model.audience == TENANT_WIDE),
        )


def require_scope(scope: Any, scope_type: type[TenantScope] = TenantScope) -> None:
    # Reject raw tenant strings or None passed where a scope object is required.
    if not isinstance(scope, scope_type):
        raise TenantPredicateError(f"{scope_type.__name__} required but got {type(scope).__name__}")
