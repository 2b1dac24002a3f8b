from __future__ import annotations

import hmac
from typing import AsyncIterator

from fastapi import Depends, Header, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from statewatch.apps.api.response import bind_tenant
from statewatch.core.config import get_settings
from statewatch.persistence.db import get_session
from statewatch.persistence.guards import AudienceScope, TenantScope


# Higher rank includes every permission of the lower ones.
ROLE_RANK: dict[str, int] = {"reader": 1, "editor": 2, "admin": 3}
DEFAULT_ROLE = "reader"


async def get_db() -> AsyncIterator[AsyncSession]:
    async with get_session() as session:
        yield session


def _api_error(status_code: int, code: str, message: str) -> HTTPException:
    return HTTPException(status_code=status_code, detail={"code": code, "message": message})


class Principal(BaseModel):
    """Caller identity as asserted by the upstream gateway."""

    tenant_id: str
    actor_id: str
    role: str = DEFAULT_ROLE

    def has_role(self, minimum_role: str) -> bool:
        return ROLE_RANK.get(self.role, 0) >= ROLE_RANK[minimum_role]

    def tenant_scope(self) -> TenantScope:
        return TenantScope(self.tenant_id)

    def audience_scope(self) -> AudienceScope:
        return AudienceScope(tenant_id=self.tenant_id, actor_id=self.actor_id)


def _required_header(request: Request, name: str) -> str:
    value = (request.headers.get(name) or "").strip()
    if not value:
        raise _api_error(status.HTTP_401_UNAUTHORIZED, "AUTH_UNAUTHORIZED", f"{name} header is required")
    return value


async def get_current_principal(request: Request) -> Principal:
    # Identity comes from gateway headers only; tenant ids in query or body are never trusted.
    if not get_settings().auth_trusted_headers:
        raise _api_error(
            status.HTTP_401_UNAUTHORIZED, "AUTH_UNAUTHORIZED", "Trusted identity headers are disabled"
        )
    tenant_id = _required_header(request, "X-Tenant-Id")
    actor_id = _required_header(request, "X-Actor-Id")
    role = (request.headers.get("X-Role") or DEFAULT_ROLE).strip().lower()
    if role not in ROLE_RANK:
        raise _api_error(status.HTTP_400_BAD_REQUEST, "AUTH_INVALID_ROLE", f"Unsupported role: {role}")
    bind_tenant(request, tenant_id)
    return Principal(tenant_id=tenant_id, actor_id=actor_id, role=role)


def require_role(minimum_role: str):
    if minimum_role not in ROLE_RANK:
        raise ValueError(f"Unknown role: {minimum_role}")

    async def _dependency(principal: Principal = Depends(get_current_principal)) -> Principal:
        if not principal.has_role(minimum_role):
            raise _api_error(
                status.HTTP_403_FORBIDDEN,
                "AUTH_FORBIDDEN",
                f"{minimum_role} role required for this operation",
            )
        return principal

    return _dependency


async def require_detector_token(
    detector_token: str | None = Header(default=None, alias="X-Detector-Token"),
) -> None:
    # Machine-to-machine trigger; disabled until a token is configured.
    expected = get_settings().detector_trigger_token
    if not expected:
        raise _api_error(status.HTTP_403_FORBIDDEN, "AUTH_FORBIDDEN", "Detector trigger is not enabled")
    if not detector_token or not hmac.compare_digest(
        detector_token.encode("utf-8"), expected.encode("utf-8")
    ):
        raise _api_error(
            status.HTTP_401_UNAUTHORIZED, "AUTH_UNAUTHORIZED", "Missing or invalid detector token"
        )
