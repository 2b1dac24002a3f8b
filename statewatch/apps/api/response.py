from __future__ import annotations

from typing import Any, Generic, TypeVar
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel


API_VERSION = "v1"

DataT = TypeVar("DataT")


class ResponseMeta(BaseModel):
    request_id: str
    api_version: str = API_VERSION
    # Tenant the payload was filtered to; absent on unauthenticated routes.
    tenant_id: str | None = None


class ErrorBody(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


class SuccessEnvelope(BaseModel, Generic[DataT]):
    data: DataT
    meta: ResponseMeta


class ErrorEnvelope(BaseModel):
    error: ErrorBody
    meta: ResponseMeta


def get_request_id(request: Request) -> str:
    """Return the id the middleware stamped on the request, assigning one if missing."""
    state = request.state
    if not getattr(state, "request_id", None):
        state.request_id = request.headers.get("X-Request-Id") or str(uuid4())
    return state.request_id


def bind_tenant(request: Request, tenant_id: str) -> None:
    # Called once the caller's identity is resolved so envelopes echo the scope.
    request.state.tenant_id = tenant_id


def _meta(request: Request) -> dict[str, Any]:
    meta = ResponseMeta(
        request_id=get_request_id(request),
        tenant_id=getattr(request.state, "tenant_id", None),
    )
    return meta.model_dump(exclude_none=True)


def success_response(*, request: Request, data: Any) -> dict[str, Any]:
    return {"data": data, "meta": _meta(request)}


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    body = ErrorBody(code=code, message=message, details=details)
    return {"error": body.model_dump(exclude_none=True), "meta": _meta(request)}
