"""Exception handlers that turn failures into the ``{error, meta}`` envelope.

Every route lives under ``/v1``, so every failure, including framework 404s
and body validation errors, is rendered in the same shape. Messages for
not-found and internal errors are fixed strings so a response never reveals
whether a row exists in another tenant.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from statewatch.apps.api.response import error_response
from statewatch.core.errors import (
    CursorError,
    IntegrityError,
    NotFoundError,
    StatewatchError,
    ValidationError,
)
from statewatch.persistence.guards import TenantPredicateError


logger = logging.getLogger(__name__)

_INTERNAL_MESSAGE = "Internal server error"

_STATUS_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
}

# (error type, status, code, fixed message); first match wins.
_DOMAIN_ERRORS: list[tuple[type[StatewatchError], int, str, str | None]] = [
    (ValidationError, 422, "VALIDATION_ERROR", None),
    (NotFoundError, 404, "NOT_FOUND", "Resource not found"),
    (CursorError, 400, "INVALID_CURSOR", None),
    (IntegrityError, 500, "INTERNAL_ERROR", _INTERNAL_MESSAGE),
]


def _render(
    request: Request,
    status_code: int,
    code: str,
    message: str,
    *,
    details: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=jsonable_encoder(payload), status_code=status_code, headers=headers)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    # Route dependencies raise HTTPException(detail={"code": ..., "message": ...}).
    fallback_code = _STATUS_CODES.get(exc.status_code, "HTTP_ERROR")
    detail = exc.detail
    if isinstance(detail, dict):
        extra = {key: value for key, value in detail.items() if key not in ("code", "message")}
        return _render(
            request,
            exc.status_code,
            str(detail.get("code") or fallback_code),
            str(detail.get("message") or "Request failed"),
            details=extra or None,
            headers=exc.headers,
        )
    message = detail if isinstance(detail, str) and detail else "Request failed"
    return _render(request, exc.status_code, fallback_code, message, headers=exc.headers)


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    return _render(
        request,
        422,
        "REQUEST_VALIDATION_ERROR",
        "Validation error",
        details={"errors": exc.errors()},
    )


async def tenant_predicate_exception_handler(
    request: Request, exc: TenantPredicateError
) -> JSONResponse:
    logger.warning("api_tenant_predicate_missing path=%s", request.url.path)
    return _render(request, 400, "TENANT_PREDICATE_REQUIRED", exc.message)


async def statewatch_exception_handler(request: Request, exc: StatewatchError) -> JSONResponse:
    status_code, code, fixed_message = 500, "INTERNAL_ERROR", _INTERNAL_MESSAGE
    for error_type, mapped_status, mapped_code, mapped_message in _DOMAIN_ERRORS:
        if isinstance(exc, error_type):
            status_code, code, fixed_message = mapped_status, mapped_code, mapped_message
            break
    if status_code >= 500:
        logger.error(
            "api_domain_error path=%s error_type=%s",
            request.url.path,
            type(exc).__name__,
            exc_info=exc,
        )
    return _render(request, status_code, code, fixed_message or str(exc))


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("api_unhandled_error path=%s", request.url.path, exc_info=exc)
    return _render(request, 500, "INTERNAL_ERROR", _INTERNAL_MESSAGE)
