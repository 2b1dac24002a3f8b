from __future__ import annotations

from typing import Any

from fastapi import FastAPI
from fastapi.openapi.utils import get_openapi

from statewatch.apps.api.response import API_VERSION, ErrorEnvelope


# Identity headers set by the upstream gateway, documented as API-key schemes.
IDENTITY_HEADERS = ("X-Tenant-Id", "X-Actor-Id", "X-Role")
DETECTOR_TOKEN_HEADER = "X-Detector-Token"

_PUBLIC_OPERATIONS = {("/v1/health", "get")}
_TOKEN_OPERATIONS = {("/v1/detector/runs", "post")}


def _documented_error(description: str, code: str, message: str) -> dict[str, Any]:
    example = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": API_VERSION, "tenant_id": "tenant_example"},
    }
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": example}},
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    400: _documented_error("Malformed cursor, role or tenant predicate", "INVALID_CURSOR", "Invalid cursor signature"),
    401: _documented_error("Missing identity headers or detector token", "AUTH_UNAUTHORIZED", "X-Tenant-Id header is required"),
    403: _documented_error("Role below the route minimum", "AUTH_FORBIDDEN", "admin role required for this operation"),
    404: _documented_error("Absent or outside the caller's tenant and audience", "NOT_FOUND", "Resource not found"),
    422: _documented_error("Request validation failed", "REQUEST_VALIDATION_ERROR", "Validation error"),
    500: _documented_error("Internal server error", "INTERNAL_ERROR", "Internal server error"),
}


def install_openapi(app: FastAPI) -> None:
    """Attach header security schemes to every operation in the generated schema."""

    def _schema() -> dict[str, Any]:
        if app.openapi_schema:
            return app.openapi_schema
        schema = get_openapi(title=app.title, version=API_VERSION, routes=app.routes)
        schemes = schema.setdefault("components", {}).setdefault("securitySchemes", {})
        for header in (*IDENTITY_HEADERS, DETECTOR_TOKEN_HEADER):
            schemes[header] = {"type": "apiKey", "in": "header", "name": header}
        identity = [{header: [] for header in IDENTITY_HEADERS}]
        for path, operations in schema.get("paths", {}).items():
            for method, operation in operations.items():
                if (path, method) in _PUBLIC_OPERATIONS:
                    continue
                if (path, method) in _TOKEN_OPERATIONS:
                    operation["security"] = [{DETECTOR_TOKEN_HEADER: []}]
                else:
                    operation["security"] = identity
        app.openapi_schema = schema
        return schema

    app.openapi = _schema  # type: ignore[method-assign]
