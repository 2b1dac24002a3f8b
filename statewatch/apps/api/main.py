from __future__ import annotations

import logging
import time

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from statewatch.apps.api.errors import (
    http_exception_handler,
    statewatch_exception_handler,
    tenant_predicate_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from statewatch.apps.api.openapi import install_openapi
from statewatch.apps.api.response import API_VERSION, get_request_id
from statewatch.apps.api.routes.audit import router as audit_router
from statewatch.apps.api.routes.detector import router as detector_router
from statewatch.apps.api.routes.health import router as health_router
from statewatch.apps.api.routes.notifications import router as notifications_router
from statewatch.core.config import get_settings
from statewatch.core.errors import StatewatchError
from statewatch.core.logging import configure_logging
from statewatch.persistence.guards import TenantPredicateError


logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    configure_logging()
    settings = get_settings()
    app = FastAPI(
        title="Statewatch API",
        version=API_VERSION,
        openapi_url=f"/{API_VERSION}/openapi.json",
        docs_url=f"/{API_VERSION}/docs",
        redoc_url=None,
    )

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        request_id = get_request_id(request)
        started = time.monotonic()
        response = await call_next(request)
        logger.debug(
            "http_request method=%s path=%s status=%s latency_ms=%.1f request_id=%s",
            request.method,
            request.url.path,
            response.status_code,
            (time.monotonic() - started) * 1000.0,
            request_id,
        )
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(TenantPredicateError, tenant_predicate_exception_handler)
    app.add_exception_handler(StatewatchError, statewatch_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    for router in (health_router, notifications_router, audit_router, detector_router):
        app.include_router(router, prefix=f"/{API_VERSION}")

    install_openapi(app)
    logger.info("api_app_created app_name=%s", settings.app_name)
    return app


app = create_app()
