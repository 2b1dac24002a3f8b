from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from statewatch.apps.api.deps import get_db
from statewatch.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from statewatch.apps.api.response import SuccessEnvelope, success_response

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str
    database: str


@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(request: Request, db: AsyncSession = Depends(get_db)) -> dict:
    database = "ok"
    try:
        await db.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.warning("health_database_unavailable error=%s", exc)
        database = "unavailable"
    payload = HealthResponse(status="ok" if database == "ok" else "degraded", database=database)
    return success_response(request=request, data=payload)
