from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from statewatch.core.config import get_settings
from statewatch.domain.models import Base
from statewatch.persistence.immutability import register_immutability_listeners


settings = get_settings()
_engine_kwargs: dict[str, Any] = {"pool_pre_ping": True}
# Configure bounded asyncpg pools for predictable latency under load.
if not settings.database_url.startswith("sqlite"):
    _engine_kwargs["pool_size"] = max(1, int(settings.db_pool_size))
    _engine_kwargs["max_overflow"] = max(0, int(settings.db_max_overflow))
    _engine_kwargs["pool_timeout"] = 30
    _engine_kwargs["pool_recycle"] = 1800
    if settings.db_statement_timeout_ms > 0:
        _engine_kwargs["connect_args"] = {
            "server_settings": {"statement_timeout": str(int(settings.db_statement_timeout_ms))}
        }
else:
    # Let concurrent sqlite writers wait on the file lock instead of failing immediately.
    _engine_kwargs["connect_args"] = {"timeout": 30}
engine = create_async_engine(settings.database_url, **_engine_kwargs)
SessionLocal = async_sessionmaker(engine, expire_on_commit=False)

register_immutability_listeners()


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    async with SessionLocal() as session:
        yield session


async def create_schema() -> None:
    # Local/dev bootstrap; production schemas come from alembic migrations.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def drop_schema() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
