from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, BigInteger, DateTime, Integer
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.types import TypeDecorator


# JSONB on Postgres, plain JSON elsewhere (sqlite for local runs and tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")

# Monotonic sequence ids; sqlite only autoincrements INTEGER primary keys.
SequenceId = BigInteger().with_variant(Integer(), "sqlite")


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime column that always round-trips as UTC.

    sqlite drops tzinfo on storage, so values are normalized to naive UTC on the
    way in and re-tagged as UTC on the way out. Comparisons in SQL stay
    consistent because every bound value goes through the same conversion.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        value = as_utc(value)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        return as_utc(value)


def as_utc(value: datetime) -> datetime:
    # Treat naive datetimes as UTC; convert aware ones.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)
