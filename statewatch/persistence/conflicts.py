from __future__ import annotations

from typing import Any, Sequence

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from statewatch.core.errors import DatabaseError


_DIALECT_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


async def insert_or_ignore(
    session: AsyncSession,
    model,
    *,
    values: dict[str, Any],
    conflict_columns: Sequence[str],
    returning,
) -> Any | None:
    """Insert a row, letting the unique constraint absorb duplicates.

    Returns the ``returning`` column of the inserted row, or ``None`` when the
    constraint on ``conflict_columns`` already holds a matching row. Safe under
    concurrent writers because the database, not the caller, decides the winner.
    """
    dialect_name = session.bind.dialect.name
    insert = _DIALECT_INSERTS.get(dialect_name)
    if insert is None:
        raise DatabaseError(f"insert_or_ignore is not supported on dialect {dialect_name}")
    stmt = (
        insert(model)
        .values(**values)
        .on_conflict_do_nothing(index_elements=list(conflict_columns))
        .returning(returning)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()
