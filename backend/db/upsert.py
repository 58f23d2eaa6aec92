"""
Dialect-aware idempotent writes.

Every side effect of task execution goes through one of these helpers so a
retried task rewrites the same rows instead of duplicating them.
PostgreSQL and SQLite share the ``ON CONFLICT`` syntax; other dialects are
not supported.
"""

from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from core.errors import StorageConflict


def _insert_for(session: AsyncSession, model: Any):
    dialect_name = session.get_bind().dialect.name
    if dialect_name == "postgresql":
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        return _pg_insert(model)
    if dialect_name == "sqlite":
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        return _sqlite_insert(model)
    raise NotImplementedError(f"upsert not supported for dialect {dialect_name!r}")


async def upsert(
    session: AsyncSession,
    model: Any,
    values: dict[str, Any],
    index_elements: list[str],
    update_columns: list[str] | None = None,
    set_: dict[str, Any] | None = None,
):
    """``INSERT ... ON CONFLICT (index_elements) DO UPDATE``.

    ``update_columns`` are overwritten from the incoming row; ``set_`` holds
    explicit expressions (it may reference ``excluded`` through a callable
    taking the statement).
    """
    stmt = _insert_for(session, model).values(**values)
    assignments: dict[str, Any] = {col: getattr(stmt.excluded, col) for col in update_columns or []}
    for col, expr in (set_ or {}).items():
        assignments[col] = expr(stmt) if callable(expr) else expr
    stmt = stmt.on_conflict_do_update(index_elements=index_elements, set_=assignments)
    return await session.execute(stmt)


async def insert_ignore(
    session: AsyncSession,
    model: Any,
    values: dict[str, Any],
    index_elements: list[str],
) -> bool:
    """``INSERT ... ON CONFLICT DO NOTHING``. Returns True if a row was written."""
    stmt = _insert_for(session, model).values(**values)
    stmt = stmt.on_conflict_do_nothing(index_elements=index_elements)
    result = await session.execute(stmt)
    return bool(result.rowcount)


async def insert_once(
    session: AsyncSession,
    model: Any,
    values: dict[str, Any],
    index_elements: list[str],
) -> None:
    """Insert a row that must not already exist; a collision raises ``StorageConflict``."""
    if not await insert_ignore(session, model, values, index_elements):
        raise StorageConflict(f"{model.__tablename__} row already exists for {index_elements}")
