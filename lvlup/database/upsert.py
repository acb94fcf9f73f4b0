"""
Dialect-aware Upserts

Rollup writes use "insert, or on conflict update" statements. PostgreSQL
and SQLite share the same ON CONFLICT syntax, so the statement is built with
the matching dialect's insert() and everything else is shared.

Three update flavors are provided:
- replace: non-key columns take the incoming values
- increment: counters add, flags OR, other columns handled by the caller
- ignore: existing rows win (ON CONFLICT DO NOTHING)
"""

from typing import Callable, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import case, func, or_
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from lvlup.exceptions import ConfigurationError

# Bind parameter limit per statement (asyncpg caps at 32767, SQLite at 32766)
MAX_PARAMS_PER_STATEMENT = 30000

SetFactory = Callable[[object, object], Dict[str, object]]


def dialect_insert(session: AsyncSession, model):
    """Return the dialect-specific insert() construct for the session's backend."""
    name = session.bind.dialect.name
    if name == "postgresql":
        return postgresql.insert(model)
    if name == "sqlite":
        return sqlite.insert(model)
    raise ConfigurationError(f"Upserts are not supported on dialect '{name}'")


def primary_key_columns(model) -> List[str]:
    return [c.name for c in model.__table__.primary_key.columns]


def _chunks(rows: Sequence[dict], size: int) -> Iterable[Sequence[dict]]:
    for i in range(0, len(rows), size):
        yield rows[i:i + size]


async def upsert_rows(
    session: AsyncSession,
    model,
    rows: Sequence[dict],
    set_factory: Optional[SetFactory] = None,
    index_elements: Optional[List[str]] = None,
) -> int:
    """
    Insert rows, resolving conflicts on the primary key.

    Args:
        session: Active session (caller owns the transaction)
        model: Mapped class to write
        rows: Homogeneous column dictionaries
        set_factory: Builds the SET clause from (table, excluded); None
            replaces every non-key column present in the rows
        index_elements: Conflict target, defaults to the primary key

    Returns:
        Number of rows submitted
    """
    if not rows:
        return 0

    keys = index_elements or primary_key_columns(model)
    columns = list(rows[0].keys())
    batch_size = max(1, MAX_PARAMS_PER_STATEMENT // max(1, len(columns)))
    table = model.__table__

    for batch in _chunks(rows, batch_size):
        stmt = dialect_insert(session, model).values(list(batch))
        if set_factory is None:
            set_ = {c: stmt.excluded[c] for c in columns if c not in keys}
        else:
            set_ = set_factory(table, stmt.excluded)
        if set_:
            stmt = stmt.on_conflict_do_update(index_elements=keys, set_=set_)
        else:
            stmt = stmt.on_conflict_do_nothing(index_elements=keys)
        await session.execute(stmt)

    return len(rows)


async def insert_ignore(session: AsyncSession, model, rows: Sequence[dict]) -> int:
    """Insert rows, leaving existing keys untouched."""
    return await upsert_rows(session, model, rows, set_factory=lambda table, excluded: {})


# =============================================================================
# SET CLAUSE BUILDERS
# =============================================================================

def increment(*columns: str) -> SetFactory:
    """SET col = col + excluded.col for each counter."""
    def build(table, excluded) -> Dict[str, object]:
        return {c: table.c[c] + excluded[c] for c in columns}
    return build


def logical_or(*columns: str) -> SetFactory:
    """SET flag = flag OR excluded.flag for each boolean flag."""
    def build(table, excluded) -> Dict[str, object]:
        return {c: or_(table.c[c], excluded[c]) for c in columns}
    return build


def coalesce_latest(*columns: str) -> SetFactory:
    """SET col = COALESCE(excluded.col, col): incoming non-null values win."""
    def build(table, excluded) -> Dict[str, object]:
        return {c: func.coalesce(excluded[c], table.c[c]) for c in columns}
    return build


def keep_minimum(*columns: str) -> SetFactory:
    """SET col = least(col, excluded.col), portable across dialects."""
    def build(table, excluded) -> Dict[str, object]:
        return {
            c: case((excluded[c] < table.c[c], excluded[c]), else_=table.c[c])
            for c in columns
        }
    return build


def combine(*factories: SetFactory) -> SetFactory:
    """Merge several SET builders into one clause."""
    def build(table, excluded) -> Dict[str, object]:
        set_: Dict[str, object] = {}
        for factory in factories:
            set_.update(factory(table, excluded))
        return set_
    return build
