"""
Test Suite Configuration
"""
from typing import AsyncGenerator

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from lvlup.database.connection import build_engine, build_session_factory, create_tables, session_scope
from tests.helpers import TelemetryFactory


@pytest.fixture
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    """Fresh in-memory SQLite database per test"""
    engine = build_engine("sqlite+aiosqlite:///:memory:")
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(engine)


@pytest.fixture
def telemetry(session_factory) -> TelemetryFactory:
    return TelemetryFactory(session_factory)


@pytest.fixture
def fetch_all(session_factory):
    """Load every row of a model, ordered by primary key."""

    async def load(model) -> list:
        pk = list(model.__table__.primary_key.columns)
        async with session_scope(session_factory) as session:
            result = await session.execute(select(model).order_by(*pk))
            return list(result.scalars().all())

    return load
