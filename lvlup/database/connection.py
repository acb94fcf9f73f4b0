"""
Database Connection Management

Async SQLAlchemy 2.0 engine and session factory lifecycle for the worker.
Engine code never reaches for these globals: the CLI and workflows build a
session factory here and pass it into each component's constructor.
"""

import time
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool, StaticPool

from lvlup.config import get_settings
from lvlup.database.models import Base

logger = structlog.get_logger(__name__)

# Process-wide engine used by the CLI entrypoints
_engine: Optional[AsyncEngine] = None
_async_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def build_engine(url: str, echo: bool = False) -> AsyncEngine:
    """
    Create an async engine for the given URL.

    In-memory SQLite gets a StaticPool so every session shares one
    connection; everything else uses NullPool (asyncpg pools internally).
    """
    engine_config = {"echo": echo, "future": True}
    in_memory = url.startswith("sqlite") and (":memory:" in url or url.endswith("://"))
    if in_memory:
        engine_config.update({"poolclass": StaticPool, "connect_args": {"check_same_thread": False}})
    else:
        engine_config.update({"poolclass": NullPool, "pool_pre_ping": True})
    return create_async_engine(url, **engine_config)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory handed to rollup, sync and lock components."""
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def create_tables(engine: AsyncEngine) -> None:
    """Create every table known to the models (development bootstrap)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables ensured", tables=len(Base.metadata.tables))


async def init_database(url: Optional[str] = None) -> AsyncEngine:
    """
    Initialize the process-wide engine and verify connectivity.

    Args:
        url: Override the configured database URL

    Returns:
        AsyncEngine: The initialized database engine
    """
    global _engine, _async_session_factory

    if _engine is not None:
        logger.warning("Database already initialized")
        return _engine

    settings = get_settings()
    _engine = build_engine(url or settings.database.async_url, echo=settings.database.echo)
    _async_session_factory = build_session_factory(_engine)

    try:
        async with _engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
        logger.info(
            "Database connection established",
            dialect=_engine.dialect.name,
            database=_engine.url.database,
        )
    except Exception as e:
        logger.error("Failed to connect to database", error=str(e))
        await _engine.dispose()
        _engine = None
        _async_session_factory = None
        raise

    return _engine


async def close_database() -> None:
    """Dispose the process-wide engine."""
    global _engine, _async_session_factory

    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _async_session_factory = None
        logger.info("Database connection pool closed")


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """
    Get the process-wide session factory.

    Raises:
        RuntimeError: If database is not initialized
    """
    if _async_session_factory is None:
        raise RuntimeError("Database not initialized. Call init_database() first.")
    return _async_session_factory


@asynccontextmanager
async def session_scope(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """
    Transactional scope around a unit of work.

    Commits on success, rolls back and re-raises on error.

    Example:
        async with session_scope(factory) as session:
            await session.execute(stmt)
    """
    session = session_factory()
    try:
        yield session
        await session.commit()
    except Exception as e:
        logger.debug("Session error, rolling back", error=str(e), error_type=type(e).__name__)
        await session.rollback()
        raise
    finally:
        await session.close()


async def check_database_health(session_factory: async_sessionmaker[AsyncSession]) -> dict:
    """
    Check database health status.

    Returns:
        dict: Health status with latency information
    """
    try:
        start = time.perf_counter()
        async with session_scope(session_factory) as session:
            await session.execute(text("SELECT 1"))
        latency_ms = (time.perf_counter() - start) * 1000

        return {
            "status": "healthy",
            "latency_ms": round(latency_ms, 2),
        }
    except Exception as e:
        return {
            "status": "unhealthy",
            "error": str(e),
        }
