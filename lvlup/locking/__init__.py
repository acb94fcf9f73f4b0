"""
Distributed Locking Module

Backends: postgres (advisory locks), table (job_locks rows), redis, local.
"""
from typing import Optional

from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from lvlup.config.settings import LockSettings
from lvlup.exceptions import ConfigurationError

from .base import DistributedLock, LocalLock, lock_keys
from .postgres import PostgresAdvisoryLock
from .redis_lock import RedisLock, close_redis, init_redis
from .table import TableLock


def create_lock(
    settings: LockSettings,
    engine: Optional[AsyncEngine] = None,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    redis_client: Optional[Redis] = None,
) -> DistributedLock:
    """
    Factory function to build the configured lock backend.

    Raises:
        ConfigurationError: If the backend's store handle is missing
    """
    backend = settings.backend
    if backend == "postgres":
        if engine is None:
            raise ConfigurationError("postgres lock backend requires an engine")
        if engine.dialect.name != "postgresql":
            raise ConfigurationError(
                f"postgres lock backend needs PostgreSQL, got {engine.dialect.name}; use LOCK_BACKEND=table"
            )
        return PostgresAdvisoryLock(engine, namespace=settings.namespace)
    if backend == "table":
        if session_factory is None:
            raise ConfigurationError("table lock backend requires a session factory")
        return TableLock(session_factory, namespace=settings.namespace, ttl_seconds=settings.ttl_seconds)
    if backend == "redis":
        if redis_client is None:
            raise ConfigurationError("redis lock backend requires a Redis client")
        return RedisLock(redis_client, namespace=settings.namespace, ttl_seconds=settings.ttl_seconds)
    if backend == "local":
        return LocalLock(namespace=settings.namespace)
    raise ConfigurationError(f"Unknown lock backend: {backend}")


__all__ = [
    "DistributedLock",
    "LocalLock",
    "PostgresAdvisoryLock",
    "RedisLock",
    "TableLock",
    "close_redis",
    "create_lock",
    "init_redis",
    "lock_keys",
]
