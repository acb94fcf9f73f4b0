"""
PostgreSQL Advisory Lock Backend

Session-scoped advisory locks keyed by (namespace hash, job hash). The lock
lives on a dedicated connection checked out for the critical section;
unlocking happens on that same connection and closing it releases the lock
server-side even if the unlock call never arrives.
"""

from typing import Dict

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from lvlup.locking.base import DEFAULT_NAMESPACE, DistributedLock

logger = structlog.get_logger(__name__)

TRY_LOCK_SQL = text("SELECT pg_try_advisory_lock(:k1, :k2)")
UNLOCK_SQL = text("SELECT pg_advisory_unlock(:k1, :k2)")


class PostgresAdvisoryLock(DistributedLock):
    """
    pg_try_advisory_lock / pg_advisory_unlock on a held connection.

    Example:
        lock = PostgresAdvisoryLock(engine, namespace="lvlup_jobs")
        await lock.run_exclusive("cohort-retention-daily", body)
    """

    def __init__(self, engine: AsyncEngine, namespace: str = DEFAULT_NAMESPACE):
        super().__init__(namespace)
        self.engine = engine
        self._connections: Dict[str, AsyncConnection] = {}

    async def try_acquire(self, name: str) -> bool:
        if name in self._connections:
            # Advisory locks are re-entrant per session; refuse instead
            return False

        k1, k2 = self.keys_for(name)
        conn = await self.engine.connect()
        try:
            result = await conn.execute(TRY_LOCK_SQL, {"k1": k1, "k2": k2})
            acquired = bool(result.scalar())
            await conn.commit()
        except Exception:
            await conn.close()
            raise

        if not acquired:
            await conn.close()
            return False

        self._connections[name] = conn
        logger.debug("Advisory lock acquired", job=name, k1=k1, k2=k2)
        return True

    async def release(self, name: str) -> None:
        conn = self._connections.pop(name, None)
        if conn is None:
            return

        k1, k2 = self.keys_for(name)
        try:
            result = await conn.execute(UNLOCK_SQL, {"k1": k1, "k2": k2})
            if not result.scalar():
                logger.warning("Advisory lock was not held at release", job=name)
            await conn.commit()
        finally:
            await conn.close()
        logger.debug("Advisory lock released", job=name)
