"""
Redis Lock Backend

Job locks as Redis keys with a TTL through redis-py's asyncio Lock, plus the
process-wide connection pool lifecycle used when LOCK_BACKEND=redis.
"""

from typing import Dict, Optional

import structlog
from redis.asyncio import ConnectionPool, Redis
from redis.asyncio.lock import Lock
from redis.exceptions import LockError

from lvlup.config import get_settings
from lvlup.locking.base import DEFAULT_NAMESPACE, DistributedLock

logger = structlog.get_logger(__name__)

# Global Redis connection
_redis_pool: Optional[ConnectionPool] = None
_redis_client: Optional[Redis] = None


async def init_redis() -> Redis:
    """Initialize Redis connection pool"""
    global _redis_pool, _redis_client

    if _redis_client is not None:
        return _redis_client

    settings = get_settings()
    _redis_pool = ConnectionPool.from_url(
        settings.redis.get_url(),
        max_connections=settings.redis.max_connections,
        socket_timeout=settings.redis.socket_timeout,
    )
    _redis_client = Redis(connection_pool=_redis_pool)

    try:
        await _redis_client.ping()
        logger.info("Redis connection established")
    except Exception as e:
        logger.error(f"Redis connection failed: {e}")
        raise

    return _redis_client


async def close_redis() -> None:
    """Close Redis connection pool"""
    global _redis_pool, _redis_client

    if _redis_client:
        await _redis_client.aclose()
        _redis_client = None

    if _redis_pool:
        await _redis_pool.disconnect()
        _redis_pool = None

    logger.info("Redis connection closed")


class RedisLock(DistributedLock):
    """
    Non-blocking Redis lock per job.

    The key expires after ttl_seconds so a crashed holder cannot block the
    job forever.

    Example:
        lock = RedisLock(await init_redis(), ttl_seconds=3600)
    """

    def __init__(self, client: Redis, namespace: str = DEFAULT_NAMESPACE, ttl_seconds: int = 3600):
        super().__init__(namespace)
        self.client = client
        self.ttl_seconds = ttl_seconds
        self._locks: Dict[str, Lock] = {}

    def redis_key(self, name: str) -> str:
        return f"lock:{self.key_string(name)}"

    async def try_acquire(self, name: str) -> bool:
        if name in self._locks:
            return False
        lock = self.client.lock(self.redis_key(name), timeout=self.ttl_seconds, blocking=False)
        if not await lock.acquire():
            return False
        self._locks[name] = lock
        return True

    async def release(self, name: str) -> None:
        lock = self._locks.pop(name, None)
        if lock is None:
            return
        try:
            await lock.release()
        except LockError as e:
            logger.warning("Redis lock expired before release", job=name, error=str(e))
