"""
Distributed Job Locks

A named lock gives one runner per job name across every worker process
sharing the schedule. Acquisition is non-blocking: when another instance
holds the lock the run is skipped, not queued, and the next scheduled tick
picks the work up again.
"""

import asyncio
import hashlib
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Set, Tuple

import structlog

from lvlup.exceptions import LockNotAcquired
from lvlup.metrics import LOCK_SKIPS

logger = structlog.get_logger(__name__)

DEFAULT_NAMESPACE = "lvlup_jobs"

JobBody = Callable[[], Awaitable[object]]


def _int32(value: str) -> int:
    digest = hashlib.blake2b(value.encode("utf-8"), digest_size=4).digest()
    return int.from_bytes(digest, "big", signed=True)


def lock_keys(namespace: str, job_name: str) -> Tuple[int, int]:
    """
    Compound lock key for a job.

    Two independent signed 32-bit hashes: one of the namespace and one of
    "job:" + job_name. Matches the (int4, int4) form of PostgreSQL advisory
    locks.
    """
    return _int32(namespace), _int32(f"job:{job_name}")


class DistributedLock(ABC):
    """
    Named mutual exclusion shared by every worker instance.

    Subclasses implement try_acquire/release for one backend; run_exclusive
    is the contract the scheduler relies on.

    Example:
        lock = PostgresAdvisoryLock(engine)
        ran = await lock.run_exclusive("level-metrics-daily", job_body)
    """

    def __init__(self, namespace: str = DEFAULT_NAMESPACE):
        self.namespace = namespace

    def keys_for(self, job_name: str) -> Tuple[int, int]:
        return lock_keys(self.namespace, job_name)

    def key_string(self, job_name: str) -> str:
        k1, k2 = self.keys_for(job_name)
        return f"{k1}:{k2}"

    @abstractmethod
    async def try_acquire(self, name: str) -> bool:
        """Attempt to take the lock without waiting."""

    @abstractmethod
    async def release(self, name: str) -> None:
        """Release a lock taken by this instance."""

    @asynccontextmanager
    async def hold(self, name: str) -> AsyncIterator[None]:
        """
        Hold the lock for the duration of the block.

        Raises:
            LockNotAcquired: If another runner holds the lock
        """
        if not await self.try_acquire(name):
            raise LockNotAcquired(name)
        try:
            yield
        finally:
            try:
                await self.release(name)
            except Exception as e:
                # The backend drops the lock with its connection or TTL
                logger.warning(
                    "Failed to release job lock",
                    job=name,
                    error=str(e),
                    error_type=type(e).__name__,
                )

    async def run_exclusive(self, job_name: str, fn: JobBody) -> bool:
        """
        Run fn while holding the job lock.

        Returns False without calling fn when the lock is held elsewhere.
        The lock is released in all cases once fn returns or raises; a
        failing release is logged and never masks fn's outcome.

        Args:
            job_name: Lock name, usually the scheduled job name
            fn: Zero-argument coroutine function

        Returns:
            bool: True if fn ran
        """
        try:
            async with self.hold(job_name):
                await fn()
        except LockNotAcquired as skip:
            if skip.job_name != job_name:
                raise
            LOCK_SKIPS.labels(job=job_name).inc()
            logger.info("Skipping job, lock held elsewhere", job=job_name)
            return False
        return True


class LocalLock(DistributedLock):
    """
    In-process lock registry.

    Only excludes runs inside one process; for single-instance development
    and tests.
    """

    def __init__(self, namespace: str = DEFAULT_NAMESPACE):
        super().__init__(namespace)
        self._held: Set[str] = set()
        self._guard = asyncio.Lock()

    async def try_acquire(self, name: str) -> bool:
        key = self.key_string(name)
        async with self._guard:
            if key in self._held:
                return False
            self._held.add(key)
            return True

    async def release(self, name: str) -> None:
        async with self._guard:
            self._held.discard(self.key_string(name))

    def is_held(self, name: str) -> bool:
        return self.key_string(name) in self._held
