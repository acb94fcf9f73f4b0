"""
Table Lock Backend

Lock rows in job_locks taken with a conditional insert. A row past its
expiry may be taken over, which bounds how long a crashed holder blocks a
job. Works on any backend the upsert helper supports.
"""

import socket
import uuid
from datetime import timedelta
from typing import Optional, Set

import structlog
from sqlalchemy import delete, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lvlup.database.connection import session_scope
from lvlup.database.models import JobLock
from lvlup.database.upsert import insert_ignore
from lvlup.locking.base import DEFAULT_NAMESPACE, DistributedLock
from lvlup.timeutils import utcnow

logger = structlog.get_logger(__name__)


def default_holder() -> str:
    """Identify this process in lock rows."""
    return f"{socket.gethostname()}:{uuid.uuid4().hex[:8]}"


class TableLock(DistributedLock):
    """
    Conditional-insert lock table with expiry.

    Example:
        lock = TableLock(session_factory, ttl_seconds=3600)
        await lock.run_exclusive("monetization-daily", body)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        namespace: str = DEFAULT_NAMESPACE,
        ttl_seconds: int = 3600,
        holder: Optional[str] = None,
    ):
        super().__init__(namespace)
        self.session_factory = session_factory
        self.ttl = timedelta(seconds=ttl_seconds)
        self.holder = holder or default_holder()
        self._held: Set[str] = set()

    async def try_acquire(self, name: str) -> bool:
        if name in self._held:
            return False
        # Reserved before the first await so overlapping calls on this
        # instance cannot both match their own holder row
        self._held.add(name)
        try:
            acquired = await self._claim(name)
        except Exception:
            self._held.discard(name)
            raise
        if not acquired:
            self._held.discard(name)
        return acquired

    async def _claim(self, name: str) -> bool:
        key = self.key_string(name)
        now = utcnow()
        expires_at = now + self.ttl

        async with session_scope(self.session_factory) as session:
            # Take over an expired row first, then try a fresh insert
            taken = await session.execute(
                update(JobLock)
                .where(JobLock.lock_key == key, JobLock.expires_at < now)
                .values(holder=self.holder, acquired_at=now, expires_at=expires_at, job_name=name)
            )
            if taken.rowcount:
                logger.info("Took over expired job lock", job=name, holder=self.holder)
                return True

            await insert_ignore(session, JobLock, [{
                "lock_key": key,
                "job_name": name,
                "holder": self.holder,
                "acquired_at": now,
                "expires_at": expires_at,
            }])
            row = await session.get(JobLock, key)
            return row is not None and row.holder == self.holder

    async def release(self, name: str) -> None:
        if name not in self._held:
            return
        try:
            async with session_scope(self.session_factory) as session:
                await session.execute(
                    delete(JobLock).where(
                        JobLock.lock_key == self.key_string(name),
                        JobLock.holder == self.holder,
                    )
                )
        finally:
            self._held.discard(name)
