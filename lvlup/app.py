"""
Application Wiring

Builds every long-lived component from settings in one place: database
engine and session factory, throttle, lock backend, rollup engines and the
sync engine. The CLI and the Prefect flows share it.
"""

from dataclasses import dataclass, field
from datetime import date
from typing import Dict, List, Optional

import structlog
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from lvlup.config.settings import Settings
from lvlup.database.connection import close_database, create_tables, get_session_factory, init_database
from lvlup.exceptions import ConfigurationError
from lvlup.locking import DistributedLock, close_redis, create_lock, init_redis
from lvlup.rollups import RollupEngine, RunSummary, create_rollups
from lvlup.scheduling.jobs import SYNC_JOB_NAME, JobSpec, build_jobs, daily_job_name
from lvlup.scheduling.throttle import ThrottleController
from lvlup.sync import SyncCycleResult, SyncEngine, create_sync_engine

logger = structlog.get_logger(__name__)


@dataclass
class AppContext:
    """Components shared by the worker, CLI commands and flows."""
    settings: Settings
    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    throttle: ThrottleController
    lock: DistributedLock
    rollups: Dict[str, RollupEngine] = field(default_factory=dict)
    sync: Optional[SyncEngine] = None
    redis: Optional[Redis] = None

    def jobs(self) -> list:
        return build_jobs(self.settings.schedule, self.rollups, self.sync)

    def job(self, name: str) -> Optional[JobSpec]:
        for job in self.jobs():
            if job.name == name:
                return job
        return None

    async def backfill_locked(
        self,
        domain: str,
        start: date,
        end: date,
        game_ids: Optional[List[str]] = None,
    ) -> Optional[RunSummary]:
        """
        Backfill one domain under the lock of its daily job.

        Returns:
            RunSummary, or None when the daily job or another backfill of
            the domain holds the lock
        """
        summaries: List[RunSummary] = []

        async def body() -> None:
            summaries.append(await self.rollups[domain].backfill(start, end, game_ids))

        if not await self.lock.run_exclusive(daily_job_name(domain), body):
            return None
        return summaries[0]

    async def sync_locked(self) -> Optional[SyncCycleResult]:
        """One sync cycle under the sync job's lock; None when it is held."""
        if self.sync is None:
            raise ConfigurationError("ClickHouse pipeline is disabled")
        results: List[SyncCycleResult] = []

        async def body() -> None:
            results.append(await self.sync.run_cycle())

        if not await self.lock.run_exclusive(SYNC_JOB_NAME, body):
            return None
        return results[0]


async def start_app(settings: Settings, database_url: Optional[str] = None, bootstrap: bool = False) -> AppContext:
    """
    Initialize the row store connection and build all components.

    Args:
        settings: Application settings
        database_url: Override the configured database URL
        bootstrap: Create missing tables (development)

    Raises:
        ConfigurationError: On an unusable lock or sync configuration
    """
    engine = await init_database(database_url)
    if bootstrap:
        await create_tables(engine)
    session_factory = get_session_factory()

    redis = None
    if settings.lock.backend == "redis":
        redis = await init_redis()

    throttle = ThrottleController.from_settings(settings.aggregation)
    lock = create_lock(settings.lock, engine=engine, session_factory=session_factory, redis_client=redis)
    rollups = create_rollups(session_factory, settings.aggregation, throttle)
    sync = None
    if settings.clickhouse.enabled:
        sync = create_sync_engine(settings.clickhouse, session_factory, throttle)

    logger.info(
        "Application started",
        lock_backend=settings.lock.backend,
        rollups=sorted(rollups),
        clickhouse_sync=sync is not None,
    )
    return AppContext(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        throttle=throttle,
        lock=lock,
        rollups=rollups,
        sync=sync,
        redis=redis,
    )


async def stop_app(ctx: Optional[AppContext] = None) -> None:
    """Release the process-wide database and Redis handles."""
    if ctx is not None and ctx.redis is not None:
        await close_redis()
    await close_database()
    logger.info("Application stopped")
