"""
Scheduled Job Definitions

Every job is a name, a cron expression and a zero-argument coroutine. Daily
jobs rebuild yesterday for every active game; hourly jobs merge today's
completed hours; the sync job runs one replication cycle. Job names double
as lock names, so two workers never run the same job at once.
"""

from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional

import structlog

from lvlup.config.settings import ScheduleSettings
from lvlup.rollups.base import RollupEngine, RunSummary
from lvlup.sync.engine import SyncCycleResult, SyncEngine
from lvlup.timeutils import utcnow, yesterday

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class JobSpec:
    """A named cron job."""
    name: str
    cron: str
    body: Callable[[], Awaitable[object]]
    description: str = ""


# (job prefix, rollup domain, daily cron field, hourly cron field, hourly enable flag)
ROLLUP_JOBS = [
    ("level-metrics", "level_metrics", "level_metrics_daily_cron", "level_metrics_hourly_cron", "enable_level_metrics_hourly"),
    ("active-users", "active_users", "active_users_daily_cron", "active_users_hourly_cron", "enable_active_users_hourly"),
    ("cohort-retention", "cohort_retention", "cohort_daily_cron", "cohort_hourly_cron", "enable_cohort_hourly"),
    ("monetization", "monetization", "monetization_daily_cron", "monetization_hourly_cron", "enable_monetization_hourly"),
]

SYNC_JOB_NAME = "clickhouse-sync"


def daily_job_name(domain: str) -> str:
    """Lock name shared by a domain's daily job and its manual backfills."""
    for prefix, job_domain, *_ in ROLLUP_JOBS:
        if job_domain == domain:
            return f"{prefix}-daily"
    raise ValueError(f"Unknown rollup domain: {domain}")


def daily_job(engine: RollupEngine) -> Callable[[], Awaitable[RunSummary]]:
    """Rebuild the previous UTC day."""

    async def run() -> RunSummary:
        return await engine.run_daily(yesterday(utcnow()))

    return run


def hourly_job(engine: RollupEngine) -> Callable[[], Awaitable[RunSummary]]:
    """Merge today's new completed hours."""

    async def run() -> RunSummary:
        return await engine.run_hourly(utcnow())

    return run


def sync_job(sync: SyncEngine) -> Callable[[], Awaitable[SyncCycleResult]]:
    async def run() -> SyncCycleResult:
        return await sync.run_cycle()

    return run


def build_jobs(
    schedule: ScheduleSettings,
    rollups: Dict[str, RollupEngine],
    sync: Optional[SyncEngine] = None,
) -> List[JobSpec]:
    """
    Job list for the worker.

    Hourly jobs are included only when their flag is on; the sync job only
    when a sync engine is given (the pipeline is enabled).
    """
    jobs: List[JobSpec] = []
    for prefix, domain, daily_field, hourly_field, hourly_flag in ROLLUP_JOBS:
        engine = rollups.get(domain)
        if engine is None:
            continue
        jobs.append(JobSpec(
            name=f"{prefix}-daily",
            cron=getattr(schedule, daily_field),
            body=daily_job(engine),
            description=f"Rebuild yesterday's {domain} rollups",
        ))
        if getattr(schedule, hourly_flag):
            jobs.append(JobSpec(
                name=f"{prefix}-hourly",
                cron=getattr(schedule, hourly_field),
                body=hourly_job(engine),
                description=f"Merge today's completed hours into {domain} rollups",
            ))

    if sync is not None:
        jobs.append(JobSpec(
            name=SYNC_JOB_NAME,
            cron=schedule.clickhouse_sync_cron,
            body=sync_job(sync),
            description="Replicate raw facts to ClickHouse",
        ))

    logger.debug("Jobs built", jobs=[j.name for j in jobs])
    return jobs


def jobs_by_name(jobs: List[JobSpec]) -> Dict[str, JobSpec]:
    return {job.name: job for job in jobs}
