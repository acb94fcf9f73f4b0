"""
Cron Scheduler

Runs JobSpecs on an in-process APScheduler in UTC. Each tick goes through
the distributed lock, so across worker instances a job runs at most once
per tick and overlapping ticks are skipped rather than queued.
"""

from typing import Awaitable, Callable, List, Optional

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from lvlup.locking.base import DistributedLock
from lvlup.metrics import JOB_RUNS
from lvlup.scheduling.jobs import JobSpec

logger = structlog.get_logger(__name__)


async def run_job(lock: DistributedLock, job: JobSpec) -> str:
    """
    Execute one job under its lock.

    Errors are logged and counted, never raised, so one failing job cannot
    stop the scheduler.

    Returns:
        str: "completed", "skipped" or "failed"
    """
    log = logger.bind(job=job.name)
    try:
        ran = await lock.run_exclusive(job.name, job.body)
    except Exception as e:
        JOB_RUNS.labels(job=job.name, status="failed").inc()
        log.error("Scheduled job failed", error=str(e), exc_info=True)
        return "failed"

    status = "completed" if ran else "skipped"
    JOB_RUNS.labels(job=job.name, status=status).inc()
    log.info("Scheduled job finished", status=status)
    return status


class JobScheduler:
    """
    Cron scheduler for rollup and sync jobs.

    Example:
        scheduler = JobScheduler(lock, build_jobs(settings.schedule, rollups, sync))
        scheduler.start()
    """

    def __init__(self, lock: DistributedLock, jobs: List[JobSpec], misfire_grace_seconds: int = 300):
        self.lock = lock
        self.jobs = list(jobs)
        self.scheduler = AsyncIOScheduler(
            timezone="UTC",
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": misfire_grace_seconds,
            },
        )
        for job in self.jobs:
            self.scheduler.add_job(
                self._wrap(job),
                CronTrigger.from_crontab(job.cron, timezone="UTC"),
                id=job.name,
                name=job.name,
                replace_existing=True,
            )

    def _wrap(self, job: JobSpec) -> Callable[[], Awaitable[str]]:
        async def tick() -> str:
            return await run_job(self.lock, job)

        return tick

    def start(self) -> None:
        """Start the scheduler on the running event loop."""
        self.scheduler.start()
        for job in self.scheduler.get_jobs():
            logger.info("Job scheduled", job=job.id, next_run=str(job.next_run_time))

    def shutdown(self, wait: bool = False) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=wait)
        logger.info("Scheduler stopped")

    def job_ids(self) -> List[str]:
        return [job.id for job in self.scheduler.get_jobs()]

    def get_job(self, name: str) -> Optional[JobSpec]:
        for job in self.jobs:
            if job.name == name:
                return job
        return None
