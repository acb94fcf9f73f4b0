"""
Prefect Workflow Orchestration - Rollup Backfill and Sync

Operational flows around the aggregation engine:
- Backfill of one or more rollup domains over a date range
- Daily rebuild of yesterday for every domain
- One ClickHouse sync cycle

Each domain runs as its own task so a failing domain is retried on its own.
Backfills and sync cycles take the same locks as the scheduled jobs.
"""

from datetime import date, timedelta
from typing import List, Optional

from prefect import flow, task, get_run_logger

from lvlup.app import start_app, stop_app
from lvlup.config import get_settings
from lvlup.rollups import ROLLUP_CLASSES
from lvlup.scheduling.jobs import SYNC_JOB_NAME, daily_job_name
from lvlup.timeutils import utcnow

settings = get_settings()


# =============================================================================
# TASKS
# =============================================================================

@task(
    name="backfill_domain",
    description="Rebuild one rollup domain over a date range",
    retries=2,
    retry_delay_seconds=60,
)
async def backfill_domain(
    domain: str,
    start: date,
    end: date,
    game_ids: Optional[List[str]] = None,
) -> dict:
    """Backfill one domain; failed units are reported, not raised"""
    logger = get_run_logger()

    ctx = await start_app(settings)
    try:
        summary = await ctx.backfill_locked(domain, start, end, game_ids)
    finally:
        await stop_app(ctx)

    if summary is None:
        logger.warning(f"Backfill {domain} skipped: {daily_job_name(domain)} is running elsewhere")
        return {"domain": domain, "skipped": True, "units": 0, "succeeded": 0, "failed": 0, "failed_units": []}

    logger.info(f"Backfill {domain}: {summary.succeeded} succeeded, {summary.failed} failed")

    return {
        "domain": domain,
        "skipped": False,
        "units": len(summary.units),
        "succeeded": summary.succeeded,
        "failed": summary.failed,
        "failed_units": [f"{g}@{d.isoformat()}" for g, d in summary.failed_units],
    }


@task(
    name="sync_cycle",
    description="Run one ClickHouse sync cycle",
    retries=1,
    retry_delay_seconds=30,
)
async def sync_cycle() -> dict:
    """Replicate new raw facts to ClickHouse"""
    logger = get_run_logger()

    ctx = await start_app(settings)
    try:
        if ctx.sync is None:
            logger.info("ClickHouse pipeline disabled")
            return {"outcome": "disabled", "rows": 0}
        result = await ctx.sync_locked()
    finally:
        await stop_app(ctx)

    if result is None:
        logger.info(f"Sync cycle skipped: {SYNC_JOB_NAME} is running elsewhere")
        return {"outcome": "skipped", "rows": 0}

    logger.info(f"Sync cycle {result.outcome.value}: {result.rows} rows")

    return {
        "outcome": result.outcome.value,
        "rows": result.rows,
        "tables": {t.table: t.rows for t in result.tables},
    }


@task(
    name="send_alert",
    description="Send alert notification",
)
async def send_alert(
    alert_type: str,
    message: str,
    severity: str = "info",
) -> None:
    """Send alert notification"""
    logger = get_run_logger()
    logger.warning(f"[{severity.upper()}] {alert_type}: {message}")


# =============================================================================
# FLOWS
# =============================================================================

@flow(
    name="rollup_backfill",
    description="Rebuild rollup domains over a date range",
)
async def rollup_backfill(
    start: Optional[date] = None,
    end: Optional[date] = None,
    domains: Optional[List[str]] = None,
    game_ids: Optional[List[str]] = None,
) -> dict:
    """
    Backfill rollups.

    Defaults to every domain over the 30 days ending yesterday.
    """
    logger = get_run_logger()

    end = end or utcnow().date() - timedelta(days=1)
    start = start or end - timedelta(days=29)
    domains = domains or list(ROLLUP_CLASSES)

    logger.info(f"Starting rollup backfill {start} -> {end} for {domains}")

    results = {
        "start": start.isoformat(),
        "end": end.isoformat(),
        "domains": {},
    }
    for domain in domains:
        results["domains"][domain] = await backfill_domain(domain, start, end, game_ids)

    failed = sum(r["failed"] for r in results["domains"].values())
    skipped = [d for d, r in results["domains"].items() if r["skipped"]]
    if failed:
        results["status"] = "failed"
    elif skipped:
        results["status"] = "incomplete"
    else:
        results["status"] = "success"
    if failed:
        await send_alert(
            alert_type="Backfill Incomplete",
            message=f"{failed} rollup units failed between {start} and {end}",
            severity="critical",
        )
    if skipped:
        await send_alert(
            alert_type="Backfill Skipped",
            message=f"Daily jobs held the lock for {skipped}",
            severity="warning",
        )
    return results


@flow(
    name="daily_rollups",
    description="Rebuild yesterday for every rollup domain",
    retries=1,
    retry_delay_seconds=300,
)
async def daily_rollups(day: Optional[date] = None) -> dict:
    """Daily rebuild, the orchestrated counterpart of the *-daily jobs"""
    day = day or utcnow().date() - timedelta(days=1)
    return await rollup_backfill(start=day, end=day)


@flow(
    name="clickhouse_sync",
    description="One ClickHouse sync cycle",
)
async def clickhouse_sync() -> dict:
    return await sync_cycle()


# =============================================================================
# DEPLOYMENT CONFIGURATION
# =============================================================================

if __name__ == "__main__":
    import asyncio

    asyncio.run(rollup_backfill())
