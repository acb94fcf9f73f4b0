"""
LvlUp Aggregation Worker CLI

Usage:
    lvlup worker                       Run the cron scheduler until stopped
    lvlup backfill --start 2025-01-01 --end 2025-01-31 [--domain level_metrics] [--game g1]
    lvlup sync-once                    Run one ClickHouse sync cycle
    lvlup run-job level-metrics-daily  Run one scheduled job now, under its lock
"""

import argparse
import asyncio
import signal
import sys
from datetime import date, timedelta
from typing import List, Optional

import structlog
from prometheus_client import start_http_server

from lvlup.app import AppContext, start_app, stop_app
from lvlup.config import get_settings
from lvlup.config.logging import configure_logging
from lvlup.database.connection import check_database_health
from lvlup.exceptions import ConfigurationError
from lvlup.rollups import ROLLUP_CLASSES
from lvlup.scheduling.jobs import SYNC_JOB_NAME, daily_job_name
from lvlup.scheduling.scheduler import JobScheduler, run_job
from lvlup.sync import SyncOutcome
from lvlup.timeutils import utcnow

logger = structlog.get_logger(__name__)

DEFAULT_BACKFILL_DAYS = 30


# =============================================================================
# COMMANDS
# =============================================================================

async def run_worker(ctx: AppContext) -> int:
    """Start the scheduler and block until SIGINT/SIGTERM."""
    scheduler = JobScheduler(
        ctx.lock,
        ctx.jobs(),
        misfire_grace_seconds=ctx.settings.schedule.misfire_grace_seconds,
    )
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass

    health = await check_database_health(ctx.session_factory)
    logger.info("Row store health", **health)

    scheduler.start()
    logger.info("Worker running", jobs=scheduler.job_ids())
    try:
        await stop.wait()
    finally:
        scheduler.shutdown()
    return 0


async def run_backfill(
    ctx: AppContext,
    start: Optional[date],
    end: Optional[date],
    domains: Optional[List[str]] = None,
    game_ids: Optional[List[str]] = None,
) -> int:
    """
    Rebuild a date range for the selected domains.

    Returns:
        int: 1 when any (game, day) unit failed or a domain was skipped
        because its daily job held the lock, else 0
    """
    last_complete = utcnow().date() - timedelta(days=1)
    end = end or last_complete
    start = start or end - timedelta(days=DEFAULT_BACKFILL_DAYS - 1)

    failed = 0
    for domain in domains or list(ctx.rollups):
        summary = await ctx.backfill_locked(domain, start, end, game_ids)
        if summary is None:
            failed += 1
            print(f"{domain}: skipped, {daily_job_name(domain)} is running elsewhere")
            continue
        failed += summary.failed
        print(f"{domain}: {summary.succeeded} succeeded, {summary.failed} failed")
        for game_id, day in summary.failed_units:
            print(f"  failed: {game_id} {day.isoformat()}")
    return 1 if failed else 0


async def run_sync_once(ctx: AppContext) -> int:
    if ctx.sync is None:
        print("ClickHouse pipeline disabled (ENABLE_CLICKHOUSE_PIPELINE=false)")
        return 0
    result = await ctx.sync_locked()
    if result is None:
        print(f"sync skipped: {SYNC_JOB_NAME} is running elsewhere")
        return 0
    print(f"sync {result.outcome.value}: {result.rows} rows")
    for table in result.tables:
        suffix = f" error={table.error_message}" if table.failed else ""
        print(f"  {table.table}: {table.rows} rows in {table.batches} batches{suffix}")
    return 0 if result.outcome in (SyncOutcome.COMPLETED, SyncOutcome.DISABLED) else 1


async def run_named_job(ctx: AppContext, name: str) -> int:
    job = ctx.job(name)
    if job is None:
        print(f"Unknown or disabled job: {name}. Available: {', '.join(j.name for j in ctx.jobs())}")
        return 2
    status = await run_job(ctx.lock, job)
    print(f"{name}: {status}")
    return 1 if status == "failed" else 0


# =============================================================================
# ENTRYPOINT
# =============================================================================

def _parse_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid date (expected YYYY-MM-DD): {value}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="lvlup", description="LvlUp aggregation and sync worker")
    parser.add_argument("--database-url", help="Override DATABASE_URL")
    parser.add_argument("--log-level", help="Override LOG_LEVEL")
    parser.add_argument("--create-tables", action="store_true", help="Create missing tables on startup")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("worker", help="Run the cron scheduler")

    backfill = sub.add_parser("backfill", help="Rebuild rollups over a date range")
    backfill.add_argument("--start", type=_parse_date, help="First day (default: 30 days before --end)")
    backfill.add_argument("--end", type=_parse_date, help="Last day (default: yesterday)")
    backfill.add_argument(
        "--domain",
        action="append",
        choices=sorted(ROLLUP_CLASSES),
        help="Rollup domain, repeatable (default: all)",
    )
    backfill.add_argument("--game", action="append", help="Game id, repeatable (default: all active)")

    sub.add_parser("sync-once", help="Run one ClickHouse sync cycle")

    run_job_parser = sub.add_parser("run-job", help="Run one scheduled job now")
    run_job_parser.add_argument("name", help="Job name, e.g. level-metrics-daily")

    return parser


async def _dispatch(args: argparse.Namespace) -> int:
    settings = get_settings()
    ctx = await start_app(settings, database_url=args.database_url, bootstrap=args.create_tables)
    try:
        if args.command == "worker":
            return await run_worker(ctx)
        if args.command == "backfill":
            if args.start and args.end and args.end < args.start:
                print("--end must not be before --start")
                return 2
            return await run_backfill(ctx, args.start, args.end, args.domain, args.game)
        if args.command == "sync-once":
            return await run_sync_once(ctx)
        if args.command == "run-job":
            return await run_named_job(ctx, args.name)
        return 2
    finally:
        await stop_app(ctx)


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level)

    settings = get_settings()
    if settings.monitoring.metrics_port:
        start_http_server(settings.monitoring.metrics_port)
        logger.info("Metrics exporter started", port=settings.monitoring.metrics_port)

    try:
        return asyncio.run(_dispatch(args))
    except ConfigurationError as e:
        logger.error("Invalid configuration", error=str(e))
        return 2


if __name__ == "__main__":
    sys.exit(main())
