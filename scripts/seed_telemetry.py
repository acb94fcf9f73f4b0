"""
Seed the row store with synthetic game telemetry.

Usage:
    python scripts/seed_telemetry.py --games puzzle,runner --days 14 --installs 200
"""

import argparse
import asyncio
from datetime import date, timedelta

import structlog

from lvlup.config.logging import configure_logging
from lvlup.data.generators import TelemetryGenerator
from lvlup.database.connection import close_database, create_tables, get_session_factory, init_database, session_scope
from lvlup.database.models import Event, PlaySession, Revenue, User
from lvlup.database.upsert import insert_ignore
from lvlup.timeutils import utcnow

logger = structlog.get_logger(__name__)

CHUNK_SIZE = 5000


async def execute_batch_insert(model, records: list) -> None:
    """Insert records in chunks, one transaction per chunk; existing ids are kept."""
    if not records:
        return
    for i in range(0, len(records), CHUNK_SIZE):
        async with session_scope(get_session_factory()) as session:
            await insert_ignore(session, model, records[i:i + CHUNK_SIZE])
    logger.info("Inserted records", table=model.__tablename__, rows=len(records))


async def main(games: list, days: int, installs: int, seed: int, start: date) -> None:
    logger.info("Starting telemetry seeding", games=games, days=days, start=start.isoformat())
    engine = await init_database()
    try:
        await create_tables(engine)
        batch = TelemetryGenerator(seed=seed).generate(games, start, days=days, installs_per_day=installs)
        await execute_batch_insert(User, batch.users)
        await execute_batch_insert(PlaySession, batch.sessions)
        await execute_batch_insert(Event, batch.events)
        await execute_batch_insert(Revenue, batch.revenue)
        logger.info("Telemetry seeding completed", **batch.counts())
    finally:
        await close_database()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Seed synthetic game telemetry")
    parser.add_argument("--games", default="puzzle", help="Comma-separated game ids")
    parser.add_argument("--days", type=int, default=7, help="Number of days ending yesterday")
    parser.add_argument("--installs", type=int, default=50, help="Installs per game per day")
    parser.add_argument("--seed", type=int, default=42, help="Random seed")
    args = parser.parse_args()

    configure_logging()
    first_day = utcnow().date() - timedelta(days=args.days)
    asyncio.run(main([g.strip() for g in args.games.split(",") if g.strip()], args.days, args.installs, args.seed, first_day))
