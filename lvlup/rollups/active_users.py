"""
Active Users Rollup

Exact daily active users per (platform, country, app version) plus a
HyperLogLog sketch of the same users, persisted per day and dimension tuple.
A user counts once per day under the dimensions of their first event that
day. Weekly, monthly or arbitrary-range uniques merge the daily sketches
instead of holding user ids for the whole range.
"""

from dataclasses import dataclass
from datetime import date, datetime
from typing import Dict, Iterable, List, Optional, Set

import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from lvlup.database.connection import session_scope
from lvlup.database.models import (
    ActiveUsersDaily,
    ActiveUsersDailyUser,
    ActiveUsersHllDaily,
    Event,
)
from lvlup.database.upsert import combine, increment, keep_minimum, upsert_rows
from lvlup.rollups.base import DayRun, RollupEngine, WindowStats
from lvlup.rollups.facts import Dimensions, batched, stream_rows, to_int
from lvlup.sketch import DEFAULT_PRECISION, HyperLogLog
from lvlup.timeutils import utcnow

logger = structlog.get_logger(__name__)


@dataclass
class ActiveUserDelta:
    dims: Dimensions
    first_seen_at: datetime
    event_count: int = 0


class ActiveUsersRollup(RollupEngine):
    """
    DAU rollup with per-day cardinality sketches.

    Example:
        rollup = ActiveUsersRollup(session_factory, strategy)
        await rollup.run_daily(date(2025, 3, 1))
        mau = await rollup.estimate_window_users("game-1", date(2025, 2, 1), date(2025, 2, 28))
    """

    domain = "active_users"
    game_sources = ((Event, "timestamp"),)

    def __init__(self, *args, precision: int = DEFAULT_PRECISION, **kwargs):
        super().__init__(*args, **kwargs)
        self.precision = precision

    async def clear_day(self, session: AsyncSession, run: DayRun) -> None:
        for model in (ActiveUsersDailyUser, ActiveUsersDaily, ActiveUsersHllDaily):
            await session.execute(
                delete(model).where(model.game_id == run.game_id, model.date == run.day)
            )

    async def merge_window(
        self, session: AsyncSession, run: DayRun, start: datetime, end: datetime
    ) -> WindowStats:
        stats = WindowStats()
        deltas: Dict[str, ActiveUserDelta] = {}

        stmt = (
            select(
                Event.id,
                Event.user_id,
                Event.timestamp,
                Event.platform,
                Event.country_code,
                Event.app_version,
            )
            .where(
                Event.game_id == run.game_id,
                Event.timestamp >= start,
                Event.timestamp < end,
            )
            .order_by(Event.timestamp, Event.id)
        )

        async for row in stream_rows(session, stmt, self.fetch_batch):
            stats.facts_read += 1
            delta = deltas.get(row.user_id)
            if delta is None:
                delta = deltas[row.user_id] = ActiveUserDelta(Dimensions.of(row), row.timestamp)
            delta.event_count += 1

        if not deltas:
            return stats

        # Users already active earlier today keep their first dims
        U = ActiveUsersDailyUser
        for batch in batched(sorted(deltas)):
            result = await session.execute(
                select(U.user_id, U.platform, U.country_code, U.app_version).where(
                    U.game_id == run.game_id, U.date == run.day, U.user_id.in_(batch)
                )
            )
            for row in result:
                deltas[row.user_id].dims = Dimensions.of(row)

        rows = [
            {
                "game_id": run.game_id,
                "date": run.day,
                "user_id": user_id,
                **delta.dims.as_dict(),
                "event_count": delta.event_count,
                "first_seen_at": delta.first_seen_at,
            }
            for user_id, delta in deltas.items()
        ]
        stats.user_rows = await upsert_rows(
            session,
            ActiveUsersDailyUser,
            rows,
            set_factory=combine(increment("event_count"), keep_minimum("first_seen_at")),
        )

        affected = {delta.dims for delta in deltas.values()}
        stats.rollup_rows = await self.refresh_rollups(session, run, affected)
        return stats

    def _dims_filter(self, affected: Set[Dimensions]) -> List:
        """Superset filter for the affected tuples; every matching group is exact."""
        U = ActiveUsersDailyUser
        return [
            U.platform.in_(sorted({d.platform for d in affected})),
            U.country_code.in_(sorted({d.country_code for d in affected})),
            U.app_version.in_(sorted({d.app_version for d in affected})),
        ]

    async def refresh_rollups(self, session: AsyncSession, run: DayRun, affected: Set[Dimensions]) -> int:
        """Recompute DAU rows and replace sketches for the affected tuples."""
        U = ActiveUsersDailyUser
        dims = (U.platform, U.country_code, U.app_version)
        now = utcnow()

        stmt = (
            select(*dims, func.count().label("dau"), func.sum(U.event_count).label("event_count"))
            .where(U.game_id == run.game_id, U.date == run.day, *self._dims_filter(affected))
            .group_by(*dims)
        )
        rows = [
            {
                "game_id": run.game_id,
                "date": run.day,
                "platform": row.platform,
                "country_code": row.country_code,
                "app_version": row.app_version,
                "dau": to_int(row.dau),
                "event_count": to_int(row.event_count),
                "updated_at": now,
            }
            for row in await session.execute(stmt)
        ]
        written = await upsert_rows(session, ActiveUsersDaily, rows)

        sketches: Dict[Dimensions, HyperLogLog] = {}
        users_stmt = select(U.user_id, *dims).where(
            U.game_id == run.game_id, U.date == run.day, *self._dims_filter(affected)
        )
        pending: Dict[Dimensions, List[str]] = {}
        async for row in stream_rows(session, users_stmt, self.fetch_batch):
            key = Dimensions.of(row)
            bucket = pending.setdefault(key, [])
            bucket.append(row.user_id)
            if len(bucket) >= self.fetch_batch:
                sketches.setdefault(key, HyperLogLog.empty(self.precision)).update(bucket)
                pending[key] = []
        for key, bucket in pending.items():
            sketches.setdefault(key, HyperLogLog.empty(self.precision)).update(bucket)

        sketch_rows = [
            {
                "game_id": run.game_id,
                "date": run.day,
                **key.as_dict(),
                "sketch": sketch.serialize(),
                "updated_at": now,
            }
            for key, sketch in sketches.items()
        ]
        await upsert_rows(session, ActiveUsersHllDaily, sketch_rows)
        return written

    # -------------------------------------------------------------------------
    # Read side
    # -------------------------------------------------------------------------

    async def load_window_sketch(
        self,
        game_id: str,
        start: date,
        end: date,
        platforms: Optional[Iterable[str]] = None,
        country_codes: Optional[Iterable[str]] = None,
        app_versions: Optional[Iterable[str]] = None,
    ) -> HyperLogLog:
        """Union of stored daily sketches for [start, end] inclusive."""
        H = ActiveUsersHllDaily
        conditions = [H.game_id == game_id, H.date >= start, H.date <= end]
        if platforms is not None:
            conditions.append(H.platform.in_(list(platforms)))
        if country_codes is not None:
            conditions.append(H.country_code.in_(list(country_codes)))
        if app_versions is not None:
            conditions.append(H.app_version.in_(list(app_versions)))

        merged = HyperLogLog.empty(self.precision)
        async with session_scope(self.session_factory) as session:
            async for row in stream_rows(session, select(H.sketch).where(*conditions), 500):
                merged = merged.merge(HyperLogLog.deserialize(row.sketch))
        return merged

    async def estimate_window_users(self, game_id: str, start: date, end: date, **filters) -> float:
        """Approximate distinct active users over a date range (WAU/MAU)."""
        sketch = await self.load_window_sketch(game_id, start, end, **filters)
        return sketch.estimate()

    async def daily_active_users(self, game_id: str, day: date) -> int:
        """Exact DAU across all dimension tuples."""
        async with session_scope(self.session_factory) as session:
            value = await session.scalar(
                select(func.sum(ActiveUsersDaily.dau)).where(
                    ActiveUsersDaily.game_id == game_id, ActiveUsersDaily.date == day
                )
            )
        return to_int(value)
