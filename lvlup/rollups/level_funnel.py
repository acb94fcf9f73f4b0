"""
Level Funnel Rollup

Daily level metrics from level_start / level_complete / level_failed events:
starts, completes, fails, distinct started and completed players, matched
completion and failure durations, booster usage and purchases after a fail.

Per (user, level, day) one LevelMetricsDailyUser row holds the user's
partial sums under the first dimension tuple seen for that user and level
that day. LevelMetricsDaily rows are always recomputed from those rows.

Durations are measured from the most recent earlier level_start of the same
user and level on the same day. A completion or failure without one
contributes no duration sample.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Set, Tuple

import structlog
from sqlalchemy import case, delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from lvlup.database.models import (
    Event,
    LevelEventName,
    LevelMetricsDaily,
    LevelMetricsDailyUser,
)
from lvlup.database.upsert import coalesce_latest, combine, increment, logical_or, upsert_rows
from lvlup.exceptions import MalformedRawFact
from lvlup.rollups.base import DayRun, RollupEngine, WindowStats
from lvlup.rollups.facts import (
    batched,
    dim,
    duration_ms,
    has_boosters,
    parse_level_id,
    purchased_after_fail,
    stream_rows,
    to_int,
)
from lvlup.timeutils import utcnow

logger = structlog.get_logger(__name__)

LEVEL_EVENTS = [e.value for e in LevelEventName]

USER_COUNTERS = (
    "starts",
    "completes",
    "fails",
    "completion_duration_ms",
    "completion_samples",
    "fail_duration_ms",
    "fail_samples",
)
USER_FLAGS = ("started", "completed", "booster_used", "purchased_after_fail")

LevelDims = Tuple[str, str, str, str, str]
UserKey = Tuple[int, str]


@dataclass
class LevelUserDelta:
    """One user's contribution to one level within a window."""
    dims: LevelDims
    started: bool = False
    completed: bool = False
    booster_used: bool = False
    purchased_after_fail: bool = False
    starts: int = 0
    completes: int = 0
    fails: int = 0
    completion_duration_ms: int = 0
    completion_samples: int = 0
    fail_duration_ms: int = 0
    fail_samples: int = 0
    last_start_at: Optional[datetime] = None
    # Completions/failures seen before any start in this window; matched
    # against the start carried over from earlier windows
    orphan_completions: List[datetime] = field(default_factory=list)
    orphan_failures: List[datetime] = field(default_factory=list)

    def on_start(self, ts: datetime) -> None:
        self.started = True
        self.starts += 1
        self.last_start_at = ts

    def on_complete(self, ts: datetime, boosters: bool) -> None:
        self.completed = True
        self.completes += 1
        if boosters:
            self.booster_used = True
        if self.last_start_at is not None:
            self.completion_duration_ms += duration_ms(self.last_start_at, ts)
            self.completion_samples += 1
        else:
            self.orphan_completions.append(ts)

    def on_fail(self, ts: datetime, purchase: bool) -> None:
        self.fails += 1
        if purchase:
            self.purchased_after_fail = True
        if self.last_start_at is not None:
            self.fail_duration_ms += duration_ms(self.last_start_at, ts)
            self.fail_samples += 1
        else:
            self.orphan_failures.append(ts)

    def resolve_carried_start(self, carried_start: Optional[datetime]) -> None:
        """Match orphans against the last start from earlier windows."""
        if carried_start is not None:
            for ts in self.orphan_completions:
                self.completion_duration_ms += duration_ms(carried_start, ts)
                self.completion_samples += 1
            for ts in self.orphan_failures:
                self.fail_duration_ms += duration_ms(carried_start, ts)
                self.fail_samples += 1
        self.orphan_completions.clear()
        self.orphan_failures.clear()

    def as_row(self, game_id: str, day, level_id: int, user_id: str) -> dict:
        funnel, funnel_version, platform, country_code, app_version = self.dims
        return {
            "game_id": game_id,
            "date": day,
            "level_id": level_id,
            "user_id": user_id,
            "level_funnel": funnel,
            "level_funnel_version": funnel_version,
            "platform": platform,
            "country_code": country_code,
            "app_version": app_version,
            "started": self.started,
            "completed": self.completed,
            "booster_used": self.booster_used,
            "purchased_after_fail": self.purchased_after_fail,
            "starts": self.starts,
            "completes": self.completes,
            "fails": self.fails,
            "completion_duration_ms": self.completion_duration_ms,
            "completion_samples": self.completion_samples,
            "fail_duration_ms": self.fail_duration_ms,
            "fail_samples": self.fail_samples,
            "last_start_at": self.last_start_at,
        }


def _level_dims(row) -> LevelDims:
    return (
        dim(row.level_funnel),
        dim(row.level_funnel_version),
        dim(row.platform),
        dim(row.country_code),
        dim(row.app_version),
    )


class LevelFunnelRollup(RollupEngine):
    """
    Level funnel metrics per (game, day, level, funnel dims).

    Example:
        rollup = LevelFunnelRollup(session_factory, FullDayStrategy())
        result = await rollup.aggregate_day("game-1", date(2025, 3, 1))
    """

    domain = "level_metrics"
    game_sources = ((Event, "timestamp"),)

    def game_filter(self, model):
        return [model.event_name.in_(LEVEL_EVENTS)]

    async def clear_day(self, session: AsyncSession, run: DayRun) -> None:
        await session.execute(
            delete(LevelMetricsDailyUser).where(
                LevelMetricsDailyUser.game_id == run.game_id,
                LevelMetricsDailyUser.date == run.day,
            )
        )
        await session.execute(
            delete(LevelMetricsDaily).where(
                LevelMetricsDaily.game_id == run.game_id,
                LevelMetricsDaily.date == run.day,
            )
        )

    async def merge_window(
        self, session: AsyncSession, run: DayRun, start: datetime, end: datetime
    ) -> WindowStats:
        stats = WindowStats()
        deltas: Dict[UserKey, LevelUserDelta] = {}

        stmt = (
            select(
                Event.id,
                Event.user_id,
                Event.event_name,
                Event.timestamp,
                Event.platform,
                Event.country_code,
                Event.app_version,
                Event.level_funnel,
                Event.level_funnel_version,
                Event.properties,
            )
            .where(
                Event.game_id == run.game_id,
                Event.timestamp >= start,
                Event.timestamp < end,
                Event.event_name.in_(LEVEL_EVENTS),
            )
            .order_by(Event.timestamp, Event.id)
        )

        async for row in stream_rows(session, stmt, self.fetch_batch):
            stats.facts_read += 1
            try:
                level_id = parse_level_id(row.id, row.properties)
            except MalformedRawFact as e:
                self.skip_fact(stats, e)
                continue

            key = (level_id, row.user_id)
            delta = deltas.get(key)
            if delta is None:
                delta = deltas[key] = LevelUserDelta(dims=_level_dims(row))

            if row.event_name == LevelEventName.START.value:
                delta.on_start(row.timestamp)
            elif row.event_name == LevelEventName.COMPLETE.value:
                delta.on_complete(row.timestamp, has_boosters(row.properties))
            else:
                delta.on_fail(row.timestamp, purchased_after_fail(row.properties))

        if not deltas:
            return stats

        await self._apply_existing(session, run, deltas)

        rows = [
            delta.as_row(run.game_id, run.day, level_id, user_id)
            for (level_id, user_id), delta in deltas.items()
        ]
        stats.user_rows = await upsert_rows(
            session,
            LevelMetricsDailyUser,
            rows,
            set_factory=combine(
                increment(*USER_COUNTERS),
                logical_or(*USER_FLAGS),
                coalesce_latest("last_start_at"),
            ),
        )
        stats.rollup_rows = await self.refresh_rollups(session, run, {level_id for level_id, _ in deltas})
        return stats

    async def _apply_existing(
        self, session: AsyncSession, run: DayRun, deltas: Dict[UserKey, LevelUserDelta]
    ) -> None:
        """Adopt canonical dims and carried-over starts from earlier windows."""
        U = LevelMetricsDailyUser
        existing: Dict[UserKey, Tuple[LevelDims, Optional[datetime]]] = {}
        user_ids = sorted({user_id for _, user_id in deltas})

        for batch in batched(user_ids):
            result = await session.execute(
                select(
                    U.level_id, U.user_id, U.level_funnel, U.level_funnel_version,
                    U.platform, U.country_code, U.app_version, U.last_start_at,
                ).where(U.game_id == run.game_id, U.date == run.day, U.user_id.in_(batch))
            )
            for row in result:
                existing[(row.level_id, row.user_id)] = (_level_dims(row), row.last_start_at)

        for key, delta in deltas.items():
            prior = existing.get(key)
            if prior is None:
                delta.resolve_carried_start(None)
                continue
            prior_dims, carried_start = prior
            delta.dims = prior_dims
            delta.resolve_carried_start(carried_start)

    async def refresh_rollups(self, session: AsyncSession, run: DayRun, level_ids: Set[int]) -> int:
        """Recompute LevelMetricsDaily for the given levels from user facts."""
        U = LevelMetricsDailyUser
        dims = (U.level_id, U.level_funnel, U.level_funnel_version, U.platform, U.country_code, U.app_version)
        rows = []
        now = utcnow()

        for batch in batched(sorted(level_ids)):
            stmt = (
                select(
                    *dims,
                    func.sum(U.starts).label("starts"),
                    func.sum(U.completes).label("completes"),
                    func.sum(U.fails).label("fails"),
                    func.sum(case((U.started, 1), else_=0)).label("started_players"),
                    func.sum(case((U.completed, 1), else_=0)).label("completed_players"),
                    func.sum(U.completion_duration_ms).label("completion_duration_ms"),
                    func.sum(U.completion_samples).label("completion_samples"),
                    func.sum(U.fail_duration_ms).label("fail_duration_ms"),
                    func.sum(U.fail_samples).label("fail_samples"),
                    func.sum(case((U.booster_used, 1), else_=0)).label("users_with_boosters"),
                    func.sum(case((U.purchased_after_fail, 1), else_=0)).label("fails_with_purchase"),
                )
                .where(U.game_id == run.game_id, U.date == run.day, U.level_id.in_(batch))
                .group_by(*dims)
            )
            for row in await session.execute(stmt):
                rows.append({
                    "game_id": run.game_id,
                    "date": run.day,
                    "level_id": row.level_id,
                    "level_funnel": row.level_funnel,
                    "level_funnel_version": row.level_funnel_version,
                    "platform": row.platform,
                    "country_code": row.country_code,
                    "app_version": row.app_version,
                    "starts": to_int(row.starts),
                    "completes": to_int(row.completes),
                    "fails": to_int(row.fails),
                    "started_players": to_int(row.started_players),
                    "completed_players": to_int(row.completed_players),
                    "completion_duration_ms": to_int(row.completion_duration_ms),
                    "completion_samples": to_int(row.completion_samples),
                    "fail_duration_ms": to_int(row.fail_duration_ms),
                    "fail_samples": to_int(row.fail_samples),
                    "users_with_boosters": to_int(row.users_with_boosters),
                    "fails_with_purchase": to_int(row.fails_with_purchase),
                    "updated_at": now,
                })

        return await upsert_rows(session, LevelMetricsDaily, rows)
