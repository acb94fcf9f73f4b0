"""
Cohort Retention Rollup

For an activity day T and each tracked day index k the cohort is the users
created on T - k. Aggregated per cohort dimension tuple:

- cohort_size: members of the cohort
- retained_users / retained_level_completes: members with events on T and
  their level completions
- session_users / total_sessions / total_session_seconds: sessions started
  on T with a positive duration
- iap_revenue_micros / ad_revenue_micros / iap_paying_users: revenue on T

A member's cohort dimensions are taken from their first event on the install
day. Members without an install-day event fall into the ('', '', '') tuple.
"""

from collections import Counter
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Dict, List, Optional, Tuple

import structlog
from sqlalchemy import case, delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from lvlup.database.models import (
    CohortRetentionDaily,
    CohortRetentionUser,
    Event,
    LevelEventName,
    PlaySession,
    Revenue,
    RevenueType,
    User,
)
from lvlup.database.upsert import increment, upsert_rows
from lvlup.exceptions import MalformedRawFact
from lvlup.rollups.base import DayRun, RollupEngine, WindowStats
from lvlup.rollups.facts import Dimensions, batched, session_seconds, stream_rows, to_int, to_micros
from lvlup.timeutils import day_bounds, utcnow

logger = structlog.get_logger(__name__)

COHORT_DAY_INDICES = [0, 1, 2, 3, 4, 5, 6, 7, 14, 30, 60, 90, 180, 360, 540, 720]

USER_COUNTERS = (
    "event_count",
    "level_completes",
    "session_count",
    "session_seconds",
    "iap_revenue_micros",
    "ad_revenue_micros",
    "iap_count",
)


@dataclass
class CohortUserDelta:
    """One user's activity on the activity day within a window."""
    event_count: int = 0
    level_completes: int = 0
    session_count: int = 0
    session_seconds: int = 0
    iap_revenue_micros: int = 0
    ad_revenue_micros: int = 0
    iap_count: int = 0


class CohortRetentionRollup(RollupEngine):
    """
    Retention, session and revenue metrics per install cohort.

    Example:
        rollup = CohortRetentionRollup(session_factory, strategy)
        await rollup.aggregate_day("game-1", date(2025, 3, 8))
    """

    domain = "cohort_retention"
    game_sources = (
        (Event, "timestamp"),
        (PlaySession, "start_time"),
        (Revenue, "timestamp"),
    )

    def __init__(self, *args, day_indices: Optional[List[int]] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.day_indices = sorted(set(day_indices or COHORT_DAY_INDICES))

    async def clear_day(self, session: AsyncSession, run: DayRun) -> None:
        for model in (CohortRetentionUser, CohortRetentionDaily):
            await session.execute(
                delete(model).where(model.game_id == run.game_id, model.activity_date == run.day)
            )

    # -------------------------------------------------------------------------
    # Cohort membership
    # -------------------------------------------------------------------------

    async def cohort_members(
        self, session: AsyncSession, run: DayRun, install_date: date
    ) -> Dict[str, Dimensions]:
        """
        Members of an install cohort with their cohort dimensions.

        Cached on the run once the install day has ended; today's cohort
        keeps growing and is re-read on every window.
        """
        cache_key = ("cohort", install_date)
        if cache_key in run.cache and install_date < utcnow().date():
            return run.cache[cache_key]

        start, end = day_bounds(install_date)
        members: Dict[str, Dimensions] = {}
        users = (
            select(User.id)
            .where(User.game_id == run.game_id, User.created_at >= start, User.created_at < end)
        )
        async for row in stream_rows(session, users, self.fetch_batch):
            members[row.id] = Dimensions()

        if members:
            first_events = (
                select(Event.user_id, Event.platform, Event.country_code, Event.app_version)
                .join(User, User.id == Event.user_id)
                .where(
                    User.game_id == run.game_id,
                    User.created_at >= start,
                    User.created_at < end,
                    Event.game_id == run.game_id,
                    Event.timestamp >= start,
                    Event.timestamp < end,
                )
                .order_by(Event.user_id, Event.timestamp, Event.id)
            )
            seen = set()
            async for row in stream_rows(session, first_events, self.fetch_batch):
                if row.user_id in seen:
                    continue
                seen.add(row.user_id)
                members[row.user_id] = Dimensions.of(row)

        run.cache[cache_key] = members
        return members

    async def _install_dates(self, session: AsyncSession, run: DayRun, user_ids: List[str]) -> Dict[str, Tuple[date, int]]:
        """Install date and day index for users that belong to a tracked cohort."""
        oldest = run.day - timedelta(days=max(self.day_indices))
        earliest, _ = day_bounds(oldest)
        tracked = set(self.day_indices)
        resolved: Dict[str, Tuple[date, int]] = {}

        for batch in batched(user_ids):
            result = await session.execute(
                select(User.id, User.created_at).where(
                    User.game_id == run.game_id,
                    User.id.in_(batch),
                    User.created_at >= earliest,
                    User.created_at < run.day_end,
                )
            )
            for row in result:
                install_date = row.created_at.date()
                day_index = (run.day - install_date).days
                if day_index in tracked:
                    resolved[row.id] = (install_date, day_index)
        return resolved

    # -------------------------------------------------------------------------
    # Window merge
    # -------------------------------------------------------------------------

    async def merge_window(
        self, session: AsyncSession, run: DayRun, start: datetime, end: datetime
    ) -> WindowStats:
        stats = WindowStats()
        deltas: Dict[str, CohortUserDelta] = {}

        def delta_for(user_id: str) -> CohortUserDelta:
            delta = deltas.get(user_id)
            if delta is None:
                delta = deltas[user_id] = CohortUserDelta()
            return delta

        events = select(Event.user_id, Event.event_name).where(
            Event.game_id == run.game_id, Event.timestamp >= start, Event.timestamp < end
        )
        async for row in stream_rows(session, events, self.fetch_batch):
            stats.facts_read += 1
            delta = delta_for(row.user_id)
            delta.event_count += 1
            if row.event_name == LevelEventName.COMPLETE.value:
                delta.level_completes += 1

        sessions = select(
            PlaySession.user_id,
            PlaySession.start_time,
            PlaySession.end_time,
            PlaySession.last_heartbeat,
            PlaySession.duration,
        ).where(
            PlaySession.game_id == run.game_id,
            PlaySession.start_time >= start,
            PlaySession.start_time < end,
        )
        async for row in stream_rows(session, sessions, self.fetch_batch):
            stats.facts_read += 1
            seconds = session_seconds(row.duration, row.start_time, row.end_time, row.last_heartbeat)
            if seconds > 0:
                delta = delta_for(row.user_id)
                delta.session_count += 1
                delta.session_seconds += seconds

        revenue = select(Revenue.id, Revenue.user_id, Revenue.revenue_type, Revenue.revenue_usd).where(
            Revenue.game_id == run.game_id, Revenue.timestamp >= start, Revenue.timestamp < end
        )
        async for row in stream_rows(session, revenue, self.fetch_batch):
            stats.facts_read += 1
            try:
                micros = to_micros(row.id, row.revenue_usd)
                if row.revenue_type not in (RevenueType.IN_APP_PURCHASE.value, RevenueType.AD_IMPRESSION.value):
                    raise MalformedRawFact(row.id, f"unknown revenue type {row.revenue_type!r}")
            except MalformedRawFact as e:
                self.skip_fact(stats, e)
                continue
            delta = delta_for(row.user_id)
            if row.revenue_type == RevenueType.IN_APP_PURCHASE.value:
                delta.iap_revenue_micros += micros
                delta.iap_count += 1
            else:
                delta.ad_revenue_micros += micros

        cohorts = await self._install_dates(session, run, sorted(deltas)) if deltas else {}

        rows = []
        for user_id, (install_date, day_index) in cohorts.items():
            members = await self.cohort_members(session, run, install_date)
            dims = members.get(user_id, Dimensions())
            delta = deltas[user_id]
            rows.append({
                "game_id": run.game_id,
                "install_date": install_date,
                "day_index": day_index,
                "user_id": user_id,
                "activity_date": run.day,
                **dims.as_dict(),
                "event_count": delta.event_count,
                "level_completes": delta.level_completes,
                "session_count": delta.session_count,
                "session_seconds": delta.session_seconds,
                "iap_revenue_micros": delta.iap_revenue_micros,
                "ad_revenue_micros": delta.ad_revenue_micros,
                "iap_count": delta.iap_count,
            })
        stats.user_rows = await upsert_rows(
            session, CohortRetentionUser, rows, set_factory=increment(*USER_COUNTERS)
        )

        # The first window of a run writes every tracked cohort so members
        # with no activity still get rows; later windows only touch cohorts
        # with new activity, plus the install-day cohort which keeps growing
        if "cohorts_refreshed" in run.cache:
            pairs = {(install_date, day_index) for install_date, day_index in cohorts.values()}
            pairs.add((run.day, 0))
        else:
            pairs = {(run.day - timedelta(days=k), k) for k in self.day_indices}
            run.cache["cohorts_refreshed"] = True
        for install_date, day_index in sorted(pairs):
            stats.rollup_rows += await self.refresh_cohort(session, run, install_date, day_index)
        return stats

    async def refresh_cohort(self, session: AsyncSession, run: DayRun, install_date: date, day_index: int) -> int:
        """Recompute one (install date, day index) cohort's rollup rows."""
        members = await self.cohort_members(session, run, install_date)
        if not members:
            return 0

        sizes = Counter(members.values())
        C = CohortRetentionUser
        dims = (C.platform, C.country_code, C.app_version)
        stmt = (
            select(
                *dims,
                func.sum(case((C.event_count > 0, 1), else_=0)).label("retained_users"),
                func.sum(C.level_completes).label("retained_level_completes"),
                func.sum(case((C.session_count > 0, 1), else_=0)).label("session_users"),
                func.sum(C.session_count).label("total_sessions"),
                func.sum(C.session_seconds).label("total_session_seconds"),
                func.sum(C.iap_revenue_micros).label("iap_revenue_micros"),
                func.sum(C.ad_revenue_micros).label("ad_revenue_micros"),
                func.sum(case((C.iap_count > 0, 1), else_=0)).label("iap_paying_users"),
            )
            .where(C.game_id == run.game_id, C.install_date == install_date, C.day_index == day_index)
            .group_by(*dims)
        )
        activity = {Dimensions.of(row): row for row in await session.execute(stmt)}

        now = utcnow()
        rows = []
        for key in set(sizes) | set(activity):
            row = activity.get(key)
            rows.append({
                "game_id": run.game_id,
                "install_date": install_date,
                "day_index": day_index,
                **key.as_dict(),
                "activity_date": run.day,
                "cohort_size": sizes.get(key, 0),
                "retained_users": to_int(row.retained_users) if row else 0,
                "retained_level_completes": to_int(row.retained_level_completes) if row else 0,
                "session_users": to_int(row.session_users) if row else 0,
                "total_sessions": to_int(row.total_sessions) if row else 0,
                "total_session_seconds": to_int(row.total_session_seconds) if row else 0,
                "iap_revenue_micros": to_int(row.iap_revenue_micros) if row else 0,
                "ad_revenue_micros": to_int(row.ad_revenue_micros) if row else 0,
                "iap_paying_users": to_int(row.iap_paying_users) if row else 0,
                "updated_at": now,
            })
        return await upsert_rows(session, CohortRetentionDaily, rows)
