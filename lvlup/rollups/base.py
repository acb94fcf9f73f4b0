"""
Rollup Engine Framework

Shared machinery for every analytical rollup domain:

- RollupStrategy: how a (game, day) is rebuilt, either as one full-day
  window in one transaction (FullDayStrategy) or as a clear followed by
  chronological sub-windows, one transaction each (HourlyChunkedStrategy)
- RollupEngine: per-game failure isolation, daily runs, backfills over a
  date range and the hourly incremental merge for today
- Result models reported by jobs and the CLI

A domain implements clear_day() and merge_window(). merge_window() adds a
window's raw facts into the per-user daily facts with increment upserts and
then recomputes the daily rollup rows it touched from those user facts, so
full-day mode is simply the single-window case of chunked mode.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import structlog
from pydantic import BaseModel, Field
from sqlalchemy import select, union
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lvlup.database.connection import session_scope
from lvlup.database.watermarks import Watermark, WatermarkStore
from lvlup.exceptions import RollupFailure
from lvlup.metrics import MALFORMED_FACTS, ROLLUP_DURATION, ROLLUP_UNITS
from lvlup.scheduling.throttle import ThrottleController
from lvlup.timeutils import date_range, day_bounds, floor_hour, split_windows, utcnow

logger = structlog.get_logger(__name__)


# =============================================================================
# RESULT MODELS
# =============================================================================

class UnitStatus(str, Enum):
    """Outcome of one (game, day) rollup unit"""
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class UnitResult(BaseModel):
    """Result of aggregating one game for one day (or today's new hours)"""
    domain: str
    game_id: str
    day: date
    mode: str
    status: UnitStatus
    windows: int = 0
    facts_read: int = 0
    facts_skipped: int = 0
    user_rows: int = 0
    rollup_rows: int = 0
    error_message: Optional[str] = None
    duration_seconds: float = 0


class RunSummary(BaseModel):
    """Summary of a daily, hourly or backfill run across games"""
    domain: str
    mode: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    units: List[UnitResult] = Field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return sum(1 for u in self.units if u.status == UnitStatus.COMPLETED)

    @property
    def failed(self) -> int:
        return sum(1 for u in self.units if u.status == UnitStatus.FAILED)

    @property
    def failed_units(self) -> List[Tuple[str, date]]:
        return [(u.game_id, u.day) for u in self.units if u.status == UnitStatus.FAILED]

    @property
    def ok(self) -> bool:
        return self.failed == 0


@dataclass
class WindowStats:
    """Counters accumulated while merging windows"""
    windows: int = 0
    facts_read: int = 0
    facts_skipped: int = 0
    user_rows: int = 0
    rollup_rows: int = 0

    def __iadd__(self, other: "WindowStats") -> "WindowStats":
        self.windows += other.windows
        self.facts_read += other.facts_read
        self.facts_skipped += other.facts_skipped
        self.user_rows += other.user_rows
        self.rollup_rows += other.rollup_rows
        return self


@dataclass
class DayRun:
    """
    State for one (game, day) rebuild or hourly merge.

    cache holds per-run lookups a domain wants to reuse across windows
    (for example cohort membership of an install day).
    """
    game_id: str
    day: date
    cache: Dict[Any, Any] = field(default_factory=dict)

    @property
    def day_start(self) -> datetime:
        return day_bounds(self.day)[0]

    @property
    def day_end(self) -> datetime:
        return day_bounds(self.day)[1]


# =============================================================================
# STRATEGIES
# =============================================================================

class RollupStrategy(ABC):
    """How a full (game, day) rebuild is split into transactions."""

    mode: str = "abstract"

    @abstractmethod
    async def rebuild_day(self, engine: "RollupEngine", run: DayRun) -> WindowStats:
        """Delete the day's rows and rebuild them from raw facts."""


class FullDayStrategy(RollupStrategy):
    """
    Whole day in one window and one transaction.

    Peak memory follows the day's fact volume.
    """

    mode = "full_day"

    async def rebuild_day(self, engine: "RollupEngine", run: DayRun) -> WindowStats:
        async with session_scope(engine.session_factory) as session:
            await engine.clear_day(session, run)
            stats = await engine.merge_window(session, run, run.day_start, run.day_end)
        stats.windows = 1
        return stats


class HourlyChunkedStrategy(RollupStrategy):
    """
    Clear once, then merge fixed sub-windows in chronological order.

    Each window commits on its own; peak memory follows one window's
    volume. The throttle runs between windows.
    """

    mode = "chunked"

    def __init__(self, throttle: Optional[ThrottleController] = None, chunk_minutes: int = 60):
        self.throttle = throttle or ThrottleController()
        self.chunk_minutes = chunk_minutes

    async def rebuild_day(self, engine: "RollupEngine", run: DayRun) -> WindowStats:
        async with session_scope(engine.session_factory) as session:
            await engine.clear_day(session, run)

        stats = WindowStats()
        windows = split_windows(run.day_start, run.day_end, self.chunk_minutes)
        for index, (start, end) in enumerate(windows):
            async with session_scope(engine.session_factory) as session:
                window_stats = await engine.merge_window(session, run, start, end)
            window_stats.windows = 1
            stats += window_stats
            if index < len(windows) - 1:
                await self.throttle.pause(f"{engine.domain}:{run.game_id}:{start.isoformat()}")
        return stats


def build_strategy(chunked: bool, throttle: ThrottleController, chunk_minutes: int = 60) -> RollupStrategy:
    """Factory function selecting the strategy from a feature flag."""
    if chunked:
        return HourlyChunkedStrategy(throttle, chunk_minutes)
    return FullDayStrategy()


# =============================================================================
# ENGINE
# =============================================================================

class RollupEngine(ABC):
    """
    Base class for one analytical rollup domain.

    Subclasses set `domain`, `game_sources` and implement clear_day() and
    merge_window(). Everything else (game iteration, isolation, backfill,
    hourly merges, metrics and logging) lives here.

    Example:
        engine = LevelFunnelRollup(session_factory, HourlyChunkedStrategy(throttle))
        summary = await engine.run_daily(date(2025, 1, 15))
    """

    domain: str = "abstract"
    # (model, timestamp attribute) pairs whose rows make a game active in a window
    game_sources: Sequence[Tuple[Any, str]] = ()

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        strategy: Optional[RollupStrategy] = None,
        throttle: Optional[ThrottleController] = None,
        fetch_batch: int = 5000,
        hourly_chunk_minutes: int = 60,
    ):
        self.session_factory = session_factory
        self.throttle = throttle or ThrottleController()
        self.strategy = strategy or HourlyChunkedStrategy(self.throttle)
        self.fetch_batch = fetch_batch
        self.hourly_chunk_minutes = hourly_chunk_minutes
        self.watermarks = WatermarkStore(session_factory)
        self.log = logger.bind(domain=self.domain)

    # -------------------------------------------------------------------------
    # Domain hooks
    # -------------------------------------------------------------------------

    @abstractmethod
    async def clear_day(self, session: AsyncSession, run: DayRun) -> None:
        """Delete the day's user facts and rollup rows for the game."""

    @abstractmethod
    async def merge_window(
        self, session: AsyncSession, run: DayRun, start: datetime, end: datetime
    ) -> WindowStats:
        """Merge raw facts in [start, end) and refresh the affected rollups."""

    def game_filter(self, model) -> List[Any]:
        """Extra predicates applied when discovering active games."""
        return []

    async def list_games(self, start: datetime, end: datetime) -> List[str]:
        """Games with raw facts in [start, end)."""
        selects = []
        for model, ts_attr in self.game_sources:
            ts = getattr(model, ts_attr)
            selects.append(
                select(model.game_id).where(ts >= start, ts < end, *self.game_filter(model))
            )
        if not selects:
            return []
        stmt = selects[0].distinct() if len(selects) == 1 else union(*selects)
        async with session_scope(self.session_factory) as session:
            result = await session.execute(stmt)
            return sorted({row[0] for row in result})

    # -------------------------------------------------------------------------
    # Helpers for subclasses
    # -------------------------------------------------------------------------

    def skip_fact(self, stats: WindowStats, error: Exception) -> None:
        """Count and log a malformed raw fact."""
        stats.facts_skipped += 1
        MALFORMED_FACTS.labels(domain=self.domain).inc()
        self.log.debug("Skipping malformed raw fact", reason=str(error))

    # -------------------------------------------------------------------------
    # Units
    # -------------------------------------------------------------------------

    async def aggregate_day(self, game_id: str, day: date) -> UnitResult:
        """
        Rebuild one game's rollups for a completed day.

        Failures are captured in the returned UnitResult, never raised. Today
        (and later) belongs to the hourly merge and is rejected.
        """
        mode = self.strategy.mode
        started = time.perf_counter()
        log = self.log.bind(game_id=game_id, day=day.isoformat(), mode=mode)

        if day >= utcnow().date():
            log.warning("Refusing to rebuild a day that has not ended")
            return UnitResult(
                domain=self.domain, game_id=game_id, day=day, mode=mode,
                status=UnitStatus.SKIPPED, error_message="day has not ended",
            )

        try:
            stats = await self.strategy.rebuild_day(self, DayRun(game_id, day))
        except Exception as e:
            failure = RollupFailure(self.domain, game_id, day, e)
            elapsed = time.perf_counter() - started
            ROLLUP_UNITS.labels(domain=self.domain, mode=mode, status="failed").inc()
            log.error("Rollup unit failed", error=str(failure), exc_info=True)
            return UnitResult(
                domain=self.domain, game_id=game_id, day=day, mode=mode,
                status=UnitStatus.FAILED, error_message=str(failure),
                duration_seconds=round(elapsed, 3),
            )

        elapsed = time.perf_counter() - started
        ROLLUP_UNITS.labels(domain=self.domain, mode=mode, status="completed").inc()
        ROLLUP_DURATION.labels(domain=self.domain, mode=mode).observe(elapsed)
        log.info(
            "Rollup unit completed",
            windows=stats.windows,
            facts_read=stats.facts_read,
            facts_skipped=stats.facts_skipped,
            rollup_rows=stats.rollup_rows,
            duration_seconds=round(elapsed, 3),
        )
        return UnitResult(
            domain=self.domain, game_id=game_id, day=day, mode=mode,
            status=UnitStatus.COMPLETED, windows=stats.windows,
            facts_read=stats.facts_read, facts_skipped=stats.facts_skipped,
            user_rows=stats.user_rows, rollup_rows=stats.rollup_rows,
            duration_seconds=round(elapsed, 3),
        )

    def hourly_pipeline(self, game_id: str) -> str:
        return f"rollup_hourly:{self.domain}:{game_id}"

    async def merge_hourly(self, game_id: str, now: Optional[datetime] = None) -> UnitResult:
        """
        Merge today's completed hours not merged yet.

        Each hour is merged and the hourly watermark advanced in the same
        transaction, so a crashed run never double-counts an hour. Days
        before today are ignored; they belong to the daily rebuild.
        """
        now = now or utcnow()
        day = now.date()
        day_start, _ = day_bounds(day)
        end = floor_hour(now)
        pipeline = self.hourly_pipeline(game_id)
        started = time.perf_counter()
        log = self.log.bind(game_id=game_id, day=day.isoformat(), mode="hourly")

        try:
            watermark = await self.watermarks.get(pipeline)
            start = max(watermark.last_ts, day_start)
            windows = split_windows(start, end, self.hourly_chunk_minutes) if start < end else []
            run = DayRun(game_id, day)
            stats = WindowStats()
            for window_start, window_end in windows:
                async with session_scope(self.session_factory) as session:
                    window_stats = await self.merge_window(session, run, window_start, window_end)
                    await WatermarkStore.write(session, pipeline, Watermark(window_end, ""))
                window_stats.windows = 1
                stats += window_stats
                await self.throttle.pause(f"{self.domain}:{game_id}:hourly")
        except Exception as e:
            failure = RollupFailure(self.domain, game_id, day, e)
            ROLLUP_UNITS.labels(domain=self.domain, mode="hourly", status="failed").inc()
            log.error("Hourly merge failed", error=str(failure), exc_info=True)
            return UnitResult(
                domain=self.domain, game_id=game_id, day=day, mode="hourly",
                status=UnitStatus.FAILED, error_message=str(failure),
                duration_seconds=round(time.perf_counter() - started, 3),
            )

        elapsed = time.perf_counter() - started
        status = UnitStatus.COMPLETED if windows else UnitStatus.SKIPPED
        ROLLUP_UNITS.labels(domain=self.domain, mode="hourly", status=status.value).inc()
        if windows:
            ROLLUP_DURATION.labels(domain=self.domain, mode="hourly").observe(elapsed)
        log.info(
            "Hourly merge finished",
            windows=len(windows),
            facts_read=stats.facts_read,
            merged_through=end.isoformat() if windows else None,
        )
        return UnitResult(
            domain=self.domain, game_id=game_id, day=day, mode="hourly",
            status=status, windows=stats.windows, facts_read=stats.facts_read,
            facts_skipped=stats.facts_skipped, user_rows=stats.user_rows,
            rollup_rows=stats.rollup_rows, duration_seconds=round(elapsed, 3),
        )

    # -------------------------------------------------------------------------
    # Runs
    # -------------------------------------------------------------------------

    async def run_daily(self, day: date, game_ids: Optional[Iterable[str]] = None) -> RunSummary:
        """Rebuild every active game for one day; failures stay per game."""
        summary = RunSummary(domain=self.domain, mode=self.strategy.mode, started_at=utcnow())
        start, end = day_bounds(day)
        games = list(game_ids) if game_ids is not None else await self.list_games(start, end)
        self.log.info("Daily rollup starting", day=day.isoformat(), games=len(games))

        for index, game_id in enumerate(games):
            summary.units.append(await self.aggregate_day(game_id, day))
            if index < len(games) - 1:
                await self.throttle.pause(f"{self.domain}:game")

        summary.completed_at = utcnow()
        self._log_summary("Daily rollup finished", summary)
        return summary

    async def run_hourly(self, now: Optional[datetime] = None, game_ids: Optional[Iterable[str]] = None) -> RunSummary:
        """Merge today's new hours for every active game."""
        now = now or utcnow()
        summary = RunSummary(domain=self.domain, mode="hourly", started_at=utcnow())
        day_start, _ = day_bounds(now.date())
        games = list(game_ids) if game_ids is not None else await self.list_games(day_start, floor_hour(now))

        for game_id in games:
            summary.units.append(await self.merge_hourly(game_id, now))

        summary.completed_at = utcnow()
        self._log_summary("Hourly rollup finished", summary)
        return summary

    async def backfill(
        self, start: date, end: date, game_ids: Optional[Iterable[str]] = None
    ) -> RunSummary:
        """
        Rebuild a date range day by day in ascending order.

        A failed (game, day) unit is recorded and the range continues, so a
        rerun of the same range picks up exactly the failed units' days.
        """
        if end < start:
            raise ValueError(f"Backfill end {end} is before start {start}")
        last_complete = utcnow().date() - timedelta(days=1)
        if end > last_complete:
            self.log.warning("Clipping backfill to the last completed day", requested_end=end.isoformat())
            end = last_complete

        summary = RunSummary(domain=self.domain, mode=f"backfill:{self.strategy.mode}", started_at=utcnow())
        fixed_games = list(game_ids) if game_ids is not None else None

        for day in date_range(start, end):
            day_summary = await self.run_daily(day, fixed_games)
            summary.units.extend(day_summary.units)

        summary.completed_at = utcnow()
        self._log_summary("Backfill finished", summary)
        return summary

    def _log_summary(self, message: str, summary: RunSummary) -> None:
        fields = {
            "mode": summary.mode,
            "units": len(summary.units),
            "succeeded": summary.succeeded,
            "failed": summary.failed,
        }
        if summary.failed:
            fields["failed_units"] = [f"{g}@{d.isoformat()}" for g, d in summary.failed_units]
            self.log.warning(message, **fields)
        else:
            self.log.info(message, **fields)
