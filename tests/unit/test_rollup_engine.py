"""
Unit Tests - Rollup Engine Framework
"""
from datetime import timedelta

import pytest

from lvlup.config.settings import AggregationSettings
from lvlup.database.models import LevelMetricsDaily
from lvlup.database.watermarks import WatermarkStore
from lvlup.rollups import (
    FullDayStrategy,
    HourlyChunkedStrategy,
    LevelFunnelRollup,
    MonetizationRollup,
    UnitStatus,
    build_strategy,
    create_rollups,
)
from lvlup.scheduling import ThrottleController
from lvlup.timeutils import utcnow
from tests.helpers import DAY, at, snapshot


class FlakyLevelRollup(LevelFunnelRollup):
    """Fails every unit of the game named 'bad'."""

    async def merge_window(self, session, run, start, end):
        if run.game_id == "bad":
            raise RuntimeError("boom")
        return await super().merge_window(session, run, start, end)


@pytest.fixture
def frozen_now(monkeypatch):
    """Pin the engine's clock to noon two days after the test day."""
    now = at(12, day=DAY + timedelta(days=2))
    monkeypatch.setattr("lvlup.rollups.base.utcnow", lambda: now)
    return now


class TestStrategies:
    """Tests for strategy selection and chunking"""

    def test_build_strategy(self):
        throttle = ThrottleController()

        assert isinstance(build_strategy(False, throttle), FullDayStrategy)
        chunked = build_strategy(True, throttle, chunk_minutes=15)
        assert isinstance(chunked, HourlyChunkedStrategy)
        assert chunked.chunk_minutes == 15
        assert chunked.throttle is throttle

    def test_create_rollups_follows_flags(self, session_factory):
        """Each domain gets the strategy selected by its flag"""
        settings = AggregationSettings(monetization_chunked=False, chunk_minutes=30)

        engines = create_rollups(session_factory, settings, ThrottleController())

        assert sorted(engines) == ["active_users", "cohort_retention", "level_metrics", "monetization"]
        assert isinstance(engines["monetization"], MonetizationRollup)
        assert engines["monetization"].strategy.mode == "full_day"
        assert engines["level_metrics"].strategy.mode == "chunked"
        assert engines["level_metrics"].strategy.chunk_minutes == 30

    async def test_chunked_throttles_between_windows(self, session_factory):
        """One pause between each pair of hourly windows"""
        throttle = ThrottleController()
        rollup = LevelFunnelRollup(session_factory, HourlyChunkedStrategy(throttle))

        result = await rollup.aggregate_day("g1", DAY)

        assert result.windows == 24
        assert throttle.pauses == 23

    async def test_full_day_is_one_window(self, session_factory):
        result = await LevelFunnelRollup(session_factory, FullDayStrategy()).aggregate_day("g1", DAY)

        assert result.status == UnitStatus.COMPLETED
        assert result.windows == 1
        assert result.mode == "full_day"


class TestDailyRuns:
    """Tests for daily runs and failure isolation"""

    async def test_discovers_active_games(self, session_factory, telemetry):
        """Only games with level events that day are processed"""
        telemetry.event("a", "level_start", at(10), level_id=1, game_id="g1")
        telemetry.event("a", "level_start", at(10), level_id=1, game_id="g2")
        telemetry.event("a", "session_start", at(10), game_id="g3")
        await telemetry.save()

        summary = await LevelFunnelRollup(session_factory, FullDayStrategy()).run_daily(DAY)

        assert [u.game_id for u in summary.units] == ["g1", "g2"]
        assert summary.ok

    async def test_failure_is_isolated_per_game(self, session_factory, telemetry, fetch_all):
        """A failing game is reported and the next game still runs"""
        telemetry.event("a", "level_start", at(10), level_id=1, game_id="g1")
        await telemetry.save()
        rollup = FlakyLevelRollup(session_factory, FullDayStrategy())

        summary = await rollup.run_daily(DAY, game_ids=["bad", "g1"])

        assert summary.succeeded == 1
        assert summary.failed == 1
        assert summary.failed_units == [("bad", DAY)]
        failed = summary.units[0]
        assert failed.status == UnitStatus.FAILED
        assert "level_metrics/bad" in failed.error_message
        assert "boom" in failed.error_message
        assert [r.game_id for r in await fetch_all(LevelMetricsDaily)] == ["g1"]

    async def test_failed_rebuild_rolls_back(self, session_factory, telemetry, fetch_all):
        """A failing full-day rebuild leaves the previous rows in place"""
        telemetry.event("a", "level_start", at(10), level_id=1, game_id="bad")
        await telemetry.save()
        await LevelFunnelRollup(session_factory, FullDayStrategy()).aggregate_day("bad", DAY)

        result = await FlakyLevelRollup(session_factory, FullDayStrategy()).aggregate_day("bad", DAY)

        assert result.status == UnitStatus.FAILED
        assert [r.starts for r in await fetch_all(LevelMetricsDaily)] == [1]

    async def test_today_is_refused(self, session_factory):
        """Days that have not ended belong to the hourly merge"""
        rollup = LevelFunnelRollup(session_factory, FullDayStrategy())

        result = await rollup.aggregate_day("g1", utcnow().date())

        assert result.status == UnitStatus.SKIPPED
        assert result.error_message == "day has not ended"


class TestBackfill:
    """Tests for date range rebuilds"""

    async def test_backfill_reports_failed_units(self, session_factory, frozen_now):
        """Every (game, day) unit is attempted; failures are listed"""
        rollup = FlakyLevelRollup(session_factory, FullDayStrategy())

        summary = await rollup.backfill(DAY - timedelta(days=2), DAY, game_ids=["bad", "g1"])

        assert len(summary.units) == 6
        assert summary.succeeded == 3
        assert summary.failed_units == [
            ("bad", DAY - timedelta(days=2)),
            ("bad", DAY - timedelta(days=1)),
            ("bad", DAY),
        ]
        assert summary.mode == "backfill:full_day"

    async def test_backfill_ascending_order(self, session_factory, frozen_now):
        rollup = LevelFunnelRollup(session_factory, FullDayStrategy())

        summary = await rollup.backfill(DAY - timedelta(days=3), DAY, game_ids=["g1"])

        days = [u.day for u in summary.units]
        assert days == sorted(days)
        assert len(days) == 4

    async def test_backfill_clips_to_last_completed_day(self, session_factory, frozen_now):
        """An end date of today or later is clipped to yesterday"""
        rollup = LevelFunnelRollup(session_factory, FullDayStrategy())

        summary = await rollup.backfill(DAY, DAY + timedelta(days=10), game_ids=["g1"])

        assert [u.day for u in summary.units] == [DAY, DAY + timedelta(days=1)]
        assert all(u.status == UnitStatus.COMPLETED for u in summary.units)

    async def test_backfill_rejects_inverted_range(self, session_factory):
        rollup = LevelFunnelRollup(session_factory, FullDayStrategy())

        with pytest.raises(ValueError):
            await rollup.backfill(DAY, DAY - timedelta(days=1))


class TestHourlyMerge:
    """Tests for the incremental hourly merge of today"""

    async def test_merges_completed_hours_once(self, session_factory, telemetry, fetch_all):
        """Each completed hour is merged exactly once"""
        telemetry.event("a", "level_start", at(10), level_id=1)
        telemetry.event("a", "level_complete", at(13, 30), level_id=1)
        telemetry.event("b", "level_start", at(14, 10), level_id=1)
        await telemetry.save()
        rollup = LevelFunnelRollup(session_factory, FullDayStrategy())

        first = await rollup.merge_hourly("g1", now=at(14, 30))

        assert first.status == UnitStatus.COMPLETED
        assert first.windows == 14
        assert first.facts_read == 2
        row = (await fetch_all(LevelMetricsDaily))[0]
        assert (row.starts, row.completes) == (1, 1)
        assert row.completion_duration_ms == 3.5 * 3600 * 1000

        again = await rollup.merge_hourly("g1", now=at(14, 45))

        assert again.status == UnitStatus.SKIPPED
        row = (await fetch_all(LevelMetricsDaily))[0]
        assert (row.starts, row.completes) == (1, 1)

        later = await rollup.merge_hourly("g1", now=at(15, 5))

        assert later.windows == 1
        row = (await fetch_all(LevelMetricsDaily))[0]
        assert (row.starts, row.started_players) == (2, 2)

    async def test_watermark_tracks_merged_hours(self, session_factory):
        rollup = LevelFunnelRollup(session_factory, FullDayStrategy())

        await rollup.merge_hourly("g1", now=at(9, 59))

        watermark = await WatermarkStore(session_factory).get("rollup_hourly:level_metrics:g1")
        assert watermark.last_ts == at(9)

    async def test_new_day_starts_from_midnight(self, session_factory):
        """A watermark from yesterday does not pull yesterday's hours in"""
        rollup = LevelFunnelRollup(session_factory, FullDayStrategy())
        await rollup.merge_hourly("g1", now=at(22, day=DAY - timedelta(days=1)))

        result = await rollup.merge_hourly("g1", now=at(2, 15))

        assert result.day == DAY
        assert result.windows == 2

    async def test_hourly_matches_daily_rebuild(self, session_factory, telemetry, fetch_all):
        """Merging every hour of a day equals rebuilding it"""
        telemetry.event("a", "level_start", at(0, 30), level_id=1)
        telemetry.event("a", "level_failed", at(1, 10), level_id=1)
        telemetry.event("a", "level_start", at(5), level_id=1)
        telemetry.event("a", "level_complete", at(22, 59), level_id=1)
        await telemetry.save()
        rollup = LevelFunnelRollup(session_factory, FullDayStrategy())

        await rollup.merge_hourly("g1", now=at(6, 1))
        await rollup.merge_hourly("g1", now=at(23, 30))
        hourly = snapshot(await fetch_all(LevelMetricsDaily))

        await rollup.aggregate_day("g1", DAY)

        assert snapshot(await fetch_all(LevelMetricsDaily)) == hourly
        assert hourly[0]["completion_duration_ms"] == (22 * 60 + 59 - 5 * 60) * 60 * 1000
