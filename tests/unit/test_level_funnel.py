"""
Unit Tests - Level Funnel Rollup
"""
from datetime import timedelta

import pytest

from lvlup.data import TelemetryGenerator
from lvlup.database.models import LevelMetricsDaily, LevelMetricsDailyUser
from lvlup.rollups import FullDayStrategy, HourlyChunkedStrategy, LevelFunnelRollup, UnitStatus
from lvlup.scheduling import ThrottleController
from tests.helpers import DAY, at, insert_batch, snapshot


@pytest.fixture(params=["full_day", "chunked"])
def strategy(request):
    if request.param == "full_day":
        return FullDayStrategy()
    return HourlyChunkedStrategy(ThrottleController())


async def seed_basic_day(telemetry):
    """Player a completes level 1 in 2 minutes, player b fails it after 90 seconds."""
    telemetry.event("a", "level_start", at(10), level_id=1)
    telemetry.event("a", "level_complete", at(10, 2), level_id=1, properties={"boosters": ["hammer"]})
    telemetry.event("b", "level_start", at(11), level_id=1)
    telemetry.event("b", "level_failed", at(11, 1, 30), level_id=1, properties={"purchaseAfterFail": True})
    telemetry.event("c", "session_start", at(9))
    await telemetry.save()


class TestLevelMetrics:
    """Tests for daily level funnel rows"""

    async def test_basic_funnel(self, session_factory, telemetry, fetch_all, strategy):
        """Counts, players and matched durations"""
        await seed_basic_day(telemetry)
        rollup = LevelFunnelRollup(session_factory, strategy)

        result = await rollup.aggregate_day("g1", DAY)

        assert result.status == UnitStatus.COMPLETED
        assert result.facts_read == 4
        rows = await fetch_all(LevelMetricsDaily)
        assert len(rows) == 1
        row = rows[0]
        assert (row.level_funnel, row.level_funnel_version, row.platform, row.country_code, row.app_version) == (
            "main", "1", "ios", "US", "1.0"
        )
        assert row.level_id == 1
        assert (row.starts, row.completes, row.fails) == (2, 1, 1)
        assert (row.started_players, row.completed_players) == (2, 1)
        assert (row.completion_duration_ms, row.completion_samples) == (120_000, 1)
        assert (row.fail_duration_ms, row.fail_samples) == (90_000, 1)
        assert row.users_with_boosters == 1
        assert row.fails_with_purchase == 1
        assert row.avg_completion_seconds == 120.0
        assert row.avg_fail_seconds == 90.0

    async def test_rerun_is_idempotent(self, session_factory, telemetry, fetch_all, strategy):
        """Rebuilding a day twice gives identical rows"""
        await seed_basic_day(telemetry)
        rollup = LevelFunnelRollup(session_factory, strategy)

        await rollup.aggregate_day("g1", DAY)
        first = snapshot(await fetch_all(LevelMetricsDaily))
        first_users = snapshot(await fetch_all(LevelMetricsDailyUser))
        await rollup.aggregate_day("g1", DAY)

        assert snapshot(await fetch_all(LevelMetricsDaily)) == first
        assert snapshot(await fetch_all(LevelMetricsDailyUser)) == first_users

    async def test_duration_uses_latest_start(self, session_factory, telemetry, fetch_all, strategy):
        """A retry measures from the most recent start"""
        telemetry.event("a", "level_start", at(8), level_id=4)
        telemetry.event("a", "level_failed", at(8, 1), level_id=4)
        telemetry.event("a", "level_start", at(9, 30), level_id=4)
        telemetry.event("a", "level_complete", at(9, 30, 45), level_id=4)
        await telemetry.save()

        await LevelFunnelRollup(session_factory, strategy).aggregate_day("g1", DAY)

        row = (await fetch_all(LevelMetricsDaily))[0]
        assert (row.starts, row.started_players) == (2, 1)
        assert row.fail_duration_ms == 60_000
        assert row.completion_duration_ms == 45_000

    async def test_unmatched_completion(self, session_factory, telemetry, fetch_all, strategy):
        """A completion without an earlier start counts but adds no duration sample"""
        telemetry.event("a", "level_complete", at(10), level_id=2)
        telemetry.event("a", "level_start", at(10, 5), level_id=2)
        await telemetry.save()

        await LevelFunnelRollup(session_factory, strategy).aggregate_day("g1", DAY)

        row = (await fetch_all(LevelMetricsDaily))[0]
        assert row.completes == 1
        assert row.completed_players == 1
        assert row.completion_samples == 0
        assert row.completion_duration_ms == 0
        assert row.avg_completion_seconds is None

    async def test_first_dimensions_win(self, session_factory, telemetry, fetch_all, strategy):
        """Later events of the same user and level adopt the first-seen dimensions"""
        telemetry.event("a", "level_start", at(10), level_id=1, app_version="1.0")
        telemetry.event("a", "level_complete", at(12), level_id=1, app_version="1.1")
        await telemetry.save()

        await LevelFunnelRollup(session_factory, strategy).aggregate_day("g1", DAY)

        rows = await fetch_all(LevelMetricsDaily)
        assert len(rows) == 1
        assert rows[0].app_version == "1.0"
        assert (rows[0].starts, rows[0].completes) == (1, 1)
        assert rows[0].completion_duration_ms == 2 * 3600 * 1000

    async def test_missing_dimensions_are_empty_strings(self, session_factory, telemetry, fetch_all, strategy):
        telemetry.event("a", "level_start", at(10), level_id=1, platform=None, country_code=None, funnel=None)
        await telemetry.save()

        await LevelFunnelRollup(session_factory, strategy).aggregate_day("g1", DAY)

        row = (await fetch_all(LevelMetricsDaily))[0]
        assert (row.level_funnel, row.platform, row.country_code) == ("", "", "")

    async def test_malformed_level_id_is_skipped(self, session_factory, telemetry, fetch_all, strategy):
        """Level events without a usable levelId are counted as skipped"""
        telemetry.event("a", "level_start", at(10))
        telemetry.event("a", "level_start", at(10, 1), properties={"levelId": "abc"})
        telemetry.event("a", "level_start", at(10, 2), properties={"levelId": "7"})
        await telemetry.save()

        result = await LevelFunnelRollup(session_factory, strategy).aggregate_day("g1", DAY)

        assert result.status == UnitStatus.COMPLETED
        assert result.facts_read == 3
        assert result.facts_skipped == 2
        rows = await fetch_all(LevelMetricsDaily)
        assert [(r.level_id, r.starts) for r in rows] == [(7, 1)]

    async def test_other_days_and_games_untouched(self, session_factory, telemetry, fetch_all):
        """Rebuilding one (game, day) leaves other units alone"""
        telemetry.event("a", "level_start", at(10), level_id=1)
        telemetry.event("a", "level_start", at(10, day=DAY - timedelta(days=1)), level_id=1)
        telemetry.event("a", "level_start", at(10), level_id=1, game_id="g2")
        await telemetry.save()
        rollup = LevelFunnelRollup(session_factory, FullDayStrategy())

        for game_id in ("g1", "g2"):
            await rollup.aggregate_day(game_id, DAY)
        await rollup.aggregate_day("g1", DAY - timedelta(days=1))
        await rollup.aggregate_day("g1", DAY)

        rows = await fetch_all(LevelMetricsDaily)
        assert sorted((r.game_id, r.date) for r in rows) == [
            ("g1", DAY - timedelta(days=1)),
            ("g1", DAY),
            ("g2", DAY),
        ]


class TestChunkEquivalence:
    """Chunked rebuilds must equal full-day rebuilds"""

    async def test_start_and_finish_in_different_windows(self, session_factory, telemetry, fetch_all):
        """Durations are matched across window boundaries"""
        telemetry.event("a", "level_start", at(10, 50), level_id=2)
        telemetry.event("a", "level_complete", at(11, 10), level_id=2)
        telemetry.event("b", "level_start", at(23, 59), level_id=2)
        telemetry.event("b", "level_failed", at(23, 59, 59), level_id=2)
        await telemetry.save()

        await LevelFunnelRollup(session_factory, FullDayStrategy()).aggregate_day("g1", DAY)
        full = snapshot(await fetch_all(LevelMetricsDaily))
        full_users = snapshot(await fetch_all(LevelMetricsDailyUser))

        chunked = HourlyChunkedStrategy(ThrottleController(), chunk_minutes=30)
        await LevelFunnelRollup(session_factory, chunked).aggregate_day("g1", DAY)

        assert snapshot(await fetch_all(LevelMetricsDaily)) == full
        assert snapshot(await fetch_all(LevelMetricsDailyUser)) == full_users
        assert full[0]["completion_duration_ms"] == 20 * 60 * 1000

    async def test_generated_day(self, session_factory, fetch_all):
        """A generated day of play aggregates identically in both modes"""
        batch = TelemetryGenerator(seed=11).generate(["g1"], DAY - timedelta(days=2), days=3, installs_per_day=15)
        await insert_batch(session_factory, batch)

        await LevelFunnelRollup(session_factory, FullDayStrategy()).aggregate_day("g1", DAY)
        full = snapshot(await fetch_all(LevelMetricsDaily))

        await LevelFunnelRollup(session_factory, HourlyChunkedStrategy(ThrottleController())).aggregate_day("g1", DAY)

        assert full
        assert snapshot(await fetch_all(LevelMetricsDaily)) == full
