"""
Unit Tests - Active Users Rollup
"""
from datetime import timedelta

import pytest

from lvlup.data import TelemetryGenerator
from lvlup.database.models import ActiveUsersDaily, ActiveUsersDailyUser, ActiveUsersHllDaily
from lvlup.rollups import ActiveUsersRollup, FullDayStrategy, HourlyChunkedStrategy
from lvlup.scheduling import ThrottleController
from lvlup.sketch import HyperLogLog
from tests.helpers import DAY, at, insert_batch, snapshot


@pytest.fixture(params=["full_day", "chunked"])
def strategy(request):
    if request.param == "full_day":
        return FullDayStrategy()
    return HourlyChunkedStrategy(ThrottleController())


class TestDailyActiveUsers:
    """Tests for exact DAU rows"""

    async def test_user_counted_once_under_first_dimensions(self, session_factory, telemetry, fetch_all, strategy):
        """A user switching platform mid-day stays under the first platform"""
        telemetry.event("a", "session_start", at(10))
        telemetry.event("a", "session_start", at(15), platform="android")
        telemetry.event("b", "level_start", at(11), level_id=1)
        await telemetry.save()
        rollup = ActiveUsersRollup(session_factory, strategy)

        await rollup.aggregate_day("g1", DAY)

        rows = await fetch_all(ActiveUsersDaily)
        assert [(r.platform, r.dau, r.event_count) for r in rows] == [("ios", 2, 3)]
        assert await rollup.daily_active_users("g1", DAY) == 2

    async def test_per_user_facts(self, session_factory, telemetry, fetch_all, strategy):
        telemetry.event("a", "session_start", at(10, 30))
        telemetry.event("a", "session_start", at(3))
        await telemetry.save()

        await ActiveUsersRollup(session_factory, strategy).aggregate_day("g1", DAY)

        users = await fetch_all(ActiveUsersDailyUser)
        assert len(users) == 1
        assert users[0].event_count == 2
        assert users[0].first_seen_at == at(3)

    async def test_dimension_tuples(self, session_factory, telemetry, fetch_all):
        telemetry.event("a", "session_start", at(10), country_code="DE")
        telemetry.event("b", "session_start", at(10), country_code="US")
        telemetry.event("c", "session_start", at(10), country_code=None)
        await telemetry.save()

        await ActiveUsersRollup(session_factory, FullDayStrategy()).aggregate_day("g1", DAY)

        rows = await fetch_all(ActiveUsersDaily)
        assert sorted((r.country_code, r.dau) for r in rows) == [("", 1), ("DE", 1), ("US", 1)]

    async def test_no_activity(self, session_factory):
        rollup = ActiveUsersRollup(session_factory, FullDayStrategy())

        await rollup.aggregate_day("g1", DAY)

        assert await rollup.daily_active_users("g1", DAY) == 0

    async def test_chunked_equals_full_day(self, session_factory, fetch_all):
        batch = TelemetryGenerator(seed=5).generate(["g1"], DAY - timedelta(days=2), days=3, installs_per_day=20)
        await insert_batch(session_factory, batch)

        await ActiveUsersRollup(session_factory, FullDayStrategy()).aggregate_day("g1", DAY)
        full = snapshot(await fetch_all(ActiveUsersDaily))
        full_sketches = snapshot(await fetch_all(ActiveUsersHllDaily))

        await ActiveUsersRollup(session_factory, HourlyChunkedStrategy(ThrottleController())).aggregate_day("g1", DAY)

        assert full
        assert snapshot(await fetch_all(ActiveUsersDaily)) == full
        assert snapshot(await fetch_all(ActiveUsersHllDaily)) == full_sketches


class TestSketches:
    """Tests for persisted daily sketches and window estimates"""

    async def test_sketch_per_dimension_tuple(self, session_factory, telemetry, fetch_all, strategy):
        telemetry.event("a", "session_start", at(10))
        telemetry.event("b", "session_start", at(11))
        telemetry.event("c", "session_start", at(12), platform="android")
        await telemetry.save()

        await ActiveUsersRollup(session_factory, strategy).aggregate_day("g1", DAY)

        sketches = {r.platform: HyperLogLog.deserialize(r.sketch) for r in await fetch_all(ActiveUsersHllDaily)}
        assert len(sketches["ios"]) == 2
        assert len(sketches["android"]) == 1

    async def test_window_estimate_merges_days(self, session_factory, telemetry):
        """Users active on several days are counted once over the window"""
        for user_id in ("a", "b", "c"):
            telemetry.event(user_id, "session_start", at(10))
        for user_id in ("b", "c", "d"):
            telemetry.event(user_id, "session_start", at(10, day=DAY + timedelta(days=1)))
        await telemetry.save()
        rollup = ActiveUsersRollup(session_factory, FullDayStrategy())

        await rollup.aggregate_day("g1", DAY)
        await rollup.aggregate_day("g1", DAY + timedelta(days=1))

        estimate = await rollup.estimate_window_users("g1", DAY, DAY + timedelta(days=1))
        assert round(estimate) == 4
        assert round(await rollup.estimate_window_users("g1", DAY, DAY)) == 3

    async def test_window_estimate_filters(self, session_factory, telemetry):
        telemetry.event("a", "session_start", at(10))
        telemetry.event("b", "session_start", at(10), platform="android")
        await telemetry.save()
        rollup = ActiveUsersRollup(session_factory, FullDayStrategy())
        await rollup.aggregate_day("g1", DAY)

        sketch = await rollup.load_window_sketch("g1", DAY, DAY, platforms=["android"])

        assert len(sketch) == 1

    async def test_sketch_bytes_stable_on_rerun(self, session_factory, telemetry, fetch_all):
        for i in range(50):
            telemetry.event(f"u{i}", "session_start", at(i % 24))
        await telemetry.save()
        rollup = ActiveUsersRollup(session_factory, HourlyChunkedStrategy(ThrottleController()))

        await rollup.aggregate_day("g1", DAY)
        first = [r.sketch for r in await fetch_all(ActiveUsersHllDaily)]
        await rollup.aggregate_day("g1", DAY)

        assert [r.sketch for r in await fetch_all(ActiveUsersHllDaily)] == first
