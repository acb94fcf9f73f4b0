"""
Unit Tests - Monetization Rollup
"""
from datetime import timedelta

import pytest

from lvlup.data import TelemetryGenerator
from lvlup.database.models import IapPayer, MonetizationDaily, MonetizationDailyUser
from lvlup.exceptions import MalformedRawFact
from lvlup.rollups import FullDayStrategy, HourlyChunkedStrategy, MonetizationRollup, UnitStatus
from lvlup.rollups.facts import session_seconds, to_micros
from lvlup.scheduling import ThrottleController
from tests.helpers import DAY, at, insert_batch, snapshot

NEXT_DAY = DAY + timedelta(days=1)


@pytest.fixture(params=["full_day", "chunked"])
def strategy(request):
    if request.param == "full_day":
        return FullDayStrategy()
    return HourlyChunkedStrategy(ThrottleController())


def rows_by_platform(rows):
    return {r.platform: r for r in rows}


class TestRevenueRollup:
    """Tests for daily revenue rows"""

    async def test_iap_and_ad_revenue(self, session_factory, telemetry, fetch_all, strategy):
        telemetry.revenue("u1", "IN_APP_PURCHASE", 0.99, at(10))
        telemetry.revenue("u1", "IN_APP_PURCHASE", 4.99, at(12))
        telemetry.revenue("u2", "AD_IMPRESSION", 0.0123, at(13), platform="android")
        await telemetry.save()

        result = await MonetizationRollup(session_factory, strategy).aggregate_day("g1", DAY)

        assert result.status == UnitStatus.COMPLETED
        rows = rows_by_platform(await fetch_all(MonetizationDaily))
        ios = rows["ios"]
        assert ios.iap_revenue_micros == 5_980_000
        assert ios.total_revenue_micros == 5_980_000
        assert ios.iap_count == 2
        assert ios.paying_users == 1
        assert ios.new_payers == 1
        assert ios.total_revenue_usd == pytest.approx(5.98)
        android = rows["android"]
        assert android.ad_revenue_micros == 12_300
        assert android.ad_impression_count == 1
        assert android.paying_users == 0
        assert android.new_payers == 0

    async def test_micros_are_exact(self, session_factory, telemetry, fetch_all):
        """Float amounts never accumulate rounding drift"""
        for minute in range(10):
            telemetry.revenue("u1", "AD_IMPRESSION", 0.1, at(10, minute))
        telemetry.revenue("u1", "AD_IMPRESSION", 0.2, at(11))
        await telemetry.save()

        await MonetizationRollup(session_factory, FullDayStrategy()).aggregate_day("g1", DAY)

        assert (await fetch_all(MonetizationDaily))[0].ad_revenue_micros == 1_200_000

    async def test_first_dimensions_win(self, session_factory, telemetry, fetch_all, strategy):
        telemetry.revenue("u1", "IN_APP_PURCHASE", 0.99, at(9), app_version="1.0")
        telemetry.revenue("u1", "IN_APP_PURCHASE", 0.99, at(15), app_version="2.0")
        await telemetry.save()

        await MonetizationRollup(session_factory, strategy).aggregate_day("g1", DAY)

        rows = await fetch_all(MonetizationDaily)
        assert [(r.app_version, r.iap_count, r.paying_users) for r in rows] == [("1.0", 2, 1)]

    async def test_unknown_revenue_type_is_skipped(self, session_factory, telemetry, fetch_all):
        telemetry.revenue("u1", "REFUND", 0.99, at(10))
        telemetry.revenue("u1", "IN_APP_PURCHASE", 0.99, at(11))
        await telemetry.save()

        result = await MonetizationRollup(session_factory, FullDayStrategy()).aggregate_day("g1", DAY)

        assert result.facts_read == 2
        assert result.facts_skipped == 1
        assert (await fetch_all(MonetizationDaily))[0].iap_revenue_micros == 990_000

    async def test_chunked_equals_full_day(self, session_factory, fetch_all):
        batch = TelemetryGenerator(seed=9).generate(["g1"], DAY - timedelta(days=2), days=3, installs_per_day=30)
        await insert_batch(session_factory, batch)

        await MonetizationRollup(session_factory, FullDayStrategy()).aggregate_day("g1", DAY)
        full = snapshot(await fetch_all(MonetizationDaily))
        full_users = snapshot(await fetch_all(MonetizationDailyUser))

        await MonetizationRollup(session_factory, HourlyChunkedStrategy(ThrottleController())).aggregate_day("g1", DAY)

        assert full
        assert snapshot(await fetch_all(MonetizationDaily)) == full
        assert snapshot(await fetch_all(MonetizationDailyUser)) == full_users


class TestNewPayers:
    """Tests for first-time payer tracking"""

    async def test_new_payer_only_on_first_purchase_day(self, session_factory, telemetry, fetch_all):
        telemetry.revenue("u1", "IN_APP_PURCHASE", 0.99, at(10))
        telemetry.revenue("u1", "IN_APP_PURCHASE", 0.99, at(10, day=NEXT_DAY))
        await telemetry.save()
        rollup = MonetizationRollup(session_factory, FullDayStrategy())

        await rollup.aggregate_day("g1", DAY)
        await rollup.aggregate_day("g1", NEXT_DAY)

        rows = {r.date: r for r in await fetch_all(MonetizationDaily)}
        assert (rows[DAY].paying_users, rows[DAY].new_payers) == (1, 1)
        assert (rows[NEXT_DAY].paying_users, rows[NEXT_DAY].new_payers) == (1, 0)

    async def test_reprocessing_keeps_earliest_purchase(self, session_factory, telemetry, fetch_all):
        """Processing days out of order converges on the first purchase day"""
        telemetry.revenue("u1", "IN_APP_PURCHASE", 0.99, at(10))
        telemetry.revenue("u1", "IN_APP_PURCHASE", 0.99, at(10, day=NEXT_DAY))
        await telemetry.save()
        rollup = MonetizationRollup(session_factory, FullDayStrategy())

        await rollup.aggregate_day("g1", NEXT_DAY)
        await rollup.aggregate_day("g1", DAY)
        await rollup.aggregate_day("g1", NEXT_DAY)
        await rollup.aggregate_day("g1", DAY)

        payers = await fetch_all(IapPayer)
        assert [(p.user_id, p.first_seen) for p in payers] == [("u1", at(10))]
        rows = {r.date: r for r in await fetch_all(MonetizationDaily)}
        assert rows[DAY].new_payers == 1
        assert rows[NEXT_DAY].new_payers == 0

    async def test_earlier_purchase_without_processing_that_day(self, session_factory, telemetry, fetch_all):
        """A purchase before the day counts even when its own day was never aggregated"""
        telemetry.revenue("u1", "IN_APP_PURCHASE", 0.99, at(10, day=DAY - timedelta(days=1)))
        telemetry.revenue("u1", "IN_APP_PURCHASE", 1.99, at(10))
        telemetry.revenue("u2", "IN_APP_PURCHASE", 0.99, at(11))
        await telemetry.save()

        await MonetizationRollup(session_factory, FullDayStrategy()).aggregate_day("g1", DAY)

        [row] = await fetch_all(MonetizationDaily)
        assert (row.paying_users, row.new_payers) == (2, 1)

    async def test_earlier_ad_revenue_keeps_new_payer(self, session_factory, telemetry, fetch_all):
        telemetry.revenue("u1", "AD_IMPRESSION", 0.01, at(10, day=DAY - timedelta(days=1)))
        telemetry.revenue("u1", "IN_APP_PURCHASE", 0.99, at(10))
        await telemetry.save()

        await MonetizationRollup(session_factory, FullDayStrategy()).aggregate_day("g1", DAY)

        [row] = await fetch_all(MonetizationDaily)
        assert row.new_payers == 1

    async def test_ad_revenue_does_not_make_a_payer(self, session_factory, telemetry, fetch_all):
        telemetry.revenue("u1", "AD_IMPRESSION", 0.01, at(10))
        await telemetry.save()

        await MonetizationRollup(session_factory, FullDayStrategy()).aggregate_day("g1", DAY)

        assert await fetch_all(IapPayer) == []


class TestFactParsers:
    """Tests for revenue and session normalization"""

    @pytest.mark.parametrize(
        "amount,expected",
        [(0.99, 990_000), (4.99, 4_990_000), (0.0123, 12_300), ("1.5", 1_500_000), (0, 0), (0.0000005, 0)],
    )
    def test_to_micros(self, amount, expected):
        assert to_micros("r1", amount) == expected

    @pytest.mark.parametrize("amount", [None, float("nan"), float("inf"), "abc", "NaN", "Infinity", "-inf", "sNaN"])
    def test_to_micros_rejects(self, amount):
        with pytest.raises(MalformedRawFact):
            to_micros("r1", amount)

    def test_session_seconds(self):
        start = at(10)

        assert session_seconds(120, start, None, None) == 120
        assert session_seconds(None, start, at(10, 5), None) == 300
        assert session_seconds(0, start, at(10, 5), at(10, 2)) == 120
        assert session_seconds(None, start, None, None) == 0
        assert session_seconds(None, start, at(9), None) == 0
