"""
Monetization Rollup

Daily revenue per (platform, country, app version) in exact integer
micro-USD, split into in-app purchases and ad impressions, with paying users
and first-time payers. A first-time payer has an in-app purchase on the day
and none in the raw revenue table before it. The first purchase seen per
user is also kept in iap_payers; re-processing any day keeps the earliest
timestamp.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Set

import structlog
from sqlalchemy import and_, case, delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from lvlup.database.models import (
    IapPayer,
    MonetizationDaily,
    MonetizationDailyUser,
    Revenue,
    RevenueType,
)
from lvlup.database.upsert import increment, keep_minimum, upsert_rows
from lvlup.exceptions import MalformedRawFact
from lvlup.rollups.base import DayRun, RollupEngine, WindowStats
from lvlup.rollups.facts import Dimensions, batched, stream_rows, to_int, to_micros
from lvlup.timeutils import utcnow

logger = structlog.get_logger(__name__)

USER_COUNTERS = ("iap_revenue_micros", "ad_revenue_micros", "iap_count", "ad_impression_count")


@dataclass
class MonetizationUserDelta:
    dims: Dimensions
    iap_revenue_micros: int = 0
    ad_revenue_micros: int = 0
    iap_count: int = 0
    ad_impression_count: int = 0
    first_iap_at: Optional[datetime] = None


class MonetizationRollup(RollupEngine):
    """
    Daily revenue rollup.

    Example:
        rollup = MonetizationRollup(session_factory, HourlyChunkedStrategy(throttle))
        await rollup.run_daily(date(2025, 3, 1))
    """

    domain = "monetization"
    game_sources = ((Revenue, "timestamp"),)

    async def clear_day(self, session: AsyncSession, run: DayRun) -> None:
        for model in (MonetizationDailyUser, MonetizationDaily):
            await session.execute(
                delete(model).where(model.game_id == run.game_id, model.date == run.day)
            )

    async def merge_window(
        self, session: AsyncSession, run: DayRun, start: datetime, end: datetime
    ) -> WindowStats:
        stats = WindowStats()
        deltas: Dict[str, MonetizationUserDelta] = {}

        stmt = (
            select(
                Revenue.id,
                Revenue.user_id,
                Revenue.revenue_type,
                Revenue.revenue_usd,
                Revenue.timestamp,
                Revenue.platform,
                Revenue.country_code,
                Revenue.app_version,
            )
            .where(
                Revenue.game_id == run.game_id,
                Revenue.timestamp >= start,
                Revenue.timestamp < end,
            )
            .order_by(Revenue.timestamp, Revenue.id)
        )

        async for row in stream_rows(session, stmt, self.fetch_batch):
            stats.facts_read += 1
            try:
                micros = to_micros(row.id, row.revenue_usd)
                if row.revenue_type not in (RevenueType.IN_APP_PURCHASE.value, RevenueType.AD_IMPRESSION.value):
                    raise MalformedRawFact(row.id, f"unknown revenue type {row.revenue_type!r}")
            except MalformedRawFact as e:
                self.skip_fact(stats, e)
                continue

            delta = deltas.get(row.user_id)
            if delta is None:
                delta = deltas[row.user_id] = MonetizationUserDelta(Dimensions.of(row))

            if row.revenue_type == RevenueType.IN_APP_PURCHASE.value:
                delta.iap_revenue_micros += micros
                delta.iap_count += 1
                if delta.first_iap_at is None:
                    delta.first_iap_at = row.timestamp
            else:
                delta.ad_revenue_micros += micros
                delta.ad_impression_count += 1

        if not deltas:
            return stats

        U = MonetizationDailyUser
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
                "iap_revenue_micros": delta.iap_revenue_micros,
                "ad_revenue_micros": delta.ad_revenue_micros,
                "iap_count": delta.iap_count,
                "ad_impression_count": delta.ad_impression_count,
            }
            for user_id, delta in deltas.items()
        ]
        stats.user_rows = await upsert_rows(
            session, MonetizationDailyUser, rows, set_factory=increment(*USER_COUNTERS)
        )

        payers = [
            {"game_id": run.game_id, "user_id": user_id, "first_seen": delta.first_iap_at}
            for user_id, delta in deltas.items()
            if delta.first_iap_at is not None
        ]
        await upsert_rows(session, IapPayer, payers, set_factory=keep_minimum("first_seen"))

        stats.rollup_rows = await self.refresh_rollups(session, run, {d.dims for d in deltas.values()})
        return stats

    def _dims_filter(self, affected: Set[Dimensions]) -> List:
        U = MonetizationDailyUser
        return [
            U.platform.in_(sorted({d.platform for d in affected})),
            U.country_code.in_(sorted({d.country_code for d in affected})),
            U.app_version.in_(sorted({d.app_version for d in affected})),
        ]

    async def refresh_rollups(self, session: AsyncSession, run: DayRun, affected: Set[Dimensions]) -> int:
        """Recompute MonetizationDaily rows for the affected tuples."""
        U = MonetizationDailyUser
        dims = (U.platform, U.country_code, U.app_version)
        # Raw facts decide first purchases, so the count does not depend on
        # which days were processed before this one
        earlier_purchase = (
            select(Revenue.id)
            .where(
                Revenue.game_id == U.game_id,
                Revenue.user_id == U.user_id,
                Revenue.revenue_type == RevenueType.IN_APP_PURCHASE.value,
                Revenue.timestamp < run.day_start,
            )
            .correlate(U)
            .exists()
        )
        new_payer = and_(U.iap_count > 0, ~earlier_purchase)
        stmt = (
            select(
                *dims,
                func.sum(U.iap_revenue_micros).label("iap_revenue_micros"),
                func.sum(U.ad_revenue_micros).label("ad_revenue_micros"),
                func.sum(U.iap_count).label("iap_count"),
                func.sum(U.ad_impression_count).label("ad_impression_count"),
                func.sum(case((U.iap_count > 0, 1), else_=0)).label("paying_users"),
                func.sum(case((new_payer, 1), else_=0)).label("new_payers"),
            )
            .where(U.game_id == run.game_id, U.date == run.day, *self._dims_filter(affected))
            .group_by(*dims)
        )

        now = utcnow()
        rows = []
        for row in await session.execute(stmt):
            iap = to_int(row.iap_revenue_micros)
            ad = to_int(row.ad_revenue_micros)
            rows.append({
                "game_id": run.game_id,
                "date": run.day,
                "platform": row.platform,
                "country_code": row.country_code,
                "app_version": row.app_version,
                "total_revenue_micros": iap + ad,
                "iap_revenue_micros": iap,
                "ad_revenue_micros": ad,
                "iap_count": to_int(row.iap_count),
                "ad_impression_count": to_int(row.ad_impression_count),
                "paying_users": to_int(row.paying_users),
                "new_payers": to_int(row.new_payers),
                "updated_at": now,
            })
        return await upsert_rows(session, MonetizationDaily, rows)
