"""
Rollup Engines

One engine per analytical domain, each built with the strategy selected by
its *_DAILY_CHUNKED flag.
"""
from typing import Dict

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lvlup.config.settings import AggregationSettings
from lvlup.scheduling.throttle import ThrottleController

from .active_users import ActiveUsersRollup
from .base import (
    DayRun,
    FullDayStrategy,
    HourlyChunkedStrategy,
    RollupEngine,
    RollupStrategy,
    RunSummary,
    UnitResult,
    UnitStatus,
    build_strategy,
)
from .cohorts import COHORT_DAY_INDICES, CohortRetentionRollup
from .level_funnel import LevelFunnelRollup
from .monetization import MonetizationRollup

ROLLUP_CLASSES = {
    LevelFunnelRollup.domain: LevelFunnelRollup,
    ActiveUsersRollup.domain: ActiveUsersRollup,
    CohortRetentionRollup.domain: CohortRetentionRollup,
    MonetizationRollup.domain: MonetizationRollup,
}


def create_rollups(
    session_factory: async_sessionmaker[AsyncSession],
    settings: AggregationSettings,
    throttle: ThrottleController,
) -> Dict[str, RollupEngine]:
    """Factory function building every domain engine from settings."""
    engines: Dict[str, RollupEngine] = {}
    for domain, cls in ROLLUP_CLASSES.items():
        strategy = build_strategy(settings.is_chunked(domain), throttle, settings.chunk_minutes)
        engines[domain] = cls(
            session_factory,
            strategy,
            throttle=throttle,
            fetch_batch=settings.fetch_batch,
        )
    return engines


__all__ = [
    "ActiveUsersRollup",
    "COHORT_DAY_INDICES",
    "CohortRetentionRollup",
    "DayRun",
    "FullDayStrategy",
    "HourlyChunkedStrategy",
    "LevelFunnelRollup",
    "MonetizationRollup",
    "ROLLUP_CLASSES",
    "RollupEngine",
    "RollupStrategy",
    "RunSummary",
    "UnitResult",
    "UnitStatus",
    "build_strategy",
    "create_rollups",
]
