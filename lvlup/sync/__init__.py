"""
Row Store to ClickHouse Sync Module
"""
from typing import Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lvlup.config.settings import ClickHouseSettings
from lvlup.scheduling.throttle import ThrottleController

from .clickhouse import ClickHouseClient, ClickHouseError
from .engine import AnalyticsDestination, SyncCycleResult, SyncEngine, SyncOutcome, TableSyncResult
from .tables import SYNC_TABLES, SyncTable, resolve_tables


def create_sync_engine(
    settings: ClickHouseSettings,
    session_factory: async_sessionmaker[AsyncSession],
    throttle: Optional[ThrottleController] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> SyncEngine:
    """Factory function wiring the ClickHouse client and configured tables."""
    return SyncEngine(
        session_factory,
        ClickHouseClient.from_settings(settings, transport=transport),
        resolve_tables(settings.tables),
        batch_size=settings.sync_batch_size,
        max_batches=settings.sync_max_batches,
        throttle=throttle,
    )


__all__ = [
    "AnalyticsDestination",
    "ClickHouseClient",
    "ClickHouseError",
    "SYNC_TABLES",
    "SyncCycleResult",
    "SyncEngine",
    "SyncOutcome",
    "SyncTable",
    "TableSyncResult",
    "create_sync_engine",
    "resolve_tables",
]
