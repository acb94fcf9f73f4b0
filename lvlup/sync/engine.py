"""
Watermark Sync Engine

Replicates raw fact tables from the row store into the analytical store in
bounded batches. Each table has a durable (timestamp, id) watermark; a batch
fetches rows strictly after it in (timestamp, id) order, delivers them and
only then advances the watermark to the last delivered row.

Delivery is at-least-once. A crash between a successful insert and the
watermark write re-sends that batch on the next cycle, and the destination
tables are plain append-only MergeTree tables, so queries over them must
tolerate occasional duplicate rows (dedupe by id where exact counts matter).
Within one cycle no row is delivered twice, because every batch starts
strictly after the previous batch's last row.
"""

from datetime import datetime
from enum import Enum
from typing import List, Optional, Protocol, Sequence, Union

import structlog
from pydantic import BaseModel, Field
from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lvlup.database.connection import session_scope
from lvlup.database.watermarks import Watermark, WatermarkStore
from lvlup.exceptions import DestinationUnavailable
from lvlup.metrics import SYNC_CYCLES, SYNC_LAG_SECONDS, SYNC_ROWS
from lvlup.scheduling.throttle import ThrottleController
from lvlup.sync.tables import SyncTable
from lvlup.timeutils import utcnow

logger = structlog.get_logger(__name__)


class AnalyticsDestination(Protocol):
    """What the sync engine needs from the analytical store."""

    def is_enabled(self) -> bool: ...

    async def ping(self) -> bool: ...

    async def command(self, sql: str) -> str: ...

    async def insert_json_each_row(self, table: str, payload: Union[str, bytes]) -> None: ...


# =============================================================================
# RESULT MODELS
# =============================================================================

class SyncOutcome(str, Enum):
    """Sync cycle outcome"""
    COMPLETED = "completed"
    PARTIAL = "partial"
    ABORTED = "aborted"
    DISABLED = "disabled"
    UNAVAILABLE = "unavailable"


class TableSyncResult(BaseModel):
    """Result of syncing one table within a cycle"""
    table: str
    batches: int = 0
    rows: int = 0
    watermark_ts: Optional[datetime] = None
    watermark_id: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.error_message is not None


class SyncCycleResult(BaseModel):
    """Result of one sync cycle across tables"""
    outcome: SyncOutcome
    started_at: datetime
    completed_at: Optional[datetime] = None
    tables: List[TableSyncResult] = Field(default_factory=list)

    @property
    def rows(self) -> int:
        return sum(t.rows for t in self.tables)


# =============================================================================
# ENGINE
# =============================================================================

class SyncEngine:
    """
    Batch replicator from the row store to the analytical store.

    Example:
        engine = SyncEngine(session_factory, ClickHouseClient.from_settings(cfg), resolve_tables(cfg.tables))
        result = await engine.run_cycle()
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        destination: AnalyticsDestination,
        tables: Sequence[SyncTable],
        batch_size: int = 10000,
        max_batches: int = 5,
        throttle: Optional[ThrottleController] = None,
    ):
        if batch_size <= 0 or max_batches <= 0:
            raise ValueError("batch_size and max_batches must be positive")
        self.session_factory = session_factory
        self.destination = destination
        self.tables = list(tables)
        self.batch_size = batch_size
        self.max_batches = max_batches
        self.throttle = throttle or ThrottleController()
        self.watermarks = WatermarkStore(session_factory)
        self._schema_ready = False

    async def ensure_schema(self) -> None:
        """Create destination tables once per engine instance."""
        if self._schema_ready:
            return
        for table in self.tables:
            await self.destination.command(table.ddl)
        self._schema_ready = True
        logger.info("ClickHouse schema ensured", tables=[t.destination for t in self.tables])

    async def fetch_batch(self, session: AsyncSession, table: SyncTable, watermark: Watermark) -> list:
        """Rows strictly after the watermark in (cursor, id) order."""
        model = table.model
        cursor = getattr(model, table.cursor)
        stmt = (
            select(model)
            .where(
                cursor.is_not(None),
                or_(
                    cursor > watermark.last_ts,
                    and_(cursor == watermark.last_ts, model.id > watermark.last_id),
                ),
            )
            .order_by(cursor, model.id)
            .limit(self.batch_size)
        )
        return list((await session.execute(stmt)).scalars().all())

    async def sync_table(self, table: SyncTable) -> TableSyncResult:
        """
        Run up to max_batches batches for one table.

        Raises:
            DestinationUnavailable: If delivery fails at the transport level;
                the watermark is left at the last delivered batch
        """
        result = TableSyncResult(table=table.name)
        log = logger.bind(table=table.name, pipeline=table.pipeline)

        for _ in range(self.max_batches):
            async with session_scope(self.session_factory) as session:
                watermark = await WatermarkStore.read(session, table.pipeline)
                rows = await self.fetch_batch(session, table, watermark)

            if not rows:
                break

            payload = table.to_ndjson(rows)
            await self.destination.insert_json_each_row(table.destination, payload)

            last = rows[-1]
            advanced = Watermark(getattr(last, table.cursor), last.id)
            await self.watermarks.set(table.pipeline, advanced)

            result.batches += 1
            result.rows += len(rows)
            result.watermark_ts = advanced.last_ts
            result.watermark_id = advanced.last_id
            SYNC_ROWS.labels(table=table.name).inc(len(rows))
            log.debug("Batch delivered", rows=len(rows), watermark_ts=advanced.last_ts.isoformat())

            if len(rows) < self.batch_size:
                break
            await self.throttle.pause(f"sync:{table.name}")

        if result.watermark_ts is not None:
            SYNC_LAG_SECONDS.labels(table=table.name).set(
                max(0.0, (utcnow() - result.watermark_ts).total_seconds())
            )
        return result

    async def run_cycle(self) -> SyncCycleResult:
        """
        One pass over every configured table.

        A disabled or unreachable destination makes the cycle a no-op. A
        transport failure mid-cycle stops the remaining tables; any other
        per-table error is recorded and the next table proceeds.
        """
        cycle = SyncCycleResult(outcome=SyncOutcome.COMPLETED, started_at=utcnow())

        if not self.destination.is_enabled():
            logger.debug("ClickHouse sync disabled, skipping cycle")
            cycle.outcome = SyncOutcome.DISABLED
            return self._finish(cycle)

        if not await self.destination.ping():
            logger.warning("ClickHouse unreachable, skipping sync cycle")
            cycle.outcome = SyncOutcome.UNAVAILABLE
            return self._finish(cycle)

        try:
            await self.ensure_schema()
        except DestinationUnavailable as e:
            logger.warning("ClickHouse became unavailable during schema setup", error=str(e))
            cycle.outcome = SyncOutcome.ABORTED
            return self._finish(cycle)

        for table in self.tables:
            try:
                cycle.tables.append(await self.sync_table(table))
            except DestinationUnavailable as e:
                logger.warning("ClickHouse became unavailable, aborting sync cycle", table=table.name, error=str(e))
                cycle.tables.append(TableSyncResult(table=table.name, error_message=str(e)))
                cycle.outcome = SyncOutcome.ABORTED
                break
            except Exception as e:
                logger.error("Table sync failed", table=table.name, error=str(e), exc_info=True)
                cycle.tables.append(TableSyncResult(table=table.name, error_message=str(e)))
                cycle.outcome = SyncOutcome.PARTIAL

        return self._finish(cycle)

    def _finish(self, cycle: SyncCycleResult) -> SyncCycleResult:
        cycle.completed_at = utcnow()
        SYNC_CYCLES.labels(outcome=cycle.outcome.value).inc()
        if cycle.tables:
            logger.info(
                "Sync cycle finished",
                outcome=cycle.outcome.value,
                rows=cycle.rows,
                tables={t.table: t.rows for t in cycle.tables},
            )
        return cycle
