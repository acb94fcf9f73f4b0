"""
Watermark Store

Durable (last_ts, last_id) cursors keyed by pipeline name. Used by the sync
engine (one cursor per source table) and by the hourly rollup jobs (merged
through timestamp per domain and game).
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lvlup.database.connection import session_scope
from lvlup.database.models import SyncWatermark
from lvlup.database.upsert import upsert_rows
from lvlup.timeutils import utcnow

EPOCH = datetime(1970, 1, 1)


@dataclass(frozen=True, order=True)
class Watermark:
    """Position strictly after which rows have not been processed."""
    last_ts: datetime = EPOCH
    last_id: str = ""

    def as_tuple(self) -> Tuple[datetime, str]:
        return self.last_ts, self.last_id


INITIAL_WATERMARK = Watermark()


class WatermarkStore:
    """
    Read and persist pipeline watermarks.

    read()/write() work inside a caller's transaction so a watermark can be
    advanced atomically with the work it covers; get()/set() open their own.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    @staticmethod
    async def read(session: AsyncSession, pipeline: str) -> Watermark:
        row = (
            await session.execute(
                select(SyncWatermark.last_ts, SyncWatermark.last_id).where(SyncWatermark.pipeline == pipeline)
            )
        ).first()
        if row is None:
            return INITIAL_WATERMARK
        return Watermark(row.last_ts, row.last_id or "")

    @staticmethod
    async def write(session: AsyncSession, pipeline: str, watermark: Watermark) -> None:
        await upsert_rows(session, SyncWatermark, [{
            "pipeline": pipeline,
            "last_ts": watermark.last_ts,
            "last_id": watermark.last_id,
            "updated_at": utcnow(),
        }])

    async def get(self, pipeline: str) -> Watermark:
        async with session_scope(self.session_factory) as session:
            return await self.read(session, pipeline)

    async def set(self, pipeline: str, watermark: Watermark) -> None:
        async with session_scope(self.session_factory) as session:
            await self.write(session, pipeline, watermark)
