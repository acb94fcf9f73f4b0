"""
Shared test helpers: fixed test day, timestamp builder, raw fact factory and
row snapshots.
"""
import itertools
import json
from datetime import date, datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lvlup.database.connection import session_scope
from lvlup.database.models import Event, PlaySession, Revenue, User
from lvlup.database.upsert import insert_ignore

DAY = date(2025, 3, 10)


def at(hour: int, minute: int = 0, second: int = 0, day: date = DAY) -> datetime:
    """Naive UTC timestamp on a test day."""
    return datetime(day.year, day.month, day.day) + timedelta(hours=hour, minutes=minute, seconds=second)


class TelemetryFactory:
    """Builds raw fact rows with sensible defaults and persists them."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory
        self._ids = itertools.count(1)
        self.pending: List[object] = []

    def _next(self, prefix: str) -> str:
        return f"{prefix}-{next(self._ids):06d}"

    def user(
        self,
        user_id: str,
        created_at: datetime,
        game_id: str = "g1",
        platform: Optional[str] = "ios",
        country_code: Optional[str] = "US",
        app_version: Optional[str] = "1.0",
    ) -> User:
        row = User(
            id=user_id, game_id=game_id, external_id=f"ext-{user_id}", created_at=created_at,
            platform=platform, country_code=country_code, app_version=app_version,
        )
        self.pending.append(row)
        return row

    def event(
        self,
        user_id: str,
        name: str,
        ts: datetime,
        level_id: Optional[int] = None,
        game_id: str = "g1",
        platform: Optional[str] = "ios",
        country_code: Optional[str] = "US",
        app_version: Optional[str] = "1.0",
        properties: Optional[dict] = None,
        received_at: Optional[datetime] = None,
        event_id: Optional[str] = None,
        funnel: Optional[str] = "main",
    ) -> Event:
        props = dict(properties or {})
        if level_id is not None:
            props["levelId"] = level_id
        row = Event(
            id=event_id or self._next("e"), game_id=game_id, user_id=user_id, session_id=None,
            event_name=name, timestamp=ts, server_received_at=received_at or ts,
            platform=platform, country_code=country_code, app_version=app_version,
            level_funnel=funnel, level_funnel_version=1, properties=props,
        )
        self.pending.append(row)
        return row

    def revenue(
        self,
        user_id: str,
        revenue_type: str,
        amount: float,
        ts: datetime,
        game_id: str = "g1",
        platform: Optional[str] = "ios",
        country_code: Optional[str] = "US",
        app_version: Optional[str] = "1.0",
    ) -> Revenue:
        row = Revenue(
            id=self._next("r"), game_id=game_id, user_id=user_id, session_id=None,
            revenue_type=revenue_type, revenue_usd=amount, currency="USD", product_id=None,
            ad_network=None, timestamp=ts, server_received_at=ts,
            platform=platform, country_code=country_code, app_version=app_version,
        )
        self.pending.append(row)
        return row

    def session(
        self,
        user_id: str,
        start: datetime,
        duration: Optional[int] = None,
        end: Optional[datetime] = None,
        heartbeat: Optional[datetime] = None,
        game_id: str = "g1",
    ) -> PlaySession:
        row = PlaySession(
            id=self._next("s"), game_id=game_id, user_id=user_id, start_time=start,
            end_time=end, last_heartbeat=heartbeat, duration=duration,
            platform="ios", country_code="US", app_version="1.0",
        )
        self.pending.append(row)
        return row

    async def save(self) -> None:
        rows, self.pending = self.pending, []
        async with session_scope(self.session_factory) as session:
            session.add_all(rows)


def snapshot(rows: list, exclude=("updated_at",)) -> list:
    """Comparable column dictionaries for ORM rows."""
    out = []
    for row in rows:
        out.append({
            c.name: getattr(row, c.name)
            for c in row.__table__.columns
            if c.name not in exclude
        })
    return out


async def insert_batch(session_factory: async_sessionmaker[AsyncSession], batch) -> None:
    """Persist a generated TelemetryBatch."""
    async with session_scope(session_factory) as session:
        await insert_ignore(session, User, batch.users)
        await insert_ignore(session, Event, batch.events)
        await insert_ignore(session, Revenue, batch.revenue)
        await insert_ignore(session, PlaySession, batch.sessions)


class FakeDestination:
    """In-memory analytical store recording DDL and inserted rows."""

    def __init__(self, enabled: bool = True, reachable: bool = True):
        self.enabled = enabled
        self.reachable = reachable
        self.commands: List[str] = []
        self.inserts: List[tuple] = []
        self.fail_on: Dict[str, Exception] = {}

    def is_enabled(self) -> bool:
        return self.enabled

    async def ping(self) -> bool:
        return self.reachable

    async def command(self, sql: str) -> str:
        self.commands.append(sql)
        return ""

    async def insert_json_each_row(self, table: str, payload) -> None:
        error = self.fail_on.get(table)
        if error is not None:
            raise error
        if isinstance(payload, bytes):
            payload = payload.decode("utf-8")
        self.inserts.append((table, [json.loads(line) for line in payload.splitlines() if line]))

    def rows(self, table: str) -> List[dict]:
        return [row for name, batch in self.inserts if name == table for row in batch]
