"""
Sync Table Definitions

One denormalized destination table per source table, partitioned by month
and ordered by (gameId, ts, id). `ts` always holds the source cursor column,
so destination range scans follow replication order.

Rows are shaped with polars: source rows become a typed DataFrame, datetimes
are rendered in ClickHouse's DateTime64 text form and the frame is written
as newline-delimited JSON for a JSONEachRow insert.
"""

import json
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Sequence

import polars as pl

from lvlup.database.models import Event, PlaySession, Revenue, User

CLICKHOUSE_DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S%.3f"

MERGE_TREE_SUFFIX = "ENGINE = MergeTree PARTITION BY toYYYYMM(ts) ORDER BY (gameId, ts, id)"


def _properties_json(value: Any) -> str:
    if value is None:
        return "{}"
    return json.dumps(value, separators=(",", ":"), sort_keys=True, default=str)


@dataclass(frozen=True)
class SyncTable:
    """Source table, cursor column and destination shape."""
    name: str
    model: Any
    cursor: str
    destination: str
    schema: Dict[str, pl.DataType]
    ddl_columns: str
    extract: Callable[[Any], Dict[str, Any]]

    @property
    def pipeline(self) -> str:
        return f"clickhouse_sync_{self.name}"

    @property
    def ddl(self) -> str:
        return f"CREATE TABLE IF NOT EXISTS {self.destination} ({self.ddl_columns}) {MERGE_TREE_SUFFIX}"

    def to_frame(self, rows: Sequence[Any]) -> pl.DataFrame:
        return pl.DataFrame([self.extract(row) for row in rows], schema=self.schema)

    def to_ndjson(self, rows: Sequence[Any]) -> str:
        """Destination rows as JSONEachRow payload."""
        frame = self.to_frame(rows)
        datetime_columns = [name for name, dtype in self.schema.items() if dtype == pl.Datetime("ms")]
        frame = frame.with_columns(
            [pl.col(name).dt.strftime(CLICKHOUSE_DATETIME_FORMAT) for name in datetime_columns]
        )
        return frame.write_ndjson()


# =============================================================================
# TABLES
# =============================================================================

DT = pl.Datetime("ms")

EVENTS = SyncTable(
    name="events",
    model=Event,
    cursor="server_received_at",
    destination="events_raw",
    schema={
        "id": pl.Utf8,
        "gameId": pl.Utf8,
        "userId": pl.Utf8,
        "sessionId": pl.Utf8,
        "eventName": pl.Utf8,
        "ts": DT,
        "eventTimestamp": DT,
        "platform": pl.Utf8,
        "countryCode": pl.Utf8,
        "appVersion": pl.Utf8,
        "levelFunnel": pl.Utf8,
        "levelFunnelVersion": pl.Int32,
        "propertiesJson": pl.Utf8,
    },
    ddl_columns=(
        "id String, gameId String, userId String, sessionId Nullable(String), eventName String, "
        "ts DateTime64(3, 'UTC'), eventTimestamp DateTime64(3, 'UTC'), platform String, "
        "countryCode String, appVersion String, levelFunnel String, "
        "levelFunnelVersion Nullable(Int32), propertiesJson String"
    ),
    extract=lambda e: {
        "id": e.id,
        "gameId": e.game_id,
        "userId": e.user_id,
        "sessionId": e.session_id,
        "eventName": e.event_name,
        "ts": e.server_received_at,
        "eventTimestamp": e.timestamp,
        "platform": e.platform or "",
        "countryCode": e.country_code or "",
        "appVersion": e.app_version or "",
        "levelFunnel": e.level_funnel or "",
        "levelFunnelVersion": e.level_funnel_version,
        "propertiesJson": _properties_json(e.properties),
    },
)

REVENUE = SyncTable(
    name="revenue",
    model=Revenue,
    cursor="server_received_at",
    destination="revenue_raw",
    schema={
        "id": pl.Utf8,
        "gameId": pl.Utf8,
        "userId": pl.Utf8,
        "sessionId": pl.Utf8,
        "revenueType": pl.Utf8,
        "revenueUsd": pl.Float64,
        "currency": pl.Utf8,
        "productId": pl.Utf8,
        "adNetwork": pl.Utf8,
        "ts": DT,
        "eventTimestamp": DT,
        "platform": pl.Utf8,
        "countryCode": pl.Utf8,
        "appVersion": pl.Utf8,
    },
    ddl_columns=(
        "id String, gameId String, userId String, sessionId Nullable(String), revenueType String, "
        "revenueUsd Float64, currency String, productId Nullable(String), adNetwork Nullable(String), "
        "ts DateTime64(3, 'UTC'), eventTimestamp DateTime64(3, 'UTC'), platform String, "
        "countryCode String, appVersion String"
    ),
    extract=lambda r: {
        "id": r.id,
        "gameId": r.game_id,
        "userId": r.user_id,
        "sessionId": r.session_id,
        "revenueType": r.revenue_type,
        "revenueUsd": float(r.revenue_usd or 0.0),
        "currency": r.currency or "",
        "productId": r.product_id,
        "adNetwork": r.ad_network,
        "ts": r.server_received_at,
        "eventTimestamp": r.timestamp,
        "platform": r.platform or "",
        "countryCode": r.country_code or "",
        "appVersion": r.app_version or "",
    },
)

SESSIONS = SyncTable(
    name="sessions",
    model=PlaySession,
    cursor="start_time",
    destination="sessions_raw",
    schema={
        "id": pl.Utf8,
        "gameId": pl.Utf8,
        "userId": pl.Utf8,
        "ts": DT,
        "endTime": DT,
        "lastHeartbeat": DT,
        "duration": pl.Int64,
        "platform": pl.Utf8,
        "countryCode": pl.Utf8,
        "appVersion": pl.Utf8,
    },
    ddl_columns=(
        "id String, gameId String, userId String, ts DateTime64(3, 'UTC'), "
        "endTime Nullable(DateTime64(3, 'UTC')), lastHeartbeat Nullable(DateTime64(3, 'UTC')), "
        "duration Nullable(Int64), platform String, countryCode String, appVersion String"
    ),
    extract=lambda s: {
        "id": s.id,
        "gameId": s.game_id,
        "userId": s.user_id,
        "ts": s.start_time,
        "endTime": s.end_time,
        "lastHeartbeat": s.last_heartbeat,
        "duration": s.duration,
        "platform": s.platform or "",
        "countryCode": s.country_code or "",
        "appVersion": s.app_version or "",
    },
)

USERS = SyncTable(
    name="users",
    model=User,
    cursor="created_at",
    destination="users_raw",
    schema={
        "id": pl.Utf8,
        "gameId": pl.Utf8,
        "externalId": pl.Utf8,
        "ts": DT,
        "platform": pl.Utf8,
        "countryCode": pl.Utf8,
        "appVersion": pl.Utf8,
    },
    ddl_columns=(
        "id String, gameId String, externalId Nullable(String), ts DateTime64(3, 'UTC'), "
        "platform String, countryCode String, appVersion String"
    ),
    extract=lambda u: {
        "id": u.id,
        "gameId": u.game_id,
        "externalId": u.external_id,
        "ts": u.created_at,
        "platform": u.platform or "",
        "countryCode": u.country_code or "",
        "appVersion": u.app_version or "",
    },
)

SYNC_TABLES: Dict[str, SyncTable] = {t.name: t for t in (EVENTS, REVENUE, SESSIONS, USERS)}


def resolve_tables(names: Sequence[str]) -> List[SyncTable]:
    """Table specs in the configured order."""
    unknown = [n for n in names if n not in SYNC_TABLES]
    if unknown:
        raise ValueError(f"Unknown sync tables: {unknown}")
    return [SYNC_TABLES[n] for n in names]
