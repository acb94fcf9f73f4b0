"""
Database Models - Raw Facts and Rollups

Raw fact tables are written by ingestion and never mutated here:
- User: user-creation (install) records
- Event: gameplay telemetry events
- Revenue: in-app purchases and ad impressions
- PlaySession: play sessions with heartbeat bookkeeping

Rollup tables are owned by the aggregation engine. Each domain has a
per-user daily fact table (exact de-duplication unit) and a daily rollup
keyed by (game, date, dimension tuple):
- Level funnel: LevelMetricsDailyUser / LevelMetricsDaily
- Active users: ActiveUsersDailyUser / ActiveUsersDaily / ActiveUsersHllDaily
- Cohort retention: CohortRetentionUser / CohortRetentionDaily
- Monetization: MonetizationDailyUser / MonetizationDaily / IapPayer

Bookkeeping: SyncWatermark (sync and hourly rollup cursors), JobLock.

All timestamps are naive UTC. Dimension columns are non-null strings with
'' for missing values so composite keys compare equal on every backend.
"""

import datetime as dt
from enum import Enum
from typing import Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Date,
    DateTime,
    Float,
    Index,
    Integer,
    LargeBinary,
    String,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


JSONVariant = JSON().with_variant(JSONB(), "postgresql")

ID_LENGTH = 64
DIM_LENGTH = 64


def _dim_column(length: int = DIM_LENGTH, primary_key: bool = False):
    return mapped_column(String(length), primary_key=primary_key, nullable=False, default="")


# =============================================================================
# ENUMERATIONS
# =============================================================================

class RevenueType(str, Enum):
    """Revenue record type"""
    IN_APP_PURCHASE = "IN_APP_PURCHASE"
    AD_IMPRESSION = "AD_IMPRESSION"


class LevelEventName(str, Enum):
    """Level funnel event names"""
    START = "level_start"
    COMPLETE = "level_complete"
    FAILED = "level_failed"


# =============================================================================
# RAW FACTS
# =============================================================================

class User(Base):
    """User creation record; created_at is the install timestamp."""
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(ID_LENGTH), primary_key=True)
    game_id: Mapped[str] = mapped_column(String(ID_LENGTH), nullable=False)
    external_id: Mapped[Optional[str]] = mapped_column(String(128))
    created_at: Mapped[dt.datetime] = mapped_column(DateTime, nullable=False)
    platform: Mapped[Optional[str]] = mapped_column(String(DIM_LENGTH))
    country_code: Mapped[Optional[str]] = mapped_column(String(DIM_LENGTH))
    app_version: Mapped[Optional[str]] = mapped_column(String(DIM_LENGTH))

    __table_args__ = (
        Index("ix_users_game_created", "game_id", "created_at"),
        Index("ix_users_created_id", "created_at", "id"),
    )


class Event(Base):
    """Gameplay telemetry event"""
    __tablename__ = "events"

    id: Mapped[str] = mapped_column(String(ID_LENGTH), primary_key=True)
    game_id: Mapped[str] = mapped_column(String(ID_LENGTH), nullable=False)
    user_id: Mapped[str] = mapped_column(String(ID_LENGTH), nullable=False)
    session_id: Mapped[Optional[str]] = mapped_column(String(ID_LENGTH))
    event_name: Mapped[str] = mapped_column(String(128), nullable=False)
    timestamp: Mapped[dt.datetime] = mapped_column(DateTime, nullable=False)
    server_received_at: Mapped[Optional[dt.datetime]] = mapped_column(DateTime)
    platform: Mapped[Optional[str]] = mapped_column(String(DIM_LENGTH))
    country_code: Mapped[Optional[str]] = mapped_column(String(DIM_LENGTH))
    app_version: Mapped[Optional[str]] = mapped_column(String(DIM_LENGTH))
    level_funnel: Mapped[Optional[str]] = mapped_column(String(DIM_LENGTH))
    level_funnel_version: Mapped[Optional[int]] = mapped_column(Integer)
    properties: Mapped[Optional[dict]] = mapped_column(JSONVariant)

    __table_args__ = (
        Index("ix_events_game_timestamp", "game_id", "timestamp"),
        Index("ix_events_game_user_timestamp", "game_id", "user_id", "timestamp"),
        Index("ix_events_received_id", "server_received_at", "id"),
    )


class Revenue(Base):
    """Revenue record: in-app purchase or ad impression"""
    __tablename__ = "revenue"

    id: Mapped[str] = mapped_column(String(ID_LENGTH), primary_key=True)
    game_id: Mapped[str] = mapped_column(String(ID_LENGTH), nullable=False)
    user_id: Mapped[str] = mapped_column(String(ID_LENGTH), nullable=False)
    session_id: Mapped[Optional[str]] = mapped_column(String(ID_LENGTH))
    revenue_type: Mapped[str] = mapped_column(String(32), nullable=False)
    revenue_usd: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    currency: Mapped[Optional[str]] = mapped_column(String(8))
    product_id: Mapped[Optional[str]] = mapped_column(String(128))
    ad_network: Mapped[Optional[str]] = mapped_column(String(64))
    timestamp: Mapped[dt.datetime] = mapped_column(DateTime, nullable=False)
    server_received_at: Mapped[Optional[dt.datetime]] = mapped_column(DateTime)
    platform: Mapped[Optional[str]] = mapped_column(String(DIM_LENGTH))
    country_code: Mapped[Optional[str]] = mapped_column(String(DIM_LENGTH))
    app_version: Mapped[Optional[str]] = mapped_column(String(DIM_LENGTH))

    __table_args__ = (
        Index("ix_revenue_game_timestamp", "game_id", "timestamp"),
        Index("ix_revenue_game_user_timestamp", "game_id", "user_id", "timestamp"),
        Index("ix_revenue_received_id", "server_received_at", "id"),
    )


class PlaySession(Base):
    """Play session"""
    __tablename__ = "sessions"

    id: Mapped[str] = mapped_column(String(ID_LENGTH), primary_key=True)
    game_id: Mapped[str] = mapped_column(String(ID_LENGTH), nullable=False)
    user_id: Mapped[str] = mapped_column(String(ID_LENGTH), nullable=False)
    start_time: Mapped[dt.datetime] = mapped_column(DateTime, nullable=False)
    end_time: Mapped[Optional[dt.datetime]] = mapped_column(DateTime)
    last_heartbeat: Mapped[Optional[dt.datetime]] = mapped_column(DateTime)
    duration: Mapped[Optional[int]] = mapped_column(Integer)
    platform: Mapped[Optional[str]] = mapped_column(String(DIM_LENGTH))
    country_code: Mapped[Optional[str]] = mapped_column(String(DIM_LENGTH))
    app_version: Mapped[Optional[str]] = mapped_column(String(DIM_LENGTH))

    __table_args__ = (
        Index("ix_sessions_game_start", "game_id", "start_time"),
        Index("ix_sessions_start_id", "start_time", "id"),
    )


# =============================================================================
# LEVEL FUNNEL ROLLUPS
# =============================================================================

class LevelMetricsDailyUser(Base):
    """
    Per-user daily level facts.

    One row per (game, day, level, user). Dimensions are the first-seen
    tuple for that user and level on that day. last_start_at carries the
    most recent start across chunks so durations can be matched.
    """
    __tablename__ = "level_metrics_daily_users"

    game_id: Mapped[str] = mapped_column(String(ID_LENGTH), primary_key=True)
    date: Mapped[dt.date] = mapped_column(Date, primary_key=True)
    level_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(ID_LENGTH), primary_key=True)

    level_funnel: Mapped[str] = _dim_column()
    level_funnel_version: Mapped[str] = _dim_column(16)
    platform: Mapped[str] = _dim_column()
    country_code: Mapped[str] = _dim_column()
    app_version: Mapped[str] = _dim_column()

    started: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    booster_used: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    purchased_after_fail: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    starts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    completes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    fails: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    completion_duration_ms: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    completion_samples: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    fail_duration_ms: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    fail_samples: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    last_start_at: Mapped[Optional[dt.datetime]] = mapped_column(DateTime)

    __table_args__ = (
        Index("ix_level_users_game_date_level", "game_id", "date", "level_id"),
        Index("ix_level_users_game_date_user", "game_id", "date", "user_id"),
    )


class LevelMetricsDaily(Base):
    """
    Daily Level Funnel Rollup

    Keyed by (game, day, level, funnel, funnel version, platform, country,
    app version). Recomputed from LevelMetricsDailyUser rows.
    """
    __tablename__ = "level_metrics_daily"

    game_id: Mapped[str] = mapped_column(String(ID_LENGTH), primary_key=True)
    date: Mapped[dt.date] = mapped_column(Date, primary_key=True)
    level_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    level_funnel: Mapped[str] = _dim_column(primary_key=True)
    level_funnel_version: Mapped[str] = _dim_column(16, primary_key=True)
    platform: Mapped[str] = _dim_column(primary_key=True)
    country_code: Mapped[str] = _dim_column(primary_key=True)
    app_version: Mapped[str] = _dim_column(primary_key=True)

    starts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    completes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    fails: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    started_players: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    completed_players: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    completion_duration_ms: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    completion_samples: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    fail_duration_ms: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    fail_samples: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    users_with_boosters: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    fails_with_purchase: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime, server_default=func.now(), onupdate=func.now()
    )

    @property
    def avg_completion_seconds(self) -> Optional[float]:
        """Mean matched completion time, None without samples"""
        if not self.completion_samples:
            return None
        return self.completion_duration_ms / self.completion_samples / 1000.0

    @property
    def avg_fail_seconds(self) -> Optional[float]:
        """Mean matched failure time, None without samples"""
        if not self.fail_samples:
            return None
        return self.fail_duration_ms / self.fail_samples / 1000.0


# =============================================================================
# ACTIVE USER ROLLUPS
# =============================================================================

class ActiveUsersDailyUser(Base):
    """One row per active user per day with first-seen dimensions."""
    __tablename__ = "active_users_daily_users"

    game_id: Mapped[str] = mapped_column(String(ID_LENGTH), primary_key=True)
    date: Mapped[dt.date] = mapped_column(Date, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(ID_LENGTH), primary_key=True)

    platform: Mapped[str] = _dim_column()
    country_code: Mapped[str] = _dim_column()
    app_version: Mapped[str] = _dim_column()

    event_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    first_seen_at: Mapped[dt.datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        Index("ix_active_users_users_dims", "game_id", "date", "platform", "country_code", "app_version"),
    )


class ActiveUsersDaily(Base):
    """Exact daily active users per dimension tuple"""
    __tablename__ = "active_users_daily"

    game_id: Mapped[str] = mapped_column(String(ID_LENGTH), primary_key=True)
    date: Mapped[dt.date] = mapped_column(Date, primary_key=True)
    platform: Mapped[str] = _dim_column(primary_key=True)
    country_code: Mapped[str] = _dim_column(primary_key=True)
    app_version: Mapped[str] = _dim_column(primary_key=True)

    dau: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    event_count: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime, server_default=func.now(), onupdate=func.now()
    )


class ActiveUsersHllDaily(Base):
    """Serialized HyperLogLog of a day's active users per dimension tuple"""
    __tablename__ = "active_users_hll_daily"

    game_id: Mapped[str] = mapped_column(String(ID_LENGTH), primary_key=True)
    date: Mapped[dt.date] = mapped_column(Date, primary_key=True)
    platform: Mapped[str] = _dim_column(primary_key=True)
    country_code: Mapped[str] = _dim_column(primary_key=True)
    app_version: Mapped[str] = _dim_column(primary_key=True)

    sketch: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)

    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime, server_default=func.now(), onupdate=func.now()
    )


# =============================================================================
# COHORT RETENTION ROLLUPS
# =============================================================================

class CohortRetentionUser(Base):
    """
    Per-user cohort activity on one day.

    A row exists when a cohort member (installed on install_date) was active
    on install_date + day_index. Dimensions come from the member's install
    day, not from the activity.
    """
    __tablename__ = "cohort_retention_users"

    game_id: Mapped[str] = mapped_column(String(ID_LENGTH), primary_key=True)
    install_date: Mapped[dt.date] = mapped_column(Date, primary_key=True)
    day_index: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(ID_LENGTH), primary_key=True)

    activity_date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    platform: Mapped[str] = _dim_column()
    country_code: Mapped[str] = _dim_column()
    app_version: Mapped[str] = _dim_column()

    event_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    level_completes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    session_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    session_seconds: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    iap_revenue_micros: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    ad_revenue_micros: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    iap_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        Index("ix_cohort_users_game_activity", "game_id", "activity_date"),
    )


class CohortRetentionDaily(Base):
    """Cohort retention, session and revenue rollup per install day and day index"""
    __tablename__ = "cohort_retention_daily"

    game_id: Mapped[str] = mapped_column(String(ID_LENGTH), primary_key=True)
    install_date: Mapped[dt.date] = mapped_column(Date, primary_key=True)
    day_index: Mapped[int] = mapped_column(Integer, primary_key=True)
    platform: Mapped[str] = _dim_column(primary_key=True)
    country_code: Mapped[str] = _dim_column(primary_key=True)
    app_version: Mapped[str] = _dim_column(primary_key=True)

    activity_date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    cohort_size: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    retained_users: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    retained_level_completes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    session_users: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_sessions: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_session_seconds: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    iap_revenue_micros: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    ad_revenue_micros: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    iap_paying_users: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime, server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("ix_cohort_daily_game_activity", "game_id", "activity_date"),
    )

    @property
    def retention_rate(self) -> float:
        """Retained share of the cohort"""
        return self.retained_users / self.cohort_size if self.cohort_size else 0.0


# =============================================================================
# MONETIZATION ROLLUPS
# =============================================================================

class MonetizationDailyUser(Base):
    """Per-user daily revenue facts with first-seen dimensions"""
    __tablename__ = "monetization_daily_users"

    game_id: Mapped[str] = mapped_column(String(ID_LENGTH), primary_key=True)
    date: Mapped[dt.date] = mapped_column(Date, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(ID_LENGTH), primary_key=True)

    platform: Mapped[str] = _dim_column()
    country_code: Mapped[str] = _dim_column()
    app_version: Mapped[str] = _dim_column()

    iap_revenue_micros: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    ad_revenue_micros: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    iap_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    ad_impression_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class MonetizationDaily(Base):
    """Daily revenue rollup; amounts in integer micro-USD"""
    __tablename__ = "monetization_daily"

    game_id: Mapped[str] = mapped_column(String(ID_LENGTH), primary_key=True)
    date: Mapped[dt.date] = mapped_column(Date, primary_key=True)
    platform: Mapped[str] = _dim_column(primary_key=True)
    country_code: Mapped[str] = _dim_column(primary_key=True)
    app_version: Mapped[str] = _dim_column(primary_key=True)

    total_revenue_micros: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    iap_revenue_micros: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    ad_revenue_micros: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    iap_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    ad_impression_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    paying_users: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    new_payers: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime, server_default=func.now(), onupdate=func.now()
    )

    @property
    def total_revenue_usd(self) -> float:
        return self.total_revenue_micros / 1_000_000


class IapPayer(Base):
    """First in-app purchase ever seen per user"""
    __tablename__ = "iap_payers"

    game_id: Mapped[str] = mapped_column(String(ID_LENGTH), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(ID_LENGTH), primary_key=True)
    first_seen: Mapped[dt.datetime] = mapped_column(DateTime, nullable=False)


# =============================================================================
# BOOKKEEPING
# =============================================================================

class SyncWatermark(Base):
    """Durable cursor (last_ts, last_id) per pipeline"""
    __tablename__ = "analytics_sync_watermarks"

    pipeline: Mapped[str] = mapped_column(String(128), primary_key=True)
    last_ts: Mapped[dt.datetime] = mapped_column(DateTime, nullable=False)
    last_id: Mapped[str] = mapped_column(String(ID_LENGTH), nullable=False, default="")
    updated_at: Mapped[dt.datetime] = mapped_column(DateTime, nullable=False)


class JobLock(Base):
    """Row-based job lock with expiry (table lock backend)"""
    __tablename__ = "job_locks"

    lock_key: Mapped[str] = mapped_column(String(64), primary_key=True)
    job_name: Mapped[str] = mapped_column(String(128), nullable=False)
    holder: Mapped[str] = mapped_column(String(128), nullable=False)
    acquired_at: Mapped[dt.datetime] = mapped_column(DateTime, nullable=False)
    expires_at: Mapped[dt.datetime] = mapped_column(DateTime, nullable=False)
