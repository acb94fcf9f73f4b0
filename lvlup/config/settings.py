"""
LvlUp Aggregation Engine
Centralized Configuration Management

Pydantic settings with environment variable support for every subsystem of
the aggregation worker: row store, lock backend, rollup strategies, job
schedules and the ClickHouse sync pipeline.
"""

from functools import lru_cache
from typing import Optional, List
from pydantic import Field, field_validator, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


SYNC_TABLES = ["events", "revenue", "sessions", "users"]
LOCK_BACKENDS = ["postgres", "table", "redis", "local"]


def _validate_cron(value: str) -> str:
    """Accept standard 5-field cron expressions only."""
    fields = value.split()
    if len(fields) != 5:
        raise ValueError(f"Cron expression must have 5 fields, got {len(fields)}: {value!r}")
    return " ".join(fields)


class DatabaseSettings(BaseSettings):
    """PostgreSQL Row Store Configuration"""

    model_config = SettingsConfigDict(env_prefix="POSTGRES_", populate_by_name=True)

    host: str = Field(default="localhost", description="Database host")
    port: int = Field(default=5432, description="Database port")
    db: str = Field(default="lvlup", alias="database", description="Database name")
    user: str = Field(default="lvlup", description="Database user")
    password: SecretStr = Field(default=SecretStr("lvlup_password"), description="Database password")
    pool_size: int = Field(default=10, description="Connection pool size")
    max_overflow: int = Field(default=5, description="Max overflow connections")
    pool_timeout: int = Field(default=30, description="Pool timeout in seconds")
    echo: bool = Field(default=False, description="Echo SQL queries")
    url: Optional[str] = Field(default=None, alias="DATABASE_URL", description="Full async URL (overrides host/port)")

    @property
    def async_url(self) -> str:
        """Async database URL for asyncpg"""
        if self.url:
            return self.url
        return f"postgresql+asyncpg://{self.user}:{self.password.get_secret_value()}@{self.host}:{self.port}/{self.db}"


class RedisSettings(BaseSettings):
    """Redis Configuration (used by the redis lock backend)"""

    model_config = SettingsConfigDict(env_prefix="REDIS_", populate_by_name=True)

    host: str = Field(default="localhost", description="Redis host")
    port: int = Field(default=6379, description="Redis port")
    password: Optional[SecretStr] = Field(default=None, description="Redis password")
    db: int = Field(default=0, description="Redis database number")
    max_connections: int = Field(default=20, description="Max connections")
    socket_timeout: int = Field(default=5, description="Socket timeout in seconds")
    url: Optional[str] = Field(default=None, alias="REDIS_URL", description="Redis URL (overrides host/port)")

    def get_url(self) -> str:
        """Redis connection URL - uses REDIS_URL if set, otherwise builds from host/port"""
        if self.url:
            return self.url
        if self.password:
            return f"redis://:{self.password.get_secret_value()}@{self.host}:{self.port}/{self.db}"
        return f"redis://{self.host}:{self.port}/{self.db}"


class LockSettings(BaseSettings):
    """Distributed Job Lock Configuration"""

    model_config = SettingsConfigDict(env_prefix="LOCK_", populate_by_name=True)

    backend: str = Field(default="postgres", description="Lock backend: postgres, table, redis or local")
    namespace: str = Field(default="lvlup_jobs", description="Namespace hashed into every lock key")
    ttl_seconds: int = Field(default=3600, description="Expiry for table and redis locks")

    @field_validator("backend")
    @classmethod
    def validate_backend(cls, v: str) -> str:
        """Validate lock backend name"""
        if v.lower() not in LOCK_BACKENDS:
            raise ValueError(f"Lock backend must be one of: {LOCK_BACKENDS}")
        return v.lower()


class AggregationSettings(BaseSettings):
    """Rollup Engine Configuration"""

    model_config = SettingsConfigDict(env_prefix="", populate_by_name=True)

    force_gc: bool = Field(default=False, alias="AGGREGATION_FORCE_GC", description="Run gc.collect() between chunks")
    pause_ms: int = Field(default=0, alias="AGGREGATION_PAUSE_MS", description="Sleep between chunks in milliseconds")
    chunk_minutes: int = Field(default=60, alias="AGGREGATION_CHUNK_MINUTES", description="Sub-window size for chunked mode")
    fetch_batch: int = Field(default=5000, alias="AGGREGATION_FETCH_BATCH", description="Rows streamed per fetch")

    # Chunked-incremental (default) vs full-day strategy per domain
    level_metrics_chunked: bool = Field(default=True, alias="LEVEL_METRICS_DAILY_CHUNKED")
    active_users_chunked: bool = Field(default=True, alias="ACTIVE_USERS_DAILY_CHUNKED")
    cohort_chunked: bool = Field(default=True, alias="COHORT_DAILY_CHUNKED")
    monetization_chunked: bool = Field(default=True, alias="MONETIZATION_DAILY_CHUNKED")

    @field_validator("chunk_minutes")
    @classmethod
    def validate_chunk_minutes(cls, v: int) -> int:
        """Chunks must tile a day exactly"""
        if v <= 0 or (24 * 60) % v != 0:
            raise ValueError("AGGREGATION_CHUNK_MINUTES must divide 1440")
        return v

    def is_chunked(self, domain: str) -> bool:
        """Whether the given rollup domain uses the chunked strategy"""
        return {
            "level_metrics": self.level_metrics_chunked,
            "active_users": self.active_users_chunked,
            "cohort_retention": self.cohort_chunked,
            "monetization": self.monetization_chunked,
        }.get(domain, True)


class ScheduleSettings(BaseSettings):
    """Cron Schedules (UTC, 5-field syntax)"""

    model_config = SettingsConfigDict(env_prefix="", populate_by_name=True)

    level_metrics_daily_cron: str = Field(default="0 2 * * *", alias="LEVEL_METRICS_DAILY_CRON")
    level_metrics_hourly_cron: str = Field(default="5 * * * *", alias="LEVEL_METRICS_HOURLY_CRON")
    active_users_daily_cron: str = Field(default="30 2 * * *", alias="ACTIVE_USERS_DAILY_CRON")
    active_users_hourly_cron: str = Field(default="10 * * * *", alias="ACTIVE_USERS_HOURLY_CRON")
    cohort_daily_cron: str = Field(default="0 3 * * *", alias="COHORT_DAILY_CRON")
    cohort_hourly_cron: str = Field(default="15 * * * *", alias="COHORT_HOURLY_CRON")
    monetization_daily_cron: str = Field(default="30 3 * * *", alias="MONETIZATION_DAILY_CRON")
    monetization_hourly_cron: str = Field(default="20 * * * *", alias="MONETIZATION_HOURLY_CRON")
    clickhouse_sync_cron: str = Field(default="*/5 * * * *", alias="CLICKHOUSE_SYNC_CRON")

    enable_level_metrics_hourly: bool = Field(default=True, alias="ENABLE_LEVEL_METRICS_HOURLY")
    enable_active_users_hourly: bool = Field(default=True, alias="ENABLE_ACTIVE_USERS_HOURLY")
    enable_cohort_hourly: bool = Field(default=True, alias="ENABLE_COHORT_HOURLY")
    enable_monetization_hourly: bool = Field(default=True, alias="ENABLE_MONETIZATION_HOURLY")

    misfire_grace_seconds: int = Field(default=300, alias="SCHEDULER_MISFIRE_GRACE_SECONDS")

    @field_validator(
        "level_metrics_daily_cron",
        "level_metrics_hourly_cron",
        "active_users_daily_cron",
        "active_users_hourly_cron",
        "cohort_daily_cron",
        "cohort_hourly_cron",
        "monetization_daily_cron",
        "monetization_hourly_cron",
        "clickhouse_sync_cron",
    )
    @classmethod
    def validate_cron(cls, v: str) -> str:
        return _validate_cron(v)


class ClickHouseSettings(BaseSettings):
    """ClickHouse Sync Pipeline Configuration"""

    model_config = SettingsConfigDict(env_prefix="CLICKHOUSE_", populate_by_name=True)

    enabled: bool = Field(default=False, alias="ENABLE_CLICKHOUSE_PIPELINE", description="Enable the sync pipeline")
    url: str = Field(default="http://localhost:8123", description="ClickHouse HTTP endpoint")
    database: str = Field(default="lvlup", description="Destination database")
    user: str = Field(default="default", description="ClickHouse user")
    password: SecretStr = Field(default=SecretStr(""), description="ClickHouse password")
    http_timeout_ms: int = Field(default=15000, description="HTTP timeout in milliseconds")
    sync_batch_size: int = Field(default=10000, description="Rows per sync batch")
    sync_max_batches: int = Field(default=5, description="Max batches per table per cycle")
    sync_tables: str = Field(default=",".join(SYNC_TABLES), description="Comma-separated source tables to sync")

    @field_validator("sync_tables")
    @classmethod
    def validate_tables(cls, v: str) -> str:
        """Only known source tables can be synced"""
        tables = [t.strip().lower() for t in v.split(",") if t.strip()]
        unknown = [t for t in tables if t not in SYNC_TABLES]
        if unknown:
            raise ValueError(f"Unknown sync tables: {unknown}")
        return ",".join(tables)

    @property
    def tables(self) -> List[str]:
        """Configured sync tables in order"""
        return [t for t in self.sync_tables.split(",") if t]


class MonitoringSettings(BaseSettings):
    """Monitoring and Observability Configuration"""

    model_config = SettingsConfigDict(env_prefix="", populate_by_name=True)

    metrics_port: Optional[int] = Field(default=None, alias="METRICS_PORT", description="Prometheus exporter port")

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL", description="Logging level")
    log_format: str = Field(default="json", alias="LOG_FORMAT", description="Log format: json or console")


class Settings(BaseSettings):
    """
    Main Application Settings

    Aggregates all configuration sections and provides a single entry point
    for accessing application configuration.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # Application
    app_name: str = Field(default="lvlup-aggregation", alias="APP_NAME", description="Application name")
    app_env: str = Field(default="development", alias="APP_ENV", description="Environment")
    version: str = Field(default="1.0.0", description="Application version")

    # Subsystem configurations
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    lock: LockSettings = Field(default_factory=LockSettings)
    aggregation: AggregationSettings = Field(default_factory=AggregationSettings)
    schedule: ScheduleSettings = Field(default_factory=ScheduleSettings)
    clickhouse: ClickHouseSettings = Field(default_factory=ClickHouseSettings)
    monitoring: MonitoringSettings = Field(default_factory=MonitoringSettings)

    @field_validator("app_env")
    @classmethod
    def validate_env(cls, v: str) -> str:
        """Validate environment value"""
        allowed = ["development", "staging", "production", "testing"]
        if v.lower() not in allowed:
            raise ValueError(f"Environment must be one of: {allowed}")
        return v.lower()

    @property
    def is_production(self) -> bool:
        """Check if running in production"""
        return self.app_env == "production"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached application settings.

    Uses LRU cache to ensure settings are only loaded once.

    Returns:
        Settings: Application settings instance
    """
    return Settings()
