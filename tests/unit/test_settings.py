"""
Unit Tests - Configuration
"""
import pytest
from pydantic import ValidationError

from lvlup.config.settings import (
    AggregationSettings,
    ClickHouseSettings,
    DatabaseSettings,
    LockSettings,
    ScheduleSettings,
    Settings,
)


class TestAggregationSettings:
    """Tests for rollup strategy configuration"""

    @pytest.mark.parametrize("minutes", [1, 15, 30, 60, 120, 1440])
    def test_chunk_minutes_dividing_a_day(self, minutes):
        assert AggregationSettings(chunk_minutes=minutes).chunk_minutes == minutes

    @pytest.mark.parametrize("minutes", [0, -60, 7, 100])
    def test_chunk_minutes_rejected(self, minutes):
        with pytest.raises(ValidationError):
            AggregationSettings(chunk_minutes=minutes)

    def test_env_aliases(self, monkeypatch):
        monkeypatch.setenv("AGGREGATION_CHUNK_MINUTES", "30")
        monkeypatch.setenv("AGGREGATION_FORCE_GC", "true")
        monkeypatch.setenv("COHORT_DAILY_CHUNKED", "false")

        settings = AggregationSettings()

        assert settings.chunk_minutes == 30
        assert settings.force_gc is True
        assert settings.is_chunked("cohort_retention") is False
        assert settings.is_chunked("level_metrics") is True

    def test_unknown_domain_defaults_to_chunked(self):
        assert AggregationSettings().is_chunked("funnels") is True


class TestScheduleSettings:
    """Tests for cron validation"""

    def test_whitespace_is_normalized(self):
        assert ScheduleSettings(clickhouse_sync_cron="  */5  *  * * * ").clickhouse_sync_cron == "*/5 * * * *"

    @pytest.mark.parametrize("cron", ["* * * *", "0 2 * * * *", ""])
    def test_bad_cron_rejected(self, cron):
        with pytest.raises(ValidationError):
            ScheduleSettings(level_metrics_daily_cron=cron)

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("MONETIZATION_DAILY_CRON", "45 4 * * *")
        monkeypatch.setenv("ENABLE_ACTIVE_USERS_HOURLY", "0")

        settings = ScheduleSettings()

        assert settings.monetization_daily_cron == "45 4 * * *"
        assert settings.enable_active_users_hourly is False


class TestClickHouseSettings:
    """Tests for sync pipeline configuration"""

    def test_defaults(self):
        settings = ClickHouseSettings()

        assert settings.enabled is False
        assert settings.tables == ["events", "revenue", "sessions", "users"]
        assert settings.password.get_secret_value() == ""

    def test_table_list_parsing(self):
        settings = ClickHouseSettings(sync_tables=" Events, users ,,")

        assert settings.tables == ["events", "users"]

    def test_unknown_table_rejected(self):
        with pytest.raises(ValidationError):
            ClickHouseSettings(sync_tables="events,orders")

    def test_env(self, monkeypatch):
        monkeypatch.setenv("ENABLE_CLICKHOUSE_PIPELINE", "true")
        monkeypatch.setenv("CLICKHOUSE_SYNC_BATCH_SIZE", "500")
        monkeypatch.setenv("CLICKHOUSE_URL", "http://ch:8123")

        settings = ClickHouseSettings()

        assert settings.enabled is True
        assert settings.sync_batch_size == 500
        assert settings.url == "http://ch:8123"


class TestLockSettings:
    """Tests for lock backend selection"""

    def test_backend_lowercased(self):
        assert LockSettings(backend="Table").backend == "table"

    def test_unknown_backend_rejected(self):
        with pytest.raises(ValidationError):
            LockSettings(backend="zookeeper")


class TestSettings:
    """Tests for the aggregate settings object"""

    def test_app_env_validated(self):
        with pytest.raises(ValidationError):
            Settings(app_env="qa")

    def test_production_flag(self):
        assert Settings(app_env="PRODUCTION").is_production

    def test_database_url(self, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)

        settings = DatabaseSettings(host="db", port=5433, user="agg", password="pw", db="games")

        assert settings.async_url == "postgresql+asyncpg://agg:pw@db:5433/games"

    def test_database_url_override(self):
        settings = DatabaseSettings(url="sqlite+aiosqlite:///:memory:")

        assert settings.async_url == "sqlite+aiosqlite:///:memory:"
