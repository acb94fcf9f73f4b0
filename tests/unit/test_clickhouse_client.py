"""
Unit Tests - ClickHouse HTTP Client
"""
import httpx
import pytest

from lvlup.config.settings import ClickHouseSettings
from lvlup.exceptions import DestinationUnavailable
from lvlup.sync import ClickHouseClient, ClickHouseError


class Recorder:
    """MockTransport handler that records requests and replays a fixed response."""

    def __init__(self, status_code: int = 200, text: str = "", error: Exception = None):
        self.status_code = status_code
        self.text = text
        self.error = error
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return httpx.Response(self.status_code, text=self.text)


def client_for(handler, **kwargs) -> ClickHouseClient:
    return ClickHouseClient(
        "http://clickhouse:8123", database="lvlup", transport=httpx.MockTransport(handler), **kwargs
    )


class TestPing:
    """Tests for the liveness probe"""

    async def test_ping_ok(self):
        handler = Recorder(text="1\n")

        assert await client_for(handler).ping() is True
        assert handler.requests[0].content == b"SELECT 1"

    async def test_ping_unavailable(self):
        assert await client_for(Recorder(status_code=503)).ping() is False

    async def test_ping_connection_refused(self):
        handler = Recorder(error=httpx.ConnectError("connection refused"))

        assert await client_for(handler).ping() is False

    async def test_disabled_client_never_connects(self):
        handler = Recorder(text="1\n")
        client = client_for(handler, enabled=False)

        assert client.is_enabled() is False
        assert await client.ping() is False
        assert handler.requests == []


class TestRequests:
    """Tests for commands and inserts"""

    async def test_insert_sends_query_and_payload(self):
        handler = Recorder()
        payload = '{"id":"e-1"}\n{"id":"e-2"}\n'

        await client_for(handler).insert_json_each_row("events_raw", payload)

        request = handler.requests[0]
        assert request.method == "POST"
        assert request.url.params["query"] == "INSERT INTO events_raw FORMAT JSONEachRow"
        assert request.url.params["database"] == "lvlup"
        assert request.content == payload.encode("utf-8")
        assert request.headers["authorization"].startswith("Basic ")

    async def test_empty_insert_is_skipped(self):
        handler = Recorder()

        await client_for(handler).insert_json_each_row("events_raw", "")

        assert handler.requests == []

    async def test_command_returns_body(self):
        handler = Recorder(text="ok")

        assert await client_for(handler).command("CREATE TABLE t (x UInt8) ENGINE = Memory") == "ok"
        assert "query" not in handler.requests[0].url.params

    async def test_server_unavailable_raises(self):
        with pytest.raises(DestinationUnavailable):
            await client_for(Recorder(status_code=503)).command("SELECT 1")

    async def test_transport_error_raises(self):
        handler = Recorder(error=httpx.ConnectError("connection refused"))

        with pytest.raises(DestinationUnavailable):
            await client_for(handler).insert_json_each_row("events_raw", "{}")

    async def test_rejected_query_raises(self):
        handler = Recorder(status_code=400, text="Code: 62. Syntax error")

        with pytest.raises(ClickHouseError) as exc_info:
            await client_for(handler).command("SELEC 1")

        assert exc_info.value.status_code == 400
        assert "Syntax error" in str(exc_info.value)


class TestFromSettings:
    """Tests for settings wiring"""

    def test_from_settings(self):
        settings = ClickHouseSettings(enabled=True, url="http://ch:8123//", database="analytics", password="s3cret")

        client = ClickHouseClient.from_settings(settings)

        assert client.url == "http://ch:8123/"
        assert client.database == "analytics"
        assert client.password == "s3cret"
        assert client.timeout == 15.0
        assert client.is_enabled()

    def test_disabled_by_default(self):
        assert ClickHouseClient.from_settings(ClickHouseSettings()).is_enabled() is False
