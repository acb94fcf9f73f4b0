"""
ClickHouse HTTP Client

Minimal async client for the ClickHouse HTTP interface: liveness probe, DDL
commands and JSONEachRow bulk inserts. Transport failures surface as
DestinationUnavailable so the sync engine can abort a cycle cleanly.
"""

from typing import Optional, Union

import httpx
import structlog

from lvlup.config.settings import ClickHouseSettings
from lvlup.exceptions import DestinationUnavailable, LvlupError

logger = structlog.get_logger(__name__)

PING_TIMEOUT_SECONDS = 5.0
UNAVAILABLE_STATUS = {502, 503, 504}


class ClickHouseError(LvlupError):
    """ClickHouse rejected a query."""

    def __init__(self, status_code: int, message: str):
        super().__init__(f"ClickHouse error {status_code}: {message[:500]}")
        self.status_code = status_code


class ClickHouseClient:
    """
    Async ClickHouse HTTP client.

    Example:
        client = ClickHouseClient.from_settings(settings.clickhouse)
        if await client.ping():
            await client.insert_json_each_row("events_raw", ndjson)
    """

    def __init__(
        self,
        url: str,
        database: str = "default",
        user: str = "default",
        password: str = "",
        timeout_ms: int = 15000,
        enabled: bool = True,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url.rstrip("/") + "/"
        self.database = database
        self.user = user
        self.password = password
        self.timeout = timeout_ms / 1000.0
        self.enabled = enabled
        self._transport = transport

    @classmethod
    def from_settings(
        cls, settings: ClickHouseSettings, transport: Optional[httpx.AsyncBaseTransport] = None
    ) -> "ClickHouseClient":
        return cls(
            url=settings.url,
            database=settings.database,
            user=settings.user,
            password=settings.password.get_secret_value(),
            timeout_ms=settings.http_timeout_ms,
            enabled=settings.enabled,
            transport=transport,
        )

    def is_enabled(self) -> bool:
        return bool(self.enabled and self.url.strip("/"))

    async def _post(
        self,
        body: Union[str, bytes],
        query: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> httpx.Response:
        params = {"database": self.database}
        if query is not None:
            params["query"] = query

        try:
            async with httpx.AsyncClient(
                timeout=timeout or self.timeout,
                auth=(self.user, self.password),
                transport=self._transport,
            ) as client:
                response = await client.post(self.url, params=params, content=body)
        except httpx.TransportError as e:
            raise DestinationUnavailable(f"ClickHouse unreachable: {type(e).__name__}: {e}") from e

        if response.status_code in UNAVAILABLE_STATUS:
            raise DestinationUnavailable(f"ClickHouse unavailable: HTTP {response.status_code}")
        if response.status_code >= 400:
            raise ClickHouseError(response.status_code, response.text)
        return response

    async def ping(self) -> bool:
        """SELECT 1 with a short timeout; False on any failure."""
        if not self.is_enabled():
            return False
        try:
            response = await self._post("SELECT 1", timeout=PING_TIMEOUT_SECONDS)
        except (DestinationUnavailable, ClickHouseError) as e:
            logger.warning("ClickHouse ping failed", error=str(e))
            return False
        return response.text.strip() == "1"

    async def command(self, sql: str) -> str:
        """Run a statement (DDL or query) and return the raw response body."""
        response = await self._post(sql)
        return response.text

    async def insert_json_each_row(self, table: str, payload: Union[str, bytes]) -> None:
        """Bulk insert newline-delimited JSON rows."""
        if not payload:
            return
        await self._post(payload, query=f"INSERT INTO {table} FORMAT JSONEachRow")
