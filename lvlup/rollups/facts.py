"""
Raw Fact Streaming and Parsing

Forward-only reads of raw facts for one [start, end) window, plus the
normalization rules shared by every rollup domain: dimension values, level
identifiers, session durations and revenue amounts.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_EVEN
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, TypeVar

from sqlalchemy import Select
from sqlalchemy.ext.asyncio import AsyncSession

from lvlup.exceptions import MalformedRawFact

T = TypeVar("T")

IN_CLAUSE_BATCH = 500


@dataclass(frozen=True)
class Dimensions:
    """Platform, country and app version of a fact, '' when missing."""
    platform: str = ""
    country_code: str = ""
    app_version: str = ""

    @classmethod
    def of(cls, row: Any) -> "Dimensions":
        return cls(
            dim(getattr(row, "platform", None)),
            dim(getattr(row, "country_code", None)),
            dim(getattr(row, "app_version", None)),
        )

    def as_dict(self) -> Dict[str, str]:
        return {
            "platform": self.platform,
            "country_code": self.country_code,
            "app_version": self.app_version,
        }


def dim(value: Any) -> str:
    """Normalize a dimension value: None becomes '', everything else a string."""
    if value is None:
        return ""
    return str(value)


async def stream_rows(session: AsyncSession, stmt: Select, batch_size: int = 5000) -> AsyncIterator[Any]:
    """Yield rows of a select without materializing the full result."""
    result = await session.stream(stmt.execution_options(yield_per=batch_size))
    async for row in result:
        yield row


def batched(values: Iterable[T], size: int = IN_CLAUSE_BATCH) -> Iterable[List[T]]:
    """Split values into lists small enough for an IN clause."""
    batch: List[T] = []
    for value in values:
        batch.append(value)
        if len(batch) >= size:
            yield batch
            batch = []
    if batch:
        yield batch


# =============================================================================
# FIELD PARSERS
# =============================================================================

def parse_level_id(fact_id: str, properties: Optional[dict]) -> int:
    """
    Integer levelId from an event's properties.

    Raises:
        MalformedRawFact: If levelId is missing or not an integer
    """
    if not isinstance(properties, dict) or properties.get("levelId") is None:
        raise MalformedRawFact(fact_id, "missing levelId")
    value = properties["levelId"]
    if isinstance(value, bool):
        raise MalformedRawFact(fact_id, f"invalid levelId {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    raise MalformedRawFact(fact_id, f"invalid levelId {value!r}")


def has_boosters(properties: Optional[dict]) -> bool:
    """A completion used boosters when it carries a non-empty boosters list."""
    if not isinstance(properties, dict):
        return False
    boosters = properties.get("boosters")
    return isinstance(boosters, (list, tuple)) and len(boosters) > 0


def purchased_after_fail(properties: Optional[dict]) -> bool:
    if not isinstance(properties, dict):
        return False
    return bool(properties.get("purchaseAfterFail") or properties.get("madePurchaseAfterFail"))


def session_seconds(
    duration: Optional[int],
    start_time: datetime,
    end_time: Optional[datetime],
    last_heartbeat: Optional[datetime],
) -> int:
    """
    Session length in whole seconds.

    The reported duration wins when positive; otherwise the span from start
    to last heartbeat (or end time), clamped at zero.
    """
    if duration is not None and duration > 0:
        return int(duration)
    finished = last_heartbeat or end_time
    if finished is None:
        return 0
    return max(0, int((finished - start_time) // timedelta(seconds=1)))


def to_micros(fact_id: str, amount: Any) -> int:
    """
    Exact integer micro-USD for a revenue amount.

    Raises:
        MalformedRawFact: If the amount is missing or not finite
    """
    if amount is None:
        raise MalformedRawFact(fact_id, "missing revenue amount")
    try:
        value = Decimal(str(amount))
    except ArithmeticError:
        raise MalformedRawFact(fact_id, f"invalid revenue amount {amount!r}")
    if not value.is_finite():
        raise MalformedRawFact(fact_id, f"non-finite revenue amount {amount!r}")
    return int(value.scaleb(6).to_integral_value(rounding=ROUND_HALF_EVEN))


def duration_ms(start: datetime, end: datetime) -> int:
    """Exact non-negative millisecond delta."""
    return max(0, (end - start) // timedelta(milliseconds=1))


def to_int(value: Any) -> int:
    """Aggregate results come back as int, Decimal or None depending on backend."""
    if value is None:
        return 0
    return int(value)
