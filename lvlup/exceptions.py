"""
Aggregation Engine Exceptions

Error taxonomy shared by the rollup, sync and locking layers.

- LockNotAcquired: normal skip signal, another instance holds the job lock
- RollupFailure: one (domain, game, day) unit failed; isolated and reported
- DestinationUnavailable: the analytical store cannot be reached; the sync
  cycle stops and is retried on the next tick
- MalformedRawFact: a raw record misses a required attribute; skipped
- ConfigurationError: invalid settings, fatal at startup
"""

from datetime import date
from typing import Optional


class LvlupError(Exception):
    """Base exception for all aggregation engine errors."""


class ConfigurationError(LvlupError):
    """Invalid or unsupported configuration."""


class LockNotAcquired(LvlupError):
    """
    The named job lock is held by another runner.

    Not an error condition: callers log it at info level and skip the run.
    """

    def __init__(self, job_name: str):
        super().__init__(f"Lock for job '{job_name}' is held elsewhere")
        self.job_name = job_name


class RollupFailure(LvlupError):
    """A single (domain, game, day) aggregation unit failed."""

    def __init__(self, domain: str, game_id: str, day: Optional[date], cause: BaseException):
        where = f"{domain}/{game_id}" + (f"/{day.isoformat()}" if day else "")
        super().__init__(f"Rollup failed for {where}: {type(cause).__name__}: {cause}")
        self.domain = domain
        self.game_id = game_id
        self.day = day
        self.cause = cause


class DestinationUnavailable(LvlupError):
    """The analytical store is disabled or unreachable."""


class MalformedRawFact(LvlupError):
    """
    A raw fact lacks a required attribute.

    Raised by fact parsers; the record is skipped and counted, the batch
    continues.
    """

    def __init__(self, fact_id: str, reason: str):
        super().__init__(f"Malformed raw fact {fact_id}: {reason}")
        self.fact_id = fact_id
        self.reason = reason
