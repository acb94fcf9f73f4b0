"""
Throttle Controller

Advisory pacing hook called between heavy chunks: an optional garbage
collection pass and an optional sleep. Never required for correctness.
"""

import asyncio
import gc

import structlog

from lvlup.config.settings import AggregationSettings

logger = structlog.get_logger(__name__)


class ThrottleController:
    """
    Pause between chunks to smooth memory and CPU peaks.

    Example:
        throttle = ThrottleController(force_gc=True, pause_ms=250)
        await throttle.pause("level_metrics:window")
    """

    def __init__(self, force_gc: bool = False, pause_ms: int = 0):
        self.force_gc = force_gc
        self.pause_seconds = max(0, pause_ms) / 1000.0
        self.pauses = 0

    @classmethod
    def from_settings(cls, settings: AggregationSettings) -> "ThrottleController":
        return cls(force_gc=settings.force_gc, pause_ms=settings.pause_ms)

    @property
    def enabled(self) -> bool:
        return self.force_gc or self.pause_seconds > 0

    async def pause(self, reason: str = "") -> None:
        self.pauses += 1
        if not self.enabled:
            return
        if self.force_gc:
            collected = gc.collect()
            logger.debug("Forced garbage collection", reason=reason, collected=collected)
        if self.pause_seconds:
            await asyncio.sleep(self.pause_seconds)
