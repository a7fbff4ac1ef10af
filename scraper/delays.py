"""
Human-like pacing for scrape loops.

Delays are drawn from a normal distribution centred on the middle of the
requested window, which looks more like a person clicking through results
than uniform jitter does. The controller only produces and sleeps for
intervals; callers decide when to use them.
"""

import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

SleepFunc = Callable[[float], Awaitable[None]]


class DelayController:
    """Gaussian inter-record delays and periodic rest windows."""

    def __init__(self, sleep: Optional[SleepFunc] = None, rng: Optional[random.Random] = None):
        self._sleep = sleep or asyncio.sleep
        self._rng = rng or random.Random()

    def inter_record_delay(self, min_ms: float, max_ms: float) -> float:
        """
        Draw a delay in [min_ms, max_ms].

        Mean is the midpoint and the standard deviation a sixth of the width,
        so ~99.7% of draws land inside the window before clamping.
        """
        if max_ms < min_ms:
            raise ValueError(f"max_ms ({max_ms}) must be >= min_ms ({min_ms})")
        if max_ms == min_ms:
            return float(min_ms)

        mean = (min_ms + max_ms) / 2
        std_dev = (max_ms - min_ms) / 6
        delay = self._rng.gauss(mean, std_dev)
        return float(max(min_ms, min(max_ms, delay)))

    @staticmethod
    def rest_due(saved_count: int, rest_every: int) -> bool:
        return rest_every > 0 and saved_count > 0 and saved_count % rest_every == 0

    async def wait(self, min_ms: float, max_ms: float) -> float:
        """Sleep for one inter-record delay and return it in milliseconds."""
        delay = self.inter_record_delay(min_ms, max_ms)
        await self._sleep(delay / 1000)
        return delay

    async def rest_window(self, duration_ms: float) -> None:
        """Longer pause taken every N saved records."""
        if duration_ms <= 0:
            return
        logger.info(f"Rest window: {duration_ms / 1000:.1f} seconds")
        await self._sleep(duration_ms / 1000)
