"""BurstGuard: minimum spacing between consecutive calls to one provider."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)

DEFAULT_MIN_INTERVAL = 0.25  # seconds


class BurstGuard:
    """Space calls to the same provider key at least ``min_interval`` apart.

    The next slot is reserved (the recorded timestamp is advanced to
    ``now + delay``) before sleeping, so concurrent callers queue up at
    successive slots instead of all waking at the same moment. Keys are
    independent of each other.
    """

    def __init__(
        self,
        min_interval: float = DEFAULT_MIN_INTERVAL,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if min_interval < 0:
            raise ValueError("min_interval must be >= 0")
        self.min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self._last: dict[str, float] = {}

    async def wait(self, key: str) -> float:
        """Wait for the next free slot for *key*. Returns the delay applied."""
        now = self._clock()
        last = self._last.get(key)
        if last is not None and now - last < self.min_interval:
            delay = self.min_interval - (now - last)
            self._last[key] = now + delay
            logger.debug(f"[burst] {key}: spacing call by {delay * 1000:.0f}ms")
            await self._sleep(delay)
            return delay
        self._last[key] = now
        return 0.0
