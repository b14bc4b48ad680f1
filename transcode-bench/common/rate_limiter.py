"""
Process-wide throttle for external API calls.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class RateLimiter:
    """Caps the number of calls issued per wall-clock second.

    The window is the current integer second of ``clock()``. Once the calls
    issued inside it reach the ceiling, ``throttle`` sleeps until the next
    second begins and starts a fresh window. Callers are expected to issue
    batches sequentially from a single event loop, so no locking is done.
    """

    def __init__(self, clock: Callable[[], float] = time.time,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self._clock = clock
        self._sleep = sleep
        self._window: Optional[int] = None
        self._calls = 0

    @property
    def calls_in_window(self) -> int:
        return self._calls

    def reset(self) -> None:
        """Start a fresh window at the current second."""
        self._window = int(self._clock())
        self._calls = 0

    async def throttle(self, max_per_second: Optional[int] = None) -> None:
        """Account for one outbound call, sleeping first if the window is full.

        Args:
            max_per_second: Ceiling for the current window; None or 0 disables throttling
        """
        if not max_per_second:
            return

        now = self._clock()
        second = int(now)
        if self._window is None or second != self._window:
            self._window = second
            self._calls = 0

        if self._calls >= max_per_second:
            delay = (self._window + 1) - now
            logger.debug(f"Sleeping {delay:.3f}s because max API requests {max_per_second}/s would be exceeded")
            await self._sleep(max(delay, 0))
            self._window = max(int(self._clock()), self._window + 1)
            self._calls = 0

        self._calls += 1


# Shared by every executor in the process
default_rate_limiter = RateLimiter()
