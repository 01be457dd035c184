"""Sliding-window rate limiter for remote API calls and download starts."""

import asyncio
import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable
from typing import Any

logger = logging.getLogger(__name__)

SECOND_WINDOW = 1.0
MINUTE_WINDOW = 60.0


class RateLimiter:
    """
    Blocks callers until a permit is available under both windows.

    Requests are never dropped: ``acquire`` waits as long as needed. A small
    safety buffer is added to every wait so that clock skew against the
    remote side doesn't push us over the limit.
    """

    def __init__(
        self,
        per_second: int = 5,
        per_minute: int = 40,
        buffer_seconds: float = 0.1,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if per_second < 1 or per_minute < 1:
            raise ValueError("Rate limits must be positive")
        self.per_second = per_second
        self.per_minute = per_minute
        self.buffer_seconds = buffer_seconds
        self._clock = clock
        self._sleep = sleep
        self._timestamps: deque[float] = deque()
        self._lock = asyncio.Lock()
        self._total_acquired = 0
        self._total_wait = 0.0

    def _prune(self, now: float) -> None:
        while self._timestamps and now - self._timestamps[0] >= MINUTE_WINDOW:
            self._timestamps.popleft()

    def _in_last_second(self, now: float) -> list[float]:
        return [ts for ts in self._timestamps if now - ts < SECOND_WINDOW]

    def _required_wait(self, now: float) -> float:
        self._prune(now)
        wait = 0.0

        recent = self._in_last_second(now)
        if len(recent) >= self.per_second:
            wait = max(wait, recent[0] + SECOND_WINDOW - now + self.buffer_seconds)

        if len(self._timestamps) >= self.per_minute:
            wait = max(wait, self._timestamps[0] + MINUTE_WINDOW - now + self.buffer_seconds)

        return wait

    async def acquire(self) -> float:
        """
        Wait for a permit.

        Returns:
            Seconds spent waiting.
        """
        waited = 0.0
        async with self._lock:
            while True:
                wait = self._required_wait(self._clock())
                if wait <= 0:
                    break
                logger.debug("Rate limit reached, waiting %.2fs", wait)
                await self._sleep(wait)
                waited += wait

            self._timestamps.append(self._clock())
            self._total_acquired += 1
            self._total_wait += waited
        return waited

    def reset(self) -> None:
        """Forget all recorded requests."""
        self._timestamps.clear()

    def stats(self) -> dict[str, Any]:
        now = self._clock()
        self._prune(now)
        return {
            "requests_last_second": len(self._in_last_second(now)),
            "requests_last_minute": len(self._timestamps),
            "per_second": self.per_second,
            "per_minute": self.per_minute,
            "total_acquired": self._total_acquired,
            "total_wait_seconds": round(self._total_wait, 3),
        }
