"""Process-local rate limiters.

TokenBucket throttles outbound provider calls; RollingWindowLimiter caps how
many jobs the worker pool starts per window.
"""

import asyncio
import time
from collections import deque
from typing import Awaitable, Callable

import structlog

from clipforge.core import metrics

logger = structlog.get_logger()


class TokenBucket:
    """Token bucket: ``capacity`` burst, ``refill_rate`` tokens per second.

    ``acquire`` sleeps until a token is available instead of failing.
    """

    def __init__(
        self,
        capacity: int = 100,
        refill_rate: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if capacity <= 0 or refill_rate <= 0:
            raise ValueError("capacity and refill_rate must be positive")
        self.capacity = capacity
        self.refill_rate = refill_rate
        self._clock = clock
        self._sleep = sleep
        self._tokens = float(capacity)
        self._last_refill = clock()

    @property
    def tokens(self) -> float:
        return self._tokens

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self._last_refill
        if elapsed > 0:
            self._tokens = min(self.capacity, self._tokens + elapsed * self.refill_rate)
        self._last_refill = now

    async def acquire(self, name: str = "provider") -> float:
        """Take one token, sleeping if the bucket is empty.

        Returns:
            Seconds spent waiting
        """
        # Reserve synchronously; the balance goes negative while callers wait for
        # their tokens, so concurrent waiters queue up behind each other
        self._refill()
        self._tokens -= 1
        if self._tokens >= 0:
            return 0.0

        waited = -self._tokens / self.refill_rate
        metrics.RATE_LIMIT_WAITS.labels(limiter=name).inc()
        logger.info("rate_limit.waiting", limiter=name, wait_seconds=round(waited, 3))
        await self._sleep(waited)
        return waited


class RollingWindowLimiter:
    """At most ``max_events`` within any ``window`` seconds."""

    def __init__(
        self,
        max_events: int = 10,
        window: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_events = max_events
        self.window = window
        self._clock = clock
        self._events: deque[float] = deque()

    def _evict(self, now: float) -> None:
        while self._events and self._events[0] <= now - self.window:
            self._events.popleft()

    def try_acquire(self) -> bool:
        if self.time_until_available() > 0:
            return False
        self.record()
        return True

    def record(self) -> None:
        self._events.append(self._clock())

    def time_until_available(self) -> float:
        now = self._clock()
        self._evict(now)
        if len(self._events) < self.max_events:
            return 0.0
        return max(0.0, self._events[0] + self.window - now)
