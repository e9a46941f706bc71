"""
Request Rate Limiter.

Enforces a minimum spacing between page scans dispatched by the crawler,
regardless of how many scans run concurrently.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


@dataclass
class RateLimitMetrics:
    """Wait statistics for a rate limiter."""
    min_interval: float  # seconds
    total_requests: int
    delayed_requests: int
    total_wait_time: float  # seconds
    last_request_time: datetime | None


class RateLimiter:
    """
    Fixed-interval rate limiter.

    Every call to wait() returns no earlier than ``min_interval_ms`` after
    the previous call returned. Waiters are serialized by a lock so
    concurrent dispatchers are spaced out one after another.
    """

    def __init__(
        self,
        min_interval_ms: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize rate limiter.

        Args:
            min_interval_ms: Minimum time between requests (ms), 0 disables
            clock: Monotonic clock (seconds)
            sleep: Async sleep function
        """
        self.min_interval = max(0.0, min_interval_ms / 1000)
        self._clock = clock
        self._sleep = sleep

        self._last_request_time: float | None = None
        self._last_request_wall: datetime | None = None
        self._lock = asyncio.Lock()

        # Statistics
        self._total_requests = 0
        self._delayed_requests = 0
        self._total_wait_time = 0.0

    async def wait(self) -> float:
        """
        Wait until the next request may start.

        Returns:
            Time waited (seconds)
        """
        async with self._lock:
            now = self._clock()

            if self._last_request_time is not None:
                elapsed = now - self._last_request_time
                wait_time = max(0.0, self.min_interval - elapsed)
            else:
                wait_time = 0.0

            if wait_time > 0:
                logger.debug(f"Rate limiter: waiting {wait_time:.3f}s")
                await self._sleep(wait_time)
                self._total_wait_time += wait_time
                self._delayed_requests += 1

            self._last_request_time = self._clock()
            self._last_request_wall = datetime.now()
            self._total_requests += 1
            return wait_time

    def get_metrics(self) -> RateLimitMetrics:
        """Snapshot of wait statistics."""
        return RateLimitMetrics(
            min_interval=self.min_interval,
            total_requests=self._total_requests,
            delayed_requests=self._delayed_requests,
            total_wait_time=self._total_wait_time,
            last_request_time=self._last_request_wall,
        )

    def reset(self) -> None:
        """Forget the last request and clear statistics."""
        self._last_request_time = None
        self._last_request_wall = None
        self._total_requests = 0
        self._delayed_requests = 0
        self._total_wait_time = 0.0
