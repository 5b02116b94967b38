"""
Rate limiting for API requests.

Each adapter owns one limiter; limiters are never shared between adapters.
"""

import asyncio
import logging
import time
from collections import deque
from typing import Awaitable, Callable, Optional

from dayhot.ingestion.errors import RateLimitExceeded

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 60.0


class SlidingWindowRateLimiter:
    """
    Sliding-window limiter with a minimum spacing between requests.

    Features:
    - Optional requests-per-minute ceiling over a trailing 60s window
    - Minimum delay since the previous request, even under the ceiling
    - Async-safe: concurrent callers of one adapter queue on a lock
    - Every granted slot is recorded at dispatch time, whatever the outcome
    """

    def __init__(
        self,
        requests_per_minute: Optional[int] = None,
        min_interval: float = 1.0,
        window_seconds: float = WINDOW_SECONDS,
        max_wait: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if requests_per_minute is not None and requests_per_minute < 1:
            raise ValueError("requests_per_minute must be positive")
        self.requests_per_minute = requests_per_minute
        self.min_interval = min_interval
        self.window_seconds = window_seconds
        self.max_wait = max_wait
        self._clock = clock
        self._sleep = sleep

        self._request_times: deque[float] = deque()
        self._last_request: Optional[float] = None
        self._request_count = 0
        self._lock = asyncio.Lock()

    def set_limit(self, requests_per_minute: Optional[int]):
        """Change the ceiling (None disables it)."""
        self.requests_per_minute = requests_per_minute

    def _prune(self, now: float):
        cutoff = now - self.window_seconds
        while self._request_times and self._request_times[0] <= cutoff:
            self._request_times.popleft()

    def _required_wait(self, now: float) -> float:
        """Seconds to wait before the next request may go out."""
        self._prune(now)
        wait = 0.0

        if self.requests_per_minute and len(self._request_times) >= self.requests_per_minute:
            oldest = self._request_times[0]
            wait = oldest + self.window_seconds - now

        if self._last_request is not None:
            wait = max(wait, self._last_request + self.min_interval - now)

        return max(wait, 0.0)

    async def acquire(self) -> float:
        """
        Wait until a request may be dispatched and record it.

        Returns:
            Total seconds spent waiting.

        Raises:
            RateLimitExceeded: if ``max_wait`` is set and would be exceeded.
        """
        waited = 0.0

        async with self._lock:
            while True:
                wait_seconds = self._required_wait(self._clock())
                if wait_seconds <= 0:
                    break

                if self.max_wait is not None and waited + wait_seconds > self.max_wait:
                    raise RateLimitExceeded(
                        f"rate limit wait of {wait_seconds:.1f}s exceeds max_wait={self.max_wait}s"
                    )

                logger.debug(f"Rate limited, waiting {wait_seconds:.2f}s")
                await self._sleep(wait_seconds)
                waited += wait_seconds

            now = self._clock()
            self._request_times.append(now)
            self._last_request = now
            self._request_count += 1

        return waited

    def get_status(self) -> dict:
        """Get current rate limit status."""
        now = self._clock()
        self._prune(now)
        used = len(self._request_times)

        return {
            "max_requests": self.requests_per_minute,
            "period_seconds": self.window_seconds,
            "current_requests": used,
            "available": (
                None if self.requests_per_minute is None
                else max(0, self.requests_per_minute - used)
            ),
            "total_requests": self._request_count,
        }
