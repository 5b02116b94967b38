"""
Shared fetch contract: rate limiting, retry with backoff and error
classification for every outbound request an adapter makes.
"""

import asyncio
import logging
import socket
from typing import Any, Awaitable, Callable, Collection, Optional, TypeVar

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from dayhot.config import FetchSettings
from dayhot.ingestion.errors import (
    ExhaustedRetries,
    FetchError,
    NonRetryableClientError,
    RetryableTransportError,
)
from dayhot.ingestion.rate_limiter import SlidingWindowRateLimiter

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSPORT_ERRORS = (
    httpx.TransportError,
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
    socket.gaierror,
)


def classify_error(
    exc: BaseException,
    retryable_statuses: Collection[int] = (),
    context: Optional[dict[str, Any]] = None,
) -> FetchError:
    """
    Map an arbitrary exception to a FetchError carrying the retry decision.

    - transport failures (timeouts, resets, refused connections, DNS) are retryable
    - HTTP 4xx is not retryable unless listed in ``retryable_statuses``
    - HTTP 5xx and anything unrecognised is retryable
    """
    if isinstance(exc, FetchError):
        return exc

    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        message = f"HTTP {status} from {exc.request.url}"
        if 400 <= status < 500 and status not in retryable_statuses:
            return NonRetryableClientError(message, status_code=status, context=context)
        return RetryableTransportError(message, status_code=status, context=context)

    if isinstance(exc, TRANSPORT_ERRORS):
        return RetryableTransportError(
            f"{type(exc).__name__}: {exc}", context=context
        )

    return RetryableTransportError(f"Unclassified error: {exc!r}", context=context)


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, FetchError) and exc.retryable


class FetchContract:
    """
    Retry policy and request pacing embedded by each adapter.

    Every attempt first acquires a slot from the adapter's own rate limiter,
    then runs the operation. Failures are classified; retryable ones are
    retried with exponential backoff (``base_delay * 2 ** (attempt - 1)``)
    until ``max_attempts`` is reached.
    """

    def __init__(
        self,
        name: str,
        rate_limiter: SlidingWindowRateLimiter,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        jitter: float = 0.0,
        retryable_statuses: Collection[int] = (),
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.name = name
        self.rate_limiter = rate_limiter
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter
        self.retryable_statuses = frozenset(retryable_statuses)
        self._sleep = sleep

    @classmethod
    def from_settings(
        cls,
        name: str,
        settings: FetchSettings,
        requests_per_minute: Optional[int] = None,
        retryable_statuses: Collection[int] = (),
        clock: Optional[Callable[[], float]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> "FetchContract":
        """Build a contract plus a fresh limiter from fetch settings."""
        limiter_kwargs: dict[str, Any] = {"sleep": sleep}
        if clock is not None:
            limiter_kwargs["clock"] = clock

        limiter = SlidingWindowRateLimiter(
            requests_per_minute=requests_per_minute,
            min_interval=settings.min_interval_seconds,
            **limiter_kwargs,
        )
        return cls(
            name,
            limiter,
            max_attempts=settings.max_attempts,
            base_delay=settings.base_delay_seconds,
            max_delay=settings.max_delay_seconds,
            jitter=settings.jitter_seconds,
            retryable_statuses=retryable_statuses,
            sleep=sleep,
        )

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retrying after failed attempt number ``attempt`` (no jitter)."""
        return min(self.base_delay * 2 ** (attempt - 1), self.max_delay)

    def _wait_strategy(self):
        wait = wait_exponential(multiplier=self.base_delay, exp_base=2, max=self.max_delay)
        if self.jitter > 0:
            wait = wait + wait_random(0, self.jitter)
        return wait

    def _log_retry(self, context: dict[str, Any]) -> Callable[[RetryCallState], None]:
        def before_sleep(retry_state: RetryCallState) -> None:
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
            logger.warning(
                f"{self.name}: attempt {retry_state.attempt_number}/{self.max_attempts} "
                f"failed ({exc}), retrying in {delay:.2f}s {context or ''}".rstrip()
            )
        return before_sleep

    async def _attempt(
        self,
        operation: Callable[[], Awaitable[T]],
        context: dict[str, Any],
    ) -> T:
        await self.rate_limiter.acquire()
        try:
            return await operation()
        except FetchError:
            raise
        except Exception as e:
            raise classify_error(e, self.retryable_statuses, context) from e

    async def execute_with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        context: Optional[dict[str, Any]] = None,
    ) -> T:
        """
        Run ``operation`` under the rate limiter with retries.

        Args:
            operation: Zero-argument coroutine function performing one request
            context: Extra details attached to raised errors and log lines

        Returns:
            Whatever the operation returns on its first successful attempt.

        Raises:
            NonRetryableClientError: immediately, on a non-retryable failure
            ExhaustedRetries: when every attempt failed with a retryable error
        """
        context = dict(context or {})
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=self._wait_strategy(),
            retry=retry_if_exception(_is_retryable),
            sleep=self._sleep,
            before_sleep=self._log_retry(context),
            reraise=False,
        )

        try:
            return await retrying(self._attempt, operation, context)
        except RetryError as e:
            last_attempt = e.last_attempt
            last_error = last_attempt.exception()
            raise ExhaustedRetries(
                f"{self.name}: giving up after {last_attempt.attempt_number} attempts: {last_error}",
                last_error,
                attempts=last_attempt.attempt_number,
                context=context,
            ) from last_error
