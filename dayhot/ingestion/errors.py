"""
Error taxonomy for ingestion.

FetchError subclasses carry the retry decision made by the fetch contract;
everything else describes failures that stay local to one source or run.
"""
from typing import Any, Optional


class IngestionError(Exception):
    """Base class for all ingestion errors."""


class FetchError(IngestionError):
    """A network operation failed."""

    retryable: bool = True

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        context: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.context = dict(context or {})


class RetryableTransportError(FetchError):
    """Connectivity, timeout or server-side failure worth another attempt."""
    retryable = True


class NonRetryableClientError(FetchError):
    """The request itself is wrong (HTTP 4xx); retrying cannot help."""
    retryable = False


class RateLimitExceeded(FetchError):
    """The local rate limiter could not grant a slot within its max wait."""
    retryable = True


class ExhaustedRetries(FetchError):
    """Every attempt failed; wraps the last underlying error."""
    retryable = False

    def __init__(self, message: str, last_error: BaseException, *, attempts: int, **kwargs):
        super().__init__(
            message,
            status_code=getattr(last_error, "status_code", None),
            **kwargs,
        )
        self.last_error = last_error
        self.attempts = attempts


class FeedParseError(IngestionError):
    """An upstream payload could not be parsed."""


class StoreUnavailableError(IngestionError):
    """The persistent store could not be reached at startup."""
