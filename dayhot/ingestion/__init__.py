"""
Ingestion framework: fetch contract, source adapters, deduplication and
the collection pipeline.

The pipeline and scheduler live in ``dayhot.ingestion.pipeline`` and
``dayhot.ingestion.scheduler`` and are imported from there.
"""
from dayhot.ingestion.dedup import TimeWindow, deduplicate, filter_by_window, natural_key, normalize_url
from dayhot.ingestion.errors import (
    ExhaustedRetries,
    FeedParseError,
    FetchError,
    IngestionError,
    NonRetryableClientError,
    RateLimitExceeded,
    RetryableTransportError,
    StoreUnavailableError,
)
from dayhot.ingestion.fetch import FetchContract, classify_error
from dayhot.ingestion.rate_limiter import SlidingWindowRateLimiter

__all__ = [
    "ExhaustedRetries",
    "FeedParseError",
    "FetchContract",
    "FetchError",
    "IngestionError",
    "NonRetryableClientError",
    "RateLimitExceeded",
    "RetryableTransportError",
    "SlidingWindowRateLimiter",
    "StoreUnavailableError",
    "TimeWindow",
    "classify_error",
    "deduplicate",
    "filter_by_window",
    "natural_key",
    "normalize_url",
]
