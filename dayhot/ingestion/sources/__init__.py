"""
Content source adapters and the registry the collection pipeline builds
them from.
"""
from typing import Any, Callable, Sequence

from dayhot.config import FeedSource, Settings
from dayhot.ingestion.sources.arxiv import ArxivAdapter
from dayhot.ingestion.sources.base import CrawlResult, HTTPAdapter, Pagination, SourceAdapter
from dayhot.ingestion.sources.feeds import FeedAdapter
from dayhot.ingestion.sources.github import GitHubAdapter
from dayhot.ingestion.sources.stackexchange import StackExchangeAdapter

AdapterFactory = Callable[[], SourceAdapter]

PAPERS_WITH_CODE_NAME = "Papers with Code"
PAPERS_WITH_CODE_CATEGORY = "ML Papers"


def build_adapter_registry(
    settings: Settings,
    feeds: Sequence[FeedSource] = (),
    **adapter_kwargs: Any,
) -> dict[str, AdapterFactory]:
    """
    Map each source name to a factory producing a fresh adapter.

    Args:
        settings: Application settings (fetch policy, tokens, feed URLs)
        feeds: Feeds polled by the ``rss`` source
        adapter_kwargs: Passed to every adapter (``transport``, ``clock``, ``sleep``)
    """
    fetch = settings.fetch
    collection = settings.collection
    feed_kwargs = {
        "batch_size": collection.feed_batch_size,
        "batch_pause": collection.feed_batch_pause_seconds,
        **adapter_kwargs,
    }
    papers_with_code = FeedSource(
        name=PAPERS_WITH_CODE_NAME,
        url=settings.papers_with_code_feed_url,
        category=PAPERS_WITH_CODE_CATEGORY,
    )

    return {
        "arxiv": lambda: ArxivAdapter(fetch, **adapter_kwargs),
        "github": lambda: GitHubAdapter(fetch, token=settings.github_token, **adapter_kwargs),
        "rss": lambda: FeedAdapter(fetch, feeds=list(feeds), name="rss", **feed_kwargs),
        "papers-with-code": lambda: FeedAdapter(
            fetch, feeds=[papers_with_code], name="papers-with-code", **feed_kwargs
        ),
        "stackoverflow": lambda: StackExchangeAdapter(
            fetch, api_key=settings.stackexchange_key, **adapter_kwargs
        ),
    }


__all__ = [
    "AdapterFactory",
    "ArxivAdapter",
    "CrawlResult",
    "FeedAdapter",
    "GitHubAdapter",
    "HTTPAdapter",
    "Pagination",
    "SourceAdapter",
    "StackExchangeAdapter",
    "build_adapter_registry",
]
