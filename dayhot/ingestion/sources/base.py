"""
Adapter contract and shared result types for content sources.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional, Protocol, runtime_checkable

import httpx

from dayhot.ingestion.errors import FeedParseError
from dayhot.ingestion.fetch import FetchContract
from dayhot.models.article import NormalizedArticle, SourceType


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Pagination:
    """Page request for a source query (1-based pages)."""
    page: int = 1
    per_page: int = 10

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.per_page


@dataclass
class CrawlResult:
    """
    Outcome of one adapter call.

    Adapters report failure here instead of raising; ``sub_source_status``
    carries the per-feed outcome for adapters that fan out over several
    upstream endpoints.
    """
    success: bool
    items: list[NormalizedArticle] = field(default_factory=list)
    error: Optional[str] = None
    total_available: Optional[int] = None
    has_more: bool = False
    query: str = ""
    crawled_at: datetime = field(default_factory=utcnow)
    sub_source_status: dict[str, bool] = field(default_factory=dict)

    @classmethod
    def failure(cls, error: str, query: str = "") -> "CrawlResult":
        return cls(success=False, error=error, query=query)

    def __str__(self) -> str:
        status = "✓" if self.success else "✗"
        text = f"{status} {self.query or 'crawl'}: items={len(self.items)}"
        if self.error:
            text += f", error={self.error}"
        return text


@runtime_checkable
class SourceAdapter(Protocol):
    """
    What the collection pipeline needs from a source.

    Implementations own an HTTP client and a FetchContract (``fetcher``);
    they translate the upstream payload into NormalizedArticle and never
    raise out of ``fetch``/``fetch_latest`` for network or parse failures.
    """

    name: str
    source_type: SourceType
    fetcher: FetchContract

    async def fetch(self, query: str, pagination: Pagination) -> CrawlResult:
        ...

    async def fetch_latest(
        self,
        max_results: int,
        since: Optional[datetime] = None,
    ) -> CrawlResult:
        ...

    async def health_check(self) -> bool:
        ...

    async def aclose(self) -> None:
        ...


class HTTPAdapter:
    """
    Client plumbing for adapters that own one ``httpx.AsyncClient``.

    Subclasses set ``client`` and ``fetcher`` in ``__init__``; every request
    goes through ``fetcher.execute_with_retry``.
    """

    name: str
    client: httpx.AsyncClient
    fetcher: FetchContract

    async def _get(self, url: str, params: Optional[dict[str, Any]] = None) -> httpx.Response:
        """GET through the fetch contract; non-2xx responses become errors."""

        async def operation() -> httpx.Response:
            response = await self.client.get(url, params=params)
            response.raise_for_status()
            return response

        return await self.fetcher.execute_with_retry(
            operation,
            context={"source": self.name, "url": url, "params": params or {}},
        )

    async def _get_json(self, url: str, params: Optional[dict[str, Any]] = None) -> Any:
        response = await self._get(url, params)
        try:
            return response.json()
        except ValueError as e:
            raise FeedParseError(f"{self.name}: invalid JSON from {url}: {e}") from e

    async def aclose(self) -> None:
        await self.client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()
