"""
arXiv API integration.

arXiv provides free access to preprints in physics, mathematics,
computer science, and other fields. One query is issued per category.

API Documentation: https://info.arxiv.org/help/api/basics.html
"""

import asyncio
import logging
import math
import re
from datetime import datetime
from typing import Awaitable, Callable, Optional, Sequence
from xml.etree import ElementTree

import httpx

from dayhot.config import FetchSettings
from dayhot.ingestion.errors import FeedParseError, IngestionError
from dayhot.ingestion.fetch import FetchContract
from dayhot.ingestion.http import build_client
from dayhot.ingestion.sources.base import CrawlResult, HTTPAdapter, Pagination
from dayhot.models.article import NormalizedArticle, SourceType

logger = logging.getLogger(__name__)

ARXIV_API_URL = "http://export.arxiv.org/api/query"
ARXIV_REQUESTS_PER_MINUTE = 20

# arXiv category to readable label
CATEGORY_LABELS = {
    "cs.AI": "Artificial Intelligence",
    "cs.LG": "Machine Learning",
    "cs.CL": "Natural Language Processing",
    "cs.CV": "Computer Vision",
    "cs.NE": "Neural Networks",
    "cs.CR": "Cryptography and Security",
    "cs.DB": "Databases",
    "cs.IR": "Information Retrieval",
    "cs.RO": "Robotics",
    "stat.ML": "Statistical Machine Learning",
}

DEFAULT_CATEGORIES = ["cs.AI", "cs.LG", "cs.CL", "cs.CV", "cs.NE"]

FALLBACK_CATEGORY = "arXiv Paper"

# XML namespaces
ATOM_NS = "{http://www.w3.org/2005/Atom}"
ARXIV_NS = "{http://arxiv.org/schemas/atom}"
OPENSEARCH_NS = "{http://a9.com/-/spec/opensearch/1.1/}"

ARXIV_ID_PATTERN = re.compile(r"abs/(\d+\.\d+)")


def category_label(category: str) -> str:
    """Readable label for an arXiv category or ``cat:`` query."""
    if category.startswith("cat:"):
        category = category[4:]
    return CATEGORY_LABELS.get(category, category)


def parse_arxiv_date(date_str: Optional[str]) -> Optional[datetime]:
    """Parse arXiv timestamps (``2024-01-15T12:00:00Z``)."""
    if not date_str:
        return None
    try:
        return datetime.fromisoformat(date_str.strip().replace("Z", "+00:00"))
    except ValueError:
        return None


class ArxivAdapter(HTTPAdapter):
    """
    arXiv API adapter.

    Fetches preprints from arXiv's Atom feed API and maps each entry to a
    NormalizedArticle labelled with the category it was queried under.
    """

    name = "arxiv"
    source_type = SourceType.ACADEMIC_PAPER

    def __init__(
        self,
        settings: Optional[FetchSettings] = None,
        categories: Optional[Sequence[str]] = None,
        base_url: str = ARXIV_API_URL,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Optional[Callable[[], float]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        settings = settings or FetchSettings()
        self.base_url = base_url
        self.categories = list(categories or DEFAULT_CATEGORIES)
        self.client = build_client(settings, transport=transport)
        self.fetcher = FetchContract.from_settings(
            self.name,
            settings,
            requests_per_minute=ARXIV_REQUESTS_PER_MINUTE,
            clock=clock,
            sleep=sleep,
        )

    async def fetch(self, query: str, pagination: Pagination) -> CrawlResult:
        """
        Run one arXiv search query.

        Args:
            query: arXiv ``search_query`` (``cat:cs.AI``, ``all:transformers``...)
            pagination: Page to request

        Returns:
            CrawlResult with parsed papers, or success=False on failure
        """
        params = {
            "search_query": query,
            "start": pagination.offset,
            "max_results": pagination.per_page,
            "sortBy": "submittedDate",
            "sortOrder": "descending",
        }
        logger.info(f"Fetching arXiv papers: {query}, count: {pagination.per_page}")

        try:
            response = await self._get(self.base_url, params)
            items, total = self._parse_atom_feed(response.content, query)
        except IngestionError as e:
            logger.error(f"arXiv query {query!r} failed: {e}")
            return CrawlResult.failure(str(e), query=query)

        return CrawlResult(
            success=True,
            items=items,
            total_available=total,
            has_more=total is not None and pagination.offset + pagination.per_page < total,
            query=query,
        )

    async def fetch_latest(
        self,
        max_results: int,
        since: Optional[datetime] = None,
    ) -> CrawlResult:
        """
        Fetch the newest papers across the configured categories.

        The budget is split evenly across categories (rounded up). arXiv has
        no usable date filter, so ``since`` is applied client-side.
        """
        per_category = max(1, math.ceil(max_results / len(self.categories)))
        results = await self.fetch_latest_by_category(per_category)

        items: list[NormalizedArticle] = []
        errors = []
        total = 0
        for label, result in results.items():
            if not result.success:
                errors.append(f"{label}: {result.error}")
                continue
            total += result.total_available or 0
            items.extend(
                item for item in result.items
                if since is None or item.published_at >= since
            )

        succeeded = any(result.success for result in results.values())
        return CrawlResult(
            success=succeeded,
            items=items,
            error="; ".join(errors) or None,
            total_available=total,
            query=" OR ".join(f"cat:{c}" for c in self.categories),
            sub_source_status={label: result.success for label, result in results.items()},
        )

    async def fetch_latest_by_category(self, max_results: int = 50) -> dict[str, CrawlResult]:
        """Fetch the newest papers for each configured category, keyed by label."""
        results = {}
        for category in self.categories:
            label = category_label(category)
            logger.info(f"Fetching {label} papers...")
            results[label] = await self.fetch(f"cat:{category}", Pagination(1, max_results))
        return results

    async def search_papers(self, keywords: str, max_results: int = 30) -> CrawlResult:
        """Search papers by keywords."""
        return await self.fetch(f"all:{keywords}", Pagination(1, max_results))

    async def author_papers(self, author_name: str, max_results: int = 50) -> CrawlResult:
        """Get papers by a specific author."""
        return await self.fetch(f'au:"{author_name}"', Pagination(1, max_results))

    async def health_check(self) -> bool:
        result = await self.fetch(f"cat:{self.categories[0]}", Pagination(1, 1))
        return result.success

    def _parse_atom_feed(
        self,
        xml_content: bytes,
        query: str,
    ) -> tuple[list[NormalizedArticle], Optional[int]]:
        """Parse an arXiv Atom feed into articles and the reported total."""
        try:
            root = ElementTree.fromstring(xml_content)
        except ElementTree.ParseError as e:
            raise FeedParseError(f"Failed to parse arXiv XML: {e}") from e

        if root.tag != f"{ATOM_NS}feed":
            raise FeedParseError("Invalid arXiv API response: missing feed element")

        total_text = root.findtext(f"{OPENSEARCH_NS}totalResults")
        try:
            total = int(total_text) if total_text else None
        except ValueError:
            total = None

        articles = []
        for entry in root.findall(f"{ATOM_NS}entry"):
            try:
                article = self._parse_entry(entry, query)
            except ValueError as e:
                logger.warning(f"Failed to parse arXiv entry: {e}")
                continue
            if article:
                articles.append(article)

        if total is None:
            total = len(articles)

        logger.info(f"Fetched {len(articles)} arXiv papers (total: {total})")
        return articles, total

    def _parse_entry(self, entry: ElementTree.Element, query: str) -> Optional[NormalizedArticle]:
        """Parse a single Atom entry; entries without title or date are skipped."""
        entry_id = (entry.findtext(f"{ATOM_NS}id") or "").strip()
        title = entry.findtext(f"{ATOM_NS}title") or ""
        published_at = parse_arxiv_date(entry.findtext(f"{ATOM_NS}published"))

        if not title.strip() or published_at is None:
            logger.debug(f"Skipping arXiv entry without title or date: {entry_id}")
            return None

        arxiv_id = self._extract_arxiv_id(entry_id)
        abstract_url = f"https://arxiv.org/abs/{arxiv_id}" if arxiv_id else entry_id

        summary = " ".join((entry.findtext(f"{ATOM_NS}summary") or "").split())

        authors = [
            name.strip()
            for name in (a.findtext(f"{ATOM_NS}name") for a in entry.findall(f"{ATOM_NS}author"))
            if name and name.strip()
        ]

        categories = [
            c.get("term") for c in entry.findall(f"{ATOM_NS}category") if c.get("term")
        ]
        primary = entry.find(f"{ARXIV_NS}primary_category")
        primary_category = primary.get("term") if primary is not None else None
        primary_category = primary_category or (categories[0] if categories else "")

        pdf_url = None
        for link in entry.findall(f"{ATOM_NS}link"):
            if link.get("title") == "pdf":
                pdf_url = link.get("href")
                break

        if query.startswith("cat:"):
            category = category_label(query)
        elif primary_category:
            category = category_label(primary_category)
        else:
            category = FALLBACK_CATEGORY

        return NormalizedArticle.create(
            title=title,
            summary_text=summary,
            source_url=abstract_url,
            author=", ".join(authors),
            published_at=published_at,
            category=category,
            tags=categories,
            source_type=self.source_type,
            metadata={
                "arxiv_id": arxiv_id,
                "authors": authors,
                "abstract_url": abstract_url,
                "pdf_url": pdf_url,
                "primary_category": primary_category,
                "updated": entry.findtext(f"{ATOM_NS}updated"),
                "doi": entry.findtext(f"{ARXIV_NS}doi"),
                "journal_ref": entry.findtext(f"{ARXIV_NS}journal_ref"),
                "comment": entry.findtext(f"{ARXIV_NS}comment"),
            },
        )

    def _extract_arxiv_id(self, entry_id: str) -> Optional[str]:
        """Extract the numeric arXiv ID from an entry URL (version suffix dropped)."""
        # Entry ID format: http://arxiv.org/abs/2401.12345v1
        match = ARXIV_ID_PATTERN.search(entry_id)
        return match.group(1) if match else None
