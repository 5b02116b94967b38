"""
RSS/Atom feed aggregation.

Handles fetching and parsing RSS 2.0, RSS 1.0 (RDF) and Atom feeds. Redirects
are followed and gzip payloads decoded transparently; the list of feeds is
always supplied by the caller.
"""

import asyncio
import html
import logging
import math
import re
from datetime import datetime
from email.utils import parsedate_to_datetime
from typing import Awaitable, Callable, Optional, Sequence
from urllib.parse import urljoin
from xml.etree import ElementTree

import httpx

from dayhot.config import FeedSource, FetchSettings
from dayhot.ingestion.errors import FeedParseError, IngestionError
from dayhot.ingestion.fetch import FetchContract
from dayhot.ingestion.http import build_client
from dayhot.ingestion.sources.base import CrawlResult, HTTPAdapter, Pagination
from dayhot.models.article import NormalizedArticle, SourceType, flatten_tag, truncate

logger = logging.getLogger(__name__)

SUMMARY_LENGTH = 500
DEFAULT_BATCH_SIZE = 5

# XML namespaces
ATOM_NS = "{http://www.w3.org/2005/Atom}"
RDF_NS = "{http://www.w3.org/1999/02/22-rdf-syntax-ns#}"
RSS1_NS = "{http://purl.org/rss/1.0/}"
DC_NS = "{http://purl.org/dc/elements/1.1/}"
CONTENT_NS = "{http://purl.org/rss/1.0/modules/content/}"


def clean_html(text: Optional[str]) -> str:
    """Strip HTML tags and entities, collapsing whitespace."""
    if not text:
        return ""
    clean = re.sub(r"<[^>]+>", " ", text)
    clean = html.unescape(clean)
    return " ".join(clean.split())


def parse_feed_date(date_str: Optional[str]) -> Optional[datetime]:
    """Parse RFC 822 (RSS) or ISO 8601 (Atom, Dublin Core) dates."""
    if not date_str or not date_str.strip():
        return None
    date_str = date_str.strip()

    try:
        return parsedate_to_datetime(date_str)
    except (ValueError, TypeError, IndexError):
        pass

    try:
        return datetime.fromisoformat(date_str.replace("Z", "+00:00"))
    except ValueError:
        return None


def element_tag(element: ElementTree.Element) -> Optional[str]:
    """Primary text of a category element, falling back to term/label attributes."""
    values = dict(element.attrib)
    text = (element.text or "").strip()
    if text:
        values["_"] = text
    return flatten_tag(values)


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


class FeedAdapter(HTTPAdapter):
    """
    RSS/Atom feed adapter.

    Each instance polls the feeds it was constructed with; per-feed outcomes
    are reported in ``CrawlResult.sub_source_status`` keyed by feed name.
    """

    source_type = SourceType.FEED_ITEM

    def __init__(
        self,
        settings: Optional[FetchSettings] = None,
        feeds: Sequence[FeedSource] = (),
        name: str = "rss",
        batch_size: int = DEFAULT_BATCH_SIZE,
        batch_pause: float = 1.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Optional[Callable[[], float]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        settings = settings or FetchSettings()
        self.name = name
        self.feeds = list(feeds)
        self.batch_size = max(1, batch_size)
        self.batch_pause = batch_pause
        self._sleep = sleep

        self.client = build_client(
            settings,
            transport=transport,
            decode_gzip=True,
            follow_redirects=True,
            headers={
                "Accept": "application/rss+xml, application/atom+xml, application/xml;q=0.9, */*;q=0.8",
            },
        )
        self.fetcher = FetchContract.from_settings(self.name, settings, clock=clock, sleep=sleep)

    async def fetch(self, query: str, pagination: Pagination) -> CrawlResult:
        """
        Fetch a single feed by URL.

        The feed is matched against the configured feeds to pick up its name
        and category; unknown URLs get the default category.
        """
        feed = next((f for f in self.feeds if f.url == query), None)
        feed = feed or FeedSource(name=query, url=query)
        result = await self.fetch_feed(feed, limit=pagination.offset + pagination.per_page)
        if result.success:
            result.items = result.items[pagination.offset:]
        return result

    async def fetch_latest(
        self,
        max_results: int,
        since: Optional[datetime] = None,
    ) -> CrawlResult:
        """Fetch every configured feed with an even share of ``max_results``."""
        if not self.feeds:
            logger.warning(f"{self.name}: no feeds configured")
            return CrawlResult(success=True, query=self.name)

        per_feed = max(1, math.ceil(max_results / len(self.feeds)))
        result = await self.fetch_many(self.feeds, per_feed_limit=per_feed)
        if since is not None:
            result.items = [item for item in result.items if item.published_at >= since]
        return result

    async def fetch_many(
        self,
        feeds: Sequence[FeedSource],
        per_feed_limit: int,
        batch_size: Optional[int] = None,
        batch_pause: Optional[float] = None,
    ) -> CrawlResult:
        """
        Fetch several feeds in concurrent batches.

        Each feed fails independently. The combined result succeeds when at
        least one feed did.
        """
        batch_size = batch_size or self.batch_size
        batch_pause = self.batch_pause if batch_pause is None else batch_pause

        items: list[NormalizedArticle] = []
        status: dict[str, bool] = {}
        errors = []

        for start in range(0, len(feeds), batch_size):
            if start > 0 and batch_pause > 0:
                await self._sleep(batch_pause)

            batch = feeds[start:start + batch_size]
            results = await asyncio.gather(
                *(self.fetch_feed(feed, limit=per_feed_limit) for feed in batch),
                return_exceptions=True,
            )

            for feed, result in zip(batch, results):
                if isinstance(result, BaseException):
                    logger.error(f"Feed {feed.name} raised: {result}")
                    status[feed.name] = False
                    errors.append(f"{feed.name}: {result}")
                    continue
                status[feed.name] = result.success
                if result.success:
                    items.extend(result.items)
                else:
                    errors.append(f"{feed.name}: {result.error}")

        succeeded = any(status.values()) or not feeds
        logger.info(
            f"{self.name}: {sum(status.values())}/{len(feeds)} feeds succeeded, {len(items)} items"
        )
        return CrawlResult(
            success=succeeded,
            items=items,
            error="; ".join(errors) or None,
            total_available=len(items),
            query=self.name,
            sub_source_status=status,
        )

    async def fetch_feed(self, feed: FeedSource, limit: Optional[int] = None) -> CrawlResult:
        """Fetch and parse a single feed."""
        try:
            response = await self._get(feed.url)
            items = self.parse_feed(response.content, feed, base_url=str(response.url))
        except IngestionError as e:
            logger.warning(f"Error fetching feed {feed.name}: {e}")
            return CrawlResult.failure(str(e), query=feed.url)

        total = len(items)
        if limit is not None:
            items = items[:limit]
        logger.debug(f"Fetched {len(items)} articles from {feed.name}")
        return CrawlResult(
            success=True,
            items=items,
            total_available=total,
            has_more=total > len(items),
            query=feed.url,
        )

    async def health_check(self) -> bool:
        if not self.feeds:
            return False
        result = await self.fetch_feed(self.feeds[0], limit=1)
        return result.success

    # =========================================================================
    # Parsing
    # =========================================================================

    def parse_feed(
        self,
        content: bytes,
        feed: FeedSource,
        base_url: Optional[str] = None,
    ) -> list[NormalizedArticle]:
        """
        Parse a feed document, detecting the format from its root element.

        Raises:
            FeedParseError: if the payload is not XML or not a known feed format
        """
        try:
            root = ElementTree.fromstring(content.lstrip())
        except ElementTree.ParseError as e:
            raise FeedParseError(f"Failed to parse feed {feed.name}: {e}") from e

        base_url = base_url or feed.url
        root_name = _local_name(root.tag).lower()

        if root_name == "rss":
            entries = root.findall("./channel/item")
            parse = self._parse_rss_item
        elif root_name == "rdf":
            entries = root.findall(f"{RSS1_NS}item") or root.findall(".//item")
            parse = self._parse_rss_item
        elif root_name == "feed":
            entries = root.findall(f"{ATOM_NS}entry")
            parse = self._parse_atom_entry
        else:
            raise FeedParseError(f"Unrecognised feed format for {feed.name}: <{root_name}>")

        articles = []
        dropped = 0
        for entry in entries:
            try:
                article = parse(entry, feed, base_url)
            except ValueError as e:
                logger.warning(f"Failed to parse entry from {feed.name}: {e}")
                article = None
            if article is None:
                dropped += 1
                continue
            articles.append(article)

        if dropped:
            logger.debug(f"Dropped {dropped} entries from {feed.name}")
        return articles

    def _parse_rss_item(
        self,
        item: ElementTree.Element,
        feed: FeedSource,
        base_url: str,
    ) -> Optional[NormalizedArticle]:
        """Parse an RSS 2.0 or RSS 1.0 item (elements may be namespaced)."""

        def text(*names: str) -> str:
            for name in names:
                value = item.findtext(name)
                if value and value.strip():
                    return value.strip()
            return ""

        title = text("title", f"{RSS1_NS}title")
        link = text("link", f"{RSS1_NS}link", "guid")
        published_at = parse_feed_date(text("pubDate", f"{DC_NS}date"))
        if not title or not link or published_at is None:
            return None

        body = clean_html(
            text(f"{CONTENT_NS}encoded") or text("description", f"{RSS1_NS}description")
        )
        categories = [
            element_tag(el)
            for el in item.findall("category") + item.findall(f"{DC_NS}subject")
        ]

        return self._build_article(
            feed,
            title=title,
            link=urljoin(base_url, link),
            body=body,
            author=text("author", f"{DC_NS}creator"),
            published_at=published_at,
            tags=categories,
            guid=text("guid") or item.get(f"{RDF_NS}about"),
        )

    def _parse_atom_entry(
        self,
        entry: ElementTree.Element,
        feed: FeedSource,
        base_url: str,
    ) -> Optional[NormalizedArticle]:
        """Parse a single Atom entry."""
        title = (entry.findtext(f"{ATOM_NS}title") or "").strip()

        link = None
        for link_elem in entry.findall(f"{ATOM_NS}link"):
            if link_elem.get("rel", "alternate") == "alternate" and link_elem.get("href"):
                link = link_elem.get("href")
                break
        entry_id = (entry.findtext(f"{ATOM_NS}id") or "").strip()
        link = link or entry_id

        published_at = parse_feed_date(
            entry.findtext(f"{ATOM_NS}published") or entry.findtext(f"{ATOM_NS}updated")
        )
        if not title or not link or published_at is None:
            return None

        body = clean_html(
            entry.findtext(f"{ATOM_NS}content") or entry.findtext(f"{ATOM_NS}summary")
        )
        authors = [
            name.strip()
            for name in (a.findtext(f"{ATOM_NS}name") for a in entry.findall(f"{ATOM_NS}author"))
            if name and name.strip()
        ]

        return self._build_article(
            feed,
            title=title,
            link=urljoin(base_url, link),
            body=body,
            author=", ".join(authors),
            published_at=published_at,
            tags=[element_tag(el) for el in entry.findall(f"{ATOM_NS}category")],
            guid=entry_id or None,
        )

    def _build_article(
        self,
        feed: FeedSource,
        *,
        title: str,
        link: str,
        body: str,
        author: str,
        published_at: datetime,
        tags: list[Optional[str]],
        guid: Optional[str],
    ) -> NormalizedArticle:
        return NormalizedArticle.create(
            title=title,
            summary_text=truncate(body, SUMMARY_LENGTH),
            source_url=link,
            author=author or feed.name,
            published_at=published_at,
            category=feed.category,
            tags=[tag for tag in tags if tag],
            source_type=self.source_type,
            fingerprint_body=body,
            metadata={"feed_name": feed.name, "feed_url": feed.url, "guid": guid},
        )
