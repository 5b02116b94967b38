"""
Stack Exchange (Stack Overflow) integration.

The API serves gzip-compressed JSON; responses pass through
GzipDecodingTransport so the body is plain JSON by the time it is parsed.

API Documentation: https://api.stackexchange.com/docs
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, Sequence

import httpx

from dayhot.config import FetchSettings
from dayhot.ingestion.errors import IngestionError
from dayhot.ingestion.fetch import FetchContract
from dayhot.ingestion.http import build_client
from dayhot.ingestion.sources.base import CrawlResult, HTTPAdapter, Pagination
from dayhot.ingestion.sources.feeds import clean_html
from dayhot.models.article import NormalizedArticle, SourceType, truncate

logger = logging.getLogger(__name__)

STACKEXCHANGE_API_URL = "https://api.stackexchange.com/2.3"
STACKOVERFLOW_CATEGORY = "Stack Overflow"
EXCERPT_LENGTH = 200

AI_TAGS = [
    "machine-learning",
    "tensorflow",
    "pytorch",
    "artificial-intelligence",
    "deep-learning",
]


class TagRotation:
    """Round-robin over a fixed list of tags."""

    def __init__(self, tags: Sequence[str]):
        if not tags:
            raise ValueError("TagRotation needs at least one tag")
        self.tags = tuple(tags)
        self._position = 0

    def next_tag(self) -> str:
        tag = self.tags[self._position % len(self.tags)]
        self._position += 1
        return tag


# Adapters are rebuilt for every collection run, so the rotation lives here
_shared_rotations: dict[tuple[str, ...], TagRotation] = {}


def shared_rotation(tags: Sequence[str]) -> TagRotation:
    """Process-wide rotation for ``tags``, created on first use."""
    key = tuple(tags)
    rotation = _shared_rotations.get(key)
    if rotation is None:
        rotation = _shared_rotations[key] = TagRotation(key)
    return rotation


class StackExchangeAdapter(HTTPAdapter):
    """
    Stack Exchange question adapter.

    ``fetch`` is a free-text search, ``fetch_by_tag`` lists questions for a
    tag, and ``fetch_latest`` walks the AI tags in a fixed rotation, one tag
    per call. Unless a rotation is passed in, adapters with the same tags
    share one, so successive runs continue where the last one stopped.
    """

    name = "stackoverflow"
    source_type = SourceType.QA_QUESTION

    def __init__(
        self,
        settings: Optional[FetchSettings] = None,
        site: str = "stackoverflow",
        api_key: Optional[str] = None,
        tags: Sequence[str] = AI_TAGS,
        rotation: Optional[TagRotation] = None,
        base_url: str = STACKEXCHANGE_API_URL,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Optional[Callable[[], float]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        settings = settings or FetchSettings()
        self.site = site
        self.api_key = api_key
        self.tags = list(tags)
        self.rotation = rotation or shared_rotation(self.tags)

        self.client = build_client(
            settings,
            base_url=base_url,
            transport=transport,
            decode_gzip=True,
            headers={"Accept-Encoding": "gzip"},
        )
        self.fetcher = FetchContract.from_settings(self.name, settings, clock=clock, sleep=sleep)

    def _params(self, **params: Any) -> dict[str, Any]:
        params["site"] = self.site
        if self.api_key:
            params["key"] = self.api_key
        return {key: value for key, value in params.items() if value is not None}

    async def fetch(self, query: str, pagination: Pagination) -> CrawlResult:
        """Free-text question search (``/search/advanced``)."""
        params = self._params(
            q=query,
            sort="relevance",
            order="desc",
            page=pagination.page,
            pagesize=pagination.per_page,
            filter="withbody",
        )
        return await self._fetch_questions("/search/advanced", params, query)

    async def fetch_by_tag(
        self,
        tag: str,
        pagination: Pagination = Pagination(),
        sort: str = "activity",
        order: str = "desc",
        since: Optional[datetime] = None,
    ) -> CrawlResult:
        """Questions carrying ``tag`` (``/questions``)."""
        params = self._params(
            tagged=tag,
            sort=sort,
            order=order,
            page=pagination.page,
            pagesize=pagination.per_page,
            filter="withbody",
            fromdate=int(since.timestamp()) if since else None,
        )
        return await self._fetch_questions("/questions", params, tag)

    async def fetch_latest(
        self,
        max_results: int,
        since: Optional[datetime] = None,
    ) -> CrawlResult:
        """Most active questions for the next tag in the rotation."""
        tag = self.rotation.next_tag()
        logger.info(f"Fetching Stack Overflow questions tagged {tag}")
        return await self.fetch_by_tag(tag, Pagination(1, max_results), since=since)

    async def answers(self, question_id: int, page_size: int = 10) -> list[dict[str, Any]]:
        """
        Top-voted answers of a question.

        Raises:
            IngestionError: if the answers cannot be fetched
        """
        params = self._params(sort="votes", order="desc", pagesize=page_size, filter="withbody")
        data = await self._get_json(f"/questions/{question_id}/answers", params)

        answers = []
        for item in data.get("items") or []:
            owner = item.get("owner") or {}
            answers.append({
                "answer_id": item.get("answer_id"),
                "question_id": item.get("question_id"),
                "body": item.get("body") or "",
                "score": item.get("score", 0),
                "is_accepted": item.get("is_accepted", False),
                "author": owner.get("display_name") or "Unknown",
                "published_at": self._epoch(item.get("creation_date")),
                "updated_at": self._epoch(item.get("last_activity_date")),
            })
        return answers

    async def check_quota(self) -> dict[str, int]:
        """Remaining daily API quota for this client."""
        data = await self._get_json("/info", self._params())
        return {
            "quota_max": data.get("quota_max", 0),
            "quota_remaining": data.get("quota_remaining", 0),
        }

    async def health_check(self) -> bool:
        try:
            quota = await self.check_quota()
        except IngestionError as e:
            logger.warning(f"Stack Exchange health check failed: {e}")
            return False
        return quota["quota_remaining"] > 0

    async def _fetch_questions(self, path: str, params: dict[str, Any], query: str) -> CrawlResult:
        try:
            data = await self._get_json(path, params)
        except IngestionError as e:
            logger.error(f"Stack Exchange query {query!r} failed: {e}")
            return CrawlResult.failure(str(e), query=query)

        if "quota_remaining" in data:
            logger.debug(f"Stack Exchange quota remaining: {data['quota_remaining']}")

        items = []
        for question in data.get("items") or []:
            try:
                article = self._parse_question(question)
            except ValueError as e:
                logger.warning(f"Failed to parse question: {e}")
                continue
            if article:
                items.append(article)

        return CrawlResult(
            success=True,
            items=items,
            total_available=data.get("total", len(items)),
            has_more=bool(data.get("has_more", False)),
            query=query,
        )

    def _parse_question(self, item: dict[str, Any]) -> Optional[NormalizedArticle]:
        """Map a question payload; questions without a creation date are skipped."""
        published_at = self._epoch(item.get("creation_date"))
        title = clean_html(item.get("title"))
        if published_at is None or not title:
            return None

        body = item.get("body") or ""
        owner = item.get("owner") or {}

        return NormalizedArticle.create(
            title=title,
            summary_text=truncate(clean_html(body), EXCERPT_LENGTH),
            source_url=item.get("link") or "",
            author=owner.get("display_name") or "Unknown",
            published_at=published_at,
            category=STACKOVERFLOW_CATEGORY,
            tags=item.get("tags") or [],
            source_type=self.source_type,
            fingerprint_body=body,
            metadata={
                "question_id": item.get("question_id"),
                "score": item.get("score", 0),
                "view_count": item.get("view_count", 0),
                "answer_count": item.get("answer_count", 0),
                "is_answered": item.get("is_answered", False),
                "has_accepted_answer": bool(item.get("accepted_answer_id")),
                "last_activity": self._iso(item.get("last_activity_date")),
                "owner": {
                    "user_id": owner.get("user_id"),
                    "display_name": owner.get("display_name"),
                    "reputation": owner.get("reputation", 0),
                },
            },
        )

    @staticmethod
    def _epoch(value: Any) -> Optional[datetime]:
        if value is None:
            return None
        try:
            return datetime.fromtimestamp(int(value), tz=timezone.utc)
        except (TypeError, ValueError, OverflowError, OSError):
            return None

    @classmethod
    def _iso(cls, value: Any) -> Optional[str]:
        parsed = cls._epoch(value)
        return parsed.isoformat() if parsed else None
