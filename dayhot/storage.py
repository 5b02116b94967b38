"""
Article store: idempotent upserts, category counts and the feed registry.

Every call opens its own session; nothing spans more than one call.
"""
import asyncio
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Sequence

import structlog
from sqlalchemy import func, or_, select, text, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from dayhot.config import FeedSource
from dayhot.ingestion.dedup import natural_key
from dayhot.models.article import (
    MAX_CATEGORY_LENGTH,
    MAX_SUMMARY_LENGTH,
    MAX_TITLE_LENGTH,
    NormalizedArticle,
    SourceType,
    truncate,
)
from dayhot.models.database import Database, DBArticle, DBFeedSource

logger = structlog.get_logger()


class UpsertOutcome(str, Enum):
    INSERTED = "inserted"
    UPDATED = "updated"


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class ArticleStore:
    """
    Persistence collaborator of the collection pipeline.

    Lookups are bounded by ``lookup_timeout`` and writes by
    ``write_timeout``; a timeout surfaces as ``asyncio.TimeoutError``.
    """

    def __init__(
        self,
        database: Database,
        lookup_timeout: float = 10.0,
        write_timeout: float = 15.0,
    ):
        self.database = database
        self.lookup_timeout = lookup_timeout
        self.write_timeout = write_timeout

    async def ping(self) -> None:
        """Raise if the database cannot be reached."""
        async with self.database.async_session() as session:
            await asyncio.wait_for(session.execute(text("SELECT 1")), self.lookup_timeout)

    # =========================================================================
    # Articles
    # =========================================================================

    async def upsert(self, article: NormalizedArticle) -> UpsertOutcome:
        """
        Insert an article or update the row it duplicates.

        A row matches when it has the same natural key, or the same source
        type and content fingerprint. A concurrent insert of the same key
        is resolved by updating the row that won.
        """
        key = natural_key(article)
        values = self._row_values(article)

        async with self.database.async_session() as session:
            existing = await asyncio.wait_for(
                self._find_existing(session, key, article),
                self.lookup_timeout,
            )

            if existing is not None:
                self._apply(existing, values)
                await asyncio.wait_for(session.commit(), self.write_timeout)
                return UpsertOutcome.UPDATED

            session.add(DBArticle(content_id=key, **values))
            try:
                await asyncio.wait_for(session.commit(), self.write_timeout)
            except IntegrityError:
                await session.rollback()
                logger.debug("Insert lost a race, updating instead", content_id=key)
                result = await asyncio.wait_for(
                    session.execute(select(DBArticle).where(DBArticle.content_id == key)),
                    self.lookup_timeout,
                )
                self._apply(result.scalar_one(), values)
                await asyncio.wait_for(session.commit(), self.write_timeout)
                return UpsertOutcome.UPDATED

        return UpsertOutcome.INSERTED

    async def _find_existing(
        self,
        session: AsyncSession,
        key: str,
        article: NormalizedArticle,
    ) -> Optional[DBArticle]:
        result = await session.execute(
            select(DBArticle)
            .where(
                or_(
                    DBArticle.content_id == key,
                    (DBArticle.source_type == article.source_type.value)
                    & (DBArticle.fingerprint == article.content_fingerprint),
                )
            )
            .order_by((DBArticle.content_id == key).desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    @staticmethod
    def _row_values(article: NormalizedArticle) -> dict[str, Any]:
        return {
            "source_type": article.source_type.value,
            "fingerprint": article.content_fingerprint,
            "title": truncate(article.title, MAX_TITLE_LENGTH),
            "summary": truncate(article.summary_text, MAX_SUMMARY_LENGTH),
            "author": article.author,
            "category": truncate(article.category, MAX_CATEGORY_LENGTH),
            "tags_json": list(article.tags),
            "source_url": article.source_url,
            "published_at": _as_utc(article.published_at),
            "extra_json": article.model_dump(mode="json")["metadata"],
        }

    @staticmethod
    def _apply(row: DBArticle, values: dict[str, Any]) -> None:
        for field, value in values.items():
            setattr(row, field, value)

    async def get(self, content_id: str) -> Optional[NormalizedArticle]:
        async with self.database.async_session() as session:
            result = await session.execute(
                select(DBArticle).where(DBArticle.content_id == content_id)
            )
            row = result.scalar_one_or_none()
        return self._to_article(row) if row else None

    async def count(self) -> int:
        async with self.database.async_session() as session:
            result = await session.execute(select(func.count()).select_from(DBArticle))
            return result.scalar_one()

    async def count_by_category(self) -> dict[str, int]:
        """Number of stored articles per category."""
        async with self.database.async_session() as session:
            result = await asyncio.wait_for(
                session.execute(
                    select(DBArticle.category, func.count(DBArticle.id))
                    .group_by(DBArticle.category)
                    .order_by(func.count(DBArticle.id).desc())
                ),
                self.lookup_timeout,
            )
            return {category: count for category, count in result.all()}

    async def recent_articles(
        self,
        since: Optional[datetime] = None,
        limit: int = 100,
    ) -> list[NormalizedArticle]:
        """Stored articles, newest first, for downstream consumers."""
        query = select(DBArticle).order_by(DBArticle.published_at.desc()).limit(limit)
        if since is not None:
            query = query.where(DBArticle.published_at >= _as_utc(since))

        async with self.database.async_session() as session:
            result = await session.execute(query)
            rows = result.scalars().all()

        return [self._to_article(row) for row in rows]

    @staticmethod
    def _to_article(row: DBArticle) -> NormalizedArticle:
        return NormalizedArticle(
            title=row.title,
            summary_text=row.summary or "",
            source_url=row.source_url,
            author=row.author or "",
            published_at=row.published_at,
            category=row.category,
            tags=row.tags_json or [],
            source_type=SourceType(row.source_type),
            content_fingerprint=row.fingerprint,
            metadata={**(row.extra_json or {}), "content_id": row.content_id},
        )

    # =========================================================================
    # Feed registry
    # =========================================================================

    async def register_feeds(self, feeds: Sequence[FeedSource]) -> int:
        """
        Add feeds to the registry, updating URL and category of known names.

        Activation state of existing feeds is left untouched.

        Returns:
            Number of newly registered feeds
        """
        added = 0
        async with self.database.async_session() as session:
            for feed in feeds:
                result = await session.execute(
                    select(DBFeedSource).where(DBFeedSource.name == feed.name)
                )
                row = result.scalar_one_or_none()
                if row is None:
                    session.add(DBFeedSource(
                        name=feed.name,
                        url=feed.url,
                        category=truncate(feed.category, MAX_CATEGORY_LENGTH),
                        is_active=feed.is_active,
                    ))
                    added += 1
                else:
                    row.url = feed.url
                    row.category = truncate(feed.category, MAX_CATEGORY_LENGTH)
            await asyncio.wait_for(session.commit(), self.write_timeout)

        logger.info("Feeds registered", added=added, total=len(feeds))
        return added

    async def list_feeds(self, active_only: bool = False) -> list[FeedSource]:
        query = select(DBFeedSource).order_by(DBFeedSource.name)
        if active_only:
            query = query.where(DBFeedSource.is_active.is_(True))

        async with self.database.async_session() as session:
            result = await asyncio.wait_for(session.execute(query), self.lookup_timeout)
            rows = result.scalars().all()

        return [
            FeedSource(name=row.name, url=row.url, category=row.category, is_active=row.is_active)
            for row in rows
        ]

    async def list_active_feeds(self) -> list[FeedSource]:
        return await self.list_feeds(active_only=True)

    async def set_feed_active(self, name: str, active: bool) -> bool:
        """
        Record a feed's latest outcome.

        Success reactivates the feed and resets its failure count; failure
        deactivates it and increments the count.

        Returns:
            False if no feed with that name is registered
        """
        values: dict[str, Any] = {"is_active": active}
        if active:
            values["failure_count"] = 0
            values["last_success_at"] = datetime.now(timezone.utc)
        else:
            values["failure_count"] = DBFeedSource.failure_count + 1

        async with self.database.async_session() as session:
            result = await asyncio.wait_for(
                session.execute(
                    update(DBFeedSource).where(DBFeedSource.name == name).values(**values)
                ),
                self.write_timeout,
            )
            await session.commit()
            return result.rowcount > 0
