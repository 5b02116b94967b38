"""
Tests for the article store, against a throwaway SQLite database.
"""

from datetime import timedelta, timezone

import pytest

from dayhot.config import FeedSource
from dayhot.ingestion.dedup import natural_key
from dayhot.models.article import SourceType
from dayhot.models.database import DBArticle
from dayhot.storage import UpsertOutcome

from tests.conftest import NOW, make_article


class TestUpsert:

    @pytest.mark.asyncio
    async def test_insert_then_update_is_idempotent(self, store):
        article = make_article(1)

        assert await store.upsert(article) is UpsertOutcome.INSERTED
        assert await store.upsert(article) is UpsertOutcome.UPDATED
        assert await store.upsert(article) is UpsertOutcome.UPDATED
        assert await store.count() == 1

    @pytest.mark.asyncio
    async def test_update_refreshes_fields(self, store):
        await store.upsert(make_article(1, summary_text="old summary"))
        await store.upsert(make_article(1, summary_text="new summary"))

        stored = await store.get(natural_key(make_article(1)))

        assert stored.summary_text == "new summary"
        assert await store.count() == 1

    @pytest.mark.asyncio
    async def test_tracking_parameters_hit_the_same_row(self, store):
        await store.upsert(make_article(1))
        outcome = await store.upsert(
            make_article(1, source_url="https://example.com/articles/1?utm_source=feed")
        )

        assert outcome is UpsertOutcome.UPDATED
        assert await store.count() == 1

    @pytest.mark.asyncio
    async def test_same_fingerprint_same_source_type_updates(self, store):
        await store.upsert(make_article(1, title="Same", summary_text="Body"))
        outcome = await store.upsert(make_article(2, title="Same", summary_text="Body"))

        assert outcome is UpsertOutcome.UPDATED
        assert await store.count() == 1

    @pytest.mark.asyncio
    async def test_same_fingerprint_other_source_type_inserts(self, store):
        await store.upsert(make_article(1, title="Same", summary_text="Body"))
        outcome = await store.upsert(
            make_article(2, title="Same", summary_text="Body", source_type=SourceType.CODE_REPO)
        )

        assert outcome is UpsertOutcome.INSERTED
        assert await store.count() == 2

    @pytest.mark.asyncio
    async def test_long_fields_are_truncated(self, store):
        article = make_article(1, title="T" * 1200, summary_text="S" * 6000)
        await store.upsert(article)

        stored = await store.get(natural_key(article))

        assert len(stored.title) == 1000
        assert len(stored.summary_text) == 5000

    @pytest.mark.asyncio
    async def test_round_trip_keeps_utc_and_metadata(self, store):
        article = make_article(1, tags=["ai", "llm"], metadata={"score": 3})
        await store.upsert(article)

        stored = await store.get(natural_key(article))

        assert stored.published_at == article.published_at
        assert stored.published_at.tzinfo == timezone.utc
        assert stored.tags == ["ai", "llm"]
        assert stored.metadata["score"] == 3
        assert stored.metadata["content_id"] == natural_key(article)

    @pytest.mark.asyncio
    async def test_get_unknown_returns_none(self, store):
        assert await store.get("feed-item_0000000000000000") is None


class TestSchema:

    def test_article_columns(self):
        assert set(DBArticle.__table__.columns.keys()) == {
            "id",
            "content_id",
            "source_type",
            "fingerprint",
            "title",
            "summary",
            "author",
            "category",
            "tags_json",
            "source_url",
            "published_at",
            "extra_json",
            "created_at",
            "updated_at",
        }


class TestQueries:

    @pytest.mark.asyncio
    async def test_count_by_category(self, store):
        await store.upsert(make_article(1, category="AI News"))
        await store.upsert(make_article(2, category="AI News"))
        await store.upsert(make_article(3, category="GitHub Project", source_type=SourceType.CODE_REPO))

        assert await store.count_by_category() == {"AI News": 2, "GitHub Project": 1}

    @pytest.mark.asyncio
    async def test_recent_articles(self, store):
        await store.upsert(make_article(1, published_at=NOW - timedelta(hours=30)))
        await store.upsert(make_article(2, published_at=NOW - timedelta(hours=2)))
        await store.upsert(make_article(3, published_at=NOW - timedelta(hours=1)))

        recent = await store.recent_articles(since=NOW - timedelta(hours=24))

        assert [a.title for a in recent] == ["Article 3", "Article 2"]
        assert len(await store.recent_articles(limit=1)) == 1

    @pytest.mark.asyncio
    async def test_ping(self, store):
        await store.ping()


class TestFeedRegistry:

    @pytest.mark.asyncio
    async def test_register_and_list(self, store):
        feeds = [
            FeedSource(name="Blog A", url="https://a.example.com/rss", category="AI News"),
            FeedSource(name="Blog B", url="https://b.example.com/rss", category="Research"),
        ]

        assert await store.register_feeds(feeds) == 2
        assert await store.register_feeds(feeds) == 0
        assert [f.name for f in await store.list_feeds()] == ["Blog A", "Blog B"]

    @pytest.mark.asyncio
    async def test_register_updates_known_feed(self, store):
        await store.register_feeds([FeedSource(name="Blog", url="https://old.example.com/rss")])
        await store.register_feeds([FeedSource(name="Blog", url="https://new.example.com/rss")])

        feeds = await store.list_feeds()

        assert len(feeds) == 1
        assert feeds[0].url == "https://new.example.com/rss"

    @pytest.mark.asyncio
    async def test_failed_feed_is_deactivated_and_revived(self, store):
        await store.register_feeds([
            FeedSource(name="Flaky", url="https://flaky.example.com/rss"),
            FeedSource(name="Stable", url="https://stable.example.com/rss"),
        ])

        assert await store.set_feed_active("Flaky", False)
        assert [f.name for f in await store.list_active_feeds()] == ["Stable"]

        assert await store.set_feed_active("Flaky", True)
        assert [f.name for f in await store.list_active_feeds()] == ["Flaky", "Stable"]

    @pytest.mark.asyncio
    async def test_unknown_feed(self, store):
        assert not await store.set_feed_active("Nope", False)
