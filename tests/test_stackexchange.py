"""
Tests for the Stack Exchange adapter.
"""

import gzip
import json
from datetime import datetime, timezone

import httpx
import pytest

from dayhot.ingestion.sources.base import Pagination
from dayhot.ingestion.sources.stackexchange import (
    AI_TAGS,
    STACKOVERFLOW_CATEGORY,
    StackExchangeAdapter,
    TagRotation,
    shared_rotation,
)
from dayhot.models.article import SourceType


def question(n: int, **overrides) -> dict:
    item = {
        "question_id": n,
        "title": f"How do I fine-tune model &quot;{n}&quot;?",
        "link": f"https://stackoverflow.com/questions/{n}",
        "body": "<p>" + "I am trying to fine-tune a transformer. " * 10 + "</p>",
        "creation_date": 1705312800,  # 2024-01-15T10:00:00Z
        "last_activity_date": 1705316400,
        "score": 5,
        "view_count": 120,
        "answer_count": 2,
        "is_answered": True,
        "tags": ["pytorch", "huggingface-transformers"],
        "owner": {"user_id": 42, "display_name": "ml_dev", "reputation": 1500},
    }
    item.update(overrides)
    return item


def gzip_json(payload: dict) -> httpx.Response:
    return httpx.Response(
        200,
        content=gzip.compress(json.dumps(payload).encode()),
        headers={"Content-Encoding": "gzip", "Content-Type": "application/json"},
    )


def stackexchange_adapter(handler, clock, fetch_settings, **kwargs):
    return StackExchangeAdapter(
        fetch_settings,
        transport=httpx.MockTransport(handler),
        clock=clock,
        sleep=clock.sleep,
        **kwargs,
    )


class TestQuestions:

    @pytest.mark.asyncio
    async def test_gzip_questions_are_parsed(self, clock, fetch_settings):
        def handler(request):
            return gzip_json({
                "items": [question(1), question(2, creation_date=None)],
                "has_more": True,
                "quota_remaining": 299,
            })

        adapter = stackexchange_adapter(handler, clock, fetch_settings)
        result = await adapter.fetch_latest(5)
        await adapter.aclose()

        assert result.success
        assert result.has_more
        assert len(result.items) == 1

        article = result.items[0]
        assert article.title == 'How do I fine-tune model "1"?'
        assert article.category == STACKOVERFLOW_CATEGORY
        assert article.source_type == SourceType.QA_QUESTION
        assert article.author == "ml_dev"
        assert article.published_at == datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc)
        assert len(article.summary_text) == 200
        assert article.metadata["question_id"] == 1
        assert article.metadata["has_accepted_answer"] is False

    @pytest.mark.asyncio
    async def test_latest_rotates_through_tags(self, clock, fetch_settings):
        tags = []

        def handler(request):
            tags.append(request.url.params["tagged"])
            return gzip_json({"items": []})

        adapter = stackexchange_adapter(
            handler, clock, fetch_settings, rotation=TagRotation(AI_TAGS)
        )
        for _ in range(len(AI_TAGS) + 1):
            await adapter.fetch_latest(5)
        await adapter.aclose()

        assert tags == AI_TAGS + [AI_TAGS[0]]

    @pytest.mark.asyncio
    async def test_new_adapters_continue_the_shared_rotation(self, clock, fetch_settings):
        tags = []

        def handler(request):
            tags.append(request.url.params["tagged"])
            return gzip_json({"items": []})

        for _ in range(3):
            adapter = stackexchange_adapter(handler, clock, fetch_settings)
            await adapter.fetch_latest(5)
            await adapter.aclose()

        assert len(set(tags)) == 3
        assert shared_rotation(AI_TAGS) is shared_rotation(list(AI_TAGS))

    def test_rotation_needs_tags(self):
        with pytest.raises(ValueError):
            TagRotation([])

    @pytest.mark.asyncio
    async def test_tag_query_parameters(self, clock, fetch_settings):
        seen = []

        def handler(request):
            seen.append(request.url)
            return gzip_json({"items": []})

        adapter = stackexchange_adapter(handler, clock, fetch_settings, api_key="k3y")
        since = datetime(2024, 1, 15, tzinfo=timezone.utc)
        await adapter.fetch_by_tag("pytorch", Pagination(page=2, per_page=15), since=since)
        await adapter.aclose()

        url = seen[0]
        assert url.path == "/2.3/questions"
        assert url.params["tagged"] == "pytorch"
        assert url.params["site"] == "stackoverflow"
        assert url.params["key"] == "k3y"
        assert url.params["page"] == "2"
        assert url.params["pagesize"] == "15"
        assert url.params["fromdate"] == str(int(since.timestamp()))

    @pytest.mark.asyncio
    async def test_search_uses_advanced_endpoint(self, clock, fetch_settings):
        seen = []

        def handler(request):
            seen.append(request.url)
            return gzip_json({"items": [question(3)]})

        adapter = stackexchange_adapter(handler, clock, fetch_settings)
        result = await adapter.fetch("attention mask", Pagination())
        await adapter.aclose()

        assert seen[0].path == "/2.3/search/advanced"
        assert seen[0].params["q"] == "attention mask"
        assert "key" not in seen[0].params
        assert len(result.items) == 1

    @pytest.mark.asyncio
    async def test_invalid_json_is_reported(self, clock, fetch_settings):
        def handler(request):
            return httpx.Response(200, content=b"<html>oops</html>")

        adapter = stackexchange_adapter(handler, clock, fetch_settings)
        result = await adapter.fetch_latest(5)
        await adapter.aclose()

        assert not result.success
        assert "invalid JSON" in result.error


class TestExtras:

    @pytest.mark.asyncio
    async def test_answers(self, clock, fetch_settings):
        def handler(request):
            assert request.url.path == "/2.3/questions/7/answers"
            return gzip_json({"items": [{
                "answer_id": 70,
                "question_id": 7,
                "body": "<p>Use a smaller learning rate.</p>",
                "score": 12,
                "is_accepted": True,
                "creation_date": 1705312800,
                "owner": {"display_name": "expert"},
            }]})

        adapter = stackexchange_adapter(handler, clock, fetch_settings)
        answers = await adapter.answers(7)
        await adapter.aclose()

        assert answers[0]["answer_id"] == 70
        assert answers[0]["is_accepted"] is True
        assert answers[0]["author"] == "expert"

    @pytest.mark.asyncio
    async def test_health_check_needs_quota(self, clock, fetch_settings):
        quotas = [{"quota_max": 300, "quota_remaining": 12}, {"quota_max": 300, "quota_remaining": 0}]

        def handler(request):
            return gzip_json(quotas.pop(0))

        adapter = stackexchange_adapter(handler, clock, fetch_settings)
        assert await adapter.health_check()
        assert not await adapter.health_check()
        await adapter.aclose()
