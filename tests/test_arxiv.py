"""
Tests for the arXiv adapter.

HTTP is served by httpx.MockTransport; no network access is needed.
"""

from datetime import datetime, timezone

import httpx
import pytest

from dayhot.ingestion.errors import FeedParseError
from dayhot.ingestion.sources.arxiv import ArxivAdapter, category_label
from dayhot.ingestion.sources.base import Pagination
from dayhot.models.article import SourceType

SAMPLE_ARXIV_RESPONSE = """<?xml version="1.0" encoding="UTF-8"?>
<feed xmlns="http://www.w3.org/2005/Atom"
      xmlns:arxiv="http://arxiv.org/schemas/atom"
      xmlns:opensearch="http://a9.com/-/spec/opensearch/1.1/">
  <opensearch:totalResults>120</opensearch:totalResults>
  <entry>
    <id>http://arxiv.org/abs/2401.12345v1</id>
    <title>Attention Is All You Need:
      A Comprehensive Survey</title>
    <summary>We present a comprehensive survey of attention mechanisms.</summary>
    <author><name>John Smith</name></author>
    <author><name>Jane Doe</name></author>
    <published>2024-01-15T12:00:00Z</published>
    <updated>2024-01-16T08:00:00Z</updated>
    <arxiv:primary_category term="cs.LG"/>
    <arxiv:doi>10.1234/attention</arxiv:doi>
    <category term="cs.LG"/>
    <category term="cs.AI"/>
    <link href="http://arxiv.org/abs/2401.12345v1" rel="alternate" type="text/html"/>
    <link title="pdf" href="http://arxiv.org/pdf/2401.12345v1" rel="related" type="application/pdf"/>
  </entry>
  <entry>
    <id>http://arxiv.org/abs/2401.67890v2</id>
    <title>Quantum Computing for Machine Learning</title>
    <summary>This paper explores quantum machine learning.</summary>
    <author><name>Alice Quantum</name></author>
    <published>2024-01-14T10:00:00Z</published>
    <category term="quant-ph"/>
  </entry>
  <entry>
    <id>http://arxiv.org/abs/2401.11111v1</id>
    <title>A Paper With A Broken Date</title>
    <summary>Should be dropped.</summary>
    <published>not a date</published>
  </entry>
</feed>
"""


def arxiv_adapter(handler, clock, fetch_settings, categories=("cs.AI",)):
    return ArxivAdapter(
        fetch_settings,
        categories=categories,
        transport=httpx.MockTransport(handler),
        clock=clock,
        sleep=clock.sleep,
    )


class TestParsing:
    """Atom feed parsing."""

    def test_parse_atom_feed(self):
        adapter = ArxivAdapter()
        articles, total = adapter._parse_atom_feed(SAMPLE_ARXIV_RESPONSE.encode(), "all:attention")

        assert total == 120
        assert len(articles) == 2

        article = articles[0]
        assert article.title == "Attention Is All You Need: A Comprehensive Survey"
        assert article.source_url == "https://arxiv.org/abs/2401.12345"
        assert article.author == "John Smith, Jane Doe"
        assert article.source_type == SourceType.ACADEMIC_PAPER
        assert article.category == "Machine Learning"
        assert article.tags == ["cs.LG", "cs.AI"]
        assert article.published_at == datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)
        assert article.metadata["arxiv_id"] == "2401.12345"
        assert article.metadata["pdf_url"] == "http://arxiv.org/pdf/2401.12345v1"
        assert article.metadata["doi"] == "10.1234/attention"

    def test_category_query_labels_articles(self):
        adapter = ArxivAdapter()
        articles, _ = adapter._parse_atom_feed(SAMPLE_ARXIV_RESPONSE.encode(), "cat:cs.CV")
        assert {a.category for a in articles} == {"Computer Vision"}

    def test_unknown_primary_category_is_kept_verbatim(self):
        adapter = ArxivAdapter()
        articles, _ = adapter._parse_atom_feed(SAMPLE_ARXIV_RESPONSE.encode(), "all:quantum")
        assert articles[1].category == "quant-ph"

    def test_malformed_xml_raises(self):
        adapter = ArxivAdapter()
        with pytest.raises(FeedParseError):
            adapter._parse_atom_feed(b"<feed><entry>", "cat:cs.AI")

    def test_non_feed_root_raises(self):
        adapter = ArxivAdapter()
        with pytest.raises(FeedParseError):
            adapter._parse_atom_feed(b"<html><body>error</body></html>", "cat:cs.AI")

    def test_category_label(self):
        assert category_label("cs.AI") == "Artificial Intelligence"
        assert category_label("cat:cs.CL") == "Natural Language Processing"
        assert category_label("math.CO") == "math.CO"


class TestFetch:
    """Requests through the fetch contract."""

    @pytest.mark.asyncio
    async def test_fetch_sends_search_parameters(self, clock, fetch_settings):
        seen = []

        def handler(request):
            seen.append(request.url.params)
            return httpx.Response(200, content=SAMPLE_ARXIV_RESPONSE.encode())

        adapter = arxiv_adapter(handler, clock, fetch_settings)
        result = await adapter.fetch("cat:cs.AI", Pagination(page=2, per_page=10))
        await adapter.aclose()

        assert result.success
        assert len(result.items) == 2
        assert result.has_more
        params = seen[0]
        assert params["search_query"] == "cat:cs.AI"
        assert params["start"] == "10"
        assert params["max_results"] == "10"
        assert params["sortBy"] == "submittedDate"
        assert params["sortOrder"] == "descending"

    @pytest.mark.asyncio
    async def test_fetch_latest_splits_budget_across_categories(self, clock, fetch_settings):
        requested = []

        def handler(request):
            requested.append(
                (request.url.params["search_query"], request.url.params["max_results"])
            )
            return httpx.Response(200, content=SAMPLE_ARXIV_RESPONSE.encode())

        adapter = arxiv_adapter(handler, clock, fetch_settings, categories=("cs.AI", "cs.LG", "cs.CL"))
        result = await adapter.fetch_latest(10)
        await adapter.aclose()

        assert requested == [("cat:cs.AI", "4"), ("cat:cs.LG", "4"), ("cat:cs.CL", "4")]
        assert result.success
        assert result.sub_source_status == {
            "Artificial Intelligence": True,
            "Machine Learning": True,
            "Natural Language Processing": True,
        }

    @pytest.mark.asyncio
    async def test_fetch_latest_applies_since(self, clock, fetch_settings):
        def handler(request):
            return httpx.Response(200, content=SAMPLE_ARXIV_RESPONSE.encode())

        adapter = arxiv_adapter(handler, clock, fetch_settings)
        since = datetime(2024, 1, 15, 0, 0, tzinfo=timezone.utc)
        result = await adapter.fetch_latest(10, since=since)
        await adapter.aclose()

        assert [a.metadata["arxiv_id"] for a in result.items] == ["2401.12345"]

    @pytest.mark.asyncio
    async def test_one_failing_category_does_not_fail_the_crawl(self, clock, fetch_settings):
        def handler(request):
            if request.url.params["search_query"] == "cat:cs.LG":
                return httpx.Response(500)
            return httpx.Response(200, content=SAMPLE_ARXIV_RESPONSE.encode())

        adapter = arxiv_adapter(handler, clock, fetch_settings, categories=("cs.AI", "cs.LG"))
        result = await adapter.fetch_latest(4)
        await adapter.aclose()

        assert result.success
        assert len(result.items) == 2
        assert result.sub_source_status == {
            "Artificial Intelligence": True,
            "Machine Learning": False,
        }
        assert "Machine Learning" in result.error

    @pytest.mark.asyncio
    async def test_bad_request_is_reported_not_raised(self, clock, fetch_settings):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(400, text="bad query")

        adapter = arxiv_adapter(handler, clock, fetch_settings)
        result = await adapter.fetch("cat:", Pagination())
        await adapter.aclose()

        assert not result.success
        assert "400" in result.error
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_health_check(self, clock, fetch_settings):
        def handler(request):
            return httpx.Response(200, content=SAMPLE_ARXIV_RESPONSE.encode())

        adapter = arxiv_adapter(handler, clock, fetch_settings)
        assert await adapter.health_check()
        await adapter.aclose()
