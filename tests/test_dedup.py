"""
Tests for natural keys, in-run deduplication and time-window filtering.
"""

from datetime import timedelta

from dayhot.ingestion.dedup import (
    TimeWindow,
    deduplicate,
    filter_by_window,
    natural_key,
    normalize_url,
)
from dayhot.models.article import SourceType

from tests.conftest import NOW, make_article


class TestNormalizeUrl:

    def test_tracking_parameters_are_dropped(self):
        url1 = "https://example.com/article?id=123&utm_source=twitter"
        url2 = "https://example.com/article?id=123&utm_campaign=test&fbclid=abc"
        url3 = "https://example.com/article?id=123"

        assert normalize_url(url1) == normalize_url(url3)
        assert normalize_url(url2) == normalize_url(url3)

    def test_fragment_case_and_parameter_order(self):
        assert normalize_url("HTTPS://Example.com/A?b=2&a=1#section") == "https://example.com/a?a=1&b=2"

    def test_meaningful_parameters_are_kept(self):
        assert normalize_url("https://example.com/?page=2") != normalize_url("https://example.com/?page=3")


class TestNaturalKey:

    def test_key_format(self):
        key = natural_key(make_article(1))
        prefix, digest = key.rsplit("_", 1)
        assert prefix == "feed-item"
        assert len(digest) == 16
        int(digest, 16)

    def test_tracking_variants_share_a_key(self):
        a = make_article(1, source_url="https://example.com/post?utm_medium=rss")
        b = make_article(1, source_url="https://example.com/post#comments")
        assert natural_key(a) == natural_key(b)

    def test_source_type_is_part_of_the_key(self):
        a = make_article(1, source_type=SourceType.FEED_ITEM)
        b = make_article(1, source_type=SourceType.ACADEMIC_PAPER)
        assert natural_key(a) != natural_key(b)


class TestDeduplicate:

    def test_same_url_keeps_first(self):
        first = make_article(1, title="First copy")
        second = make_article(1, title="Second copy")

        unique, dropped = deduplicate([first, second, make_article(2)])

        assert unique == [first, make_article(2)]
        assert dropped == 1

    def test_same_fingerprint_different_url(self):
        a = make_article(1, title="Same", summary_text="Same body")
        b = make_article(2, title="Same", summary_text="Same body")

        unique, dropped = deduplicate([a, b])

        assert unique == [a]
        assert dropped == 1

    def test_same_fingerprint_across_source_types_is_kept(self):
        a = make_article(1, title="Same", summary_text="Same body")
        b = make_article(2, title="Same", summary_text="Same body", source_type=SourceType.CODE_REPO)

        unique, dropped = deduplicate([a, b])

        assert len(unique) == 2
        assert dropped == 0


class TestTimeWindow:

    def test_window_boundaries(self):
        window = TimeWindow.lookback(24, now=NOW)

        assert not window.contains(NOW - timedelta(hours=25))
        assert window.contains(NOW - timedelta(hours=23))
        assert window.contains(NOW - timedelta(hours=24))
        assert window.contains(NOW)
        assert not window.contains(NOW + timedelta(minutes=1))

    def test_zero_hours_accepts_everything(self):
        window = TimeWindow.lookback(0, now=NOW)

        assert window.unbounded
        assert window.contains(NOW - timedelta(days=3650))
        assert window.contains(NOW + timedelta(days=1))

    def test_filter_by_window(self):
        articles = [
            make_article(1, published_at=NOW - timedelta(hours=13)),
            make_article(2, published_at=NOW - timedelta(hours=11)),
            make_article(3, published_at=NOW - timedelta(minutes=5)),
        ]

        kept, filtered = filter_by_window(articles, TimeWindow.lookback(12, now=NOW))

        assert kept == articles[1:]
        assert filtered == 1

    def test_unbounded_filter_keeps_all(self):
        articles = [make_article(n, published_at=NOW - timedelta(days=n)) for n in range(3)]
        kept, filtered = filter_by_window(articles, TimeWindow.lookback(0, now=NOW))
        assert kept == articles
        assert filtered == 0
