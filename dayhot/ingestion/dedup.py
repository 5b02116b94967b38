"""
Article identity, in-run deduplication and time-window filtering.
"""

import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional
from urllib.parse import parse_qsl, urlencode, urlparse

from dayhot.models.article import NormalizedArticle

logger = logging.getLogger(__name__)

# Tracking parameters stripped before hashing a URL
TRACKING_PARAMS = {
    "ref", "source", "via", "fbclid", "gclid", "dclid", "msclkid",
    "mc_cid", "mc_eid", "igshid", "yclid", "_hsenc", "_hsmi",
}
TRACKING_PREFIXES = ("utm_",)


def _is_tracking_param(name: str) -> bool:
    name = name.lower()
    return name in TRACKING_PARAMS or name.startswith(TRACKING_PREFIXES)


def normalize_url(url: str) -> str:
    """
    Normalize URL for deduplication.

    Drops tracking parameters and the fragment, sorts the remaining query
    parameters and lower-cases the result.
    """
    parsed = urlparse(url.strip())

    clean_params = sorted(
        (k, v) for k, v in parse_qsl(parsed.query, keep_blank_values=True)
        if not _is_tracking_param(k)
    )

    clean_url = f"{parsed.scheme}://{parsed.netloc}{parsed.path}"
    if clean_params:
        clean_url += "?" + urlencode(clean_params)

    return clean_url.lower()


def natural_key(article: NormalizedArticle) -> str:
    """Store key of an article: ``{source_type}_{md5(normalized url)[:16]}``."""
    digest = hashlib.md5(normalize_url(article.source_url).encode("utf-8")).hexdigest()
    return f"{article.source_type.value}_{digest[:16]}"


def deduplicate(articles: Iterable[NormalizedArticle]) -> tuple[list[NormalizedArticle], int]:
    """
    Drop repeats within one batch, keeping the first occurrence.

    Two articles are the same when they share a natural key, or when they
    share a content fingerprint and source type.

    Returns:
        (unique articles, number dropped)
    """
    seen_keys = set()
    seen_fingerprints = set()
    unique = []
    dropped = 0

    for article in articles:
        key = natural_key(article)
        fingerprint = (article.source_type, article.content_fingerprint)
        if key in seen_keys or fingerprint in seen_fingerprints:
            dropped += 1
            continue
        seen_keys.add(key)
        seen_fingerprints.add(fingerprint)
        unique.append(article)

    return unique, dropped


@dataclass(frozen=True)
class TimeWindow:
    """Inclusive ``[start, end]`` publish-time window; no start means unbounded."""
    start: Optional[datetime]
    end: datetime

    @classmethod
    def lookback(cls, hours: float, now: Optional[datetime] = None) -> "TimeWindow":
        """Window covering the last ``hours`` hours; 0 accepts everything."""
        now = now or datetime.now(timezone.utc)
        if hours <= 0:
            return cls(start=None, end=now)
        return cls(start=now - timedelta(hours=hours), end=now)

    @property
    def unbounded(self) -> bool:
        return self.start is None

    def contains(self, published_at: datetime) -> bool:
        if self.unbounded:
            return True
        return self.start <= published_at <= self.end


def filter_by_window(
    articles: Iterable[NormalizedArticle],
    window: TimeWindow,
) -> tuple[list[NormalizedArticle], int]:
    """
    Keep articles published inside ``window``.

    Returns:
        (kept articles, number filtered out)
    """
    articles = list(articles)
    if window.unbounded:
        return articles, 0

    kept = [a for a in articles if window.contains(a.published_at)]
    return kept, len(articles) - len(kept)
