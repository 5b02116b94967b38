"""
Normalized article model shared by every source adapter.

Adapters translate their native payloads into NormalizedArticle; the
collection pipeline and the article store only ever see this shape.
"""
import hashlib
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator

MAX_TITLE_LENGTH = 1000
MAX_SUMMARY_LENGTH = 5000
MAX_CATEGORY_LENGTH = 100

# Keys that carry the primary text of a tag parsed from permissive XML
TAG_TEXT_KEYS = ("_", "#text", "text", "term", "label", "name", "value")


# =============================================================================
# Enums
# =============================================================================

class SourceType(str, Enum):
    """Kind of upstream content an article came from."""
    ACADEMIC_PAPER = "academic-paper"
    CODE_REPO = "code-repo"
    FEED_ITEM = "feed-item"
    QA_QUESTION = "qa-question"


# =============================================================================
# Helpers
# =============================================================================

def compute_fingerprint(title: str, body: Optional[str] = None) -> str:
    """SHA-256 digest of the stable content fields of an article."""
    payload = f"{title or ''}\n{body or ''}"
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def truncate(text: str, limit: int) -> str:
    """Cut text to ``limit`` characters, marking the cut with an ellipsis."""
    if not text or len(text) <= limit:
        return text
    return text[: limit - 3] + "..."


def flatten_tag(value: Any) -> Optional[str]:
    """
    Reduce a tag value to its primary text.

    XML-to-dict parsers turn ``<category domain="x">AI</category>`` into
    ``{"_": "AI", "domain": "x"}``; the text lives under one of a handful of
    well-known keys. Values with no recoverable text return None.
    """
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, dict):
        for key in TAG_TEXT_KEYS:
            inner = value.get(key)
            if inner is not None:
                return flatten_tag(inner)
        return None
    if isinstance(value, (list, tuple)) and value:
        return flatten_tag(value[0])
    return None


def is_valid_url(url: str) -> bool:
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


# =============================================================================
# Model
# =============================================================================

class NormalizedArticle(BaseModel):
    """Common article shape produced by every adapter."""

    model_config = ConfigDict(frozen=True)

    title: str
    summary_text: str = ""
    source_url: str
    author: str = ""
    published_at: datetime
    category: str
    tags: list[str] = Field(default_factory=list)
    source_type: SourceType
    content_fingerprint: str
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("title")
    @classmethod
    def validate_title(cls, v: str) -> str:
        v = " ".join(v.split())
        if not v:
            raise ValueError("title must not be empty")
        return v

    @field_validator("summary_text", "author", mode="before")
    @classmethod
    def default_empty(cls, v: Any) -> str:
        if v is None:
            return ""
        return str(v).strip()

    @field_validator("source_url")
    @classmethod
    def validate_source_url(cls, v: str) -> str:
        v = v.strip()
        if not is_valid_url(v):
            raise ValueError(f"not a valid http(s) URL: {v!r}")
        return v

    @field_validator("published_at")
    @classmethod
    def ensure_utc(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v.astimezone(timezone.utc)

    @field_validator("category")
    @classmethod
    def bound_category(cls, v: str) -> str:
        return truncate(v.strip(), MAX_CATEGORY_LENGTH)

    @field_validator("tags", mode="before")
    @classmethod
    def normalize_tags(cls, v: Any) -> list[str]:
        if v is None:
            return []
        if not isinstance(v, (list, tuple)):
            v = [v]
        tags: list[str] = []
        for raw in v:
            tag = flatten_tag(raw)
            if tag and tag not in tags:
                tags.append(tag)
        return tags

    @classmethod
    def create(
        cls,
        *,
        title: str,
        source_url: str,
        published_at: datetime,
        source_type: SourceType,
        category: str,
        summary_text: str = "",
        author: str = "",
        tags: Optional[list[Any]] = None,
        metadata: Optional[dict[str, Any]] = None,
        fingerprint_body: Optional[str] = None,
    ) -> "NormalizedArticle":
        """
        Build an article and derive its fingerprint.

        Args:
            fingerprint_body: Text hashed together with the title. Defaults
                to ``summary_text``; adapters pass the full body when the
                summary is an excerpt.
        """
        body = summary_text if fingerprint_body is None else fingerprint_body
        return cls(
            title=title,
            summary_text=summary_text,
            source_url=source_url,
            author=author,
            published_at=published_at,
            category=category,
            tags=tags or [],
            source_type=source_type,
            content_fingerprint=compute_fingerprint(" ".join(title.split()), body),
            metadata=metadata or {},
        )
