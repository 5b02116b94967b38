"""
Application configuration using Pydantic Settings.
"""
import json
from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ALL_SOURCES = ["arxiv", "github", "rss", "papers-with-code", "stackoverflow"]


class FeedSource(BaseModel):
    """A syndicated feed to poll."""
    name: str
    url: str
    category: str = "RSS Article"
    is_active: bool = True


class FetchSettings(BaseSettings):
    """Retry, backoff and request pacing shared by every adapter."""

    model_config = SettingsConfigDict(env_prefix="FETCH_")

    max_attempts: int = Field(default=3, ge=1)
    base_delay_seconds: float = Field(
        default=1.0,
        ge=0.0,
        description="Backoff base; attempt N waits base * 2^(N-1) seconds",
    )
    max_delay_seconds: float = Field(default=60.0, gt=0.0)
    jitter_seconds: float = Field(
        default=0.0,
        ge=0.0,
        description="Random extra wait added to each backoff (0 = off)",
    )
    min_interval_seconds: float = Field(
        default=1.0,
        ge=0.0,
        description="Minimum delay between two requests of one adapter",
    )
    request_timeout_seconds: float = Field(default=30.0, gt=0.0)
    max_redirects: int = Field(default=10, ge=0)
    user_agent: str = "dayhot-crawler/1.0 (+https://github.com/dayhot/dayhot)"


class CollectionSettings(BaseSettings):
    """Defaults for one collection run."""

    model_config = SettingsConfigDict(env_prefix="COLLECTION_")

    sources: list[str] = Field(default_factory=lambda: list(ALL_SOURCES))
    lookback_hours: float = Field(default=0.0, ge=0.0)
    source_timeout_seconds: float = Field(
        default=900.0,
        gt=0.0,
        description="Wall-clock budget per source, checked between writes",
    )
    continue_on_error: bool = True
    lookup_timeout_seconds: float = Field(default=10.0, gt=0.0)
    write_timeout_seconds: float = Field(default=15.0, gt=0.0)
    feed_batch_size: int = Field(default=5, ge=1)
    feed_batch_pause_seconds: float = Field(default=1.0, ge=0.0)
    max_save_failures_fail_fast: int = Field(default=5, ge=0)

    # Per-source result budgets, used unless a uniform override is given
    max_results: dict[str, int] = Field(
        default_factory=lambda: {
            "arxiv": 20,
            "github": 15,
            "rss": 60,
            "papers-with-code": 10,
            "stackoverflow": 5,
        }
    )
    default_max_results: int = Field(default=10, ge=1)


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "dayhot"
    app_version: str = "0.1.0"
    debug: bool = Field(default=False)
    environment: Literal["development", "staging", "production"] = "development"
    log_level: str = Field(default="INFO")
    log_json: bool = Field(default=True)

    # Server
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000)

    # Database
    database_url: str = Field(
        default="sqlite+aiosqlite:///./dayhot.db",
        description="Async database URL (SQLAlchemy format)",
    )

    # API Keys (all optional; they raise upstream quotas)
    github_token: Optional[str] = Field(default=None)
    stackexchange_key: Optional[str] = Field(default=None)

    # Sources
    feeds: list[FeedSource] = Field(default_factory=list)
    feeds_file: Optional[Path] = Field(
        default=None,
        description="JSON file holding a list of {name, url, category} feeds",
    )
    papers_with_code_feed_url: str = Field(
        default="https://us-east1-ml-feeds.cloudfunctions.net/pwc/latest",
    )

    # Scheduler
    schedule_hours: list[int] = Field(
        default_factory=lambda: [6, 18],
        description="UTC hours at which the scheduled collection runs",
    )
    schedule_minute: int = Field(default=0, ge=0, le=59)

    fetch: FetchSettings = Field(default_factory=FetchSettings)
    collection: CollectionSettings = Field(default_factory=CollectionSettings)

    @field_validator("schedule_hours")
    @classmethod
    def validate_hours(cls, v: list[int]) -> list[int]:
        if not v or any(not 0 <= h <= 23 for h in v):
            raise ValueError("schedule_hours must be non-empty hours in 0-23")
        return sorted(set(v))


def load_feed_file(path: Path) -> list[FeedSource]:
    """Read a JSON feed list (either a list or an object keyed by name)."""
    with open(path, encoding="utf-8") as f:
        data = json.load(f)

    if isinstance(data, dict):
        data = [
            {"name": name, **(value if isinstance(value, dict) else {"url": value})}
            for name, value in data.items()
        ]
    return [FeedSource.model_validate(item) for item in data]


def configured_feeds(settings: Settings) -> list[FeedSource]:
    """Feeds from settings and the optional feeds file, first name wins."""
    feeds = list(settings.feeds)
    if settings.feeds_file:
        feeds.extend(load_feed_file(settings.feeds_file))

    seen = set()
    unique = []
    for feed in feeds:
        if feed.name in seen:
            continue
        seen.add(feed.name)
        unique.append(feed)
    return unique


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
