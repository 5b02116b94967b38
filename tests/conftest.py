"""
Shared fixtures: a fake clock, throwaway SQLite databases and sample
articles.
"""

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from dayhot.config import FetchSettings, Settings
from dayhot.models.article import NormalizedArticle, SourceType
from dayhot.models.database import Database
from dayhot.storage import ArticleStore

NOW = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Monotonic clock that only moves when something sleeps on it."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fetch_settings():
    return FetchSettings(
        max_attempts=3,
        base_delay_seconds=1.0,
        max_delay_seconds=60.0,
        jitter_seconds=0.0,
        min_interval_seconds=1.0,
    )


@pytest.fixture
def settings(tmp_path):
    return Settings(database_url=f"sqlite+aiosqlite:///{tmp_path}/test.db", feeds=[])


@pytest_asyncio.fixture
async def database(tmp_path):
    db = Database(f"sqlite+aiosqlite:///{tmp_path}/test.db")
    await db.create_tables()
    yield db
    await db.dispose()


@pytest_asyncio.fixture
async def store(database):
    return ArticleStore(database)


def make_article(
    n: int = 1,
    *,
    source_type: SourceType = SourceType.FEED_ITEM,
    published_at: datetime = NOW - timedelta(hours=1),
    category: str = "AI News",
    **overrides,
) -> NormalizedArticle:
    values = {
        "title": f"Article {n}",
        "summary_text": f"Summary of article {n}",
        "source_url": f"https://example.com/articles/{n}",
        "published_at": published_at,
        "source_type": source_type,
        "category": category,
    }
    values.update(overrides)
    return NormalizedArticle.create(**values)
