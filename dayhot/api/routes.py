"""
FastAPI routes for the dayhot ingestion service.
"""
import asyncio
from datetime import datetime, timedelta, timezone
from typing import Annotated, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from dayhot.config import ALL_SOURCES
from dayhot.ingestion.pipeline import CollectionOptions
from dayhot.ingestion.scheduler import IngestionScheduler
from dayhot.storage import ArticleStore

logger = structlog.get_logger(__name__)
router = APIRouter()

_store: Optional[ArticleStore] = None
_scheduler: Optional[IngestionScheduler] = None
_background_tasks: set[asyncio.Task] = set()


def set_services(store: Optional[ArticleStore], scheduler: Optional[IngestionScheduler]):
    """Called from the application lifespan."""
    global _store, _scheduler
    _store = store
    _scheduler = scheduler


def get_store() -> ArticleStore:
    if _store is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Store not ready")
    return _store


def get_scheduler() -> IngestionScheduler:
    if _scheduler is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Scheduler not ready"
        )
    return _scheduler


StoreDep = Annotated[ArticleStore, Depends(get_store)]
SchedulerDep = Annotated[IngestionScheduler, Depends(get_scheduler)]


class RunRequest(BaseModel):
    """Parameters for a manually triggered collection run."""
    sources: list[str] = Field(default_factory=lambda: list(ALL_SOURCES))
    max_results: Optional[int] = Field(default=None, ge=1)
    lookback_hours: Optional[float] = Field(default=None, ge=0)
    dry_run: bool = False
    continue_on_error: bool = True


# ============================================================================
# Collection Runs
# ============================================================================


@router.post("/runs", status_code=status.HTTP_202_ACCEPTED)
async def trigger_run(request: RunRequest, scheduler: SchedulerDep):
    """Start a collection run in the background."""
    # A started task counts as running until it finishes, even before it takes the lock
    if scheduler.is_running or _background_tasks:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="A run is already in progress")

    unknown = sorted(set(request.sources) - set(ALL_SOURCES) - {"all"})
    if unknown:
        raise HTTPException(status_code=422, detail=f"Unknown sources: {', '.join(unknown)}")

    options = CollectionOptions.from_settings(
        scheduler.pipeline.settings,
        sources=request.sources,
        max_results=request.max_results,
        lookback_hours=request.lookback_hours,
        dry_run=request.dry_run,
        continue_on_error=request.continue_on_error,
    )

    async def run():
        try:
            await scheduler.run_now(options)
        except Exception as e:
            logger.error("Manual collection run failed", error=str(e))

    task = asyncio.create_task(run())
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)

    logger.info("Manual collection run started", sources=list(options.sources))
    return {"message": "Collection started", "sources": list(options.sources)}


@router.get("/runs/latest")
async def latest_run(scheduler: SchedulerDep):
    """Statistics of the last finished run."""
    stats = scheduler.last_stats
    if stats is None:
        detail = scheduler.last_error or "No run has finished yet"
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=detail)
    return stats.to_dict()


# ============================================================================
# Articles
# ============================================================================


@router.get("/articles/counts")
async def article_counts(store: StoreDep):
    """Number of stored articles per category."""
    counts = await store.count_by_category()
    return {"counts": counts, "total": sum(counts.values())}


@router.get("/articles/recent")
async def recent_articles(
    store: StoreDep,
    hours: Annotated[float, Query(ge=0, description="Look back this many hours (0 = all)")] = 24,
    limit: Annotated[int, Query(ge=1, le=500)] = 50,
):
    """Most recently published stored articles."""
    since: Optional[datetime] = None
    if hours > 0:
        since = datetime.now(timezone.utc) - timedelta(hours=hours)

    articles = await store.recent_articles(since=since, limit=limit)
    return {
        "count": len(articles),
        "articles": [article.model_dump(mode="json") for article in articles],
    }
