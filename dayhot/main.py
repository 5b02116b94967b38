"""
Main FastAPI application for dayhot.
"""
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from dayhot.api.routes import router, set_services
from dayhot.config import configured_feeds, get_settings
from dayhot.ingestion.pipeline import CollectionPipeline
from dayhot.ingestion.scheduler import IngestionScheduler
from dayhot.log import configure_logging
from dayhot.models.database import Database
from dayhot.storage import ArticleStore

logger = structlog.get_logger()

# Global instances
database: Database = None
store: ArticleStore = None
scheduler: IngestionScheduler = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager - handles startup and shutdown."""
    global database, store, scheduler

    settings = get_settings()
    configure_logging(settings.log_level, json_output=settings.log_json)

    # Initialize database
    logger.info("Initializing database", url=settings.database_url)
    database = Database(settings.database_url)
    await database.create_tables()
    store = ArticleStore(
        database,
        lookup_timeout=settings.collection.lookup_timeout_seconds,
        write_timeout=settings.collection.write_timeout_seconds,
    )

    feeds = configured_feeds(settings)
    if feeds:
        await store.register_feeds(feeds)

    # Initialize scheduler for collection runs
    pipeline = CollectionPipeline(settings, store)
    scheduler = IngestionScheduler(
        pipeline,
        hours=settings.schedule_hours,
        minute=settings.schedule_minute,
    )
    scheduler.start()
    set_services(store, scheduler)

    yield

    # Shutdown
    logger.info("Shutting down")
    scheduler.stop()
    set_services(None, None)
    await database.dispose()


# Create FastAPI app
app = FastAPI(
    title="dayhot",
    description="Collects AI papers, repositories, feeds and Q&A into one daily store.",
    version=get_settings().app_version,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router, prefix="/api/v1")


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    settings = get_settings()
    database_ok = False
    if store is not None:
        try:
            await store.ping()
            database_ok = True
        except Exception as e:
            logger.warning("Health check: database unreachable", error=str(e))

    next_run = scheduler.next_run_time if scheduler is not None else None
    return {
        "status": "healthy" if database_ok else "degraded",
        "service": settings.app_name,
        "version": settings.app_version,
        "database": database_ok,
        "collection_running": scheduler.is_running if scheduler is not None else False,
        "next_run": next_run.isoformat() if next_run else None,
    }


def run():
    """Serve the API with uvicorn."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "dayhot.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
