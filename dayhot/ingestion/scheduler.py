"""
Ingestion Scheduler - runs the collection pipeline on a cron schedule.

Default schedule is twice a day (06:00 and 18:00 UTC).
"""
import asyncio
from datetime import datetime
from typing import Optional, Sequence

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from dayhot.ingestion.pipeline import CollectionOptions, CollectionPipeline, CollectionRunStats

logger = structlog.get_logger()

JOB_ID = "scheduled_collection"


class IngestionScheduler:
    """
    Schedules and runs collection runs.

    Features:
    - Cron trigger on a list of UTC hours
    - Manual runs share a lock with scheduled ones, so runs never overlap
    - Keeps the statistics of the last finished run
    """

    def __init__(
        self,
        pipeline: CollectionPipeline,
        hours: Sequence[int] = (6, 18),
        minute: int = 0,
        options: Optional[CollectionOptions] = None,
        scheduler: Optional[AsyncIOScheduler] = None,
    ):
        self.pipeline = pipeline
        self.hours = sorted(set(hours))
        self.minute = minute
        self.options = options
        self._scheduler = scheduler or AsyncIOScheduler(timezone="UTC")
        self._lock = asyncio.Lock()
        self._last_stats: Optional[CollectionRunStats] = None
        self._last_error: Optional[str] = None

    @property
    def trigger(self) -> CronTrigger:
        return CronTrigger(
            hour=",".join(str(h) for h in self.hours),
            minute=self.minute,
            timezone="UTC",
        )

    def start(self):
        """Register the collection job and start the scheduler (needs a running loop)."""
        if self._scheduler.running:
            logger.warning("Scheduler already running")
            return

        self._scheduler.add_job(
            self._scheduled_run,
            self.trigger,
            id=JOB_ID,
            name="Scheduled collection",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.start()
        logger.info(
            "Scheduler started",
            hours_utc=self.hours,
            minute=self.minute,
            next_run=self.next_run_time.isoformat() if self.next_run_time else None,
        )

    def stop(self):
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")

    async def run_now(self, options: Optional[CollectionOptions] = None) -> CollectionRunStats:
        """Run a collection immediately, waiting for any run in progress."""
        async with self._lock:
            try:
                stats = await self.pipeline.run(options or self.options)
            except Exception as e:
                self._last_error = str(e)
                raise
            self._last_stats = stats
            self._last_error = None
            return stats

    async def _scheduled_run(self):
        logger.info("Starting scheduled collection")
        try:
            stats = await self.run_now()
        except Exception as e:
            logger.error("Scheduled collection failed", error=str(e), exc_info=True)
            return

        for line in stats.summary_lines():
            logger.info(line)

    @property
    def is_running(self) -> bool:
        """True while a collection run is in progress."""
        return self._lock.locked()

    @property
    def last_stats(self) -> Optional[CollectionRunStats]:
        return self._last_stats

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    @property
    def next_run_time(self) -> Optional[datetime]:
        job = self._scheduler.get_job(JOB_ID)
        return job.next_run_time if job else None
