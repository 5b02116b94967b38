"""
Tests for the ingestion scheduler.
"""

import pytest

from dayhot.ingestion.pipeline import CollectionOptions, CollectionPipeline
from dayhot.ingestion.scheduler import IngestionScheduler
from dayhot.ingestion.sources.base import CrawlResult

from tests.conftest import NOW, make_article
from tests.test_pipeline import FakeAdapter


class ExplodingPipeline:
    async def run(self, options=None):
        raise RuntimeError("store vanished")


def build_scheduler(settings, store, items=2):
    adapter = FakeAdapter(
        "rss", CrawlResult(success=True, items=[make_article(n) for n in range(items)])
    )
    pipeline = CollectionPipeline(
        settings, store, adapter_factories={"rss": lambda: adapter}, now=lambda: NOW
    )
    return IngestionScheduler(
        pipeline, hours=(18, 6, 6), options=CollectionOptions(sources=("rss",))
    )


class TestIngestionScheduler:

    @pytest.mark.asyncio
    async def test_trigger_runs_at_configured_hours(self, settings, store):
        scheduler = build_scheduler(settings, store)
        fields = {field.name: str(field) for field in scheduler.trigger.fields}

        assert scheduler.hours == [6, 18]
        assert fields["hour"] == "6,18"
        assert fields["minute"] == "0"

    @pytest.mark.asyncio
    async def test_run_now_records_stats(self, settings, store):
        scheduler = build_scheduler(settings, store)

        stats = await scheduler.run_now()

        assert stats.total_persisted == 2
        assert scheduler.last_stats is stats
        assert scheduler.last_error is None
        assert not scheduler.is_running

    @pytest.mark.asyncio
    async def test_failed_run_records_error(self):
        scheduler = IngestionScheduler(ExplodingPipeline())

        with pytest.raises(RuntimeError):
            await scheduler.run_now()

        assert scheduler.last_stats is None
        assert scheduler.last_error == "store vanished"

    @pytest.mark.asyncio
    async def test_scheduled_run_failure_is_logged(self):
        scheduler = IngestionScheduler(ExplodingPipeline())

        await scheduler._scheduled_run()

        assert scheduler.last_error == "store vanished"

    @pytest.mark.asyncio
    async def test_start_and_stop(self, settings, store):
        scheduler = build_scheduler(settings, store)

        scheduler.start()
        try:
            assert scheduler.next_run_time is not None
            assert scheduler.next_run_time.hour in (6, 18)
        finally:
            scheduler.stop()
