"""
Collection pipeline.

Runs every selected source adapter concurrently, filters their articles to
the requested time window, drops duplicates and upserts the rest into the
article store. One failing source never stops the others.
"""
import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Mapping, Optional, Sequence, Union

import structlog

from dayhot.config import ALL_SOURCES, FeedSource, Settings, configured_feeds
from dayhot.ingestion.dedup import TimeWindow, deduplicate, filter_by_window
from dayhot.ingestion.errors import StoreUnavailableError
from dayhot.ingestion.sources import AdapterFactory, build_adapter_registry
from dayhot.models.article import NormalizedArticle, SourceType
from dayhot.storage import ArticleStore, UpsertOutcome

logger = structlog.get_logger()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def resolve_sources(sources: Union[str, Sequence[str], None]) -> list[str]:
    """Expand ``"all"`` or a comma-separated string into source names."""
    if sources is None:
        return list(ALL_SOURCES)
    if isinstance(sources, str):
        sources = [s.strip() for s in sources.split(",")]
    names = [s for s in sources if s]
    if not names or names == ["all"]:
        return list(ALL_SOURCES)
    return list(dict.fromkeys(names))


# =============================================================================
# Options and statistics
# =============================================================================

@dataclass(frozen=True)
class CollectionOptions:
    """Parameters of one collection run."""
    sources: Sequence[str] = tuple(ALL_SOURCES)
    max_results: Optional[int] = None  # Uniform override of per-source budgets
    lookback_hours: float = 0.0  # 0 = no time filter
    source_timeout: float = 900.0  # seconds, checked between writes
    dry_run: bool = False
    verbose: bool = False
    continue_on_error: bool = True

    @classmethod
    def from_settings(cls, settings: Settings, **overrides: Any) -> "CollectionOptions":
        collection = settings.collection
        values = {
            "sources": tuple(collection.sources),
            "lookback_hours": collection.lookback_hours,
            "source_timeout": collection.source_timeout_seconds,
            "continue_on_error": collection.continue_on_error,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        values["sources"] = tuple(resolve_sources(values["sources"]))
        return cls(**values)


class SourceState(str, Enum):
    PENDING = "pending"
    FETCHING = "fetching"
    FILTERING = "filtering"
    PERSISTING = "persisting"
    COMPLETED = "completed"
    PARTIALLY_FAILED = "partially_failed"
    FAILED = "failed"


@dataclass(frozen=True)
class SourceRunStats:
    """Final counters of one source within a run."""
    name: str
    state: SourceState
    normalized: int = 0
    filtered_out: int = 0
    deduplicated: int = 0
    attempted: int = 0
    inserted: int = 0
    updated: int = 0
    failed: int = 0
    skipped: int = 0
    crawler_error: bool = False
    timed_out: bool = False
    error: Optional[str] = None
    duration_seconds: float = 0.0

    @property
    def persisted(self) -> int:
        return self.inserted + self.updated

    @property
    def ok(self) -> bool:
        return self.state == SourceState.COMPLETED

    def __str__(self) -> str:
        status = "✓" if self.ok else "✗"
        text = (
            f"{status} {self.name}: persisted={self.persisted}/{self.normalized}, "
            f"new={self.inserted}, updated={self.updated}, failed={self.failed}, "
            f"filtered={self.filtered_out}, duplicates={self.deduplicated}, "
            f"skipped={self.skipped}, time={self.duration_seconds:.1f}s"
        )
        if self.error:
            text += f" ({self.error})"
        return text

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "normalized": self.normalized,
            "filtered_out": self.filtered_out,
            "deduplicated": self.deduplicated,
            "attempted": self.attempted,
            "persisted": self.persisted,
            "inserted": self.inserted,
            "updated": self.updated,
            "failed": self.failed,
            "skipped": self.skipped,
            "crawler_error": self.crawler_error,
            "timed_out": self.timed_out,
            "error": self.error,
            "duration_seconds": round(self.duration_seconds, 3),
        }


@dataclass
class _SourceAccumulator:
    """Mutable counters owned by a single source task."""
    name: str
    state: SourceState = SourceState.PENDING
    normalized: int = 0
    filtered_out: int = 0
    deduplicated: int = 0
    attempted: int = 0
    inserted: int = 0
    updated: int = 0
    failed: int = 0
    skipped: int = 0
    crawler_error: bool = False
    timed_out: bool = False
    error: Optional[str] = None

    def fail(self, error: str) -> None:
        self.state = SourceState.FAILED
        self.crawler_error = True
        self.failed += 1
        self.error = error

    def freeze(self, duration: float) -> SourceRunStats:
        return SourceRunStats(
            name=self.name,
            state=self.state,
            normalized=self.normalized,
            filtered_out=self.filtered_out,
            deduplicated=self.deduplicated,
            attempted=self.attempted,
            inserted=self.inserted,
            updated=self.updated,
            failed=self.failed,
            skipped=self.skipped,
            crawler_error=self.crawler_error,
            timed_out=self.timed_out,
            error=self.error,
            duration_seconds=duration,
        )


@dataclass(frozen=True)
class CollectionRunStats:
    """Outcome of one collection run."""
    started_at: datetime
    finished_at: datetime
    sources: Mapping[str, SourceRunStats] = field(default_factory=dict)
    dry_run: bool = False
    continue_on_error: bool = True
    store_available: bool = False

    @property
    def total_normalized(self) -> int:
        return sum(s.normalized for s in self.sources.values())

    @property
    def total_persisted(self) -> int:
        return sum(s.persisted for s in self.sources.values())

    @property
    def total_inserted(self) -> int:
        return sum(s.inserted for s in self.sources.values())

    @property
    def total_updated(self) -> int:
        return sum(s.updated for s in self.sources.values())

    @property
    def total_failed(self) -> int:
        return sum(s.failed for s in self.sources.values())

    @property
    def total_skipped(self) -> int:
        return sum(s.skipped for s in self.sources.values())

    @property
    def duration(self) -> float:
        return (self.finished_at - self.started_at).total_seconds()

    @property
    def succeeded(self) -> bool:
        """At least one item fetched; fail-fast runs also need zero errors."""
        if self.total_normalized == 0:
            return False
        if not self.continue_on_error and self.total_failed > 0:
            return False
        return True

    def summary_lines(self) -> list[str]:
        lines = [str(stats) for stats in self.sources.values()]
        status = "✓" if self.succeeded else "✗"
        lines.append(
            f"{status} total: persisted={self.total_persisted}/{self.total_normalized}, "
            f"new={self.total_inserted}, updated={self.total_updated}, "
            f"failed={self.total_failed}, skipped={self.total_skipped}, "
            f"time={self.duration:.1f}s"
            + (" [dry run]" if self.dry_run else "")
        )
        return lines

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
            "duration_seconds": round(self.duration, 3),
            "succeeded": self.succeeded,
            "dry_run": self.dry_run,
            "store_available": self.store_available,
            "total_normalized": self.total_normalized,
            "total_persisted": self.total_persisted,
            "total_failed": self.total_failed,
            "sources": {name: stats.to_dict() for name, stats in self.sources.items()},
        }


# =============================================================================
# Pipeline
# =============================================================================

class CollectionPipeline:
    """
    Orchestrates one collection run across sources.

    Adapters come from a registry of factories; by default the registry is
    built from settings, with the ``rss`` feeds taken from configuration or,
    when none are configured, from the store's active feed registry.
    """

    def __init__(
        self,
        settings: Settings,
        store: Optional[ArticleStore] = None,
        adapter_factories: Optional[Mapping[str, AdapterFactory]] = None,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings
        self.store = store
        self.adapter_factories = adapter_factories
        self._clock = clock
        self._now = now

    async def run(self, options: Optional[CollectionOptions] = None) -> CollectionRunStats:
        """
        Execute a collection run.

        Raises:
            StoreUnavailableError: only in fail-fast mode, when the store
                cannot be reached at startup
        """
        options = options or CollectionOptions.from_settings(self.settings)
        started_at = self._now()
        sources = resolve_sources(options.sources)
        log = logger.bind(dry_run=options.dry_run, fail_fast=not options.continue_on_error)
        log.info("Starting collection run", sources=sources, lookback_hours=options.lookback_hours)

        store_available = await self._check_store(options)
        write_store = self.store if store_available and not options.dry_run else None
        if options.dry_run:
            log.info("Dry run: articles will not be persisted")

        factories = self.adapter_factories
        if factories is None:
            feeds = await self._resolve_feeds(store_available)
            factories = build_adapter_registry(self.settings, feeds)

        window = TimeWindow.lookback(options.lookback_hours, now=started_at)
        if not window.unbounded:
            log.info(
                "Time window active",
                start=window.start.isoformat(),
                end=window.end.isoformat(),
            )

        names = []
        tasks = []
        results: dict[str, SourceRunStats] = {}
        for name in sources:
            factory = factories.get(name)
            if factory is None:
                log.error("Unsupported source", source=name)
                results[name] = SourceRunStats(
                    name=name,
                    state=SourceState.FAILED,
                    failed=1,
                    crawler_error=True,
                    error="unsupported source",
                )
                continue
            names.append(name)
            tasks.append(self._run_source(name, factory, options, window, write_store))

        outcomes = await asyncio.gather(*tasks, return_exceptions=True)
        for name, outcome in zip(names, outcomes):
            if isinstance(outcome, BaseException):
                log.error("Source task crashed", source=name, error=repr(outcome))
                outcome = SourceRunStats(
                    name=name,
                    state=SourceState.FAILED,
                    failed=1,
                    crawler_error=True,
                    error=repr(outcome),
                )
            results[name] = outcome

        stats = CollectionRunStats(
            started_at=started_at,
            finished_at=self._now(),
            sources={name: results[name] for name in sources if name in results},
            dry_run=options.dry_run,
            continue_on_error=options.continue_on_error,
            store_available=store_available,
        )

        log.info(
            "Collection run finished",
            succeeded=stats.succeeded,
            normalized=stats.total_normalized,
            persisted=stats.total_persisted,
            failed=stats.total_failed,
            duration_seconds=round(stats.duration, 2),
        )
        return stats

    async def _check_store(self, options: CollectionOptions) -> bool:
        if self.store is None:
            logger.warning("No article store configured; running without persistence")
            return False
        try:
            await self.store.ping()
        except Exception as e:
            if not options.continue_on_error:
                raise StoreUnavailableError(f"Article store unreachable: {e}") from e
            logger.error("Article store unreachable; continuing without persistence", error=str(e))
            return False
        return True

    async def _resolve_feeds(self, store_available: bool) -> list[FeedSource]:
        feeds = configured_feeds(self.settings)
        if feeds or not store_available:
            return feeds
        try:
            feeds = await self.store.list_active_feeds()
        except Exception as e:
            logger.error("Could not load feed registry", error=str(e))
            return []
        logger.info("Loaded active feeds from registry", count=len(feeds))
        return feeds

    def _budget(self, name: str, options: CollectionOptions) -> int:
        if options.max_results:
            return options.max_results
        collection = self.settings.collection
        return collection.max_results.get(name, collection.default_max_results)

    async def _run_source(
        self,
        name: str,
        factory: AdapterFactory,
        options: CollectionOptions,
        window: TimeWindow,
        store: Optional[ArticleStore],
    ) -> SourceRunStats:
        acc = _SourceAccumulator(name)
        log = logger.bind(source=name)
        started = self._clock()
        adapter = None

        try:
            adapter = factory()
            max_results = self._budget(name, options)
            log.info("Fetching", max_results=max_results)

            acc.state = SourceState.FETCHING
            try:
                result = await adapter.fetch_latest(max_results, since=window.start)
            except Exception as e:
                log.error("Adapter raised", error=repr(e))
                acc.fail(str(e) or type(e).__name__)
                return acc.freeze(self._clock() - started)

            acc.normalized = len(result.items)
            # Only feed adapters key their status by registry feed name
            is_feed = getattr(adapter, "source_type", None) is SourceType.FEED_ITEM
            if is_feed and result.sub_source_status and store is not None:
                await self._record_feed_status(store, result.sub_source_status)

            if not result.success and not result.items:
                log.error("Fetch failed", error=result.error)
                acc.fail(result.error or "fetch failed")
                return acc.freeze(self._clock() - started)

            if not result.success or result.error:
                acc.crawler_error = not result.success
                acc.error = result.error
                log.warning("Fetch partially failed", error=result.error)

            acc.state = SourceState.FILTERING
            items, acc.filtered_out = filter_by_window(result.items, window)
            items, acc.deduplicated = deduplicate(items)
            log.info(
                "Fetched",
                normalized=acc.normalized,
                filtered_out=acc.filtered_out,
                duplicates=acc.deduplicated,
                remaining=len(items),
            )

            acc.state = SourceState.PERSISTING
            if store is not None:
                await self._persist(acc, items, options, store, started, log)
            elif options.verbose:
                for item in items:
                    log.info("Would save article", title=item.title[:80], url=item.source_url)

            if acc.failed or acc.timed_out or acc.crawler_error:
                acc.state = SourceState.PARTIALLY_FAILED
            else:
                acc.state = SourceState.COMPLETED

        finally:
            if adapter is not None:
                try:
                    await adapter.aclose()
                except Exception as e:
                    log.warning("Failed to close adapter", error=str(e))

        stats = acc.freeze(self._clock() - started)
        log.info("Source finished", state=stats.state.value, persisted=stats.persisted)
        return stats

    async def _persist(
        self,
        acc: _SourceAccumulator,
        items: list[NormalizedArticle],
        options: CollectionOptions,
        store: ArticleStore,
        started: float,
        log,
    ) -> None:
        max_failures = self.settings.collection.max_save_failures_fail_fast

        for index, item in enumerate(items):
            if self._clock() - started >= options.source_timeout:
                acc.timed_out = True
                acc.skipped += len(items) - index
                log.warning(
                    "Source timeout budget exhausted",
                    timeout_seconds=options.source_timeout,
                    skipped=acc.skipped,
                )
                break

            if not options.continue_on_error and acc.failed > max_failures:
                acc.skipped += len(items) - index
                log.error("Too many save failures, stopping source", failures=acc.failed)
                break

            acc.attempted += 1
            try:
                outcome = await store.upsert(item)
            except Exception as e:
                acc.failed += 1
                log.warning(
                    "Failed to save article",
                    title=item.title[:80],
                    url=item.source_url,
                    error=str(e) or type(e).__name__,
                )
                continue

            if outcome is UpsertOutcome.INSERTED:
                acc.inserted += 1
            else:
                acc.updated += 1

            if options.verbose:
                log.info("Saved article", outcome=outcome.value, title=item.title[:80])

    async def _record_feed_status(self, store: ArticleStore, status: Mapping[str, bool]) -> None:
        for feed_name, ok in status.items():
            try:
                found = await store.set_feed_active(feed_name, ok)
            except Exception as e:
                logger.warning("Could not update feed status", feed=feed_name, error=str(e))
                continue
            if not ok and found:
                logger.warning("Feed failed all retries, marked inactive", feed=feed_name)
