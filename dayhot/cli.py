"""
CLI tool for data collection.

Usage:
    # Collect from all sources with per-source budgets
    dayhot collect

    # Collect the last 12 hours of arXiv and GitHub, 5 items each
    dayhot collect --sources arxiv,github --max-results 5 --last-12h

    # Check source health
    dayhot health

    # Show stored article counts per category
    dayhot counts

    # Import feeds into the registry
    dayhot feeds import feeds.json

    # Run the API with the built-in scheduler
    dayhot serve
"""

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Optional

import structlog

from dayhot.config import ALL_SOURCES, Settings, configured_feeds, get_settings, load_feed_file
from dayhot.ingestion.errors import StoreUnavailableError
from dayhot.ingestion.pipeline import CollectionOptions, CollectionPipeline, resolve_sources
from dayhot.ingestion.sources import build_adapter_registry
from dayhot.log import configure_logging
from dayhot.models.database import Database
from dayhot.storage import ArticleStore

logger = structlog.get_logger()


def create_store(settings: Settings) -> tuple[Database, ArticleStore]:
    """Create the database and store from settings."""
    database = Database(settings.database_url)
    store = ArticleStore(
        database,
        lookup_timeout=settings.collection.lookup_timeout_seconds,
        write_timeout=settings.collection.write_timeout_seconds,
    )
    return database, store


def build_options(args, settings: Settings) -> CollectionOptions:
    """Translate ``collect`` arguments into collection options."""
    max_results: Optional[int] = None
    if args.uniform_config or args.max_results:
        max_results = args.max_results or settings.collection.default_max_results

    hours_back = args.hours_back
    if args.last_12h:
        hours_back = 12

    return CollectionOptions.from_settings(
        settings,
        sources=resolve_sources(args.sources) if args.sources else None,
        max_results=max_results,
        lookback_hours=hours_back,
        source_timeout=args.timeout,
        dry_run=args.dry_run,
        verbose=args.verbose,
        continue_on_error=False if args.fail_fast else None,
    )


async def cmd_collect(args, settings: Settings) -> int:
    """Run one collection."""
    options = build_options(args, settings)

    print(f"Collecting from: {', '.join(options.sources)}")
    if options.max_results:
        print(f"Uniform budget: {options.max_results} per source")
    else:
        for name in options.sources:
            budget = settings.collection.max_results.get(
                name, settings.collection.default_max_results
            )
            print(f"  {name}: {budget}")
    if options.lookback_hours:
        print(f"Time window: last {options.lookback_hours:g} hours")

    database, store = create_store(settings)
    try:
        if not options.dry_run:
            try:
                await database.create_tables()
            except Exception as e:
                logger.error("Could not prepare database", error=str(e))

        pipeline = CollectionPipeline(settings, store)
        try:
            stats = await pipeline.run(options)
        except StoreUnavailableError as e:
            print(f"✗ {e}")
            return 1
    finally:
        await database.dispose()

    print("\n" + "=" * 60)
    print("COLLECTION RESULTS")
    print("=" * 60)
    for line in stats.summary_lines():
        print(line)

    if not stats.succeeded:
        if stats.total_normalized == 0:
            print("No items were fetched from any source")
        return 1
    return 0


async def cmd_health(args, settings: Settings) -> int:
    """Check health of all sources."""
    database, store = create_store(settings)
    try:
        feeds = configured_feeds(settings)
        if not feeds:
            try:
                await store.ping()
                feeds = await store.list_active_feeds()
            except Exception as e:
                logger.warning("Store unavailable for feed lookup", error=str(e))

        registry = build_adapter_registry(settings, feeds)
        names = resolve_sources(args.sources) if args.sources else list(registry)

        print("Checking source health...")
        print("\n" + "=" * 40)
        print("SOURCE HEALTH")
        print("=" * 40)

        all_healthy = True
        for name in names:
            factory = registry.get(name)
            if factory is None:
                print(f"  {name}: ✗ UNKNOWN")
                all_healthy = False
                continue
            adapter = factory()
            try:
                is_healthy = await adapter.health_check()
            finally:
                await adapter.aclose()
            print(f"  {name}: {'✓ OK' if is_healthy else '✗ FAILED'}")
            all_healthy = all_healthy and is_healthy
    finally:
        await database.dispose()

    return 0 if all_healthy else 1


async def cmd_counts(args, settings: Settings) -> int:
    """Show stored article counts per category."""
    database, store = create_store(settings)
    try:
        await database.create_tables()
        counts = await store.count_by_category()
    finally:
        await database.dispose()

    print("\n" + "=" * 50)
    print("ARTICLES BY CATEGORY")
    print("=" * 50)
    for category, count in counts.items():
        print(f"  {category}: {count}")
    print("-" * 50)
    print(f"Total: {sum(counts.values())}")
    return 0


async def cmd_feeds(args, settings: Settings) -> int:
    """Manage the feed registry."""
    database, store = create_store(settings)
    try:
        await database.create_tables()

        if args.feeds_command == "import":
            feeds = load_feed_file(Path(args.file))
            added = await store.register_feeds(feeds)
            print(f"Imported {len(feeds)} feeds ({added} new)")
            return 0

        for feed in await store.list_feeds(active_only=args.active):
            status = "✓" if feed.is_active else "✗"
            print(f"  {status} {feed.name} [{feed.category}] {feed.url}")
        return 0
    finally:
        await database.dispose()


def cmd_serve(args, settings: Settings) -> int:
    """Run the API server and scheduler."""
    import uvicorn

    uvicorn.run(
        "dayhot.main:app",
        host=args.host or settings.host,
        port=args.port or settings.port,
        log_level=settings.log_level.lower(),
    )
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dayhot",
        description="dayhot - AI content collection CLI",
    )
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # Collect command
    collect_parser = subparsers.add_parser("collect", help="Run one collection")
    collect_parser.add_argument(
        "--sources", "-s",
        help=f"Comma-separated sources or 'all' (available: {', '.join(ALL_SOURCES)})",
    )
    collect_parser.add_argument(
        "--max-results", "-n",
        type=int,
        help="Uniform max items per source (overrides per-source budgets)",
    )
    collect_parser.add_argument(
        "--timeout",
        type=float,
        help="Time budget per source in seconds (default: 900)",
    )
    collect_parser.add_argument(
        "--hours-back",
        type=float,
        help="Only keep items published in the last N hours (0 = no filter)",
    )
    collect_parser.add_argument(
        "--last-12h",
        action="store_true",
        help="Shortcut for --hours-back 12",
    )
    collect_parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Log every saved article",
    )
    collect_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Fetch and filter, but do not write to the database",
    )
    collect_parser.add_argument(
        "--fail-fast",
        action="store_true",
        help="Abort on an unreachable database and fail the run on any error",
    )
    collect_parser.add_argument(
        "--uniform-config",
        action="store_true",
        help="Use the same budget for every source instead of per-source budgets",
    )

    # Health command
    health_parser = subparsers.add_parser("health", help="Check source health")
    health_parser.add_argument("--sources", "-s", help="Comma-separated sources to check")

    # Counts command
    subparsers.add_parser("counts", help="Show article counts per category")

    # Feeds command
    feeds_parser = subparsers.add_parser("feeds", help="Manage the feed registry")
    feeds_sub = feeds_parser.add_subparsers(dest="feeds_command")
    import_parser = feeds_sub.add_parser("import", help="Import feeds from a JSON file")
    import_parser.add_argument("file", help="JSON list of {name, url, category}")
    list_parser = feeds_sub.add_parser("list", help="List registered feeds")
    list_parser.add_argument("--active", action="store_true", help="Only active feeds")

    # Serve command
    serve_parser = subparsers.add_parser("serve", help="Run the API and scheduler")
    serve_parser.add_argument("--host", help="Bind address")
    serve_parser.add_argument("--port", type=int, help="Port")

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    settings = get_settings()
    verbose = getattr(args, "verbose", False)
    configure_logging(
        "DEBUG" if verbose else settings.log_level,
        json_output=settings.log_json and not sys.stderr.isatty(),
    )

    # Run command
    if args.command == "collect":
        return asyncio.run(cmd_collect(args, settings))
    elif args.command == "health":
        return asyncio.run(cmd_health(args, settings))
    elif args.command == "counts":
        return asyncio.run(cmd_counts(args, settings))
    elif args.command == "feeds":
        if not args.feeds_command:
            args.feeds_command = "list"
            args.active = False
        return asyncio.run(cmd_feeds(args, settings))
    elif args.command == "serve":
        return cmd_serve(args, settings)

    return 0


if __name__ == "__main__":
    sys.exit(main())
