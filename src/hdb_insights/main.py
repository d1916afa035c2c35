"""Main entry point: one-off sync, one enrichment batch, or the web server."""

import argparse
import asyncio
import sys

from hdb_insights.config import Settings
from hdb_insights.db import MarketStorage
from hdb_insights.errors import SyncAlreadyRunningError, SyncFailedError
from hdb_insights.logging import configure_logging, get_logger
from hdb_insights.sync import SyncOrchestrator

logger = get_logger(__name__)


async def run_sync(settings: Settings) -> int:
    """Run one transaction sync and print a summary.

    Returns:
        Process exit code.
    """
    storage = MarketStorage(settings.database_path)
    await storage.initialize()
    orchestrator = SyncOrchestrator.from_settings(settings, storage)

    try:
        result = await orchestrator.run_sync()
    except SyncAlreadyRunningError as e:
        print(f"Skipped: {e}")
        return 0
    except SyncFailedError as e:
        print(f"Sync failed: {e}")
        return 1
    finally:
        await orchestrator.close()
        await storage.close()

    print(
        f"Fetched {result.fetched}, inserted {result.inserted}, "
        f"enriched {result.enriched} in {result.duration_ms} ms"
        + (" (stopped early: rate limited)" if result.rate_limited else "")
    )
    return 0


async def run_enrichment(settings: Settings) -> int:
    """Run one enrichment batch and print each scored unit.

    Returns:
        Process exit code.
    """
    storage = MarketStorage(settings.database_path)
    await storage.initialize()
    orchestrator = SyncOrchestrator.from_settings(settings, storage)

    try:
        result = await orchestrator.run_enrichment()
    except SyncAlreadyRunningError as e:
        print(f"Skipped: {e}")
        return 0
    except SyncFailedError as e:
        print(f"Enrichment failed: {e}")
        return 1
    finally:
        await orchestrator.close()
        await storage.close()

    print(f"Scored {result.processed} units in {result.duration_ms} ms")
    for detail in result.details:
        print(f"  {detail.address}: {detail.score} ({detail.transit})")
    return 0


def main() -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="HDB Insights - Singapore HDB resale market sync and value scoring"
    )
    parser.add_argument(
        "--enrich",
        action="store_true",
        help="Run one enrichment batch instead of a full transaction sync",
    )
    parser.add_argument(
        "--serve",
        action="store_true",
        help="Start web server with background sync and enrichment schedulers",
    )
    parser.add_argument(
        "--no-scheduler",
        action="store_true",
        help="With --serve: start web server only, skip background schedulers",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Emit JSON log lines instead of console output",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug-level logging for troubleshooting",
    )
    args = parser.parse_args()

    # Configure logging
    import logging

    configure_logging(
        json_output=args.json_logs, level=logging.DEBUG if args.debug else logging.INFO
    )

    try:
        settings = Settings()
    except Exception as e:
        logger.error("failed_to_load_settings", error=str(e))
        print(f"Error: Failed to load settings. {e}")
        print("Settings are read from HDB_INSIGHTS_* environment variables or .env.")
        print("Optional: HDB_INSIGHTS_ONEMAP_EMAIL, HDB_INSIGHTS_ONEMAP_PASSWORD")
        sys.exit(1)

    logger.info(
        "starting_hdb_insights",
        database=settings.database_path,
        enrichment_enabled=settings.has_onemap_credentials,
        mode="serve" if args.serve else "enrich" if args.enrich else "sync",
    )

    if args.serve:
        import uvicorn

        from hdb_insights.web.app import create_app

        app = create_app(settings, run_scheduler=not args.no_scheduler)
        uvicorn.run(app, host=settings.web_host, port=settings.web_port, log_level="info")
    elif args.enrich:
        sys.exit(asyncio.run(run_enrichment(settings)))
    else:
        sys.exit(asyncio.run(run_sync(settings)))


if __name__ == "__main__":
    main()
