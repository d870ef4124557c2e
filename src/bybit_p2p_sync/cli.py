"""Command-line interface for the Bybit P2P sync service.

Usage:
    python -m bybit_p2p_sync <command>

Commands:
    run          Run the sync and enrichment passes on their schedules
    sync-once    Run a single trade sync pass and exit
    enrich-once  Run a single enrichment pass and exit
    init-db      Create the database tables (development / SQLite)
    show-config  Print the effective configuration with secrets redacted
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys

from pydantic import ValidationError

from bybit_p2p_sync.config import Settings, get_settings
from bybit_p2p_sync.service import SyncService
from bybit_p2p_sync.storage.database import DatabaseConnectionError, DatabaseManager
from bybit_p2p_sync.sync.orchestrator import AccountSyncState

# Exit codes
EXIT_SUCCESS = 0
EXIT_ERROR = 1
EXIT_ARGS_ERROR = 2

logger = logging.getLogger(__name__)


def parse_args(args: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        prog="bybit-p2p-sync",
        description="Sync Bybit P2P trade history and enrich it with chat phone numbers",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Override LOG_LEVEL",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")
    subparsers.add_parser("run", help="Run both passes until SIGINT/SIGTERM")
    subparsers.add_parser("sync-once", help="Run a single trade sync pass")
    subparsers.add_parser("enrich-once", help="Run a single enrichment pass")
    subparsers.add_parser("init-db", help="Create database tables")
    subparsers.add_parser("show-config", help="Print the configuration with secrets redacted")

    parsed = parser.parse_args(args)
    if parsed.command is None:
        parser.print_help()
        sys.exit(EXIT_ARGS_ERROR)
    return parsed


def configure_logging(level: int | str) -> None:
    """Configure the process-wide log sink."""
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        force=True,
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)


async def _sync_once(settings: Settings) -> int:
    service = SyncService(settings)
    await service.start(background=False)
    try:
        results = await service.run_sync_cycle()
    finally:
        await service.stop()

    failed = [r for r in results if r.state is AccountSyncState.FAILED]
    print(f"\nSynced {len(results)} accounts: {sum(r.inserted for r in results)} new transactions")
    for result in results:
        print(f"  account {result.account_id}: {result.status_message}")
    print()
    return EXIT_ERROR if failed else EXIT_SUCCESS


async def _enrich_once(settings: Settings) -> int:
    service = SyncService(settings)
    await service.start(background=False)
    try:
        result = await service.run_enrichment_cycle()
    finally:
        await service.stop()

    print(
        f"\nEnriched {result.enriched} transactions "
        f"({result.phones_found} phones, {result.failed} failed, {result.skipped} skipped)\n"
    )
    return EXIT_ERROR if result.failed else EXIT_SUCCESS


async def _init_db(settings: Settings) -> int:
    db = DatabaseManager(settings.database.url, echo=settings.database.echo)
    try:
        await db.connect_with_retry(
            attempts=settings.database.connect_retries,
            delay_seconds=settings.database.connect_retry_delay_seconds,
        )
        await db.init_schema_async()
    finally:
        await db.dispose_async()
    print("\nDatabase tables created\n")
    return EXIT_SUCCESS


def run_command(args: argparse.Namespace) -> int:
    """Execute the selected command."""
    try:
        settings = get_settings()
    except ValidationError as e:
        configure_logging(args.log_level or logging.INFO)
        logger.error("Configuration error: %s", e)
        return EXIT_ARGS_ERROR

    configure_logging(args.log_level or settings.get_logging_level())
    logger.info("Running command: %s", args.command)

    if args.command == "show-config":
        print(json.dumps(settings.redacted_summary(), indent=2))
        return EXIT_SUCCESS

    try:
        if args.command == "run":
            asyncio.run(SyncService(settings).run())
            return EXIT_SUCCESS
        if args.command == "sync-once":
            return asyncio.run(_sync_once(settings))
        if args.command == "enrich-once":
            return asyncio.run(_enrich_once(settings))
        if args.command == "init-db":
            return asyncio.run(_init_db(settings))
    except DatabaseConnectionError as e:
        logger.error("Database unavailable: %s", e)
        return EXIT_ERROR
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return EXIT_SUCCESS
    except Exception as e:
        logger.exception("Command %s failed: %s", args.command, e)
        return EXIT_ERROR

    logger.error("Unknown command: %s", args.command)
    return EXIT_ARGS_ERROR


def main(argv: list[str] | None = None) -> int:
    """CLI entry point."""
    return run_command(parse_args(argv))
