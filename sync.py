#!/usr/bin/env python3
"""Main entry point for the Linnworks order sync.

Usage:
    python sync.py                      # Sync open and processed orders
    python sync.py --type open          # Sync open orders only
    python sync.py --dry-run            # Run without writing orders
    python sync.py --retry              # Retry failed order imports only
    python sync.py --stats              # Show sync statistics
    python sync.py --check              # Check the Linnworks connection
"""

import argparse
import asyncio
import logging
import sys
from datetime import datetime, timezone
from typing import List, Optional

from pythonjsonlogger import jsonlogger

from order_sync.config import get_settings, Settings
from order_sync.constants import SYNC_OPEN_ORDERS, SYNC_PROCESSED_ORDERS, PROCESSED_DATE_FIELDS
from order_sync.database import Database
from order_sync.linnworks_client import LinnworksAPIError, LinnworksClient
from order_sync.models import LinnworksConnection, ProcessedOrderFilters
from order_sync.sync_engine import SyncEngine, SyncResult

SYNC_TYPE_CHOICES = {
    "open": [SYNC_OPEN_ORDERS],
    "processed": [SYNC_PROCESSED_ORDERS],
    "all": [SYNC_OPEN_ORDERS, SYNC_PROCESSED_ORDERS],
}


def setup_logging(settings: Settings) -> None:
    """Configure logging for the application.

    Args:
        settings: Application settings
    """
    # Ensure log directory exists
    settings.log_file.parent.mkdir(parents=True, exist_ok=True)

    console_formatter = logging.Formatter(
        "%(asctime)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    json_formatter = jsonlogger.JsonFormatter(
        "%(asctime)s %(levelname)s %(name)s %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(console_formatter)
    console_handler.setLevel(logging.DEBUG)

    # File handler (JSON format for parsing)
    file_handler = logging.FileHandler(settings.log_file)
    file_handler.setFormatter(json_formatter)
    file_handler.setLevel(logging.DEBUG)

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level))
    root_logger.addHandler(console_handler)
    root_logger.addHandler(file_handler)

    # Reduce noise from httpx
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def parse_date(value: str) -> datetime:
    """argparse type for --from/--to (YYYY-MM-DD or full ISO 8601, UTC)."""
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid date: {value}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def seed_connection(settings: Settings, database: Database) -> None:
    """Store the configured credentials as the account's connection."""
    database.upsert_connection(LinnworksConnection(
        account_id=settings.linnworks_account_id,
        application_id=settings.linnworks_application_id,
        application_secret=settings.linnworks_application_secret,
        installation_token=settings.linnworks_installation_token,
    ))


def build_filters(args: argparse.Namespace) -> Optional[ProcessedOrderFilters]:
    if not any([args.channel, args.reference, args.sku, args.tag,
                args.min_value is not None, args.max_value is not None,
                args.date_field != "received"]):
        return None
    return ProcessedOrderFilters(
        date_field=args.date_field,
        channel=args.channel,
        reference=args.reference,
        sku=args.sku,
        tag=args.tag,
        min_value=args.min_value,
        max_value=args.max_value,
    )


def report(logger: logging.Logger, result: SyncResult) -> None:
    """Log the summary of one sync run."""
    logger.info("=" * 60)
    logger.info(f"{result.sync_type} complete")
    logger.info("=" * 60)
    logger.info(f"  Fetched: {result.fetched}")
    logger.info(f"  Created: {result.created}")
    logger.info(f"  Updated: {result.updated}")
    logger.info(f"  Skipped: {result.skipped}")
    logger.info(f"  Failed: {result.failed}")

    if result.errors:
        logger.warning("Errors encountered:")
        for error in result.errors[:10]:  # Show first 10 errors
            logger.warning(f"  - {error}")
        if len(result.errors) > 10:
            logger.warning(f"  ... and {len(result.errors) - 10} more")


async def run_sync(args: argparse.Namespace) -> int:
    """Run the sync operation.

    Args:
        args: Command line arguments

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    logger = logging.getLogger(__name__)

    try:
        settings = get_settings()
    except Exception as e:
        logger.error(f"Failed to load settings: {e}")
        logger.error("Make sure .env file exists with required environment variables")
        return 1

    setup_logging(settings)

    logger.info("=" * 60)
    logger.info("Linnworks Order Sync Starting")
    logger.info("=" * 60)

    if args.dry_run:
        logger.info("DRY RUN MODE ENABLED - No orders will be written")
        settings.dry_run = True

    database = Database(settings.database_path)

    if args.stats:
        stats = database.get_stats()
        logger.info("Sync Statistics:")
        logger.info(f"  Orders: {stats['orders']}")
        logger.info(f"  Pending failed syncs: {stats['pending_failed_syncs']}")
        for name, checkpoint in stats["checkpoints"].items():
            logger.info(f"  Checkpoint {name}: {checkpoint['status']} (last sync {checkpoint['last_sync_at']})")
        for log in stats["recent_syncs"]:
            logger.info(f"  {log['started_at']} {log['sync_type']}: {log['status']} in {log['duration']}")
        return 0

    if settings.has_credentials:
        seed_connection(settings, database)

    async with LinnworksClient(settings) as client:
        engine = SyncEngine(
            settings=settings,
            database=database,
            client=client,
            dry_run=args.dry_run,
        )

        if args.check:
            try:
                ok = await engine.verify_connection()
            except LinnworksAPIError as e:
                logger.error(f"Linnworks connection failed: {e}")
                return 1
            logger.info("Linnworks connection OK" if ok else "Linnworks refused the session")
            return 0 if ok else 1

        results: List[SyncResult] = []
        try:
            if args.retry:
                logger.info("Running retry of failed order syncs...")
                results.append(await engine.retry_failed_syncs())
            else:
                filters = build_filters(args)
                for sync_type in SYNC_TYPE_CHOICES[args.type]:
                    if args.force:
                        logger.info(f"Running FORCED {sync_type} sync (ignoring sync interval)...")
                    result = await engine.run_sync(
                        sync_type,
                        force=args.force,
                        window_start=args.date_from,
                        window_end=args.date_to,
                        filters=filters if sync_type == SYNC_PROCESSED_ORDERS else None,
                    )
                    if result.not_due:
                        logger.info(f"{sync_type} is not due yet, use --force to run anyway")
                        continue
                    results.append(result)
        except Exception as e:
            logger.error(f"Sync aborted: {e}")
            return 1

        exit_code = 0
        for result in results:
            report(logger, result)
            if result.failed or result.failed_pages:
                exit_code = 1
        return exit_code


def main() -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Sync open and processed orders from Linnworks into the local database",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python sync.py                          Sync open and processed orders
  python sync.py --type processed         Sync processed orders only
  python sync.py --dry-run                Run without writing orders
  python sync.py --force                  Run even if the sync interval has not elapsed
  python sync.py --from 2024-01-01        Sync from a fixed date instead of the checkpoint
  python sync.py --retry                  Retry previously failed order imports
  python sync.py --stats                  Show sync statistics
  python sync.py --check                  Check the Linnworks connection
        """,
    )

    parser.add_argument(
        "--type",
        choices=sorted(SYNC_TYPE_CHOICES),
        default="all",
        help="Which orders to sync (default: all)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Fetch and assemble orders but don't write them",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Run even if the sync interval has not elapsed",
    )
    parser.add_argument(
        "--retry",
        action="store_true",
        help="Retry previously failed order imports only",
    )
    parser.add_argument(
        "--stats",
        action="store_true",
        help="Show sync statistics and exit",
    )
    parser.add_argument(
        "--check",
        action="store_true",
        help="Check the Linnworks credentials and session, then exit",
    )
    parser.add_argument("--from", dest="date_from", type=parse_date, help="Window start (UTC)")
    parser.add_argument("--to", dest="date_to", type=parse_date, help="Window end (UTC)")

    filters = parser.add_argument_group("processed order filters")
    filters.add_argument("--date-field", choices=PROCESSED_DATE_FIELDS, default="received")
    filters.add_argument("--channel", help="Only orders from this channel")
    filters.add_argument("--reference", help="Only orders with this reference number")
    filters.add_argument("--sku", help="Only orders containing this SKU")
    filters.add_argument("--tag", help="Only orders with this tag")
    filters.add_argument("--min-value", type=float, help="Minimum order total")
    filters.add_argument("--max-value", type=float, help="Maximum order total")

    args = parser.parse_args()

    # Run async main
    exit_code = asyncio.run(run_sync(args))
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
