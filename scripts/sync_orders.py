#!/usr/bin/env python3
"""
Incremental order sync.

Reconciles open orders, then imports processed orders received since the
last successful run.

Usage:
    python scripts/sync_orders.py
    python scripts/sync_orders.py --batch-size 100 --dry-run
    python scripts/sync_orders.py --force          # rewrite items of every order seen
    python scripts/sync_orders.py --only-missing   # only fill gaps in stored orders
"""
import argparse
import asyncio
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from ordersync.config import ConfigurationError, config
from ordersync.exceptions import SyncAlreadyRunningError, ValidationError
from ordersync.observability import get_logger, setup_logging
from ordersync.store import close_store
from ordersync.sync_service import SyncRequest, close_sync_orchestrator, get_sync_orchestrator
from ordersync.validators import validate_batch_size

logger = get_logger("sync_orders")


async def main(args: argparse.Namespace) -> int:
    """Run one incremental sync. Returns the process exit code."""
    try:
        batch_size = validate_batch_size(args.batch_size)
    except ValidationError as e:
        logger.error(f"Invalid arguments: {e}")
        return 1

    request = SyncRequest(
        batch_size=batch_size,
        dry_run=args.dry_run,
        force=args.force,
        only_missing=args.only_missing,
        started_by="cli",
        date_field=args.date_field,
    )

    try:
        orchestrator = await get_sync_orchestrator()
        result = await orchestrator.run(request)
    except ConfigurationError as e:
        logger.error(f"Not configured: {e}")
        return 1
    except SyncAlreadyRunningError as e:
        logger.error(str(e))
        return 1
    except Exception as e:
        logger.error(f"Sync failed: {e}", exc_info=True)
        return 1
    finally:
        await close_sync_orchestrator()
        await close_store()

    summary = result.to_dict()
    logger.info(
        f"Sync complete: fetched={summary['fetched']} created={summary['created']} "
        f"updated={summary['updated']} skipped={summary['skipped']} failed={summary['failed']} "
        f"closed={summary['marked_closed']}"
    )
    if result.dry_run:
        logger.info("Dry run: no changes were written")
    return 0


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Incremental sync of remote orders into DuckDB")
    parser.add_argument(
        "--batch-size",
        type=int,
        default=config.sync.batch_size,
        help=f"Orders per detail request, capped at {config.gateway.max_batch_size} (default: %(default)s)",
    )
    parser.add_argument("--dry-run", action="store_true", help="Fetch and compare, write nothing")
    parser.add_argument("--force", action="store_true", help="Delete and recreate items of every order seen")
    parser.add_argument("--only-missing", action="store_true", help="Only update orders lacking items or dates")
    parser.add_argument(
        "--date-field",
        choices=["received", "processed", "payment", "cancelled"],
        default=None,
        help="Date field for the processed-order search (default: SYNC_DEFAULT_DATE_FIELD)",
    )
    parser.add_argument("--log-level", default=config.logging.level, help="Log level (default: %(default)s)")
    parser.add_argument("--json-logs", action="store_true", help="Emit JSON log lines")
    return parser.parse_args(argv)


if __name__ == "__main__":
    args = parse_args()
    setup_logging(args.log_level, json_format=args.json_logs or config.logging.json_format)
    sys.exit(asyncio.run(main(args)))
