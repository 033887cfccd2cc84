#!/usr/bin/env python3
"""
Open orders sync: reconcile open/closed flags, then import new open orders
as independent jobs.

Usage:
    python scripts/sync_open_orders.py
    python scripts/sync_open_orders.py --batch-size 50
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
from ordersync.sync_service import close_sync_orchestrator, get_sync_orchestrator

logger = get_logger("sync_open_orders")


async def main(batch_size: int) -> int:
    try:
        orchestrator = await get_sync_orchestrator()
        result = await orchestrator.sync_open_orders(batch_size=batch_size)
    except (ConfigurationError, ValidationError, SyncAlreadyRunningError) as e:
        logger.error(str(e))
        return 1
    except Exception as e:
        logger.error(f"Open orders sync failed: {e}", exc_info=True)
        return 1
    finally:
        await close_sync_orchestrator()
        await close_store()

    summary = result.to_dict()
    logger.info(
        f"Open orders: {summary['open_ids_found']} open, {summary['marked_closed']} closed, "
        f"{summary['created']} imported, {summary['fatal_batches']} failed jobs"
    )
    return 0 if result.fatal_batches == 0 else 1


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Sync open orders from the remote order API")
    parser.add_argument("--batch-size", type=int, default=config.sync.batch_size, help="Orders per import job")
    parser.add_argument("--log-level", default=config.logging.level)
    parser.add_argument("--json-logs", action="store_true", help="Emit JSON log lines")
    args = parser.parse_args()

    setup_logging(args.log_level, json_format=args.json_logs or config.logging.json_format)
    sys.exit(asyncio.run(main(args.batch_size)))
