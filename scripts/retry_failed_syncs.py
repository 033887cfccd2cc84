#!/usr/bin/env python3
"""
Retry orders whose import failed earlier and are due for another attempt.

Usage:
    python scripts/retry_failed_syncs.py
    python scripts/retry_failed_syncs.py --limit 10
"""
import argparse
import asyncio
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from ordersync.config import ConfigurationError, config
from ordersync.exceptions import SyncAlreadyRunningError
from ordersync.observability import get_logger, setup_logging
from ordersync.store import close_store
from ordersync.sync_service import close_sync_orchestrator, get_sync_orchestrator

logger = get_logger("retry_failed_syncs")


async def main(limit: int) -> int:
    try:
        orchestrator = await get_sync_orchestrator()
        stats = await orchestrator.retry_failed_syncs(limit=limit)
        remaining = await orchestrator.store.count_unresolved_failures()
    except (ConfigurationError, SyncAlreadyRunningError) as e:
        logger.error(str(e))
        return 1
    except Exception as e:
        logger.error(f"Retry failed: {e}", exc_info=True)
        return 1
    finally:
        await close_sync_orchestrator()
        await close_store()

    logger.info(
        f"Retried {stats['attempted']} orders: {stats['resolved']} resolved, "
        f"{stats['rescheduled']} rescheduled, {remaining} still unresolved"
    )
    return 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Retry failed order imports")
    parser.add_argument(
        "--limit", type=int, default=config.sync.failed_retry_limit, help="Max orders to retry (default: %(default)s)"
    )
    parser.add_argument("--log-level", default=config.logging.level)
    args = parser.parse_args()

    setup_logging(args.log_level, json_format=config.logging.json_format)
    sys.exit(asyncio.run(main(args.limit)))
