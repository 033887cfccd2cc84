#!/usr/bin/env python3
"""
Background sync worker: runs the scheduled jobs until interrupted.

On SIGINT or SIGTERM the scheduler stops first. A sync in flight is then
asked to stop and awaited before the gateway and store are closed.

Usage:
    python scripts/run_worker.py
"""
import asyncio
import signal
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from ordersync.config import ConfigurationError, config, validate_config
from ordersync.observability import get_logger, setup_logging
from ordersync.scheduler import start_scheduler, stop_scheduler
from ordersync.store import close_store, get_store
from ordersync.sync_service import close_sync_orchestrator

logger = get_logger("run_worker")


async def main() -> int:
    try:
        validate_config()
    except ConfigurationError as e:
        logger.error(str(e))
        return 1

    await get_store()
    scheduler = await start_scheduler()
    for job in scheduler.get_jobs():
        logger.info(f"Scheduled {job['id']}: {job['trigger']}")

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    logger.info(f"Sync worker v{config.version} running, press Ctrl+C to stop")
    await stop.wait()

    logger.info("Shutting down")
    stop_scheduler()
    if not await close_sync_orchestrator(config.sync.shutdown_timeout_seconds):
        logger.warning("Sync did not stop in time, closing the store under it")
    await close_store()
    return 0


if __name__ == "__main__":
    setup_logging(config.logging.level, json_format=config.logging.json_format)
    sys.exit(asyncio.run(main()))
