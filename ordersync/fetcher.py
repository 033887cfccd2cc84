"""Batch detail fetching with per-attempt progress and backoff."""
import asyncio
from typing import Any, Dict, List, Optional

from ordersync.config import config
from ordersync.events import EventBus, emit_batch_attempt, events
from ordersync.observability import Timer, get_logger
from ordersync.resilience import RetryPolicy, SleepFunc, retry_with_backoff

logger = get_logger(__name__)


class BatchDetailFetcher:
    """
    Fetches full order details for one batch of ids.

    Every attempt emits a BATCH_ATTEMPT event so a progress display can show
    "Fetching batch 4 (attempt 2/3)" while the backoff runs.
    """

    def __init__(
        self,
        gateway: Any,
        policy: Optional[RetryPolicy] = None,
        sleep: SleepFunc = asyncio.sleep,
        bus: EventBus = None,
        sync_type: str = None,
        max_batch_size: int = None,
    ):
        self.gateway = gateway
        self.policy = policy or RetryPolicy(
            max_attempts=config.sync.max_attempts,
            base_delay=config.sync.base_backoff_seconds,
            multiplier=config.sync.backoff_multiplier,
        )
        self.sleep = sleep
        self.bus = bus or events
        self.sync_type = sync_type
        self.max_batch_size = max_batch_size or config.gateway.max_batch_size

    async def fetch(self, order_ids: List[str], batch_number: int) -> List[Dict[str, Any]]:
        """
        Fetch details for ``order_ids``.

        Raises:
            ValueError: more ids than one remote request accepts
            GatewayError: after retries are exhausted, or immediately when
                the error is not retryable
        """
        if len(order_ids) > self.max_batch_size:
            raise ValueError(
                f"Batch {batch_number} has {len(order_ids)} ids, limit is {self.max_batch_size}"
            )
        if not order_ids:
            return []

        async def on_attempt(attempt: int, max_attempts: int) -> None:
            await emit_batch_attempt(
                batch_number,
                attempt,
                max_attempts,
                bus=self.bus,
                batch_size=len(order_ids),
                sync_type=self.sync_type,
            )

        with Timer(f"fetch_batch_{batch_number}", logger):
            details = await retry_with_backoff(
                lambda: self.gateway.fetch_order_details(order_ids),
                policy=self.policy,
                sleep=self.sleep,
                on_attempt=on_attempt,
                context={"batch_number": batch_number, "batch_size": len(order_ids)},
            )

        if len(details) < len(order_ids):
            logger.warning(
                "Remote returned fewer orders than requested",
                extra={"batch_number": batch_number, "requested": len(order_ids), "returned": len(details)},
            )
        return details
