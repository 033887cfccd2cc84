"""Open/closed status reconciliation against the remote open-order list."""
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, List, Optional

from ordersync.config import config
from ordersync.observability import get_logger

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


@dataclass
class ReconcileResult:
    marked_open: int = 0
    marked_closed: int = 0
    closed_ids: List[str] = field(default_factory=list)


class OpenOrderReconciler:
    """
    Keeps ``is_open`` in line with the remote open set.

    Local orders in the set are flagged open and their last_synced_at is
    refreshed. Open orders missing from the set are closed only once they
    have gone unseen for longer than the grace window, so an order that was
    imported moments ago is not closed by a list fetched before it existed.
    Closing is a flag flip; nothing is deleted or inserted here.
    """

    def __init__(
        self,
        store: Any,
        grace: Optional[timedelta] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.grace = grace if grace is not None else timedelta(minutes=config.sync.open_grace_minutes)
        self._clock = clock

    async def reconcile(self, open_ids: List[str], now: Optional[datetime] = None) -> ReconcileResult:
        now = now or self._clock()
        open_ids = list(dict.fromkeys(open_ids))

        marked_open = await self.store.mark_orders_open(open_ids, now)
        closed_ids = await self.store.close_stale_open_orders(open_ids, now - self.grace, now)

        logger.info(
            "Reconciled open orders",
            extra={
                "remote_open": len(open_ids),
                "marked_open": marked_open,
                "marked_closed": len(closed_ids),
                "grace_minutes": self.grace.total_seconds() / 60,
            },
        )
        return ReconcileResult(marked_open=marked_open, marked_closed=len(closed_ids), closed_ids=closed_ids)

    async def missing_ids(self, open_ids: List[str]) -> List[str]:
        """Open ids with no local order yet; these need a fetch and import."""
        return await self.store.missing_external_ids(open_ids)
