"""
Repository mixins for the DuckDB order store.

- OrdersMixin: Orders, items, open/closed reconciliation
- SyncStateMixin: Checkpoints, sync logs, unique-run locks
- FailedSyncsMixin: Per-order failures and their retry schedule
"""
from ordersync.repositories.failed_syncs import FailedSyncsMixin
from ordersync.repositories.orders import OrdersMixin
from ordersync.repositories.sync_state import SyncStateMixin

__all__ = [
    "OrdersMixin",
    "SyncStateMixin",
    "FailedSyncsMixin",
]
