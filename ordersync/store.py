"""
DuckDB store for synced orders and sync bookkeeping.

Domain-specific query methods are organized into repository mixins:
- OrdersMixin: Order/item lookups, bulk writes, open/closed reconciliation
- SyncStateMixin: Checkpoints, sync logs, unique-run locks
- FailedSyncsMixin: Per-order failures queued for retry

All access goes through one connection serialized by an asyncio.Lock;
DuckDB connections are not safe to share between concurrent callers.
"""
import asyncio
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import duckdb
import pandas as pd

from ordersync.config import config
from ordersync.exceptions import QueryTimeoutError
from ordersync.observability import get_logger
from ordersync.repositories import FailedSyncsMixin, OrdersMixin, SyncStateMixin

logger = get_logger(__name__)

MEMORY_DB = ":memory:"

SCHEMA_SQL = """
CREATE SEQUENCE IF NOT EXISTS order_items_id_seq START 1;
CREATE SEQUENCE IF NOT EXISTS sync_logs_id_seq START 1;
CREATE SEQUENCE IF NOT EXISTS failed_order_syncs_id_seq START 1;

-- Orders keyed by the remote order id
CREATE TABLE IF NOT EXISTS orders (
    external_id VARCHAR PRIMARY KEY,
    order_number BIGINT,
    channel VARCHAR,
    channel_normalized VARCHAR,
    subsource VARCHAR,
    currency VARCHAR,
    total_charge DECIMAL(12, 2) DEFAULT 0,
    total_paid DECIMAL(12, 2) DEFAULT 0,
    postage_cost DECIMAL(12, 2) DEFAULT 0,
    tax DECIMAL(12, 2) DEFAULT 0,
    profit_margin DECIMAL(12, 2) DEFAULT 0,
    status VARCHAR NOT NULL,
    is_open BOOLEAN NOT NULL DEFAULT FALSE,
    is_processed BOOLEAN NOT NULL DEFAULT FALSE,
    is_cancelled BOOLEAN NOT NULL DEFAULT FALSE,
    has_refund BOOLEAN NOT NULL DEFAULT FALSE,
    received_at TIMESTAMP,
    processed_at TIMESTAMP,
    paid_at TIMESTAMP,
    last_synced_at TIMESTAMP,
    sync_metadata VARCHAR,
    created_at TIMESTAMP,
    updated_at TIMESTAMP
);

-- Line items; replaced wholesale, never patched
CREATE TABLE IF NOT EXISTS order_items (
    id BIGINT PRIMARY KEY DEFAULT nextval('order_items_id_seq'),
    order_external_id VARCHAR NOT NULL,
    remote_item_id VARCHAR,
    sku VARCHAR,
    title VARCHAR,
    quantity INTEGER NOT NULL DEFAULT 0,
    unit_cost DECIMAL(12, 2) DEFAULT 0,
    price_per_unit DECIMAL(12, 2) DEFAULT 0,
    line_total DECIMAL(12, 2) DEFAULT 0,
    category_name VARCHAR,
    parent_sku VARCHAR,
    created_at TIMESTAMP
);

-- Watermark per sync stream
CREATE TABLE IF NOT EXISTS sync_checkpoints (
    stream_name VARCHAR NOT NULL,
    source VARCHAR NOT NULL,
    last_sync_at TIMESTAMP,
    sync_started_at TIMESTAMP,
    sync_completed_at TIMESTAMP,
    status VARCHAR NOT NULL DEFAULT 'idle',
    records_synced BIGINT DEFAULT 0,
    records_created BIGINT DEFAULT 0,
    records_updated BIGINT DEFAULT 0,
    records_failed BIGINT DEFAULT 0,
    metadata VARCHAR,
    error_message VARCHAR,
    created_at TIMESTAMP,
    updated_at TIMESTAMP,
    PRIMARY KEY (stream_name, source)
);

-- One row per sync run
CREATE TABLE IF NOT EXISTS sync_logs (
    id BIGINT PRIMARY KEY DEFAULT nextval('sync_logs_id_seq'),
    sync_type VARCHAR NOT NULL,
    status VARCHAR NOT NULL,
    total_fetched BIGINT DEFAULT 0,
    total_created BIGINT DEFAULT 0,
    total_updated BIGINT DEFAULT 0,
    total_skipped BIGINT DEFAULT 0,
    total_failed BIGINT DEFAULT 0,
    started_at TIMESTAMP,
    completed_at TIMESTAMP,
    metadata VARCHAR,
    progress VARCHAR,
    error_message VARCHAR
);

-- Unique-run locks
CREATE TABLE IF NOT EXISTS sync_locks (
    name VARCHAR PRIMARY KEY,
    owner VARCHAR NOT NULL,
    acquired_at TIMESTAMP NOT NULL,
    expires_at TIMESTAMP NOT NULL
);

-- Orders that failed to import, with retry schedule
CREATE TABLE IF NOT EXISTS failed_order_syncs (
    id BIGINT PRIMARY KEY DEFAULT nextval('failed_order_syncs_id_seq'),
    external_id VARCHAR,
    order_number BIGINT,
    sync_type VARCHAR,
    failure_reason VARCHAR,
    error_message VARCHAR,
    order_data VARCHAR,
    attempt_count INTEGER DEFAULT 1,
    last_attempted_at TIMESTAMP,
    next_retry_at TIMESTAMP,
    is_resolved BOOLEAN DEFAULT FALSE,
    resolved_at TIMESTAMP,
    created_at TIMESTAMP
);
"""


class OrderStore(OrdersMixin, SyncStateMixin, FailedSyncsMixin):
    """
    Async-compatible DuckDB store.

    Usage:
        store = OrderStore(":memory:")
        await store.connect()
        async with store.transaction() as conn:
            store.insert_orders(conn, rows)
    """

    def __init__(self, db_path: Union[str, Path] = None, query_timeout: float = None):
        self.db_path = str(db_path or config.database.path)
        self.query_timeout = query_timeout or config.database.query_timeout
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._lock = asyncio.Lock()
        self._total_queries = 0

    @property
    def is_memory(self) -> bool:
        return self.db_path == MEMORY_DB

    async def connect(self) -> None:
        """Open the database and create the schema."""
        if not self.is_memory:
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        async with self._lock:
            if self._connection is None:
                self._connection = duckdb.connect(self.db_path)
                self._connection.execute(SCHEMA_SQL)
                logger.info(f"DuckDB connected: {self.db_path}")

    async def close(self) -> None:
        async with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None
                logger.info("DuckDB connection closed")

    @asynccontextmanager
    async def connection(self):
        """Serialized access to the shared connection."""
        if self._connection is None:
            await self.connect()
        async with self._lock:
            yield self._connection

    @asynccontextmanager
    async def transaction(self):
        """
        One write transaction.

        Commits when the block exits cleanly. Any exception rolls back
        everything written in the block and propagates.
        """
        async with self.connection() as conn:
            conn.begin()
            try:
                yield conn
            except BaseException:
                conn.rollback()
                raise
            conn.commit()

    def get_connection_info(self) -> Dict[str, Any]:
        return {
            "status": "active" if self._connection else "not_initialized",
            "total_queries": self._total_queries,
            "db_path": self.db_path,
        }

    # ─── Query Execution with Timeout ────────────────────────────────────────

    async def _execute(self, query: str, params: list = None, timeout: float = None) -> Optional[tuple]:
        """Run one statement and return its first row (DuckDB reports affected counts this way)."""
        return await self._run(lambda conn: conn.execute(query, params or []).fetchone(), query, timeout)

    async def _fetch_one(self, query: str, params: list = None, timeout: float = None) -> Optional[tuple]:
        return await self._run(lambda conn: conn.execute(query, params or []).fetchone(), query, timeout)

    async def _fetch_all(self, query: str, params: list = None, timeout: float = None) -> List[tuple]:
        return await self._run(lambda conn: conn.execute(query, params or []).fetchall(), query, timeout)

    async def _run(self, func, query: str, timeout: float = None):
        """
        Offload blocking DB work to a thread with a timeout.

        Raises:
            QueryTimeoutError: If the statement exceeds the timeout
        """
        timeout = timeout or self.query_timeout
        async with self.connection() as conn:
            self._total_queries += 1
            try:
                return await asyncio.wait_for(asyncio.to_thread(func, conn), timeout=timeout)
            except asyncio.TimeoutError:
                raise QueryTimeoutError(query, timeout, "Statement failed")

    @staticmethod
    def _register_frame(conn: duckdb.DuckDBPyConnection, name: str, rows: List[Dict[str, Any]], columns: List[str]) -> None:
        """Expose rows to SQL as a pandas-backed view of text columns."""
        # string dtype keeps all-NULL columns VARCHAR so every CAST is valid
        conn.register(name, pd.DataFrame(rows, columns=columns).astype("string"))


# ═══════════════════════════════════════════════════════════════════════════════
# SINGLETON INSTANCE
# ═══════════════════════════════════════════════════════════════════════════════

_store_instance: Optional[OrderStore] = None
_store_lock = asyncio.Lock()


async def get_store() -> OrderStore:
    """Get singleton store instance (coroutine-safe)."""
    global _store_instance
    async with _store_lock:
        if _store_instance is None:
            _store_instance = OrderStore()
            await _store_instance.connect()
    return _store_instance


async def close_store() -> None:
    global _store_instance
    if _store_instance:
        await _store_instance.close()
        _store_instance = None
