"""Order and order item persistence."""
from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)

# Column -> SQL type used when casting values out of a registered DataFrame.
# Values travel as text so pandas never coerces None ints into NaN floats.
ORDER_COLUMNS = {
    "external_id": "VARCHAR",
    "order_number": "BIGINT",
    "channel": "VARCHAR",
    "channel_normalized": "VARCHAR",
    "subsource": "VARCHAR",
    "currency": "VARCHAR",
    "total_charge": "DECIMAL(12, 2)",
    "total_paid": "DECIMAL(12, 2)",
    "postage_cost": "DECIMAL(12, 2)",
    "tax": "DECIMAL(12, 2)",
    "profit_margin": "DECIMAL(12, 2)",
    "status": "VARCHAR",
    "is_open": "BOOLEAN",
    "is_processed": "BOOLEAN",
    "is_cancelled": "BOOLEAN",
    "has_refund": "BOOLEAN",
    "received_at": "TIMESTAMP",
    "processed_at": "TIMESTAMP",
    "paid_at": "TIMESTAMP",
    "last_synced_at": "TIMESTAMP",
    "sync_metadata": "VARCHAR",
    "created_at": "TIMESTAMP",
    "updated_at": "TIMESTAMP",
}

ITEM_COLUMNS = {
    "order_external_id": "VARCHAR",
    "remote_item_id": "VARCHAR",
    "sku": "VARCHAR",
    "title": "VARCHAR",
    "quantity": "INTEGER",
    "unit_cost": "DECIMAL(12, 2)",
    "price_per_unit": "DECIMAL(12, 2)",
    "line_total": "DECIMAL(12, 2)",
    "category_name": "VARCHAR",
    "parent_sku": "VARCHAR",
    "created_at": "TIMESTAMP",
}

# Never touched by an update
IMMUTABLE_ORDER_COLUMNS = {"external_id", "created_at"}


def to_sql_text(value: Any) -> Optional[str]:
    """Render a Python value as text DuckDB can CAST back (None stays NULL)."""
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, datetime):
        return value.isoformat(sep=" ")
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)


def _text_rows(rows: Iterable[Dict[str, Any]], columns: Dict[str, str]) -> List[Dict[str, Optional[str]]]:
    return [{col: to_sql_text(row.get(col)) for col in columns} for row in rows]


def _cast_select(alias: str, columns: Dict[str, str]) -> str:
    return ", ".join(f"CAST({alias}.{col} AS {sql_type})" for col, sql_type in columns.items())


def _rows_as_dicts(cursor) -> List[Dict[str, Any]]:
    names = [d[0] for d in cursor.description]
    return [dict(zip(names, row)) for row in cursor.fetchall()]


class OrdersMixin:

    # ─── Writes (call inside store.transaction()) ────────────────────────────

    def insert_orders(self, conn, rows: List[Dict[str, Any]]) -> int:
        """Insert new orders. ``rows`` are dicts keyed by ORDER_COLUMNS."""
        if not rows:
            return 0
        self._register_frame(conn, "incoming_orders", _text_rows(rows, ORDER_COLUMNS), list(ORDER_COLUMNS))
        try:
            conn.execute(f"""
                INSERT INTO orders ({", ".join(ORDER_COLUMNS)})
                SELECT {_cast_select("u", ORDER_COLUMNS)} FROM incoming_orders u
            """)
        finally:
            conn.unregister("incoming_orders")
        return len(rows)

    def update_orders(self, conn, rows: List[Dict[str, Any]]) -> int:
        """Overwrite mutable columns of existing orders, matched by external_id."""
        if not rows:
            return 0
        self._register_frame(conn, "incoming_orders", _text_rows(rows, ORDER_COLUMNS), list(ORDER_COLUMNS))
        assignments = ", ".join(
            f"{col} = CAST(u.{col} AS {sql_type})"
            for col, sql_type in ORDER_COLUMNS.items()
            if col not in IMMUTABLE_ORDER_COLUMNS
        )
        try:
            conn.execute(f"""
                UPDATE orders SET {assignments}
                FROM incoming_orders u
                WHERE orders.external_id = u.external_id
            """)
        finally:
            conn.unregister("incoming_orders")
        return len(rows)

    def delete_items(self, conn, external_ids: List[str]) -> None:
        """Remove every item of the given orders."""
        if not external_ids:
            return
        self._register_frame(conn, "item_owner_ids", [{"external_id": i} for i in external_ids], ["external_id"])
        try:
            conn.execute("""
                DELETE FROM order_items
                WHERE order_external_id IN (SELECT external_id FROM item_owner_ids)
            """)
        finally:
            conn.unregister("item_owner_ids")

    def insert_items(self, conn, rows: List[Dict[str, Any]]) -> int:
        if not rows:
            return 0
        self._register_frame(conn, "incoming_items", _text_rows(rows, ITEM_COLUMNS), list(ITEM_COLUMNS))
        try:
            conn.execute(f"""
                INSERT INTO order_items ({", ".join(ITEM_COLUMNS)})
                SELECT {_cast_select("u", ITEM_COLUMNS)} FROM incoming_items u
            """)
        finally:
            conn.unregister("incoming_items")
        return len(rows)

    # ─── Reads ───────────────────────────────────────────────────────────────

    async def get_orders_by_external_ids(self, external_ids: List[str]) -> Dict[str, Dict[str, Any]]:
        """
        One bulk lookup of existing orders.

        Returns:
            external_id -> order row dict, with an extra ``item_count`` key
        """
        if not external_ids:
            return {}

        def _lookup(conn):
            self._register_frame(conn, "lookup_ids", [{"external_id": i} for i in external_ids], ["external_id"])
            try:
                cursor = conn.execute("""
                    SELECT o.*, COALESCE(c.item_count, 0) AS item_count
                    FROM orders o
                    JOIN lookup_ids l ON l.external_id = o.external_id
                    LEFT JOIN (
                        SELECT order_external_id, COUNT(*) AS item_count
                        FROM order_items GROUP BY order_external_id
                    ) c ON c.order_external_id = o.external_id
                """)
                return _rows_as_dicts(cursor)
            finally:
                conn.unregister("lookup_ids")

        rows = await self._run(_lookup, "get_orders_by_external_ids")
        return {row["external_id"]: row for row in rows}

    async def get_order(self, external_id: str) -> Optional[Dict[str, Any]]:
        rows = await self._run(
            lambda conn: _rows_as_dicts(conn.execute("SELECT * FROM orders WHERE external_id = ?", [external_id])),
            "get_order",
        )
        if not rows:
            return None
        order = rows[0]
        order["sync_metadata"] = json.loads(order["sync_metadata"]) if order["sync_metadata"] else {}
        return order

    async def get_order_items(self, external_id: str) -> List[Dict[str, Any]]:
        return await self._run(
            lambda conn: _rows_as_dicts(conn.execute(
                "SELECT * FROM order_items WHERE order_external_id = ? ORDER BY id", [external_id]
            )),
            "get_order_items",
        )

    async def count_orders(self, is_open: Optional[bool] = None) -> int:
        if is_open is None:
            row = await self._fetch_one("SELECT COUNT(*) FROM orders")
        else:
            row = await self._fetch_one("SELECT COUNT(*) FROM orders WHERE is_open = ?", [is_open])
        return row[0] if row else 0

    async def count_items(self) -> int:
        row = await self._fetch_one("SELECT COUNT(*) FROM order_items")
        return row[0] if row else 0

    async def missing_external_ids(self, external_ids: List[str]) -> List[str]:
        """Ids from ``external_ids`` with no local order, in input order."""
        existing = await self.get_orders_by_external_ids(list(dict.fromkeys(external_ids)))
        return [i for i in dict.fromkeys(external_ids) if i not in existing]

    # ─── Open / closed reconciliation ────────────────────────────────────────

    async def mark_orders_open(self, external_ids: List[str], now: datetime) -> int:
        """
        Set is_open and refresh last_synced_at for local orders in the set.

        A reopened order also loses the ``marked_closed_at`` stamp left in its
        sync metadata by an earlier close. Returns the number of orders marked.
        """
        if not external_ids:
            return 0

        def _mark(conn):
            self._register_frame(conn, "open_ids", [{"external_id": i} for i in external_ids], ["external_id"])
            conn.begin()
            try:
                listed = conn.execute("""
                    SELECT external_id, sync_metadata FROM orders
                    WHERE external_id IN (SELECT external_id FROM open_ids)
                """).fetchall()

                reopened = []
                for external_id, raw_metadata in listed:
                    metadata = json.loads(raw_metadata) if raw_metadata else {}
                    if metadata.pop("marked_closed_at", None) is not None:
                        reopened.append({"external_id": external_id, "sync_metadata": json.dumps(metadata)})

                conn.execute("""
                    UPDATE orders SET is_open = TRUE, last_synced_at = ?
                    WHERE external_id IN (SELECT external_id FROM open_ids)
                """, [now])

                if reopened:
                    self._register_frame(conn, "reopened_orders", reopened, ["external_id", "sync_metadata"])
                    try:
                        conn.execute("""
                            UPDATE orders SET sync_metadata = r.sync_metadata, updated_at = ?
                            FROM reopened_orders r
                            WHERE orders.external_id = r.external_id
                        """, [now])
                    finally:
                        conn.unregister("reopened_orders")
                conn.commit()
                return len(listed)
            except Exception:
                conn.rollback()
                raise
            finally:
                conn.unregister("open_ids")

        return await self._run(_mark, "mark_orders_open")

    async def close_stale_open_orders(self, open_ids: List[str], cutoff: datetime, now: datetime) -> List[str]:
        """
        Close open orders absent from ``open_ids`` and not synced since ``cutoff``.

        Each closed order gets ``marked_closed_at`` merged into its sync
        metadata. Returns the closed external ids.
        """

        def _close(conn):
            exclusion = ""
            if open_ids:
                self._register_frame(conn, "open_ids", [{"external_id": i} for i in open_ids], ["external_id"])
                exclusion = "AND external_id NOT IN (SELECT external_id FROM open_ids)"
            conn.begin()
            try:
                candidates = conn.execute(f"""
                    SELECT external_id, sync_metadata FROM orders
                    WHERE is_open = TRUE
                      AND (last_synced_at IS NULL OR last_synced_at < ?)
                      {exclusion}
                """, [cutoff]).fetchall()

                updates = []
                for external_id, raw_metadata in candidates:
                    metadata = json.loads(raw_metadata) if raw_metadata else {}
                    metadata["marked_closed_at"] = now.isoformat()
                    updates.append({"external_id": external_id, "sync_metadata": json.dumps(metadata)})

                if updates:
                    self._register_frame(conn, "closing_orders", updates, ["external_id", "sync_metadata"])
                    try:
                        conn.execute("""
                            UPDATE orders
                            SET is_open = FALSE, sync_metadata = c.sync_metadata, updated_at = ?
                            FROM closing_orders c
                            WHERE orders.external_id = c.external_id
                        """, [now])
                    finally:
                        conn.unregister("closing_orders")
                conn.commit()
                return [u["external_id"] for u in updates]
            except Exception:
                conn.rollback()
                raise
            finally:
                if open_ids:
                    conn.unregister("open_ids")

        return await self._run(_close, "close_stale_open_orders")
