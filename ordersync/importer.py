"""
Bulk import of fully detailed remote orders.

Every payload is mapped in Python first, so one bad order is counted and
logged without touching the database. The successfully mapped orders are
then written in a single transaction: a SQL failure rolls back the whole
batch and propagates to the caller.
"""
import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from ordersync.exceptions import OrderMappingError
from ordersync.models import ImportResult, ImportSource, RemoteOrder
from ordersync.observability import Timer, get_logger

logger = get_logger(__name__)

# Columns compared against the stored row to decide whether an update is needed
COMPARABLE_FIELDS = (
    "order_number", "channel", "channel_normalized", "subsource", "currency",
    "total_charge", "total_paid", "postage_cost", "tax", "profit_margin",
    "status", "is_open", "is_processed", "is_cancelled", "has_refund",
    "received_at", "processed_at", "paid_at",
)

# Fields ONLY_MISSING may fill on a stored order, and only where the stored value is a gap
GAP_FIELDS = ("processed_at", "tax", "postage_cost", "profit_margin", "channel", "subsource")

ZERO_WHEN_MISSING = ("tax", "postage_cost", "profit_margin")

# Written on every touch of a stored order, whatever the mode
SYNC_BOOKKEEPING = ("external_id", "last_synced_at", "sync_metadata", "created_at", "updated_at")


class ImportMode(str, Enum):
    MERGE = "merge"                # update changed fields, keep existing items
    REIMPORT = "reimport"          # update and replace items of every seen order
    ONLY_MISSING = "only_missing"  # fill gaps in stored orders: missing items and empty fields


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class BulkImporter:
    """
    Imports batches of ``GetOrdersById`` payloads into the order store.

    Usage:
        importer = BulkImporter(store, mode=ImportMode.MERGE)
        result = await importer.import_batch(details, ImportSource.PROCESSED)
    """

    def __init__(
        self,
        store: Any,
        mode: ImportMode = ImportMode.MERGE,
        dry_run: bool = False,
        record_failures: bool = True,
        sync_type: str = "processed_orders",
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.mode = ImportMode(mode)
        self.dry_run = dry_run
        self.record_failures = record_failures
        self.sync_type = sync_type
        self._clock = clock

    async def import_batch(self, raw_orders: List[Dict[str, Any]], source: ImportSource) -> ImportResult:
        """
        Import one batch.

        Returns:
            ImportResult with processed = created + updated + skipped

        Raises:
            Exception: whatever the store raised; nothing from the batch is
                persisted in that case
        """
        source = ImportSource(source)
        now = self._clock()
        result = ImportResult()

        orders, failures = self._map_orders(raw_orders)
        result.failed = len(failures)

        existing = await self.store.get_orders_by_external_ids([o.external_id for o in orders])

        inserts: List[Dict[str, Any]] = []
        updates: List[Dict[str, Any]] = []
        replace_items_for: List[str] = []
        item_rows: List[Dict[str, Any]] = []

        for order in orders:
            stored = existing.get(order.external_id)
            if stored is None:
                if self.mode == ImportMode.ONLY_MISSING:
                    result.skipped += 1
                    continue
                inserts.append(self._order_row(order, source, now, None))
                item_rows.extend(self._item_rows(order, now))
                result.created += 1
                continue

            row = self._order_row(order, source, now, stored)
            has_items = (stored.get("item_count") or 0) > 0

            if self.mode == ImportMode.ONLY_MISSING:
                row = self._fill_gaps(row, stored)
                write_items = not has_items and bool(order.items)
            elif self.mode == ImportMode.REIMPORT:
                write_items = True
            else:
                write_items = not has_items and bool(order.items)

            if not write_items and not self._has_changes(row, stored):
                result.skipped += 1
                continue

            updates.append(row)
            if write_items:
                replace_items_for.append(order.external_id)
                item_rows.extend(self._item_rows(order, now))
            result.updated += 1

        result.processed = result.created + result.updated + result.skipped

        if self.dry_run:
            logger.info("Dry run: batch computed, nothing written", extra={"source": source.value, "counts": result.to_dict()})
            return result

        if inserts or updates:
            with Timer("import_batch_write", logger):
                async with self.store.transaction() as conn:
                    self.store.update_orders(conn, updates)
                    self.store.delete_items(conn, replace_items_for)
                    self.store.insert_orders(conn, inserts)
                    self.store.insert_items(conn, item_rows)

        if failures and self.record_failures:
            for error, raw in failures:
                await self.store.record_failed_sync(
                    external_id=error.external_id,
                    order_number=_safe_int(error.order_number),
                    sync_type=self.sync_type,
                    failure_reason="mapping_error",
                    error_message=str(error),
                    order_data=raw,
                    now=now,
                )

        logger.info(
            "Imported batch",
            extra={"source": source.value, "mode": self.mode.value, "counts": result.to_dict()},
        )
        return result

    def _map_orders(self, raw_orders: List[Dict[str, Any]]) -> Tuple[List[RemoteOrder], List[Tuple[OrderMappingError, Any]]]:
        mapped: Dict[str, RemoteOrder] = {}
        failures = []
        for raw in raw_orders:
            try:
                order = RemoteOrder.from_api(raw)
            except OrderMappingError as e:
                logger.warning(
                    f"Skipping order that could not be mapped: {e}",
                    extra={"external_id": e.external_id, "order_number": e.order_number},
                )
                failures.append((e, raw))
                continue
            # The remote may repeat an id within one batch; the later payload wins
            mapped[order.external_id] = order
        return list(mapped.values()), failures

    @staticmethod
    def _order_row(
        order: RemoteOrder,
        source: ImportSource,
        now: datetime,
        stored: Optional[Dict[str, Any]],
    ) -> Dict[str, Any]:
        flags = order.status
        is_open = source == ImportSource.OPEN

        if stored is None:
            metadata = {"first_synced_at": now.isoformat(), "import_source": source.value}
        else:
            raw_metadata = stored.get("sync_metadata")
            metadata = json.loads(raw_metadata) if isinstance(raw_metadata, str) and raw_metadata else {}
            metadata["import_source"] = source.value
            if is_open:
                metadata.pop("marked_closed_at", None)

        return {
            "external_id": order.external_id,
            "order_number": order.order_number,
            "channel": order.channel,
            "channel_normalized": order.channel_normalized,
            "subsource": order.subsource,
            "currency": order.currency,
            "total_charge": order.total_charge,
            "total_paid": order.total_charge,
            "postage_cost": order.postage_cost,
            "tax": order.tax,
            "profit_margin": order.profit_margin,
            "status": flags.status.value,
            "is_open": is_open,
            "is_processed": flags.is_processed,
            "is_cancelled": flags.is_cancelled,
            "has_refund": flags.has_refund,
            "received_at": order.received_at,
            "processed_at": order.processed_at,
            "paid_at": order.paid_at,
            "last_synced_at": now,
            "sync_metadata": metadata,
            "created_at": now if stored is None else stored.get("created_at"),
            "updated_at": now,
        }

    @staticmethod
    def _item_rows(order: RemoteOrder, now: datetime) -> List[Dict[str, Any]]:
        return [
            {
                "order_external_id": order.external_id,
                "remote_item_id": item.remote_item_id,
                "sku": item.sku,
                "title": item.title,
                "quantity": item.quantity,
                "unit_cost": item.unit_cost,
                "price_per_unit": item.price_per_unit,
                "line_total": item.line_total,
                "category_name": item.category_name,
                "parent_sku": item.parent_sku,
                "created_at": now,
            }
            for item in order.items
        ]

    @staticmethod
    def _fill_gaps(row: Dict[str, Any], stored: Dict[str, Any]) -> Dict[str, Any]:
        """
        The stored order with only its gaps filled from the fresh row.

        A gap is a NULL processed date, a zero tax, postage cost or profit
        margin, a NULL or "Unknown" channel, or an empty sub-source. Every
        other field keeps its stored value.
        """
        filled = dict(row)
        for column in row:
            if column not in SYNC_BOOKKEEPING:
                filled[column] = stored.get(column)

        for column in GAP_FIELDS:
            if _is_gap(column, stored.get(column)) and not _is_gap(column, row[column]):
                filled[column] = row[column]
                if column == "channel":
                    filled["channel_normalized"] = row["channel_normalized"]
        return filled

    @staticmethod
    def _has_changes(row: Dict[str, Any], stored: Dict[str, Any]) -> bool:
        return any(row[field] != stored.get(field) for field in COMPARABLE_FIELDS)


def _is_gap(column: str, value: Any) -> bool:
    if value is None:
        return True
    if column in ZERO_WHEN_MISSING:
        return value == 0
    if column == "channel":
        return value in ("", "Unknown")
    if column == "subsource":
        return value == ""
    return False


def _safe_int(value: Any) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None
