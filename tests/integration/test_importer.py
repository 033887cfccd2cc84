"""
Integration tests for ordersync/importer.py
"""
from datetime import datetime
from decimal import Decimal

import pytest

from conftest import make_order
from ordersync.importer import BulkImporter, ImportMode
from ordersync.models import ImportSource


def _invalid(order_id: str, number: int):
    return make_order(order_id, number=number, TotalsInfo={"Currency": "GBP", "TotalCharge": "n/a"})


class TestBulkImporter:

    @pytest.mark.asyncio
    async def test_creates_orders_and_items(self, store, clock, sample_order):
        importer = BulkImporter(store, clock=clock)
        result = await importer.import_batch([sample_order], ImportSource.PROCESSED)

        assert result.to_dict() == {"processed": 1, "created": 1, "updated": 0, "skipped": 0, "failed": 0}

        order = await store.get_order("ord-1")
        assert order["order_number"] == 1001
        assert order["status"] == "processed"
        assert order["is_processed"] is True
        assert order["is_open"] is False
        assert order["channel_normalized"] == "amazon_uk"
        assert order["total_charge"] == Decimal("25.00")
        assert order["last_synced_at"] == clock.now
        assert order["sync_metadata"]["import_source"] == "processed"

        items = await store.get_order_items("ord-1")
        assert len(items) == 1
        assert items[0]["sku"] == "005-001"
        assert items[0]["parent_sku"] == "005"
        assert items[0]["quantity"] == 2

    @pytest.mark.asyncio
    async def test_one_bad_order_does_not_abort_batch(self, store, clock, sample_orders):
        batch = list(sample_orders)
        batch[3] = _invalid("ord-4", 1004)

        result = await BulkImporter(store, clock=clock).import_batch(batch, ImportSource.PROCESSED)

        assert result.created == 9
        assert result.failed == 1
        assert result.processed == 9
        assert await store.count_orders() == 9
        assert await store.get_order("ord-4") is None
        assert await store.count_unresolved_failures() == 1

    @pytest.mark.asyncio
    async def test_failures_not_recorded_when_disabled(self, store, clock):
        importer = BulkImporter(store, record_failures=False, clock=clock)
        result = await importer.import_batch([_invalid("ord-4", 1004)], ImportSource.PROCESSED)

        assert result.failed == 1
        assert await store.count_unresolved_failures() == 0

    @pytest.mark.asyncio
    async def test_second_import_is_noop(self, store, clock, sample_orders):
        importer = BulkImporter(store, clock=clock)
        await importer.import_batch(sample_orders, ImportSource.PROCESSED)
        clock.advance(minutes=15)

        result = await importer.import_batch(sample_orders, ImportSource.PROCESSED)

        assert result.to_dict() == {"processed": 10, "created": 0, "updated": 0, "skipped": 10, "failed": 0}
        assert await store.count_orders() == 10
        assert await store.count_items() == 10

    @pytest.mark.asyncio
    async def test_changed_fields_update(self, store, clock, sample_orders):
        importer = BulkImporter(store, clock=clock)
        await importer.import_batch(sample_orders, ImportSource.PROCESSED)

        changed = make_order("ord-2", number=1002, status=4, total="30.00")
        result = await importer.import_batch([changed], ImportSource.PROCESSED)

        assert result.updated == 1
        order = await store.get_order("ord-2")
        assert order["status"] == "refunded"
        assert order["has_refund"] is True
        assert order["total_charge"] == Decimal("30.00")
        assert await store.count_items() == 10

    @pytest.mark.asyncio
    async def test_reimport_replaces_items(self, store, clock, sample_order):
        await BulkImporter(store, clock=clock).import_batch([sample_order], ImportSource.PROCESSED)

        replacement = make_order("ord-1", number=1001, items=[
            {"ItemId": "a", "SKU": "010-002", "Quantity": 1, "PricePerUnit": "5.00"},
            {"ItemId": "b", "SKU": "011", "Quantity": 3, "PricePerUnit": "2.00"},
        ])
        result = await BulkImporter(store, mode=ImportMode.REIMPORT, clock=clock).import_batch(
            [replacement], ImportSource.PROCESSED
        )

        assert result.updated == 1
        skus = [item["sku"] for item in await store.get_order_items("ord-1")]
        assert skus == ["010-002", "011"]

    @pytest.mark.asyncio
    async def test_only_missing_fills_gaps(self, store, clock):
        await BulkImporter(store, clock=clock).import_batch(
            [make_order("ord-1", items=[]), make_order("ord-2")], ImportSource.PROCESSED
        )

        importer = BulkImporter(store, mode=ImportMode.ONLY_MISSING, clock=clock)
        result = await importer.import_batch(
            [make_order("ord-1"), make_order("ord-2"), make_order("ord-3")], ImportSource.PROCESSED
        )

        # ord-1 lacked items, ord-2 is complete, ord-3 is unknown locally
        assert result.updated == 1
        assert result.skipped == 2
        assert result.created == 0
        assert len(await store.get_order_items("ord-1")) == 1
        assert await store.get_order("ord-3") is None

    @pytest.mark.asyncio
    async def test_only_missing_keeps_populated_fields(self, store, clock):
        stored = make_order(
            "ord-1",
            items=[],
            ProcessedDateTime=None,
            TotalsInfo={"Currency": "GBP", "TotalCharge": "25.00", "PostageCost": "0", "Tax": "4.17", "ProfitMargin": "8.50"},
        )
        await BulkImporter(store, clock=clock).import_batch([stored], ImportSource.PROCESSED)

        fresh = make_order(
            "ord-1",
            TotalsInfo={"Currency": "GBP", "TotalCharge": "99.00", "PostageCost": "3.99", "Tax": "50.00", "ProfitMargin": "1.00"},
        )
        importer = BulkImporter(store, mode=ImportMode.ONLY_MISSING, clock=clock)
        result = await importer.import_batch([fresh], ImportSource.PROCESSED)

        order = await store.get_order("ord-1")
        assert result.updated == 1
        assert order["tax"] == Decimal("4.17")
        assert order["profit_margin"] == Decimal("8.50")
        assert order["total_charge"] == Decimal("25.00")
        assert order["total_paid"] == Decimal("25.00")
        # gaps are filled
        assert order["postage_cost"] == Decimal("3.99")
        assert order["processed_at"] == datetime(2026, 3, 11, 14, 0, 0)
        assert len(await store.get_order_items("ord-1")) == 1

    @pytest.mark.asyncio
    async def test_dry_run_writes_nothing(self, store, clock, sample_orders):
        batch = list(sample_orders)
        batch[0] = _invalid("ord-1", 1001)

        result = await BulkImporter(store, dry_run=True, clock=clock).import_batch(batch, ImportSource.PROCESSED)

        assert result.created == 9
        assert result.failed == 1
        assert await store.count_orders() == 0
        assert await store.count_unresolved_failures() == 0

    @pytest.mark.asyncio
    async def test_duplicate_ids_in_batch(self, store, clock):
        batch = [make_order("ord-1", total="10.00"), make_order("ord-1", total="12.00")]
        result = await BulkImporter(store, clock=clock).import_batch(batch, ImportSource.PROCESSED)

        assert result.created == 1
        assert (await store.get_order("ord-1"))["total_charge"] == Decimal("12.00")

    @pytest.mark.asyncio
    async def test_open_source_sets_open_flag(self, store, clock):
        await BulkImporter(store, clock=clock).import_batch([make_order("ord-1", status=0)], ImportSource.OPEN)

        order = await store.get_order("ord-1")
        assert order["is_open"] is True
        assert order["status"] == "pending"
        assert await store.count_orders(is_open=True) == 1
