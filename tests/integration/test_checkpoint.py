"""
Integration tests for ordersync/checkpoint.py
"""
from datetime import timedelta

import pytest

from conftest import NOW
from ordersync.checkpoint import CheckpointTracker, SyncProgress, SyncProgressLog
from ordersync.models import ImportResult


class TestCheckpointTracker:

    @pytest.mark.asyncio
    async def test_first_use_creates_watermark(self, store, clock):
        tracker = await CheckpointTracker.get_or_create(store, "recent_orders", default_days=7, clock=clock)

        assert tracker.status == "idle"
        assert tracker.get_incremental_start_date() == NOW - timedelta(days=7)

    @pytest.mark.asyncio
    async def test_complete_advances_watermark(self, store, clock):
        tracker = await CheckpointTracker.get_or_create(store, "recent_orders", clock=clock)
        await tracker.start_sync()
        assert tracker.status == "running"

        await tracker.complete_sync(ImportResult(processed=5, created=5), {"batches": 1}, watermark=NOW)

        reloaded = await CheckpointTracker.get_or_create(store, "recent_orders", clock=clock)
        assert reloaded.watermark == NOW
        assert reloaded.status == "completed"
        assert reloaded.row["records_created"] == 5
        assert reloaded.row["metadata"] == {"batches": 1}

    @pytest.mark.asyncio
    async def test_watermark_never_moves_back(self, store, clock):
        tracker = await CheckpointTracker.get_or_create(store, "recent_orders", clock=clock)
        await tracker.complete_sync(ImportResult(), watermark=NOW)
        await tracker.complete_sync(ImportResult(), watermark=NOW - timedelta(days=3))

        assert tracker.watermark == NOW

    @pytest.mark.asyncio
    async def test_failure_keeps_watermark(self, store, clock):
        tracker = await CheckpointTracker.get_or_create(store, "recent_orders", clock=clock)
        before = tracker.watermark
        await tracker.start_sync()
        await tracker.fail_sync("remote down")

        row = await store.get_checkpoint("recent_orders", "linnworks")
        assert row["last_sync_at"] == before
        assert row["status"] == "failed"
        assert row["error_message"] == "remote down"

    @pytest.mark.asyncio
    async def test_stop_keeps_watermark(self, store, clock):
        tracker = await CheckpointTracker.get_or_create(store, "recent_orders", clock=clock)
        before = tracker.watermark
        await tracker.start_sync()
        await tracker.stop_sync(ImportResult(processed=2, created=2), {"batches": 1})

        row = await store.get_checkpoint("recent_orders", "linnworks")
        assert row["last_sync_at"] == before
        assert row["status"] == "stopped"
        assert row["records_created"] == 2

    @pytest.mark.asyncio
    async def test_stale_running(self, store, clock):
        tracker = await CheckpointTracker.get_or_create(store, "recent_orders", clock=clock)
        await tracker.start_sync()

        assert not tracker.is_stale_running(timedelta(hours=1))
        clock.advance(hours=2)
        assert tracker.is_stale_running(timedelta(hours=1))


class TestSyncProgressLog:

    @pytest.mark.asyncio
    async def test_counters_and_completion(self, store, clock):
        log = await SyncProgressLog.start(store, "processed_orders", {"run_id": "r1"}, clock=clock)
        await log.increment(fetched=10, created=8, failed=2)
        await log.merge_metadata(batches=1)
        await log.update_progress(SyncProgress(stage="importing", percent=50.0))

        # lower totals than already counted never win
        await log.complete(ImportResult(processed=3, created=3), fetched=3)

        row = await store.get_sync_log(log.log_id)
        assert row["status"] == "completed"
        assert row["total_fetched"] == 10
        assert row["total_created"] == 8
        assert row["total_failed"] == 2
        assert row["metadata"] == {"run_id": "r1", "batches": 1}
        assert row["progress"]["percent"] == 50.0
        assert row["completed_at"] == clock.now

    @pytest.mark.asyncio
    async def test_finalized_once(self, store, clock):
        log = await SyncProgressLog.start(store, "processed_orders", clock=clock)
        await log.fail("boom")

        with pytest.raises(RuntimeError):
            await log.complete()
        with pytest.raises(RuntimeError):
            await log.increment(fetched=1)
        assert (await store.get_sync_log(log.log_id))["error_message"] == "boom"

    @pytest.mark.asyncio
    async def test_stop_finalizes(self, store, clock):
        log = await SyncProgressLog.start(store, "processed_orders", clock=clock)
        await log.increment(fetched=2, created=2)
        await log.stop()

        assert log.is_finalized
        assert (await store.get_sync_log(log.log_id))["status"] == "stopped"
        with pytest.raises(RuntimeError):
            await log.complete()

    @pytest.mark.asyncio
    async def test_counters_cannot_decrease(self, store, clock):
        log = await SyncProgressLog.start(store, "open_orders", clock=clock)
        with pytest.raises(ValueError):
            await log.increment(created=-1)

    @pytest.mark.asyncio
    async def test_in_memory_log(self, store, clock):
        log = await SyncProgressLog.start(store, "processed_orders", persist=False, clock=clock)
        await log.increment(fetched=4, created=2, skipped=2)
        await log.complete()

        assert log.log_id is None
        assert log.totals["total_fetched"] == 4
        assert log.is_fanout_complete()
        assert await store.get_latest_sync_log() is None
