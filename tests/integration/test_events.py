"""
Integration tests for ordersync/events.py

Tests the event-driven publish/subscribe system.
"""
from typing import Any, Dict, List

import pytest

from ordersync.events import (
    Event,
    EventBus,
    EventMetadata,
    SyncEvent,
    emit_batch_attempt,
    emit_orders_synced,
    emit_sync_completed,
    emit_sync_progress,
    emit_sync_started,
    events,
)
from ordersync.observability import correlation_context


class TestEventBus:
    """Tests for EventBus class."""

    def setup_method(self):
        self.bus = EventBus()

    @pytest.mark.asyncio
    async def test_emit_with_no_handlers(self):
        event = await self.bus.emit(SyncEvent.SYNC_STARTED, {"sync_type": "test"})
        assert event.type == SyncEvent.SYNC_STARTED
        assert event.data["sync_type"] == "test"

    @pytest.mark.asyncio
    async def test_subscribe_and_receive(self):
        received: List[Dict[str, Any]] = []

        @self.bus.on(SyncEvent.ORDERS_SYNCED)
        async def handler(data: dict):
            received.append(data)

        await self.bus.emit(SyncEvent.ORDERS_SYNCED, {"orders_processed": 10})

        assert received == [{"orders_processed": 10}]

    @pytest.mark.asyncio
    async def test_wildcard_handler(self):
        received = []

        @self.bus.on()
        async def wildcard_handler(data: dict):
            received.append(data)

        await self.bus.emit(SyncEvent.SYNC_STARTED, {"type": "start"})
        await self.bus.emit(SyncEvent.SYNC_COMPLETED, {"type": "complete"})

        assert len(received) == 2

    @pytest.mark.asyncio
    async def test_handler_isolation(self):
        """Failing handler doesn't affect other handlers."""
        results = []

        @self.bus.on(SyncEvent.ORDERS_SYNCED)
        async def failing_handler(data: dict):
            raise ValueError("Handler error")

        @self.bus.on(SyncEvent.ORDERS_SYNCED)
        async def working_handler(data: dict):
            results.append("success")

        await self.bus.emit(SyncEvent.ORDERS_SYNCED, {})

        assert results == ["success"]

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        received = []

        async def handler(data: dict):
            received.append(data)

        self.bus.subscribe(SyncEvent.SYNC_STARTED, handler)
        await self.bus.emit(SyncEvent.SYNC_STARTED, {"n": 1})
        assert self.bus.unsubscribe(SyncEvent.SYNC_STARTED, handler) is True

        await self.bus.emit(SyncEvent.SYNC_STARTED, {"n": 2})
        assert len(received) == 1
        assert self.bus.unsubscribe(SyncEvent.SYNC_STARTED, handler) is False

    @pytest.mark.asyncio
    async def test_history_limit(self):
        bus = EventBus(max_history=5)
        for i in range(10):
            await bus.emit(SyncEvent.SYNC_PROGRESS, {"n": i})

        history = bus.get_history()
        assert len(history) == 5
        assert history[-1].data["n"] == 9

    @pytest.mark.asyncio
    async def test_history_filter(self):
        await self.bus.emit(SyncEvent.SYNC_STARTED, {"n": 1})
        await self.bus.emit(SyncEvent.SYNC_COMPLETED, {"n": 2})
        await self.bus.emit(SyncEvent.SYNC_STARTED, {"n": 3})

        assert len(self.bus.get_history(event_type=SyncEvent.SYNC_STARTED)) == 2

    @pytest.mark.asyncio
    async def test_event_carries_correlation_id(self):
        with correlation_context("run-abc"):
            event = await self.bus.emit(SyncEvent.SYNC_STARTED, {})
        assert event.metadata.correlation_id == "run-abc"


class TestEvent:

    def test_event_to_dict(self):
        d = Event(type=SyncEvent.SYNC_COMPLETED, data={"duration_ms": 1234}).to_dict()
        assert d["event_type"] == SyncEvent.SYNC_COMPLETED.value
        assert d["data"]["duration_ms"] == 1234
        assert "timestamp" in d["metadata"]

    def test_metadata_defaults(self):
        metadata = EventMetadata()
        assert metadata.timestamp is not None
        assert metadata.source == "sync_orchestrator"


class TestConvenienceFunctions:

    def setup_method(self):
        events.clear_handlers()
        events.clear_history()

    @pytest.mark.asyncio
    async def test_emit_sync_started_on_global_bus(self):
        received = []

        @events.on(SyncEvent.SYNC_STARTED)
        async def handler(data):
            received.append(data)

        await emit_sync_started("processed_orders", run_id="r1")
        events.clear_handlers()

        assert received == [{"sync_type": "processed_orders", "run_id": "r1"}]

    @pytest.mark.asyncio
    async def test_emit_to_explicit_bus(self):
        bus = EventBus()
        await emit_sync_progress("historical_orders", {"percent": 40.0}, bus=bus)
        await emit_batch_attempt(3, 2, 3, bus=bus)
        await emit_sync_completed("historical_orders", False, 12.5, bus=bus, error="boom")
        await emit_orders_synced(7, "historical_orders", bus=bus)

        assert events.get_history() == []
        types = [e.type for e in bus.get_history()]
        assert types == [
            SyncEvent.SYNC_PROGRESS,
            SyncEvent.BATCH_ATTEMPT,
            SyncEvent.SYNC_COMPLETED,
            SyncEvent.ORDERS_SYNCED,
        ]
        assert bus.get_history(SyncEvent.BATCH_ATTEMPT)[0].data["message"] == "Fetching batch 3 (attempt 2/3)"
        assert bus.get_history(SyncEvent.ORDERS_SYNCED)[0].data == {
            "orders_processed": 7,
            "sync_type": "historical_orders",
        }
