"""
Tests for batch detail fetching and retry with backoff.
"""
from unittest.mock import AsyncMock

import pytest

from conftest import make_order
from ordersync.events import EventBus, SyncEvent
from ordersync.exceptions import GatewayAuthError, GatewayConnectionError, GatewayError
from ordersync.fetcher import BatchDetailFetcher
from ordersync.resilience import RetryPolicy, retry_with_backoff


class TestRetryPolicy:

    def test_exponential_schedule(self):
        policy = RetryPolicy()
        assert [policy.delay_for(n) for n in (1, 2, 3)] == [5.0, 10.0, 20.0]

    def test_retry_after_wins_for_rate_limit(self):
        error = GatewayError("slow down", status_code=429, retry_after=42)
        assert RetryPolicy().delay_for(2, error) == 42.0

    def test_retry_after_ignored_without_rate_limit(self):
        error = GatewayError("unavailable", status_code=503, retry_after=42)
        assert RetryPolicy().delay_for(2, error) == 10.0


class TestRetryWithBackoff:

    @pytest.mark.asyncio
    async def test_success_first_try(self, recording_sleep):
        func = AsyncMock(return_value="ok")
        assert await retry_with_backoff(func, sleep=recording_sleep) == "ok"
        assert recording_sleep.delays == []

    @pytest.mark.asyncio
    async def test_non_retryable_raises_immediately(self, recording_sleep):
        func = AsyncMock(side_effect=GatewayAuthError("rejected", status_code=401))
        with pytest.raises(GatewayAuthError):
            await retry_with_backoff(func, sleep=recording_sleep)
        assert func.await_count == 1
        assert recording_sleep.delays == []

    @pytest.mark.asyncio
    async def test_unclassified_error_not_retried(self, recording_sleep):
        func = AsyncMock(side_effect=KeyError("boom"))
        with pytest.raises(KeyError):
            await retry_with_backoff(func, sleep=recording_sleep)
        assert func.await_count == 1

    @pytest.mark.asyncio
    async def test_exhausted_raises_last_error(self, recording_sleep):
        errors = [GatewayError("a", status_code=500), GatewayError("b", status_code=502), GatewayError("c", status_code=503)]
        func = AsyncMock(side_effect=errors)
        with pytest.raises(GatewayError) as exc_info:
            await retry_with_backoff(func, sleep=recording_sleep)
        assert exc_info.value is errors[-1]
        assert recording_sleep.delays == [5.0, 10.0]


class TestBatchDetailFetcher:

    def _fetcher(self, gateway, sleep, bus=None):
        return BatchDetailFetcher(gateway, policy=RetryPolicy(), sleep=sleep, bus=bus or EventBus())

    @pytest.mark.asyncio
    async def test_two_failures_then_success(self, recording_sleep):
        """Sleeps 5s then 10s and returns the third attempt's orders."""
        gateway = AsyncMock()
        gateway.fetch_order_details.side_effect = [
            GatewayConnectionError("timeout", status_code=408),
            GatewayError("bad gateway", status_code=502),
            [make_order("a")],
        ]
        details = await self._fetcher(gateway, recording_sleep).fetch(["a"], batch_number=1)

        assert [d["OrderId"] for d in details] == ["a"]
        assert recording_sleep.delays == [5.0, 10.0]

    @pytest.mark.asyncio
    async def test_rate_limit_retry_after_used_verbatim(self, recording_sleep):
        gateway = AsyncMock()
        gateway.fetch_order_details.side_effect = [
            GatewayError("unavailable", status_code=503),
            GatewayError("slow down", status_code=429, retry_after=42),
            [make_order("a")],
        ]
        await self._fetcher(gateway, recording_sleep).fetch(["a"], batch_number=1)

        assert recording_sleep.delays == [5.0, 42.0]

    @pytest.mark.asyncio
    async def test_emits_attempt_events(self, recording_sleep):
        bus = EventBus()
        gateway = AsyncMock()
        gateway.fetch_order_details.side_effect = [GatewayError("x", status_code=500), [make_order("a")]]

        await self._fetcher(gateway, recording_sleep, bus).fetch(["a"], batch_number=4)

        attempts = bus.get_history(SyncEvent.BATCH_ATTEMPT)
        messages = sorted(e.data["message"] for e in attempts)
        assert messages == ["Fetching batch 4 (attempt 1/3)", "Fetching batch 4 (attempt 2/3)"]

    @pytest.mark.asyncio
    async def test_oversized_batch_rejected(self, recording_sleep):
        gateway = AsyncMock()
        with pytest.raises(ValueError):
            await self._fetcher(gateway, recording_sleep).fetch([str(n) for n in range(201)], batch_number=1)
        gateway.fetch_order_details.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_empty_batch(self, recording_sleep):
        gateway = AsyncMock()
        assert await self._fetcher(gateway, recording_sleep).fetch([], batch_number=1) == []
        gateway.fetch_order_details.assert_not_awaited()
