"""
Integration tests for the token bucket in ordersync/resilience.py
"""
import asyncio

import pytest

from ordersync.resilience import RateLimiter


class TestRateLimiter:

    @pytest.mark.asyncio
    async def test_allows_within_rate(self):
        limiter = RateLimiter(rate=10.0, burst=10)

        for _ in range(5):
            assert await limiter.acquire(timeout=0.1)

    @pytest.mark.asyncio
    async def test_blocks_when_exhausted(self):
        limiter = RateLimiter(rate=1.0, burst=2)

        assert await limiter.acquire(timeout=0.01)
        assert await limiter.acquire(timeout=0.01)

        assert not await limiter.acquire(timeout=0.01)

    @pytest.mark.asyncio
    async def test_refills_over_time(self):
        limiter = RateLimiter(rate=10.0, burst=2)

        await limiter.acquire(timeout=0.01)
        await limiter.acquire(timeout=0.01)

        # 0.15s at 10/sec is 1.5 tokens
        await asyncio.sleep(0.15)

        assert await limiter.acquire(timeout=0.01)

    def test_per_minute(self):
        limiter = RateLimiter.per_minute(150)
        assert limiter.rate == pytest.approx(2.5)
        assert limiter.burst == 10
