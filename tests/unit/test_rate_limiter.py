"""Unit tests for the request rate limiter"""

import time

import pytest

from src.services.rate_limiter import RateLimiter


class TestRateLimiter:
    """Test request spacing"""

    def test_interval_from_rate(self):
        """Test the minimum interval derived from requests per minute"""
        assert RateLimiter(60).min_interval_ms == 1000
        assert RateLimiter(7).min_interval_ms == 8572
        assert RateLimiter(0).min_interval_ms == 0

    def test_set_rate_clamps_negative(self):
        """Test that a negative rate disables limiting"""
        limiter = RateLimiter(60)
        limiter.set_rate(-5)

        assert limiter.requests_per_minute == 0
        assert limiter.min_interval_ms == 0

    @pytest.mark.asyncio
    async def test_disabled_limiter_does_not_wait(self):
        """Test that acquire returns immediately without a rate"""
        limiter = RateLimiter(0)
        start = time.monotonic()
        for _ in range(5):
            await limiter.acquire()

        assert time.monotonic() - start < 0.1

    @pytest.mark.asyncio
    async def test_requests_are_spaced(self):
        """Test that consecutive acquisitions wait for the interval"""
        limiter = RateLimiter(1200)
        start = time.monotonic()
        await limiter.acquire()
        await limiter.acquire()
        await limiter.acquire()

        assert time.monotonic() - start >= 0.09
