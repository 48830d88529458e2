"""Unit tests for per-provider rate limiting in the source adapters."""

import asyncio

from aiolimiter import AsyncLimiter

from conftest import StaticFetcher

PRICES = {("btc", "usd"): "100"}


class TestAdapterRateLimit:
    """Test that an exhausted limiter fails fetches instead of queueing them."""

    def test_default_limit(self) -> None:
        """Adapters default to DEFAULT_RATE_LIMIT requests per minute."""
        fetcher = StaticFetcher("alpha", PRICES)
        assert fetcher.rate_limiter.max_rate == StaticFetcher.DEFAULT_RATE_LIMIT
        assert fetcher.rate_limiter.time_period == 60

    async def test_burst_then_reject(self) -> None:
        """A full bucket allows max_rate immediate fetches, then fails fast."""
        fetcher = StaticFetcher("alpha", PRICES, rate_limiter=AsyncLimiter(2, 60))

        results = [await fetcher.fetch_quote("btc", "usd") for _ in range(3)]

        assert [r.ok for r in results] == [True, True, False]
        assert "rate limit exceeded (2/min)" in results[2].error.message
        assert fetcher.calls == 2
        assert fetcher.failure_count == 1

    async def test_rejection_does_not_wait(self) -> None:
        """A rejected fetch returns immediately rather than sleeping for a token."""
        fetcher = StaticFetcher("alpha", PRICES, rate_limiter=AsyncLimiter(1, 60))
        await fetcher.fetch_quote("btc", "usd")

        result = await asyncio.wait_for(fetcher.fetch_quote("btc", "usd"), timeout=0.5)
        assert not result.ok

    async def test_capacity_returns(self) -> None:
        """Tokens leak back over the limiter's time period."""
        fetcher = StaticFetcher("alpha", PRICES, rate_limiter=AsyncLimiter(1, 0.05))
        assert (await fetcher.fetch_quote("btc", "usd")).ok
        assert not (await fetcher.fetch_quote("btc", "usd")).ok

        await asyncio.sleep(0.1)
        assert (await fetcher.fetch_quote("btc", "usd")).ok
        assert fetcher.calls == 2

    async def test_provider_error_still_consumes_token(self) -> None:
        """Failed upstream calls count against the limit."""
        fetcher = StaticFetcher("alpha", fail=True, rate_limiter=AsyncLimiter(1, 60))
        await fetcher.fetch_quote("btc", "usd")
        result = await fetcher.fetch_quote("btc", "usd")

        assert "rate limit" in result.error.message
        assert fetcher.calls == 1
