"""Unit tests for the source adapters."""

import asyncio
from decimal import Decimal

import httpx
import pytest
import respx

from price_oracle.src.fetchers import (
    BaseFetcher,
    BinanceFetcher,
    BitstampFetcher,
    CoinbaseFetcher,
    CoinGeckoFetcher,
    CoinMarketCapFetcher,
    KrakenFetcher,
    ProviderConfigError,
    ProviderHTTPError,
    get_available_fetchers,
    get_fetcher,
)

from conftest import StaticFetcher


@pytest.fixture(autouse=True)
async def shared_client():
    """Each test gets a fresh shared client bound to its own event loop."""
    yield
    await BaseFetcher.close_shared_client()


class SlowFetcher(StaticFetcher):
    async def fetch(self, asset_id: str, currency: str):
        await asyncio.sleep(1)
        return await super().fetch(asset_id, currency)


class TestRegistry:
    """Test the fetcher registry."""

    async def test_available_fetchers(self) -> None:
        """All built-in providers are registered."""
        assert get_available_fetchers() == [
            "binance",
            "bitstamp",
            "coinbase",
            "coingecko",
            "coinmarketcap",
            "kraken",
        ]

    async def test_get_fetcher_passes_settings(self) -> None:
        """Keyword settings reach the fetcher."""
        fetcher = get_fetcher("coinbase", timeout=3.0, rate_limit_per_minute=10)
        assert isinstance(fetcher, CoinbaseFetcher)
        assert fetcher.timeout == 3.0
        assert fetcher.rate_limiter.max_rate == 10
        assert fetcher.rate_limiter.time_period == 60

    async def test_get_unknown_fetcher(self) -> None:
        """Unknown names should raise ValueError."""
        with pytest.raises(ValueError, match="Unknown fetcher 'nope'"):
            get_fetcher("nope")


class TestFetchQuote:
    """Test the never-raising fetch_quote wrapper."""

    async def test_success_counts(self) -> None:
        """A successful fetch carries the quote and bumps success_count."""
        fetcher = StaticFetcher("alpha", {("btc", "usd"): "100"})
        result = await fetcher.fetch_quote("btc", "usd")

        assert result.ok
        assert result.error is None
        assert result.quote.price == Decimal("100")
        assert result.quote.source == "alpha"
        assert result.quote.confidence == BaseFetcher.DEFAULT_CONFIDENCE
        assert fetcher.success_count == 1

    async def test_provider_error_is_captured(self) -> None:
        """ProviderError becomes a failed FetchResult."""
        fetcher = StaticFetcher("alpha", fail=True)
        result = await fetcher.fetch_quote("btc", "usd")

        assert not result.ok
        assert result.error.provider == "alpha"
        assert fetcher.failure_count == 1

    async def test_timeout(self) -> None:
        """A fetch exceeding the deadline fails with a timeout error."""
        fetcher = SlowFetcher("slow", {("btc", "usd"): "100"}, timeout=0.01)
        result = await fetcher.fetch_quote("btc", "usd")

        assert not result.ok
        assert "timeout" in result.error.message

    async def test_non_positive_price_is_invalid_payload(self) -> None:
        """Quotes with non-positive prices are rejected."""
        fetcher = StaticFetcher("alpha", {("btc", "usd"): "0"})
        result = await fetcher.fetch_quote("btc", "usd")

        assert not result.ok
        assert "invalid payload" in result.error.message

    async def test_sub_scale_price_is_invalid_payload(self) -> None:
        """Prices below the 8-digit scale are rejected like malformed ones."""
        fetcher = StaticFetcher("alpha", {("btc", "usd"): "0.000000001"})
        result = await fetcher.fetch_quote("btc", "usd")

        assert not result.ok
        assert "below the price scale" in result.error.message


class TestCoinbase:
    @respx.mock
    async def test_ticker(self) -> None:
        """Price and volume come from the ticker endpoint."""
        respx.get("https://api.exchange.coinbase.com/products/BTC-USD/ticker").mock(
            return_value=httpx.Response(200, json={"price": "50000.12", "volume": "1234.5"})
        )
        result = await CoinbaseFetcher().fetch_quote("btc", "usd")

        assert result.ok
        assert result.quote.price == Decimal("50000.12")
        assert result.quote.volume == Decimal("1234.5")

    @respx.mock
    async def test_http_error(self) -> None:
        """Non-2xx responses become ProviderHTTPError."""
        respx.get("https://api.exchange.coinbase.com/products/FOO-USD/ticker").mock(
            return_value=httpx.Response(404, json={"message": "NotFound"})
        )
        result = await CoinbaseFetcher().fetch_quote("foo", "usd")

        assert isinstance(result.error, ProviderHTTPError)
        assert result.error.status_code == 404

    @respx.mock
    async def test_unparseable_price(self) -> None:
        """A non-numeric price is an invalid payload."""
        respx.get("https://api.exchange.coinbase.com/products/BTC-USD/ticker").mock(
            return_value=httpx.Response(200, json={"price": "n/a"})
        )
        result = await CoinbaseFetcher().fetch_quote("btc", "usd")

        assert not result.ok
        assert "invalid payload" in result.error.message

    @respx.mock
    async def test_network_error(self) -> None:
        """Connection failures become ProviderError."""
        respx.get("https://api.exchange.coinbase.com/products/BTC-USD/ticker").mock(
            side_effect=httpx.ConnectError("connection refused")
        )
        result = await CoinbaseFetcher().fetch_quote("btc", "usd")

        assert not result.ok
        assert "Request failed" in result.error.message


class TestKraken:
    @respx.mock
    async def test_maps_btc_to_xbt(self) -> None:
        """BTC is requested as XBT and the last trade price is used."""
        route = respx.get("https://api.kraken.com/0/public/Ticker").mock(
            return_value=httpx.Response(
                200,
                json={
                    "error": [],
                    "result": {"XXBTZUSD": {"c": ["50100.0", "0.1"], "v": ["10", "200"]}},
                },
            )
        )
        result = await KrakenFetcher().fetch_quote("btc", "usd")

        assert route.calls.last.request.url.params["pair"] == "XBTUSD"
        assert result.quote.price == Decimal("50100.0")
        assert result.quote.volume == Decimal("200")

    @respx.mock
    async def test_api_error(self) -> None:
        """Errors in the response body fail the fetch."""
        respx.get("https://api.kraken.com/0/public/Ticker").mock(
            return_value=httpx.Response(200, json={"error": ["EQuery:Unknown asset pair"]})
        )
        result = await KrakenFetcher().fetch_quote("foo", "usd")

        assert not result.ok
        assert "Unknown asset pair" in result.error.message

    async def test_does_not_support_rose(self) -> None:
        assert not KrakenFetcher().supports_pair("rose", "usd")
        assert KrakenFetcher().supports_pair("eth", "usd")


class TestBitstamp:
    @respx.mock
    async def test_ticker(self) -> None:
        respx.get("https://www.bitstamp.net/api/v2/ticker/ethusd/").mock(
            return_value=httpx.Response(200, json={"last": "3000.5", "volume": "12"})
        )
        result = await BitstampFetcher().fetch_quote("eth", "usd")

        assert result.quote.price == Decimal("3000.5")
        assert result.quote.volume == Decimal("12")

    async def test_does_not_support_rose(self) -> None:
        assert not BitstampFetcher().supports_pair("rose", "usd")


class TestCoinGecko:
    @respx.mock
    async def test_free_tier(self) -> None:
        """Without a key the free endpoint is used with no key header."""
        route = respx.get("https://api.coingecko.com/api/v3/simple/price").mock(
            return_value=httpx.Response(
                200, json={"bitcoin": {"usd": 50000.5, "usd_24h_vol": 1000000}}
            )
        )
        result = await CoinGeckoFetcher().fetch_quote("btc", "usd")

        request = route.calls.last.request
        assert request.url.params["ids"] == "bitcoin"
        assert "x-cg-pro-api-key" not in request.headers
        assert result.quote.price == Decimal("50000.5")
        assert result.quote.volume == Decimal(1000000)
        assert result.quote.confidence == Decimal("0.90")

    @respx.mock
    async def test_demo_key(self) -> None:
        """demo: keys use the free host with the demo header."""
        route = respx.get("https://api.coingecko.com/api/v3/simple/price").mock(
            return_value=httpx.Response(200, json={"ethereum": {"usd": 3000}})
        )
        fetcher = CoinGeckoFetcher(api_key="demo:CG-abc")
        await fetcher.fetch_quote("eth", "usd")

        assert route.calls.last.request.headers["x-cg-demo-api-key"] == "CG-abc"

    @respx.mock
    async def test_pro_key(self) -> None:
        """Plain keys use the pro host."""
        route = respx.get("https://pro-api.coingecko.com/api/v3/simple/price").mock(
            return_value=httpx.Response(200, json={"ethereum": {"usd": 3000}})
        )
        result = await CoinGeckoFetcher(api_key="secret").fetch_quote("eth", "usd")

        assert result.ok
        assert route.calls.last.request.headers["x-cg-pro-api-key"] == "secret"

    @respx.mock
    async def test_missing_currency(self) -> None:
        respx.get("https://api.coingecko.com/api/v3/simple/price").mock(
            return_value=httpx.Response(200, json={"bitcoin": {}})
        )
        result = await CoinGeckoFetcher().fetch_quote("btc", "xyz")

        assert not result.ok
        assert "not available" in result.error.message

    async def test_supports_known_coins_only(self) -> None:
        fetcher = CoinGeckoFetcher()
        assert fetcher.supports_pair("rose", "usd")
        assert not fetcher.supports_pair("doge", "usd")


class TestCoinMarketCap:
    async def test_requires_api_key(self) -> None:
        """Without a key the fetch fails before any request."""
        fetcher = CoinMarketCapFetcher()
        result = await fetcher.fetch_quote("btc", "usd")

        assert isinstance(result.error, ProviderConfigError)
        assert not fetcher.supports_pair("btc", "usd")

    @respx.mock
    async def test_quote(self) -> None:
        route = respx.get("https://pro-api.coinmarketcap.com/v2/cryptocurrency/quotes/latest").mock(
            return_value=httpx.Response(
                200,
                json={
                    "data": {
                        "BTC": [
                            {"id": 1, "quote": {"USD": {"price": 50010.25, "volume_24h": 5e9}}}
                        ]
                    }
                },
            )
        )
        result = await CoinMarketCapFetcher(api_key="k").fetch_quote("btc", "usd")

        assert route.calls.last.request.headers["X-CMC_PRO_API_KEY"] == "k"
        assert result.quote.price == Decimal("50010.25")
        assert result.quote.metadata["cmc_id"] == 1


class TestBinance:
    URL = "https://api.binance.com/api/v3/ticker/price"

    @respx.mock
    async def test_usd_via_usdt(self) -> None:
        """USD quotes are BASE/USDT times USDT/USD."""
        respx.get(self.URL).mock(
            return_value=httpx.Response(
                200,
                json=[
                    {"symbol": "BTCUSDT", "price": "50000"},
                    {"symbol": "USDTUSD", "price": "1.001"},
                ],
            )
        )
        result = await BinanceFetcher().fetch_quote("btc", "usd")

        assert result.quote.price == Decimal("50050")
        assert result.quote.metadata["usdt_rate"] == "1.001"

    @respx.mock
    async def test_depeg_rejected(self) -> None:
        """A USDT rate more than 2% off 1.0 fails the fetch."""
        respx.get(self.URL).mock(
            return_value=httpx.Response(
                200,
                json=[
                    {"symbol": "BTCUSDT", "price": "50000"},
                    {"symbol": "USDTUSD", "price": "0.95"},
                ],
            )
        )
        result = await BinanceFetcher().fetch_quote("btc", "usd")

        assert not result.ok
        assert "depeg" in result.error.message

    @respx.mock
    async def test_direct_symbol(self) -> None:
        """Other currencies are fetched as a direct symbol."""
        respx.get(self.URL).mock(
            return_value=httpx.Response(200, json=[{"symbol": "ETHBTC", "price": "0.05"}])
        )
        result = await BinanceFetcher().fetch_quote("eth", "btc")

        assert result.quote.price == Decimal("0.05")

    @respx.mock
    async def test_missing_symbol(self) -> None:
        respx.get(self.URL).mock(
            return_value=httpx.Response(200, json=[{"symbol": "USDTUSD", "price": "1"}])
        )
        result = await BinanceFetcher().fetch_quote("foo", "usd")

        assert not result.ok
        assert "FOOUSDT" in result.error.message
