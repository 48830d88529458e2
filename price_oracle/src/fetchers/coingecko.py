"""CoinGecko fetcher.

Endpoint: https://api.coingecko.com/api/v3/simple/price?ids={id}&vs_currencies={quote}
Rate Limit: 30 calls/min (free), higher with API key
"""

import logging
from decimal import Decimal

from ..models import Quote
from .base import BaseFetcher, ProviderError, register_fetcher

logger = logging.getLogger(__name__)


@register_fetcher
class CoinGeckoFetcher(BaseFetcher):
    """Fetcher for CoinGecko API.

    API tiers:
        - Free: api.coingecko.com (no key, 30 calls/min)
        - Demo: api.coingecko.com + x-cg-demo-api-key header
        - Pro: pro-api.coingecko.com + x-cg-pro-api-key header

    To use a demo key, prefix with "demo:": API_KEY_COINGECKO=demo:CG-xxxxx
    Pro keys need no prefix: API_KEY_COINGECKO=xxxxx
    """

    name = "coingecko"
    BASE_URL_FREE = "https://api.coingecko.com/api/v3"
    BASE_URL_PRO = "https://pro-api.coingecko.com/api/v3"
    DEFAULT_RATE_LIMIT = 30
    # Aggregator of exchange prices, not an order book
    DEFAULT_CONFIDENCE = Decimal("0.90")

    # Map common symbols to CoinGecko IDs
    COIN_IDS = {
        "btc": "bitcoin",
        "eth": "ethereum",
        "rose": "oasis-network",
        "usdt": "tether",
        "usdc": "usd-coin",
        "sol": "solana",
        "avax": "avalanche-2",
        "matic": "matic-network",
        "dot": "polkadot",
        "atom": "cosmos",
        "link": "chainlink",
        "uni": "uniswap",
        "aave": "aave",
    }

    def __init__(self, api_key: str | None = None, **kwargs):
        """Initialize with optional demo: prefix handling."""
        self._is_demo = False
        if api_key and api_key.lower().startswith("demo:"):
            self._is_demo = True
            api_key = api_key[5:]
        super().__init__(api_key=api_key, **kwargs)

    @property
    def base_url(self) -> str:
        """Return appropriate base URL based on API key type."""
        if not self.has_api_key:
            return self.BASE_URL_FREE
        return self.BASE_URL_FREE if self._is_demo else self.BASE_URL_PRO

    @property
    def api_header(self) -> tuple[str, str] | None:
        """Return appropriate header name and value for API key."""
        if not self.api_key:
            return None
        header_name = "x-cg-demo-api-key" if self._is_demo else "x-cg-pro-api-key"
        return (header_name, self.api_key)

    async def fetch(self, asset_id: str, currency: str) -> Quote:
        """Fetch price from CoinGecko.

        :param asset_id: Asset symbol (e.g., "btc", "eth", "rose").
        :param currency: Quote currency (e.g., "usd").
        :returns: Current quote.
        :raises ProviderError: For unknown coins or missing quote currencies.
        """
        coin_id = self.COIN_IDS.get(asset_id.lower())
        if not coin_id:
            raise ProviderError(self.name, f"Unknown coin: {asset_id}")

        quote_lower = currency.lower()
        url = f"{self.base_url}/simple/price"

        headers = {}
        if self.api_header:
            header_name, header_value = self.api_header
            headers[header_name] = header_value

        response = await self._get(
            url,
            params={
                "ids": coin_id,
                "vs_currencies": quote_lower,
                "include_24hr_vol": "true",
            },
            headers=headers if headers else None,
        )
        data = response.json()

        if coin_id not in data:
            raise ProviderError(self.name, f"Coin {coin_id} not in response")

        coin_data = data[coin_id]
        if quote_lower not in coin_data:
            raise ProviderError(self.name, f"Quote {quote_lower} not available for {coin_id}")

        return self._quote(
            asset_id,
            currency,
            coin_data[quote_lower],
            volume=coin_data.get(f"{quote_lower}_24h_vol"),
            coin_id=coin_id,
        )

    def supports_pair(self, asset_id: str, currency: str) -> bool:
        """Check if pair is supported (asset must be in COIN_IDS)."""
        return asset_id.lower() in self.COIN_IDS
