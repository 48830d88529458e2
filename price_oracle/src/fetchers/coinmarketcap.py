"""CoinMarketCap fetcher.

Endpoint: https://pro-api.coinmarketcap.com/v2/cryptocurrency/quotes/latest
Rate Limit: 30 calls/min, 333 calls/day (free tier)
API Key: Required
"""

import logging
from decimal import Decimal

from ..models import Quote
from .base import BaseFetcher, ProviderConfigError, ProviderError, register_fetcher

logger = logging.getLogger(__name__)


@register_fetcher
class CoinMarketCapFetcher(BaseFetcher):
    """Fetcher for CoinMarketCap API.

    API key is REQUIRED.
    """

    name = "coinmarketcap"
    BASE_URL = "https://pro-api.coinmarketcap.com"
    DEFAULT_RATE_LIMIT = 30
    DEFAULT_CONFIDENCE = Decimal("0.90")

    async def fetch(self, asset_id: str, currency: str) -> Quote:
        """Fetch price from CoinMarketCap.

        :param asset_id: Asset symbol (e.g., "btc", "eth", "rose").
        :param currency: Quote currency (e.g., "usd").
        :returns: Current quote.
        :raises ProviderConfigError: If no API key is configured.
        :raises ProviderError: If the symbol or currency is missing in the response.
        """
        if not self.has_api_key:
            raise ProviderConfigError(self.name, "API key required but not provided")

        symbol = asset_id.upper()
        convert = currency.upper()
        url = f"{self.BASE_URL}/v2/cryptocurrency/quotes/latest"
        headers = {"X-CMC_PRO_API_KEY": self.api_key}
        params = {"symbol": symbol, "convert": convert}

        response = await self._get(url, params=params, headers=headers)
        data = response.json()

        if "data" not in data:
            raise ProviderError(self.name, "No data in response")

        symbol_data = data["data"].get(symbol)
        if not symbol_data:
            raise ProviderError(self.name, f"Symbol {symbol} not found")

        # CMC returns a list of matches, take the first one
        if isinstance(symbol_data, list):
            symbol_data = symbol_data[0]

        quote_data = symbol_data.get("quote", {}).get(convert)
        if not quote_data:
            raise ProviderError(self.name, f"Quote {convert} not found for {symbol}")

        return self._quote(
            asset_id,
            currency,
            quote_data["price"],
            volume=quote_data.get("volume_24h"),
            cmc_id=symbol_data.get("id"),
        )

    def supports_pair(self, asset_id: str, currency: str) -> bool:
        return self.has_api_key
