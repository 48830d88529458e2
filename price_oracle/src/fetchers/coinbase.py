"""Coinbase Exchange fetcher.

Endpoint: https://api.exchange.coinbase.com/products/{BASE}-{QUOTE}/ticker
Rate Limit: High (no key required)
"""

import logging

from ..models import Quote
from .base import BaseFetcher, ProviderError, register_fetcher

logger = logging.getLogger(__name__)


@register_fetcher
class CoinbaseFetcher(BaseFetcher):
    """Fetcher for Coinbase Exchange API.

    No API key required for public ticker endpoint. The ticker carries the
    24h volume, which feeds volume-weighted aggregation.
    """

    name = "coinbase"
    BASE_URL = "https://api.exchange.coinbase.com"
    DEFAULT_RATE_LIMIT = 600

    async def fetch(self, asset_id: str, currency: str) -> Quote:
        """Fetch price from Coinbase Exchange.

        :param asset_id: Asset symbol (e.g., "btc", "eth").
        :param currency: Quote currency (e.g., "usd").
        :returns: Current quote.
        :raises ProviderError: If the request fails or the ticker has no price.
        """
        symbol = f"{asset_id.upper()}-{currency.upper()}"
        url = f"{self.BASE_URL}/products/{symbol}/ticker"

        response = await self._get(url)
        data = response.json()

        if "price" not in data:
            raise ProviderError(self.name, f"No price in response for {symbol}")

        return self._quote(asset_id, currency, data["price"], volume=data.get("volume"))
