"""Bitstamp fetcher.

Endpoint: https://www.bitstamp.net/api/v2/ticker/{base}{quote}/
Rate Limit: 400 requests/second per IP (no key required)
"""

import logging

from ..models import Quote
from .base import BaseFetcher, ProviderError, register_fetcher

logger = logging.getLogger(__name__)


@register_fetcher
class BitstampFetcher(BaseFetcher):
    """Fetcher for Bitstamp public API.

    Supports major USD and EUR pairs (BTC, ETH, etc.).
    No API key required.
    """

    name = "bitstamp"
    BASE_URL = "https://www.bitstamp.net/api/v2"
    UNSUPPORTED_ASSETS = frozenset({"rose"})

    async def fetch(self, asset_id: str, currency: str) -> Quote:
        """Fetch price from Bitstamp.

        :param asset_id: Asset symbol (e.g., "btc", "eth").
        :param currency: Quote currency (e.g., "usd").
        :returns: Current quote.
        :raises ProviderError: If the request fails or the ticker has no last price.
        """
        pair = f"{asset_id.lower()}{currency.lower()}"
        url = f"{self.BASE_URL}/ticker/{pair}/"

        response = await self._get(url)
        data = response.json()

        if "last" not in data:
            raise ProviderError(self.name, f"No 'last' price for {pair}")

        return self._quote(asset_id, currency, data["last"], volume=data.get("volume"))

    def supports_pair(self, asset_id: str, currency: str) -> bool:
        """Bitstamp lists no ROSE market."""
        return asset_id.lower() not in self.UNSUPPORTED_ASSETS
