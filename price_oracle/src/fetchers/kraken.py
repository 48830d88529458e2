"""Kraken fetcher.

Endpoint: https://api.kraken.com/0/public/Ticker?pair={BASE}{QUOTE}
Rate Limit: ~1 request/second (no key required)
"""

import logging

from ..models import Quote
from .base import BaseFetcher, ProviderError, register_fetcher

logger = logging.getLogger(__name__)


@register_fetcher
class KrakenFetcher(BaseFetcher):
    """Fetcher for Kraken public API.

    Supports major USD pairs (BTC, ETH, etc.) but not ROSE.
    No API key required.
    """

    name = "kraken"
    BASE_URL = "https://api.kraken.com/0/public"

    # Kraken uses non-standard ticker symbols
    SYMBOL_MAP = {
        "btc": "XBT",
    }

    def kraken_pair(self, asset_id: str, currency: str) -> str:
        base = self.SYMBOL_MAP.get(asset_id.lower(), asset_id.upper())
        return f"{base}{currency.upper()}"

    async def fetch(self, asset_id: str, currency: str) -> Quote:
        """Fetch price from Kraken.

        :param asset_id: Asset symbol (e.g., "btc", "eth").
        :param currency: Quote currency (e.g., "usd").
        :returns: Current quote.
        :raises ProviderError: On API errors or an empty result.
        """
        pair = self.kraken_pair(asset_id, currency)
        url = f"{self.BASE_URL}/Ticker"

        response = await self._get(url, params={"pair": pair})
        data = response.json()

        errors = data.get("error")
        if errors:
            raise ProviderError(self.name, f"API error for {pair}: {errors}")

        result = data.get("result", {})
        if not result:
            raise ProviderError(self.name, f"No result for {pair}")

        # Result keys may differ from the requested pair (e.g. XXBTZUSD)
        pair_data = list(result.values())[0]

        # 'c' is the last trade closed array: [price, lot volume]
        # 'v' is volume: [today, last 24 hours]
        volume = pair_data.get("v", [None, None])[1]
        return self._quote(asset_id, currency, pair_data["c"][0], volume=volume)

    def supports_pair(self, asset_id: str, currency: str) -> bool:
        """Kraken doesn't list ROSE."""
        return asset_id.lower() != "rose"
