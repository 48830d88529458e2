"""Binance fetcher with self-contained USD conversion.

Binance lists USDT pairs for most assets but almost no USD pairs. For ``usd``
quotes this fetcher requests BASE/USDT and USDT/USD in a single call and
multiplies them. Other currencies are fetched as a direct symbol.

Endpoint: https://api.binance.com/api/v3/ticker/price
Rate Limit: High (no key required for public endpoints)
"""

import json
import logging
from decimal import Decimal

from ..models import Quote, quantize, to_decimal
from .base import BaseFetcher, ProviderError, register_fetcher

logger = logging.getLogger(__name__)


@register_fetcher
class BinanceFetcher(BaseFetcher):
    """Binance fetcher with internal USD conversion.

    Includes USDT depeg detection: if USDT deviates more than 2% from 1.0,
    the quote is rejected instead of being converted at a broken rate.
    """

    name = "binance"
    BASE_URL = "https://api.binance.com/api/v3"
    DEFAULT_RATE_LIMIT = 1200

    USDT_DEPEG_THRESHOLD = Decimal("0.02")
    USDT_USD = "USDTUSD"

    def _is_depeg(self, rate: Decimal) -> bool:
        """Check if stablecoin has depegged (>2% from 1.0).

        :param rate: Stablecoin/USD rate.
        :returns: True if depegged beyond threshold.
        """
        return abs(rate - 1) > self.USDT_DEPEG_THRESHOLD

    async def fetch(self, asset_id: str, currency: str) -> Quote:
        """Fetch price from Binance.

        :param asset_id: Asset symbol (e.g., "btc", "eth", "rose").
        :param currency: Quote currency (e.g., "usd", "usdt", "eur").
        :returns: Current quote.
        :raises ProviderError: On missing symbols or a USDT depeg.
        """
        base_u = asset_id.upper()

        if currency.lower() != "usd":
            symbol = f"{base_u}{currency.upper()}"
            prices = await self._fetch_symbols([symbol])
            return self._quote(asset_id, currency, prices[symbol], symbol=symbol)

        symbol = f"{base_u}USDT"
        prices = await self._fetch_symbols([symbol, self.USDT_USD])
        usdt_rate = prices[self.USDT_USD]

        if self._is_depeg(usdt_rate):
            raise ProviderError(
                self.name, f"USDT depeg detected: rate={usdt_rate}, refusing conversion"
            )

        return self._quote(
            asset_id,
            currency,
            quantize(prices[symbol] * usdt_rate),
            symbol=symbol,
            usdt_rate=str(usdt_rate),
        )

    async def _fetch_symbols(self, symbols: list[str]) -> dict[str, Decimal]:
        """Fetch prices for multiple symbols in a single API call.

        :param symbols: List of Binance symbols.
        :returns: Dict mapping every requested symbol to its price.
        :raises ProviderError: If any requested symbol is missing.
        """
        url = f"{self.BASE_URL}/ticker/price"
        response = await self._get(url, params={"symbols": json.dumps(symbols)})
        data = response.json()

        result: dict[str, Decimal] = {}
        for item in data:
            if "symbol" in item and "price" in item:
                result[item["symbol"]] = to_decimal(item["price"])

        missing = [s for s in symbols if s not in result]
        if missing:
            raise ProviderError(self.name, f"No price for {', '.join(missing)}")
        return result
