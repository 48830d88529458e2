"""Source adapters: one fetcher per external price API.

Every adapter turns an (asset, currency) request into a :class:`Quote` and is
looked up by provider name through the registry. ``fetch_quote`` never raises;
it reports failures in the returned :class:`FetchResult`.

.. code-block:: python

    from price_oracle.src.fetchers import get_available_fetchers, get_fetcher

    get_available_fetchers()
    # ['binance', 'bitstamp', 'coinbase', 'coingecko', 'coinmarketcap', 'kraken']

    kraken = get_fetcher("kraken", timeout=5.0)
    result = await kraken.fetch_quote("btc", "usd")
    if result.ok:
        print(result.quote.price)

    # Keyed providers
    cmc = get_fetcher("coinmarketcap", api_key="your-api-key")
"""

from .base import (
    FETCHER_REGISTRY,
    BaseFetcher,
    FetchResult,
    ProviderConfigError,
    ProviderError,
    ProviderHTTPError,
    get_available_fetchers,
    get_fetcher,
    register_fetcher,
)

# Registration happens on import
from .binance import BinanceFetcher
from .bitstamp import BitstampFetcher
from .coinbase import CoinbaseFetcher
from .coingecko import CoinGeckoFetcher
from .coinmarketcap import CoinMarketCapFetcher
from .kraken import KrakenFetcher

__all__ = [
    # Adapter base and results
    "BaseFetcher",
    "FetchResult",
    "ProviderError",
    "ProviderConfigError",
    "ProviderHTTPError",
    # Registry
    "register_fetcher",
    "get_fetcher",
    "get_available_fetchers",
    "FETCHER_REGISTRY",
    # Providers
    "BinanceFetcher",
    "BitstampFetcher",
    "CoinbaseFetcher",
    "CoinGeckoFetcher",
    "CoinMarketCapFetcher",
    "KrakenFetcher",
]
