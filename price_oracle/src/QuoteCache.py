"""QuoteCache: Short-lived cache of raw quotes and aggregated prices.

Raw quotes are keyed by (asset, currency, provider) and aggregated prices by
(asset, currency). Entries are never evicted on read: an expired aggregated
price is still returned, flagged stale, so the read API can keep serving the
last known value of a feed that stopped updating.

.. code-block:: python

    cache = QuoteCache(ttl_seconds=120)
    cache.put_price(aggregated)
    entry = cache.get_price(AssetPair("btc", "usd"))
    entry.value.price, entry.is_expired
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Generic, TypeVar

from .AssetPair import AssetPair
from .models import AggregatedPrice, Clock, Quote, utc_now

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    """A cached value with its age.

    :ivar age_seconds: Seconds since the value was stored.
    :ivar is_expired: True if older than the cache TTL.
    """

    value: T
    stored_at: datetime
    age_seconds: float
    is_expired: bool


class QuoteCache:
    """In-process TTL cache for quotes and aggregated prices.

    :ivar ttl_seconds: Age after which entries are reported expired.
    """

    DEFAULT_TTL_SECONDS = 300.0  # 5 minutes

    def __init__(self, ttl_seconds: float = DEFAULT_TTL_SECONDS, clock: Clock = utc_now) -> None:
        """Initialize an empty cache.

        :param ttl_seconds: Staleness threshold in seconds.
        :param clock: Source of the current UTC time.
        :raises ValueError: If ttl_seconds is not positive.
        """
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._quotes: dict[tuple[AssetPair, str], tuple[Quote, datetime]] = {}
        self._prices: dict[AssetPair, tuple[AggregatedPrice, datetime]] = {}

    def _entry(self, value: T, stored_at: datetime) -> CacheEntry[T]:
        age = (self._clock() - stored_at).total_seconds()
        return CacheEntry(
            value=value,
            stored_at=stored_at,
            age_seconds=max(0.0, age),
            is_expired=age > self.ttl_seconds,
        )

    def put_quote(self, quote: Quote) -> None:
        """Store the latest raw quote of one provider."""
        self._quotes[(quote.pair, quote.source)] = (quote, self._clock())

    def get_quote(self, pair: AssetPair, source: str) -> CacheEntry[Quote] | None:
        """Get the latest raw quote of one provider.

        :param pair: Asset/currency pair.
        :param source: Provider identifier.
        :returns: CacheEntry or None if the provider never quoted the pair.
        """
        item = self._quotes.get((pair, source))
        if item is None:
            return None
        return self._entry(*item)

    def get_quotes(self, pair: AssetPair, include_expired: bool = False) -> list[Quote]:
        """Get the latest quote of every provider for a pair.

        :param pair: Asset/currency pair.
        :param include_expired: Also return quotes older than the TTL.
        :returns: Quotes ordered by provider id.
        """
        result = []
        for (cached_pair, source), item in sorted(self._quotes.items(), key=lambda kv: kv[0][1]):
            if cached_pair != pair:
                continue
            entry = self._entry(*item)
            if include_expired or not entry.is_expired:
                result.append(entry.value)
        return result

    def put_price(self, price: AggregatedPrice) -> None:
        """Store the latest aggregated price of a pair."""
        self._prices[price.pair] = (price, self._clock())
        logger.debug(f"{price.pair} cached at {price.price}")

    def get_price(self, pair: AssetPair) -> CacheEntry[AggregatedPrice] | None:
        """Get the latest aggregated price of a pair, expired or not.

        :param pair: Asset/currency pair.
        :returns: CacheEntry or None if the pair was never cached.
        """
        item = self._prices.get(pair)
        if item is None:
            return None
        return self._entry(*item)

    def is_stale(self, pair: AssetPair) -> bool:
        """Check if the cached price is missing or older than the TTL."""
        entry = self.get_price(pair)
        return entry is None or entry.is_expired

    def get_age(self, pair: AssetPair) -> float | None:
        """Age of the cached price in seconds, or None if never cached."""
        entry = self.get_price(pair)
        return entry.age_seconds if entry is not None else None

    def invalidate(self, pair: AssetPair) -> None:
        """Drop the aggregated price and every raw quote of a pair."""
        self._prices.pop(pair, None)
        for key in [k for k in self._quotes if k[0] == pair]:
            del self._quotes[key]

    def purge_expired(self) -> int:
        """Remove raw quotes older than the TTL.

        Aggregated prices are kept so paused feeds can still be served stale.

        :returns: Number of quotes removed.
        """
        cutoff = self._clock() - timedelta(seconds=self.ttl_seconds)
        expired = [k for k, (_, stored_at) in self._quotes.items() if stored_at < cutoff]
        for key in expired:
            del self._quotes[key]
        return len(expired)
