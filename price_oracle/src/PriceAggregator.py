"""PriceAggregator: IQR outlier removal followed by a configurable reduction.

Algorithm:
    1. Fail with ``insufficient_sources`` if fewer than min_sources quotes arrived
    2. With 3 or more quotes, drop prices outside [Q1 - 1.5*IQR, Q3 + 1.5*IQR]
    3. Fail with ``all_quotes_outliers`` / ``insufficient_sources`` if too few remain
    4. Reduce the accepted quotes with mean, median, weighted_average or
       volume_weighted
    5. Compute the spread (max - min) / mean; above the feed's deviation
       threshold the confidence is scaled down and the result is flagged

All arithmetic is Decimal. Every division is quantized to 8 fractional digits
with banker's rounding, so the same quotes always yield the same price.

.. code-block:: python

    >>> aggregator = PriceAggregator(min_sources=2)
    >>> quotes = [quote("a", 100), quote("b", 101), quote("c", 99),
    ...           quote("d", 102), quote("rogue", 1000)]
    >>> result = aggregator.aggregate(quotes, AggregationMethod.MEDIAN, Decimal(10))
    >>> result.success
    True
    >>> result.price.price
    Decimal('100.50000000')
    >>> result.metadata["dropped"]
    {'rogue': Decimal('1000')}
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from decimal import Decimal
from typing import TypedDict

from .errors import AggregationError, AllQuotesOutliersError, InsufficientSourcesError
from .models import (
    HUNDRED,
    AggregatedPrice,
    AggregationMethod,
    Clock,
    Quote,
    quantize,
    utc_now,
)

IQR_MULTIPLIER = Decimal("1.5")

# Below this many quotes quartiles are meaningless and nothing is discarded.
MIN_QUOTES_FOR_IQR = 3


class AggregationFailure(TypedDict, total=False):
    """Error information when aggregation fails.

    :ivar error: Error type identifier.
    :ivar available: Number of quotes left when the cycle was aborted.
    :ivar required: The min_sources that was not met.
    :ivar dropped: Dict of sources dropped as outliers.
    """

    error: str
    available: int
    required: int
    dropped: dict[str, Decimal]


class AggregationMetadata(TypedDict, total=False):
    """Metadata about a successful aggregation.

    :ivar sources: List of sources used in final calculation.
    :ivar dropped: Dict of sources dropped as outliers.
    :ivar count: Number of sources used.
    :ivar min: Lowest accepted price.
    :ivar max: Highest accepted price.
    :ivar mean: Plain mean of accepted prices.
    :ivar bounds: IQR acceptance interval, if outlier removal ran.
    """

    sources: list[str]
    dropped: dict[str, Decimal]
    count: int
    min: Decimal
    max: Decimal
    mean: Decimal
    bounds: tuple[Decimal, Decimal]


_ERRORS: dict[str, type[AggregationError]] = {
    InsufficientSourcesError.code: InsufficientSourcesError,
    AllQuotesOutliersError.code: AllQuotesOutliersError,
}


@dataclass
class AggregationResult:
    """Result of price aggregation.

    :ivar price: Aggregated price, or None if aggregation failed.
    :ivar metadata: Additional information about the aggregation.
    """

    price: AggregatedPrice | None
    metadata: AggregationMetadata | AggregationFailure

    @property
    def success(self) -> bool:
        """Check if aggregation was successful."""
        return self.price is not None

    @property
    def error(self) -> str | None:
        """Get error type if aggregation failed."""
        if self.price is None:
            return self.metadata.get("error")
        return None

    def raise_for_error(self) -> AggregatedPrice:
        """Return the price, or raise the AggregationError matching the failure.

        :raises InsufficientSourcesError: Too few quotes.
        :raises AllQuotesOutliersError: Every quote was an outlier.
        """
        if self.price is not None:
            return self.price
        error_cls = _ERRORS.get(self.error or "", AggregationError)
        meta = self.metadata
        raise error_cls(
            f"{self.error}: available={meta.get('available', 0)}, "
            f"required={meta.get('required', 0)}"
        )


def percentile(sorted_values: list[Decimal], fraction: Decimal) -> Decimal:
    """Linear-interpolated percentile of an ascending, non-empty list.

    :param sorted_values: Values in ascending order.
    :param fraction: Percentile as a fraction in [0, 1] (0.25 for Q1).
    :returns: Interpolated value at full precision.
    """
    position = (len(sorted_values) - 1) * fraction
    lower = int(position)
    upper = min(lower + 1, len(sorted_values) - 1)
    weight = position - lower
    return sorted_values[lower] + (sorted_values[upper] - sorted_values[lower]) * weight


def median(values: list[Decimal]) -> Decimal:
    ordered = sorted(values)
    mid = len(ordered) // 2
    if len(ordered) % 2:
        return quantize(ordered[mid])
    return quantize((ordered[mid - 1] + ordered[mid]) / 2)


def mean(values: list[Decimal]) -> Decimal:
    return quantize(sum(values, Decimal(0)) / len(values))


class PriceAggregator:
    """Reconciles quotes from multiple providers into one price.

    :ivar min_sources: Default minimum number of quotes for a valid aggregation.
    :ivar iqr_multiplier: Width of the IQR acceptance band.

    .. code-block:: python

        >>> agg = PriceAggregator(min_sources=2)
        >>> result = agg.aggregate(
        ...     [quote("a", 100), quote("b", 200)],
        ...     AggregationMethod.WEIGHTED_AVERAGE,
        ...     Decimal(100),
        ...     weights={"a": Decimal(1), "b": Decimal(3)},
        ... )
        >>> result.price.price
        Decimal('175.00000000')
    """

    def __init__(
        self,
        min_sources: int = 2,
        iqr_multiplier: Decimal = IQR_MULTIPLIER,
        clock: Clock = utc_now,
    ) -> None:
        """Initialize the aggregator.

        :param min_sources: Minimum number of quotes required for aggregation.
        :param iqr_multiplier: Multiplier of the interquartile range that
            bounds accepted prices (default 1.5).
        :param clock: Source of ``created_at`` timestamps.
        :raises ValueError: If parameters are invalid.
        """
        if min_sources < 1:
            raise ValueError("min_sources must be at least 1")
        if iqr_multiplier <= 0:
            raise ValueError("iqr_multiplier must be positive")

        self.min_sources = min_sources
        self.iqr_multiplier = iqr_multiplier
        self._clock = clock

    def remove_outliers(self, quotes: list[Quote]) -> tuple[list[Quote], list[Quote], tuple | None]:
        """Split quotes into accepted and outliers using the IQR rule.

        :param quotes: Quotes to examine.
        :returns: (accepted, outliers, (lower, upper) bounds or None if skipped).
        """
        if len(quotes) < MIN_QUOTES_FOR_IQR:
            return list(quotes), [], None

        prices = sorted(q.price for q in quotes)
        q1 = percentile(prices, Decimal("0.25"))
        q3 = percentile(prices, Decimal("0.75"))
        iqr = q3 - q1
        lower = q1 - iqr * self.iqr_multiplier
        upper = q3 + iqr * self.iqr_multiplier

        accepted = [q for q in quotes if lower <= q.price <= upper]
        outliers = [q for q in quotes if not lower <= q.price <= upper]
        return accepted, outliers, (lower, upper)

    def reduce(
        self,
        quotes: list[Quote],
        method: AggregationMethod,
        weights: dict[str, Decimal] | None = None,
    ) -> Decimal:
        """Reduce accepted quotes to a single price.

        :param quotes: Non-empty list of accepted quotes.
        :param method: Aggregation method.
        :param weights: Provider weights (missing providers weigh 1).
        :returns: Quantized price.
        """
        weights = weights or {}
        prices = [q.price for q in quotes]

        if method is AggregationMethod.MEAN:
            return mean(prices)
        if method is AggregationMethod.MEDIAN:
            return median(prices)

        if method is AggregationMethod.VOLUME_WEIGHTED:
            factors = [q.volume or weights.get(q.source, Decimal(1)) for q in quotes]
        else:
            factors = [weights.get(q.source, Decimal(1)) for q in quotes]

        total = sum(factors, Decimal(0))
        if total <= 0:
            return mean(prices)
        weighted = sum((p * f for p, f in zip(prices, factors)), Decimal(0))
        return quantize(weighted / total)

    def aggregate(
        self,
        quotes: list[Quote],
        method: AggregationMethod,
        deviation_threshold: Decimal,
        weights: dict[str, Decimal] | None = None,
        *,
        min_sources: int | None = None,
    ) -> AggregationResult:
        """Aggregate quotes from multiple providers into a single price.

        :param quotes: Quotes that survived fetching (one per provider).
        :param method: Aggregation method.
        :param deviation_threshold: Spread (percent) above which confidence is reduced.
        :param weights: Provider weights for the weighted methods.
        :param min_sources: Per-feed override of the minimum source count.
        :returns: AggregationResult with the price and metadata, or None price
            with error info.
        """
        started = time.perf_counter()
        required = min_sources if min_sources is not None else self.min_sources

        if not quotes or len(quotes) < required:
            return AggregationResult(
                price=None,
                metadata={
                    "error": InsufficientSourcesError.code,
                    "available": len(quotes),
                    "required": required,
                },
            )

        accepted, outliers, bounds = self.remove_outliers(quotes)
        dropped = {q.source: q.price for q in outliers}

        if not accepted:
            return AggregationResult(
                price=None,
                metadata={
                    "error": AllQuotesOutliersError.code,
                    "available": 0,
                    "required": required,
                    "dropped": dropped,
                },
            )
        if len(accepted) < required:
            return AggregationResult(
                price=None,
                metadata={
                    "error": InsufficientSourcesError.code,
                    "available": len(accepted),
                    "required": required,
                    "dropped": dropped,
                },
            )

        method = AggregationMethod(method)
        price = self.reduce(accepted, method, weights)

        prices = [q.price for q in accepted]
        low, high = min(prices), max(prices)
        avg = mean(prices)
        deviation = quantize((high - low) / avg * HUNDRED)

        confidence = mean([q.confidence for q in accepted])
        flagged = deviation > deviation_threshold
        if flagged:
            confidence = quantize(confidence * deviation_threshold / deviation)
        confidence = max(Decimal(0), min(confidence, Decimal(1)))

        result = AggregatedPrice(
            asset_id=accepted[0].asset_id,
            currency=accepted[0].currency,
            price=price,
            confidence=confidence,
            method=method,
            source_count=len(accepted),
            deviation_percent=deviation,
            outliers_removed=len(outliers),
            processing_time=time.perf_counter() - started,
            created_at=self._clock(),
            sources=tuple(q.source for q in accepted),
            flagged=flagged,
        )

        metadata: AggregationMetadata = {
            "sources": list(result.sources),
            "dropped": dropped,
            "count": len(accepted),
            "min": low,
            "max": high,
            "mean": avg,
        }
        if bounds is not None:
            metadata["bounds"] = bounds
        return AggregationResult(price=result, metadata=metadata)
