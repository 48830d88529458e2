"""HistoricalStore: Time-partitioned history of quotes and feed cycles.

Records are grouped in monthly partitions keyed ``YYYY-MM`` (by record time),
so retention drops whole partitions once they empty out. Three record kinds
are kept:

- raw provider quotes (``record_quotes``),
- aggregated prices (``record_aggregation``), and
- one ``FeedUpdate`` per cycle, successful or not, used for quality rollups.

Quality score per hourly bucket::

    0.40 * success_rate
  + 0.30 * avg_confidence
  + 0.20 * (1 - min(avg_deviation / 100, 1))
  + 0.10 * source_reliability

rounded to 2 places and capped at 1.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal

from .AssetPair import AssetPair
from .models import HUNDRED, AggregatedPrice, Clock, Quote, quantize, utc_now

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_DAYS = 30
DEFAULT_SOURCE_RELIABILITY = Decimal("0.8")

QUALITY_WEIGHTS = {
    "success": Decimal("0.40"),
    "confidence": Decimal("0.30"),
    "deviation": Decimal("0.20"),
    "reliability": Decimal("0.10"),
}


def partition_key(moment: datetime) -> str:
    """Monthly partition key, e.g. ``2024-03``."""
    return moment.strftime("%Y-%m")


def quality_score(
    success_rate: Decimal,
    avg_confidence: Decimal | None,
    avg_deviation: Decimal | None,
    source_reliability: Decimal,
) -> Decimal:
    """Weighted quality score in [0, 1], rounded to 2 places.

    Missing averages (no successful cycle in the bucket) contribute 0.
    """
    score = success_rate * QUALITY_WEIGHTS["success"]
    if avg_confidence is not None:
        score += avg_confidence * QUALITY_WEIGHTS["confidence"]
    if avg_deviation is not None:
        score += (1 - min(avg_deviation / HUNDRED, Decimal(1))) * QUALITY_WEIGHTS["deviation"]
    score += source_reliability * QUALITY_WEIGHTS["reliability"]
    return min(score, Decimal(1)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class QuoteRecord:
    feed_id: str
    quote: Quote
    recorded_at: datetime

    @property
    def day(self) -> date:
        return self.quote.observed_at.date()


@dataclass(frozen=True)
class FeedUpdate:
    """One finished feed cycle.

    :ivar status: ``"success"`` or ``"failed"``.
    :ivar error_code: Aggregation error code of a failed cycle.
    """

    feed_id: str
    asset_id: str
    currency: str
    status: str
    created_at: datetime
    price: Decimal | None = None
    confidence: Decimal | None = None
    deviation_percent: Decimal | None = None
    source_count: int = 0
    outliers_removed: int = 0
    processing_time: float = 0.0
    error_code: str | None = None

    @property
    def success(self) -> bool:
        return self.status == "success"


@dataclass(frozen=True)
class FeedQualityBucket:
    """Quality rollup of one feed over one hour."""

    feed_id: str
    period_start: datetime
    update_count: int
    success_count: int
    failure_count: int
    avg_confidence: Decimal | None
    avg_deviation: Decimal | None
    avg_processing_time_ms: int | None
    avg_source_count: Decimal | None
    outlier_count: int
    quality_score: Decimal


@dataclass
class Partition:
    quotes: list[QuoteRecord] = field(default_factory=list)
    aggregations: dict[AssetPair, list[AggregatedPrice]] = field(default_factory=dict)
    updates: list[FeedUpdate] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.quotes or self.aggregations or self.updates)


def _avg(values: list[Decimal]) -> Decimal | None:
    if not values:
        return None
    return quantize(sum(values, Decimal(0)) / len(values))


class HistoricalStore:
    """In-memory, month-partitioned history store.

    Aggregated prices are the service's history and are never pruned; raw
    quote detail and cycle records are subject to ``prune``.
    The newest aggregation of each pair is indexed for ``latest_aggregation``.
    """

    def __init__(self, clock: Clock = utc_now) -> None:
        self._clock = clock
        self._partitions: dict[str, Partition] = {}
        self._latest: dict[AssetPair, AggregatedPrice] = {}

    def _partition(self, moment: datetime) -> Partition:
        key = partition_key(moment)
        if key not in self._partitions:
            self._partitions[key] = Partition()
        return self._partitions[key]

    @property
    def partition_keys(self) -> list[str]:
        return sorted(self._partitions)

    def record_quotes(self, feed_id: str, quotes: list[Quote]) -> None:
        """Store the raw quotes accepted from providers in one cycle."""
        now = self._clock()
        partition = self._partition(now)
        partition.quotes.extend(QuoteRecord(feed_id, q, now) for q in quotes)

    def record_aggregation(self, feed_id: str, price: AggregatedPrice) -> None:
        """Store an aggregated price and a successful cycle record."""
        partition = self._partition(price.created_at)
        partition.aggregations.setdefault(price.pair, []).append(price)
        latest = self._latest.get(price.pair)
        if latest is None or price.created_at >= latest.created_at:
            self._latest[price.pair] = price
        partition.updates.append(
            FeedUpdate(
                feed_id=feed_id,
                asset_id=price.asset_id,
                currency=price.currency,
                status="success",
                created_at=price.created_at,
                price=price.price,
                confidence=price.confidence,
                deviation_percent=price.deviation_percent,
                source_count=price.source_count,
                outliers_removed=price.outliers_removed,
                processing_time=price.processing_time,
            )
        )

    def record_failure(
        self,
        feed_id: str,
        pair: AssetPair,
        error_code: str,
        outliers_removed: int = 0,
        source_count: int = 0,
    ) -> None:
        """Store a failed cycle record with its aggregation error code."""
        now = self._clock()
        self._partition(now).updates.append(
            FeedUpdate(
                feed_id=feed_id,
                asset_id=pair.asset_id,
                currency=pair.currency,
                status="failed",
                created_at=now,
                source_count=source_count,
                outliers_removed=outliers_removed,
                error_code=error_code,
            )
        )

    def get_aggregations(
        self,
        asset_id: str,
        currency: str,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int = 100,
    ) -> list[AggregatedPrice]:
        """Aggregated prices of a pair, newest first.

        :param asset_id: Asset symbol.
        :param currency: Quote currency symbol.
        :param start: Inclusive lower bound on ``created_at``.
        :param end: Inclusive upper bound on ``created_at``.
        :param limit: Maximum number of results.
        :returns: Matching prices ordered by ``created_at`` descending.
        """
        if limit < 1:
            return []
        pair = AssetPair(asset_id, currency)
        matches: list[AggregatedPrice] = []
        # Partitions cover disjoint months, so newer partitions hold newer prices
        for key in sorted(self._partitions, reverse=True):
            found = [
                p
                for p in self._partitions[key].aggregations.get(pair, [])
                if (start is None or p.created_at >= start) and (end is None or p.created_at <= end)
            ]
            found.sort(key=lambda p: p.created_at, reverse=True)
            matches.extend(found)
            if len(matches) >= limit:
                break
        return matches[:limit]

    def latest_aggregation(self, asset_id: str, currency: str) -> AggregatedPrice | None:
        return self._latest.get(AssetPair(asset_id, currency))

    def get_quotes(
        self,
        asset_id: str,
        currency: str,
        source: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[Quote]:
        """Raw quotes of a pair, oldest first, optionally for one provider."""
        pair = AssetPair(asset_id, currency)
        records = [
            r
            for key in sorted(self._partitions)
            for r in self._partitions[key].quotes
            if r.quote.pair == pair
            and (source is None or r.quote.source == source)
            and (start is None or r.quote.observed_at >= start)
            and (end is None or r.quote.observed_at <= end)
        ]
        records.sort(key=lambda r: r.quote.observed_at)
        return [r.quote for r in records]

    def get_updates(self, feed_id: str, since: datetime | None = None) -> list[FeedUpdate]:
        return [
            u
            for key in sorted(self._partitions)
            for u in self._partitions[key].updates
            if u.feed_id == feed_id and (since is None or u.created_at >= since)
        ]

    def prune(self, now: datetime | None = None, retention_days: int = DEFAULT_RETENTION_DAYS) -> int:
        """Drop detail older than the retention window.

        Raw quotes older than the cutoff are thinned to the latest quote per
        (asset, currency, provider, day). Cycle records older than the cutoff
        are dropped. Aggregated prices are kept. Partitions left empty are
        removed.

        :param now: Current time (defaults to the clock).
        :param retention_days: Age in days after which detail is pruned.
        :returns: Number of records removed.
        """
        now = now or self._clock()
        cutoff = now - timedelta(days=retention_days)
        removed = 0

        for key in list(self._partitions):
            partition = self._partitions[key]

            latest: dict[tuple[str, str, str, date], QuoteRecord] = {}
            keep: set[int] = set()
            for record in partition.quotes:
                if record.recorded_at >= cutoff:
                    keep.add(id(record))
                    continue
                q = record.quote
                day_key = (q.asset_id, q.currency, q.source, record.day)
                current = latest.get(day_key)
                if current is None or q.observed_at >= current.quote.observed_at:
                    latest[day_key] = record
            keep.update(id(r) for r in latest.values())
            new_quotes = [r for r in partition.quotes if id(r) in keep]
            removed += len(partition.quotes) - len(new_quotes)
            partition.quotes = new_quotes

            new_updates = [u for u in partition.updates if u.created_at >= cutoff]
            removed += len(partition.updates) - len(new_updates)
            partition.updates = new_updates

            if partition.is_empty():
                del self._partitions[key]

        if removed:
            logger.info(f"Pruned {removed} history records older than {retention_days} days")
        return removed

    def feed_quality(
        self,
        feed_id: str,
        since: datetime | None = None,
        source_reliability: Decimal = DEFAULT_SOURCE_RELIABILITY,
    ) -> list[FeedQualityBucket]:
        """Hourly quality rollups of one feed, oldest first.

        :param feed_id: Feed to roll up.
        :param since: Only consider cycles at or after this time.
        :param source_reliability: Reliability of the feed's providers in [0, 1].
        :returns: One bucket per hour that saw at least one cycle.
        """
        buckets: dict[datetime, list[FeedUpdate]] = defaultdict(list)
        for update in self.get_updates(feed_id, since):
            hour = update.created_at.replace(minute=0, second=0, microsecond=0)
            buckets[hour].append(update)

        result = []
        for hour in sorted(buckets):
            updates = buckets[hour]
            ok = [u for u in updates if u.success]
            success_rate = quantize(Decimal(len(ok)) / len(updates))
            avg_confidence = _avg([u.confidence for u in ok])
            avg_deviation = _avg([u.deviation_percent for u in ok])
            avg_ms = (
                int(sum(u.processing_time for u in ok) / len(ok) * 1000) if ok else None
            )
            result.append(
                FeedQualityBucket(
                    feed_id=feed_id,
                    period_start=hour,
                    update_count=len(updates),
                    success_count=len(ok),
                    failure_count=len(updates) - len(ok),
                    avg_confidence=avg_confidence,
                    avg_deviation=avg_deviation,
                    avg_processing_time_ms=avg_ms,
                    avg_source_count=_avg([Decimal(u.source_count) for u in ok]),
                    outlier_count=sum(u.outliers_removed for u in updates),
                    quality_score=quality_score(
                        success_rate, avg_confidence, avg_deviation, source_reliability
                    ),
                )
            )
        return result

    def current_quality(
        self,
        feed_id: str,
        window: timedelta = timedelta(hours=24),
        source_reliability: Decimal = DEFAULT_SOURCE_RELIABILITY,
    ) -> Decimal | None:
        """Quality score over all cycles in the trailing window.

        :returns: Score, or None if the feed has no cycles in the window.
        """
        updates = self.get_updates(feed_id, self._clock() - window)
        if not updates:
            return None
        ok = [u for u in updates if u.success]
        return quality_score(
            quantize(Decimal(len(ok)) / len(updates)),
            _avg([u.confidence for u in ok]),
            _avg([u.deviation_percent for u in ok]),
            source_reliability,
        )
