"""FeedObserver: One price cycle of one feed.

A cycle:
- fetches quotes from every provider of the feed concurrently,
- aggregates the successful quotes,
- writes the result to the quote cache and the historical store,
- reports the outcome to the scheduler (which may pause the feed), and
- enqueues notifications for the feed's subscriptions.

Provider failures never abort a cycle. An aggregation failure aborts it
without emitting a price and counts as a failed cycle.
"""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from .models import (
    HUNDRED,
    AggregatedPrice,
    Clock,
    Feed,
    NotificationType,
    Subscription,
    quantize,
    utc_now,
)
from .PriceAggregator import AggregationResult, PriceAggregator

if TYPE_CHECKING:
    from .FeedScheduler import FeedScheduler, ScheduleUpdate
    from .FetchCoordinator import FetchCoordinator
    from .fetchers.base import FetchResult
    from .HistoricalStore import HistoricalStore
    from .NotificationDispatcher import NotificationDispatcher
    from .QuoteCache import QuoteCache

logger = logging.getLogger(__name__)

PRIORITY_THRESHOLD_BREACH = 1
PRIORITY_FEED_STATUS = 3
PRIORITY_PRICE_UPDATE = 5


def passes_filters(
    subscription: Subscription, price: AggregatedPrice, now: datetime
) -> bool:
    """Check the price update filters of a subscription.

    :param subscription: Subscription to check.
    :param price: New aggregated price.
    :param now: Current time.
    :returns: True if a price update should be delivered.
    """
    filters = subscription.filters

    if filters.confidence_threshold is not None and price.confidence < filters.confidence_threshold:
        return False

    if filters.max_update_frequency and subscription.last_notification_at is not None:
        elapsed = (now - subscription.last_notification_at).total_seconds()
        if elapsed < filters.max_update_frequency:
            return False

    last = subscription.last_notified_price
    if filters.min_price_change_percent is not None and last is not None and last > 0:
        change = quantize(abs(price.price - last) / last * HUNDRED)
        if change < filters.min_price_change_percent:
            return False

    return True


def threshold_crossings(
    subscription: Subscription, price: Decimal, previous: Decimal | None
) -> list[tuple[str, Decimal]]:
    """Thresholds crossed by the move from ``previous`` to ``price``.

    With no previous price, a threshold already beyond is reported once.

    :returns: List of (direction, threshold) pairs, direction "above" or "below".
    """
    filters = subscription.filters
    crossed = []
    above = filters.price_above
    if above is not None and price > above and (previous is None or previous <= above):
        crossed.append(("above", above))
    below = filters.price_below
    if below is not None and price < below and (previous is None or previous >= below):
        crossed.append(("below", below))
    return crossed


class FeedObserver:
    """Runs feed cycles and fans the results out.

    :ivar coordinator: Concurrent fetcher for provider quotes.
    :ivar aggregator: Quote reconciler.
    """

    def __init__(
        self,
        coordinator: FetchCoordinator,
        aggregator: PriceAggregator,
        cache: QuoteCache,
        history: HistoricalStore,
        scheduler: FeedScheduler,
        dispatcher: NotificationDispatcher,
        clock: Clock = utc_now,
    ) -> None:
        self.coordinator = coordinator
        self.aggregator = aggregator
        self.cache = cache
        self.history = history
        self.scheduler = scheduler
        self.dispatcher = dispatcher
        self._clock = clock

    async def run_cycle(self, feed: Feed) -> AggregationResult:
        """Run one full cycle of a claimed feed.

        :param feed: Feed to update (must be claimed on the scheduler).
        :returns: The aggregation result of the cycle.
        """
        results = await self.coordinator.fetch_feed(
            feed.asset_id, feed.currency, feed.provider_ids
        )
        quotes = [r.quote for r in results if r.ok]
        for quote in quotes:
            self.cache.put_quote(quote)

        previous_entry = self.cache.get_price(feed.pair)
        previous = previous_entry.value.price if previous_entry is not None else None

        result = self.aggregator.aggregate(
            quotes,
            feed.aggregation_method,
            feed.deviation_threshold,
            feed.weights,
            min_sources=feed.min_sources,
        )

        if not result.success:
            self._log_failure(feed, results, result)
            self.history.record_failure(
                feed.feed_id,
                feed.pair,
                result.error or "unknown",
                outliers_removed=len(result.metadata.get("dropped", {})),
                source_count=len(quotes),
            )
            update = await self.scheduler.update_schedule(feed.feed_id, success=False)
            await self.notify_status(feed, update)
            return result

        price = result.price
        self.cache.put_price(price)
        self.history.record_quotes(feed.feed_id, quotes)
        self.history.record_aggregation(feed.feed_id, price)
        self._log_success(feed, results, result)

        update = await self.scheduler.update_schedule(feed.feed_id, success=True)
        await self.notify_status(feed, update)
        await self._notify_price(feed, price, previous)
        return result

    async def _notify_price(
        self, feed: Feed, price: AggregatedPrice, previous: Decimal | None
    ) -> None:
        now = self._clock()
        for subscription in self.dispatcher.subscriptions_for_feed(feed.feed_id):
            for direction, threshold in threshold_crossings(subscription, price.price, previous):
                await self.dispatcher.enqueue(
                    subscription.subscription_id,
                    feed.feed_id,
                    NotificationType.THRESHOLD_BREACH,
                    {
                        "feed_id": feed.feed_id,
                        "asset_id": feed.asset_id,
                        "currency": feed.currency,
                        "direction": direction,
                        "threshold": str(threshold),
                        "price": str(price.price),
                        "previous_price": str(previous) if previous is not None else None,
                    },
                    priority=PRIORITY_THRESHOLD_BREACH,
                )
            if passes_filters(subscription, price, now):
                payload: dict[str, Any] = {"feed_id": feed.feed_id, **price.to_dict()}
                await self.dispatcher.enqueue(
                    subscription.subscription_id,
                    feed.feed_id,
                    NotificationType.PRICE_UPDATE,
                    payload,
                    priority=PRIORITY_PRICE_UPDATE,
                )

    async def notify_status(self, feed: Feed, update: ScheduleUpdate) -> None:
        if not (update.paused_now or update.resumed_now):
            return
        schedule = update.schedule
        payload = {
            "feed_id": feed.feed_id,
            "asset_id": feed.asset_id,
            "currency": feed.currency,
            "status": "paused" if update.paused_now else "active",
            "reason": schedule.pause_reason,
            "consecutive_failures": schedule.consecutive_failures,
        }
        for subscription in self.dispatcher.subscriptions_for_feed(feed.feed_id):
            await self.dispatcher.enqueue(
                subscription.subscription_id,
                feed.feed_id,
                NotificationType.FEED_STATUS,
                payload,
                priority=PRIORITY_FEED_STATUS,
            )

    def _format_quote(self, result: FetchResult) -> str:
        """Format a provider outcome for logging, e.g. "coinbase[key]=$12345.67"."""
        fetcher = self.coordinator.fetchers.get(result.source)
        api_tag = "[key]" if fetcher is not None and fetcher.has_api_key else ""
        return f"{result.source}{api_tag}=${result.quote.price}"

    def _log_success(
        self, feed: Feed, results: list[FetchResult], agg: AggregationResult
    ) -> None:
        price = agg.price
        used = set(price.sources)
        breakdown = ", ".join(self._format_quote(r) for r in results if r.ok and r.source in used)
        dropped = agg.metadata.get("dropped", {})
        failed = [r.source for r in results if not r.ok]

        msg = (
            f"{feed.pair}: ${price.price} ({feed.aggregation_method.value} of [{breakdown}], "
            f"confidence={price.confidence}"
        )
        if dropped:
            msg += f", dropped: [{', '.join(f'{s}=${p}' for s, p in dropped.items())}]"
        if failed:
            msg += f", failed: [{', '.join(failed)}]"
        msg += ")"
        if price.flagged:
            logger.warning(f"{msg} deviation {price.deviation_percent}% over threshold")
        else:
            logger.info(msg)

    def _log_failure(
        self, feed: Feed, results: list[FetchResult], agg: AggregationResult
    ) -> None:
        ok = [self._format_quote(r) for r in results if r.ok]
        errors = [f"{r.source}: {r.error.message}" for r in results if not r.ok and r.error]
        logger.warning(
            f"{feed.pair}: Aggregation failed ({agg.error}): "
            f"prices=[{', '.join(ok)}], errors=[{'; '.join(errors)}], meta={agg.metadata}"
        )
