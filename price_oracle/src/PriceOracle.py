"""PriceOracle: Main orchestrator of the price feed service.

Polls independent price providers, reconciles their quotes into one price per
feed and pushes the results to subscribers.

Architecture:
    - FeedScheduler hands out due feeds; a ticker puts them on an asyncio.Queue
    - A fixed pool of cycle workers runs FeedObserver cycles from the queue
    - Each cycle fetches all providers of the feed concurrently
      (FetchCoordinator), aggregates (PriceAggregator), writes QuoteCache and
      HistoricalStore, and enqueues notifications
    - A separate pool of delivery workers drains the NotificationDispatcher
    - Failed providers enter exponential backoff (SourceManager); feeds that
      fail repeatedly are paused but keep serving their last price as stale
    - A maintenance task prunes history and finished notification tasks

The public methods double as the service's configuration, read and
subscription API; transport layers call them directly.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from typing import Any, Iterable

from .AssetPair import AssetPair
from .errors import (
    FeedNotFoundError,
    PriceNotFoundError,
    ValidationError,
)
from .FeedObserver import FeedObserver
from .FeedScheduler import FeedScheduler, ScheduleUpdate
from .FetchCoordinator import FetchCoordinator
from .fetchers import BaseFetcher, get_available_fetchers, get_fetcher
from .HistoricalStore import DEFAULT_RETENTION_DAYS, HistoricalStore
from .models import (
    AggregatedPrice,
    AggregationMethod,
    Clock,
    DeliveryMethod,
    Feed,
    FeedProvider,
    PriceReading,
    RetryPolicy,
    Subscription,
    SubscriptionFilters,
    utc_now,
)
from .NotificationDispatcher import DEFAULT_CLEANUP_DAYS, NotificationDispatcher
from .notifiers import BaseNotifier, ConnectionHub, get_notifier
from .PriceAggregator import AggregationResult, PriceAggregator
from .QuoteCache import QuoteCache
from .SourceManager import ProviderHealth, SourceManager

logger = logging.getLogger(__name__)

MAX_HISTORY_LIMIT = 1000

UPDATABLE_FEED_FIELDS = frozenset(
    {
        "providers",
        "update_interval",
        "aggregation_method",
        "deviation_threshold",
        "min_sources",
        "max_consecutive_failures",
        "name",
        "description",
        "is_active",
    }
)


@dataclass(frozen=True)
class FeedMetrics:
    feed_id: str
    pair: str
    quality_score: Decimal | None
    update_count: int
    consecutive_failures: int
    is_paused: bool
    last_update_at: datetime | None


@dataclass(frozen=True)
class OracleMetrics:
    """Pull-based snapshot of service counters.

    :ivar providers: Health of every tracked provider.
    :ivar feeds: Per-feed schedule counters and quality score.
    :ivar queue_depth: Notification task counts by status.
    """

    collected_at: datetime
    providers: dict[str, ProviderHealth]
    feeds: dict[str, FeedMetrics]
    queue_depth: dict[str, int]
    cycles_succeeded: int = 0
    cycles_failed: int = 0
    notifications_sent: int = 0
    notifications_failed: int = 0


def _as_providers(providers: Iterable[Any]) -> list[FeedProvider]:
    """Accept provider ids, (id, weight) pairs, dicts or FeedProvider objects."""
    result = []
    for provider in providers:
        if isinstance(provider, FeedProvider):
            result.append(replace(provider))
        elif isinstance(provider, str):
            result.append(FeedProvider(provider))
        elif isinstance(provider, dict):
            try:
                result.append(
                    FeedProvider(provider["provider_id"], provider.get("weight", Decimal(1)))
                )
            except KeyError as e:
                raise ValidationError("providers", "each provider needs a provider_id") from e
        elif isinstance(provider, (tuple, list)) and len(provider) == 2:
            result.append(FeedProvider(provider[0], provider[1]))
        else:
            raise ValidationError("providers", f"unsupported provider entry {provider!r}")
    return result


class PriceOracle:
    """Main orchestrator for aggregated price feeds.

    :ivar fetchers: Source adapters by provider name.
    :ivar feeds: Configured feeds by id.
    :ivar cycle_workers: Number of concurrent feed cycles.
    :ivar delivery_workers: Number of concurrent notification deliveries.
    """

    def __init__(
        self,
        sources: list[str] | None = None,
        fetchers: dict[str, BaseFetcher] | None = None,
        api_keys: dict[str, str] | None = None,
        notifiers: dict[DeliveryMethod, BaseNotifier] | None = None,
        fetch_timeout: float = BaseFetcher.DEFAULT_TIMEOUT,
        rate_limit_per_minute: float | None = None,
        min_sources: int = 2,
        cycle_workers: int = 4,
        delivery_workers: int = 2,
        scheduler_batch_size: int = 10,
        tick_interval: float = 1.0,
        cache_ttl: float = QuoteCache.DEFAULT_TTL_SECONDS,
        retention_days: int = DEFAULT_RETENTION_DAYS,
        task_retention_days: int = DEFAULT_CLEANUP_DAYS,
        maintenance_interval: float = 3600.0,
        clock: Clock = utc_now,
    ) -> None:
        """Initialize the oracle and all its components.

        :param sources: Provider names to instantiate from the fetcher registry.
        :param fetchers: Pre-built fetchers (used instead of ``sources``).
        :param api_keys: Dict mapping provider names to API keys.
        :param notifiers: Notifier per delivery method (default: all registered).
        :param fetch_timeout: Per-provider deadline in seconds (default: 10).
        :param rate_limit_per_minute: Override of every provider's rate limit.
        :param min_sources: Default minimum sources for new feeds (default: 2).
        :param cycle_workers: Concurrent feed cycles (default: 4).
        :param delivery_workers: Concurrent notification deliveries (default: 2).
        :param scheduler_batch_size: Feeds claimed per scheduler tick (default: 10).
        :param tick_interval: Seconds between scheduler ticks (default: 1).
        :param cache_ttl: Seconds after which a cached price is stale (default: 300).
        :param retention_days: Raw history retention in days (default: 30).
        :param task_retention_days: Finished task retention in days (default: 7).
        :param maintenance_interval: Seconds between maintenance runs (default: 3600).
        :param clock: Source of the current UTC time.
        :raises ValueError: If sources are unknown or worker counts invalid.
        """
        if cycle_workers < 1 or delivery_workers < 1:
            raise ValueError("worker counts must be at least 1")
        if scheduler_batch_size < 1:
            raise ValueError("scheduler_batch_size must be at least 1")

        self.api_keys = api_keys or {}
        if fetchers is None:
            sources = sources or []
            available = get_available_fetchers()
            invalid = [s for s in sources if s not in available]
            if invalid:
                raise ValueError(f"Unknown sources: {invalid}. Available: {available}")
            fetchers = {
                source: get_fetcher(
                    source,
                    api_key=self.api_keys.get(source),
                    timeout=fetch_timeout,
                    rate_limit_per_minute=rate_limit_per_minute,
                )
                for source in sources
            }
        self.fetchers = fetchers

        if notifiers is None:
            hub = ConnectionHub()
            notifiers = {
                DeliveryMethod.WEBHOOK: get_notifier(DeliveryMethod.WEBHOOK),
                DeliveryMethod.WEBSOCKET: get_notifier(DeliveryMethod.WEBSOCKET, hub=hub),
                DeliveryMethod.SSE: get_notifier(DeliveryMethod.SSE, hub=hub),
            }

        self.min_sources = min_sources
        self.cycle_workers = cycle_workers
        self.delivery_workers = delivery_workers
        self.scheduler_batch_size = scheduler_batch_size
        self.tick_interval = tick_interval
        self.retention_days = retention_days
        self.task_retention_days = task_retention_days
        self.maintenance_interval = maintenance_interval
        self._clock = clock

        self.source_manager = SourceManager(list(self.fetchers))
        self.coordinator = FetchCoordinator(self.fetchers, self.source_manager)
        self.aggregator = PriceAggregator(min_sources=min_sources, clock=clock)
        self.cache = QuoteCache(ttl_seconds=cache_ttl, clock=clock)
        self.history = HistoricalStore(clock=clock)
        self.scheduler = FeedScheduler(clock=clock)
        self.dispatcher = NotificationDispatcher(notifiers, clock=clock)
        self.observer = FeedObserver(
            self.coordinator,
            self.aggregator,
            self.cache,
            self.history,
            self.scheduler,
            self.dispatcher,
            clock=clock,
        )

        self.feeds: dict[str, Feed] = {}
        self._cycles_succeeded = 0
        self._cycles_failed = 0

        logger.info(
            f"PriceOracle initialized: sources={list(self.fetchers)}, "
            f"cycle_workers={cycle_workers}, delivery_workers={delivery_workers}"
        )

    # Feed configuration

    def _check_providers(self, feed: Feed) -> None:
        unknown = [p for p in feed.provider_ids if p not in self.fetchers]
        if unknown:
            raise ValidationError(
                "providers", f"unknown provider(s) {unknown}; configured: {sorted(self.fetchers)}"
            )

    def _check_unique_pair(self, feed: Feed) -> None:
        for other in self.feeds.values():
            if other.feed_id != feed.feed_id and other.pair == feed.pair:
                raise ValidationError("asset_id", f"a feed for {feed.pair} already exists")

    async def create_feed(
        self,
        asset_id: str,
        currency: str,
        providers: Iterable[Any],
        update_interval: int = 60,
        aggregation_method: AggregationMethod | str = AggregationMethod.WEIGHTED_AVERAGE,
        deviation_threshold: Decimal | str | float = Decimal(10),
        min_sources: int | None = None,
        max_consecutive_failures: int | None = None,
        name: str = "",
        description: str | None = None,
    ) -> Feed:
        """Create and schedule a feed (due immediately).

        :raises ValidationError: If the configuration is malformed, a provider
            is unknown or a feed for the pair already exists.
        """
        feed = Feed(
            asset_id=asset_id,
            currency=currency,
            providers=_as_providers(providers),
            update_interval=update_interval,
            aggregation_method=aggregation_method,
            deviation_threshold=deviation_threshold,
            min_sources=min_sources if min_sources is not None else self.min_sources,
            max_consecutive_failures=max_consecutive_failures,
            name=name,
            description=description,
            created_at=self._clock(),
            updated_at=self._clock(),
        )
        feed.validate()
        self._check_providers(feed)
        self._check_unique_pair(feed)

        self.feeds[feed.feed_id] = feed
        await self.scheduler.register(feed)
        logger.info(
            f"{feed.pair}: feed {feed.feed_id} created "
            f"(providers={feed.provider_ids}, every {feed.update_interval}s)"
        )
        return feed

    async def update_feed(self, feed_id: str, **changes: Any) -> Feed:
        """Change feed settings; the new config applies from the next cycle.

        :raises FeedNotFoundError: If the feed is unknown.
        :raises ValidationError: On unknown fields or invalid values.
        """
        current = self.get_feed(feed_id)
        unknown = set(changes) - UPDATABLE_FEED_FIELDS
        if unknown:
            raise ValidationError(sorted(unknown)[0], "field cannot be updated")
        if "providers" in changes:
            changes["providers"] = _as_providers(changes["providers"])
        else:
            changes["providers"] = [replace(p) for p in current.providers]

        updated = replace(current, **changes, updated_at=self._clock())
        updated.validate()
        self._check_providers(updated)

        self.feeds[feed_id] = updated
        await self.scheduler.register(updated)
        logger.info(f"{updated.pair}: feed {feed_id} updated ({', '.join(sorted(changes))})")
        return updated

    async def delete_feed(self, feed_id: str) -> None:
        """Delete a feed and deactivate its subscriptions.

        History is kept.

        :raises FeedNotFoundError: If the feed is unknown.
        """
        feed = self.get_feed(feed_id)
        await self.scheduler.remove(feed_id)
        del self.feeds[feed_id]
        for subscription in self.dispatcher.subscriptions_for_feed(feed_id):
            await self.dispatcher.deactivate_subscription(subscription.subscription_id)
        logger.info(f"{feed.pair}: feed {feed_id} deleted")

    def get_feed(self, feed_id: str) -> Feed:
        """:raises FeedNotFoundError: If the feed is unknown."""
        try:
            return self.feeds[feed_id]
        except KeyError:
            raise FeedNotFoundError(feed_id) from None

    def list_feeds(self, active_only: bool = False) -> list[Feed]:
        return [f for f in self.feeds.values() if f.is_active or not active_only]

    def find_feed(self, asset_id: str, currency: str) -> Feed | None:
        pair = AssetPair(asset_id, currency)
        for feed in self.feeds.values():
            if feed.pair == pair:
                return feed
        return None

    async def pause_feed(self, feed_id: str, reason: str = "Paused by operator") -> None:
        self.get_feed(feed_id)
        await self.scheduler.pause(feed_id, reason)

    async def resume_feed(self, feed_id: str) -> None:
        """Clear a pause; subscribers get a feed_status "active" notification."""
        feed = self.get_feed(feed_id)
        was_paused = self.scheduler.is_paused(feed_id)
        schedule = await self.scheduler.resume(feed_id)
        if was_paused:
            await self.observer.notify_status(feed, ScheduleUpdate(schedule, resumed_now=True))

    async def trigger_update(self, feed_id: str) -> AggregationResult | None:
        """Run a cycle now, even if the feed is paused or not yet due.

        :returns: The cycle's result, or None if a cycle is already running.
        """
        feed = self.get_feed(feed_id)
        if not await self.scheduler.claim(feed_id):
            return None
        return await self._run_feed(feed)

    # Read API

    def get_price(self, asset_id: str, currency: str) -> PriceReading:
        """Latest price of a pair, cache first, then history.

        ``is_stale`` is set when the pair's feed is paused, the cached entry
        expired, or the value comes from history.

        :raises ValidationError: If the symbols are malformed.
        :raises PriceNotFoundError: If no price was ever produced.
        """
        try:
            pair = AssetPair(asset_id, currency)
        except ValueError as e:
            raise ValidationError("asset_id", str(e)) from e

        feed = self.find_feed(pair.asset_id, pair.currency)
        paused = feed is not None and self.scheduler.is_paused(feed.feed_id)

        entry = self.cache.get_price(pair)
        if entry is not None:
            return PriceReading(
                price=entry.value,
                is_stale=entry.is_expired or paused,
                origin="cache",
                age_seconds=entry.age_seconds,
            )

        latest = self.history.latest_aggregation(pair.asset_id, pair.currency)
        if latest is None:
            raise PriceNotFoundError(pair.asset_id, pair.currency)
        age = max(0.0, (self._clock() - latest.created_at).total_seconds())
        return PriceReading(price=latest, is_stale=True, origin="history", age_seconds=age)

    def get_prices(self, pairs: Iterable[tuple[str, str]]) -> dict[str, PriceReading]:
        """Batch read; pairs without any price are left out."""
        readings = {}
        for asset_id, currency in pairs:
            try:
                reading = self.get_price(asset_id, currency)
            except PriceNotFoundError:
                continue
            readings[str(reading.price.pair)] = reading
        return readings

    def get_price_history(
        self,
        asset_id: str,
        currency: str,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int = 100,
    ) -> list[AggregatedPrice]:
        """Aggregated prices of a pair, newest first.

        :raises ValidationError: On malformed symbols, limit or range.
        """
        if not 1 <= limit <= MAX_HISTORY_LIMIT:
            raise ValidationError("limit", f"must be between 1 and {MAX_HISTORY_LIMIT}")
        if start is not None and end is not None and start > end:
            raise ValidationError("start", "must not be after end")
        try:
            pair = AssetPair(asset_id, currency)
        except ValueError as e:
            raise ValidationError("asset_id", str(e)) from e
        return self.history.get_aggregations(pair.asset_id, pair.currency, start, end, limit)

    # Subscriptions

    async def subscribe(
        self,
        feed_id: str,
        delivery_method: DeliveryMethod | str,
        endpoint: str | None = None,
        filters: SubscriptionFilters | dict[str, Any] | None = None,
        subscriber_id: str = "anonymous",
        secret: str | None = None,
        timeout: float = 30.0,
        max_retries: int = 3,
    ) -> str:
        """Subscribe to a feed's notifications.

        :returns: The new subscription id.
        :raises FeedNotFoundError: If the feed is unknown.
        :raises ValidationError: If the subscription is malformed.
        """
        self.get_feed(feed_id)
        if not isinstance(filters, SubscriptionFilters):
            filters = SubscriptionFilters.from_dict(filters)
        subscription = Subscription(
            feed_id=feed_id,
            subscriber_id=subscriber_id,
            delivery_method=delivery_method,
            endpoint=endpoint,
            secret=secret,
            timeout=timeout,
            filters=filters,
            retry_policy=RetryPolicy(max_retries=max_retries),
            created_at=self._clock(),
        )
        subscription.validate()
        if subscription.delivery_method not in self.dispatcher.notifiers:
            raise ValidationError(
                "delivery_method", f"{subscription.delivery_method.value} is not enabled"
            )
        self.dispatcher.add_subscription(subscription)
        logger.info(
            f"Subscription {subscription.subscription_id} to feed {feed_id} "
            f"via {subscription.delivery_method.value}"
        )
        return subscription.subscription_id

    async def unsubscribe(self, subscription_id: str) -> None:
        """Deactivate a subscription (kept for history) and cancel its pending tasks.

        :raises SubscriptionNotFoundError: If the id is unknown.
        """
        cancelled = await self.dispatcher.deactivate_subscription(subscription_id)
        logger.info(f"Subscription {subscription_id} deactivated ({cancelled} task(s) cancelled)")

    def get_subscription(self, subscription_id: str) -> Subscription:
        return self.dispatcher.get_subscription(subscription_id)

    # Observability

    def _source_reliability(self, feed: Feed) -> Decimal | None:
        rates = [
            Decimal(str(round(status.success_rate, 4)))
            for p in feed.provider_ids
            if (status := self.source_manager.get_source_status(p)) is not None
            and status.total_requests
        ]
        if not rates:
            return None
        return sum(rates, Decimal(0)) / len(rates)

    def feed_quality(self, feed_id: str, since: datetime | None = None):
        """Hourly quality rollups of a feed (see HistoricalStore.feed_quality)."""
        feed = self.get_feed(feed_id)
        reliability = self._source_reliability(feed)
        if reliability is None:
            return self.history.feed_quality(feed_id, since)
        return self.history.feed_quality(feed_id, since, source_reliability=reliability)

    def metrics(self) -> OracleMetrics:
        """Snapshot of provider, feed and queue counters."""
        feeds = {}
        for feed in self.feeds.values():
            schedule = self.scheduler.get(feed.feed_id)
            reliability = self._source_reliability(feed)
            score = (
                self.history.current_quality(feed.feed_id, source_reliability=reliability)
                if reliability is not None
                else self.history.current_quality(feed.feed_id)
            )
            feeds[feed.feed_id] = FeedMetrics(
                feed_id=feed.feed_id,
                pair=str(feed.pair),
                quality_score=score,
                update_count=schedule.update_count,
                consecutive_failures=schedule.consecutive_failures,
                is_paused=schedule.is_paused,
                last_update_at=schedule.last_update_at,
            )

        history = self.dispatcher.history()
        return OracleMetrics(
            collected_at=self._clock(),
            providers=self.source_manager.get_all_health(),
            feeds=feeds,
            queue_depth=self.dispatcher.queue_depth(),
            cycles_succeeded=self._cycles_succeeded,
            cycles_failed=self._cycles_failed,
            notifications_sent=sum(1 for h in history if h.success),
            notifications_failed=sum(1 for h in history if not h.success),
        )

    def health(self) -> dict[str, Any]:
        """Service health summary.

        ``unhealthy`` when no active feed or no healthy provider exists,
        ``degraded`` when a feed is paused or a provider is unhealthy.
        """
        active = [f for f in self.feeds.values() if f.is_active]
        paused = self.scheduler.paused_feeds()
        healthy = [p for p in self.fetchers if self.source_manager.is_healthy(p)]
        unhealthy = [p for p in self.fetchers if p not in healthy]

        if not active or not healthy:
            status = "unhealthy"
        elif paused or unhealthy:
            status = "degraded"
        else:
            status = "healthy"

        return {
            "status": status,
            "active_feeds": len(active),
            "paused_feeds": paused,
            "healthy_providers": healthy,
            "unhealthy_providers": unhealthy,
            "queue_depth": self.dispatcher.queue_depth(),
            "checked_at": self._clock().isoformat(),
        }

    # Execution

    async def _run_feed(self, feed: Feed) -> AggregationResult | None:
        """Run one claimed cycle; unexpected errors fail the cycle, not the worker."""
        try:
            result = await self.observer.run_cycle(feed)
        except Exception:
            logger.exception(f"{feed.pair}: cycle crashed")
            self._cycles_failed += 1
            if feed.feed_id in self.feeds:
                await self.scheduler.update_schedule(feed.feed_id, success=False)
            return None
        if result.success:
            self._cycles_succeeded += 1
        else:
            self._cycles_failed += 1
        return result

    async def run_due(self, now: datetime | None = None) -> list[AggregationResult | None]:
        """Claim all due feeds and run their cycles concurrently."""
        feed_ids = await self.scheduler.next_due(now, self.scheduler_batch_size)
        feeds = [self.feeds[f] for f in feed_ids if f in self.feeds]
        return list(await asyncio.gather(*(self._run_feed(f) for f in feeds)))

    async def maintenance(self, now: datetime | None = None) -> dict[str, int]:
        """Prune history and finished tasks, purge expired raw quotes."""
        now = now or self._clock()
        return {
            "history_pruned": self.history.prune(now, self.retention_days),
            "tasks_removed": await self.dispatcher.cleanup(now, self.task_retention_days),
            "quotes_expired": self.cache.purge_expired(),
        }

    async def _cycle_worker(self, queue: asyncio.Queue, stop: asyncio.Event, index: int) -> None:
        while not stop.is_set():
            feed_id = await queue.get()
            try:
                feed = self.feeds.get(feed_id)
                if feed is not None:
                    await self._run_feed(feed)
            finally:
                queue.task_done()
        logger.debug(f"cycle worker {index} stopped")

    async def _ticker(self, queue: asyncio.Queue, stop: asyncio.Event) -> None:
        while not stop.is_set():
            for feed_id in await self.scheduler.next_due(batch_size=self.scheduler_batch_size):
                await queue.put(feed_id)
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.tick_interval)
            except asyncio.TimeoutError:
                pass

    async def _maintenance_loop(self, stop: asyncio.Event) -> None:
        while not stop.is_set():
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.maintenance_interval)
            except asyncio.TimeoutError:
                stats = await self.maintenance()
                logger.debug(f"Maintenance: {stats}")

    async def run(self, stop: asyncio.Event | None = None) -> None:
        """Run the oracle until ``stop`` is set (or forever).

        Starts the scheduler ticker, the cycle worker pool, the delivery
        worker pool and the maintenance loop.
        """
        stop = stop or asyncio.Event()
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.scheduler_batch_size * 2)

        workers = [
            asyncio.create_task(self._cycle_worker(queue, stop, i), name=f"cycle-{i}")
            for i in range(self.cycle_workers)
        ]
        workers += [
            asyncio.create_task(
                self.dispatcher.run_worker(stop, name=f"delivery-{i}"), name=f"delivery-{i}"
            )
            for i in range(self.delivery_workers)
        ]
        workers.append(asyncio.create_task(self._maintenance_loop(stop), name="maintenance"))

        logger.info(
            f"Starting with {len(self.feeds)} feed(s), {self.cycle_workers} cycle worker(s), "
            f"{self.delivery_workers} delivery worker(s)"
        )
        try:
            await self._ticker(queue, stop)
        finally:
            stop.set()
            for worker in workers:
                worker.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            await self.dispatcher.close()
            # Clean up shared HTTP client
            await BaseFetcher.close_shared_client()
            logger.info("PriceOracle stopped")
