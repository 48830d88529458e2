"""Unit tests for FeedObserver cycles and notification rules."""

from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal

import pytest

from price_oracle.src.FeedObserver import (
    PRIORITY_FEED_STATUS,
    PRIORITY_PRICE_UPDATE,
    PRIORITY_THRESHOLD_BREACH,
    FeedObserver,
    passes_filters,
    threshold_crossings,
)
from price_oracle.src.FeedScheduler import FeedScheduler
from price_oracle.src.FetchCoordinator import FetchCoordinator
from price_oracle.src.HistoricalStore import HistoricalStore
from price_oracle.src.models import (
    AggregatedPrice,
    AggregationMethod,
    DeliveryMethod,
    Feed,
    FeedProvider,
    NotificationType,
    Subscription,
    SubscriptionFilters,
)
from price_oracle.src.NotificationDispatcher import NotificationDispatcher
from price_oracle.src.notifiers import ConnectionHub, WebSocketNotifier
from price_oracle.src.PriceAggregator import PriceAggregator
from price_oracle.src.QuoteCache import QuoteCache
from price_oracle.src.SourceManager import SourceManager


@dataclass
class Pipeline:
    observer: FeedObserver
    scheduler: FeedScheduler
    dispatcher: NotificationDispatcher
    cache: QuoteCache
    history: HistoricalStore


@pytest.fixture
def pipeline(clock, static_fetchers) -> Pipeline:
    cache = QuoteCache(clock=clock)
    history = HistoricalStore(clock=clock)
    scheduler = FeedScheduler(clock=clock)
    dispatcher = NotificationDispatcher(
        {DeliveryMethod.WEBSOCKET: WebSocketNotifier(ConnectionHub())}, clock=clock
    )
    observer = FeedObserver(
        FetchCoordinator(static_fetchers, SourceManager(list(static_fetchers))),
        PriceAggregator(clock=clock),
        cache,
        history,
        scheduler,
        dispatcher,
        clock=clock,
    )
    return Pipeline(observer, scheduler, dispatcher, cache, history)


async def make_feed(pipeline: Pipeline, **kwargs) -> Feed:
    feed = Feed(
        asset_id="btc",
        currency="usd",
        providers=[FeedProvider(p) for p in ("alpha", "beta", "gamma")],
        **kwargs,
    )
    feed.validate()
    await pipeline.scheduler.register(feed)
    return feed


def subscribe(pipeline: Pipeline, feed: Feed, **filters) -> Subscription:
    subscription = Subscription(
        feed_id=feed.feed_id,
        subscriber_id="acme",
        delivery_method=DeliveryMethod.WEBSOCKET,
        filters=SubscriptionFilters.from_dict(filters),
    )
    subscription.validate()
    pipeline.dispatcher.add_subscription(subscription)
    return subscription


def tasks_of(pipeline: Pipeline, subscription: Subscription, kind: NotificationType) -> list:
    return [
        t
        for t in pipeline.dispatcher.tasks(subscription.subscription_id)
        if t.notification_type is kind
    ]


def make_price(price: str, confidence: str = "0.95") -> AggregatedPrice:
    return AggregatedPrice(
        asset_id="btc",
        currency="usd",
        price=Decimal(price),
        confidence=Decimal(confidence),
        method=AggregationMethod.MEDIAN,
        source_count=3,
        deviation_percent=Decimal(1),
        outliers_removed=0,
        processing_time=0.0,
    )


class TestFilters:
    """Test price update filters."""

    def make_subscription(self, **filters) -> Subscription:
        return Subscription(
            feed_id="feed-1",
            subscriber_id="acme",
            delivery_method=DeliveryMethod.WEBSOCKET,
            filters=SubscriptionFilters.from_dict(filters),
        )

    def test_no_filters_pass(self, clock) -> None:
        assert passes_filters(self.make_subscription(), make_price("100"), clock.now)

    def test_confidence_threshold(self, clock) -> None:
        subscription = self.make_subscription(confidence_threshold="0.9")
        assert passes_filters(subscription, make_price("100", "0.9"), clock.now)
        assert not passes_filters(subscription, make_price("100", "0.89"), clock.now)

    def test_max_update_frequency(self, clock) -> None:
        subscription = self.make_subscription(max_update_frequency=60)
        subscription.last_notification_at = clock.now - timedelta(seconds=30)
        assert not passes_filters(subscription, make_price("100"), clock.now)

        subscription.last_notification_at = clock.now - timedelta(seconds=60)
        assert passes_filters(subscription, make_price("100"), clock.now)

    def test_min_price_change(self, clock) -> None:
        subscription = self.make_subscription(min_price_change_percent="1")
        subscription.last_notified_price = Decimal("100")
        assert not passes_filters(subscription, make_price("100.5"), clock.now)
        assert passes_filters(subscription, make_price("101"), clock.now)
        assert passes_filters(subscription, make_price("99"), clock.now)

    def test_min_price_change_without_history(self, clock) -> None:
        """The first update always passes the change filter."""
        subscription = self.make_subscription(min_price_change_percent="5")
        assert passes_filters(subscription, make_price("100"), clock.now)


class TestThresholdCrossings:
    def make_subscription(self, **filters) -> Subscription:
        return Subscription(
            feed_id="feed-1",
            subscriber_id="acme",
            delivery_method=DeliveryMethod.WEBSOCKET,
            filters=SubscriptionFilters.from_dict(filters),
        )

    def test_crossing_above(self) -> None:
        subscription = self.make_subscription(price_above="100")
        assert threshold_crossings(subscription, Decimal("101"), Decimal("99")) == [
            ("above", Decimal("100"))
        ]

    def test_staying_above_not_reported(self) -> None:
        subscription = self.make_subscription(price_above="100")
        assert threshold_crossings(subscription, Decimal("102"), Decimal("101")) == []

    def test_first_price_beyond_threshold(self) -> None:
        subscription = self.make_subscription(price_below="50")
        assert threshold_crossings(subscription, Decimal("40"), None) == [
            ("below", Decimal("50"))
        ]

    def test_touching_is_not_crossing(self) -> None:
        subscription = self.make_subscription(price_above="100", price_below="90")
        assert threshold_crossings(subscription, Decimal("100"), Decimal("95")) == []
        assert threshold_crossings(subscription, Decimal("90"), Decimal("95")) == []


class TestRunCycle:
    """Test one full feed cycle."""

    async def test_success_writes_everywhere(self, pipeline) -> None:
        feed = await make_feed(pipeline)
        subscription = subscribe(pipeline, feed)

        result = await pipeline.observer.run_cycle(feed)

        assert result.success
        assert result.price.price == Decimal("101")
        assert result.price.confidence == Decimal("0.95")
        assert pipeline.cache.get_price(feed.pair).value == result.price
        assert len(pipeline.cache.get_quotes(feed.pair)) == 3
        assert pipeline.history.latest_aggregation("btc", "usd") == result.price
        assert len(pipeline.history.get_quotes("btc", "usd")) == 3
        assert pipeline.scheduler.get(feed.feed_id).update_count == 1

        [task] = tasks_of(pipeline, subscription, NotificationType.PRICE_UPDATE)
        assert task.priority == PRIORITY_PRICE_UPDATE
        assert task.payload["feed_id"] == feed.feed_id
        assert Decimal(task.payload["price"]) == Decimal("101")

    async def test_feed_weights_applied(self, pipeline, static_fetchers) -> None:
        feed = await make_feed(pipeline)
        feed.providers[2].weight = Decimal(2)

        result = await pipeline.observer.run_cycle(feed)

        # (100 + 101 + 2 * 102) / 4
        assert result.price.price == Decimal("101.25")

    async def test_partial_failure_still_aggregates(self, pipeline, static_fetchers) -> None:
        static_fetchers["gamma"].fail = True
        feed = await make_feed(pipeline)

        result = await pipeline.observer.run_cycle(feed)

        assert result.success
        assert result.price.sources == ("alpha", "beta")

    async def test_failure_records_and_emits_nothing(self, pipeline, static_fetchers) -> None:
        for fetcher in static_fetchers.values():
            fetcher.fail = True
        feed = await make_feed(pipeline)
        subscription = subscribe(pipeline, feed)

        result = await pipeline.observer.run_cycle(feed)

        assert result.error == "insufficient_sources"
        assert pipeline.cache.get_price(feed.pair) is None
        [update] = pipeline.history.get_updates(feed.feed_id)
        assert update.status == "failed"
        assert update.error_code == "insufficient_sources"
        assert pipeline.scheduler.get(feed.feed_id).consecutive_failures == 1
        assert pipeline.dispatcher.tasks(subscription.subscription_id) == []

    async def test_pause_notifies_feed_status(self, pipeline, static_fetchers) -> None:
        for fetcher in static_fetchers.values():
            fetcher.fail = True
        feed = await make_feed(pipeline, max_consecutive_failures=2)
        subscription = subscribe(pipeline, feed)

        await pipeline.observer.run_cycle(feed)
        assert tasks_of(pipeline, subscription, NotificationType.FEED_STATUS) == []
        await pipeline.observer.run_cycle(feed)

        assert pipeline.scheduler.is_paused(feed.feed_id)
        [task] = tasks_of(pipeline, subscription, NotificationType.FEED_STATUS)
        assert task.priority == PRIORITY_FEED_STATUS
        assert task.payload["status"] == "paused"
        assert task.payload["consecutive_failures"] == 2

    async def test_threshold_breach_once(self, pipeline) -> None:
        """A breach is reported when crossed, not on every later update."""
        feed = await make_feed(pipeline)
        subscription = subscribe(pipeline, feed, price_above="100.5")

        await pipeline.observer.run_cycle(feed)
        await pipeline.observer.run_cycle(feed)

        [breach] = tasks_of(pipeline, subscription, NotificationType.THRESHOLD_BREACH)
        assert breach.priority == PRIORITY_THRESHOLD_BREACH
        assert breach.payload["direction"] == "above"
        assert breach.payload["threshold"] == "100.5"
        assert breach.payload["previous_price"] is None
        assert len(tasks_of(pipeline, subscription, NotificationType.PRICE_UPDATE)) == 2

    async def test_filtered_subscription_gets_no_update(self, pipeline) -> None:
        feed = await make_feed(pipeline)
        strict = subscribe(pipeline, feed, confidence_threshold="0.99")
        relaxed = subscribe(pipeline, feed)

        await pipeline.observer.run_cycle(feed)

        assert tasks_of(pipeline, strict, NotificationType.PRICE_UPDATE) == []
        assert len(tasks_of(pipeline, relaxed, NotificationType.PRICE_UPDATE)) == 1
