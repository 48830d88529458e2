"""Unit tests for FeedScheduler."""

from datetime import timedelta

import pytest

from price_oracle.src.errors import FeedNotFoundError
from price_oracle.src.FeedScheduler import PAUSE_REASON_FAILURES, FeedScheduler
from price_oracle.src.models import Feed, FeedProvider


def make_feed(asset_id: str = "btc", interval: int = 60, **kwargs) -> Feed:
    feed = Feed(
        asset_id=asset_id,
        currency="usd",
        providers=[FeedProvider("alpha"), FeedProvider("beta")],
        update_interval=interval,
        **kwargs,
    )
    feed.validate()
    return feed


class TestNextDue:
    """Test due-feed selection and claiming."""

    async def test_new_feed_is_due_immediately(self, clock) -> None:
        scheduler = FeedScheduler(clock=clock)
        feed = make_feed()
        await scheduler.register(feed)

        assert await scheduler.next_due() == [feed.feed_id]

    async def test_claimed_feed_not_returned_twice(self, clock) -> None:
        """A claimed feed stays Running until its schedule is updated."""
        scheduler = FeedScheduler(clock=clock)
        feed = make_feed()
        await scheduler.register(feed)

        assert await scheduler.next_due() == [feed.feed_id]
        assert await scheduler.next_due() == []

    async def test_lease_expires(self, clock) -> None:
        """A crashed worker's claim lapses after the lease."""
        scheduler = FeedScheduler(lease_seconds=30, clock=clock)
        feed = make_feed()
        await scheduler.register(feed)
        await scheduler.next_due()

        clock.advance(31)
        assert await scheduler.next_due() == [feed.feed_id]

    async def test_oldest_first_and_batch_size(self, clock) -> None:
        scheduler = FeedScheduler(clock=clock)
        first = make_feed("btc")
        await scheduler.register(first)
        clock.advance(1)
        second = make_feed("eth")
        await scheduler.register(second)
        clock.advance(1)
        third = make_feed("sol")
        await scheduler.register(third)

        assert await scheduler.next_due(batch_size=2) == [first.feed_id, second.feed_id]
        assert await scheduler.next_due(batch_size=2) == [third.feed_id]

    async def test_not_due_before_interval(self, clock) -> None:
        scheduler = FeedScheduler(clock=clock)
        feed = make_feed(interval=60)
        await scheduler.register(feed)
        await scheduler.next_due()
        await scheduler.update_schedule(feed.feed_id, success=True)

        clock.advance(59)
        assert await scheduler.next_due() == []
        clock.advance(1)
        assert await scheduler.next_due() == [feed.feed_id]

    async def test_inactive_feed_skipped(self, clock) -> None:
        scheduler = FeedScheduler(clock=clock)
        feed = make_feed(is_active=False)
        await scheduler.register(feed)

        assert await scheduler.next_due() == []

    async def test_zero_batch(self, clock) -> None:
        scheduler = FeedScheduler(clock=clock)
        await scheduler.register(make_feed())
        assert await scheduler.next_due(batch_size=0) == []


class TestUpdateSchedule:
    """Test outcome bookkeeping and pausing."""

    async def test_success_resets_failures(self, clock) -> None:
        scheduler = FeedScheduler(clock=clock)
        feed = make_feed()
        await scheduler.register(feed)

        await scheduler.update_schedule(feed.feed_id, success=False)
        await scheduler.update_schedule(feed.feed_id, success=False)
        update = await scheduler.update_schedule(feed.feed_id, success=True)

        assert update.schedule.consecutive_failures == 0
        assert update.schedule.update_count == 3
        assert update.schedule.last_update_at == clock.now
        assert update.schedule.next_update_at == clock.now + timedelta(seconds=60)

    async def test_pauses_after_threshold(self, clock) -> None:
        """Five consecutive failures pause the feed (default threshold)."""
        scheduler = FeedScheduler(clock=clock)
        feed = make_feed()
        await scheduler.register(feed)

        for _ in range(4):
            update = await scheduler.update_schedule(feed.feed_id, success=False)
            assert not update.paused_now
        update = await scheduler.update_schedule(feed.feed_id, success=False)

        assert update.paused_now
        assert update.schedule.is_paused
        assert update.schedule.pause_reason == PAUSE_REASON_FAILURES
        assert scheduler.paused_feeds() == [feed.feed_id]

    async def test_paused_feed_never_due(self, clock) -> None:
        scheduler = FeedScheduler(clock=clock)
        feed = make_feed(max_consecutive_failures=1)
        await scheduler.register(feed)
        await scheduler.update_schedule(feed.feed_id, success=False)

        clock.advance(3600)
        assert await scheduler.next_due() == []

    async def test_per_feed_threshold(self, clock) -> None:
        scheduler = FeedScheduler(clock=clock)
        feed = make_feed(max_consecutive_failures=2)
        await scheduler.register(feed)

        await scheduler.update_schedule(feed.feed_id, success=False)
        update = await scheduler.update_schedule(feed.feed_id, success=False)
        assert update.paused_now

    async def test_pause_reported_once(self, clock) -> None:
        """Further failures of a paused feed do not re-report the pause."""
        scheduler = FeedScheduler(clock=clock)
        feed = make_feed(max_consecutive_failures=1)
        await scheduler.register(feed)

        assert (await scheduler.update_schedule(feed.feed_id, success=False)).paused_now
        assert not (await scheduler.update_schedule(feed.feed_id, success=False)).paused_now

    async def test_success_clears_pause(self, clock) -> None:
        scheduler = FeedScheduler(clock=clock)
        feed = make_feed(max_consecutive_failures=1)
        await scheduler.register(feed)
        await scheduler.update_schedule(feed.feed_id, success=False)

        update = await scheduler.update_schedule(feed.feed_id, success=True)
        assert update.resumed_now
        assert not scheduler.is_paused(feed.feed_id)

    async def test_explicit_next(self, clock) -> None:
        scheduler = FeedScheduler(clock=clock)
        feed = make_feed()
        await scheduler.register(feed)
        target = clock.now + timedelta(seconds=5)

        update = await scheduler.update_schedule(feed.feed_id, success=True, explicit_next=target)
        assert update.schedule.next_update_at == target

    async def test_unknown_feed(self, clock) -> None:
        scheduler = FeedScheduler(clock=clock)
        with pytest.raises(FeedNotFoundError):
            await scheduler.update_schedule("nope", success=True)


class TestManualControl:
    """Test pause, resume and manual claims."""

    async def test_resume_makes_due_now(self, clock) -> None:
        scheduler = FeedScheduler(clock=clock)
        feed = make_feed(max_consecutive_failures=1)
        await scheduler.register(feed)
        await scheduler.next_due()
        await scheduler.update_schedule(feed.feed_id, success=False)

        schedule = await scheduler.resume(feed.feed_id)
        assert not schedule.is_paused
        assert schedule.consecutive_failures == 0
        assert await scheduler.next_due() == [feed.feed_id]

    async def test_manual_pause(self, clock) -> None:
        scheduler = FeedScheduler(clock=clock)
        feed = make_feed()
        await scheduler.register(feed)

        schedule = await scheduler.pause(feed.feed_id, "maintenance")
        assert schedule.pause_reason == "maintenance"
        assert await scheduler.next_due() == []

    async def test_claim_paused_feed(self, clock) -> None:
        """Manual claims work on paused feeds but not on running ones."""
        scheduler = FeedScheduler(clock=clock)
        feed = make_feed()
        await scheduler.register(feed)
        await scheduler.pause(feed.feed_id, "maintenance")

        assert await scheduler.claim(feed.feed_id)
        assert not await scheduler.claim(feed.feed_id)

    async def test_remove(self, clock) -> None:
        scheduler = FeedScheduler(clock=clock)
        feed = make_feed()
        await scheduler.register(feed)
        await scheduler.remove(feed.feed_id)

        assert scheduler.all() == []
        with pytest.raises(FeedNotFoundError):
            scheduler.get(feed.feed_id)

    async def test_get_returns_copy(self, clock) -> None:
        scheduler = FeedScheduler(clock=clock)
        feed = make_feed()
        await scheduler.register(feed)

        scheduler.get(feed.feed_id).is_paused = True
        assert not scheduler.is_paused(feed.feed_id)

    def test_invalid_lease(self) -> None:
        with pytest.raises(ValueError, match="lease_seconds must be positive"):
            FeedScheduler(lease_seconds=0)
