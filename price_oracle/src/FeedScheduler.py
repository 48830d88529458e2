"""FeedScheduler: Schedule store deciding which feeds are due.

Each feed moves through::

    Idle --(next_update_at <= now)--> Due --(claimed)--> Running
    Running --(success)--> Idle
    Running --(failure)--> Idle, or Paused once consecutive failures reach
                            the feed's pause threshold
    Paused --(resume / successful manual cycle)--> Idle

``next_due`` claims the feeds it returns by setting a lease
(``running_until``), so a feed is never handed to two workers at once. The
lease expires on its own if a worker dies without calling
``update_schedule``.

All mutations go through methods guarded by one asyncio.Lock, and every
method takes an optional ``now`` so tests drive time explicitly.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta

from .errors import FeedNotFoundError
from .models import Clock, Feed, FeedSchedule, utc_now

logger = logging.getLogger(__name__)

PAUSE_REASON_FAILURES = "Too many consecutive failures"


@dataclass(frozen=True)
class ScheduleUpdate:
    """Outcome of ``update_schedule``.

    :ivar paused_now: True if this update moved the feed into Paused.
    :ivar resumed_now: True if this update cleared a pause.
    """

    schedule: FeedSchedule
    paused_now: bool = False
    resumed_now: bool = False


class FeedScheduler:
    """In-memory schedule store with atomic claim semantics.

    :ivar lease_seconds: How long a claimed feed stays Running without an update.
    """

    DEFAULT_LEASE_SECONDS = 300

    def __init__(self, lease_seconds: float = DEFAULT_LEASE_SECONDS, clock: Clock = utc_now) -> None:
        if lease_seconds <= 0:
            raise ValueError("lease_seconds must be positive")
        self.lease_seconds = lease_seconds
        self._clock = clock
        self._lock = asyncio.Lock()
        self._feeds: dict[str, Feed] = {}
        self._schedules: dict[str, FeedSchedule] = {}

    def _get(self, feed_id: str) -> FeedSchedule:
        try:
            return self._schedules[feed_id]
        except KeyError:
            raise FeedNotFoundError(feed_id) from None

    async def register(self, feed: Feed, now: datetime | None = None) -> FeedSchedule:
        """Add a feed, due immediately, or refresh the config of a known one.

        :param feed: Validated feed.
        :param now: Current time (defaults to the clock).
        :returns: Copy of the feed's schedule.
        """
        now = now or self._clock()
        async with self._lock:
            self._feeds[feed.feed_id] = feed
            schedule = self._schedules.get(feed.feed_id)
            if schedule is None:
                schedule = FeedSchedule(feed_id=feed.feed_id, next_update_at=now)
                self._schedules[feed.feed_id] = schedule
            return replace(schedule)

    async def remove(self, feed_id: str) -> None:
        """Forget a feed and its schedule."""
        async with self._lock:
            self._get(feed_id)
            del self._schedules[feed_id]
            self._feeds.pop(feed_id, None)

    async def next_due(self, now: datetime | None = None, batch_size: int = 10) -> list[str]:
        """Claim feeds whose update is due.

        Returns unpaused, active feeds with ``next_update_at <= now`` that are
        not already Running, oldest first, at most ``batch_size``. Returned
        feeds are marked Running until ``update_schedule`` is called or the
        lease expires.

        :param now: Current time (defaults to the clock).
        :param batch_size: Maximum number of feeds to claim.
        :returns: Claimed feed ids.
        """
        if batch_size < 1:
            return []
        now = now or self._clock()
        async with self._lock:
            due = [
                s
                for s in self._schedules.values()
                if not s.is_paused
                and s.next_update_at <= now
                and not s.is_running(now)
                and self._feeds[s.feed_id].is_active
            ]
            due.sort(key=lambda s: s.next_update_at)
            claimed = due[:batch_size]
            lease_until = now + timedelta(seconds=self.lease_seconds)
            for schedule in claimed:
                schedule.running_until = lease_until
            return [s.feed_id for s in claimed]

    async def claim(self, feed_id: str, now: datetime | None = None) -> bool:
        """Claim one feed for a manual cycle, even if paused or not yet due.

        :returns: False if the feed is already Running.
        """
        now = now or self._clock()
        async with self._lock:
            schedule = self._get(feed_id)
            if schedule.is_running(now):
                return False
            schedule.running_until = now + timedelta(seconds=self.lease_seconds)
            return True

    async def update_schedule(
        self,
        feed_id: str,
        success: bool,
        explicit_next: datetime | None = None,
        now: datetime | None = None,
    ) -> ScheduleUpdate:
        """Record the outcome of a cycle and compute the next run.

        :param feed_id: Feed that finished a cycle.
        :param success: Whether a price was produced.
        :param explicit_next: Override of the next update time.
        :param now: Current time (defaults to the clock).
        :returns: ScheduleUpdate with a copy of the new schedule.
        :raises FeedNotFoundError: If the feed is unknown.
        """
        now = now or self._clock()
        async with self._lock:
            schedule = self._get(feed_id)
            feed = self._feeds[feed_id]

            schedule.last_update_at = now
            schedule.next_update_at = explicit_next or now + timedelta(seconds=feed.update_interval)
            schedule.update_count += 1
            schedule.running_until = None

            paused_now = resumed_now = False
            if success:
                resumed_now = schedule.is_paused
                schedule.consecutive_failures = 0
                schedule.is_paused = False
                schedule.pause_reason = None
            else:
                schedule.consecutive_failures += 1
                if (
                    not schedule.is_paused
                    and schedule.consecutive_failures >= feed.pause_threshold
                ):
                    schedule.is_paused = True
                    schedule.pause_reason = PAUSE_REASON_FAILURES
                    paused_now = True

            if paused_now:
                logger.error(
                    f"{feed.pair}: paused after {schedule.consecutive_failures} "
                    "consecutive failures"
                )
            elif resumed_now:
                logger.info(f"{feed.pair}: resumed after successful update")

            return ScheduleUpdate(replace(schedule), paused_now, resumed_now)

    async def pause(self, feed_id: str, reason: str) -> FeedSchedule:
        """Pause a feed manually."""
        async with self._lock:
            schedule = self._get(feed_id)
            schedule.is_paused = True
            schedule.pause_reason = reason
            logger.info(f"{self._feeds[feed_id].pair}: paused ({reason})")
            return replace(schedule)

    async def resume(self, feed_id: str, now: datetime | None = None) -> FeedSchedule:
        """Clear a pause and make the feed due immediately.

        The failure counter is reset so the feed gets a full set of attempts.
        """
        now = now or self._clock()
        async with self._lock:
            schedule = self._get(feed_id)
            schedule.is_paused = False
            schedule.pause_reason = None
            schedule.consecutive_failures = 0
            schedule.next_update_at = now
            logger.info(f"{self._feeds[feed_id].pair}: resumed")
            return replace(schedule)

    def get(self, feed_id: str) -> FeedSchedule:
        """Copy of one feed's schedule.

        :raises FeedNotFoundError: If the feed is unknown.
        """
        return replace(self._get(feed_id))

    def is_paused(self, feed_id: str) -> bool:
        schedule = self._schedules.get(feed_id)
        return schedule is not None and schedule.is_paused

    def all(self) -> list[FeedSchedule]:
        return [replace(s) for s in self._schedules.values()]

    def paused_feeds(self) -> list[str]:
        return [s.feed_id for s in self._schedules.values() if s.is_paused]
