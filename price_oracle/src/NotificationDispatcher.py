"""NotificationDispatcher: Durable-style delivery queue with retries.

Tasks are claimed in ``(priority, created_at)`` order. A claim atomically
moves a task from ``pending`` to ``processing`` under the store lock, so two
workers never deliver the same task. A delivery outcome is applied with
``complete``:

- success: ``sent``, subscription counters updated, failure streak reset
- failure with retries left: ``retry_count += 1`` and
  ``retry_after = now + 2 ** retry_count minutes`` (2, 4, 8, ...), back to
  ``pending``
- failure without retries left: terminal ``failed``, failure streak incremented

Every attempt appends a NotificationHistory record.

.. code-block:: python

    dispatcher = NotificationDispatcher({DeliveryMethod.WEBHOOK: WebhookNotifier()})
    dispatcher.add_subscription(subscription)
    await dispatcher.enqueue(subscription.subscription_id, feed_id,
                             NotificationType.PRICE_UPDATE, payload)
    await dispatcher.process_once()
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from collections import Counter
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

from .errors import DeliveryError, SubscriptionNotFoundError, ValidationError
from .models import (
    TERMINAL_STATUSES,
    Clock,
    DeliveryMethod,
    NotificationHistory,
    NotificationTask,
    NotificationType,
    Subscription,
    TaskStatus,
    to_decimal,
    utc_now,
)
from .notifiers.base import BaseNotifier

logger = logging.getLogger(__name__)

DEFAULT_PRIORITY = 5
MIN_PRIORITY = 1
MAX_PRIORITY = 10
DEFAULT_CLEANUP_DAYS = 7


def retry_delay(retry_count: int) -> timedelta:
    """Backoff before attempt ``retry_count + 1``: 2^retry_count minutes."""
    return timedelta(minutes=2**retry_count)


class NotificationDispatcher:
    """Queue, retry bookkeeping and delivery workers for notifications.

    :ivar notifiers: Notifier per delivery method.
    :ivar subscriptions: Subscriptions by id (soft-deleted ones included).
    """

    def __init__(
        self,
        notifiers: dict[DeliveryMethod, BaseNotifier],
        clock: Clock = utc_now,
    ) -> None:
        self.notifiers = notifiers
        self.subscriptions: dict[str, Subscription] = {}
        self._clock = clock
        self._lock = asyncio.Lock()
        self._tasks: dict[str, NotificationTask] = {}
        self._history: list[NotificationHistory] = []
        self._sequence = itertools.count()

    # Subscriptions

    def add_subscription(self, subscription: Subscription) -> None:
        self.subscriptions[subscription.subscription_id] = subscription

    def get_subscription(self, subscription_id: str) -> Subscription:
        """:raises SubscriptionNotFoundError: If the id is unknown."""
        try:
            return self.subscriptions[subscription_id]
        except KeyError:
            raise SubscriptionNotFoundError(subscription_id) from None

    def subscriptions_for_feed(self, feed_id: str) -> list[Subscription]:
        """Active subscriptions of a feed."""
        return [
            s for s in self.subscriptions.values() if s.feed_id == feed_id and s.is_active
        ]

    async def deactivate_subscription(self, subscription_id: str) -> int:
        """Soft-delete a subscription and cancel its pending tasks.

        :returns: Number of tasks cancelled.
        """
        subscription = self.get_subscription(subscription_id)
        subscription.is_active = False
        async with self._lock:
            cancelled = 0
            now = self._clock()
            for task in self._tasks.values():
                if task.subscription_id == subscription_id and task.status is TaskStatus.PENDING:
                    task.status = TaskStatus.CANCELLED
                    task.updated_at = now
                    cancelled += 1
        return cancelled

    # Queue

    async def enqueue(
        self,
        subscription_id: str,
        feed_id: str,
        notification_type: NotificationType,
        payload: dict[str, Any],
        priority: int = DEFAULT_PRIORITY,
        max_retries: int | None = None,
    ) -> str:
        """Add a pending task.

        :param subscription_id: Target subscription.
        :param feed_id: Feed that produced the event.
        :param notification_type: Kind of event.
        :param payload: JSON-compatible event data.
        :param priority: 1 (most urgent) to 10.
        :param max_retries: Override of the subscription's retry policy.
        :returns: The new task id.
        :raises ValidationError: If priority is out of range.
        :raises SubscriptionNotFoundError: If the subscription is unknown.
        """
        if not MIN_PRIORITY <= priority <= MAX_PRIORITY:
            raise ValidationError("priority", f"must be between {MIN_PRIORITY} and {MAX_PRIORITY}")
        subscription = self.get_subscription(subscription_id)
        if max_retries is None:
            max_retries = subscription.retry_policy.max_retries

        now = self._clock()
        async with self._lock:
            task = NotificationTask(
                subscription_id=subscription_id,
                feed_id=feed_id,
                notification_type=NotificationType(notification_type),
                payload=payload,
                priority=priority,
                max_retries=max_retries,
                created_at=now,
                updated_at=now,
                sequence=next(self._sequence),
            )
            self._tasks[task.task_id] = task
        logger.debug(
            f"Queued {task.notification_type.value} task {task.task_id} "
            f"for subscription {subscription_id} (priority {priority})"
        )
        return task.task_id

    async def claim(self, batch_size: int = 1, now: datetime | None = None) -> list[NotificationTask]:
        """Atomically claim the most urgent deliverable tasks.

        Skips tasks whose ``retry_after`` is in the future and tasks of
        inactive subscriptions.

        :returns: Claimed tasks, now ``processing``.
        """
        now = now or self._clock()
        async with self._lock:
            ready = [
                t
                for t in self._tasks.values()
                if t.status is TaskStatus.PENDING
                and (t.retry_after is None or t.retry_after <= now)
                and self.subscriptions.get(t.subscription_id) is not None
                and self.subscriptions[t.subscription_id].is_active
            ]
            ready.sort(key=lambda t: t.sort_key)
            claimed = ready[:batch_size]
            for task in claimed:
                task.status = TaskStatus.PROCESSING
                task.updated_at = now
            return claimed

    async def complete(
        self,
        task_id: str,
        success: bool,
        response_status: int | None = None,
        response_time_ms: int | None = None,
        error_message: str | None = None,
        now: datetime | None = None,
    ) -> NotificationTask:
        """Apply the outcome of one delivery attempt.

        :raises KeyError: If the task id is unknown.
        """
        now = now or self._clock()
        async with self._lock:
            task = self._tasks[task_id]
            if task.status is not TaskStatus.PROCESSING:
                logger.warning(f"Task {task_id} completed while {task.status.value}; ignored")
                return task

            subscription = self.subscriptions.get(task.subscription_id)
            self._history.append(
                NotificationHistory(
                    subscription_id=task.subscription_id,
                    task_id=task.task_id,
                    notification_type=task.notification_type,
                    delivery_method=subscription.delivery_method if subscription else None,
                    endpoint=subscription.endpoint if subscription else None,
                    success=success,
                    attempt=task.retry_count + 1,
                    sent_at=now,
                    response_status=response_status,
                    response_time_ms=response_time_ms,
                    error_message=error_message,
                )
            )
            task.updated_at = now

            if success:
                task.status = TaskStatus.SENT
                task.sent_at = now
                task.error_message = None
                if subscription is not None:
                    subscription.notification_count += 1
                    subscription.failure_count = 0
                    subscription.last_notification_at = now
                    if task.notification_type is NotificationType.PRICE_UPDATE:
                        subscription.last_notified_price = _payload_price(task.payload)
                return task

            task.error_message = error_message
            if task.retry_count < task.max_retries:
                task.retry_count += 1
                task.retry_after = now + retry_delay(task.retry_count)
                task.status = TaskStatus.PENDING
                logger.info(
                    f"Task {task_id} failed ({error_message}); retry {task.retry_count}/"
                    f"{task.max_retries} at {task.retry_after.isoformat()}"
                )
            else:
                task.status = TaskStatus.FAILED
                if subscription is not None:
                    subscription.failure_count += 1
                logger.warning(
                    f"Task {task_id} failed permanently after {task.retry_count + 1} "
                    f"attempts: {error_message}"
                )
            return task

    async def cancel(self, task_id: str) -> bool:
        """Cancel a task that has not reached a terminal status.

        :returns: True if the task was cancelled.
        """
        async with self._lock:
            task = self._tasks.get(task_id)
            if task is None or task.status in TERMINAL_STATUSES:
                return False
            task.status = TaskStatus.CANCELLED
            task.updated_at = self._clock()
            return True

    # Delivery

    async def deliver(self, task: NotificationTask) -> NotificationTask:
        """Send one claimed task through its notifier and record the outcome."""
        subscription = self.subscriptions.get(task.subscription_id)
        notifier = self.notifiers.get(subscription.delivery_method) if subscription else None

        started = time.monotonic()
        status_code: int | None = None
        error: str | None = None
        try:
            if subscription is None:
                raise DeliveryError("subscription not found")
            if notifier is None:
                raise DeliveryError(f"no notifier for {subscription.delivery_method.value}")
            result = await notifier.send(subscription, task)
            status_code = result.status_code
        except DeliveryError as e:
            status_code = e.status_code
            error = str(e)
        except Exception as e:
            logger.exception(f"Task {task.task_id}: unexpected notifier error")
            error = f"unexpected error: {e}"
        elapsed_ms = int((time.monotonic() - started) * 1000)

        return await self.complete(
            task.task_id,
            success=error is None,
            response_status=status_code,
            response_time_ms=elapsed_ms,
            error_message=error,
        )

    async def process_once(self, batch_size: int = 10) -> int:
        """Claim and deliver one batch concurrently.

        :returns: Number of tasks attempted.
        """
        tasks = await self.claim(batch_size)
        if tasks:
            await asyncio.gather(*(self.deliver(t) for t in tasks))
        return len(tasks)

    async def run_worker(
        self,
        stop: asyncio.Event,
        batch_size: int = 1,
        poll_interval: float = 1.0,
        name: str = "delivery",
    ) -> None:
        """Deliver tasks until ``stop`` is set."""
        logger.debug(f"{name} worker started")
        while not stop.is_set():
            if await self.process_once(batch_size):
                continue
            try:
                await asyncio.wait_for(stop.wait(), timeout=poll_interval)
            except asyncio.TimeoutError:
                pass
        logger.debug(f"{name} worker stopped")

    # Maintenance and introspection

    async def cleanup(self, now: datetime | None = None, retention_days: int = DEFAULT_CLEANUP_DAYS) -> int:
        """Remove terminal tasks last updated before the retention window.

        History records are kept.

        :returns: Number of tasks removed.
        """
        now = now or self._clock()
        cutoff = now - timedelta(days=retention_days)
        async with self._lock:
            expired = [
                task_id
                for task_id, t in self._tasks.items()
                if t.status in TERMINAL_STATUSES and t.updated_at < cutoff
            ]
            for task_id in expired:
                del self._tasks[task_id]
        if expired:
            logger.info(f"Removed {len(expired)} finished notification tasks")
        return len(expired)

    def queue_depth(self) -> dict[str, int]:
        """Task counts by status (every status present, zero if empty)."""
        counts = Counter(t.status for t in self._tasks.values())
        return {status.value: counts.get(status, 0) for status in TaskStatus}

    def get_task(self, task_id: str) -> NotificationTask | None:
        return self._tasks.get(task_id)

    def tasks(self, subscription_id: str | None = None) -> list[NotificationTask]:
        return [
            t
            for t in self._tasks.values()
            if subscription_id is None or t.subscription_id == subscription_id
        ]

    def history(self, subscription_id: str | None = None) -> list[NotificationHistory]:
        return [
            h for h in self._history if subscription_id is None or h.subscription_id == subscription_id
        ]

    async def close(self) -> None:
        for notifier in self.notifiers.values():
            await notifier.close()


def _payload_price(payload: dict[str, Any]) -> Decimal | None:
    try:
        return to_decimal(payload["price"])
    except (KeyError, ValueError):
        return None
