"""Base notifier interface and registry.

A notifier performs one delivery attempt of a NotificationTask to one
Subscription. It returns a DeliveryResult on success and raises DeliveryError
on failure; retries, backoff and history are the dispatcher's job.

.. code-block:: python

    @register_notifier
    class PagerNotifier(BaseNotifier):
        method = DeliveryMethod.WEBHOOK

        async def send(self, subscription, task) -> DeliveryResult:
            ...
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, ClassVar

from ..models import DeliveryMethod, NotificationTask, Subscription, utc_now


@dataclass(frozen=True)
class DeliveryResult:
    """Outcome of a successful delivery attempt.

    :ivar status_code: HTTP status for webhooks, None for stream deliveries.
    :ivar detail: Short response excerpt or delivery note.
    """

    status_code: int | None = None
    detail: str | None = None


def build_envelope(task: NotificationTask) -> dict[str, Any]:
    """JSON document sent to subscribers for one task."""
    return {
        "id": task.task_id,
        "subscription_id": task.subscription_id,
        "feed_id": task.feed_id,
        "type": task.notification_type.value,
        "attempt": task.retry_count + 1,
        "sent_at": utc_now().isoformat(),
        "data": task.payload,
    }


def encode_envelope(envelope: dict[str, Any]) -> bytes:
    """Canonical JSON encoding (sorted keys, compact) used for signing."""
    return json.dumps(envelope, sort_keys=True, separators=(",", ":"), default=str).encode()


class BaseNotifier(ABC):
    """Abstract base class for delivery channels.

    :cvar method: Delivery method served by this notifier.
    """

    method: ClassVar[DeliveryMethod | None] = None

    @abstractmethod
    async def send(self, subscription: Subscription, task: NotificationTask) -> DeliveryResult:
        """Deliver one task.

        :param subscription: Target subscription.
        :param task: Task being delivered.
        :returns: DeliveryResult on success.
        :raises DeliveryError: If the attempt failed.
        """
        pass

    async def close(self) -> None:
        """Release resources held by the notifier."""
        pass


NOTIFIER_REGISTRY: dict[DeliveryMethod, type[BaseNotifier]] = {}


def register_notifier(cls: type[BaseNotifier]) -> type[BaseNotifier]:
    """Decorator to register a notifier class by its delivery method.

    :raises ValueError: If the notifier defines no method.
    """
    if cls.method is None:
        raise ValueError(f"Notifier {cls.__name__} must define a 'method' class variable")
    NOTIFIER_REGISTRY[cls.method] = cls
    return cls


def get_notifier(method: DeliveryMethod | str, **kwargs: Any) -> BaseNotifier:
    """Instantiate the notifier registered for a delivery method.

    :raises ValueError: If no notifier serves the method.
    """
    method = DeliveryMethod(method)
    if method not in NOTIFIER_REGISTRY:
        available = ", ".join(sorted(m.value for m in NOTIFIER_REGISTRY))
        raise ValueError(f"No notifier for '{method.value}'. Available: {available}")
    return NOTIFIER_REGISTRY[method](**kwargs)
