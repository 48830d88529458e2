"""Push notifiers for connected clients (WebSocket and Server-Sent Events).

The transport endpoints live outside this service; they register a queue per
subscription on the shared :class:`ConnectionHub` and drain it to the socket.
A delivery fails (and is retried by the dispatcher) when the subscriber has
no open connection or its backlog is full.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict

from ..errors import DeliveryError
from ..models import DeliveryMethod, NotificationTask, Subscription
from .base import BaseNotifier, DeliveryResult, build_envelope, encode_envelope, register_notifier

logger = logging.getLogger(__name__)


class ConnectionHub:
    """Per-subscription fan-out of messages to connected clients.

    :ivar max_backlog: Maximum queued messages per connection.
    """

    DEFAULT_MAX_BACKLOG = 100

    def __init__(self, max_backlog: int = DEFAULT_MAX_BACKLOG) -> None:
        self.max_backlog = max_backlog
        self._connections: dict[str, set[asyncio.Queue]] = defaultdict(set)

    def connect(self, subscription_id: str) -> asyncio.Queue:
        """Open a connection and return the queue to drain."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.max_backlog)
        self._connections[subscription_id].add(queue)
        return queue

    def disconnect(self, subscription_id: str, queue: asyncio.Queue) -> None:
        connections = self._connections.get(subscription_id)
        if connections is None:
            return
        connections.discard(queue)
        if not connections:
            del self._connections[subscription_id]

    def connection_count(self, subscription_id: str) -> int:
        return len(self._connections.get(subscription_id, ()))

    def publish(self, subscription_id: str, message: str) -> int:
        """Queue a message on every connection of a subscription.

        :returns: Number of connections that accepted the message.
        :raises DeliveryError: If none did.
        """
        connections = self._connections.get(subscription_id)
        if not connections:
            raise DeliveryError("subscriber not connected")
        delivered = 0
        for queue in list(connections):
            try:
                queue.put_nowait(message)
                delivered += 1
            except asyncio.QueueFull:
                logger.warning(f"Backlog full for subscription {subscription_id}")
        if not delivered:
            raise DeliveryError("subscriber backlog full")
        return delivered


class StreamNotifier(BaseNotifier):
    """Shared logic of the hub-backed notifiers."""

    def __init__(self, hub: ConnectionHub | None = None) -> None:
        self.hub = hub or ConnectionHub()

    def format(self, task: NotificationTask) -> str:
        return encode_envelope(build_envelope(task)).decode()

    async def send(self, subscription: Subscription, task: NotificationTask) -> DeliveryResult:
        delivered = self.hub.publish(subscription.subscription_id, self.format(task))
        return DeliveryResult(detail=f"{delivered} connection(s)")


@register_notifier
class WebSocketNotifier(StreamNotifier):
    """Pushes the JSON envelope as one WebSocket text frame."""

    method = DeliveryMethod.WEBSOCKET


@register_notifier
class SSENotifier(StreamNotifier):
    """Pushes the envelope as a Server-Sent Events message."""

    method = DeliveryMethod.SSE

    def format(self, task: NotificationTask) -> str:
        data = super().format(task)
        return f"id: {task.task_id}\nevent: {task.notification_type.value}\ndata: {data}\n\n"
