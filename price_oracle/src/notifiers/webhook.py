"""Webhook notifier: HTTP POST of the JSON envelope.

When the subscription has a secret, the exact request body is signed with
HMAC-SHA256 and sent as ``X-Oracle-Signature: sha256=<hex>``. Receivers verify
by recomputing the digest over the raw body.
"""

from __future__ import annotations

import hashlib
import hmac
import logging

import httpx

from ..errors import DeliveryError
from ..models import DeliveryMethod, NotificationTask, Subscription
from .base import BaseNotifier, DeliveryResult, build_envelope, encode_envelope, register_notifier

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Oracle-Signature"
USER_AGENT = "price-oracle-webhook/1.0"


def sign(secret: str, body: bytes) -> str:
    """Signature header value for a request body."""
    digest = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def verify(secret: str, body: bytes, signature: str) -> bool:
    return hmac.compare_digest(sign(secret, body), signature)


@register_notifier
class WebhookNotifier(BaseNotifier):
    """POSTs notifications to subscriber URLs.

    :ivar client: HTTP client; created lazily when not injected.
    """

    method = DeliveryMethod.WEBHOOK

    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self._client = client
        self._owns_client = client is None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                limits=httpx.Limits(max_connections=50, max_keepalive_connections=20),
                follow_redirects=False,
            )
            self._owns_client = True
        return self._client

    async def send(self, subscription: Subscription, task: NotificationTask) -> DeliveryResult:
        """POST the task envelope to the subscription endpoint.

        :raises DeliveryError: On network errors, timeouts or non-2xx responses.
        """
        if not subscription.endpoint:
            raise DeliveryError("webhook subscription has no endpoint")

        body = encode_envelope(build_envelope(task))
        headers = {
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
            "X-Oracle-Event": task.notification_type.value,
            "X-Oracle-Delivery": task.task_id,
        }
        if subscription.secret:
            headers[SIGNATURE_HEADER] = sign(subscription.secret, body)

        try:
            response = await self.client.post(
                subscription.endpoint,
                content=body,
                headers=headers,
                timeout=subscription.timeout,
            )
        except httpx.TimeoutException as e:
            raise DeliveryError(f"timeout after {subscription.timeout}s: {e}") from e
        except httpx.RequestError as e:
            raise DeliveryError(f"request failed: {e}") from e

        if not response.is_success:
            raise DeliveryError(
                f"HTTP {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )
        logger.debug(f"Webhook {task.task_id} delivered to {subscription.endpoint}")
        return DeliveryResult(status_code=response.status_code, detail=response.text[:200] or None)

    async def close(self) -> None:
        if self._owns_client and self._client is not None and not self._client.is_closed:
            await self._client.aclose()
