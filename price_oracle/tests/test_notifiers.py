"""Unit tests for the delivery channels."""

import json

import httpx
import pytest
import respx

from price_oracle.src.errors import DeliveryError
from price_oracle.src.models import (
    DeliveryMethod,
    NotificationTask,
    NotificationType,
    Subscription,
)
from price_oracle.src.notifiers import (
    NOTIFIER_REGISTRY,
    SIGNATURE_HEADER,
    ConnectionHub,
    SSENotifier,
    WebhookNotifier,
    WebSocketNotifier,
    build_envelope,
    encode_envelope,
    get_notifier,
    sign,
    verify,
)

HOOK_URL = "https://subscriber.example.com/hook"


def make_subscription(method: DeliveryMethod = DeliveryMethod.WEBHOOK, secret: str | None = None) -> Subscription:
    return Subscription(
        feed_id="feed-1",
        subscriber_id="acme",
        delivery_method=method,
        endpoint=HOOK_URL,
        secret=secret,
        timeout=5,
    )


def make_task(subscription: Subscription) -> NotificationTask:
    return NotificationTask(
        subscription_id=subscription.subscription_id,
        feed_id="feed-1",
        notification_type=NotificationType.PRICE_UPDATE,
        payload={"price": "100.5", "asset_id": "btc"},
    )


class TestEnvelope:
    def test_fields(self) -> None:
        subscription = make_subscription()
        task = make_task(subscription)
        envelope = build_envelope(task)

        assert envelope["id"] == task.task_id
        assert envelope["type"] == "price_update"
        assert envelope["attempt"] == 1
        assert envelope["data"] == {"price": "100.5", "asset_id": "btc"}

    def test_canonical_encoding(self) -> None:
        """Keys are sorted and separators compact."""
        assert encode_envelope({"b": 1, "a": [1, 2]}) == b'{"a":[1,2],"b":1}'


class TestSignature:
    def test_sign_and_verify(self) -> None:
        signature = sign("s3cret", b'{"a":1}')
        assert signature.startswith("sha256=")
        assert verify("s3cret", b'{"a":1}', signature)
        assert not verify("other", b'{"a":1}', signature)
        assert not verify("s3cret", b'{"a":2}', signature)


class TestRegistry:
    def test_all_methods_registered(self) -> None:
        assert set(NOTIFIER_REGISTRY) == set(DeliveryMethod)

    def test_get_notifier_with_shared_hub(self) -> None:
        hub = ConnectionHub()
        notifier = get_notifier("sse", hub=hub)
        assert isinstance(notifier, SSENotifier)
        assert notifier.hub is hub


class TestWebhookNotifier:
    @respx.mock
    async def test_signed_post(self) -> None:
        """The body is the canonical envelope, signed with the secret."""
        route = respx.post(HOOK_URL).mock(return_value=httpx.Response(204))
        subscription = make_subscription(secret="s3cret")
        task = make_task(subscription)

        async with httpx.AsyncClient() as client:
            result = await WebhookNotifier(client).send(subscription, task)

        request = route.calls.last.request
        body = request.content
        assert result.status_code == 204
        assert json.loads(body)["id"] == task.task_id
        assert request.headers["X-Oracle-Event"] == "price_update"
        assert request.headers["X-Oracle-Delivery"] == task.task_id
        assert verify("s3cret", body, request.headers[SIGNATURE_HEADER])

    @respx.mock
    async def test_no_secret_no_signature(self) -> None:
        route = respx.post(HOOK_URL).mock(return_value=httpx.Response(200))
        subscription = make_subscription()

        async with httpx.AsyncClient() as client:
            await WebhookNotifier(client).send(subscription, make_task(subscription))

        assert SIGNATURE_HEADER not in route.calls.last.request.headers

    @respx.mock
    async def test_error_status(self) -> None:
        respx.post(HOOK_URL).mock(return_value=httpx.Response(503, text="busy"))
        subscription = make_subscription()

        async with httpx.AsyncClient() as client:
            with pytest.raises(DeliveryError) as exc_info:
                await WebhookNotifier(client).send(subscription, make_task(subscription))

        assert exc_info.value.status_code == 503

    @respx.mock
    async def test_network_error(self) -> None:
        respx.post(HOOK_URL).mock(side_effect=httpx.ConnectError("refused"))
        subscription = make_subscription()

        async with httpx.AsyncClient() as client:
            with pytest.raises(DeliveryError, match="request failed"):
                await WebhookNotifier(client).send(subscription, make_task(subscription))

    @respx.mock
    async def test_lazy_client_closed(self) -> None:
        """A notifier-owned client is created on demand and closed on close()."""
        respx.post(HOOK_URL).mock(return_value=httpx.Response(200))
        notifier = WebhookNotifier()
        subscription = make_subscription()

        await notifier.send(subscription, make_task(subscription))
        client = notifier.client
        await notifier.close()

        assert client.is_closed


class TestStreamNotifiers:
    async def test_websocket_publishes_envelope(self) -> None:
        hub = ConnectionHub()
        subscription = make_subscription(DeliveryMethod.WEBSOCKET)
        queue = hub.connect(subscription.subscription_id)
        task = make_task(subscription)

        result = await WebSocketNotifier(hub).send(subscription, task)

        assert result.detail == "1 connection(s)"
        assert json.loads(queue.get_nowait())["id"] == task.task_id

    async def test_sse_format(self) -> None:
        hub = ConnectionHub()
        subscription = make_subscription(DeliveryMethod.SSE)
        queue = hub.connect(subscription.subscription_id)
        task = make_task(subscription)

        await SSENotifier(hub).send(subscription, task)

        message = queue.get_nowait()
        assert message.startswith(f"id: {task.task_id}\nevent: price_update\ndata: {{")
        assert message.endswith("\n\n")

    async def test_not_connected(self) -> None:
        subscription = make_subscription(DeliveryMethod.WEBSOCKET)
        with pytest.raises(DeliveryError, match="not connected"):
            await WebSocketNotifier().send(subscription, make_task(subscription))

    async def test_backlog_full(self) -> None:
        hub = ConnectionHub(max_backlog=1)
        subscription = make_subscription(DeliveryMethod.WEBSOCKET)
        hub.connect(subscription.subscription_id)
        notifier = WebSocketNotifier(hub)

        await notifier.send(subscription, make_task(subscription))
        with pytest.raises(DeliveryError, match="backlog full"):
            await notifier.send(subscription, make_task(subscription))

    def test_disconnect(self) -> None:
        hub = ConnectionHub()
        first = hub.connect("sub")
        hub.connect("sub")
        assert hub.connection_count("sub") == 2

        hub.disconnect("sub", first)
        assert hub.connection_count("sub") == 1
