"""
Delivery channels for subscriber notifications.

Usage:
    from price_oracle.src.notifiers import get_notifier, ConnectionHub

    hub = ConnectionHub()
    notifiers = {
        DeliveryMethod.WEBHOOK: get_notifier("webhook"),
        DeliveryMethod.WEBSOCKET: get_notifier("websocket", hub=hub),
        DeliveryMethod.SSE: get_notifier("sse", hub=hub),
    }
"""

from .base import (
    NOTIFIER_REGISTRY,
    BaseNotifier,
    DeliveryResult,
    build_envelope,
    encode_envelope,
    get_notifier,
    register_notifier,
)
from .stream import ConnectionHub, SSENotifier, WebSocketNotifier
from .webhook import SIGNATURE_HEADER, WebhookNotifier, sign, verify

__all__ = [
    "BaseNotifier",
    "DeliveryResult",
    "build_envelope",
    "encode_envelope",
    "register_notifier",
    "get_notifier",
    "NOTIFIER_REGISTRY",
    "ConnectionHub",
    "SSENotifier",
    "WebSocketNotifier",
    "WebhookNotifier",
    "SIGNATURE_HEADER",
    "sign",
    "verify",
]
