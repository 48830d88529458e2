"""Data model shared by the oracle components.

All prices, weights, confidences and percentages are :class:`decimal.Decimal`.
Divisions are quantized to :data:`PRICE_SCALE` (8 fractional digits) so that
repeated aggregation never drifts. Timestamps are timezone-aware UTC datetimes.
"""

from __future__ import annotations

import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import ROUND_HALF_EVEN, Decimal, InvalidOperation
from enum import Enum
from typing import Any, Callable
from urllib.parse import urlparse

from .AssetPair import AssetPair
from .errors import ValidationError

PRICE_SCALE = Decimal("0.00000001")
HUNDRED = Decimal(100)

# Default number of consecutive failed cycles before a feed is paused.
DEFAULT_PAUSE_THRESHOLD = 5

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    """Return a fresh random identifier."""
    return uuid.uuid4().hex


def to_decimal(value: Any) -> Decimal:
    """Convert an API value to Decimal without going through binary float math.

    Floats are converted via their shortest repr, so ``0.1`` becomes
    ``Decimal("0.1")`` rather than its binary expansion.

    :param value: Decimal, int, float or numeric string.
    :returns: Decimal value.
    :raises ValueError: If the value is not a finite number.
    """
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, bool):
        raise ValueError(f"Not a number: {value!r}")
    elif isinstance(value, int):
        result = Decimal(value)
    elif isinstance(value, (float, str)):
        try:
            result = Decimal(str(value).strip())
        except InvalidOperation as e:
            raise ValueError(f"Not a number: {value!r}") from e
    else:
        raise ValueError(f"Not a number: {value!r}")
    if not result.is_finite():
        raise ValueError(f"Not a finite number: {value!r}")
    return result


def quantize(value: Decimal) -> Decimal:
    """Round a Decimal to the fixed 8-digit price scale."""
    return value.quantize(PRICE_SCALE, rounding=ROUND_HALF_EVEN)


class AggregationMethod(str, Enum):
    MEAN = "mean"
    MEDIAN = "median"
    WEIGHTED_AVERAGE = "weighted_average"
    VOLUME_WEIGHTED = "volume_weighted"


class DeliveryMethod(str, Enum):
    WEBHOOK = "webhook"
    WEBSOCKET = "websocket"
    SSE = "sse"


class NotificationType(str, Enum):
    PRICE_UPDATE = "price_update"
    THRESHOLD_BREACH = "threshold_breach"
    FEED_STATUS = "feed_status"


class TaskStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SENT = "sent"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({TaskStatus.SENT, TaskStatus.FAILED, TaskStatus.CANCELLED})


@dataclass(frozen=True)
class Quote:
    """One provider's observation of an asset price.

    :ivar metadata: Provider specific extras; ``volume`` is used by
        volume-weighted aggregation when present.
    """

    asset_id: str
    currency: str
    price: Decimal
    source: str
    confidence: Decimal = Decimal(1)
    observed_at: datetime = field(default_factory=utc_now)
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.price <= 0:
            raise ValueError(f"Quote price must be positive, got {self.price}")
        if self.price < PRICE_SCALE:
            raise ValueError(f"Quote price {self.price} is below the price scale {PRICE_SCALE}")
        if not Decimal(0) <= self.confidence <= Decimal(1):
            raise ValueError(f"Quote confidence must be in [0, 1], got {self.confidence}")

    @property
    def pair(self) -> AssetPair:
        return AssetPair(self.asset_id, self.currency)

    @property
    def volume(self) -> Decimal | None:
        """Provider-reported trade volume, if any and positive."""
        raw = self.metadata.get("volume")
        if raw is None:
            return None
        try:
            volume = to_decimal(raw)
        except ValueError:
            return None
        return volume if volume > 0 else None


@dataclass(frozen=True)
class AggregatedPrice:
    """The reconciled price for one asset/currency at one point in time."""

    asset_id: str
    currency: str
    price: Decimal
    confidence: Decimal
    method: AggregationMethod
    source_count: int
    deviation_percent: Decimal
    outliers_removed: int
    processing_time: float
    created_at: datetime = field(default_factory=utc_now)
    sources: tuple[str, ...] = ()
    flagged: bool = False

    @property
    def pair(self) -> AssetPair:
        return AssetPair(self.asset_id, self.currency)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON friendly dict (decimals as strings)."""
        return {
            "asset_id": self.asset_id,
            "currency": self.currency,
            "price": str(self.price),
            "confidence": str(self.confidence),
            "method": self.method.value,
            "source_count": self.source_count,
            "deviation_percent": str(self.deviation_percent),
            "outliers_removed": self.outliers_removed,
            "processing_time": self.processing_time,
            "created_at": self.created_at.isoformat(),
            "sources": list(self.sources),
            "flagged": self.flagged,
        }


@dataclass
class FeedProvider:
    """A provider contributing to a feed, with its aggregation weight."""

    provider_id: str
    weight: Decimal = Decimal(1)


@dataclass
class Feed:
    """Configuration of one (asset, currency) price pipeline.

    :ivar update_interval: Seconds between cycles.
    :ivar deviation_threshold: Spread (percent) above which confidence is reduced.
    :ivar max_consecutive_failures: Per-feed pause threshold; ``None`` uses
        :data:`DEFAULT_PAUSE_THRESHOLD`.
    """

    asset_id: str
    currency: str
    providers: list[FeedProvider]
    update_interval: int = 60
    aggregation_method: AggregationMethod = AggregationMethod.WEIGHTED_AVERAGE
    deviation_threshold: Decimal = Decimal(10)
    min_sources: int = 2
    max_consecutive_failures: int | None = None
    name: str = ""
    description: str | None = None
    is_active: bool = True
    feed_id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def pair(self) -> AssetPair:
        return AssetPair(self.asset_id, self.currency)

    @property
    def provider_ids(self) -> list[str]:
        return [p.provider_id for p in self.providers]

    @property
    def weights(self) -> dict[str, Decimal]:
        return {p.provider_id: p.weight for p in self.providers}

    @property
    def pause_threshold(self) -> int:
        if self.max_consecutive_failures is None:
            return DEFAULT_PAUSE_THRESHOLD
        return self.max_consecutive_failures

    def validate(self) -> None:
        """Normalize fields and check the feed invariants.

        :raises ValidationError: On the first violated invariant.
        """
        try:
            pair = AssetPair(self.asset_id, self.currency)
        except ValueError as e:
            raise ValidationError("asset_id", str(e)) from e
        self.asset_id, self.currency = pair.asset_id, pair.currency
        if not self.name:
            self.name = str(pair)

        if isinstance(self.update_interval, bool) or not isinstance(self.update_interval, int):
            raise ValidationError("update_interval", "must be an integer number of seconds")
        if self.update_interval <= 0:
            raise ValidationError("update_interval", "must be greater than 0")

        try:
            self.aggregation_method = AggregationMethod(self.aggregation_method)
        except ValueError as e:
            raise ValidationError(
                "aggregation_method", f"unknown method {self.aggregation_method!r}"
            ) from e

        try:
            self.deviation_threshold = to_decimal(self.deviation_threshold)
        except ValueError as e:
            raise ValidationError("deviation_threshold", str(e)) from e
        if self.deviation_threshold <= 0:
            raise ValidationError("deviation_threshold", "must be greater than 0")

        if not self.providers:
            raise ValidationError("providers", "at least one provider is required")
        seen: set[str] = set()
        for provider in self.providers:
            provider.provider_id = provider.provider_id.strip().lower()
            if not provider.provider_id:
                raise ValidationError("providers", "provider id cannot be empty")
            if provider.provider_id in seen:
                raise ValidationError("providers", f"duplicate provider '{provider.provider_id}'")
            seen.add(provider.provider_id)
            try:
                provider.weight = to_decimal(provider.weight)
            except ValueError as e:
                raise ValidationError("providers", str(e)) from e
            if provider.weight <= 0:
                raise ValidationError(
                    "providers", f"weight for '{provider.provider_id}' must be greater than 0"
                )

        if self.min_sources < 1:
            raise ValidationError("min_sources", "must be at least 1")
        if self.max_consecutive_failures is not None and self.max_consecutive_failures < 1:
            raise ValidationError("max_consecutive_failures", "must be at least 1")


@dataclass
class FeedSchedule:
    """Scheduling state of one feed (one-to-one with Feed).

    ``running_until`` is set while a cycle is claimed; it doubles as a lease so
    a crashed worker cannot wedge the feed forever.
    """

    feed_id: str
    next_update_at: datetime
    last_update_at: datetime | None = None
    consecutive_failures: int = 0
    is_paused: bool = False
    pause_reason: str | None = None
    update_count: int = 0
    running_until: datetime | None = None

    def is_running(self, now: datetime) -> bool:
        return self.running_until is not None and self.running_until > now


@dataclass
class SubscriptionFilters:
    """Delivery filters for price update notifications."""

    min_price_change_percent: Decimal | None = None
    max_update_frequency: int | None = None
    confidence_threshold: Decimal | None = None
    price_above: Decimal | None = None
    price_below: Decimal | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> SubscriptionFilters:
        """Build filters from a plain mapping, converting numbers to Decimal.

        :raises ValidationError: On unknown keys or non-numeric values.
        """
        if not data:
            return cls()
        known = {
            "min_price_change_percent",
            "max_update_frequency",
            "confidence_threshold",
            "price_above",
            "price_below",
        }
        unknown = set(data) - known
        if unknown:
            raise ValidationError("filters", f"unknown filter(s): {sorted(unknown)}")
        kwargs: dict[str, Any] = {}
        for key, value in data.items():
            if value is None:
                continue
            if key == "max_update_frequency":
                if isinstance(value, bool) or not isinstance(value, int):
                    raise ValidationError("filters", f"{key} must be an integer")
                kwargs[key] = value
                continue
            try:
                kwargs[key] = to_decimal(value)
            except ValueError as e:
                raise ValidationError("filters", f"{key}: {e}") from e
        return cls(**kwargs)

    def validate(self) -> None:
        if self.min_price_change_percent is not None and self.min_price_change_percent < 0:
            raise ValidationError("filters", "min_price_change_percent cannot be negative")
        if self.max_update_frequency is not None and self.max_update_frequency < 0:
            raise ValidationError("filters", "max_update_frequency cannot be negative")
        if self.confidence_threshold is not None and not (
            Decimal(0) <= self.confidence_threshold <= Decimal(1)
        ):
            raise ValidationError("filters", "confidence_threshold must be in [0, 1]")


@dataclass
class RetryPolicy:
    max_retries: int = 3


@dataclass
class Subscription:
    """A (feed, subscriber, delivery method) triple.

    Never hard-deleted: unsubscribing sets ``is_active`` to False so delivery
    history keeps its reference.
    """

    feed_id: str
    subscriber_id: str
    delivery_method: DeliveryMethod
    endpoint: str | None = None
    secret: str | None = None
    timeout: float = 30.0
    filters: SubscriptionFilters = field(default_factory=SubscriptionFilters)
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    subscription_id: str = field(default_factory=new_id)
    notification_count: int = 0
    failure_count: int = 0
    last_notification_at: datetime | None = None
    last_notified_price: Decimal | None = None
    is_active: bool = True
    created_at: datetime = field(default_factory=utc_now)

    def validate(self) -> None:
        """Check the subscription invariants.

        :raises ValidationError: On the first violated invariant.
        """
        if not self.subscriber_id or not self.subscriber_id.strip():
            raise ValidationError("subscriber_id", "cannot be empty")
        try:
            self.delivery_method = DeliveryMethod(self.delivery_method)
        except ValueError as e:
            raise ValidationError(
                "delivery_method", f"unknown delivery method {self.delivery_method!r}"
            ) from e
        if self.delivery_method is DeliveryMethod.WEBHOOK:
            parsed = urlparse(self.endpoint or "")
            if parsed.scheme not in ("http", "https") or not parsed.netloc:
                raise ValidationError("endpoint", "webhook subscriptions need an http(s) URL")
        if self.timeout <= 0:
            raise ValidationError("timeout", "must be greater than 0")
        if self.retry_policy.max_retries < 0:
            raise ValidationError("retry_policy", "max_retries cannot be negative")
        self.filters.validate()


@dataclass
class NotificationTask:
    """One queued, retryable delivery obligation."""

    subscription_id: str
    feed_id: str
    notification_type: NotificationType
    payload: dict[str, Any]
    priority: int = 5
    max_retries: int = 3
    task_id: str = field(default_factory=new_id)
    status: TaskStatus = TaskStatus.PENDING
    retry_count: int = 0
    retry_after: datetime | None = None
    error_message: str | None = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    sent_at: datetime | None = None
    sequence: int = 0

    @property
    def sort_key(self) -> tuple[int, datetime, int]:
        return (self.priority, self.created_at, self.sequence)


@dataclass(frozen=True)
class NotificationHistory:
    """Append-only record of one delivery attempt."""

    subscription_id: str
    task_id: str
    notification_type: NotificationType
    delivery_method: DeliveryMethod | None
    endpoint: str | None
    success: bool
    attempt: int
    sent_at: datetime
    response_status: int | None = None
    response_time_ms: int | None = None
    error_message: str | None = None


@dataclass(frozen=True)
class PriceReading:
    """Answer of the read API: a price plus its freshness.

    :ivar is_stale: True when the feed is paused, the cached entry expired, or
        the value came from history rather than the cache.
    :ivar origin: ``"cache"`` or ``"history"``.
    """

    price: AggregatedPrice
    is_stale: bool
    origin: str
    age_seconds: float
