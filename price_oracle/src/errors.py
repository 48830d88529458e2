"""Error taxonomy for the price oracle service.

Provider-level failures (``ProviderError``) live beside the adapters in
``fetchers.base``. Everything here is either raised synchronously at the
configuration boundary (``ValidationError``, ``*NotFoundError``), raised by
notifiers and absorbed by the dispatcher (``DeliveryError``), or describes a
failed aggregation cycle (``AggregationError`` and subclasses).
"""

from __future__ import annotations


class OracleError(Exception):
    """Base exception for the oracle service."""

    pass


class ValidationError(OracleError):
    """Raised when a Feed or Subscription configuration is malformed.

    :ivar field: Name of the offending field.
    """

    def __init__(self, field: str, message: str):
        """Initialize the validation error.

        :param field: Name of the offending field.
        :param message: Human readable reason.
        """
        self.field = field
        super().__init__(f"{field}: {message}")


class FeedNotFoundError(OracleError):
    """Raised when a feed id is unknown."""

    def __init__(self, feed_id: str):
        self.feed_id = feed_id
        super().__init__(f"Feed not found: {feed_id}")


class SubscriptionNotFoundError(OracleError):
    """Raised when a subscription id is unknown."""

    def __init__(self, subscription_id: str):
        self.subscription_id = subscription_id
        super().__init__(f"Subscription not found: {subscription_id}")


class PriceNotFoundError(OracleError):
    """Raised when no price has ever been produced for an asset/currency."""

    def __init__(self, asset_id: str, currency: str):
        self.asset_id = asset_id
        self.currency = currency
        super().__init__(f"Price not found for {asset_id}/{currency}")


class DeliveryError(OracleError):
    """Raised by a notifier when one delivery attempt fails.

    :ivar status_code: HTTP status of the endpoint response, if any.
    """

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class AggregationError(OracleError):
    """A whole aggregation cycle failed; no price is emitted.

    :ivar code: Machine readable error code.
    """

    code = "aggregation_failed"

    def __init__(self, message: str):
        super().__init__(message)


class InsufficientSourcesError(AggregationError):
    """Fewer than ``min_sources`` quotes survived."""

    code = "insufficient_sources"


class AllQuotesOutliersError(AggregationError):
    """Every quote was discarded by outlier removal."""

    code = "all_quotes_outliers"
