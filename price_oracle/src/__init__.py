"""
Price Oracle - Multi-Source Aggregated Price Feeds

This module provides price feeds reconciled from multiple independent sources:
- AssetPair: (asset, currency) pair representation
- PriceAggregator: Outlier removal and mean/median/weighted aggregation
- SourceManager: Per-provider failure tracking with exponential backoff
- FeedScheduler: Due-feed selection with failure pause
- NotificationDispatcher: Prioritized notification queue with retries
- PriceOracle: Main orchestrator and service API
- fetchers: Modular price source adapters
- notifiers: Webhook, WebSocket and SSE delivery channels
"""

from .AssetPair import AssetPair
from .errors import (
    AggregationError,
    AllQuotesOutliersError,
    DeliveryError,
    FeedNotFoundError,
    InsufficientSourcesError,
    OracleError,
    PriceNotFoundError,
    SubscriptionNotFoundError,
    ValidationError,
)
from .FeedScheduler import FeedScheduler
from .HistoricalStore import HistoricalStore
from .models import (
    AggregatedPrice,
    AggregationMethod,
    DeliveryMethod,
    Feed,
    FeedProvider,
    NotificationType,
    PriceReading,
    Quote,
    Subscription,
    SubscriptionFilters,
    TaskStatus,
)
from .NotificationDispatcher import NotificationDispatcher
from .PriceAggregator import AggregationResult, PriceAggregator
from .PriceOracle import OracleMetrics, PriceOracle
from .QuoteCache import QuoteCache
from .SourceManager import ProviderHealth, SourceManager, SourceStatus

__all__ = [
    "AggregatedPrice",
    "AggregationError",
    "AggregationMethod",
    "AggregationResult",
    "AllQuotesOutliersError",
    "AssetPair",
    "DeliveryError",
    "DeliveryMethod",
    "Feed",
    "FeedNotFoundError",
    "FeedProvider",
    "FeedScheduler",
    "HistoricalStore",
    "InsufficientSourcesError",
    "NotificationDispatcher",
    "NotificationType",
    "OracleError",
    "OracleMetrics",
    "PriceAggregator",
    "PriceNotFoundError",
    "PriceOracle",
    "PriceReading",
    "ProviderHealth",
    "Quote",
    "QuoteCache",
    "SourceManager",
    "SourceStatus",
    "Subscription",
    "SubscriptionFilters",
    "SubscriptionNotFoundError",
    "TaskStatus",
    "ValidationError",
]
