"""FetchCoordinator: Concurrent quote fetching for one feed cycle.

All providers of a feed are polled at once. Each adapter applies its own rate
limit and deadline (see ``BaseFetcher.fetch_quote``), so the cycle waits at
most one provider timeout. Providers still in backoff after recent failures
are skipped without a request.

Every provider listed for the feed gets exactly one FetchResult back, in the
feed's provider order, so the caller can record outcomes and log a complete
breakdown.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from .fetchers.base import FetchResult, ProviderError

if TYPE_CHECKING:
    from .fetchers import BaseFetcher
    from .SourceManager import SourceManager

logger = logging.getLogger(__name__)


class FetchCoordinator:
    """Coordinates concurrent fetching from the providers of one feed.

    :ivar fetchers: Dict mapping provider names to fetcher instances.
    :ivar source_manager: Optional health tracker; providers in backoff are
        skipped and every fetch outcome is recorded on it.
    """

    def __init__(
        self,
        fetchers: dict[str, BaseFetcher],
        source_manager: SourceManager | None = None,
    ) -> None:
        """Initialize the fetch coordinator.

        :param fetchers: Dict mapping provider names to fetcher instances.
        :param source_manager: Optional provider health tracker.
        """
        self.fetchers = fetchers
        self.source_manager = source_manager

    def _skip(self, source: str, reason: str) -> FetchResult:
        return FetchResult(source=source, error=ProviderError(source, reason))

    async def fetch_feed(
        self,
        asset_id: str,
        currency: str,
        providers: list[str],
    ) -> list[FetchResult]:
        """Fetch quotes for one pair from the given providers.

        :param asset_id: Asset symbol.
        :param currency: Quote currency symbol.
        :param providers: Provider names in feed order.
        :returns: One FetchResult per provider, in the same order.
        """
        if not providers:
            return []

        active = set(
            self.source_manager.get_active_sources(providers)
            if self.source_manager is not None
            else providers
        )

        results: dict[str, FetchResult] = {}
        to_fetch: list[str] = []
        for source in providers:
            fetcher = self.fetchers.get(source)
            if fetcher is None:
                results[source] = self._skip(source, "provider not configured")
            elif not fetcher.supports_pair(asset_id, currency):
                results[source] = self._skip(source, f"{asset_id}/{currency} not supported")
            elif source not in active:
                remaining = self.source_manager.get_backoff_remaining(source)
                results[source] = self._skip(source, f"in backoff ({remaining:.0f}s left)")
            else:
                to_fetch.append(source)

        if to_fetch:
            fetched = await asyncio.gather(
                *(self.fetchers[s].fetch_quote(asset_id, currency) for s in to_fetch),
                return_exceptions=True,
            )
            for source, outcome in zip(to_fetch, fetched, strict=True):
                if isinstance(outcome, BaseException):
                    if isinstance(outcome, asyncio.CancelledError):
                        raise outcome
                    logger.warning(f"[{source}] Unexpected fetch error: {outcome!r}")
                    outcome = self._skip(source, f"unexpected error: {outcome}")
                results[source] = outcome
                if self.source_manager is not None:
                    self.source_manager.record_result(outcome)

        return [results[s] for s in providers]
