"""SourceManager: Per-provider health tracking with exponential backoff.

When a provider fails (ProviderError, timeout or exhausted rate limit), it
enters a backoff period. The backoff duration doubles with each consecutive
failure, up to a maximum (default 5 minutes). A successful fetch resets the
counter.

The same counters feed the provider health rollup exposed by
:meth:`SourceManager.get_health`.

.. code-block:: python

    >>> manager = SourceManager(["coinbase", "kraken", "coingecko"])
    >>> manager.get_active_sources()
    ['coinbase', 'kraken', 'coingecko']
    >>> manager.record_failure("kraken")
    5.0
    >>> manager.record_failure("kraken")
    10.0
    >>> manager.record_success("kraken", response_time=0.2)
    >>> manager.get_source_status("kraken").consecutive_failures
    0
"""

from __future__ import annotations

import time
from dataclasses import dataclass

from .fetchers.base import FetchResult


@dataclass
class SourceStatus:
    """Tracks the status of a single provider.

    :ivar consecutive_failures: Number of consecutive failures.
    :ivar backoff_until: Unix timestamp when backoff period ends.
    :ivar total_failures: Total failures since tracking began.
    :ivar total_successes: Total successes since tracking began.
    :ivar last_success_at: Unix timestamp of the last success.
    :ivar last_error: Message of the most recent failure.
    :ivar total_response_time: Sum of response times of successful fetches.
    """

    consecutive_failures: int = 0
    backoff_until: float = 0.0
    total_failures: int = 0
    total_successes: int = 0
    last_success_at: float | None = None
    last_error: str | None = None
    total_response_time: float = 0.0

    @property
    def total_requests(self) -> int:
        return self.total_failures + self.total_successes

    @property
    def success_rate(self) -> float:
        if self.total_requests == 0:
            return 1.0
        return self.total_successes / self.total_requests

    @property
    def avg_response_time(self) -> float | None:
        if self.total_successes == 0:
            return None
        return self.total_response_time / self.total_successes


@dataclass(frozen=True)
class ProviderHealth:
    """Point-in-time health snapshot of one provider."""

    provider_id: str
    healthy: bool
    success_rate: float
    total_successes: int
    total_failures: int
    consecutive_failures: int
    last_success_at: float | None
    avg_response_time: float | None
    backoff_remaining: float
    last_error: str | None


class SourceManager:
    """Manages provider health tracking with exponential backoff.

    Tracks per-provider failures and applies exponential backoff:
        - First failure: 5 second backoff
        - Second failure: 10 second backoff
        - Third failure: 20 second backoff
        - ... up to max_backoff_seconds (default 300 = 5 minutes)

    A provider is reported unhealthy once it has failed
    ``unhealthy_after`` times in a row.

    :ivar sources: List of tracked provider names.
    :ivar base_backoff_seconds: Initial backoff duration after first failure.
    :ivar max_backoff_seconds: Maximum backoff duration.
    :ivar unhealthy_after: Consecutive failures that mark a provider unhealthy.
    """

    DEFAULT_BASE_BACKOFF_SECONDS = 5
    DEFAULT_MAX_BACKOFF_SECONDS = 300  # 5 minutes
    DEFAULT_UNHEALTHY_AFTER = 3

    def __init__(
        self,
        sources: list[str],
        base_backoff_seconds: float = DEFAULT_BASE_BACKOFF_SECONDS,
        max_backoff_seconds: float = DEFAULT_MAX_BACKOFF_SECONDS,
        unhealthy_after: int = DEFAULT_UNHEALTHY_AFTER,
    ) -> None:
        """Initialize the source manager.

        :param sources: List of provider names to track.
        :param base_backoff_seconds: Initial backoff duration after first failure.
        :param max_backoff_seconds: Maximum backoff duration (caps exponential growth).
        :param unhealthy_after: Consecutive failures before a provider is unhealthy.
        :raises ValueError: If any duration or threshold is not positive.
        """
        if base_backoff_seconds <= 0 or max_backoff_seconds <= 0:
            raise ValueError("backoff durations must be positive")
        if unhealthy_after < 1:
            raise ValueError("unhealthy_after must be at least 1")

        self.sources = list(sources)
        self.base_backoff_seconds = base_backoff_seconds
        self.max_backoff_seconds = max_backoff_seconds
        self.unhealthy_after = unhealthy_after
        self._status: dict[str, SourceStatus] = {s: SourceStatus() for s in sources}

    def record_failure(self, source: str, error: str | None = None) -> float:
        """Record a failure for a provider and apply exponential backoff.

        :param source: Provider name that failed.
        :param error: Optional error message kept for the health snapshot.
        :returns: The backoff duration in seconds.
        """
        if source not in self._status:
            self._status[source] = SourceStatus()

        status = self._status[source]
        status.consecutive_failures += 1
        status.total_failures += 1
        status.last_error = error

        # Exponential backoff: base * 2^(failures-1), capped at max
        backoff_seconds = min(
            self.base_backoff_seconds * (2 ** (status.consecutive_failures - 1)),
            self.max_backoff_seconds,
        )
        status.backoff_until = time.time() + backoff_seconds

        return backoff_seconds

    def record_success(self, source: str, response_time: float = 0.0) -> None:
        """Record a successful fetch, resetting the failure counter.

        :param source: Provider name that succeeded.
        :param response_time: Fetch duration in seconds.
        """
        if source not in self._status:
            self._status[source] = SourceStatus()

        status = self._status[source]
        status.consecutive_failures = 0
        status.backoff_until = 0.0
        status.total_successes += 1
        status.total_response_time += response_time
        status.last_success_at = time.time()

    def record_result(self, result: FetchResult) -> None:
        """Record the outcome of one adapter fetch."""
        if result.ok:
            self.record_success(result.source, result.response_time)
        else:
            message = result.error.message if result.error is not None else None
            self.record_failure(result.source, message)

    def get_active_sources(self, sources: list[str] | None = None) -> list[str]:
        """Get providers that are not currently in backoff.

        :param sources: Restrict to these providers (keeping their order);
            defaults to all tracked providers.
        :returns: List of provider names available for fetching.
        """
        now = time.time()
        candidates = self.sources if sources is None else sources
        return [
            s
            for s in candidates
            if s not in self._status or now >= self._status[s].backoff_until
        ]

    def get_source_status(self, source: str) -> SourceStatus | None:
        """Get the status of a specific provider.

        :param source: Provider name to query.
        :returns: SourceStatus or None if provider not tracked.
        """
        return self._status.get(source)

    def get_all_status(self) -> dict[str, SourceStatus]:
        """Get status of all providers.

        :returns: Dict mapping provider names to their status.
        """
        return dict(self._status)

    def is_source_active(self, source: str) -> bool:
        """Check if a specific provider is currently active (not in backoff).

        :param source: Provider name to check.
        :returns: True if provider is active, False if in backoff or unknown.
        """
        if source not in self._status:
            return False
        return time.time() >= self._status[source].backoff_until

    def is_healthy(self, source: str) -> bool:
        status = self._status.get(source)
        if status is None:
            return False
        return status.consecutive_failures < self.unhealthy_after

    def get_backoff_remaining(self, source: str) -> float:
        """Get remaining backoff time for a provider.

        :param source: Provider name to check.
        :returns: Seconds remaining in backoff, or 0 if not in backoff.
        """
        if source not in self._status:
            return 0.0
        remaining = self._status[source].backoff_until - time.time()
        return max(0.0, remaining)

    def get_health(self, source: str) -> ProviderHealth | None:
        """Build the health snapshot of one provider.

        :param source: Provider name.
        :returns: ProviderHealth or None if provider not tracked.
        """
        status = self._status.get(source)
        if status is None:
            return None
        return ProviderHealth(
            provider_id=source,
            healthy=self.is_healthy(source),
            success_rate=status.success_rate,
            total_successes=status.total_successes,
            total_failures=status.total_failures,
            consecutive_failures=status.consecutive_failures,
            last_success_at=status.last_success_at,
            avg_response_time=status.avg_response_time,
            backoff_remaining=self.get_backoff_remaining(source),
            last_error=status.last_error,
        )

    def get_all_health(self) -> dict[str, ProviderHealth]:
        """Health snapshots of every tracked provider."""
        return {source: self.get_health(source) for source in self._status}

    def add_source(self, source: str) -> None:
        """Add a new provider to track.

        :param source: Provider name to add.
        """
        if source not in self.sources:
            self.sources.append(source)
        if source not in self._status:
            self._status[source] = SourceStatus()

    def remove_source(self, source: str) -> None:
        """Remove a provider from tracking.

        :param source: Provider name to remove.
        """
        if source in self.sources:
            self.sources.remove(source)
        self._status.pop(source, None)

    def reset_source(self, source: str) -> None:
        """Reset a provider's status (clear backoff and counters).

        :param source: Provider name to reset.
        """
        if source in self._status:
            self._status[source] = SourceStatus()
