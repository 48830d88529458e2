"""Base source adapter interface and shared HTTP client management.

Every price provider inherits from BaseFetcher and implements ``fetch()``,
which returns a :class:`Quote` or raises :class:`ProviderError`. Callers never
call ``fetch()`` directly: ``fetch_quote()`` applies the provider's token
bucket and deadline, updates its counters and returns a tagged
:class:`FetchResult`, so one failing provider never aborts a feed cycle.

A shared httpx.AsyncClient is used across all fetchers to avoid connection
overhead.

.. code-block:: python

    @register_fetcher
    class MyFetcher(BaseFetcher):
        name = "myfetcher"

        async def fetch(self, asset_id: str, currency: str) -> Quote:
            response = await self._get(f"https://api.example.com/{asset_id}/{currency}")
            return self._quote(asset_id, currency, response.json()["price"])
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, ClassVar

import httpx
from aiolimiter import AsyncLimiter

from ..models import Quote, to_decimal, utc_now

logger = logging.getLogger(__name__)


class ProviderError(Exception):
    """One provider failed to produce a quote.

    :ivar provider: Provider identifier.
    """

    def __init__(self, provider: str, message: str):
        """Initialize the provider error.

        :param provider: Provider identifier.
        :param message: Error description.
        """
        self.provider = provider
        self.message = message
        super().__init__(f"[{provider}] {message}")


class ProviderConfigError(ProviderError):
    """Raised when provider configuration is invalid (e.g., missing API key)."""

    pass


class ProviderHTTPError(ProviderError):
    """Raised when the provider answers with a non-2xx status.

    :ivar status_code: HTTP status code from the failed request.
    """

    def __init__(self, provider: str, status_code: int, message: str):
        self.status_code = status_code
        super().__init__(provider, f"HTTP {status_code}: {message}")


@dataclass(frozen=True)
class FetchResult:
    """Tagged outcome of one provider fetch.

    Exactly one of ``quote`` and ``error`` is set.

    :ivar response_time: Wall time spent on the fetch in seconds.
    """

    source: str
    quote: Quote | None = None
    error: ProviderError | None = None
    response_time: float = 0.0

    @property
    def ok(self) -> bool:
        return self.quote is not None


class BaseFetcher(ABC):
    """Abstract base class for price source adapters.

    Subclasses must implement:
        - name: Class variable identifying the source (e.g., "coinbase", "kraken")
        - fetch(): Async method returning a Quote or raising ProviderError

    :cvar name: Unique identifier for this fetcher.
    :cvar DEFAULT_TIMEOUT: Default per-fetch deadline in seconds.
    :cvar DEFAULT_RATE_LIMIT: Default requests per minute.
    :cvar DEFAULT_CONFIDENCE: Confidence attached to this provider's quotes.
    :ivar api_key: Optional API key for authenticated endpoints.
    :ivar timeout: Per-fetch deadline in seconds.
    :ivar rate_limiter: Token bucket guarding this provider (per minute).
    """

    _shared_client: ClassVar[httpx.AsyncClient | None] = None

    name: ClassVar[str] = ""

    DEFAULT_TIMEOUT = 10.0
    DEFAULT_RATE_LIMIT = 60
    DEFAULT_CONFIDENCE = Decimal("0.95")

    def __init__(
        self,
        api_key: str | None = None,
        timeout: float | None = None,
        rate_limit_per_minute: float | None = None,
        rate_limiter: AsyncLimiter | None = None,
    ):
        """Initialize the fetcher.

        :param api_key: Optional API key for authenticated endpoints.
        :param timeout: Per-fetch deadline in seconds (default: 10).
        :param rate_limit_per_minute: Token bucket rate (default: DEFAULT_RATE_LIMIT).
        :param rate_limiter: Pre-built limiter, overrides ``rate_limit_per_minute``.
        """
        self.api_key = api_key
        self.timeout = timeout or self.DEFAULT_TIMEOUT
        self.rate_limiter = rate_limiter or AsyncLimiter(
            rate_limit_per_minute or self.DEFAULT_RATE_LIMIT, time_period=60
        )
        self.success_count = 0
        self.failure_count = 0

    @property
    def has_api_key(self) -> bool:
        """Check if this fetcher has an API key configured."""
        return self.api_key is not None and len(self.api_key) > 0

    @classmethod
    def get_shared_client(cls) -> httpx.AsyncClient:
        """Get or create the shared HTTP client.

        The client is shared across all fetcher instances to reuse connections.

        :returns: Shared httpx.AsyncClient instance.
        """
        if cls._shared_client is None or cls._shared_client.is_closed:
            BaseFetcher._shared_client = httpx.AsyncClient(
                timeout=httpx.Timeout(30.0, connect=10.0),
                limits=httpx.Limits(max_connections=50, max_keepalive_connections=20),
                follow_redirects=True,
            )
        return BaseFetcher._shared_client

    @classmethod
    async def close_shared_client(cls) -> None:
        """Close the shared HTTP client."""
        client = BaseFetcher._shared_client
        if client is not None and not client.is_closed:
            await client.aclose()
        BaseFetcher._shared_client = None

    @abstractmethod
    async def fetch(self, asset_id: str, currency: str) -> Quote:
        """Fetch the current quote for an asset.

        :param asset_id: Asset symbol (e.g., "btc", "eth").
        :param currency: Quote currency symbol (e.g., "usd").
        :returns: Quote observed by this provider.
        :raises ProviderError: On HTTP, timeout or payload errors.
        """
        pass

    def supports_pair(self, asset_id: str, currency: str) -> bool:
        """Check if this fetcher supports the given pair.

        Override in subclasses to restrict supported pairs.

        :param asset_id: Asset symbol.
        :param currency: Quote currency symbol.
        :returns: True if pair is supported.
        """
        return True

    async def fetch_quote(self, asset_id: str, currency: str) -> FetchResult:
        """Fetch a quote under the rate limit and deadline, never raising.

        :param asset_id: Asset symbol.
        :param currency: Quote currency symbol.
        :returns: FetchResult carrying either the quote or the ProviderError.
        """
        start = time.monotonic()
        error: ProviderError | None = None
        quote: Quote | None = None

        if not self.rate_limiter.has_capacity():
            error = ProviderError(
                self.name,
                f"rate limit exceeded ({self.rate_limiter.max_rate:g}/min)",
            )
        else:
            try:
                async with self.rate_limiter:
                    quote = await asyncio.wait_for(
                        self.fetch(asset_id, currency), timeout=self.timeout
                    )
            except asyncio.TimeoutError:
                error = ProviderError(self.name, f"timeout after {self.timeout}s")
            except ProviderError as e:
                error = e
            except (KeyError, ValueError, TypeError, IndexError) as e:
                error = ProviderError(self.name, f"invalid payload: {e}")

        elapsed = time.monotonic() - start
        if error is not None:
            self.failure_count += 1
            logger.warning(f"[{self.name}] {asset_id}/{currency} failed: {error.message}")
            return FetchResult(source=self.name, error=error, response_time=elapsed)

        self.success_count += 1
        return FetchResult(source=self.name, quote=quote, response_time=elapsed)

    def _quote(
        self,
        asset_id: str,
        currency: str,
        price: Any,
        *,
        volume: Any = None,
        confidence: Decimal | None = None,
        **metadata: Any,
    ) -> Quote:
        """Build a Quote from raw API values.

        :raises ValueError: If price/volume are not numbers or price is not positive.
        """
        if volume is not None:
            metadata["volume"] = to_decimal(volume)
        return Quote(
            asset_id=asset_id,
            currency=currency,
            price=to_decimal(price),
            source=self.name,
            confidence=confidence if confidence is not None else self.DEFAULT_CONFIDENCE,
            observed_at=utc_now(),
            metadata=metadata,
        )

    async def _get(
        self,
        url: str,
        *,
        params: dict | None = None,
        headers: dict | None = None,
    ) -> httpx.Response:
        """Make an HTTP GET request using the shared client.

        :param url: Request URL.
        :param params: Optional query parameters.
        :param headers: Optional request headers.
        :returns: httpx.Response object.
        :raises ProviderHTTPError: On non-2xx response.
        :raises ProviderError: On network/timeout errors.
        """
        client = self.get_shared_client()
        try:
            response = await client.get(
                url,
                params=params,
                headers=headers,
                timeout=self.timeout,
            )
        except httpx.TimeoutException as e:
            raise ProviderError(self.name, f"Request timeout: {e}") from e
        except httpx.RequestError as e:
            raise ProviderError(self.name, f"Request failed: {e}") from e

        if not response.is_success:
            logger.debug(
                "HTTP GET %s failed with status %s: %s",
                url,
                response.status_code,
                response.text[:200],
            )
            raise ProviderHTTPError(self.name, response.status_code, response.text[:200])
        return response


# Registry of available fetchers (populated by subclass imports)
FETCHER_REGISTRY: dict[str, type[BaseFetcher]] = {}


def register_fetcher(cls: type[BaseFetcher]) -> type[BaseFetcher]:
    """Decorator to register a fetcher class in the global registry.

    :param cls: Fetcher class to register.
    :returns: The registered class (unchanged).
    :raises ValueError: If fetcher has no name defined.
    """
    if not cls.name:
        raise ValueError(f"Fetcher {cls.__name__} must define a 'name' class variable")
    FETCHER_REGISTRY[cls.name] = cls
    return cls


def get_fetcher(name: str, api_key: str | None = None, **kwargs: Any) -> BaseFetcher:
    """Get a fetcher instance by name.

    :param name: Fetcher name (e.g., "coinbase", "kraken").
    :param api_key: Optional API key.
    :param kwargs: Forwarded to the fetcher constructor (timeout, rate limit).
    :returns: Fetcher instance.
    :raises ValueError: If fetcher name is unknown.
    """
    if name not in FETCHER_REGISTRY:
        available = ", ".join(sorted(FETCHER_REGISTRY.keys()))
        raise ValueError(f"Unknown fetcher '{name}'. Available: {available}")
    return FETCHER_REGISTRY[name](api_key=api_key, **kwargs)


def get_available_fetchers() -> list[str]:
    """Get list of available fetcher names.

    :returns: Sorted list of registered fetcher names.
    """
    return sorted(FETCHER_REGISTRY.keys())
