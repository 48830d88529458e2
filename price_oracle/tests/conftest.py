"""Shared pytest fixtures for the price oracle tests."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from price_oracle.src.errors import DeliveryError
from price_oracle.src.fetchers.base import BaseFetcher, ProviderError
from price_oracle.src.models import DeliveryMethod, Quote
from price_oracle.src.notifiers import BaseNotifier, DeliveryResult

START = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, **kwargs) -> datetime:
        self.now += timedelta(seconds=seconds, **kwargs)
        return self.now


class StaticFetcher(BaseFetcher):
    """In-memory provider answering from a price table.

    Not registered, so it never shows up in the fetcher registry.
    """

    def __init__(self, name: str, prices: dict | None = None, fail: bool = False, **kwargs) -> None:
        super().__init__(**kwargs)
        self.name = name
        self.prices = dict(prices or {})
        self.fail = fail
        self.calls = 0

    async def fetch(self, asset_id: str, currency: str) -> Quote:
        self.calls += 1
        if self.fail:
            raise ProviderError(self.name, "service unavailable")
        price = self.prices.get((asset_id, currency))
        if price is None:
            raise ProviderError(self.name, f"no market for {asset_id}/{currency}")
        return self._quote(asset_id, currency, price)


class RecordingNotifier(BaseNotifier):
    """Notifier that records deliveries and optionally fails them."""

    method = DeliveryMethod.WEBHOOK

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.sent: list[str] = []

    async def send(self, subscription, task) -> DeliveryResult:
        self.sent.append(task.task_id)
        await asyncio.sleep(0)
        if self.fail:
            raise DeliveryError("HTTP 500: boom", status_code=500)
        return DeliveryResult(status_code=200)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def static_fetchers() -> dict[str, StaticFetcher]:
    """Three agreeing providers quoting btc/usd."""
    return {
        "alpha": StaticFetcher("alpha", {("btc", "usd"): "100"}),
        "beta": StaticFetcher("beta", {("btc", "usd"): "101"}),
        "gamma": StaticFetcher("gamma", {("btc", "usd"): "102"}),
    }
