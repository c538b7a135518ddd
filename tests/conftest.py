"""Shared test fixtures, fakes and sample data."""
from __future__ import annotations

import asyncio
import textwrap
from pathlib import Path
from typing import Any, Callable, Optional

import pytest

from airdrop_sync.config import (
    BalanceSyncConfig,
    CircuitBreakerConfig,
    PricesConfig,
    RetryConfig,
    StoreConfig,
)
from airdrop_sync.models import Balance, ChangeEvent, FeedStatus, Quote


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Records requested delays; delays >= ``block_at`` never return."""

    def __init__(self, block_at: float = 10.0) -> None:
        self.delays: list[float] = []
        self.block_at = block_at

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        if delay >= self.block_at:
            await asyncio.Event().wait()
        await asyncio.sleep(0)


class FakeSource:
    def __init__(
        self,
        name: str,
        quotes: Optional[dict[str, float]] = None,
        error: Optional[BaseException] = None,
    ) -> None:
        self.name = name
        self.prices = quotes or {}
        self.error = error
        self.calls = 0

    async def fetch_quotes(self, symbols: list[str]) -> dict[str, Quote]:
        self.calls += 1
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        return {
            s: Quote(symbol=s, price=p, change_24h=0.5)
            for s, p in self.prices.items()
            if s in symbols
        }


class FakeBalanceStore:
    """Returns queued results in order (lists or exceptions), then ``rows``."""

    def __init__(self, rows: Optional[list[Balance]] = None) -> None:
        self.rows = rows or []
        self.queue: list[Any] = []
        self.calls: list[str] = []

    async def fetch_balances(self, user_id: str) -> list[Balance]:
        self.calls.append(user_id)
        await asyncio.sleep(0)
        if self.queue:
            item = self.queue.pop(0)
            if isinstance(item, BaseException):
                raise item
            return list(item)
        return list(self.rows)


class FakeSubscription:
    def __init__(
        self, feed: "FakeFeed", row_filter: str, on_change: Callable, on_status: Callable
    ) -> None:
        self.feed = feed
        self.row_filter = row_filter
        self.on_change = on_change
        self.on_status = on_status
        self.unsubscribed = False

    async def unsubscribe(self) -> None:
        self.unsubscribed = True
        # A real channel reports CLOSED while being removed
        self.on_status(FeedStatus.CLOSED)

    def emit_status(self, status: FeedStatus) -> None:
        self.on_status(status)

    def emit_change(self, event_type: str = "UPDATE") -> None:
        self.on_change(ChangeEvent(event_type=event_type, table="balances"))


class FakeFeed:
    """Change feed fake; ``ticks`` yields to the loop before each subscribe completes."""

    def __init__(self, error: Optional[BaseException] = None, ticks: int = 0) -> None:
        self.error = error
        self.ticks = ticks
        self.subscriptions: list[FakeSubscription] = []
        self.filters: list[str] = []

    async def subscribe(self, table, row_filter, on_change, on_status) -> FakeSubscription:
        for _ in range(self.ticks):
            await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        self.filters.append(row_filter)
        sub = FakeSubscription(self, row_filter, on_change, on_status)
        self.subscriptions.append(sub)
        return sub

    @property
    def latest(self) -> FakeSubscription:
        return self.subscriptions[-1]

    @property
    def open_filters(self) -> list[str]:
        return [s.row_filter for s in self.subscriptions if not s.unsubscribed]


def make_balance(token: str, amount: float, user_id: str = "user-a") -> Balance:
    return Balance(user_id=user_id, token=token, amount=amount, id=f"{user_id}-{token}")


# ---------------------------------------------------------------------------
# Config fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def prices_config() -> PricesConfig:
    return PricesConfig(
        cache_seconds=30.0,
        circuit_breaker=CircuitBreakerConfig(failure_threshold=3, cooldown_seconds=300.0),
        retry=RetryConfig(max_attempts=2, base_delay_seconds=1.0),
    )


@pytest.fixture()
def balance_config() -> BalanceSyncConfig:
    return BalanceSyncConfig(retry_delays=(1.0, 2.0, 3.0), poll_interval_seconds=30.0)


@pytest.fixture()
def store_config() -> StoreConfig:
    return StoreConfig(url="https://proj.example.co", anon_key="anon-key")


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def sleeper() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture()
def balance_store() -> FakeBalanceStore:
    return FakeBalanceStore(
        rows=[make_balance("ZENTRA", 100.0), make_balance("ETH", 2.0)]
    )


@pytest.fixture()
def feed() -> FakeFeed:
    return FakeFeed()


# ---------------------------------------------------------------------------
# Config YAML fixture
# ---------------------------------------------------------------------------

SAMPLE_YAML = textwrap.dedent("""\
    prices:
      symbols: [BTC, ETH]
      priority: [coingecko, binance]
      cache_seconds: 15
      circuit_breaker:
        failure_threshold: 4
        cooldown_seconds: 60
      retry:
        max_attempts: 3
        base_delay_seconds: 0.5
      sources:
        binance:
          timeout_seconds: 3
      fallback:
        BTC: {price: 90000, change_24h: 1.0}
        ETH: {price: 3000, change_24h: -0.5}
    store:
      url: "https://proj.example.co"
      anon_key: "anon"
    balances:
      retry_delays: [0.5, 1.0]
      poll_interval_seconds: 15
      primary_token: ZENTRA
      primary_token_price: 0.25
""")


@pytest.fixture()
def sample_yaml_path(tmp_path: Path) -> Path:
    cfg_file = tmp_path / "config.yaml"
    cfg_file.write_text(SAMPLE_YAML)
    return cfg_file


# ---------------------------------------------------------------------------
# aiohttp mock helpers
# ---------------------------------------------------------------------------


def mock_response(status: int = 200, data: Any = None):
    from unittest.mock import AsyncMock

    response = AsyncMock()
    response.status = status
    response.json = AsyncMock(return_value=data)
    response.__aenter__ = AsyncMock(return_value=response)
    response.__aexit__ = AsyncMock(return_value=None)
    return response


def mock_session(method: str = "get", **kwargs: Any):
    from unittest.mock import AsyncMock, MagicMock

    session = AsyncMock()
    setattr(session, method, MagicMock(**kwargs))
    session.__aenter__ = AsyncMock(return_value=session)
    session.__aexit__ = AsyncMock(return_value=None)
    return session
