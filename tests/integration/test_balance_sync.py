"""Integration tests for BalanceSynchronizer: session flow, retries, push and polling."""
from __future__ import annotations

import asyncio
import logging
from typing import Callable

import pytest

from conftest import FakeBalanceStore, FakeFeed, RecordingSleep, make_balance

from airdrop_sync.config import BalanceSyncConfig
from airdrop_sync.errors import StoreError
from airdrop_sync.models import Balance, FeedStatus, SyncState
from airdrop_sync.services.balance_sync import BalanceSynchronizer


class ControlledStore:
    """Each read blocks until the test resolves its future."""

    def __init__(self) -> None:
        self.pending: list[asyncio.Future[list[Balance]]] = []

    async def fetch_balances(self, user_id: str) -> list[Balance]:
        future: asyncio.Future[list[Balance]] = asyncio.get_running_loop().create_future()
        self.pending.append(future)
        return await future


class GatedStore(FakeBalanceStore):
    """Reads wait on ``gate`` before returning ``rows``."""

    def __init__(self) -> None:
        super().__init__([make_balance("ZENTRA", 1.0)])
        self.gate = asyncio.Event()

    async def fetch_balances(self, user_id: str) -> list[Balance]:
        await self.gate.wait()
        return await super().fetch_balances(user_id)


class PerUserStore:
    def __init__(self, rows: dict[str, list[Balance]]) -> None:
        self.rows = rows

    async def fetch_balances(self, user_id: str) -> list[Balance]:
        await asyncio.sleep(0)
        return list(self.rows.get(user_id, []))


async def wait_until(predicate: Callable[[], bool], ticks: int = 200) -> None:
    for _ in range(ticks):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


@pytest.fixture()
def sync(
    balance_store: FakeBalanceStore,
    balance_config: BalanceSyncConfig,
    feed: FakeFeed,
    sleeper: RecordingSleep,
) -> BalanceSynchronizer:
    return BalanceSynchronizer(balance_store, balance_config, feed=feed, sleep=sleeper)


class TestLoad:
    @pytest.mark.asyncio
    async def test_initial_load(self, sync: BalanceSynchronizer, feed: FakeFeed) -> None:
        await sync.set_user("user-a")

        assert sync.get_balance("ZENTRA") == 100.0
        assert sync.get_balance("ETH") == 2.0
        assert sync.get_balance("BTC") == 0.0
        assert sync.loading is False
        assert sync.state == SyncState.FRESH
        assert feed.filters == ["user_id=eq.user-a"]
        await sync.close()

    @pytest.mark.asyncio
    async def test_retries_on_delay_table(
        self,
        sync: BalanceSynchronizer,
        balance_store: FakeBalanceStore,
        sleeper: RecordingSleep,
    ) -> None:
        balance_store.queue = [ConnectionError("reset"), ConnectionError("reset")]

        await sync.set_user("user-a")

        assert sleeper.delays == [1.0, 2.0]
        assert len(balance_store.calls) == 3
        assert sync.get_balance("ZENTRA") == 100.0
        await sync.close()

    @pytest.mark.asyncio
    async def test_exhausted_retries_keep_snapshot(
        self,
        sync: BalanceSynchronizer,
        balance_store: FakeBalanceStore,
        sleeper: RecordingSleep,
    ) -> None:
        await sync.set_user("user-a")
        balance_store.queue = [ConnectionError("down")] * 4

        assert await sync.load() is False

        assert sleeper.delays == [1.0, 2.0, 3.0]
        assert sync.get_balance("ZENTRA") == 100.0
        assert sync.get_balance("ETH") == 2.0
        await sync.close()

    @pytest.mark.asyncio
    async def test_empty_read_keeps_snapshot(
        self, sync: BalanceSynchronizer, balance_store: FakeBalanceStore
    ) -> None:
        await sync.set_user("user-a")
        balance_store.queue = [[]]

        assert await sync.load() is False
        assert sync.get_balance("ZENTRA") == 100.0
        await sync.close()

    @pytest.mark.asyncio
    async def test_empty_first_read_is_fresh(
        self, balance_config: BalanceSyncConfig, feed: FakeFeed
    ) -> None:
        sync = BalanceSynchronizer(FakeBalanceStore(), balance_config, feed=feed)

        await sync.set_user("user-a")

        assert sync.balances == {}
        assert sync.state == SyncState.FRESH
        await sync.close()

    @pytest.mark.asyncio
    async def test_not_found_is_not_logged(
        self,
        sync: BalanceSynchronizer,
        balance_store: FakeBalanceStore,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        await sync.set_user("user-a")
        balance_store.queue = [StoreError("no rows", code="PGRST116")] * 4

        with caplog.at_level(logging.WARNING, logger="airdrop_sync.services.balance_sync"):
            assert await sync.load() is False

        assert not [r for r in caplog.records if r.levelno >= logging.WARNING]
        await sync.close()

    @pytest.mark.asyncio
    async def test_loading_flag_while_in_flight(
        self, balance_config: BalanceSyncConfig, feed: FakeFeed
    ) -> None:
        store = ControlledStore()
        sync = BalanceSynchronizer(store, balance_config, feed=feed)

        task = asyncio.create_task(sync.set_user("user-a"))
        await wait_until(lambda: len(store.pending) == 1)
        assert sync.loading is True
        assert sync.state == SyncState.LOADING

        store.pending[0].set_result([make_balance("ZENTRA", 5.0)])
        await task

        assert sync.loading is False
        assert sync.state == SyncState.FRESH
        await sync.close()


class TestStaleLoads:
    @pytest.mark.asyncio
    async def test_older_completion_is_discarded(
        self, balance_config: BalanceSyncConfig, feed: FakeFeed
    ) -> None:
        store = ControlledStore()
        sync = BalanceSynchronizer(store, balance_config, feed=feed)
        setup = asyncio.create_task(sync.set_user("user-a"))
        await wait_until(lambda: len(store.pending) == 1)
        store.pending[0].set_result([make_balance("ZENTRA", 100.0)])
        await setup

        first = asyncio.create_task(sync.load())
        await wait_until(lambda: len(store.pending) == 2)
        second = asyncio.create_task(sync.load())
        await wait_until(lambda: len(store.pending) == 3)

        store.pending[2].set_result([make_balance("ZENTRA", 300.0)])
        assert await second is True
        store.pending[1].set_result([make_balance("ZENTRA", 200.0)])
        assert await first is False

        assert sync.get_balance("ZENTRA") == 300.0
        await sync.close()

    @pytest.mark.asyncio
    async def test_load_for_previous_user_is_discarded(
        self, balance_config: BalanceSyncConfig, feed: FakeFeed
    ) -> None:
        store = ControlledStore()
        sync = BalanceSynchronizer(store, balance_config, feed=feed)
        setup = asyncio.create_task(sync.set_user("user-a"))
        await wait_until(lambda: len(store.pending) == 1)
        store.pending[0].set_result([make_balance("ZENTRA", 100.0)])
        await setup

        stale = asyncio.create_task(sync.load())
        await wait_until(lambda: len(store.pending) == 2)
        switch = asyncio.create_task(sync.set_user("user-b"))
        await wait_until(lambda: len(store.pending) == 3)
        store.pending[2].set_result([make_balance("ZENTRA", 7.0, user_id="user-b")])
        await switch

        store.pending[1].set_result([make_balance("ZENTRA", 999.0)])
        assert await stale is False

        assert sync.user_id == "user-b"
        assert sync.get_balance("ZENTRA") == 7.0
        await sync.close()

    @pytest.mark.asyncio
    async def test_load_from_before_sign_out_is_discarded_on_return(
        self, balance_config: BalanceSyncConfig, feed: FakeFeed
    ) -> None:
        store = ControlledStore()
        sync = BalanceSynchronizer(store, balance_config, feed=feed)
        seen: list[dict[str, Balance]] = []
        sync.add_listener(seen.append)
        setup = asyncio.create_task(sync.set_user("user-a"))
        await wait_until(lambda: len(store.pending) == 1)
        store.pending[0].set_result([make_balance("ZENTRA", 100.0)])
        await setup

        stale = asyncio.create_task(sync.load())
        await wait_until(lambda: len(store.pending) == 2)
        await sync.set_user(None)
        back = asyncio.create_task(sync.set_user("user-a"))
        await wait_until(lambda: len(store.pending) == 3)

        store.pending[1].set_result([make_balance("ZENTRA", 999.0)])
        assert await stale is False
        store.pending[2].set_result([make_balance("ZENTRA", 120.0)])
        await back

        assert sync.get_balance("ZENTRA") == 120.0
        assert all(s.get("ZENTRA") is None or s["ZENTRA"].amount != 999.0 for s in seen)
        await sync.close()


class TestSession:
    @pytest.mark.asyncio
    async def test_user_switch_clears_and_resubscribes(
        self,
        sync: BalanceSynchronizer,
        balance_store: FakeBalanceStore,
        feed: FakeFeed,
    ) -> None:
        snapshots: list[dict[str, Balance]] = []
        sync.add_listener(snapshots.append)
        await sync.set_user("user-a")
        old = feed.latest

        balance_store.rows = [make_balance("ZENTRA", 5.0, user_id="user-b")]
        await sync.set_user("user-b")

        assert old.unsubscribed is True
        assert feed.filters == ["user_id=eq.user-a", "user_id=eq.user-b"]
        assert {} in snapshots
        assert sync.get_balance("ZENTRA") == 5.0
        assert sync.get_balance("ETH") == 0.0
        # CLOSED emitted by the old channel during teardown is not a failure
        assert sync.polling is False
        await sync.close()

    @pytest.mark.asyncio
    async def test_same_user_keeps_snapshot(
        self, sync: BalanceSynchronizer, balance_store: FakeBalanceStore, feed: FakeFeed
    ) -> None:
        await sync.set_user("user-a")
        balance_store.rows = [make_balance("ZENTRA", 150.0)]

        await sync.set_user("user-a")

        assert sync.get_balance("ZENTRA") == 100.0
        assert len(feed.subscriptions) == 1
        await sync.trigger_external_refresh()
        assert sync.get_balance("ZENTRA") == 150.0
        await sync.close()

    @pytest.mark.asyncio
    async def test_sign_out_goes_idle(self, sync: BalanceSynchronizer, feed: FakeFeed) -> None:
        await sync.set_user("user-a")

        await sync.set_user(None)

        assert sync.state == SyncState.IDLE
        assert sync.balances == {}
        assert feed.latest.unsubscribed is True
        assert sync.polling is False

    @pytest.mark.asyncio
    async def test_listener_removal(self, sync: BalanceSynchronizer) -> None:
        seen: list[dict[str, Balance]] = []
        remove = sync.add_listener(seen.append)
        await sync.set_user("user-a")
        count = len(seen)

        remove()
        await sync.load()

        assert len(seen) == count
        await sync.close()


class TestFeedStatus:
    @pytest.mark.asyncio
    async def test_channel_error_starts_polling_until_subscribed(
        self, sync: BalanceSynchronizer, feed: FakeFeed, sleeper: RecordingSleep
    ) -> None:
        await sync.set_user("user-a")

        feed.latest.emit_status(FeedStatus.CHANNEL_ERROR)
        assert sync.polling is True
        assert sync.state == SyncState.DEGRADED
        await wait_until(lambda: 30.0 in sleeper.delays)

        feed.latest.emit_status(FeedStatus.SUBSCRIBED)
        assert sync.polling is False
        assert sync.feed_healthy is True
        assert sync.state == SyncState.FRESH
        await sync.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [FeedStatus.TIMED_OUT, FeedStatus.CLOSED])
    async def test_other_failures_start_polling(
        self, sync: BalanceSynchronizer, feed: FakeFeed, status: FeedStatus
    ) -> None:
        await sync.set_user("user-a")
        feed.latest.emit_status(FeedStatus.SUBSCRIBED)

        feed.latest.emit_status(status)

        assert sync.polling is True
        assert sync.feed_healthy is False
        await sync.close()
        assert sync.polling is False

    @pytest.mark.asyncio
    async def test_polling_reloads_balances(
        self,
        balance_store: FakeBalanceStore,
        balance_config: BalanceSyncConfig,
        feed: FakeFeed,
    ) -> None:
        sync = BalanceSynchronizer(
            balance_store, balance_config, feed=feed, sleep=RecordingSleep(block_at=100.0)
        )
        await sync.set_user("user-a")

        feed.latest.emit_status(FeedStatus.CHANNEL_ERROR)
        await wait_until(lambda: len(balance_store.calls) >= 3)

        feed.latest.emit_status(FeedStatus.SUBSCRIBED)
        assert sync.polling is False
        await sync.close()

    @pytest.mark.asyncio
    async def test_stale_subscription_callbacks_ignored(
        self, sync: BalanceSynchronizer, balance_store: FakeBalanceStore, feed: FakeFeed
    ) -> None:
        await sync.set_user("user-a")
        old = feed.latest
        await sync.set_user("user-b")
        calls = len(balance_store.calls)

        old.emit_status(FeedStatus.CHANNEL_ERROR)
        old.emit_change()
        await asyncio.sleep(0)

        assert sync.polling is False
        assert len(balance_store.calls) == calls
        await sync.close()

    @pytest.mark.asyncio
    async def test_subscribe_failure_falls_back_to_polling(
        self, balance_store: FakeBalanceStore, balance_config: BalanceSyncConfig
    ) -> None:
        sync = BalanceSynchronizer(
            balance_store, balance_config, feed=FakeFeed(error=ConnectionError("ws down")),
            sleep=RecordingSleep(),
        )

        await sync.set_user("user-a")

        assert sync.polling is True
        assert sync.get_balance("ZENTRA") == 100.0
        assert sync.state == SyncState.DEGRADED
        await sync.close()

    @pytest.mark.asyncio
    async def test_no_feed_polls(
        self, balance_store: FakeBalanceStore, balance_config: BalanceSyncConfig
    ) -> None:
        sync = BalanceSynchronizer(balance_store, balance_config, sleep=RecordingSleep())

        await sync.set_user("user-a")

        assert sync.polling is True
        await sync.close()


class TestExternalRefresh:
    @pytest.mark.asyncio
    async def test_change_event_triggers_reload(
        self, sync: BalanceSynchronizer, balance_store: FakeBalanceStore, feed: FakeFeed
    ) -> None:
        await sync.set_user("user-a")
        balance_store.rows = [make_balance("ZENTRA", 250.0)]

        feed.latest.emit_change("UPDATE")
        await wait_until(lambda: sync.get_balance("ZENTRA") == 250.0)

        assert len(balance_store.calls) == 2
        await sync.close()

    @pytest.mark.asyncio
    async def test_burst_before_start_collapses(
        self, sync: BalanceSynchronizer, balance_store: FakeBalanceStore
    ) -> None:
        await sync.set_user("user-a")

        for _ in range(5):
            sync.on_external_mutation()
        await sync.trigger_external_refresh()

        assert len(balance_store.calls) == 2
        await sync.close()

    @pytest.mark.asyncio
    async def test_signals_during_flight_queue_one_more(
        self, balance_config: BalanceSyncConfig, feed: FakeFeed
    ) -> None:
        store = GatedStore()
        sync = BalanceSynchronizer(store, balance_config, feed=feed)
        store.gate.set()
        await sync.set_user("user-a")
        store.gate.clear()

        sync.on_external_mutation()
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        for _ in range(3):
            sync.on_external_mutation()
        store.gate.set()
        await sync.trigger_external_refresh()

        assert len(store.calls) == 3
        await sync.close()

    @pytest.mark.asyncio
    async def test_no_user_no_refresh(
        self, sync: BalanceSynchronizer, balance_store: FakeBalanceStore
    ) -> None:
        await sync.trigger_external_refresh()
        assert balance_store.calls == []


class TestValuation:
    @pytest.mark.asyncio
    async def test_total_value(self, sync: BalanceSynchronizer) -> None:
        await sync.set_user("user-a")

        total = sync.get_total_value({"ETH": 3500.0}.get)

        # ZENTRA at the fixed 0.5 plus 2 ETH
        assert total == pytest.approx(100.0 * 0.5 + 2.0 * 3500.0)
        await sync.close()

    @pytest.mark.asyncio
    async def test_unpriced_tokens_count_zero(self, sync: BalanceSynchronizer) -> None:
        await sync.set_user("user-a")
        assert sync.get_total_value() == pytest.approx(50.0)
        await sync.close()


class TestOverlappingTransitions:
    @pytest.mark.asyncio
    async def test_concurrent_switch_keeps_one_subscription(
        self, balance_config: BalanceSyncConfig
    ) -> None:
        feed = FakeFeed(ticks=3)
        store = PerUserStore(
            {
                "user-a": [make_balance("ZENTRA", 100.0)],
                "user-b": [make_balance("ZENTRA", 7.0, user_id="user-b")],
            }
        )
        sync = BalanceSynchronizer(store, balance_config, feed=feed)
        snapshots: list[dict[str, Balance]] = []
        sync.add_listener(snapshots.append)

        await asyncio.gather(sync.set_user("user-a"), sync.set_user("user-b"))

        assert sync.user_id == "user-b"
        assert feed.open_filters == ["user_id=eq.user-b"]
        assert sync.get_balance("ZENTRA") == 7.0
        first_b = next(
            i for i, s in enumerate(snapshots)
            if any(b.user_id == "user-b" for b in s.values())
        )
        assert snapshots[first_b - 1] == {}

        await sync.close()
        assert feed.open_filters == []

    @pytest.mark.asyncio
    async def test_close_while_subscribing_leaves_nothing_open(
        self, balance_store: FakeBalanceStore, balance_config: BalanceSyncConfig
    ) -> None:
        feed = FakeFeed(ticks=3)
        sync = BalanceSynchronizer(balance_store, balance_config, feed=feed)

        task = asyncio.create_task(sync.set_user("user-a"))
        await asyncio.sleep(0)
        await sync.close()
        await task

        assert feed.filters == ["user_id=eq.user-a"]
        assert feed.open_filters == []
        assert sync.polling is False

    @pytest.mark.asyncio
    async def test_refresh_waiter_returns_when_user_switches(
        self, balance_config: BalanceSyncConfig, feed: FakeFeed
    ) -> None:
        store = GatedStore()
        sync = BalanceSynchronizer(store, balance_config, feed=feed)
        store.gate.set()
        await sync.set_user("user-a")
        store.gate.clear()

        waiter = asyncio.create_task(sync.trigger_external_refresh())
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        switch = asyncio.create_task(sync.set_user("user-b"))

        assert await waiter is None
        store.gate.set()
        await switch
        assert sync.user_id == "user-b"
        await sync.close()

    @pytest.mark.asyncio
    async def test_refresh_waiter_returns_on_close(
        self, balance_config: BalanceSyncConfig, feed: FakeFeed
    ) -> None:
        store = GatedStore()
        sync = BalanceSynchronizer(store, balance_config, feed=feed)
        store.gate.set()
        await sync.set_user("user-a")
        store.gate.clear()

        waiter = asyncio.create_task(sync.trigger_external_refresh())
        await asyncio.sleep(0)
        await sync.close()

        assert await waiter is None

    @pytest.mark.asyncio
    async def test_cancelling_the_waiter_still_raises(
        self, balance_config: BalanceSyncConfig, feed: FakeFeed
    ) -> None:
        store = GatedStore()
        sync = BalanceSynchronizer(store, balance_config, feed=feed)
        store.gate.set()
        await sync.set_user("user-a")
        store.gate.clear()

        waiter = asyncio.create_task(sync.trigger_external_refresh())
        await asyncio.sleep(0)
        waiter.cancel()

        with pytest.raises(asyncio.CancelledError):
            await waiter
        store.gate.set()
        await sync.close()
