"""Per-user balance snapshot kept fresh by realtime push with polling fallback."""
from __future__ import annotations

import asyncio
import functools
import logging
from typing import Any, Callable, Optional

from ..config import BalanceSyncConfig
from ..errors import is_not_found
from ..interfaces.balance_store import BalanceStore
from ..interfaces.change_feed import ChangeFeed, Subscription
from ..models import Balance, ChangeEvent, FeedStatus, SyncState
from ..resilience import Sleep, retry_with_delays
from .portfolio import PriceLookup, portfolio_value, with_fixed_prices

logger = logging.getLogger(__name__)

BalanceListener = Callable[[dict[str, Balance]], None]


class BalanceSynchronizer:
    """Authoritative local view of one user's token balances.

    The snapshot is only replaced by a successful read and is cleared only
    when the session user actually changes.
    """

    def __init__(
        self,
        store: BalanceStore,
        config: BalanceSyncConfig,
        feed: Optional[ChangeFeed] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._store = store
        self._feed = feed
        self._config = config
        self._sleep = sleep

        self._user_id: Optional[str] = None
        self._balances: dict[str, Balance] = {}
        self._loading = False
        self._loaded = False

        # Load sequencing: a completion older than the last applied one is dropped
        self._last_seq = 0
        self._applied_seq = 0

        # Serializes teardown and subscribe across overlapping session changes
        self._transition_lock = asyncio.Lock()
        self._subscription: Optional[Subscription] = None
        self._generation = 0
        self._tearing_down = False
        self._feed_healthy = False
        self._poll_task: Optional[asyncio.Task[None]] = None

        self._refresh_task: Optional[asyncio.Task[None]] = None
        self._refresh_pending = False
        self._listeners: list[BalanceListener] = []

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def user_id(self) -> Optional[str]:
        return self._user_id

    @property
    def balances(self) -> dict[str, Balance]:
        return dict(self._balances)

    @property
    def loading(self) -> bool:
        return self._loading

    @property
    def polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    @property
    def feed_healthy(self) -> bool:
        return self._feed_healthy

    @property
    def state(self) -> SyncState:
        if self._user_id is None:
            return SyncState.IDLE
        if not self._loaded:
            return SyncState.LOADING
        if self.polling:
            return SyncState.DEGRADED
        return SyncState.FRESH

    def get_balance(self, token: str) -> float:
        balance = self._balances.get(token)
        return balance.amount if balance is not None else 0.0

    def get_total_value(self, price_of: Optional[PriceLookup] = None) -> float:
        lookup = with_fixed_prices(
            {self._config.primary_token: self._config.primary_token_price}, price_of
        )
        return portfolio_value(self._balances.values(), lookup)

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def add_listener(self, listener: BalanceListener) -> Callable[[], None]:
        """Register a snapshot observer; returns a callable that removes it."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _notify(self) -> None:
        snapshot = self.balances
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as e:
                logger.error("Balance listener failed: %s", e)

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    async def load(self, show_loading: bool = False, attempt: int = 0) -> bool:
        """Read the full balance set for the current user.

        Retries on the fixed delay table, then gives up and keeps the last
        good snapshot. Returns True when the snapshot was replaced.
        """
        user_id = self._user_id
        if user_id is None:
            return False

        self._last_seq += 1
        seq = self._last_seq
        if show_loading and attempt == 0:
            self._loading = True

        try:
            balances = await retry_with_delays(
                functools.partial(self._store.fetch_balances, user_id),
                self._config.retry_delays,
                start_attempt=attempt,
                sleep=self._sleep,
                label="balance load",
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if not is_not_found(e):
                logger.warning(
                    "Error loading balances after retries (keeping existing data): %s", e
                )
            return False
        finally:
            if show_loading and self._user_id == user_id:
                self._loading = False

        return self._apply(seq, user_id, balances)

    def _apply(self, seq: int, user_id: str, balances: list[Balance]) -> bool:
        if user_id != self._user_id:
            logger.debug("Discarding balances loaded for previous user %s", user_id)
            return False
        if seq <= self._applied_seq:
            logger.debug("Discarding stale balance load #%d (applied #%d)", seq, self._applied_seq)
            return False
        if not balances and self._balances:
            logger.debug("Empty balance read ignored; keeping %d rows", len(self._balances))
            return False

        self._applied_seq = seq
        self._balances = {b.token: b for b in balances}
        self._loaded = True
        primary = self._balances.get(self._config.primary_token)
        if primary is not None:
            logger.debug("%s balance loaded: %s", primary.token, primary.amount)
        self._notify()
        return True

    # ------------------------------------------------------------------
    # External refresh (coalesced)
    # ------------------------------------------------------------------

    def on_external_mutation(self) -> None:
        """Signal that another component just wrote a balance change.

        Rapid signals coalesce into one in-flight refresh plus one queued.
        """
        if self._user_id is None:
            return
        if self._refresh_task is not None and not self._refresh_task.done():
            self._refresh_pending = True
            return
        self._refresh_task = asyncio.create_task(self._coalesced_refresh())

    async def _coalesced_refresh(self) -> None:
        while True:
            self._refresh_pending = False
            await self.load(False)
            if not self._refresh_pending:
                break

    async def trigger_external_refresh(self) -> None:
        """Signal a mutation and wait for the resulting background refresh.

        Returns normally when a session change or ``close()`` cancels the
        shared refresh; only cancelling the caller itself raises.
        """
        self.on_external_mutation()
        task = self._refresh_task
        if task is not None:
            await asyncio.wait({task})

    # ------------------------------------------------------------------
    # Push subscription and polling fallback
    # ------------------------------------------------------------------

    async def subscribe(self, user_id: str) -> None:
        """Open the change feed for ``user_id``; fall back to polling on failure."""
        async with self._transition_lock:
            await self._subscribe(user_id)

    async def _subscribe(self, user_id: str) -> None:
        await self._teardown_subscription()
        self._generation += 1
        generation = self._generation
        self._tearing_down = False

        if self._feed is None:
            logger.info("No realtime feed configured, polling balances")
            self._start_polling()
            return

        try:
            subscription = await asyncio.wait_for(
                self._feed.subscribe(
                    "balances",
                    f"user_id=eq.{user_id}",
                    functools.partial(self._handle_change, generation),
                    functools.partial(self._handle_status, generation),
                ),
                self._config.subscribe_timeout_seconds,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Failed to set up realtime subscription, using polling: %s", e)
            self._start_polling()
            return

        if generation != self._generation:
            # Superseded while the channel was opening
            logger.debug("Dropping realtime subscription for superseded session %s", user_id)
            await _unsubscribe(subscription)
            return
        self._subscription = subscription

    def _handle_change(self, generation: int, event: ChangeEvent) -> None:
        if generation != self._generation or self._tearing_down:
            return
        logger.info("Balance changed (%s)", event.event_type)
        self.on_external_mutation()

    def _handle_status(self, generation: int, status: FeedStatus) -> None:
        if generation != self._generation or self._tearing_down:
            return

        if status == FeedStatus.SUBSCRIBED:
            logger.info("Balance real-time subscription active")
            self._feed_healthy = True
            self._stop_polling()
        elif status in (FeedStatus.CHANNEL_ERROR, FeedStatus.TIMED_OUT):
            logger.warning(
                "Balance real-time subscription failed (%s), using polling fallback",
                status.value,
            )
            self._feed_healthy = False
            self._start_polling()
        elif status == FeedStatus.CLOSED:
            logger.info("Balance real-time channel closed unexpectedly, polling until it recovers")
            self._feed_healthy = False
            self._start_polling()

    def _start_polling(self) -> None:
        if self.polling or self._tearing_down:
            return
        self._poll_task = asyncio.create_task(self._poll_loop())

    def _stop_polling(self) -> None:
        if self._poll_task is not None:
            self._poll_task.cancel()
            self._poll_task = None

    async def _poll_loop(self) -> None:
        interval = self._config.poll_interval_seconds
        logger.info("Polling balances every %.0f seconds", interval)
        while True:
            await self._sleep(interval)
            await self.load(False)

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    async def set_user(self, user_id: Optional[str]) -> None:
        """Apply a session transition.

        Same user (e.g. token refresh): background refresh, snapshot kept.
        Different user: teardown, clear, subscribe and load. None: Idle.
        Overlapping calls are applied one after another in call order.
        """
        async with self._transition_lock:
            if user_id == self._user_id:
                if user_id is not None:
                    self.on_external_mutation()
                return

            await self._teardown()
            self._balances = {}
            self._loaded = False
            self._loading = False
            self._applied_seq = self._last_seq
            self._user_id = user_id
            self._notify()

            if user_id is None:
                logger.info("Session ended; balance snapshot cleared")
                return

            self._loading = True
            await self._subscribe(user_id)

        if self._user_id == user_id:
            await self.load(show_loading=True)

    async def _teardown_subscription(self) -> None:
        subscription = self._subscription
        self._subscription = None
        self._feed_healthy = False
        if subscription is None:
            return
        self._tearing_down = True
        await _unsubscribe(subscription)

    async def _teardown(self) -> None:
        await self._teardown_subscription()
        self._generation += 1
        self._tearing_down = True
        self._stop_polling()
        await _cancel(self._refresh_task)
        self._refresh_task = None
        self._refresh_pending = False

    async def close(self) -> None:
        """Stop the feed, polling and background refreshes."""
        async with self._transition_lock:
            await self._teardown()


async def _unsubscribe(subscription: Subscription) -> None:
    try:
        await subscription.unsubscribe()
    except Exception as e:
        logger.debug("Error removing realtime subscription: %s", e)


async def _cancel(task: Optional[asyncio.Task[Any]]) -> None:
    if task is None or task.done():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
