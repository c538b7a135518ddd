"""Balance mutations (airdrop claims, task rewards) followed by a refresh signal."""
from __future__ import annotations

import logging
from typing import Any, Callable, Optional

from ..errors import LedgerError, StoreError
from ..models import Balance, utcnow
from ..store.postgrest import PostgrestStore
from .portfolio import PriceLookup, usd_value

logger = logging.getLogger(__name__)

MutationListener = Callable[[str], None]


class BalanceLedger:
    """Writes balance, task, airdrop and transaction rows for one store.

    Every mutation, successful or not, ends by notifying the registered
    listeners so that synchronizers reload from the source of truth.
    """

    def __init__(self, store: PostgrestStore, price_of: Optional[PriceLookup] = None) -> None:
        self._store = store
        self._price_of = price_of
        self._balance_listeners: list[MutationListener] = []
        self._transaction_listeners: list[MutationListener] = []

    def on_balance_mutation(self, listener: MutationListener) -> None:
        self._balance_listeners.append(listener)

    def on_transaction(self, listener: MutationListener) -> None:
        self._transaction_listeners.append(listener)

    @staticmethod
    def _fire(listeners: list[MutationListener], user_id: str) -> None:
        for listener in list(listeners):
            try:
                listener(user_id)
            except Exception as e:
                logger.error("Mutation listener failed: %s", e)

    def _usd_value(self, token: str, amount: float) -> float:
        price = self._price_of(token) if self._price_of is not None else None
        return usd_value(amount, price)

    # ------------------------------------------------------------------
    # Core write
    # ------------------------------------------------------------------

    async def credit(
        self, user_id: str, token: str, amount: float, tx_type: str
    ) -> Balance:
        """Add ``amount`` of ``token`` to the user's balance and record a transaction."""
        if amount <= 0:
            raise ValueError(f"Credit amount must be positive, got {amount}")

        try:
            balance = await self._write_balance(user_id, token, amount)
        except StoreError as e:
            logger.error("Error crediting %s %s to %s: %s", amount, token, user_id, e)
            self._fire(self._balance_listeners, user_id)
            raise LedgerError(f"Failed to credit {amount} {token}") from e

        await self._record_transaction(user_id, token, amount, tx_type)
        self._fire(self._balance_listeners, user_id)
        return balance

    async def _write_balance(self, user_id: str, token: str, amount: float) -> Balance:
        existing = await self._store.fetch_balance(user_id, token)
        if existing is not None and existing.id is not None:
            rows = await self._store.update(
                "balances",
                {"balance": existing.amount + amount, "updated_at": utcnow().isoformat()},
                {"id": existing.id},
            )
            row = rows[0] if rows else {
                "user_id": user_id, "token": token,
                "balance": existing.amount + amount, "id": existing.id,
            }
        else:
            row = await self._store.insert(
                "balances", {"user_id": user_id, "token": token, "balance": amount}
            )
        return Balance.from_row(row)

    async def _record_transaction(
        self, user_id: str, token: str, amount: float, tx_type: str
    ) -> None:
        # The balance is already written; a missing activity row is only logged
        try:
            await self._store.insert(
                "transactions",
                {
                    "user_id": user_id,
                    "type": tx_type,
                    "token": token,
                    "amount": amount,
                    "usd_value": self._usd_value(token, amount),
                    "status": "confirmed",
                },
            )
        except StoreError as e:
            logger.warning("Transaction record failed for %s: %s", user_id, e)
            return
        self._fire(self._transaction_listeners, user_id)

    # ------------------------------------------------------------------
    # Flows
    # ------------------------------------------------------------------

    async def claim_airdrop(self, user_id: str, airdrop_id: str) -> Balance:
        """Mark a pending airdrop claimed and credit its amount."""
        try:
            airdrop: dict[str, Any] = await self._store.select(
                "airdrops", {"id": airdrop_id, "user_id": user_id}, single=True
            )
        except StoreError as e:
            if e.is_not_found():
                raise LedgerError(f"Airdrop {airdrop_id} not found") from e
            raise LedgerError(f"Failed to load airdrop {airdrop_id}") from e

        if airdrop.get("status") != "pending":
            raise LedgerError(f"Airdrop {airdrop_id} is not pending")

        try:
            await self._store.update(
                "airdrops",
                {"status": "claimed", "claimed_at": utcnow().isoformat()},
                {"id": airdrop_id},
            )
        except StoreError as e:
            self._fire(self._balance_listeners, user_id)
            raise LedgerError(f"Failed to claim airdrop {airdrop_id}") from e

        token = str(airdrop.get("token", ""))
        amount = float(airdrop.get("amount") or 0.0)
        balance = await self.credit(user_id, token, amount, "airdrop")
        logger.info("Airdrop claimed: %s received %s %s", user_id, amount, token)
        return balance

    async def complete_task(
        self, user_id: str, task_type: str, reward_amount: float, token: str = "ZENTRA"
    ) -> Balance:
        """Mark a task completed (creating it if needed) and credit the reward."""
        now = utcnow().isoformat()
        try:
            existing = await self._store.select(
                "tasks", {"user_id": user_id, "task_type": task_type}
            )
            if existing:
                if existing[0].get("status") == "completed":
                    raise LedgerError(f"Task {task_type} already completed")
                await self._store.update(
                    "tasks",
                    {"status": "completed", "completed_at": now},
                    {"id": existing[0]["id"]},
                )
            else:
                await self._store.insert(
                    "tasks",
                    {
                        "user_id": user_id,
                        "task_type": task_type,
                        "task_data": {},
                        "reward_amount": reward_amount,
                        "status": "completed",
                        "completed_at": now,
                    },
                )
        except StoreError as e:
            self._fire(self._balance_listeners, user_id)
            raise LedgerError(f"Failed to complete task {task_type}") from e

        balance = await self.credit(user_id, token, reward_amount, "task_reward")
        logger.info("Task %s completed: %s earned %s %s", task_type, user_id, reward_amount, token)
        return balance
