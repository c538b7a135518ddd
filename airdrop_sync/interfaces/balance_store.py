"""Balance store protocol: remote row storage for balances."""
from typing import Protocol

from ..models import Balance


class BalanceStore(Protocol):
    """Abstract interface for reading a user's balance rows."""

    async def fetch_balances(self, user_id: str) -> list[Balance]: ...
