"""Stateless USD valuation of balances against a price lookup."""
from __future__ import annotations

from typing import Callable, Iterable, Optional

from ..models import Balance

PriceLookup = Callable[[str], Optional[float]]


def with_fixed_prices(
    fixed: dict[str, float], lookup: Optional[PriceLookup] = None
) -> PriceLookup:
    """Price lookup that consults ``lookup`` first, then the fixed table."""

    def price_of(token: str) -> Optional[float]:
        if lookup is not None:
            price = lookup(token)
            if price is not None and price > 0:
                return price
        return fixed.get(token)

    return price_of


def usd_value(amount: float, price: Optional[float]) -> float:
    if price is None or price <= 0:
        return 0.0
    return amount * price


def portfolio_value(balances: Iterable[Balance], price_of: PriceLookup) -> float:
    """Sum of amount x price; unpriced tokens contribute 0."""
    return sum(usd_value(b.amount, price_of(b.token)) for b in balances)
