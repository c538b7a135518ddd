"""Protocol interfaces for the price and balance layers."""
from .balance_store import BalanceStore
from .change_feed import ChangeFeed, Subscription
from .price_source import PriceSource

__all__ = ["BalanceStore", "ChangeFeed", "PriceSource", "Subscription"]
