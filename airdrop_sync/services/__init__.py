"""Service modules"""
from .balance_sync import BalanceSynchronizer
from .ledger import BalanceLedger
from .price_aggregator import PriceAggregator, PriceState
from .profile import load_profile

__all__ = [
    "BalanceLedger",
    "BalanceSynchronizer",
    "PriceAggregator",
    "PriceState",
    "load_profile",
]
