"""Public price sources."""
from .binance import BinanceSource
from .coincap import CoinCapSource
from .coingecko import CoinGeckoSource

__all__ = ["BinanceSource", "CoinCapSource", "CoinGeckoSource"]
