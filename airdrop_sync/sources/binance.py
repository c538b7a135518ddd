"""Binance 24h ticker source (one request per trading pair)."""
from __future__ import annotations

import asyncio
import logging
from typing import Any

from ..config import PriceSourceConfig
from ..errors import RateLimitedError
from ..models import Quote
from .base import fetch_json, open_session, to_float

logger = logging.getLogger(__name__)


def parse_ticker(symbol: str, ticker: Any) -> Quote | None:
    """Normalize one ``ticker/24hr`` payload; change is derived from prevClosePrice."""
    if not isinstance(ticker, dict):
        return None
    price = to_float(ticker.get("lastPrice"))
    if price <= 0:
        return None
    prev_close = to_float(ticker.get("prevClosePrice"), default=price)
    change = ((price - prev_close) / prev_close) * 100 if prev_close > 0 else 0.0
    return Quote(symbol=symbol, price=price, change_24h=change)


class BinanceSource:
    """Fetch USD(T) quotes from Binance, one pair per request."""

    def __init__(self, config: PriceSourceConfig, name: str = "binance") -> None:
        self.name = name
        self.url = config.url
        self.timeout = config.timeout_seconds
        self.pairs = dict(config.ids)
        self.pegged = dict(config.pegged)

    async def fetch_quotes(self, symbols: list[str]) -> dict[str, Quote]:
        quotes: dict[str, Quote] = {}
        pairs = {s: self.pairs[s] for s in symbols if s in self.pairs}

        if pairs:
            async with open_session(self.timeout) as session:
                results = await asyncio.gather(
                    *(
                        fetch_json(session, self.url, {"symbol": pair}, self.name)
                        for pair in pairs.values()
                    ),
                    return_exceptions=True,
                )

            errors: list[BaseException] = []
            for symbol, result in zip(pairs, results):
                if isinstance(result, BaseException):
                    logger.warning("Binance fetch failed for %s: %s", symbol, result)
                    errors.append(result)
                    continue
                quote = parse_ticker(symbol, result)
                if quote is not None:
                    quotes[symbol] = quote

            if not quotes and errors:
                rate_limited = [e for e in errors if isinstance(e, RateLimitedError)]
                raise (rate_limited or errors)[-1]

        # Stablecoins are answered at their peg without a request
        for symbol in symbols:
            if symbol in self.pegged and symbol not in quotes:
                quotes[symbol] = Quote(symbol=symbol, price=self.pegged[symbol])

        logger.debug("Binance returned %d quotes", len(quotes))
        return quotes
