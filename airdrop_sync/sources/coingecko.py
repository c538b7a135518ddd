"""CoinGecko simple-price source."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from ..config import PriceSourceConfig
from ..models import Quote, utcnow
from .base import fetch_json, open_session, to_float

logger = logging.getLogger(__name__)


def parse_simple_price(data: Any, ids: dict[str, str]) -> dict[str, Quote]:
    """Normalize ``{coin_id: {usd, usd_24h_change, last_updated_at}}``."""
    quotes: dict[str, Quote] = {}
    if not isinstance(data, dict):
        return quotes

    for symbol, coin_id in ids.items():
        coin = data.get(coin_id)
        if not isinstance(coin, dict):
            continue
        price = to_float(coin.get("usd"))
        if price <= 0:
            continue
        updated = coin.get("last_updated_at")
        observed_at = (
            datetime.fromtimestamp(int(updated), tz=timezone.utc) if updated else utcnow()
        )
        quotes[symbol] = Quote(
            symbol=symbol,
            price=price,
            change_24h=to_float(coin.get("usd_24h_change")),
            observed_at=observed_at,
        )
    return quotes


class CoinGeckoSource:
    """Fetch USD quotes from the CoinGecko simple/price endpoint."""

    def __init__(self, config: PriceSourceConfig, name: str = "coingecko") -> None:
        self.name = name
        self.url = config.url
        self.timeout = config.timeout_seconds
        self.ids = dict(config.ids)

    async def fetch_quotes(self, symbols: list[str]) -> dict[str, Quote]:
        ids = {s: self.ids[s] for s in symbols if s in self.ids}
        if not ids:
            return {}

        params = {
            "ids": ",".join(ids.values()),
            "vs_currencies": "usd",
            "include_24hr_change": "true",
            "include_last_updated_at": "true",
        }
        async with open_session(self.timeout) as session:
            data = await fetch_json(session, self.url, params, self.name)

        quotes = parse_simple_price(data, ids)
        logger.debug("CoinGecko returned %d quotes", len(quotes))
        return quotes
