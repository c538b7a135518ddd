"""CoinCap assets source."""
from __future__ import annotations

import logging
from typing import Any

from ..config import PriceSourceConfig
from ..models import Quote
from .base import fetch_json, open_session, to_float

logger = logging.getLogger(__name__)


def parse_assets(data: Any, ids: dict[str, str]) -> dict[str, Quote]:
    """Normalize ``{"data": [{id, priceUsd, changePercent24Hr}, ...]}``."""
    quotes: dict[str, Quote] = {}
    rows = data.get("data") if isinstance(data, dict) else None
    if not isinstance(rows, list):
        return quotes

    id_to_symbol = {coin_id: symbol for symbol, coin_id in ids.items()}
    for row in rows:
        if not isinstance(row, dict):
            continue
        symbol = id_to_symbol.get(row.get("id"))
        price = to_float(row.get("priceUsd"))
        if symbol and price > 0:
            quotes[symbol] = Quote(
                symbol=symbol,
                price=price,
                change_24h=to_float(row.get("changePercent24Hr")),
            )
    return quotes


class CoinCapSource:
    """Fetch USD quotes from the CoinCap v2 assets endpoint."""

    def __init__(self, config: PriceSourceConfig, name: str = "coincap") -> None:
        self.name = name
        self.url = config.url
        self.timeout = config.timeout_seconds
        self.ids = dict(config.ids)

    async def fetch_quotes(self, symbols: list[str]) -> dict[str, Quote]:
        ids = {s: self.ids[s] for s in symbols if s in self.ids}
        if not ids:
            return {}

        async with open_session(self.timeout) as session:
            data = await fetch_json(
                session, self.url, {"ids": ",".join(ids.values())}, self.name
            )

        quotes = parse_assets(data, ids)
        logger.debug("CoinCap returned %d quotes", len(quotes))
        return quotes
