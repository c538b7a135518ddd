"""Shared HTTP plumbing for the public price endpoints."""
import logging
import ssl
from typing import Any

import aiohttp
import certifi

from ..errors import PriceSourceError, RateLimitedError

logger = logging.getLogger(__name__)

JSON_HEADERS = {"Accept": "application/json"}


def open_session(timeout: float) -> aiohttp.ClientSession:
    """Create a session with a certifi SSL context and a total request timeout."""
    ssl_context = ssl.create_default_context(cafile=certifi.where())
    connector = aiohttp.TCPConnector(ssl=ssl_context)
    return aiohttp.ClientSession(
        connector=connector, timeout=aiohttp.ClientTimeout(total=timeout)
    )


async def fetch_json(
    session: aiohttp.ClientSession,
    url: str,
    params: dict[str, str],
    source: str,
) -> Any:
    """GET ``url`` and decode JSON, raising PriceSourceError on non-200."""
    async with session.get(url, params=params, headers=JSON_HEADERS) as response:
        if response.status == 429:
            raise RateLimitedError(source, "rate limit exceeded (429)", status=429)
        if response.status != 200:
            raise PriceSourceError(
                source, f"HTTP error {response.status}", status=response.status
            )
        return await response.json()


def to_float(value: Any, default: float = 0.0) -> float:
    try:
        if value is None or value == "":
            return default
        return float(value)
    except (TypeError, ValueError):
        return default
