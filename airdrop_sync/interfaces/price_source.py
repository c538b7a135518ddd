"""Price source protocol: one external quote endpoint."""
from typing import Protocol

from ..models import Quote


class PriceSource(Protocol):
    """Abstract interface for fetching quotes from one provider."""

    @property
    def name(self) -> str: ...

    async def fetch_quotes(self, symbols: list[str]) -> dict[str, Quote]: ...
