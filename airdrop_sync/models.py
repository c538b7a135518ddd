"""Data models: all frozen (immutable)."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value: Any) -> datetime | None:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


@dataclass(frozen=True)
class Quote:
    """Last-known USD price and 24h change for one symbol."""

    symbol: str
    price: float
    change_24h: float = 0.0
    observed_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class PriceSnapshot:
    """Full quote table produced by one refresh cycle."""

    quotes: dict[str, Quote]
    fallback_symbols: tuple[str, ...] = ()
    advisory: str | None = None
    fetched_at: datetime = field(default_factory=utcnow)

    @property
    def degraded(self) -> bool:
        return bool(self.fallback_symbols)


@dataclass(frozen=True)
class Balance:
    """One token balance row mirrored from the remote store."""

    user_id: str
    token: str
    amount: float
    updated_at: datetime | None = None
    id: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Balance:
        amount = float(row.get("balance") or 0.0)
        return cls(
            user_id=str(row.get("user_id", "")),
            token=str(row.get("token", "")),
            amount=max(amount, 0.0),
            updated_at=_parse_timestamp(row.get("updated_at") or row.get("created_at")),
            id=str(row["id"]) if row.get("id") is not None else None,
        )


class SyncState(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    FRESH = "fresh"
    DEGRADED = "degraded"


class FeedStatus(str, Enum):
    SUBSCRIBED = "SUBSCRIBED"
    CHANNEL_ERROR = "CHANNEL_ERROR"
    TIMED_OUT = "TIMED_OUT"
    CLOSED = "CLOSED"


@dataclass(frozen=True)
class ChangeEvent:
    """Row-level change pushed by the realtime feed."""

    event_type: str
    table: str
    record: dict[str, Any] = field(default_factory=dict)
    old_record: dict[str, Any] = field(default_factory=dict)
