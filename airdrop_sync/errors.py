"""Exception types shared across sources, store and services."""
from __future__ import annotations

from typing import Any

# PostgREST "no rows" and Postgres "undefined table"
_NOT_FOUND_CODES = frozenset({"PGRST116", "42P01"})
_NOT_FOUND_PHRASES = ("no rows", "not found", "does not exist")


class PriceSourceError(RuntimeError):
    """A price endpoint answered with an error or no usable data."""

    def __init__(self, source: str, message: str, status: int | None = None) -> None:
        super().__init__(f"{source}: {message}")
        self.source = source
        self.status = status


class RateLimitedError(PriceSourceError):
    """HTTP 429 from a price endpoint."""


class CircuitOpenError(RuntimeError):
    """Call short-circuited because the breaker is open."""

    def __init__(self, name: str, last_error: str | None = None) -> None:
        super().__init__(f"Circuit breaker OPEN for {name}: {last_error}")
        self.name = name


class StoreError(RuntimeError):
    """Error reported by the remote data store."""

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: str | None = None,
        hint: str | None = None,
        status: int | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details
        self.hint = hint
        self.status = status

    @classmethod
    def from_response(cls, status: int, body: Any) -> StoreError:
        if isinstance(body, dict):
            return cls(
                message=str(body.get("message") or f"HTTP {status}"),
                code=body.get("code"),
                details=body.get("details"),
                hint=body.get("hint"),
                status=status,
            )
        return cls(message=f"HTTP {status}", status=status)

    def is_not_found(self) -> bool:
        return is_not_found(self)


class LedgerError(RuntimeError):
    """A balance, task, airdrop or transaction write failed."""


def is_not_found(error: BaseException | None) -> bool:
    """True for "missing row / missing table" errors, by code or message text."""
    if error is None:
        return False
    code = getattr(error, "code", None)
    if code in _NOT_FOUND_CODES:
        return True
    message = (getattr(error, "message", None) or str(error) or "").lower()
    return any(phrase in message for phrase in _NOT_FOUND_PHRASES)
