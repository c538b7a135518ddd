"""
Resilience primitives: circuit breaker, retry with exponential backoff,
and retry over a fixed delay table.

Shared by the price aggregator (per-source breakers, exponential backoff,
per-attempt timeout) and the balance synchronizer (fixed delay table).
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Sequence, TypeVar

from .errors import CircuitOpenError

logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[Any]]


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry with exponential backoff: attempt k waits base * 2**k."""

    max_attempts: int = 2
    base_delay_seconds: float = 1.0

    def backoff_delay(self, attempt: int) -> float:
        return self.base_delay_seconds * (2**attempt)


@dataclass
class CircuitBreaker:
    """
    Per-source failure counter that temporarily disables calls.

    States:
    - CLOSED: calls pass through.
    - OPEN: calls are short-circuited without I/O.

    Transitions:
    - CLOSED -> OPEN: after `failure_threshold` consecutive failures,
      or immediately via `trip()`.
    - OPEN -> CLOSED: on the first `allow()` check after `cooldown_seconds`;
      the failure counter is reset.
    """

    name: str
    failure_threshold: int = 3
    cooldown_seconds: float = 300.0
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)
    consecutive_failures: int = field(default=0, init=False)
    last_failure_at: Optional[float] = field(default=None, init=False)
    is_open: bool = field(default=False, init=False)
    last_error: Optional[str] = field(default=None, init=False, repr=False)

    def allow(self) -> bool:
        """Return True when a call may proceed, closing the breaker after cooldown."""
        if not self.is_open:
            return True
        elapsed = self.clock() - (self.last_failure_at or 0.0)
        if elapsed >= self.cooldown_seconds:
            logger.info("Circuit breaker CLOSED for %s after cooldown", self.name)
            self.is_open = False
            self.consecutive_failures = 0
            return True
        return False

    def record_success(self) -> None:
        self.consecutive_failures = 0
        self.last_error = None

    def record_failure(self, error: str = "") -> None:
        self.consecutive_failures += 1
        self.last_failure_at = self.clock()
        self.last_error = error[:500]
        if not self.is_open and self.consecutive_failures >= self.failure_threshold:
            self.is_open = True
            logger.warning(
                "Circuit breaker OPEN for %s after %d failures: %s",
                self.name, self.consecutive_failures, error[:200],
            )

    def trip(self, error: str = "") -> None:
        """Open immediately, e.g. on a rate-limit answer."""
        self.consecutive_failures = max(self.consecutive_failures + 1, self.failure_threshold)
        self.last_failure_at = self.clock()
        self.last_error = error[:500]
        if not self.is_open:
            logger.warning("Circuit breaker OPEN for %s (tripped): %s", self.name, error[:200])
        self.is_open = True

    def reset(self) -> None:
        self.consecutive_failures = 0
        self.last_failure_at = None
        self.is_open = False
        self.last_error = None


async def retry_with_backoff(
    func: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    breaker: Optional[CircuitBreaker] = None,
    timeout: Optional[float] = None,
    trip_on: tuple[type[BaseException], ...] = (),
    sleep: Sleep = asyncio.sleep,
) -> T:
    """
    Execute an async call with breaker gate, per-attempt timeout and backoff.

    Every attempt is gated on the breaker: an open breaker raises
    CircuitOpenError without calling ``func``. Exceptions listed in
    ``trip_on`` open the breaker immediately and stop retrying.
    Raises the last exception once attempts are exhausted.
    """
    last_err: Optional[BaseException] = None
    for attempt in range(policy.max_attempts):
        if breaker is not None and not breaker.allow():
            if last_err is not None:
                raise last_err
            raise CircuitOpenError(breaker.name, breaker.last_error)

        try:
            if timeout is not None:
                result = await asyncio.wait_for(func(), timeout)
            else:
                result = await func()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            last_err = exc
            err_msg = f"{type(exc).__name__}: {exc}"
            if breaker is not None:
                if isinstance(exc, trip_on):
                    breaker.trip(err_msg)
                    raise
                breaker.record_failure(err_msg)
            logger.debug(
                "Attempt %d/%d failed: %s", attempt + 1, policy.max_attempts, err_msg
            )
            if attempt < policy.max_attempts - 1:
                await sleep(policy.backoff_delay(attempt))
            continue

        if breaker is not None:
            breaker.record_success()
        return result

    raise last_err  # type: ignore[misc]


async def retry_with_delays(
    func: Callable[[], Awaitable[T]],
    delays: Sequence[float],
    *,
    start_attempt: int = 0,
    sleep: Sleep = asyncio.sleep,
    label: str = "call",
) -> T:
    """
    Execute an async call, retrying after ``delays[attempt]`` seconds.

    Makes up to ``len(delays) + 1`` attempts in total (fewer when
    ``start_attempt`` > 0). Raises the last exception when exhausted.
    """
    max_retries = len(delays)
    attempt = start_attempt
    while True:
        try:
            return await func()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if attempt >= max_retries:
                raise
            delay = delays[attempt]
            attempt += 1
            logger.info(
                "Retrying %s (attempt %d/%d) after %.1fs: %s",
                label, attempt, max_retries, delay, exc,
            )
            await sleep(delay)
