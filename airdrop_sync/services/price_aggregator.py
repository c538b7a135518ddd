"""Multi-source price aggregation with circuit breakers and static fallback."""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Sequence

from ..config import PricesConfig
from ..errors import CircuitOpenError, PriceSourceError, RateLimitedError
from ..interfaces.price_source import PriceSource
from ..models import PriceSnapshot, Quote
from ..resilience import CircuitBreaker, RetryPolicy, Sleep, retry_with_backoff
from ..sources import BinanceSource, CoinCapSource, CoinGeckoSource

logger = logging.getLogger(__name__)

# Registry of price source factories keyed by source name.
_SOURCE_FACTORIES: dict[str, Any] = {
    "coingecko": lambda cfg: CoinGeckoSource(cfg),
    "coincap": lambda cfg: CoinCapSource(cfg),
    "binance": lambda cfg: BinanceSource(cfg),
}

ALL_FAILED_ADVISORY = "All price sources failed, using fallback prices"
PARTIAL_ADVISORY = "Some prices unavailable, using fallback for missing tokens"


@dataclass
class PriceState:
    """Process-scoped aggregator state: per-source breakers and the current table."""

    breakers: dict[str, CircuitBreaker] = field(default_factory=dict)
    snapshot: Optional[PriceSnapshot] = None
    last_refresh_at: Optional[float] = None

    def breaker_for(
        self,
        name: str,
        failure_threshold: int,
        cooldown_seconds: float,
        clock: Callable[[], float],
    ) -> CircuitBreaker:
        breaker = self.breakers.get(name)
        if breaker is None:
            breaker = CircuitBreaker(
                name=name,
                failure_threshold=failure_threshold,
                cooldown_seconds=cooldown_seconds,
                clock=clock,
            )
            self.breakers[name] = breaker
        return breaker

    def reset(self) -> None:
        for breaker in self.breakers.values():
            breaker.reset()
        self.snapshot = None
        self.last_refresh_at = None


def build_sources(config: PricesConfig) -> list[PriceSource]:
    """Instantiate the configured sources in priority order."""
    sources: list[PriceSource] = []
    for name in config.priority:
        factory = _SOURCE_FACTORIES.get(name)
        if factory is None:
            logger.warning("No price source factory for '%s'", name)
            continue
        sources.append(factory(config.sources[name]))
    return sources


def merge_quotes(
    symbols: Sequence[str], results: Sequence[Optional[dict[str, Quote]]]
) -> dict[str, Quote]:
    """First present positive price per symbol, in source priority order."""
    merged: dict[str, Quote] = {}
    for symbol in symbols:
        for quotes in results:
            if not quotes:
                continue
            quote = quotes.get(symbol)
            if quote is not None and quote.price > 0:
                merged[symbol] = quote
                break
    return merged


def _format_usd(price: float) -> str:
    if price >= 1000:
        return f"${price:,.2f}"
    if price >= 1:
        return f"${price:.2f}"
    return f"${price:.4f}"


def _format_pct(change: float) -> str:
    sign = "+" if change >= 0 else ""
    return f"{sign}{change:.2f}%"


class PriceAggregator:
    """Best-effort, always-non-empty quote table for a fixed symbol set."""

    def __init__(
        self,
        config: PricesConfig,
        sources: Optional[Sequence[PriceSource]] = None,
        state: Optional[PriceState] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._config = config
        self._symbols = list(config.symbols)
        self._sources = list(sources) if sources is not None else build_sources(config)
        self._state = state if state is not None else PriceState()
        self._clock = clock
        self._sleep = sleep
        self._retry = RetryPolicy(
            max_attempts=config.retry.max_attempts,
            base_delay_seconds=config.retry.base_delay_seconds,
        )
        self._inflight: Optional[asyncio.Future[PriceSnapshot]] = None

    @property
    def state(self) -> PriceState:
        return self._state

    @property
    def snapshot(self) -> Optional[PriceSnapshot]:
        return self._state.snapshot

    @property
    def advisory(self) -> Optional[str]:
        snapshot = self._state.snapshot
        return snapshot.advisory if snapshot else None

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    def _is_fresh(self) -> bool:
        state = self._state
        if state.snapshot is None or not state.snapshot.quotes:
            return False
        if state.last_refresh_at is None:
            return False
        return self._clock() - state.last_refresh_at < self._config.cache_seconds

    async def refresh(self, force: bool = False) -> PriceSnapshot:
        """Fetch all sources concurrently and replace the quote table.

        Concurrent callers share one in-flight refresh. Within the cache
        window the existing table is returned without network I/O.
        """
        if self._inflight is not None:
            return await asyncio.shield(self._inflight)

        if not force and self._is_fresh():
            return self._state.snapshot  # type: ignore[return-value]

        task = asyncio.ensure_future(self._refresh())
        self._inflight = task
        task.add_done_callback(self._clear_inflight)
        return await asyncio.shield(task)

    def _clear_inflight(self, task: asyncio.Future[PriceSnapshot]) -> None:
        if self._inflight is task:
            self._inflight = None

    async def _refresh(self) -> PriceSnapshot:
        try:
            results = await asyncio.gather(
                *(self._fetch_source(source) for source in self._sources)
            )
            merged = merge_quotes(self._symbols, results)
        except Exception as e:
            logger.warning("Error fetching prices, using fallback: %s", e)
            merged = {}

        snapshot = self._backfill(merged)
        self._state.snapshot = snapshot
        self._state.last_refresh_at = self._clock()

        if snapshot.advisory:
            logger.warning(snapshot.advisory)
        else:
            logger.info("Prices refreshed for %d symbols", len(snapshot.quotes))
        return snapshot

    async def _fetch_source(self, source: PriceSource) -> Optional[dict[str, Quote]]:
        breaker = self._state.breaker_for(
            source.name,
            self._config.circuit_breaker.failure_threshold,
            self._config.circuit_breaker.cooldown_seconds,
            self._clock,
        )
        timeout = self._timeout_for(source.name)

        async def attempt() -> dict[str, Quote]:
            quotes = await source.fetch_quotes(self._symbols)
            if not quotes:
                raise PriceSourceError(source.name, "no valid prices")
            return quotes

        try:
            quotes = await retry_with_backoff(
                attempt,
                self._retry,
                breaker=breaker,
                timeout=timeout,
                trip_on=(RateLimitedError,),
                sleep=self._sleep,
            )
        except CircuitOpenError:
            logger.debug("Skipping %s: circuit breaker open", source.name)
            return None
        except asyncio.TimeoutError:
            logger.warning("%s timed out after %.1fs", source.name, timeout)
            return None
        except Exception as e:
            logger.warning("%s failed: %s", source.name, e)
            return None

        logger.info("%s: %d prices fetched", source.name, len(quotes))
        return quotes

    def _timeout_for(self, name: str) -> float:
        cfg = self._config.sources.get(name)
        return cfg.timeout_seconds if cfg is not None else 8.0

    def _backfill(self, merged: dict[str, Quote]) -> PriceSnapshot:
        quotes = dict(merged)
        fallback_symbols: list[str] = []
        for symbol in self._symbols:
            existing = quotes.get(symbol)
            if existing is not None and existing.price > 0:
                continue
            fallback = self._config.fallback.get(symbol)
            if fallback is None:
                continue
            quotes[symbol] = Quote(
                symbol=symbol, price=fallback.price, change_24h=fallback.change_24h
            )
            fallback_symbols.append(symbol)
            logger.warning("%s using fallback price: $%s", symbol, fallback.price)

        advisory = None
        if not merged:
            advisory = ALL_FAILED_ADVISORY
        elif fallback_symbols:
            advisory = PARTIAL_ADVISORY

        return PriceSnapshot(
            quotes=quotes,
            fallback_symbols=tuple(fallback_symbols),
            advisory=advisory,
        )

    async def run_forever(self, interval_seconds: Optional[float] = None) -> None:
        """Refresh on a fixed interval until cancelled."""
        interval = interval_seconds or self._config.refresh_interval_seconds
        logger.info("Starting price refresh loop (every %.0f seconds)", interval)

        while True:
            try:
                await self.refresh()
            except Exception as e:
                logger.error("Error in price refresh loop: %s", e)
            await self._sleep(interval)

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    def get_quote(self, symbol: str) -> Optional[Quote]:
        snapshot = self._state.snapshot
        if snapshot is None:
            return None
        return snapshot.quotes.get(symbol)

    def get_price(self, symbol: str) -> Optional[float]:
        quote = self.get_quote(symbol)
        if quote is None or quote.price <= 0:
            return None
        return quote.price

    def get_change(self, symbol: str) -> Optional[float]:
        quote = self.get_quote(symbol)
        return quote.change_24h if quote is not None else None

    def format_price(self, symbol: str) -> str:
        price = self.get_price(symbol)
        if price is None:
            fallback = self._config.fallback.get(symbol)
            if fallback is None:
                return "--"
            price = fallback.price
        return _format_usd(price)

    def format_change(self, symbol: str) -> str:
        change = self.get_change(symbol)
        if change is None:
            fallback = self._config.fallback.get(symbol)
            if fallback is None:
                return "--"
            change = fallback.change_24h
        return _format_pct(change)
