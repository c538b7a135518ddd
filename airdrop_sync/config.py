"""Configuration loader: reads config.yaml, interpolates env vars, validates."""
from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Frozen config dataclasses
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int = 3
    cooldown_seconds: float = 300.0


@dataclass(frozen=True)
class RetryConfig:
    max_attempts: int = 2
    base_delay_seconds: float = 1.0


@dataclass(frozen=True)
class FallbackPrice:
    price: float
    change_24h: float = 0.0


@dataclass(frozen=True)
class PriceSourceConfig:
    url: str = ""
    timeout_seconds: float = 8.0
    ids: dict[str, str] = field(default_factory=dict)
    pegged: dict[str, float] = field(default_factory=dict)


DEFAULT_SOURCES: dict[str, PriceSourceConfig] = {
    "coingecko": PriceSourceConfig(
        url="https://api.coingecko.com/api/v3/simple/price",
        ids={"BTC": "bitcoin", "ETH": "ethereum", "USDT": "tether", "SOL": "solana"},
    ),
    "coincap": PriceSourceConfig(
        url="https://api.coincap.io/v2/assets",
        ids={"BTC": "bitcoin", "ETH": "ethereum", "USDT": "tether", "SOL": "solana"},
    ),
    "binance": PriceSourceConfig(
        url="https://api.binance.com/api/v3/ticker/24hr",
        timeout_seconds=5.0,
        ids={"BTC": "BTCUSDT", "ETH": "ETHUSDT", "SOL": "SOLUSDT"},
        pegged={"USDT": 1.0},
    ),
}

DEFAULT_FALLBACK: dict[str, FallbackPrice] = {
    "BTC": FallbackPrice(price=95000.0, change_24h=2.5),
    "ETH": FallbackPrice(price=3500.0, change_24h=1.8),
    "USDT": FallbackPrice(price=1.0, change_24h=0.01),
    "SOL": FallbackPrice(price=150.0, change_24h=3.2),
}


@dataclass(frozen=True)
class PricesConfig:
    symbols: tuple[str, ...] = ("BTC", "ETH", "USDT", "SOL")
    priority: tuple[str, ...] = ("coingecko", "coincap", "binance")
    cache_seconds: float = 30.0
    refresh_interval_seconds: float = 120.0
    sources: dict[str, PriceSourceConfig] = field(
        default_factory=lambda: dict(DEFAULT_SOURCES)
    )
    fallback: dict[str, FallbackPrice] = field(
        default_factory=lambda: dict(DEFAULT_FALLBACK)
    )
    circuit_breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)


@dataclass(frozen=True)
class StoreConfig:
    url: str = ""
    anon_key: str = ""
    timeout_seconds: float = 10.0
    join_timeout_seconds: float = 10.0
    heartbeat_seconds: float = 25.0
    reconnect_delays: tuple[float, ...] = (1.0, 2.0, 5.0, 10.0)

    @property
    def rest_url(self) -> str:
        return f"{self.url.rstrip('/')}/rest/v1"

    @property
    def realtime_url(self) -> str:
        base = self.url.rstrip("/")
        if base.startswith("https://"):
            base = "wss://" + base[len("https://"):]
        elif base.startswith("http://"):
            base = "ws://" + base[len("http://"):]
        return f"{base}/realtime/v1/websocket"


@dataclass(frozen=True)
class BalanceSyncConfig:
    retry_delays: tuple[float, ...] = (1.0, 2.0, 3.0)
    poll_interval_seconds: float = 30.0
    subscribe_timeout_seconds: float = 10.0
    primary_token: str = "ZENTRA"
    primary_token_price: float = 0.5


@dataclass(frozen=True)
class AppConfig:
    prices: PricesConfig = field(default_factory=PricesConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    balances: BalanceSyncConfig = field(default_factory=BalanceSyncConfig)


# ---------------------------------------------------------------------------
# Env interpolation
# ---------------------------------------------------------------------------

_ENV_VAR_RE = re.compile(r"\$\{([^}]+)}")


def _interpolate_env(value: Any) -> Any:
    """Recursively replace ${VAR} references with environment variable values."""
    if isinstance(value, str):
        return _ENV_VAR_RE.sub(lambda m: os.environ.get(m.group(1), ""), value)
    if isinstance(value, dict):
        return {k: _interpolate_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_interpolate_env(item) for item in value]
    return value


# ---------------------------------------------------------------------------
# YAML → dataclass builders
# ---------------------------------------------------------------------------


def _build_sources(raw: dict[str, Any]) -> dict[str, PriceSourceConfig]:
    sources = dict(DEFAULT_SOURCES)
    for name, cfg in raw.items():
        base = DEFAULT_SOURCES.get(name, PriceSourceConfig())
        cfg = cfg or {}
        sources[name] = PriceSourceConfig(
            url=cfg.get("url", base.url),
            timeout_seconds=float(cfg.get("timeout_seconds", base.timeout_seconds)),
            ids=dict(cfg.get("ids", base.ids)),
            pegged={k: float(v) for k, v in cfg.get("pegged", base.pegged).items()},
        )
    return sources


def _build_fallback(raw: dict[str, Any]) -> dict[str, FallbackPrice]:
    if not raw:
        return dict(DEFAULT_FALLBACK)
    fallback: dict[str, FallbackPrice] = {}
    for symbol, cfg in raw.items():
        fallback[symbol] = FallbackPrice(
            price=float(cfg.get("price", 0.0)),
            change_24h=float(cfg.get("change_24h", 0.0)),
        )
    return fallback


def _build_prices(raw: dict[str, Any]) -> PricesConfig:
    cb = raw.get("circuit_breaker", {})
    retry = raw.get("retry", {})
    defaults = PricesConfig()
    return PricesConfig(
        symbols=tuple(raw.get("symbols", defaults.symbols)),
        priority=tuple(raw.get("priority", defaults.priority)),
        cache_seconds=float(raw.get("cache_seconds", 30.0)),
        refresh_interval_seconds=float(raw.get("refresh_interval_seconds", 120.0)),
        sources=_build_sources(raw.get("sources", {})),
        fallback=_build_fallback(raw.get("fallback", {})),
        circuit_breaker=CircuitBreakerConfig(
            failure_threshold=int(cb.get("failure_threshold", 3)),
            cooldown_seconds=float(cb.get("cooldown_seconds", 300.0)),
        ),
        retry=RetryConfig(
            max_attempts=int(retry.get("max_attempts", 2)),
            base_delay_seconds=float(retry.get("base_delay_seconds", 1.0)),
        ),
    )


def _build_store(raw: dict[str, Any]) -> StoreConfig:
    return StoreConfig(
        url=raw.get("url", ""),
        anon_key=raw.get("anon_key", ""),
        timeout_seconds=float(raw.get("timeout_seconds", 10.0)),
        join_timeout_seconds=float(raw.get("join_timeout_seconds", 10.0)),
        heartbeat_seconds=float(raw.get("heartbeat_seconds", 25.0)),
        reconnect_delays=tuple(
            float(d) for d in raw.get("reconnect_delays", [1.0, 2.0, 5.0, 10.0])
        ),
    )


def _build_balances(raw: dict[str, Any]) -> BalanceSyncConfig:
    return BalanceSyncConfig(
        retry_delays=tuple(float(d) for d in raw.get("retry_delays", [1.0, 2.0, 3.0])),
        poll_interval_seconds=float(raw.get("poll_interval_seconds", 30.0)),
        subscribe_timeout_seconds=float(raw.get("subscribe_timeout_seconds", 10.0)),
        primary_token=raw.get("primary_token", "ZENTRA"),
        primary_token_price=float(raw.get("primary_token_price", 0.5)),
    )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_config(config_path: str | Path | None = None) -> AppConfig:
    """Load and validate application configuration from YAML + .env.

    Args:
        config_path: Path to config.yaml. Defaults to ``config.yaml`` in the
            project root (one level up from this package).
    """
    load_dotenv()

    if config_path is None:
        config_path = Path(__file__).resolve().parent.parent / "config.yaml"
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    raw = _interpolate_env(raw)

    cfg = AppConfig(
        prices=_build_prices(raw.get("prices", {})),
        store=_build_store(raw.get("store", {})),
        balances=_build_balances(raw.get("balances", {})),
    )

    _validate(cfg)
    logger.info("Configuration loaded from %s", config_path)
    return cfg


def _validate(cfg: AppConfig) -> None:
    """Raise on invalid configuration."""
    prices = cfg.prices
    if not prices.symbols:
        raise ValueError("At least one price symbol must be configured")

    for name in prices.priority:
        if name not in prices.sources:
            raise ValueError(f"Priority references unknown price source '{name}'")

    for symbol in prices.symbols:
        fallback = prices.fallback.get(symbol)
        if fallback is None:
            raise ValueError(f"Symbol '{symbol}' has no fallback price")
        if fallback.price < 0:
            raise ValueError(f"Fallback price for '{symbol}' must not be negative")

    if prices.circuit_breaker.failure_threshold < 1:
        raise ValueError("circuit_breaker.failure_threshold must be at least 1")
    if prices.retry.max_attempts < 1:
        raise ValueError("retry.max_attempts must be at least 1")

    if not cfg.balances.retry_delays:
        raise ValueError("balances.retry_delays must not be empty")

    if cfg.store.url and not cfg.store.url.startswith(("http://", "https://")):
        raise ValueError(f"Store URL must be http(s): '{cfg.store.url}'")
