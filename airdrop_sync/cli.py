"""Command-line interface for the price and balance layers."""
from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from .config import AppConfig, load_config
from .logging_setup import configure_logging
from .models import Balance
from .services import BalanceLedger, BalanceSynchronizer, PriceAggregator
from .services.portfolio import with_fixed_prices
from .store import PostgrestStore, RealtimeFeed

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse CLI parser."""
    parser = argparse.ArgumentParser(
        prog="airdrop-sync",
        description="Price aggregation and balance synchronization",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to config.yaml (default: config.yaml in project root)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )

    sub = parser.add_subparsers(dest="command")

    sub.add_parser("prices", help="Fetch the quote table once")

    watch_parser = sub.add_parser("watch-prices", help="Refresh quotes continuously")
    watch_parser.add_argument(
        "interval",
        nargs="?",
        type=float,
        default=None,
        help="Refresh interval in seconds (overrides config)",
    )

    balances_parser = sub.add_parser("balances", help="Load a user's balances once")
    balances_parser.add_argument("user_id")

    sync_parser = sub.add_parser("sync", help="Keep a user's balances in sync")
    sync_parser.add_argument("user_id")

    claim_parser = sub.add_parser("claim", help="Claim a pending airdrop")
    claim_parser.add_argument("user_id")
    claim_parser.add_argument("airdrop_id")

    return parser


def _print_prices(aggregator: PriceAggregator, symbols: tuple[str, ...]) -> None:
    for symbol in symbols:
        price = aggregator.format_price(symbol)
        change = aggregator.format_change(symbol)
        print(f"{symbol:<6} {price:>14} {change:>9}")
    if aggregator.advisory:
        print(f"note: {aggregator.advisory}")


def _print_balances(balances: dict[str, Balance], total: float) -> None:
    if not balances:
        print("No balances.")
    for token, balance in sorted(balances.items()):
        print(f"{token:<8} {balance.amount:>18,.4f}")
    print(f"Total value: ${total:,.2f}")


def _require_store(config: AppConfig) -> None:
    if not config.store.url:
        raise SystemExit("store.url is not configured")


async def _run(args: argparse.Namespace) -> None:
    """Execute the selected command."""
    configure_logging(args.log_level)
    config = load_config(args.config)
    aggregator = PriceAggregator(config.prices)
    fixed = {config.balances.primary_token: config.balances.primary_token_price}

    if args.command == "prices":
        await aggregator.refresh()
        _print_prices(aggregator, config.prices.symbols)

    elif args.command == "watch-prices":
        await aggregator.run_forever(args.interval)

    elif args.command == "balances":
        _require_store(config)
        sync = BalanceSynchronizer(PostgrestStore(config.store), config.balances)
        try:
            await asyncio.gather(aggregator.refresh(), sync.set_user(args.user_id))
            _print_balances(sync.balances, sync.get_total_value(aggregator.get_price))
        finally:
            await sync.close()

    elif args.command == "sync":
        _require_store(config)
        sync = BalanceSynchronizer(
            PostgrestStore(config.store), config.balances, feed=RealtimeFeed(config.store)
        )
        sync.add_listener(
            lambda balances: logger.info(
                "Balances: %s (total $%.2f)",
                {t: b.amount for t, b in sorted(balances.items())},
                sync.get_total_value(aggregator.get_price),
            )
        )
        prices_task = asyncio.create_task(aggregator.run_forever())
        try:
            await sync.set_user(args.user_id)
            await prices_task
        finally:
            prices_task.cancel()
            await sync.close()

    elif args.command == "claim":
        _require_store(config)
        await aggregator.refresh()
        ledger = BalanceLedger(
            PostgrestStore(config.store), with_fixed_prices(fixed, aggregator.get_price)
        )
        balance = await ledger.claim_airdrop(args.user_id, args.airdrop_id)
        print(f"Claimed. {balance.token} balance: {balance.amount:,.4f}")

    else:
        build_parser().print_help()
        sys.exit(1)


def main() -> None:
    """Entry point."""
    parser = build_parser()
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    try:
        asyncio.run(_run(args))
    except KeyboardInterrupt:
        pass
