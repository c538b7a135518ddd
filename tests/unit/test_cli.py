"""Unit tests for CLI argument parsing."""
from __future__ import annotations

from airdrop_sync.cli import build_parser


class TestBuildParser:
    def test_prices_command(self) -> None:
        args = build_parser().parse_args(["prices"])
        assert args.command == "prices"

    def test_watch_prices_default_interval(self) -> None:
        args = build_parser().parse_args(["watch-prices"])
        assert args.command == "watch-prices"
        assert args.interval is None

    def test_watch_prices_custom_interval(self) -> None:
        args = build_parser().parse_args(["watch-prices", "45"])
        assert args.interval == 45.0

    def test_balances_command(self) -> None:
        args = build_parser().parse_args(["balances", "user-1"])
        assert args.command == "balances"
        assert args.user_id == "user-1"

    def test_sync_command(self) -> None:
        args = build_parser().parse_args(["sync", "user-1"])
        assert args.command == "sync"
        assert args.user_id == "user-1"

    def test_claim_command(self) -> None:
        args = build_parser().parse_args(["claim", "user-1", "drop-9"])
        assert args.command == "claim"
        assert args.airdrop_id == "drop-9"

    def test_config_flag(self) -> None:
        args = build_parser().parse_args(["--config", "/tmp/c.yaml", "prices"])
        assert args.config == "/tmp/c.yaml"

    def test_log_level_flag(self) -> None:
        args = build_parser().parse_args(["--log-level", "DEBUG", "prices"])
        assert args.log_level == "DEBUG"

    def test_no_command(self) -> None:
        args = build_parser().parse_args([])
        assert args.command is None
