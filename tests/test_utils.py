from datetime import datetime, timedelta, timezone

import pytest

from solana_wallet_tracker.config import BatchPolicy, Config
from solana_wallet_tracker.utils import (
    address_key, format_market_cap, format_number, format_relative_time, from_iso,
    from_unix, is_valid_solana_address, lamports_to_sol, raw_to_ui, short_address,
)

from conftest import MINT


class TestAddresses:
    @pytest.mark.parametrize("address", [
        MINT,
        "So11111111111111111111111111111111111111112",
        "  So11111111111111111111111111111111111111112  ",
    ])
    def test_valid(self, address):
        assert is_valid_solana_address(address)

    @pytest.mark.parametrize("address", [
        None,
        "",
        "short",
        "0x742d35Cc6634C0532925a3b844Bc454e4438f44e",
        "O" * 43,
        "1" * 45,
    ])
    def test_invalid(self, address):
        assert not is_valid_solana_address(address)

    def test_address_key_ignores_case_and_whitespace(self):
        assert address_key(" AbC ") == address_key("abc")

    def test_short_address(self):
        assert short_address(MINT) == f"{MINT[:4]}...{MINT[-4:]}"
        assert short_address(None) == "N/A"
        assert short_address("abc") == "abc"


class TestConversion:
    def test_units(self):
        assert lamports_to_sol(1_500_000_000) == 1.5
        assert raw_to_ui(1_234_500, 6) == pytest.approx(1.2345)
        assert raw_to_ui(7, 0) == 7.0

    def test_from_iso_accepts_z_suffix_and_naive(self):
        expected = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
        assert from_iso("2024-05-01T12:00:00Z") == expected
        assert from_iso("2024-05-01T12:00:00") == expected

    def test_from_unix(self):
        assert from_unix(None) is None
        assert from_unix(0) == datetime(1970, 1, 1, tzinfo=timezone.utc)


class TestFormatting:
    @pytest.mark.parametrize("value,expected", [
        (0, "0"),
        (12.5, "12.50"),
        (1_500, "1.50K"),
        (2_500_000, "2.50M"),
        (3_000_000_000, "3.00B"),
        (0.00001, "1.0000e-05"),
    ])
    def test_format_number(self, value, expected):
        assert format_number(value) == expected

    def test_format_market_cap(self):
        assert format_market_cap(None) == "$0"
        assert format_market_cap(2_500_000) == "$2.50M"

    def test_relative_time(self):
        now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
        assert format_relative_time(None) == "never"
        assert format_relative_time(now - timedelta(seconds=20), now) == "just now"
        assert format_relative_time(now - timedelta(minutes=5), now) == "5m ago"
        assert format_relative_time(now - timedelta(hours=3), now) == "3h ago"
        assert format_relative_time(now - timedelta(days=2), now) == "2d ago"
        assert format_relative_time(now - timedelta(days=30), now) == "2024-04-01"


class TestConfig:
    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("HELIUS_API_KEY", "secret")
        monkeypatch.setenv("SOLANA_RPC_URLS", "https://a.invalid, https://b.invalid")
        monkeypatch.setenv("BALANCE_GROUP_SIZE_KEYED", "8")
        monkeypatch.setenv("ACQUIRE_SOL_THRESHOLD", "0.02")

        config = Config.from_env()

        assert config.has_credential
        assert config.helius_rpc_url.endswith("api-key=secret")
        assert config.public_rpc_urls == ["https://a.invalid", "https://b.invalid"]
        assert config.balance_policy() == BatchPolicy(8, 0.5)
        assert config.classifier.acquire_min_native_cost == 0.02

    def test_blank_key_is_no_credential(self):
        config = Config(helius_api_key="   ")
        assert not config.has_credential
        assert config.helius_rpc_url is None
        assert config.transfer_policy() == BatchPolicy(2, 2.5)
