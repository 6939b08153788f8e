"""Tests for Cosmos CLI output and address helpers."""

from __future__ import annotations

from decimal import Decimal

import pytest
from bech32 import bech32_encode, convertbits

from interchain_harness.chain.cosmos import bech32_to_bytes, parse_gas_price, parse_json_output
from interchain_harness.errors import ConfigInvalidError


class TestBech32ToBytes:
    """Tests for decoding account addresses."""

    def test_round_trip_of_twenty_byte_account(self) -> None:
        raw = bytes(range(20))
        address = bech32_encode("cosmos", convertbits(raw, 8, 5))

        assert bech32_to_bytes(address) == raw

    @pytest.mark.parametrize("address", ["", "cosmos1invalid", "not-an-address"])
    def test_invalid_addresses(self, address: str) -> None:
        with pytest.raises(ValueError):
            bech32_to_bytes(address)


class TestParseGasPrice:
    """Tests for splitting gas prices."""

    @pytest.mark.parametrize(
        ("gas_prices", "expected"),
        [
            ("0.01uatom", (Decimal("0.01"), "uatom")),
            ("0stake", (Decimal("0"), "stake")),
            (" 2.5ibc/ABC123 ", (Decimal("2.5"), "ibc/ABC123")),
        ],
    )
    def test_valid(self, gas_prices: str, expected: tuple[Decimal, str]) -> None:
        assert parse_gas_price(gas_prices) == expected

    @pytest.mark.parametrize("gas_prices", ["", "uatom", "0.01", "1 uatom"])
    def test_invalid(self, gas_prices: str) -> None:
        with pytest.raises(ConfigInvalidError):
            parse_gas_price(gas_prices)


class TestParseJsonOutput:
    """Tests for pulling JSON out of CLI output."""

    def test_stdout_with_leading_noise(self) -> None:
        """Warnings printed before the document are skipped."""
        stdout = b'WARNING: deprecated flag\n{"height": "5"}'

        assert parse_json_output(stdout, b"") == {"height": "5"}

    def test_falls_back_to_stderr(self) -> None:
        """Older SDKs print `keys add` output on stderr."""
        stderr = b'{"name": "alice", "address": "cosmos1..."}'

        assert parse_json_output(b"", stderr)["name"] == "alice"

    def test_no_json(self) -> None:
        with pytest.raises(ValueError, match="No JSON"):
            parse_json_output(b"plain text", b"")
