"""Tests for chain query helpers."""
from __future__ import annotations

from decimal import Decimal

import pytest
from eth_abi import encode

from aa_sdk import utils
from aa_sdk.exceptions import ProviderError

from conftest import SENDER, TARGET, FakeChainProvider


class FailingProvider(FakeChainProvider):
    async def get_block(self, block="latest", deadline=None):
        raise ProviderError("connection refused", method="eth_getBlockByNumber")


def erc20_provider() -> FakeChainProvider:
    provider = FakeChainProvider()
    provider.call_handlers = {
        "0x" + utils._NAME.hex(): lambda tx: "0x" + encode(["string"], ["USD Coin"]).hex(),
        "0x" + utils._SYMBOL.hex(): lambda tx: "0x" + encode(["string"], ["USDC"]).hex(),
        "0x" + utils._DECIMALS.hex(): lambda tx: "0x" + encode(["uint8"], [6]).hex(),
        "0x" + utils._BALANCE_OF.hex(): lambda tx: "0x" + encode(["uint256"], [25 * 10**17]).hex(),
    }
    return provider


class TestValidateAddress:
    """Tests for validate_address."""

    @pytest.mark.parametrize("address", [SENDER, TARGET, "0x5FF137D4b0FDCD49DcA30c7CF57E578a026d2789"])
    def test_valid(self, address):
        """Well-formed addresses should pass."""
        assert utils.validate_address(address)

    @pytest.mark.parametrize("address", ["0x1234", "not-an-address", None, "0x5ff137D4b0FDCD49DcA30c7CF57E578a026d2789"])
    def test_invalid(self, address):
        """Short, malformed or bad-checksum addresses should fail."""
        assert not utils.validate_address(address)


class TestGasPrice:
    """Tests for get_gas_price."""

    @pytest.mark.asyncio
    async def test_aggressive_fees(self):
        """Priority fee gets a 10x buffer and max fee adds twice the base fee."""
        provider = FakeChainProvider()
        provider.block = {"baseFeePerGas": hex(100)}
        provider.priority_fee = 10

        fees = await utils.get_gas_price(provider)

        assert fees == {"maxFeePerGas": 310, "maxPriorityFeePerGas": 110}

    @pytest.mark.asyncio
    async def test_no_base_fee(self):
        """Pre-London chains price only the priority fee."""
        provider = FakeChainProvider()
        provider.block = {"number": "0x1"}
        provider.priority_fee = 10

        fees = await utils.get_gas_price(provider)

        assert fees == {"maxFeePerGas": 110, "maxPriorityFeePerGas": 110}

    @pytest.mark.asyncio
    async def test_fallback_on_failure(self):
        """A failed lookup falls back to 10,000,000 wei for both fields."""
        fees = await utils.get_gas_price(FailingProvider())
        assert fees == {"maxFeePerGas": 10_000_000, "maxPriorityFeePerGas": 10_000_000}


class TestBalances:
    """Tests for balance and token helpers."""

    def test_format_ether(self):
        """Wei should convert to ether units exactly."""
        assert utils.format_ether(1_500_000_000_000_000_000) == Decimal("1.5")

    @pytest.mark.asyncio
    async def test_native_balance(self):
        """Native balance is reported in ether."""
        provider = FakeChainProvider()
        provider.balances[SENDER] = 2 * 10**18
        assert await utils.get_native_balance(provider, SENDER) == Decimal(2)

    @pytest.mark.asyncio
    async def test_token_details(self):
        """name, symbol and decimals come from the token contract."""
        details = await utils.get_erc20_token_details(erc20_provider(), TARGET)
        assert details == {"name": "USD Coin", "symbol": "USDC", "decimals": 6}

    @pytest.mark.asyncio
    async def test_token_balance(self):
        """Token balance is formatted with 18 decimals."""
        provider = erc20_provider()
        balance = await utils.get_erc20_token_balance(provider, SENDER, TARGET)

        assert balance == Decimal("2.5")
        assert provider.calls[0]["to"] == TARGET

    @pytest.mark.asyncio
    async def test_undecodable_result(self):
        """Garbage call results should raise ProviderError."""
        provider = FakeChainProvider()
        provider.call_handlers = {"0x" + utils._DECIMALS.hex(): lambda tx: "0x01"}
        with pytest.raises(ProviderError):
            await utils._call_and_decode(provider, TARGET, utils._DECIMALS, "uint8")
