"""Tests for OperationBuilder."""
from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from aa_sdk.config import BuilderPolicy, PaymasterConfig
from aa_sdk.erc4337.account import (
    EXECUTE_BATCH_SELECTOR,
    EXECUTE_SELECTOR,
    SimpleAccount,
    decode_init_code,
)
from aa_sdk.erc4337.builder import OperationBuilder
from aa_sdk.erc4337.gas import compute_pre_verification_gas
from aa_sdk.erc4337.paymaster_client import PaymasterClient, PaymasterNegotiator
from aa_sdk.erc4337.user_operation import PaymasterQuote, TransactionRequest
from aa_sdk.exceptions import ConfigurationError, EncodingError, ProviderError
from aa_sdk.rpc_client import FeeData

from conftest import ENTRY_POINT, FACTORY, SENDER, TARGET, FakeChainProvider

OWNER = "0x" + "22" * 20


def make_builder(provider, policy=None, negotiator=None, factory=FACTORY):
    wallet = SimpleAccount(provider, OWNER, factory_address=factory, account_address=SENDER)
    return OperationBuilder(
        provider, wallet, ENTRY_POINT, negotiator=negotiator, policy=policy
    )


def expected_pvg(op):
    return compute_pre_verification_gas(op.replace(pre_verification_gas=0)) + 1000


class TestUndeployedWallet:
    """Building for a wallet that has no code yet."""

    @pytest.mark.asyncio
    async def test_first_operation_deploys(self):
        """Nonce 0, factory initCode and capped verification gas."""
        provider = FakeChainProvider(call_gas=50_000, creation_gas=200_000)
        builder = make_builder(provider)

        op = await builder.build(TransactionRequest(target=TARGET, data="0x", value=1))

        assert op.sender == SENDER
        assert op.nonce == 0
        assert op.init_code == builder.wallet.get_init_code()
        assert op.call_gas_limit == 50_000 + 0x3A98
        assert op.verification_gas_limit == 150_000
        assert op.max_fee_per_gas == 3_000_000_000
        assert op.max_priority_fee_per_gas == 1_000_000_000
        assert op.paymaster_and_data == "0x"
        assert op.signature == "0x"
        assert op.pre_verification_gas == expected_pvg(op)

    @pytest.mark.asyncio
    async def test_call_gas_estimated_from_entry_point(self):
        """callGasLimit should be estimated as the entry point calling the wallet."""
        provider = FakeChainProvider()
        builder = make_builder(provider)

        op = await builder.build(TransactionRequest(target=TARGET))

        call_estimate = [tx for tx in provider.estimate_calls if "from" in tx][0]
        assert call_estimate == {"from": ENTRY_POINT, "to": SENDER, "data": op.call_data}
        assert op.call_data.startswith("0x" + EXECUTE_SELECTOR.hex())

    @pytest.mark.asyncio
    async def test_creation_gas_estimated_against_factory(self):
        """Deployment cost should be estimated by calling the factory."""
        provider = FakeChainProvider()
        builder = make_builder(provider)

        await builder.build(TransactionRequest(target=TARGET))

        creation_estimate = [tx for tx in provider.estimate_calls if "from" not in tx][0]
        assert creation_estimate["to"].lower() == FACTORY

    @pytest.mark.asyncio
    async def test_uncapped_verification_gas(self):
        """Without a cap the limit is base allowance plus creation gas."""
        provider = FakeChainProvider(creation_gas=200_000)
        builder = make_builder(provider, policy=BuilderPolicy(max_verification_gas_limit=None))

        op = await builder.build(TransactionRequest(target=TARGET))

        assert op.verification_gas_limit == 1_200_000

    @pytest.mark.asyncio
    async def test_missing_factory(self):
        """An undeployed wallet without a factory cannot be built for."""
        builder = make_builder(FakeChainProvider(), factory=None)
        with pytest.raises(ConfigurationError, match="No factory to get initCode"):
            await builder.build(TransactionRequest(target=TARGET))


class TestDeployedWallet:
    """Building for a wallet that already has code."""

    @pytest.mark.asyncio
    async def test_nonce_from_wallet_and_no_init_code(self):
        """Nonce comes from getNonce() and initCode is empty."""
        provider = FakeChainProvider(nonce=4)
        provider.deploy(SENDER)
        builder = make_builder(provider, policy=BuilderPolicy(max_verification_gas_limit=None))

        op = await builder.build(TransactionRequest(target=TARGET))

        assert op.nonce == 4
        assert op.init_code == "0x"
        assert op.verification_gas_limit == 1_000_000
        assert all("from" in tx for tx in provider.estimate_calls)

    @pytest.mark.asyncio
    async def test_deployment_state_cached(self):
        """Once deployed, code should not be queried again."""
        provider = FakeChainProvider()
        provider.deploy(SENDER)
        builder = make_builder(provider)

        await builder.build(TransactionRequest(target=TARGET))
        await builder.build(TransactionRequest(target=TARGET))

        assert len(provider.get_code_calls) == 1

    @pytest.mark.asyncio
    async def test_undeployed_state_rechecked(self):
        """An undeployed answer should be re-read on the next build."""
        provider = FakeChainProvider()
        builder = make_builder(provider)

        await builder.build(TransactionRequest(target=TARGET))
        provider.deploy(SENDER)
        op = await builder.build(TransactionRequest(target=TARGET))

        assert op.init_code == "0x"
        assert len(provider.get_code_calls) == 2


class TestVerificationCap:
    """Boundary behavior of the verification gas cap."""

    @pytest.mark.parametrize(
        "creation_gas,expected",
        [(49_999, 149_999), (50_000, 150_000), (50_001, 150_000)],
    )
    def test_cap_boundary(self, creation_gas, expected):
        """The cap applies only when base + creation exceeds it."""
        builder = make_builder(
            FakeChainProvider(),
            policy=BuilderPolicy(base_verification_gas=100_000, max_verification_gas_limit=150_000),
        )
        assert builder.verification_gas_limit(creation_gas) == expected


class TestFees:
    """Fee resolution from the request and the chain."""

    @pytest.mark.asyncio
    async def test_both_fees_supplied(self):
        """Supplied fees are kept and the chain is not asked."""
        provider = FakeChainProvider()
        builder = make_builder(provider)

        op = await builder.build(
            TransactionRequest(target=TARGET, max_fee_per_gas=500, max_priority_fee_per_gas=7)
        )

        assert (op.max_fee_per_gas, op.max_priority_fee_per_gas) == (500, 7)
        assert provider.fee_data_calls == 0

    @pytest.mark.asyncio
    async def test_only_max_fee_supplied(self):
        """The missing priority fee is filled from the chain."""
        provider = FakeChainProvider(
            fee_data=FeeData(max_fee_per_gas=900, max_priority_fee_per_gas=90)
        )
        builder = make_builder(provider)

        op = await builder.build(TransactionRequest(target=TARGET, max_fee_per_gas=500))

        assert (op.max_fee_per_gas, op.max_priority_fee_per_gas) == (500, 90)

    @pytest.mark.asyncio
    async def test_only_priority_fee_supplied(self):
        """The missing max fee is filled from the chain."""
        provider = FakeChainProvider(
            fee_data=FeeData(max_fee_per_gas=900, max_priority_fee_per_gas=90)
        )
        builder = make_builder(provider)

        op = await builder.build(TransactionRequest(target=TARGET, max_priority_fee_per_gas=3))

        assert (op.max_fee_per_gas, op.max_priority_fee_per_gas) == (900, 3)


class TestRequestOverrides:
    """Request fields that bypass chain lookups."""

    @pytest.mark.asyncio
    async def test_empty_target_means_empty_call_data(self):
        """A target of 0x produces empty callData."""
        builder = make_builder(FakeChainProvider())
        op = await builder.build(TransactionRequest(target="0x"))
        assert op.call_data == "0x"

    @pytest.mark.asyncio
    async def test_gas_limit_and_nonce_supplied(self):
        """Supplied call gas and nonce skip estimation and getNonce."""
        provider = FakeChainProvider()
        provider.deploy(SENDER)
        builder = make_builder(provider)

        op = await builder.build(TransactionRequest(target=TARGET, gas_limit=80_000, nonce=11))

        assert op.call_gas_limit == 80_000
        assert op.nonce == 11
        assert provider.estimate_calls == []
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_verification_gas_limit_supplied(self):
        """A supplied verification limit skips the creation estimate."""
        provider = FakeChainProvider()
        builder = make_builder(provider)

        op = await builder.build(TransactionRequest(target=TARGET, verification_gas_limit=400_000))

        assert op.verification_gas_limit == 400_000
        assert all("from" in tx for tx in provider.estimate_calls)


class TestPaymaster:
    """Interaction with the paymaster negotiator."""

    QUOTE = PaymasterQuote(
        paymaster_and_data="0x" + "99" * 40,
        pre_verification_gas=77_777,
        verification_gas_limit=222_222,
        call_gas_limit=111_111,
        max_fee_per_gas=5_000,
        max_priority_fee_per_gas=500,
    )

    @pytest.mark.asyncio
    async def test_sponsored_fields_kept(self):
        """Sponsor values win and preVerificationGas is not recomputed."""
        negotiator = MagicMock()
        negotiator.negotiate = AsyncMock(side_effect=lambda op, **kw: self.QUOTE.apply(op))
        builder = make_builder(FakeChainProvider(), negotiator=negotiator)

        op = await builder.build(TransactionRequest(target=TARGET, paymaster_url="https://pm.example"))

        assert op.paymaster_and_data == self.QUOTE.paymaster_and_data
        assert op.pre_verification_gas == 77_777
        assert op.call_gas_limit == 111_111
        assert op.signature == "0x"
        assert negotiator.negotiate.await_args.kwargs["paymaster_url"] == "https://pm.example"

    @pytest.mark.asyncio
    async def test_declined_sponsorship_computes_pvg(self):
        """When the sponsor returns the op unchanged, preVerificationGas is calculated."""
        negotiator = MagicMock()
        negotiator.negotiate = AsyncMock(side_effect=lambda op, **kw: op)
        builder = make_builder(FakeChainProvider(), negotiator=negotiator)

        op = await builder.build(TransactionRequest(target=TARGET))

        assert op.paymaster_and_data == "0x"
        assert op.pre_verification_gas == expected_pvg(op)


class TestBatch:
    """executeBatch operations."""

    @pytest.mark.asyncio
    async def test_batch_call_data(self):
        """Batch callData uses executeBatch and fees from the chain."""
        provider = FakeChainProvider()
        builder = make_builder(provider)

        op = await builder.build_batch(
            [
                TransactionRequest(target=TARGET, data="0x01", max_fee_per_gas=1),
                TransactionRequest(target=SENDER, data="0x02"),
            ]
        )

        assert op.call_data.startswith("0x" + EXECUTE_BATCH_SELECTOR.hex())
        assert op.max_fee_per_gas == 3_000_000_000
        assert provider.fee_data_calls == 1

    @pytest.mark.asyncio
    async def test_empty_batch(self):
        """A batch needs at least one call."""
        builder = make_builder(FakeChainProvider())
        with pytest.raises(EncodingError):
            await builder.build_batch([])


class TestEndToEnd:
    """Full builds against realistic chain state."""

    @pytest.mark.asyncio
    async def test_deployed_wallet_single_call(self):
        """Deployed wallet with nonce 5 at a 10 gwei base fee."""
        base_fee = 10 * 10**9
        tip = 1_500_000_000
        provider = FakeChainProvider(
            nonce=5,
            fee_data=FeeData(
                max_fee_per_gas=2 * base_fee + tip,
                max_priority_fee_per_gas=tip,
                base_fee_per_gas=base_fee,
            ),
        )
        provider.deploy(SENDER)
        builder = make_builder(provider)

        op = await builder.build(TransactionRequest(target=TARGET, data="0x1234", value=0))

        assert op.nonce == 5
        assert op.init_code == "0x"
        assert op.call_data == builder.wallet.encode_execute(TARGET, 0, "0x1234")
        assert op.max_fee_per_gas >= op.max_priority_fee_per_gas
        assert op.pre_verification_gas > 0

    @pytest.mark.asyncio
    async def test_undeployed_init_code_decodes(self):
        """initCode of a fresh wallet names the factory, owner and index."""
        provider = FakeChainProvider()
        wallet = SimpleAccount(provider, OWNER, factory_address=FACTORY, index=4)
        builder = OperationBuilder(provider, wallet, ENTRY_POINT)

        op = await builder.build(TransactionRequest(target=TARGET))
        factory, owner, index = decode_init_code(op.init_code)

        assert (factory.lower(), owner.lower(), index) == (FACTORY, OWNER, 4)

    @pytest.mark.asyncio
    async def test_paymaster_call_gas_overrides_estimate(self, httpx_mock):
        """A sponsor quote with callGasLimit 50000 replaces the estimate exactly."""
        url = "https://paymaster.example.com/rpc"
        httpx_mock.add_response(
            url=url,
            method="POST",
            json={
                "jsonrpc": "2.0",
                "id": 1,
                "result": {
                    "paymasterAndData": "0x" + "99" * 60,
                    "preVerificationGas": hex(48_000),
                    "verificationGasLimit": hex(120_000),
                    "callGasLimit": hex(50_000),
                    "maxFeePerGas": hex(3_000_000_000),
                    "maxPriorityFeePerGas": hex(1_000_000_000),
                },
            },
        )
        config = PaymasterConfig(url=url)
        negotiator = PaymasterNegotiator(ENTRY_POINT, client=PaymasterClient(config), config=config)
        builder = make_builder(FakeChainProvider(call_gas=90_000), negotiator=negotiator)

        op = await builder.build(TransactionRequest(target=TARGET))
        await negotiator.close()

        assert op.call_gas_limit == 50_000
        assert op.pre_verification_gas == 48_000
        assert op.verification_gas_limit == 120_000


class StallingEstimateProvider(FakeChainProvider):
    """Gas estimates never answer; fee data fails."""

    def __init__(self):
        super().__init__()
        self.cancelled_estimates = 0

    async def estimate_gas(self, tx, deadline=None):
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            self.cancelled_estimates += 1
            raise

    async def get_fee_data(self, deadline=None):
        await asyncio.sleep(0)
        raise ProviderError("eth_getBlockByNumber failed", method="eth_getBlockByNumber")


class TestFailedReads:
    """A failing chain read during assembly."""

    @pytest.mark.asyncio
    async def test_pending_reads_cancelled(self):
        """The other concurrent reads should be cancelled and the failure raised."""
        provider = StallingEstimateProvider()
        provider.deploy()
        builder = make_builder(provider)

        with pytest.raises(ProviderError, match="eth_getBlockByNumber"):
            await builder.build(TransactionRequest(target=TARGET))

        assert provider.cancelled_estimates == 1
