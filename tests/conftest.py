"""
Pytest configuration and shared fakes for aa-sdk tests.
"""
from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional, Union

import pytest
from eth_abi import encode

from aa_sdk.config import ENTRYPOINT_V06, LoggingConfig, PollingConfig
from aa_sdk.erc4337.account import GET_ADDRESS_SELECTOR, GET_NONCE_SELECTOR
from aa_sdk.erc4337.entrypoint import (
    GET_USER_OP_HASH_SELECTOR,
    USER_OPERATION_EVENT_TOPIC,
    pad_topic,
)
from aa_sdk.erc4337.user_operation import BundlerGasEstimate, UserOperation
from aa_sdk.exceptions import ProviderError
from aa_sdk.logging_utils import OperationLogger
from aa_sdk.rpc_client import ChainProvider, FeeData
from aa_sdk.signer import LocalAccountSigner

ENTRY_POINT = ENTRYPOINT_V06
FACTORY = "0x9406cc6185a346906296840746125a0e44976454"
SENDER = "0x1234567890123456789012345678901234567890"
TARGET = "0x" + "ab" * 20
PRIVATE_KEY = "0x" + "11" * 32
ONCHAIN_HASH = "0x" + "ab" * 32
TX_HASH = "0x" + "cd" * 32


def _hex_data(tx: Dict[str, Any]) -> str:
    return (tx.get("data") or "0x").lower()


class FakeChainProvider(ChainProvider):
    """In-memory ChainProvider recording every call."""

    def __init__(
        self,
        code: Optional[Dict[str, str]] = None,
        fee_data: Optional[FeeData] = None,
        call_gas: int = 50_000,
        creation_gas: int = 200_000,
        nonce: int = 0,
        counterfactual_address: str = SENDER,
        user_op_hash: Optional[str] = ONCHAIN_HASH,
        head: int = 5_000,
        logs: Optional[List[List[Dict[str, Any]]]] = None,
        chain_id: int = 1,
    ):
        self.code = {k.lower(): v for k, v in (code or {}).items()}
        self.fee_data = fee_data or FeeData(
            max_fee_per_gas=3_000_000_000,
            max_priority_fee_per_gas=1_000_000_000,
            base_fee_per_gas=1_000_000_000,
        )
        self.call_gas = call_gas
        self.creation_gas = creation_gas
        self.nonce = nonce
        self.counterfactual_address = counterfactual_address
        self.user_op_hash = user_op_hash
        self.head = head
        self.logs = list(logs or [])
        self.chain_id = chain_id
        self.block: Optional[Dict[str, Any]] = {"number": hex(head), "baseFeePerGas": hex(100)}
        self.priority_fee = 10
        self.balances: Dict[str, int] = {}
        self.call_handlers: Dict[str, Callable[[Dict[str, Any]], str]] = {}

        self.get_code_calls: List[str] = []
        self.fee_data_calls = 0
        self.estimate_calls: List[Dict[str, Any]] = []
        self.calls: List[Dict[str, Any]] = []
        self.log_queries: List[Dict[str, Any]] = []
        self.block_number_calls = 0
        self.receipt_calls: List[str] = []

    def deploy(self, address: str = SENDER, code: str = "0x6080") -> None:
        self.code[address.lower()] = code

    async def get_code(self, address, deadline=None):
        self.get_code_calls.append(address)
        return self.code.get(address.lower(), "0x")

    async def get_fee_data(self, deadline=None):
        self.fee_data_calls += 1
        return self.fee_data

    async def get_max_priority_fee(self, deadline=None):
        return self.priority_fee

    async def estimate_gas(self, tx, deadline=None):
        self.estimate_calls.append(tx)
        if "from" in tx:
            return self.call_gas
        return self.creation_gas

    async def call(self, tx, block="latest", deadline=None):
        self.calls.append(tx)
        data = _hex_data(tx)
        for prefix, handler in self.call_handlers.items():
            if data.startswith(prefix.lower()):
                return handler(tx)
        if data.startswith("0x" + GET_USER_OP_HASH_SELECTOR.hex()):
            if self.user_op_hash is None:
                raise ProviderError("execution reverted", method="eth_call", code=3)
            return self.user_op_hash
        if data.startswith("0x" + GET_NONCE_SELECTOR.hex()):
            return "0x" + encode(["uint256"], [self.nonce]).hex()
        if data.startswith("0x" + GET_ADDRESS_SELECTOR.hex()):
            return "0x" + encode(["address"], [self.counterfactual_address]).hex()
        raise ProviderError(f"Unexpected eth_call: {data[:10]}", method="eth_call")

    async def get_transaction_receipt(self, tx_hash, deadline=None):
        self.receipt_calls.append(tx_hash)
        return {"transactionHash": tx_hash, "status": "0x1"}

    async def get_block(self, block="latest", deadline=None):
        return self.block

    async def get_block_number(self, deadline=None):
        self.block_number_calls += 1
        return self.head

    async def get_logs(self, filter_params, deadline=None):
        self.log_queries.append(filter_params)
        if self.logs:
            return self.logs.pop(0)
        return []

    async def get_balance(self, address, deadline=None):
        return self.balances.get(address.lower(), 0)

    async def get_chain_id(self, deadline=None):
        return self.chain_id


Scripted = Union[Any, Exception]


class FakeBundler:
    """Scripted bundler: each call pops the next response, exceptions are raised."""

    def __init__(
        self,
        estimates: Optional[List[Scripted]] = None,
        send_results: Optional[List[Scripted]] = None,
    ):
        self.estimates = list(estimates or [])
        self.send_results = list(send_results or [])
        self.estimated: List[UserOperation] = []
        self.sent: List[UserOperation] = []

    @staticmethod
    def _next(script: List[Scripted], default: Any) -> Any:
        item = script.pop(0) if script else default
        if isinstance(item, Exception):
            raise item
        return item

    async def estimate_user_operation_gas(self, user_op, deadline=None):
        self.estimated.append(user_op)
        return self._next(
            self.estimates,
            BundlerGasEstimate(
                call_gas_limit=user_op.call_gas_limit,
                pre_verification_gas=user_op.pre_verification_gas,
                verification_gas=user_op.verification_gas_limit,
            ),
        )

    async def send_user_operation(self, user_op, deadline=None):
        self.sent.append(user_op)
        return self._next(self.send_results, ONCHAIN_HASH)

    async def close(self):
        pass


class FakeClock:
    """Monotonic clock advanced only by the fake sleep."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def make_event_log(
    user_op_hash: str = ONCHAIN_HASH,
    sender: str = SENDER,
    tx_hash: str = TX_HASH,
    nonce: int = 0,
    success: bool = True,
) -> Dict[str, Any]:
    """Raw UserOperationEvent log as returned by eth_getLogs."""
    data = encode(["uint256", "bool", "uint256", "uint256"], [nonce, success, 21_000, 100_000])
    return {
        "address": ENTRY_POINT,
        "topics": [
            USER_OPERATION_EVENT_TOPIC,
            user_op_hash,
            pad_topic(sender),
            pad_topic("0x" + "00" * 20),
        ],
        "data": "0x" + data.hex(),
        "transactionHash": tx_hash,
        "blockNumber": "0x1389",
        "logIndex": "0x0",
    }


def make_user_op(**overrides: Any) -> UserOperation:
    fields = dict(
        sender=SENDER,
        nonce=0,
        init_code="0x",
        call_data="0x",
        call_gas_limit=65_000,
        verification_gas_limit=150_000,
        pre_verification_gas=50_000,
        max_fee_per_gas=1_000,
        max_priority_fee_per_gas=101,
    )
    fields.update(overrides)
    return UserOperation(**fields)


@pytest.fixture
def provider():
    return FakeChainProvider()


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def signer():
    return LocalAccountSigner(PRIVATE_KEY)


@pytest.fixture
def op_logger():
    return OperationLogger(config=LoggingConfig())


@pytest.fixture
def polling_config():
    return PollingConfig(timeout_ms=10_000, interval_ms=1_000)
