"""UserOperation primitives for ERC-4337 (EntryPoint v0.6 layout)."""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from eth_abi import encode
from eth_abi.exceptions import EncodingError as AbiEncodingError
from eth_utils import to_bytes
from web3 import Web3

from ..exceptions import EncodingError

USER_OP_TUPLE_TYPE = (
    "(address,uint256,bytes,bytes,uint256,uint256,uint256,uint256,uint256,bytes,bytes)"
)


def is_empty_hex(value: Optional[str]) -> bool:
    return value is None or value in ("", "0x", "0X")


def hex_to_bytes(value: Optional[str]) -> bytes:
    if is_empty_hex(value):
        return b""
    try:
        return to_bytes(hexstr=value)
    except (TypeError, ValueError) as e:
        raise EncodingError(f"Invalid hex data: {value!r}") from e


def to_quantity(value: Any) -> int:
    """Parse an int, decimal string or 0x-prefixed hex quantity."""
    if isinstance(value, bool):
        raise EncodingError(f"Invalid quantity: {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 16) if value.lower().startswith("0x") else int(value)
        except ValueError as e:
            raise EncodingError(f"Invalid quantity: {value!r}") from e
    raise EncodingError(f"Invalid quantity: {value!r}")


def _to_hex_int(value: int) -> str:
    return hex(max(0, int(value)))


@dataclass(frozen=True)
class UserOperation:
    sender: str
    nonce: int
    init_code: str = "0x"
    call_data: str = "0x"
    call_gas_limit: int = 0
    verification_gas_limit: int = 0
    pre_verification_gas: int = 0
    max_fee_per_gas: int = 0
    max_priority_fee_per_gas: int = 0
    paymaster_and_data: str = "0x"
    signature: str = "0x"

    def replace(self, **changes: Any) -> "UserOperation":
        """Return a copy with ``changes`` applied."""
        return dataclasses.replace(self, **changes)

    @property
    def is_signed(self) -> bool:
        return not is_empty_hex(self.signature)

    def to_rpc(self) -> dict[str, Any]:
        return {
            "sender": self.sender,
            "nonce": _to_hex_int(self.nonce),
            "initCode": self.init_code or "0x",
            "callData": self.call_data or "0x",
            "callGasLimit": _to_hex_int(self.call_gas_limit),
            "verificationGasLimit": _to_hex_int(self.verification_gas_limit),
            "preVerificationGas": _to_hex_int(self.pre_verification_gas),
            "maxFeePerGas": _to_hex_int(self.max_fee_per_gas),
            "maxPriorityFeePerGas": _to_hex_int(self.max_priority_fee_per_gas),
            "paymasterAndData": self.paymaster_and_data or "0x",
            "signature": self.signature or "0x",
        }

    @classmethod
    def from_rpc(cls, data: Mapping[str, Any]) -> "UserOperation":
        try:
            return cls(
                sender=data["sender"],
                nonce=to_quantity(data.get("nonce", 0)),
                init_code=data.get("initCode") or "0x",
                call_data=data.get("callData") or "0x",
                call_gas_limit=to_quantity(data.get("callGasLimit", 0)),
                verification_gas_limit=to_quantity(data.get("verificationGasLimit", 0)),
                pre_verification_gas=to_quantity(data.get("preVerificationGas", 0)),
                max_fee_per_gas=to_quantity(data.get("maxFeePerGas", 0)),
                max_priority_fee_per_gas=to_quantity(data.get("maxPriorityFeePerGas", 0)),
                paymaster_and_data=data.get("paymasterAndData") or "0x",
                signature=data.get("signature") or "0x",
            )
        except KeyError as e:
            raise EncodingError(f"UserOperation is missing {e.args[0]}") from e

    def as_tuple(self) -> tuple:
        """Struct values in on-chain order, for ABI encoding."""
        return (
            Web3.to_checksum_address(self.sender),
            self.nonce,
            hex_to_bytes(self.init_code),
            hex_to_bytes(self.call_data),
            self.call_gas_limit,
            self.verification_gas_limit,
            self.pre_verification_gas,
            self.max_fee_per_gas,
            self.max_priority_fee_per_gas,
            hex_to_bytes(self.paymaster_and_data),
            hex_to_bytes(self.signature),
        )

    def pack(self) -> bytes:
        """Encoding signed over: dynamic fields hashed, signature excluded."""
        try:
            return encode(
                [
                    "address",
                    "uint256",
                    "bytes32",
                    "bytes32",
                    "uint256",
                    "uint256",
                    "uint256",
                    "uint256",
                    "uint256",
                    "bytes32",
                ],
                [
                    Web3.to_checksum_address(self.sender),
                    self.nonce,
                    Web3.keccak(hex_to_bytes(self.init_code)),
                    Web3.keccak(hex_to_bytes(self.call_data)),
                    self.call_gas_limit,
                    self.verification_gas_limit,
                    self.pre_verification_gas,
                    self.max_fee_per_gas,
                    self.max_priority_fee_per_gas,
                    Web3.keccak(hex_to_bytes(self.paymaster_and_data)),
                ],
            )
        except (AbiEncodingError, TypeError, ValueError, OverflowError) as e:
            raise EncodingError(f"Cannot pack UserOperation: {e}") from e

    def encode(self) -> bytes:
        """Full ABI encoding of every field, signature included."""
        try:
            return encode(
                [
                    "address",
                    "uint256",
                    "bytes",
                    "bytes",
                    "uint256",
                    "uint256",
                    "uint256",
                    "uint256",
                    "uint256",
                    "bytes",
                    "bytes",
                ],
                list(self.as_tuple()),
            )
        except (AbiEncodingError, TypeError, ValueError, OverflowError) as e:
            raise EncodingError(f"Cannot encode UserOperation: {e}") from e

    def user_op_hash(self, entry_point: str, chain_id: int) -> bytes:
        """User operation hash as derived by EntryPoint.getUserOpHash."""
        return Web3.keccak(
            encode(
                ["bytes32", "address", "uint256"],
                [Web3.keccak(self.pack()), Web3.to_checksum_address(entry_point), chain_id],
            )
        )


@dataclass(frozen=True)
class BundlerGasEstimate:
    """Bundler response to eth_estimateUserOperationGas."""
    call_gas_limit: int
    pre_verification_gas: int
    verification_gas: int

    @classmethod
    def from_rpc(cls, data: Mapping[str, Any]) -> "BundlerGasEstimate":
        verification = data.get("verificationGas")
        if verification is None:
            verification = data.get("verificationGasLimit", 0)
        return cls(
            call_gas_limit=to_quantity(data.get("callGasLimit", 0)),
            pre_verification_gas=to_quantity(data.get("preVerificationGas", 0)),
            verification_gas=to_quantity(verification),
        )


@dataclass(frozen=True)
class PaymasterQuote:
    """Sponsor response; overwrites the matching operation fields."""
    paymaster_and_data: str
    pre_verification_gas: int
    verification_gas_limit: int
    call_gas_limit: int
    max_fee_per_gas: int
    max_priority_fee_per_gas: int

    @classmethod
    def from_rpc(cls, data: Mapping[str, Any]) -> "PaymasterQuote":
        paymaster_and_data = data.get("paymasterAndData")
        if not isinstance(paymaster_and_data, str):
            raise EncodingError("Paymaster quote is missing paymasterAndData")
        try:
            return cls(
                paymaster_and_data=paymaster_and_data,
                pre_verification_gas=to_quantity(data["preVerificationGas"]),
                verification_gas_limit=to_quantity(data["verificationGasLimit"]),
                call_gas_limit=to_quantity(data["callGasLimit"]),
                max_fee_per_gas=to_quantity(data["maxFeePerGas"]),
                max_priority_fee_per_gas=to_quantity(data["maxPriorityFeePerGas"]),
            )
        except KeyError as e:
            raise EncodingError(f"Paymaster quote is missing {e.args[0]}") from e

    def apply(self, user_op: UserOperation) -> UserOperation:
        return user_op.replace(
            paymaster_and_data=self.paymaster_and_data,
            pre_verification_gas=self.pre_verification_gas,
            verification_gas_limit=self.verification_gas_limit,
            call_gas_limit=self.call_gas_limit,
            max_fee_per_gas=self.max_fee_per_gas,
            max_priority_fee_per_gas=self.max_priority_fee_per_gas,
        )


@dataclass
class TransactionRequest:
    """High-level wallet call to turn into a user operation."""
    target: str
    data: str = "0x"
    value: int = 0
    gas_limit: Optional[int] = None
    max_fee_per_gas: Optional[int] = None
    max_priority_fee_per_gas: Optional[int] = None
    nonce: Optional[int] = None
    verification_gas_limit: Optional[int] = None
    paymaster_url: Optional[str] = None
