"""EntryPoint v0.6 ABI helpers: view calls and UserOperationEvent decoding."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from eth_abi import decode, encode
from web3 import Web3

from ..exceptions import EncodingError
from .user_operation import USER_OP_TUPLE_TYPE, UserOperation, to_quantity

GET_USER_OP_HASH_SELECTOR = bytes(
    Web3.keccak(text=f"getUserOpHash({USER_OP_TUPLE_TYPE})")[:4]
)

USER_OPERATION_EVENT_SIGNATURE = (
    "UserOperationEvent(bytes32,address,address,uint256,bool,uint256,uint256)"
)
USER_OPERATION_EVENT_TOPIC = "0x" + bytes(Web3.keccak(text=USER_OPERATION_EVENT_SIGNATURE)).hex()


def pad_topic(address: str) -> str:
    """Left-pad an address into a 32-byte log topic."""
    return "0x" + address.lower().removeprefix("0x").zfill(64)


def encode_get_user_op_hash(user_op: UserOperation) -> str:
    """Calldata for EntryPoint.getUserOpHash(op) with the signature blanked."""
    blank = user_op.replace(signature="0x")
    encoded = encode([USER_OP_TUPLE_TYPE], [blank.as_tuple()])
    return "0x" + (GET_USER_OP_HASH_SELECTOR + encoded).hex()


def decode_bytes32(result: str) -> bytes:
    raw = bytes.fromhex(result.removeprefix("0x"))
    if len(raw) < 32:
        raise EncodingError(f"Expected 32-byte result, got {len(raw)} bytes")
    return raw[:32]


@dataclass(frozen=True)
class UserOperationEvent:
    """Decoded EntryPoint UserOperationEvent log."""
    user_op_hash: str
    sender: str
    paymaster: str
    nonce: int
    success: bool
    actual_gas_cost: int
    actual_gas_used: int
    transaction_hash: str
    block_number: Optional[int] = None
    log_index: Optional[int] = None

    @classmethod
    def from_log(cls, log: Dict[str, Any]) -> "UserOperationEvent":
        topics = log.get("topics") or []
        if len(topics) < 4:
            raise EncodingError("UserOperationEvent log is missing indexed topics")
        try:
            nonce, success, actual_gas_cost, actual_gas_used = decode(
                ["uint256", "bool", "uint256", "uint256"],
                bytes.fromhex(log["data"].removeprefix("0x")),
            )
        except Exception as e:
            raise EncodingError(f"Cannot decode UserOperationEvent data: {e}") from e

        block_number = log.get("blockNumber")
        log_index = log.get("logIndex")
        return cls(
            user_op_hash=topics[1],
            sender=Web3.to_checksum_address("0x" + topics[2][-40:]),
            paymaster=Web3.to_checksum_address("0x" + topics[3][-40:]),
            nonce=nonce,
            success=success,
            actual_gas_cost=actual_gas_cost,
            actual_gas_used=actual_gas_used,
            transaction_hash=log["transactionHash"],
            block_number=to_quantity(block_number) if block_number is not None else None,
            log_index=to_quantity(log_index) if log_index is not None else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "userOpHash": self.user_op_hash,
            "sender": self.sender,
            "paymaster": self.paymaster,
            "nonce": self.nonce,
            "success": self.success,
            "actualGasCost": self.actual_gas_cost,
            "actualGasUsed": self.actual_gas_used,
            "transactionHash": self.transaction_hash,
            "blockNumber": self.block_number,
        }
