"""Pass-through chain queries: address validation, ERC-20 metadata and balances."""
from __future__ import annotations

import asyncio
import logging
from decimal import Decimal
from typing import Any, Dict, Optional

from eth_abi import decode, encode
from web3 import Web3

from .deadline import Deadline
from .exceptions import ProviderError
from .rpc_client import ChainProvider

logger = logging.getLogger(__name__)

WEI_PER_ETHER = Decimal(10) ** 18

_NAME = bytes(Web3.keccak(text="name()")[:4])
_SYMBOL = bytes(Web3.keccak(text="symbol()")[:4])
_DECIMALS = bytes(Web3.keccak(text="decimals()")[:4])
_BALANCE_OF = bytes(Web3.keccak(text="balanceOf(address)")[:4])

# Fallback fee suggestion when the chain cannot be queried
DEFAULT_FEE_WEI = 10_000_000


def validate_address(address: str) -> bool:
    """Return True for a well-formed address (checksum enforced when mixed case)."""
    return isinstance(address, str) and Web3.is_address(address)


def format_ether(wei: int) -> Decimal:
    return Decimal(wei) / WEI_PER_ETHER


async def _call_and_decode(
    provider: ChainProvider,
    to: str,
    data: bytes,
    abi_type: str,
    deadline: Optional[Deadline] = None,
) -> Any:
    result = await provider.call({"to": to, "data": "0x" + data.hex()}, deadline=deadline)
    try:
        (value,) = decode([abi_type], bytes.fromhex(result.removeprefix("0x")))
    except Exception as e:
        raise ProviderError(f"Cannot decode {abi_type} returned by {to}: {e}", method="eth_call") from e
    return value


async def get_erc20_token_details(
    provider: ChainProvider,
    token_address: str,
    deadline: Optional[Deadline] = None,
) -> Dict[str, Any]:
    """Fetch name, symbol and decimals of an ERC-20 token concurrently."""
    name, symbol, decimals = await asyncio.gather(
        _call_and_decode(provider, token_address, _NAME, "string", deadline),
        _call_and_decode(provider, token_address, _SYMBOL, "string", deadline),
        _call_and_decode(provider, token_address, _DECIMALS, "uint8", deadline),
    )
    return {"name": name, "symbol": symbol, "decimals": decimals}


async def get_native_balance(
    provider: ChainProvider,
    address: str,
    deadline: Optional[Deadline] = None,
) -> Decimal:
    """Native balance in ether units."""
    return format_ether(await provider.get_balance(address, deadline=deadline))


async def get_erc20_token_balance(
    provider: ChainProvider,
    address: str,
    token_address: str,
    deadline: Optional[Deadline] = None,
) -> Decimal:
    """Token balance formatted with 18 decimals."""
    data = _BALANCE_OF + encode(["address"], [Web3.to_checksum_address(address)])
    balance = await _call_and_decode(provider, token_address, data, "uint256", deadline)
    return format_ether(balance)


async def get_gas_price(
    provider: ChainProvider,
    deadline: Optional[Deadline] = None,
) -> Dict[str, int]:
    """
    Aggressive fee suggestion for user operations.

    The priority fee is the node's suggested tip plus a 10x buffer; the max
    fee adds twice the base fee. Falls back to 10,000,000 wei for both fields
    when the chain cannot be queried.
    """
    try:
        block, tip = await asyncio.gather(
            provider.get_block("latest", deadline=deadline),
            provider.get_max_priority_fee(deadline=deadline),
        )
        max_priority_fee_per_gas = tip + tip * 10
        base_fee = (block or {}).get("baseFeePerGas")
        if base_fee is None:
            max_fee_per_gas = max_priority_fee_per_gas
        else:
            base_fee = int(base_fee, 16) if isinstance(base_fee, str) else int(base_fee)
            max_fee_per_gas = base_fee * 2 + max_priority_fee_per_gas
    except ProviderError as e:
        logger.warning(f"Gas price lookup failed, using defaults: {e}")
        return {"maxFeePerGas": DEFAULT_FEE_WEI, "maxPriorityFeePerGas": DEFAULT_FEE_WEI}

    return {
        "maxFeePerGas": max_fee_per_gas,
        "maxPriorityFeePerGas": max_priority_fee_per_gas,
    }
