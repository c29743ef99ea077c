"""Pre-verification gas calculation.

preVerificationGas covers the cost the EntryPoint cannot meter on-chain:
calldata bytes of the packed operation plus the per-bundle and per-operation
overheads of the handleOps transaction.
"""

from __future__ import annotations

import math
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from ..config import GasOverheads
from .user_operation import UserOperation, is_empty_hex

DEFAULT_OVERHEADS = GasOverheads()

# Dummy gas values; their encoded size is fixed regardless of magnitude
_DUMMY_PRE_VERIFICATION_GAS = 100000
_DUMMY_VERIFICATION_GAS_LIMIT = 1000000
_DUMMY_CALL_GAS_LIMIT = 1000000

DUMMY_PAYMASTER_DATA_LENGTH = 149


def dummy_signature(overheads: GasOverheads = DEFAULT_OVERHEADS) -> str:
    return "0x" + "01" * overheads.sig_size


def compute_pre_verification_gas(
    user_op: UserOperation,
    overheads: Optional[GasOverheads] = None,
) -> int:
    """
    Calculate the preVerificationGas of ``user_op``.

    Args:
        user_op: Filled operation; signature and preVerificationGas may be empty
        overheads: Overhead table, defaults to GasOverheads()

    Returns:
        Gas units, rounded half up

    Raises:
        EncodingError: If the operation cannot be ABI encoded
    """
    ov = overheads or DEFAULT_OVERHEADS

    priced = user_op.replace(
        pre_verification_gas=_DUMMY_PRE_VERIFICATION_GAS,
        verification_gas_limit=_DUMMY_VERIFICATION_GAS_LIMIT,
        call_gas_limit=_DUMMY_CALL_GAS_LIMIT,
        signature=dummy_signature(ov) if is_empty_hex(user_op.signature) else user_op.signature,
    )
    packed = priced.encode()

    word_count = math.ceil(len(packed) / 32)
    call_data_cost = sum(ov.zero_byte if b == 0 else ov.non_zero_byte for b in packed)

    total = (
        Decimal(call_data_cost)
        + Decimal(ov.fixed + ov.batch_fixed) / Decimal(ov.bundle_size)
        + Decimal(ov.per_user_op)
        + Decimal(ov.per_user_op_word * word_count)
    )
    return int(total.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def compute_pre_verification_gas_with_paymaster(
    user_op: UserOperation,
    paymaster_data_length: int = DUMMY_PAYMASTER_DATA_LENGTH,
    overheads: Optional[GasOverheads] = None,
) -> int:
    """Price ``user_op`` as if it carried ``paymaster_data_length`` bytes of paymaster data."""
    return compute_pre_verification_gas(
        user_op.replace(paymaster_and_data="0x" + "01" * paymaster_data_length),
        overheads,
    )
