"""
Assembly of unsigned user operations from transaction requests.

Each field has a defined source:
- sender: counterfactual wallet address, cached
- nonce: request value, else 0 for undeployed wallets, else the wallet's getNonce()
- initCode: empty once deployed, else factory + createAccount(owner, index)
- callData / callGasLimit: execute or executeBatch, estimated from the entry point
- verificationGasLimit: base allowance + deployment cost, optionally capped
- fees: request values, missing ones filled from the chain's fee estimate
- preVerificationGas: calculated after paymaster negotiation
"""
from __future__ import annotations

import asyncio
import logging
from typing import Optional, Sequence, Tuple

from ..config import BuilderPolicy, GasOverheads
from ..deadline import Deadline
from ..exceptions import EncodingError
from ..rpc_client import ChainProvider, FeeData
from .account import WalletContract, split_init_code
from .gas import compute_pre_verification_gas
from .paymaster_client import PaymasterNegotiator
from .user_operation import TransactionRequest, UserOperation, is_empty_hex

logger = logging.getLogger(__name__)


async def _resolved(value):
    return value


async def _gather_reads(*reads):
    """gather() that cancels the remaining reads once one of them fails."""
    tasks = [asyncio.ensure_future(read) for read in reads]
    try:
        return await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


class OperationBuilder:
    """Builds unsigned UserOperations for a single wallet."""

    def __init__(
        self,
        provider: ChainProvider,
        wallet: WalletContract,
        entry_point: str,
        negotiator: Optional[PaymasterNegotiator] = None,
        policy: Optional[BuilderPolicy] = None,
        overheads: Optional[GasOverheads] = None,
    ):
        self._provider = provider
        self._wallet = wallet
        self._entry_point = entry_point
        self._negotiator = negotiator or PaymasterNegotiator(entry_point)
        self._policy = policy or BuilderPolicy()
        self._overheads = overheads or GasOverheads()
        self._deployed = False

    @property
    def wallet(self) -> WalletContract:
        return self._wallet

    @property
    def negotiator(self) -> PaymasterNegotiator:
        return self._negotiator

    async def get_sender(self, deadline: Optional[Deadline] = None) -> str:
        return await self._wallet.get_address(deadline=deadline)

    async def is_deployed(self, deadline: Optional[Deadline] = None) -> bool:
        """Whether the wallet has code; a positive answer is cached."""
        if self._deployed:
            return True
        sender = await self.get_sender(deadline=deadline)
        code = await self._provider.get_code(sender, deadline=deadline)
        self._deployed = not is_empty_hex(code)
        return self._deployed

    async def get_nonce(self, deadline: Optional[Deadline] = None) -> int:
        if not await self.is_deployed(deadline=deadline):
            return 0
        return await self._wallet.get_nonce(deadline=deadline)

    async def get_init_code(self, deadline: Optional[Deadline] = None) -> str:
        if await self.is_deployed(deadline=deadline):
            return "0x"
        return self._wallet.get_init_code()

    async def estimate_creation_gas(self, init_code: str, deadline: Optional[Deadline] = None) -> int:
        if is_empty_hex(init_code):
            return 0
        factory, factory_call = split_init_code(init_code)
        return await self._provider.estimate_gas(
            {"to": factory, "data": factory_call}, deadline=deadline
        )

    def verification_gas_limit(self, creation_gas: int) -> int:
        """Base verification allowance plus deployment cost, capped by policy."""
        limit = self._policy.base_verification_gas + creation_gas
        cap = self._policy.max_verification_gas_limit
        if cap is not None and limit > cap:
            logger.debug(f"Capping verificationGasLimit {limit} at {cap}")
            return cap
        return limit

    def encode_call_data(self, request: TransactionRequest) -> str:
        if request.target == "0x":
            return "0x"
        return self._wallet.encode_execute(request.target, request.value or 0, request.data or "0x")

    async def estimate_call_gas(
        self,
        sender: str,
        call_data: str,
        deadline: Optional[Deadline] = None,
    ) -> int:
        estimate = await self._provider.estimate_gas(
            {"from": self._entry_point, "to": sender, "data": call_data},
            deadline=deadline,
        )
        return estimate + self._policy.call_gas_margin

    async def resolve_fees(
        self,
        max_fee_per_gas: Optional[int],
        max_priority_fee_per_gas: Optional[int],
        deadline: Optional[Deadline] = None,
    ) -> Tuple[int, int]:
        """Fill only the fee fields the caller left out."""
        if max_fee_per_gas is not None and max_priority_fee_per_gas is not None:
            return max_fee_per_gas, max_priority_fee_per_gas

        fee_data: FeeData = await self._provider.get_fee_data(deadline=deadline)
        if max_fee_per_gas is None:
            max_fee_per_gas = fee_data.max_fee_per_gas
        if max_priority_fee_per_gas is None:
            max_priority_fee_per_gas = fee_data.max_priority_fee_per_gas
        return max_fee_per_gas, max_priority_fee_per_gas

    async def _assemble(
        self,
        call_data: str,
        call_gas_limit: Optional[int],
        nonce: Optional[int],
        verification_gas_limit: Optional[int],
        max_fee_per_gas: Optional[int],
        max_priority_fee_per_gas: Optional[int],
        paymaster_url: Optional[str],
        deadline: Optional[Deadline],
    ) -> UserOperation:
        sender = await self.get_sender(deadline=deadline)
        deployed = await self.is_deployed(deadline=deadline)
        init_code = "0x" if deployed else self._wallet.get_init_code()

        call_gas_task = (
            _resolved(call_gas_limit)
            if call_gas_limit is not None
            else self.estimate_call_gas(sender, call_data, deadline=deadline)
        )
        creation_gas_task = (
            _resolved(0)
            if verification_gas_limit is not None
            else self.estimate_creation_gas(init_code, deadline=deadline)
        )
        if nonce is not None:
            nonce_task = _resolved(nonce)
        elif deployed:
            nonce_task = self._wallet.get_nonce(deadline=deadline)
        else:
            nonce_task = _resolved(0)

        call_gas, creation_gas, resolved_nonce, fees = await _gather_reads(
            call_gas_task,
            creation_gas_task,
            nonce_task,
            self.resolve_fees(max_fee_per_gas, max_priority_fee_per_gas, deadline=deadline),
        )

        user_op = UserOperation(
            sender=sender,
            nonce=resolved_nonce,
            init_code=init_code,
            call_data=call_data,
            call_gas_limit=call_gas,
            verification_gas_limit=(
                verification_gas_limit
                if verification_gas_limit is not None
                else self.verification_gas_limit(creation_gas)
            ),
            max_fee_per_gas=fees[0],
            max_priority_fee_per_gas=fees[1],
            paymaster_and_data="0x",
            signature="0x",
        )
        return await self.finalize(user_op, paymaster_url=paymaster_url, deadline=deadline)

    async def finalize(
        self,
        user_op: UserOperation,
        paymaster_url: Optional[str] = None,
        deadline: Optional[Deadline] = None,
    ) -> UserOperation:
        """Negotiate sponsorship, then fill preVerificationGas if the sponsor did not."""
        unsponsored = user_op.replace(paymaster_and_data="0x")
        negotiated = await self._negotiator.negotiate(
            unsponsored, deadline=deadline, paymaster_url=paymaster_url
        )
        # only a quote puts paymasterAndData on the operation
        if not is_empty_hex(negotiated.paymaster_and_data):
            return negotiated.replace(signature="0x")

        pre_verification_gas = (
            compute_pre_verification_gas(negotiated.replace(pre_verification_gas=0), self._overheads)
            + self._policy.pre_verification_gas_margin
        )
        return negotiated.replace(pre_verification_gas=pre_verification_gas, signature="0x")

    async def build(
        self,
        request: TransactionRequest,
        deadline: Optional[Deadline] = None,
    ) -> UserOperation:
        """
        Build an unsigned UserOperation for a single call.

        Raises:
            ConfigurationError: No factory or owner for an undeployed wallet
            ProviderError: A chain read or estimate failed
            PaymasterError: Sponsorship was configured but failed
        """
        call_data = self.encode_call_data(request)
        user_op = await self._assemble(
            call_data=call_data,
            call_gas_limit=request.gas_limit,
            nonce=request.nonce,
            verification_gas_limit=request.verification_gas_limit,
            max_fee_per_gas=request.max_fee_per_gas,
            max_priority_fee_per_gas=request.max_priority_fee_per_gas,
            paymaster_url=request.paymaster_url,
            deadline=deadline,
        )
        logger.info(
            "Built user operation: sender=%s, nonce=%d, callGasLimit=%d, deployed=%s",
            user_op.sender, user_op.nonce, user_op.call_gas_limit, is_empty_hex(user_op.init_code),
        )
        return user_op

    async def build_batch(
        self,
        requests: Sequence[TransactionRequest],
        deadline: Optional[Deadline] = None,
        paymaster_url: Optional[str] = None,
    ) -> UserOperation:
        """Build an unsigned executeBatch UserOperation; fees come from the chain."""
        if not requests:
            raise EncodingError("executeBatch needs at least one call")
        call_data = self._wallet.encode_execute_batch(
            [r.target for r in requests],
            [r.data or "0x" for r in requests],
        )
        return await self._assemble(
            call_data=call_data,
            call_gas_limit=None,
            nonce=None,
            verification_gas_limit=None,
            max_fee_per_gas=None,
            max_priority_fee_per_gas=None,
            paymaster_url=paymaster_url or requests[0].paymaster_url,
            deadline=deadline,
        )
