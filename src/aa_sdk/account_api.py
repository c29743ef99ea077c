"""
High-level account API for a SimpleAccount wallet.

Wires the chain provider, wallet contract, signer, paymaster negotiator,
bundler client, builder, submission pipeline and confirmation poller from a
single AAConfig.

Usage:
    async with AccountAPI(config, private_key=key) as api:
        await api.init()
        op = await api.create_unsigned_user_op(TransactionRequest(target=to, data="0x"))
        outcome = await api.send_user_op(op)
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Sequence

from .config import AAConfig, get_config
from .deadline import Deadline
from .erc4337.account import SimpleAccount, WalletContract
from .erc4337.builder import OperationBuilder
from .erc4337.bundler_client import BundlerClient
from .erc4337.confirmation import ConfirmationPoller
from .erc4337.entrypoint import UserOperationEvent
from .erc4337.paymaster_client import PaymasterClient, PaymasterNegotiator
from .erc4337.pipeline import SubmissionOutcome, SubmissionPipeline, UserOpHasher
from .erc4337.user_operation import TransactionRequest, UserOperation, is_empty_hex
from .exceptions import ConfigurationError, SignerError
from .logging_utils import OperationLogger, OperationType
from .rpc_client import ChainProvider, JsonRpcChainProvider
from .signer import Signer, signer_from_state
from . import utils

logger = logging.getLogger(__name__)


class AccountAPI:
    """Builds, signs and submits user operations for one owner's wallet."""

    def __init__(
        self,
        config: Optional[AAConfig] = None,
        *,
        signer: Optional[Signer] = None,
        private_key: Optional[str] = None,
        owner_address: Optional[str] = None,
        deserialize_state: Optional[Dict[str, Any]] = None,
        provider: Optional[ChainProvider] = None,
        wallet: Optional[WalletContract] = None,
        bundler: Optional[BundlerClient] = None,
        paymaster: Optional[PaymasterClient] = None,
        poller: Optional[ConfirmationPoller] = None,
    ):
        self._config = config or get_config()
        network = self._config.network
        self.entry_point_address = network.entry_point_address

        self._signer = signer or signer_from_state(private_key, deserialize_state)
        self._owner_address = self._signer.address if self._signer else owner_address

        self._op_logger = OperationLogger(config=self._config.logging)
        self._provider = provider or JsonRpcChainProvider(
            network.rpc_url, timeout_seconds=network.timeout_seconds, op_logger=self._op_logger
        )
        self._wallet = wallet or SimpleAccount(
            self._provider,
            owner_address=self._owner_address,
            factory_address=network.factory_address,
            index=network.account_index,
            account_address=network.account_address,
        )
        if paymaster is None and self._config.paymaster.url:
            paymaster = PaymasterClient(self._config.paymaster)
        self._negotiator = PaymasterNegotiator(
            self.entry_point_address, client=paymaster, config=self._config.paymaster
        )
        self._bundler = bundler
        if self._bundler is None and self._config.bundler.url:
            self._bundler = BundlerClient(
                self._config.bundler, self.entry_point_address, op_logger=self._op_logger
            )

        self._builder = OperationBuilder(
            self._provider,
            self._wallet,
            self.entry_point_address,
            negotiator=self._negotiator,
            policy=self._config.builder,
            overheads=self._config.overheads,
        )
        self._hasher = UserOpHasher(
            self._provider,
            self.entry_point_address,
            chain_id=network.chain_id,
            fallback=self._config.submission.hash_fallback,
        )
        self._poller = poller or ConfirmationPoller(
            self._provider, self.entry_point_address, config=self._config.polling
        )

    @property
    def provider(self) -> ChainProvider:
        return self._provider

    @property
    def builder(self) -> OperationBuilder:
        return self._builder

    @property
    def owner_address(self) -> Optional[str]:
        return self._owner_address

    async def init(self, deadline: Optional[Deadline] = None) -> "AccountAPI":
        """Check the entry point is deployed and resolve the wallet address."""
        code = await self._provider.get_code(self.entry_point_address, deadline=deadline)
        if is_empty_hex(code):
            raise ConfigurationError(
                f"entryPoint not deployed at {self.entry_point_address}",
                setting="entry_point_address",
            )
        await self.get_account_address(deadline=deadline)
        return self

    def serialize(self) -> Dict[str, Any]:
        """Session state: only the signer's private key material."""
        if self._signer is None:
            return {"privateKey": None}
        return {"privateKey": self._signer.serialize().get("privateKey")}

    async def get_account_address(self, deadline: Optional[Deadline] = None) -> str:
        return await self._builder.get_sender(deadline=deadline)

    async def get_nonce(self, deadline: Optional[Deadline] = None) -> int:
        return await self._builder.get_nonce(deadline=deadline)

    async def get_init_code(self, deadline: Optional[Deadline] = None) -> str:
        return await self._builder.get_init_code(deadline=deadline)

    async def get_user_op_hash(
        self, user_op: UserOperation, deadline: Optional[Deadline] = None
    ) -> bytes:
        return await self._hasher.get_user_op_hash(user_op, deadline=deadline)

    async def create_unsigned_user_op(
        self,
        request: TransactionRequest,
        deadline: Optional[Deadline] = None,
    ) -> UserOperation:
        async with self._op_logger.operation_context(OperationType.BUILD, target=request.target):
            return await self._builder.build(request, deadline=deadline)

    async def create_unsigned_user_op_for_transactions(
        self,
        requests: Sequence[TransactionRequest],
        deadline: Optional[Deadline] = None,
        paymaster_url: Optional[str] = None,
    ) -> UserOperation:
        async with self._op_logger.operation_context(OperationType.BUILD, calls=len(requests)):
            return await self._builder.build_batch(
                requests, deadline=deadline, paymaster_url=paymaster_url
            )

    def _pipeline(self) -> SubmissionPipeline:
        if self._signer is None:
            raise SignerError("Signer should be initialized")
        if self._bundler is None:
            raise ConfigurationError("Bundler URL is not configured", setting="bundler.url")
        return SubmissionPipeline(
            signer=self._signer,
            bundler=self._bundler,
            hasher=self._hasher,
            poller=self._poller,
            provider=self._provider,
            negotiator=self._negotiator,
            policy=self._config.submission,
            polling=self._config.polling,
            op_logger=self._op_logger,
        )

    async def sign_user_op(
        self, user_op: UserOperation, deadline: Optional[Deadline] = None
    ) -> UserOperation:
        if self._signer is None:
            raise SignerError("Signer should be initialized")
        pipeline = SubmissionPipeline(
            signer=self._signer,
            bundler=self._bundler,
            hasher=self._hasher,
            poller=self._poller,
            provider=self._provider,
            op_logger=self._op_logger,
        )
        return await pipeline.sign(user_op, deadline=deadline)

    async def send_user_op(
        self,
        user_op: UserOperation,
        deadline: Optional[Deadline] = None,
        paymaster_url: Optional[str] = None,
    ) -> SubmissionOutcome:
        """Sign, submit and confirm ``user_op``; a fresh pipeline per call."""
        return await self._pipeline().submit(
            user_op, deadline=deadline, paymaster_url=paymaster_url
        )

    async def get_user_op_event(
        self,
        sender: str,
        user_op_hash: str,
        timeout_ms: Optional[int] = None,
        interval_ms: Optional[int] = None,
        deadline: Optional[Deadline] = None,
    ) -> Optional[UserOperationEvent]:
        return await self._poller.await_inclusion(
            sender, user_op_hash, timeout_ms=timeout_ms, interval_ms=interval_ms, deadline=deadline
        )

    async def get_transaction_receipt(
        self, tx_hash: str, deadline: Optional[Deadline] = None
    ) -> Optional[Dict[str, Any]]:
        return await self._provider.get_transaction_receipt(tx_hash, deadline=deadline)

    @staticmethod
    async def get_gas_price(
        provider: ChainProvider, deadline: Optional[Deadline] = None
    ) -> Dict[str, int]:
        return await utils.get_gas_price(provider, deadline=deadline)

    async def close(self) -> None:
        await self._negotiator.close()
        if self._bundler is not None:
            await self._bundler.close()
        close = getattr(self._provider, "close", None)
        if close is not None:
            await close()

    async def __aenter__(self) -> "AccountAPI":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
