"""
Submission pipeline for signed user operations.

States: BUILT -> SIGNED -> SUBMITTED -> CONFIRMED | TIMED_OUT, with
NEEDS_RESIGN looping back to SIGNED and REJECTED as the terminal failure.

Two conditions are retried automatically, each at most once by default:
- the bundler's verification gas estimate exceeds the signed limit by more
  than the shortfall threshold (re-sign with a raised limit)
- the bundler rejects the operation as an underpriced replacement (re-sign
  with both fee fields bumped)
Every other rejection is returned to the caller unchanged.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from ..config import PollingConfig, SubmissionPolicy
from ..deadline import Deadline, within
from ..exceptions import AAException, BundlerRPCError, ConfigurationError
from ..logging_utils import OperationLogger, OperationType
from ..rpc_client import ChainProvider
from ..signer import Signer
from .bundler_client import BundlerClient, BundlerRejection, classify_bundler_error
from .confirmation import ConfirmationPoller
from .entrypoint import UserOperationEvent, decode_bytes32, encode_get_user_op_hash
from .paymaster_client import PaymasterNegotiator
from .user_operation import BundlerGasEstimate, UserOperation, is_empty_hex

logger = logging.getLogger(__name__)


class SubmissionState(str, Enum):
    BUILT = "built"
    SIGNED = "signed"
    SUBMITTED = "submitted"
    NEEDS_RESIGN = "needs_resign"
    REJECTED = "rejected"
    CONFIRMED = "confirmed"
    TIMED_OUT = "timed_out"


class SubmissionStatus(str, Enum):
    CONFIRMED = "confirmed"
    REJECTED = "rejected"
    TIMED_OUT = "timed_out"


@dataclass
class SubmissionOutcome:
    """Terminal result of a submission."""
    user_operation: UserOperation
    attempts: List[UserOperation] = field(default_factory=list)

    status = None  # set by subclasses

    @property
    def is_confirmed(self) -> bool:
        return self.status == SubmissionStatus.CONFIRMED


@dataclass
class Confirmed(SubmissionOutcome):
    user_op_hash: str = ""
    receipt: Optional[Dict[str, Any]] = None
    event: Optional[UserOperationEvent] = None

    status = SubmissionStatus.CONFIRMED


@dataclass
class Rejected(SubmissionOutcome):
    rejection: Optional[BundlerRejection] = None

    status = SubmissionStatus.REJECTED

    @property
    def code(self) -> Optional[int]:
        return self.rejection.code if self.rejection else None

    @property
    def message(self) -> str:
        return self.rejection.message if self.rejection else ""


@dataclass
class TimedOut(SubmissionOutcome):
    user_op_hash: str = ""

    status = SubmissionStatus.TIMED_OUT


class UserOpHasher:
    """
    Computes the hash the entry point will check signatures against.

    Prefers the EntryPoint.getUserOpHash view call. When it fails the
    failure is logged and the locally derived hash (or an empty digest,
    with ``fallback="empty"``) is used instead.
    """

    def __init__(
        self,
        provider: ChainProvider,
        entry_point: str,
        chain_id: Optional[int] = None,
        fallback: str = "local",
    ):
        if fallback not in ("local", "empty"):
            raise ConfigurationError(f"Unknown hash fallback {fallback!r}", setting="hash_fallback")
        self._provider = provider
        self._entry_point = entry_point
        self._chain_id = chain_id
        self._fallback = fallback

    async def _local_hash(self, user_op: UserOperation, deadline: Optional[Deadline]) -> bytes:
        if self._chain_id is None:
            self._chain_id = await self._provider.get_chain_id(deadline=deadline)
        return user_op.user_op_hash(self._entry_point, self._chain_id)

    async def get_user_op_hash(
        self,
        user_op: UserOperation,
        deadline: Optional[Deadline] = None,
    ) -> bytes:
        try:
            result = await self._provider.call(
                {"to": self._entry_point, "data": encode_get_user_op_hash(user_op)},
                deadline=deadline,
            )
            return decode_bytes32(result)
        except AAException as e:
            logger.warning(
                f"On-chain getUserOpHash failed for {user_op.sender}, "
                f"using {self._fallback} hash: {e}"
            )
        if self._fallback == "empty":
            return b""
        return await self._local_hash(user_op, deadline)


class SubmissionPipeline:
    """Signs, pre-checks, submits and confirms a single user operation."""

    def __init__(
        self,
        signer: Signer,
        bundler: BundlerClient,
        hasher: UserOpHasher,
        poller: ConfirmationPoller,
        provider: ChainProvider,
        negotiator: Optional[PaymasterNegotiator] = None,
        policy: Optional[SubmissionPolicy] = None,
        polling: Optional[PollingConfig] = None,
        op_logger: Optional[OperationLogger] = None,
    ):
        self._signer = signer
        self._bundler = bundler
        self._hasher = hasher
        self._poller = poller
        self._provider = provider
        self._negotiator = negotiator
        self._policy = policy or SubmissionPolicy()
        self._polling = polling or PollingConfig()
        self._op_logger = op_logger or OperationLogger()

        self.state = SubmissionState.BUILT
        self.current: Optional[UserOperation] = None
        self.previous: Optional[UserOperation] = None

    def _transition(self, to_state: SubmissionState, **details: Any) -> None:
        sender = self.current.sender if self.current else ""
        self._op_logger.log_transition(sender, self.state.value, to_state.value, **details)
        self.state = to_state

    def _advance(self, candidate: UserOperation) -> None:
        self.previous = self.current
        self.current = candidate

    async def sign(self, user_op: UserOperation, deadline: Optional[Deadline] = None) -> UserOperation:
        """Return ``user_op`` carrying a signature over its entry point hash."""
        unsigned = user_op.replace(signature="0x")
        digest = await self._hasher.get_user_op_hash(unsigned, deadline=deadline)
        signature = await within(deadline, self._signer.sign_message(digest), "sign")
        return unsigned.replace(signature=signature)

    async def _resign(
        self,
        user_op: UserOperation,
        deadline: Optional[Deadline],
        paymaster_url: Optional[str],
    ) -> UserOperation:
        """Re-sponsor (the sponsor signs over gas fields) and re-sign."""
        unsigned = user_op.replace(signature="0x")
        if self._negotiator is not None:
            async with self._op_logger.operation_context(
                OperationType.PAYMASTER, sender=unsigned.sender, nonce=unsigned.nonce
            ) as ctx:
                unsigned = await self._negotiator.negotiate(
                    unsigned, deadline=deadline, paymaster_url=paymaster_url
                )
                ctx.metadata["sponsored"] = not is_empty_hex(unsigned.paymaster_and_data)
        return await self.sign(unsigned, deadline=deadline)

    async def _estimate(
        self, user_op: UserOperation, deadline: Optional[Deadline]
    ) -> Optional[BundlerGasEstimate]:
        try:
            async with self._op_logger.operation_context(
                OperationType.ESTIMATE, sender=user_op.sender, nonce=user_op.nonce
            ):
                return await self._bundler.estimate_user_operation_gas(user_op, deadline=deadline)
        except BundlerRPCError as e:
            logger.warning(
                f"Bundler gas estimation failed, submitting without re-sign check: {e}"
            )
            return None

    def bump_fees(self, user_op: UserOperation) -> UserOperation:
        """Raise both fee fields by the configured bump factor (integer arithmetic)."""
        num = self._policy.fee_bump_numerator
        den = self._policy.fee_bump_denominator
        return user_op.replace(
            max_fee_per_gas=user_op.max_fee_per_gas * num // den,
            max_priority_fee_per_gas=user_op.max_priority_fee_per_gas * num // den,
        )

    def shortfall(self, user_op: UserOperation, estimate: BundlerGasEstimate) -> int:
        return estimate.verification_gas - user_op.verification_gas_limit

    async def submit(
        self,
        user_op: UserOperation,
        deadline: Optional[Deadline] = None,
        paymaster_url: Optional[str] = None,
        timeout_ms: Optional[int] = None,
        interval_ms: Optional[int] = None,
    ) -> SubmissionOutcome:
        """
        Drive ``user_op`` to a terminal outcome.

        Args:
            user_op: Built operation, signed or unsigned
            deadline: Optional overall deadline for every network call
            paymaster_url: Sponsor endpoint used when re-sponsoring
            timeout_ms: Confirmation timeout, defaults to PollingConfig
            interval_ms: Confirmation poll interval, defaults to PollingConfig

        Returns:
            Confirmed, Rejected or TimedOut

        Raises:
            ProviderError, PaymasterError, SignerError, DeadlineExceeded
        """
        self.state = SubmissionState.BUILT
        self.current = None
        self.previous = None
        attempts: List[UserOperation] = []
        gas_resigns = 0
        underpriced_retries = 0

        self._advance(user_op)
        async with self._op_logger.operation_context(OperationType.SIGN, sender=user_op.sender):
            self._advance(await self.sign(user_op, deadline=deadline))
        self._transition(SubmissionState.SIGNED)

        while True:
            if self._policy.estimate_before_submit:
                estimate = await self._estimate(self.current, deadline)
                if estimate is not None:
                    missing = self.shortfall(self.current, estimate)
                    if missing > self._policy.verification_gas_shortfall_threshold:
                        if gas_resigns < self._policy.max_gas_resigns:
                            gas_resigns += 1
                            new_limit = (
                                estimate.verification_gas + self._policy.verification_gas_resign_margin
                            )
                            self._transition(
                                SubmissionState.NEEDS_RESIGN,
                                reason="verification_gas_shortfall",
                                shortfall=missing,
                                verification_gas_limit=new_limit,
                            )
                            self._advance(
                                await self._resign(
                                    self.current.replace(verification_gas_limit=new_limit),
                                    deadline,
                                    paymaster_url,
                                )
                            )
                            self._transition(SubmissionState.SIGNED)
                        else:
                            logger.warning(
                                f"Verification gas still short by {missing} for "
                                f"{self.current.sender}, re-sign budget spent; submitting as is"
                            )

            attempts.append(self.current)
            try:
                async with self._op_logger.operation_context(
                    OperationType.SUBMIT, sender=self.current.sender, nonce=self.current.nonce
                ):
                    user_op_hash = await self._bundler.send_user_operation(
                        self.current, deadline=deadline
                    )
            except BundlerRPCError as e:
                rejection = classify_bundler_error(e)
                if (
                    rejection.is_underpriced_replacement
                    and underpriced_retries < self._policy.max_underpriced_retries
                ):
                    underpriced_retries += 1
                    self._transition(
                        SubmissionState.NEEDS_RESIGN,
                        reason=rejection.kind.value,
                        code=rejection.code,
                    )
                    self._advance(await self._resign(self.bump_fees(self.current), deadline, paymaster_url))
                    self._transition(SubmissionState.SIGNED)
                    continue

                self._transition(
                    SubmissionState.REJECTED,
                    kind=rejection.kind.value,
                    code=rejection.code,
                    message=rejection.message,
                )
                logger.error(
                    f"Bundler rejected user operation from {self.current.sender}: "
                    f"[{rejection.code}] {rejection.message}"
                )
                return Rejected(
                    user_operation=self.current,
                    attempts=attempts,
                    rejection=rejection,
                )

            self._transition(SubmissionState.SUBMITTED, user_op_hash=user_op_hash)
            return await self._confirm(user_op_hash, attempts, deadline, timeout_ms, interval_ms)

    async def _confirm(
        self,
        user_op_hash: str,
        attempts: List[UserOperation],
        deadline: Optional[Deadline],
        timeout_ms: Optional[int],
        interval_ms: Optional[int],
    ) -> SubmissionOutcome:
        async with self._op_logger.operation_context(
            OperationType.CONFIRM, user_op_hash=user_op_hash
        ):
            event = await self._poller.await_inclusion(
                self.current.sender,
                user_op_hash,
                timeout_ms=self._polling.timeout_ms if timeout_ms is None else timeout_ms,
                interval_ms=self._polling.interval_ms if interval_ms is None else interval_ms,
                deadline=deadline,
            )
            if event is None:
                self._transition(SubmissionState.TIMED_OUT, user_op_hash=user_op_hash)
                return TimedOut(
                    user_operation=self.current,
                    attempts=attempts,
                    user_op_hash=user_op_hash,
                )

            receipt = await self._provider.get_transaction_receipt(
                event.transaction_hash, deadline=deadline
            )

        self._transition(
            SubmissionState.CONFIRMED,
            user_op_hash=user_op_hash,
            transaction_hash=event.transaction_hash,
        )
        return Confirmed(
            user_operation=self.current,
            attempts=attempts,
            user_op_hash=user_op_hash,
            receipt=receipt,
            event=event,
        )
