"""ERC-4337 user operation building, sponsorship, submission and confirmation."""

from .user_operation import (
    BundlerGasEstimate,
    PaymasterQuote,
    TransactionRequest,
    UserOperation,
)
from .entrypoint import USER_OPERATION_EVENT_TOPIC, UserOperationEvent
from .account import SimpleAccount, WalletContract
from .gas import compute_pre_verification_gas, compute_pre_verification_gas_with_paymaster
from .paymaster_client import PaymasterClient, PaymasterNegotiator
from .bundler_client import (
    BundlerClient,
    BundlerRejection,
    RejectionKind,
    UserOperationReceipt,
    classify_rejection,
)
from .builder import OperationBuilder
from .confirmation import ConfirmationPoller, FixedIntervalRetry
from .pipeline import (
    Confirmed,
    Rejected,
    SubmissionOutcome,
    SubmissionPipeline,
    SubmissionState,
    SubmissionStatus,
    TimedOut,
    UserOpHasher,
)

__all__ = [
    "BundlerGasEstimate",
    "PaymasterQuote",
    "TransactionRequest",
    "UserOperation",
    "USER_OPERATION_EVENT_TOPIC",
    "UserOperationEvent",
    "SimpleAccount",
    "WalletContract",
    "compute_pre_verification_gas",
    "compute_pre_verification_gas_with_paymaster",
    "PaymasterClient",
    "PaymasterNegotiator",
    "BundlerClient",
    "BundlerRejection",
    "RejectionKind",
    "UserOperationReceipt",
    "classify_rejection",
    "OperationBuilder",
    "ConfirmationPoller",
    "FixedIntervalRetry",
    "Confirmed",
    "Rejected",
    "SubmissionOutcome",
    "SubmissionPipeline",
    "SubmissionState",
    "SubmissionStatus",
    "TimedOut",
    "UserOpHasher",
]
