"""Client-side ERC-4337 user operation builder and submitter."""

from .config import (
    AAConfig,
    BuilderPolicy,
    BundlerConfig,
    GasOverheads,
    NetworkConfig,
    PaymasterConfig,
    PollingConfig,
    SubmissionPolicy,
    ENTRYPOINT_V06,
    get_config,
    set_config,
)
from .deadline import Deadline
from .exceptions import (
    AAException,
    BundlerRPCError,
    ConfigurationError,
    DeadlineExceeded,
    EncodingError,
    PaymasterError,
    ProviderError,
    SignerError,
)
from .rpc_client import ChainProvider, FeeData, JsonRpcChainProvider
from .signer import LocalAccountSigner, Signer
from .erc4337 import (
    Confirmed,
    OperationBuilder,
    Rejected,
    SubmissionPipeline,
    TimedOut,
    TransactionRequest,
    UserOperation,
)
from .account_api import AccountAPI

__version__ = "0.1.0"

__all__ = [
    "AAConfig",
    "BuilderPolicy",
    "BundlerConfig",
    "GasOverheads",
    "NetworkConfig",
    "PaymasterConfig",
    "PollingConfig",
    "SubmissionPolicy",
    "ENTRYPOINT_V06",
    "get_config",
    "set_config",
    "Deadline",
    "AAException",
    "BundlerRPCError",
    "ConfigurationError",
    "DeadlineExceeded",
    "EncodingError",
    "PaymasterError",
    "ProviderError",
    "SignerError",
    "ChainProvider",
    "FeeData",
    "JsonRpcChainProvider",
    "LocalAccountSigner",
    "Signer",
    "Confirmed",
    "OperationBuilder",
    "Rejected",
    "SubmissionPipeline",
    "TimedOut",
    "TransactionRequest",
    "UserOperation",
    "AccountAPI",
]
