"""
Configuration management for aa-sdk.

Provides centralized configuration for:
- Network, entry point and wallet factory addresses
- Bundler and paymaster endpoints
- Pre-verification gas overheads
- Builder and submission policy constants
- Confirmation polling
- Logging
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


ENTRYPOINT_V06 = "0x5FF137D4b0FDCD49DcA30c7CF57E578a026d2789"

ENTRYPOINT_V06_BY_CHAIN: Dict[int, str] = {
    1: ENTRYPOINT_V06,
    10: ENTRYPOINT_V06,
    137: ENTRYPOINT_V06,
    8453: ENTRYPOINT_V06,
    42161: ENTRYPOINT_V06,
    80002: ENTRYPOINT_V06,
    84532: ENTRYPOINT_V06,
    421614: ENTRYPOINT_V06,
    11155111: ENTRYPOINT_V06,
    11155420: ENTRYPOINT_V06,
}


def get_entrypoint_v06(chain_id: int) -> str:
    return ENTRYPOINT_V06_BY_CHAIN.get(chain_id, ENTRYPOINT_V06)


@dataclass(frozen=True)
class GasOverheads:
    """Overheads used to price the calldata of a user operation."""
    # Fixed overhead for the entire handleOps bundle
    fixed: int = 21000
    # Per user operation, on top of the per-bundle fixed cost
    per_user_op: int = 22874
    # Per 32-byte word of the encoded user operation
    per_user_op_word: int = 25
    batch_fixed: int = 816
    zero_byte: int = 4
    non_zero_byte: int = 16
    # Expected bundle size, splits the per-bundle overhead
    bundle_size: int = 1
    # Expected signature length in bytes
    sig_size: int = 65


@dataclass
class NetworkConfig:
    """Chain connection and contract addresses."""
    chain_id: Optional[int] = None
    rpc_url: str = ""
    entry_point_address: str = ENTRYPOINT_V06
    factory_address: Optional[str] = None
    # Skips the counterfactual lookup when the wallet address is already known
    account_address: Optional[str] = None
    account_index: int = 0
    timeout_seconds: float = 30.0


@dataclass
class BundlerConfig:
    url: str = ""
    timeout_seconds: float = 30.0


@dataclass
class PaymasterConfig:
    url: Optional[str] = None
    api_key: Optional[str] = None
    rpc_method: str = "pm_sponsorUserOperation"
    sponsorship_type: str = "sponsor"
    sponsorship_address: str = "0x"
    timeout_seconds: float = 30.0


@dataclass
class BuilderPolicy:
    """Constants applied while assembling an unsigned operation."""
    call_gas_margin: int = 0x3A98
    base_verification_gas: int = 1_000_000
    # Caps base + creation gas; None disables the cap
    max_verification_gas_limit: Optional[int] = 150_000
    pre_verification_gas_margin: int = 1000


@dataclass
class SubmissionPolicy:
    """Retry and re-signing rules for bundler submission."""
    verification_gas_shortfall_threshold: int = 20000
    verification_gas_resign_margin: int = 25000
    fee_bump_numerator: int = 110
    fee_bump_denominator: int = 100
    max_gas_resigns: int = 1
    max_underpriced_retries: int = 1
    estimate_before_submit: bool = True
    # "local" signs the locally derived hash when the entry point view call fails,
    # "empty" signs an empty digest
    hash_fallback: str = "local"


@dataclass
class PollingConfig:
    timeout_ms: int = 60000
    interval_ms: int = 5000
    lookback_blocks: int = 1000


@dataclass
class LoggingConfig:
    """Configuration for operation logging."""
    rpc_call_level: str = "DEBUG"
    operation_level: str = "INFO"
    error_level: str = "ERROR"
    mask_addresses: bool = False
    log_rpc_latency: bool = True


@dataclass
class AAConfig:
    """
    Master configuration for aa-sdk.

    Supports loading from environment variables with prefix AA_SDK_.
    """
    network: NetworkConfig = field(default_factory=NetworkConfig)
    bundler: BundlerConfig = field(default_factory=BundlerConfig)
    paymaster: PaymasterConfig = field(default_factory=PaymasterConfig)
    overheads: GasOverheads = field(default_factory=GasOverheads)
    builder: BuilderPolicy = field(default_factory=BuilderPolicy)
    submission: SubmissionPolicy = field(default_factory=SubmissionPolicy)
    polling: PollingConfig = field(default_factory=PollingConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _get_env(key: str, default: Any = None, prefix: str = "AA_SDK_") -> Any:
    """Get environment variable with prefix."""
    return os.getenv(f"{prefix}{key}", default)


def _get_env_int(key: str, default: Optional[int], prefix: str = "AA_SDK_") -> Optional[int]:
    value = _get_env(key, prefix=prefix)
    if value is None or value == "":
        return default
    try:
        return int(value, 0)
    except ValueError:
        logger.warning(f"Ignoring invalid integer for {prefix}{key}: {value!r}")
        return default


def build_config_from_env() -> AAConfig:
    """Build configuration with environment variable overrides."""
    chain_id = _get_env_int("CHAIN_ID", None)
    entry_point = _get_env("ENTRY_POINT") or (
        get_entrypoint_v06(chain_id) if chain_id is not None else ENTRYPOINT_V06
    )

    network = NetworkConfig(
        chain_id=chain_id,
        rpc_url=_get_env("RPC_URL", ""),
        entry_point_address=entry_point,
        factory_address=_get_env("FACTORY_ADDRESS"),
        account_address=_get_env("ACCOUNT_ADDRESS"),
        account_index=_get_env_int("ACCOUNT_INDEX", 0) or 0,
    )

    builder = BuilderPolicy()
    max_verification = _get_env("MAX_VERIFICATION_GAS")
    if max_verification is not None:
        if max_verification.lower() in ("", "none", "off"):
            builder.max_verification_gas_limit = None
        else:
            builder.max_verification_gas_limit = _get_env_int(
                "MAX_VERIFICATION_GAS", builder.max_verification_gas_limit
            )

    polling = PollingConfig(
        timeout_ms=_get_env_int("POLL_TIMEOUT_MS", 60000),
        interval_ms=_get_env_int("POLL_INTERVAL_MS", 5000),
    )

    return AAConfig(
        network=network,
        bundler=BundlerConfig(url=_get_env("BUNDLER_URL", "")),
        paymaster=PaymasterConfig(
            url=_get_env("PAYMASTER_URL") or None,
            api_key=_get_env("PAYMASTER_API_KEY") or None,
        ),
        builder=builder,
        polling=polling,
    )


# Global configuration instance
_global_config: Optional[AAConfig] = None


def get_config() -> AAConfig:
    """Get the global configuration instance."""
    global _global_config
    if _global_config is None:
        _global_config = build_config_from_env()
    return _global_config


def set_config(config: Optional[AAConfig]) -> None:
    """Set the global configuration instance."""
    global _global_config
    _global_config = config
