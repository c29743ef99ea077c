"""
Logging utilities for user operation flows.

Features:
- Structured operation context (timing, outcome, metadata)
- RPC call latency logging
- Sensitive data masking (endpoint query strings, addresses)
"""
from __future__ import annotations

import json
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from .config import LoggingConfig, get_config

logger = logging.getLogger(__name__)


class OperationType(str, Enum):
    """Types of user operation steps."""
    BUILD = "build"
    PAYMASTER = "paymaster"
    SIGN = "sign"
    ESTIMATE = "estimate"
    SUBMIT = "submit"
    CONFIRM = "confirm"


@dataclass
class OperationContext:
    """Context for a single tracked step."""
    operation_id: str
    operation_type: OperationType
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None
    duration_ms: Optional[float] = None
    success: bool = False
    error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def complete(self, success: bool = True, error: Optional[str] = None) -> None:
        """Mark operation as complete."""
        self.completed_at = datetime.now(timezone.utc)
        self.duration_ms = (
            (self.completed_at - self.started_at).total_seconds() * 1000
        )
        self.success = success
        self.error = error

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging."""
        return {
            "operation_id": self.operation_id,
            "operation_type": self.operation_type.value,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_ms": self.duration_ms,
            "success": self.success,
            "error": self.error,
            "metadata": self.metadata,
        }


def mask_url(url: str) -> str:
    """Mask sensitive parts of URL (like API keys)."""
    if "?" in url:
        base = url.split("?")[0]
        return f"{base}?<params_masked>"
    return url


def mask_address(address: str) -> str:
    """Mask middle portion of address for privacy."""
    if len(address) < 10:
        return address
    return f"{address[:6]}...{address[-4:]}"


class OperationLogger:
    """
    Structured logger for user operation flows.

    Provides:
    - Operation context tracking
    - RPC call latency logging
    - Submission state transition logging
    """

    def __init__(
        self,
        name: str = "aa_sdk",
        config: Optional[LoggingConfig] = None,
    ):
        self._logger = logging.getLogger(name)
        self._config = config or get_config().logging
        self._operation_counter = 0

    def _generate_operation_id(self) -> str:
        self._operation_counter += 1
        timestamp = int(time.time() * 1000)
        return f"op_{timestamp}_{self._operation_counter}"

    def _get_level(self, level_str: str) -> int:
        return getattr(logging, level_str.upper(), logging.INFO)

    def address(self, address: str) -> str:
        return mask_address(address) if self._config.mask_addresses else address

    @asynccontextmanager
    async def operation_context(self, operation_type: OperationType, **metadata):
        """
        Context manager for tracking a step.

        Usage:
            async with op_logger.operation_context(OperationType.SUBMIT, sender=s) as ctx:
                ctx.metadata["user_op_hash"] = user_op_hash
        """
        ctx = OperationContext(
            operation_id=self._generate_operation_id(),
            operation_type=operation_type,
            metadata=metadata,
        )

        self._logger.debug(
            f"Starting {operation_type.value}",
            extra={"operation": ctx.to_dict()},
        )

        try:
            yield ctx
            ctx.complete(success=True)

        except BaseException as e:
            ctx.complete(success=False, error=str(e) or type(e).__name__)
            raise

        finally:
            level = (
                self._get_level(self._config.error_level)
                if not ctx.success
                else self._get_level(self._config.operation_level)
            )
            self._logger.log(
                level,
                f"Completed {operation_type.value} in {ctx.duration_ms:.0f}ms "
                f"(success={ctx.success})",
                extra={"operation": ctx.to_dict()},
            )

    def log_rpc_call(
        self,
        method: str,
        endpoint_url: str,
        duration_ms: float,
        success: bool,
        error_code: Optional[int] = None,
        error_message: Optional[str] = None,
    ) -> None:
        """Log a JSON-RPC call."""
        if not self._config.log_rpc_latency:
            return

        level = (
            self._get_level(self._config.error_level)
            if not success
            else self._get_level(self._config.rpc_call_level)
        )
        self._logger.log(
            level,
            f"RPC {method} to {mask_url(endpoint_url)} in {duration_ms:.0f}ms (success={success})",
            extra={
                "rpc_call": {
                    "method": method,
                    "endpoint_url": mask_url(endpoint_url),
                    "duration_ms": duration_ms,
                    "success": success,
                    "error_code": error_code,
                    "error_message": error_message,
                }
            },
        )

    def log_transition(
        self,
        sender: str,
        from_state: str,
        to_state: str,
        **details: Any,
    ) -> None:
        """Log a submission state machine transition."""
        self._logger.log(
            self._get_level(self._config.operation_level),
            f"UserOperation {self.address(sender)}: {from_state} -> {to_state}",
            extra={
                "transition": {
                    "sender": self.address(sender),
                    "from": from_state,
                    "to": to_state,
                    "details": json.loads(json.dumps(details, default=str)),
                }
            },
        )


def setup_logging(
    level: str = "INFO",
    format_string: Optional[str] = None,
    json_format: bool = False,
) -> None:
    """
    Set up logging configuration.

    Args:
        level: Log level
        format_string: Custom format string
        json_format: Use JSON formatting
    """
    if format_string is None:
        if json_format:
            format_string = '{"timestamp": "%(asctime)s", "level": "%(levelname)s", "name": "%(name)s", "message": "%(message)s"}'
        else:
            format_string = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format=format_string,
    )

    logging.getLogger("aa_sdk").setLevel(getattr(logging, level.upper()))
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
