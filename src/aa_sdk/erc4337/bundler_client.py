"""ERC-4337 bundler client and rejection classification."""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

import httpx

from ..config import BundlerConfig
from ..deadline import Deadline, within
from ..exceptions import BundlerRPCError, EncodingError
from ..logging_utils import OperationLogger
from .user_operation import BundlerGasEstimate, UserOperation

logger = logging.getLogger(__name__)

UNDERPRICED_REPLACEMENT_PATTERNS = (
    "replacement op must increase",
    "replacement underpriced",
)


class RejectionKind(str, Enum):
    """Classified bundler rejection."""
    UNDERPRICED_REPLACEMENT = "underpriced_replacement"
    INVALID_FIELDS = "invalid_fields"
    SIMULATE_VALIDATION = "simulate_validation"
    SIMULATE_PAYMASTER_VALIDATION = "simulate_paymaster_validation"
    OPCODE_VALIDATION = "opcode_validation"
    EXPIRES_SHORTLY = "expires_shortly"
    REPUTATION = "reputation"
    INSUFFICIENT_STAKE = "insufficient_stake"
    UNSUPPORTED_SIGNATURE_AGGREGATOR = "unsupported_signature_aggregator"
    INVALID_SIGNATURE = "invalid_signature"
    EXECUTION_REVERTED = "execution_reverted"
    TRANSPORT = "transport"
    UNKNOWN = "unknown"


BUNDLER_ERROR_CODES: Dict[int, RejectionKind] = {
    -32602: RejectionKind.INVALID_FIELDS,
    -32500: RejectionKind.SIMULATE_VALIDATION,
    -32501: RejectionKind.SIMULATE_PAYMASTER_VALIDATION,
    -32502: RejectionKind.OPCODE_VALIDATION,
    -32503: RejectionKind.EXPIRES_SHORTLY,
    -32504: RejectionKind.REPUTATION,
    -32505: RejectionKind.INSUFFICIENT_STAKE,
    -32506: RejectionKind.UNSUPPORTED_SIGNATURE_AGGREGATOR,
    -32507: RejectionKind.INVALID_SIGNATURE,
    -32521: RejectionKind.EXECUTION_REVERTED,
}


@dataclass(frozen=True)
class BundlerRejection:
    """Bundler error detail, returned verbatim to the caller."""
    kind: RejectionKind
    message: str
    code: Optional[int] = None
    data: Any = None

    @property
    def is_underpriced_replacement(self) -> bool:
        return self.kind == RejectionKind.UNDERPRICED_REPLACEMENT

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "code": self.code,
            "message": self.message,
            "data": self.data,
        }


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str)


def classify_rejection(code: Optional[int], message: Optional[str], data: Any = None) -> BundlerRejection:
    """
    Map a bundler error onto a RejectionKind.

    The underpriced-replacement condition is an invalid-fields error (-32602)
    whose message or data mentions that the replacement must raise its fees.
    """
    message = message or ""
    if code is None:
        return BundlerRejection(RejectionKind.TRANSPORT, message, code, data)

    if code == -32602:
        text = f"{message} {_as_text(data)}".lower()
        if any(pattern in text for pattern in UNDERPRICED_REPLACEMENT_PATTERNS):
            return BundlerRejection(RejectionKind.UNDERPRICED_REPLACEMENT, message, code, data)

    kind = BUNDLER_ERROR_CODES.get(code, RejectionKind.UNKNOWN)
    return BundlerRejection(kind, message, code, data)


def classify_bundler_error(error: BundlerRPCError) -> BundlerRejection:
    return classify_rejection(error.code, error.message, error.data)


@dataclass
class UserOperationReceipt:
    """Bundler eth_getUserOperationReceipt payload."""
    user_op_hash: str
    success: bool
    receipt: Dict[str, Any] = field(default_factory=dict)
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_rpc(cls, data: Dict[str, Any]) -> "UserOperationReceipt":
        return cls(
            user_op_hash=data.get("userOpHash", ""),
            success=bool(data.get("success", False)),
            receipt=data.get("receipt") or {},
            raw=data,
        )


class BundlerClient:
    def __init__(
        self,
        config: BundlerConfig,
        entry_point: str,
        client: Optional[httpx.AsyncClient] = None,
        op_logger: Optional[OperationLogger] = None,
    ):
        self._config = config
        self._entry_point = entry_point
        self._client = client or httpx.AsyncClient(timeout=config.timeout_seconds)
        self._owns_client = client is None
        self._op_logger = op_logger
        self._request_id = 0

    @property
    def entry_point(self) -> str:
        return self._entry_point

    async def _rpc(self, method: str, params: list[Any]) -> Any:
        self._request_id += 1
        payload = {"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params}
        started = time.monotonic()
        try:
            response = await self._client.post(self._config.url, json=payload)
        except httpx.HTTPError as e:
            self._log_call(method, started, False, message=str(e))
            raise BundlerRPCError(f"Bundler request failed ({method}): {e}", method=method) from e

        try:
            data = response.json()
        except ValueError:
            data = None

        # Bundlers report rejections with either a 200 or an HTTP error status
        error = data.get("error") if isinstance(data, dict) else None
        if error:
            code = error.get("code") if isinstance(error, dict) else None
            message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
            error_data = error.get("data") if isinstance(error, dict) else None
            self._log_call(method, started, False, code=code, message=message)
            raise BundlerRPCError(message, code=code, data=error_data, method=method)

        if response.is_error or not isinstance(data, dict):
            self._log_call(method, started, False, message=f"HTTP {response.status_code}")
            raise BundlerRPCError(
                f"Bundler returned HTTP {response.status_code} for {method}",
                data=response.text,
                method=method,
            )

        self._log_call(method, started, True)
        return data.get("result")

    def _log_call(self, method: str, started: float, success: bool, code=None, message=None) -> None:
        if self._op_logger is not None:
            self._op_logger.log_rpc_call(
                method,
                self._config.url,
                (time.monotonic() - started) * 1000,
                success,
                error_code=code,
                error_message=message,
            )

    async def estimate_user_operation_gas(
        self,
        user_op: UserOperation,
        deadline: Optional[Deadline] = None,
    ) -> BundlerGasEstimate:
        result = await within(
            deadline,
            self._rpc("eth_estimateUserOperationGas", [user_op.to_rpc(), self._entry_point]),
            "eth_estimateUserOperationGas",
        )
        if not isinstance(result, dict):
            raise BundlerRPCError(
                "Bundler returned invalid gas estimate payload",
                method="eth_estimateUserOperationGas",
            )
        try:
            return BundlerGasEstimate.from_rpc(result)
        except EncodingError as e:
            raise BundlerRPCError(
                f"Bundler returned invalid gas estimate payload: {e.message}",
                method="eth_estimateUserOperationGas",
            ) from e

    async def send_user_operation(
        self,
        user_op: UserOperation,
        deadline: Optional[Deadline] = None,
    ) -> str:
        result = await within(
            deadline,
            self._rpc("eth_sendUserOperation", [user_op.to_rpc(), self._entry_point]),
            "eth_sendUserOperation",
        )
        if not isinstance(result, str):
            raise BundlerRPCError("Bundler returned invalid user op hash", method="eth_sendUserOperation")
        return result

    async def get_user_operation_receipt(
        self,
        user_op_hash: str,
        deadline: Optional[Deadline] = None,
    ) -> Optional[UserOperationReceipt]:
        result = await within(
            deadline,
            self._rpc("eth_getUserOperationReceipt", [user_op_hash]),
            "eth_getUserOperationReceipt",
        )
        if result is None:
            return None
        if not isinstance(result, dict):
            raise BundlerRPCError(
                "Bundler returned invalid receipt payload", method="eth_getUserOperationReceipt"
            )
        return UserOperationReceipt.from_rpc(result)

    async def get_user_operation_by_hash(
        self,
        user_op_hash: str,
        deadline: Optional[Deadline] = None,
    ) -> Optional[Dict[str, Any]]:
        return await within(
            deadline,
            self._rpc("eth_getUserOperationByHash", [user_op_hash]),
            "eth_getUserOperationByHash",
        )

    async def supported_entry_points(self, deadline: Optional[Deadline] = None) -> List[str]:
        result = await within(
            deadline, self._rpc("eth_supportedEntryPoints", []), "eth_supportedEntryPoints"
        )
        return list(result or [])

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
