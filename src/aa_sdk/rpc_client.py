"""
Chain access for user operation building.

ChainProvider is the port the builder, pipeline and poller depend on.
JsonRpcChainProvider implements it over plain JSON-RPC with httpx.
"""
from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from .config import NetworkConfig
from .deadline import Deadline, within
from .exceptions import ProviderError
from .logging_utils import OperationLogger

logger = logging.getLogger(__name__)

# Fallback for chains without eth_maxPriorityFeePerGas
DEFAULT_PRIORITY_FEE_WEI = 1_500_000_000


def _to_int(value: Any) -> int:
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        return int(value, 16) if value.startswith("0x") else int(value)
    raise ProviderError(f"Expected a numeric quantity, got {value!r}")


@dataclass(frozen=True)
class FeeData:
    """Current fee market snapshot."""
    max_fee_per_gas: int
    max_priority_fee_per_gas: int
    base_fee_per_gas: Optional[int] = None


class ChainProvider(ABC):
    """Read access to the chain."""

    @abstractmethod
    async def get_code(self, address: str, deadline: Optional[Deadline] = None) -> str:
        """Return deployed bytecode at ``address`` ("0x" when none)."""

    @abstractmethod
    async def get_fee_data(self, deadline: Optional[Deadline] = None) -> FeeData:
        """Return the current EIP-1559 fee suggestion."""

    @abstractmethod
    async def get_max_priority_fee(self, deadline: Optional[Deadline] = None) -> int:
        """Suggested priority fee (tip) in wei."""

    @abstractmethod
    async def estimate_gas(self, tx: Dict[str, Any], deadline: Optional[Deadline] = None) -> int:
        """Estimate gas for a call."""

    @abstractmethod
    async def call(
        self,
        tx: Dict[str, Any],
        block: str = "latest",
        deadline: Optional[Deadline] = None,
    ) -> str:
        """Execute a read-only call and return the raw result."""

    @abstractmethod
    async def get_transaction_receipt(
        self, tx_hash: str, deadline: Optional[Deadline] = None
    ) -> Optional[Dict[str, Any]]:
        """Fetch a transaction receipt by hash."""

    @abstractmethod
    async def get_block(
        self, block: int | str = "latest", deadline: Optional[Deadline] = None
    ) -> Optional[Dict[str, Any]]:
        """Fetch a block by number or tag."""

    @abstractmethod
    async def get_block_number(self, deadline: Optional[Deadline] = None) -> int:
        """Return the current head block number."""

    @abstractmethod
    async def get_logs(
        self, filter_params: Dict[str, Any], deadline: Optional[Deadline] = None
    ) -> List[Dict[str, Any]]:
        """Query historical logs."""

    @abstractmethod
    async def get_balance(self, address: str, deadline: Optional[Deadline] = None) -> int:
        """Native balance in wei."""

    @abstractmethod
    async def get_chain_id(self, deadline: Optional[Deadline] = None) -> int:
        """Chain id of the connected network."""


class JsonRpcChainProvider(ChainProvider):
    """JSON-RPC ChainProvider over a single HTTP endpoint."""

    def __init__(
        self,
        rpc_url: str,
        timeout_seconds: float = 30.0,
        op_logger: Optional[OperationLogger] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._rpc_url = rpc_url
        self._timeout = timeout_seconds
        self._request_id = 0
        self._http_client = client
        self._owns_client = client is None
        self._op_logger = op_logger
        self._chain_id: Optional[int] = None

    @classmethod
    def from_config(cls, config: NetworkConfig) -> "JsonRpcChainProvider":
        return cls(config.rpc_url, timeout_seconds=config.timeout_seconds)

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout, connect=10.0),
            )
        return self._http_client

    def _log_call(self, method: str, started: float, success: bool, code=None, message=None) -> None:
        if self._op_logger is not None:
            self._op_logger.log_rpc_call(
                method,
                self._rpc_url,
                (time.monotonic() - started) * 1000,
                success,
                error_code=code,
                error_message=message,
            )

    async def _call(self, method: str, params: Optional[List[Any]] = None) -> Any:
        """Make JSON-RPC call."""
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": params or [],
        }

        started = time.monotonic()
        client = await self._get_client()
        try:
            response = await client.post(
                self._rpc_url,
                json=payload,
                headers={"Content-Type": "application/json"},
            )
            response.raise_for_status()
            result = response.json()
        except (httpx.HTTPError, ValueError) as e:
            self._log_call(method, started, False, message=str(e))
            raise ProviderError(f"RPC {method} failed: {e}", method=method) from e

        if not isinstance(result, dict):
            self._log_call(method, started, False, message="malformed response")
            raise ProviderError(f"RPC {method} returned a malformed response", method=method)

        if result.get("error"):
            error = result["error"]
            code = error.get("code") if isinstance(error, dict) else None
            message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
            self._log_call(method, started, False, code=code, message=message)
            raise ProviderError(
                f"RPC {method} error: {message}",
                method=method,
                code=code,
                data=error.get("data") if isinstance(error, dict) else None,
            )

        self._log_call(method, started, True)
        return result.get("result")

    async def get_code(self, address: str, deadline: Optional[Deadline] = None) -> str:
        code = await within(deadline, self._call("eth_getCode", [address, "latest"]), "eth_getCode")
        return code or "0x"

    async def get_max_priority_fee(self, deadline: Optional[Deadline] = None) -> int:
        """Get max priority fee for EIP-1559."""
        try:
            result = await within(
                deadline, self._call("eth_maxPriorityFeePerGas"), "eth_maxPriorityFeePerGas"
            )
            return _to_int(result)
        except ProviderError as e:
            logger.warning(f"eth_maxPriorityFeePerGas unavailable, using default tip: {e}")
            return DEFAULT_PRIORITY_FEE_WEI

    async def get_gas_price(self, deadline: Optional[Deadline] = None) -> int:
        result = await within(deadline, self._call("eth_gasPrice"), "eth_gasPrice")
        return _to_int(result)

    async def get_fee_data(self, deadline: Optional[Deadline] = None) -> FeeData:
        block, priority_fee = await asyncio.gather(
            self.get_block("latest", deadline=deadline),
            self.get_max_priority_fee(deadline=deadline),
        )
        base_fee = block.get("baseFeePerGas") if block else None
        if base_fee is None:
            gas_price = await self.get_gas_price(deadline=deadline)
            return FeeData(max_fee_per_gas=gas_price, max_priority_fee_per_gas=gas_price)

        base_fee = _to_int(base_fee)
        return FeeData(
            max_fee_per_gas=base_fee * 2 + priority_fee,
            max_priority_fee_per_gas=priority_fee,
            base_fee_per_gas=base_fee,
        )

    async def estimate_gas(self, tx: Dict[str, Any], deadline: Optional[Deadline] = None) -> int:
        result = await within(deadline, self._call("eth_estimateGas", [tx]), "eth_estimateGas")
        return _to_int(result)

    async def call(
        self,
        tx: Dict[str, Any],
        block: str = "latest",
        deadline: Optional[Deadline] = None,
    ) -> str:
        return await within(deadline, self._call("eth_call", [tx, block]), "eth_call")

    async def get_transaction_receipt(
        self, tx_hash: str, deadline: Optional[Deadline] = None
    ) -> Optional[Dict[str, Any]]:
        return await within(
            deadline,
            self._call("eth_getTransactionReceipt", [tx_hash]),
            "eth_getTransactionReceipt",
        )

    async def get_block(
        self, block: int | str = "latest", deadline: Optional[Deadline] = None
    ) -> Optional[Dict[str, Any]]:
        if isinstance(block, int):
            block = hex(block)
        return await within(
            deadline, self._call("eth_getBlockByNumber", [block, False]), "eth_getBlockByNumber"
        )

    async def get_block_number(self, deadline: Optional[Deadline] = None) -> int:
        result = await within(deadline, self._call("eth_blockNumber"), "eth_blockNumber")
        return _to_int(result)

    async def get_logs(
        self, filter_params: Dict[str, Any], deadline: Optional[Deadline] = None
    ) -> List[Dict[str, Any]]:
        return await within(deadline, self._call("eth_getLogs", [filter_params]), "eth_getLogs") or []

    async def get_balance(self, address: str, deadline: Optional[Deadline] = None) -> int:
        result = await within(
            deadline, self._call("eth_getBalance", [address, "latest"]), "eth_getBalance"
        )
        return _to_int(result)

    async def get_chain_id(self, deadline: Optional[Deadline] = None) -> int:
        """Get chain ID (cached after first fetch)."""
        if self._chain_id is None:
            result = await within(deadline, self._call("eth_chainId"), "eth_chainId")
            self._chain_id = _to_int(result)
        return self._chain_id

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
        self._http_client = None

    async def __aenter__(self) -> "JsonRpcChainProvider":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
