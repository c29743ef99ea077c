"""ERC-4337 paymaster client and sponsorship negotiation."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from ..config import PaymasterConfig
from ..deadline import Deadline, within
from ..exceptions import EncodingError, PaymasterError
from .user_operation import PaymasterQuote, UserOperation, is_empty_hex

logger = logging.getLogger(__name__)


class PaymasterClient:
    """JSON-RPC sponsor service client (pm_sponsorUserOperation)."""

    def __init__(self, config: PaymasterConfig, client: Optional[httpx.AsyncClient] = None):
        if not config.url:
            raise PaymasterError("Paymaster URL is not configured")
        self._config = config
        self._client = client or httpx.AsyncClient(timeout=config.timeout_seconds)
        self._owns_client = client is None

    @property
    def url(self) -> str:
        return self._config.url

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._config.api_key:
            headers["Authorization"] = f"Bearer {self._config.api_key}"
        return headers

    async def _rpc(self, method: str, params: list[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": 1, "method": method, "params": params}
        try:
            response = await self._client.post(self._config.url, json=payload, headers=self._headers())
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise PaymasterError(f"Paymaster request failed ({method}): {e}") from e
        if not isinstance(data, dict):
            raise PaymasterError(f"Paymaster returned a malformed response ({method})")
        if data.get("error"):
            error = data["error"]
            code = error.get("code") if isinstance(error, dict) else None
            raise PaymasterError(f"Paymaster RPC error ({method}): {error}", code=code)
        return data.get("result")

    async def sponsor_user_operation(
        self,
        user_op: UserOperation,
        entrypoint: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> Optional[PaymasterQuote]:
        """Request sponsorship; None means the sponsor declined."""
        context = context or {
            "type": self._config.sponsorship_type,
            "address": self._config.sponsorship_address,
        }
        result = await self._rpc(self._config.rpc_method, [user_op.to_rpc(), entrypoint, context])
        if not result:
            return None
        if not isinstance(result, dict):
            raise PaymasterError("Paymaster returned invalid sponsorship payload")
        try:
            return PaymasterQuote.from_rpc(result)
        except EncodingError as e:
            raise PaymasterError(f"Paymaster returned invalid sponsorship payload: {e.message}") from e

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class PaymasterNegotiator:
    """
    Merges sponsor quotes into user operations.

    Without a configured sponsor endpoint negotiation is a no-op and the
    self-funded gas fields computed by the builder stand.
    """

    def __init__(
        self,
        entry_point: str,
        client: Optional[PaymasterClient] = None,
        config: Optional[PaymasterConfig] = None,
    ):
        self._entry_point = entry_point
        self._client = client
        self._config = config or PaymasterConfig()
        self._request_clients: Dict[str, PaymasterClient] = {}

    @property
    def enabled(self) -> bool:
        return self._client is not None

    def _client_for(self, paymaster_url: Optional[str]) -> Optional[PaymasterClient]:
        if not paymaster_url or (self._client is not None and self._client.url == paymaster_url):
            return self._client
        if paymaster_url not in self._request_clients:
            self._request_clients[paymaster_url] = PaymasterClient(
                PaymasterConfig(
                    url=paymaster_url,
                    api_key=self._config.api_key,
                    rpc_method=self._config.rpc_method,
                    sponsorship_type=self._config.sponsorship_type,
                    sponsorship_address=self._config.sponsorship_address,
                    timeout_seconds=self._config.timeout_seconds,
                )
            )
        return self._request_clients[paymaster_url]

    async def negotiate(
        self,
        user_op: UserOperation,
        deadline: Optional[Deadline] = None,
        paymaster_url: Optional[str] = None,
    ) -> UserOperation:
        """
        Exchange ``user_op`` for sponsored gas and fee fields.

        Args:
            user_op: Partially built operation
            deadline: Optional overall deadline
            paymaster_url: Per-request sponsor endpoint, overrides the configured one

        Returns:
            The sponsored operation, or ``user_op`` unchanged when there is no
            sponsor. A declined request returns ``user_op`` with any earlier
            paymasterAndData cleared

        Raises:
            PaymasterError: On transport or parsing failure
        """
        client = self._client_for(paymaster_url)
        if client is None:
            logger.debug("Paymaster not configured, keeping self-funded gas fields")
            return user_op

        request_op = user_op.replace(signature="0x", paymaster_and_data="0x")
        quote = await within(
            deadline,
            client.sponsor_user_operation(request_op, self._entry_point),
            "pm_sponsorUserOperation",
        )
        if quote is None:
            logger.info(f"Paymaster declined sponsorship for {user_op.sender}")
            if is_empty_hex(user_op.paymaster_and_data):
                return user_op
            return user_op.replace(paymaster_and_data="0x")

        logger.info(
            "Paymaster sponsored user operation: sender=%s, callGasLimit=%d, verificationGasLimit=%d",
            user_op.sender, quote.call_gas_limit, quote.verification_gas_limit,
        )
        return quote.apply(request_op)

    async def close(self) -> None:
        for client in self._request_clients.values():
            await client.close()
        self._request_clients.clear()
        if self._client is not None:
            await self._client.close()
