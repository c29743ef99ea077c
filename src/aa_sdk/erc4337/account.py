"""Smart contract wallet interface (SimpleAccount + SimpleAccountFactory)."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Optional, Sequence

from eth_abi import decode, encode
from eth_abi.exceptions import EncodingError as AbiEncodingError
from web3 import Web3

from ..deadline import Deadline
from ..exceptions import ConfigurationError, EncodingError, ProviderError
from ..rpc_client import ChainProvider
from .user_operation import hex_to_bytes

logger = logging.getLogger(__name__)


def _selector(signature: str) -> bytes:
    return bytes(Web3.keccak(text=signature)[:4])


EXECUTE_SELECTOR = _selector("execute(address,uint256,bytes)")
EXECUTE_BATCH_SELECTOR = _selector("executeBatch(address[],bytes[])")
GET_NONCE_SELECTOR = _selector("getNonce()")
CREATE_ACCOUNT_SELECTOR = _selector("createAccount(address,uint256)")
GET_ADDRESS_SELECTOR = _selector("getAddress(address,uint256)")


class WalletContract(ABC):
    """On-chain wallet the user operations are executed by."""

    @abstractmethod
    async def get_address(self, deadline: Optional[Deadline] = None) -> str:
        """Counterfactual wallet address."""
        pass

    @abstractmethod
    async def get_nonce(self, deadline: Optional[Deadline] = None) -> int:
        """Current nonce of a deployed wallet."""
        pass

    @abstractmethod
    def get_init_code(self) -> str:
        """Factory address followed by the deployment call."""
        pass

    @property
    @abstractmethod
    def factory_address(self) -> Optional[str]:
        pass

    @abstractmethod
    def encode_execute(self, target: str, value: int, data: str) -> str:
        pass

    @abstractmethod
    def encode_execute_batch(self, targets: Sequence[str], datas: Sequence[str]) -> str:
        pass


class SimpleAccount(WalletContract):
    """
    SimpleAccount wallet deployed through SimpleAccountFactory.

    The address is derived from (owner, index) via the factory's getAddress
    view and cached after the first lookup.
    """

    def __init__(
        self,
        provider: ChainProvider,
        owner_address: Optional[str],
        factory_address: Optional[str] = None,
        index: int = 0,
        account_address: Optional[str] = None,
    ):
        self._provider = provider
        self._owner_address = owner_address
        self._factory_address = factory_address or None
        self._index = index
        self._address = (
            Web3.to_checksum_address(account_address) if account_address else None
        )

    @property
    def owner_address(self) -> Optional[str]:
        return self._owner_address

    @property
    def factory_address(self) -> Optional[str]:
        return self._factory_address

    @property
    def index(self) -> int:
        return self._index

    def _require_owner(self) -> str:
        if not self._owner_address:
            raise ConfigurationError("Owner must be initialized", setting="owner_address")
        return self._owner_address

    def _require_factory(self) -> str:
        if not self._factory_address:
            raise ConfigurationError("No factory to get initCode", setting="factory_address")
        return self._factory_address

    async def get_address(self, deadline: Optional[Deadline] = None) -> str:
        if self._address is not None:
            return self._address

        factory = self._require_factory()
        owner = self._require_owner()
        data = GET_ADDRESS_SELECTOR + encode(
            ["address", "uint256"], [Web3.to_checksum_address(owner), self._index]
        )
        result = await self._provider.call(
            {"to": factory, "data": "0x" + data.hex()}, deadline=deadline
        )
        try:
            (address,) = decode(["address"], hex_to_bytes(result))
        except Exception as e:
            raise ProviderError(
                f"Factory getAddress returned undecodable result: {result!r}",
                method="eth_call",
            ) from e

        self._address = Web3.to_checksum_address(address)
        logger.debug(f"Resolved account address {self._address} for owner {owner}")
        return self._address

    async def get_nonce(self, deadline: Optional[Deadline] = None) -> int:
        address = await self.get_address(deadline=deadline)
        result = await self._provider.call(
            {"to": address, "data": "0x" + GET_NONCE_SELECTOR.hex()}, deadline=deadline
        )
        try:
            (nonce,) = decode(["uint256"], hex_to_bytes(result))
        except Exception as e:
            raise ProviderError(
                f"getNonce returned undecodable result: {result!r}",
                method="eth_call",
            ) from e
        return nonce

    def get_init_code(self) -> str:
        factory = self._require_factory()
        owner = self._require_owner()
        call = CREATE_ACCOUNT_SELECTOR + encode(
            ["address", "uint256"], [Web3.to_checksum_address(owner), self._index]
        )
        return "0x" + factory.lower().removeprefix("0x") + call.hex()

    def encode_execute(self, target: str, value: int, data: str) -> str:
        try:
            encoded = encode(
                ["address", "uint256", "bytes"],
                [Web3.to_checksum_address(target), value, hex_to_bytes(data)],
            )
        except (AbiEncodingError, TypeError, ValueError, OverflowError) as e:
            raise EncodingError(f"Cannot encode execute call to {target}: {e}") from e
        return "0x" + (EXECUTE_SELECTOR + encoded).hex()

    def encode_execute_batch(self, targets: Sequence[str], datas: Sequence[str]) -> str:
        if len(targets) != len(datas):
            raise EncodingError("executeBatch needs one data entry per target")
        try:
            encoded = encode(
                ["address[]", "bytes[]"],
                [
                    [Web3.to_checksum_address(t) for t in targets],
                    [hex_to_bytes(d) for d in datas],
                ],
            )
        except (AbiEncodingError, TypeError, ValueError, OverflowError) as e:
            raise EncodingError(f"Cannot encode executeBatch call: {e}") from e
        return "0x" + (EXECUTE_BATCH_SELECTOR + encoded).hex()


def decode_init_code(init_code: str) -> tuple[str, str, int]:
    """Split init code into (factory, owner, index) for createAccount deployments."""
    raw = hex_to_bytes(init_code)
    if len(raw) < 24 or raw[20:24] != CREATE_ACCOUNT_SELECTOR:
        raise EncodingError("initCode is not a createAccount deployment")
    owner, index = decode(["address", "uint256"], raw[24:])
    return Web3.to_checksum_address("0x" + raw[:20].hex()), Web3.to_checksum_address(owner), index


def split_init_code(init_code: str) -> tuple[str, str]:
    """Return (factory address, factory calldata)."""
    raw = hex_to_bytes(init_code)
    if len(raw) < 20:
        raise EncodingError("initCode is shorter than an address")
    return Web3.to_checksum_address("0x" + raw[:20].hex()), "0x" + raw[20:].hex()
