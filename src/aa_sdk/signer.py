"""Signers for user operation hashes."""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from eth_account import Account
from eth_account.messages import encode_defunct

from .exceptions import ConfigurationError, SignerError

logger = logging.getLogger(__name__)


class Signer(ABC):
    """Abstract interface for anything that can sign a user operation hash."""

    @property
    @abstractmethod
    def address(self) -> str:
        """Address of the signing key (the wallet owner)."""
        pass

    @abstractmethod
    async def sign_message(self, message: bytes) -> str:
        """Sign ``message`` as an EIP-191 personal message and return hex."""
        pass

    def serialize(self) -> Dict[str, Any]:
        """Session state needed to restore this signer."""
        return {}


class LocalAccountSigner(Signer):
    """Signer backed by an in-memory eth_account private key."""

    def __init__(self, private_key: str):
        try:
            self._account = Account.from_key(private_key)
        except (ValueError, TypeError) as e:
            raise ConfigurationError("Invalid private key", setting="private_key") from e

    @classmethod
    def create(cls) -> "LocalAccountSigner":
        account = Account.create()
        return cls("0x" + bytes(account.key).hex())

    @classmethod
    def deserialize(cls, state: Dict[str, Any]) -> "LocalAccountSigner":
        private_key = state.get("privateKey")
        if not private_key:
            raise ConfigurationError("Serialized state has no privateKey", setting="privateKey")
        return cls(private_key)

    @property
    def address(self) -> str:
        return self._account.address

    @property
    def private_key(self) -> str:
        return "0x" + bytes(self._account.key).hex()

    async def sign_message(self, message: bytes) -> str:
        try:
            signed = self._account.sign_message(encode_defunct(primitive=message))
        except Exception as e:
            raise SignerError(f"Failed to sign message: {e}") from e
        return "0x" + bytes(signed.signature).hex()

    def serialize(self) -> Dict[str, Any]:
        return {"privateKey": self.private_key}


def signer_from_state(
    private_key: Optional[str] = None,
    deserialize_state: Optional[Dict[str, Any]] = None,
) -> Optional[LocalAccountSigner]:
    """Restore a signer from serialized session state, falling back to a raw key."""
    if deserialize_state and deserialize_state.get("privateKey"):
        return LocalAccountSigner.deserialize(deserialize_state)
    if private_key:
        return LocalAccountSigner(private_key)
    return None
