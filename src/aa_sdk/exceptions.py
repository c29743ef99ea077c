"""Exception hierarchy for aa-sdk.

All errors raised by the package inherit from AAException and carry:
- error_code: Machine-readable error code (e.g., "PAYMASTER_ERROR")
- message: Human-readable error message
- details: Optional additional context dictionary
- to_dict(): Structured form for logs and API responses

Bundler rejections are not raised out of the submission pipeline; they are
classified into a BundlerRejection value and returned inside the outcome.
"""
from __future__ import annotations

from typing import Any, Optional


class AAException(Exception):
    """Base exception for all aa-sdk errors.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code
        details: Optional additional context
    """

    error_code: str = "AA_ERROR"

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to a structured dictionary."""
        result = {
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


class ConfigurationError(AAException):
    """Missing factory, owner, signer or endpoint configuration."""

    error_code = "CONFIGURATION_ERROR"

    def __init__(
        self,
        message: str,
        setting: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if setting:
            details["setting"] = setting
        super().__init__(message, details=details)


class ProviderError(AAException):
    """Chain read, call or estimate failure."""

    error_code = "PROVIDER_ERROR"

    def __init__(
        self,
        message: str,
        method: Optional[str] = None,
        code: Optional[int] = None,
        data: Any = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if method:
            details["method"] = method
        if code is not None:
            details["rpc_code"] = code
        self.method = method
        self.code = code
        self.data = data
        super().__init__(message, details=details)


class PaymasterError(AAException):
    """Sponsor transport or response parsing failure."""

    error_code = "PAYMASTER_ERROR"

    def __init__(
        self,
        message: str,
        code: Optional[int] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if code is not None:
            details["rpc_code"] = code
        self.code = code
        super().__init__(message, details=details)


class BundlerRPCError(AAException):
    """Bundler JSON-RPC error or transport failure.

    ``code`` is None when the bundler could not be reached or answered
    without a JSON-RPC error body.
    """

    error_code = "BUNDLER_ERROR"

    def __init__(
        self,
        message: str,
        code: Optional[int] = None,
        data: Any = None,
        method: Optional[str] = None,
    ) -> None:
        details: dict[str, Any] = {}
        if code is not None:
            details["rpc_code"] = code
        if data is not None:
            details["data"] = data
        if method:
            details["method"] = method
        self.code = code
        self.data = data
        self.method = method
        super().__init__(message, details=details)


class EncodingError(AAException):
    """A user operation or call could not be ABI encoded or decoded."""

    error_code = "ENCODING_ERROR"


class SignerError(AAException):
    """The signer is missing or failed to produce a signature."""

    error_code = "SIGNER_ERROR"


class DeadlineExceeded(AAException):
    """An awaited network call outlived the caller's deadline."""

    error_code = "DEADLINE_EXCEEDED"

    def __init__(self, operation: str, timeout_seconds: Optional[float] = None) -> None:
        self.operation = operation
        self.timeout_seconds = timeout_seconds
        details: dict[str, Any] = {"operation": operation}
        if timeout_seconds is not None:
            details["timeout_seconds"] = timeout_seconds
        super().__init__(f"Deadline exceeded during {operation}", details=details)
