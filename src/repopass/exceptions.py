"""Unified exception hierarchy for RepoPass.

All RepoPass-specific exceptions inherit from RepoPassException, enabling:
- Proper HTTP status code mapping in the API layer
- Structured error responses with error codes

Usage:
    from repopass.exceptions import (
        RepoPassException,
        ValidationError,
        NotFoundError,
    )

All exceptions have:
- error_code: Machine-readable error code (e.g., "VALIDATION_ERROR")
- http_status: Appropriate HTTP status code for API responses
- message: Human-readable error message
- details: Optional additional context dictionary
- to_dict(): Convert to API response format
"""
from __future__ import annotations

from typing import Any, Optional


class RepoPassException(Exception):
    """Base exception for all RepoPass errors.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code (e.g., "VALIDATION_ERROR")
        details: Optional additional context
    """

    error_code: str = "REPOPASS_ERROR"
    http_status: int = 500

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
        """Convert exception to API response format."""
        result = {
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


# =============================================================================
# Validation & Input Errors (4xx)
# =============================================================================

class ValidationError(RepoPassException):
    """Malformed request or webhook payload."""

    error_code = "VALIDATION_ERROR"
    http_status = 400

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if field:
            details["field"] = field
        super().__init__(message, details=details)


class NotFoundError(RepoPassException):
    """Requested resource not found."""

    error_code = "NOT_FOUND"
    http_status = 404

    def __init__(
        self,
        resource_type: str,
        resource_id: str,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        message = f"{resource_type} '{resource_id}' not found"
        details = details or {}
        details["resource_type"] = resource_type
        details["resource_id"] = resource_id
        super().__init__(message, details=details)


class ConflictError(RepoPassException):
    """Resource conflict (e.g., duplicate purchase)."""

    error_code = "CONFLICT"
    http_status = 409


class SignatureVerificationFailure(RepoPassException):
    """Webhook signature missing or invalid."""

    error_code = "SIGNATURE_VERIFICATION_FAILED"
    http_status = 400


# =============================================================================
# Provider Errors
# =============================================================================

class ProviderAPIError(RepoPassException):
    """Upstream payment or hosting API failure.

    ``transient`` is True for network errors, 5xx and 429 responses; those
    are the only failures the grant policy retries.
    """

    error_code = "PROVIDER_API_ERROR"
    http_status = 502

    def __init__(
        self,
        message: str,
        provider: str,
        status_code: Optional[int] = None,
        transient: Optional[bool] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        details["provider"] = provider
        if status_code is not None:
            details["status_code"] = status_code
        super().__init__(message, details=details)
        self.provider = provider
        self.status_code = status_code
        if transient is None:
            transient = status_code is None or status_code >= 500 or status_code == 429
        self.transient = transient


class InvalidCredentials(RepoPassException):
    """Merchant credentials are incomplete for the selected provider."""

    error_code = "INVALID_CREDENTIALS"
    http_status = 400

    def __init__(
        self,
        provider: str,
        missing: Optional[list[str]] = None,
        message: Optional[str] = None,
    ) -> None:
        missing = missing or []
        if message is None:
            message = f"Invalid {provider} credentials"
            if missing:
                message += f": missing {', '.join(missing)}"
        super().__init__(message, details={"provider": provider, "missing": missing})
        self.provider = provider
        self.missing = missing


class UnsupportedProvider(RepoPassException):
    """Unknown payment provider discriminator."""

    error_code = "UNSUPPORTED_PROVIDER"
    http_status = 400

    def __init__(self, provider: str) -> None:
        super().__init__(
            f"Unsupported payment provider: {provider}",
            details={"provider": provider},
        )
        self.provider = provider


class UnsupportedOperation(RepoPassException):
    """The provider cannot perform the requested operation."""

    error_code = "UNSUPPORTED_OPERATION"
    http_status = 501

    def __init__(self, provider: str, operation: str, reason: str = "") -> None:
        message = f"{provider} does not support {operation}"
        if reason:
            message += f": {reason}"
        super().__init__(message, details={"provider": provider, "operation": operation})
        self.provider = provider
        self.operation = operation


# =============================================================================
# Configuration Errors
# =============================================================================

class ConfigurationError(RepoPassException):
    """Required configuration is missing."""

    error_code = "CONFIGURATION_ERROR"
    http_status = 500


__all__ = [
    "RepoPassException",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "SignatureVerificationFailure",
    "ProviderAPIError",
    "InvalidCredentials",
    "UnsupportedProvider",
    "UnsupportedOperation",
    "ConfigurationError",
]
