"""
Centralized constants for RepoPass.

Usage:
    from repopass.constants import Timeouts, RetryDefaults, LoggingConfig

All values are organized into logical namespaces using classes.
"""
from __future__ import annotations

from typing import Final


# =============================================================================
# Timeout Constants (in seconds)
# =============================================================================

class Timeouts:
    """Timeouts for outbound HTTP calls."""

    PROVIDER_HTTP: Final[float] = 30.0
    GITHUB_HTTP: Final[float] = 30.0
    EMAIL_HTTP: Final[float] = 15.0

    # Stripe-Signature timestamps older than this are rejected
    STRIPE_SIGNATURE_TOLERANCE: Final[int] = 300


# =============================================================================
# Retry Configuration
# =============================================================================

class RetryDefaults:
    """Retry configuration for various operations."""

    DEFAULT_MAX_RETRIES: Final[int] = 3
    DEFAULT_BASE_DELAY: Final[float] = 1.0
    DEFAULT_MAX_DELAY: Final[float] = 60.0
    DEFAULT_EXPONENTIAL_BASE: Final[float] = 2.0
    DEFAULT_JITTER: Final[float] = 0.1

    # Collaborator grant: total attempts, 2^attempt seconds between them
    GRANT_MAX_ATTEMPTS: Final[int] = 3
    GRANT_BASE_DELAY: Final[float] = 1.0


# =============================================================================
# Domain Constants
# =============================================================================

class Limits:
    """Input limits."""

    GITHUB_USERNAME_MAX_LENGTH: Final[int] = 39
    MAX_CUSTOM_CADENCE_DAYS: Final[int] = 3650


PLACEHOLDER_EMAIL_DOMAIN: Final[str] = "github.user"
DEFAULT_MANUAL_REVOKE_REASON: Final[str] = "Manually revoked by admin"
COLLABORATOR_PERMISSION: Final[str] = "pull"


# =============================================================================
# Logging Configuration
# =============================================================================

class LoggingConfig:
    """Logging-related constants."""

    # Sensitive fields to mask in logs
    SENSITIVE_FIELDS: Final[frozenset[str]] = frozenset({
        "password",
        "secret",
        "token",
        "api_key",
        "apiKey",
        "secret_key",
        "secretKey",
        "publishable_key",
        "access_token",
        "accessToken",
        "vendor_auth_code",
        "authorization",
        "auth",
        "credential",
        "credentials",
        "encrypted_fields",
        "github_token",
    })

    MASK_PATTERN: Final[str] = "***MASKED***"
