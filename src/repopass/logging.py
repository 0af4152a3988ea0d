"""
Logging utilities for RepoPass with sensitive data masking.

Provider credentials, GitHub tokens and webhook secrets travel through the
same code paths as ordinary payloads; everything that is logged as
structured data goes through ``mask_sensitive_data`` first.

Usage:
    from repopass.logging import mask_sensitive_data

    logger = logging.getLogger(__name__)
    logger.info("Provider initialized", extra={"data": mask_sensitive_data({
        "provider": "stripe",
        "secret_key": "sk_live_xxx",  # Will be masked
    })})
"""
from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timezone
from typing import Any, Optional, Sequence

from .constants import LoggingConfig


# =============================================================================
# Sensitive Data Masking
# =============================================================================

_INLINE_SECRET_PATTERNS = (
    re.compile(r"\b(sk|rk|pk)_(live|test)_[A-Za-z0-9]+"),
    re.compile(r"\bwhsec_[A-Za-z0-9]+"),
    re.compile(r"\b(ghp|gho|ghs|github_pat)_[A-Za-z0-9_]+"),
    re.compile(r"(?i)bearer\s+[A-Za-z0-9._\-]+"),
)


def mask_value(value: str, show_chars: int = 4) -> str:
    """Mask a sensitive value, optionally showing first/last characters.

    Args:
        value: The value to mask
        show_chars: Number of characters to show at start and end

    Returns:
        Masked string
    """
    if not value or len(value) <= show_chars * 2:
        return LoggingConfig.MASK_PATTERN

    return f"{value[:show_chars]}...{value[-show_chars:]}"


def is_sensitive_key(key: str) -> bool:
    """Check if a key name indicates sensitive data."""
    key_lower = key.lower().replace("-", "_")
    return key_lower in LoggingConfig.SENSITIVE_FIELDS or any(
        sensitive in key_lower
        for sensitive in ("secret", "password", "token", "key", "credential", "auth")
    )


def mask_inline_secrets(text: str) -> str:
    """Replace secret-looking substrings (API keys, bearer tokens) in free text."""
    for pattern in _INLINE_SECRET_PATTERNS:
        text = pattern.sub(LoggingConfig.MASK_PATTERN, text)
    return text


def mask_sensitive_data(
    data: Any,
    additional_fields: Optional[Sequence[str]] = None,
    mask_pattern: str = LoggingConfig.MASK_PATTERN,
    _depth: int = 0,
    _max_depth: int = 10,
) -> Any:
    """Recursively mask sensitive data in a data structure.

    Args:
        data: The data structure to mask (dict, list, or scalar)
        additional_fields: Additional field names to mask
        mask_pattern: Pattern to replace sensitive values with
        _depth: Current recursion depth (internal)
        _max_depth: Maximum recursion depth to prevent infinite loops

    Returns:
        Copy of data with sensitive values masked
    """
    if _depth > _max_depth:
        return data

    if isinstance(data, dict):
        result = {}
        for key, value in data.items():
            if is_sensitive_key(str(key)):
                result[key] = mask_pattern
            elif additional_fields and key in additional_fields:
                result[key] = mask_pattern
            else:
                result[key] = mask_sensitive_data(
                    value,
                    additional_fields,
                    mask_pattern,
                    _depth + 1,
                    _max_depth,
                )
        return result

    elif isinstance(data, (list, tuple)):
        return type(data)(
            mask_sensitive_data(
                item,
                additional_fields,
                mask_pattern,
                _depth + 1,
                _max_depth,
            )
            for item in data
        )

    elif isinstance(data, str):
        return mask_inline_secrets(data)

    return data


# =============================================================================
# JSON Formatter for Production
# =============================================================================

class JsonFormatter(logging.Formatter):
    """JSON log formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": mask_inline_secrets(record.getMessage()),
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if hasattr(record, "data") and record.data:
            log_data["data"] = mask_sensitive_data(record.data)

        return json.dumps(log_data, default=str)


def configure_logging(
    level: int = logging.INFO,
    json_format: bool = False,
) -> None:
    """Configure logging for the application.

    Args:
        level: Logging level
        json_format: Whether to use JSON formatting
    """
    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)

    if json_format:
        console_handler.setFormatter(JsonFormatter())
    else:
        console_handler.setFormatter(
            logging.Formatter(
                "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
            )
        )

    logging.basicConfig(
        level=level,
        handlers=[console_handler],
        force=True,
    )


__all__ = [
    "mask_sensitive_data",
    "mask_value",
    "mask_inline_secrets",
    "is_sensitive_key",
    "configure_logging",
    "JsonFormatter",
]
