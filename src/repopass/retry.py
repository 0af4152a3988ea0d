"""
Retry utilities with exponential backoff for RepoPass.

Usage:
    from repopass.retry import retry_async, RetryConfig

    config = RetryConfig(max_retries=2, base_delay=1.0, jitter=0.0)
    result = await retry_async(call_external_api, payload, config=config)
"""
from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import (
    Awaitable,
    Callable,
    Optional,
    ParamSpec,
    Type,
    TypeVar,
)

from .constants import RetryDefaults

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


@dataclass(frozen=True)
class RetryConfig:
    """Configuration for retry behavior.

    Attributes:
        max_retries: Maximum number of retry attempts (0 means no retries)
        base_delay: Initial delay between retries in seconds
        max_delay: Maximum delay between retries in seconds
        exponential_base: Base for exponential backoff calculation
        jitter: Maximum jitter factor (0.0-1.0) added to delays
        retryable_exceptions: Tuple of exception types that trigger retries
        non_retryable_exceptions: Tuple of exception types that should not be retried
        on_retry: Optional callback called before each retry
        retry_condition: Optional function to determine if exception should be retried
    """

    max_retries: int = RetryDefaults.DEFAULT_MAX_RETRIES
    base_delay: float = RetryDefaults.DEFAULT_BASE_DELAY
    max_delay: float = RetryDefaults.DEFAULT_MAX_DELAY
    exponential_base: float = RetryDefaults.DEFAULT_EXPONENTIAL_BASE
    jitter: float = RetryDefaults.DEFAULT_JITTER
    retryable_exceptions: tuple[Type[BaseException], ...] = (Exception,)
    non_retryable_exceptions: tuple[Type[BaseException], ...] = ()
    on_retry: Optional[Callable[[int, BaseException, float], None]] = None
    retry_condition: Optional[Callable[[BaseException], bool]] = None

    def calculate_delay(self, attempt: int) -> float:
        """Calculate delay after the given (0-based) failed attempt.

        Uses exponential backoff with optional jitter.
        """
        delay = self.base_delay * (self.exponential_base ** attempt)
        delay = min(delay, self.max_delay)

        if self.jitter > 0:
            jitter_range = delay * self.jitter
            delay = delay + random.uniform(-jitter_range, jitter_range)

        return max(0.0, delay)

    def should_retry(self, exception: BaseException) -> bool:
        """Determine if the exception should trigger a retry."""
        # Non-retryable takes precedence
        if isinstance(exception, self.non_retryable_exceptions):
            return False

        if self.retry_condition is not None:
            return self.retry_condition(exception)

        return isinstance(exception, self.retryable_exceptions)


def grant_retry_config(
    max_attempts: int = RetryDefaults.GRANT_MAX_ATTEMPTS,
    base_delay: float = RetryDefaults.GRANT_BASE_DELAY,
    retry_condition: Optional[Callable[[BaseException], bool]] = None,
    on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
) -> RetryConfig:
    """Collaborator grant policy: ``max_attempts`` tries, 2^attempt seconds apart."""
    return RetryConfig(
        max_retries=max(0, max_attempts - 1),
        base_delay=base_delay,
        max_delay=RetryDefaults.DEFAULT_MAX_DELAY,
        exponential_base=2.0,
        jitter=0.0,
        retry_condition=retry_condition,
        on_retry=on_retry,
    )


@dataclass
class RetryStats:
    """Statistics about retry execution.

    Attributes:
        attempts: Total number of attempts (including initial)
        total_delay: Total delay time in seconds
        success: Whether the operation eventually succeeded
        last_exception: The last exception if operation failed
    """

    attempts: int = 0
    total_delay: float = 0.0
    success: bool = False
    last_exception: Optional[BaseException] = None


class RetryExhausted(Exception):
    """Raised when all retry attempts have been exhausted."""

    def __init__(
        self,
        message: str,
        stats: RetryStats,
        original_exception: BaseException,
    ) -> None:
        super().__init__(message)
        self.stats = stats
        self.original_exception = original_exception


async def retry_async(
    func: Callable[P, Awaitable[T]],
    *args: P.args,
    config: Optional[RetryConfig] = None,
    stats: Optional[RetryStats] = None,
    **kwargs: P.kwargs,
) -> T:
    """Execute an async function with retry logic.

    Args:
        func: The async function to execute
        *args: Positional arguments for the function
        config: Retry configuration (uses defaults if None)
        stats: Optional stats object filled in while retrying
        **kwargs: Keyword arguments for the function

    Returns:
        The return value of the function

    Raises:
        RetryExhausted: If all retry attempts fail
    """
    if config is None:
        config = RetryConfig()
    if stats is None:
        stats = RetryStats()

    last_exception: Optional[BaseException] = None
    name = getattr(func, "__name__", repr(func))

    for attempt in range(config.max_retries + 1):
        stats.attempts = attempt + 1

        try:
            result = await func(*args, **kwargs)
            stats.success = True
            return result

        except Exception as e:
            last_exception = e
            stats.last_exception = e

            if attempt >= config.max_retries:
                break

            if not config.should_retry(e):
                logger.debug(
                    "Exception %s is not retryable, raising immediately",
                    type(e).__name__,
                )
                raise

            delay = config.calculate_delay(attempt)
            stats.total_delay += delay

            logger.warning(
                "Retry %d/%d for %s after %s: %s. Waiting %.2fs",
                attempt + 1,
                config.max_retries,
                name,
                type(e).__name__,
                e,
                delay,
            )

            if config.on_retry:
                config.on_retry(attempt + 1, e, delay)

            await asyncio.sleep(delay)

    raise RetryExhausted(
        f"All {config.max_retries + 1} attempts failed for {name}",
        stats=stats,
        original_exception=last_exception,
    ) from last_exception


__all__ = [
    "RetryConfig",
    "RetryStats",
    "RetryExhausted",
    "retry_async",
    "grant_retry_config",
]
