"""
Error hierarchy and transient-failure handling for the persistence layer.

This module provides:
- Error type hierarchy (transient vs permanent)
- Classification of raw sqlite3 errors into that hierarchy
- A tenacity-backed retry decorator for transient store errors

Usage:
    from cellar.core.errors import (
        retry_transient,
        TransientStoreError,
        ConfigurationError,
    )

    @retry_transient(max_attempts=5)
    async def open_connection():
        ...
"""

import asyncio
import sqlite3
from datetime import datetime, timezone
from enum import Enum
from functools import wraps
from typing import Any, Callable, Optional, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_random_exponential,
)

log = structlog.get_logger()


# =============================================================================
# Error Type Hierarchy
# =============================================================================


class ErrorCategory(str, Enum):
    """Classification of error types for retry decisions."""

    TRANSIENT = "transient"  # Locked database, unreachable file - may succeed later
    PERMANENT = "permanent"  # Bad SQL, broken configuration - will not
    UNKNOWN = "unknown"


class CellarError(Exception):
    """Base exception for all Cellar errors."""

    category: ErrorCategory = ErrorCategory.UNKNOWN

    def __init__(self, message: str, cause: Optional[Exception] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause
        self.timestamp = datetime.now(timezone.utc)

    def __str__(self) -> str:
        if self.cause:
            return f"{self.message} (caused by: {self.cause})"
        return self.message


class TransientError(CellarError):
    """Error that may succeed on retry."""

    category = ErrorCategory.TRANSIENT


class TransientStoreError(TransientError):
    """Store unreachable, busy, or a query failed transiently.

    Absorbed by the fallback and transactional executors at the
    data-access level. The migration engine never absorbs it.
    """

    pass


class StoreUnavailableError(TransientStoreError):
    """Store context is not initialized or not connected."""

    pass


class PermanentError(CellarError):
    """Error that will NOT succeed on retry."""

    category = ErrorCategory.PERMANENT


class ConfigurationError(PermanentError):
    """Broken migration setup.

    Examples:
    - Unit without an up() or down() procedure
    - Duplicate unit names
    - Migrations directory unreadable or a unit module failing to import
    """

    pass


class DataIntegrityError(PermanentError):
    """Ledger and registry disagree; needs operator attention."""

    def __init__(
        self,
        message: str,
        missing_units: Optional[list[str]] = None,
        cause: Optional[Exception] = None,
    ):
        super().__init__(message, cause)
        self.missing_units = list(missing_units or [])


class StoreError(PermanentError):
    """Statement rejected by the store (syntax, constraint, schema)."""

    pass


class TransactionError(PermanentError):
    """Transaction handle misuse (unknown, finished, or nested)."""

    pass


# =============================================================================
# Error Classification Utilities
# =============================================================================

_TRANSIENT_PATTERNS = (
    "database is locked",
    "database table is locked",
    "busy",
    "unable to open database",
    "disk i/o error",
    "timeout",
    "timed out",
)


def classify_error(error: Exception) -> ErrorCategory:
    """Classify an error into a category.

    Args:
        error: The exception to classify.

    Returns:
        ErrorCategory for the error.
    """
    if isinstance(error, CellarError):
        return error.category

    error_str = str(error).lower()
    if any(pattern in error_str for pattern in _TRANSIENT_PATTERNS):
        return ErrorCategory.TRANSIENT

    if isinstance(error, sqlite3.Error):
        return ErrorCategory.PERMANENT

    return ErrorCategory.UNKNOWN


def is_retryable(error: Exception) -> bool:
    """Check if an error is retryable."""
    return classify_error(error) == ErrorCategory.TRANSIENT


def wrap_store_error(
    error: Exception,
    context: Optional[str] = None,
) -> CellarError:
    """Wrap a raw driver error in the matching Cellar error type.

    Args:
        error: The external exception.
        context: Optional context for the error message.

    Returns:
        A TransientStoreError or StoreError wrapping the original.
    """
    if isinstance(error, CellarError):
        return error

    message = f"{context}: {error}" if context else str(error)
    if is_retryable(error):
        return TransientStoreError(message, cause=error)
    return StoreError(message, cause=error)


# =============================================================================
# Retry Decorator
# =============================================================================

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_MIN_WAIT_SECONDS = 0.1
DEFAULT_MAX_WAIT_SECONDS = 2.0
DEFAULT_EXPONENTIAL_MULTIPLIER = 2.0

F = TypeVar("F", bound=Callable[..., Any])


def _create_retry_callback(
    log_context: Optional[dict[str, Any]] = None,
) -> Callable[[RetryCallState], None]:
    context = log_context or {}

    def callback(state: RetryCallState) -> None:
        exception = state.outcome.exception() if state.outcome else None
        log.warning(
            "retry_attempt",
            attempt=state.attempt_number,
            error=str(exception) if exception else None,
            error_type=type(exception).__name__ if exception else None,
            wait_seconds=state.next_action.sleep if state.next_action else 0,
            **context,
        )

    return callback


def retry_transient(
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    min_wait: float = DEFAULT_MIN_WAIT_SECONDS,
    max_wait: float = DEFAULT_MAX_WAIT_SECONDS,
    multiplier: float = DEFAULT_EXPONENTIAL_MULTIPLIER,
    jitter: bool = True,
    log_context: Optional[dict[str, Any]] = None,
) -> Callable[[F], F]:
    """Decorator to retry an async function on TransientError.

    Args:
        max_attempts: Maximum number of attempts (including initial).
        min_wait: Minimum wait time between retries in seconds.
        max_wait: Maximum wait time between retries in seconds.
        multiplier: Multiplier for exponential backoff.
        jitter: Whether to add randomness to wait times.
        log_context: Additional context for log messages.

    Returns:
        Decorator function.
    """

    def decorator(func: F) -> F:
        if not asyncio.iscoroutinefunction(func):
            raise TypeError("retry_transient only supports async functions")

        callback = _create_retry_callback(log_context)
        if jitter:
            wait_strategy = wait_random_exponential(
                multiplier=multiplier, min=min_wait, max=max_wait
            )
        else:
            wait_strategy = wait_exponential(
                multiplier=multiplier, min=min_wait, max=max_wait
            )

        @wraps(func)
        async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(max_attempts),
                wait=wait_strategy,
                retry=retry_if_exception_type(TransientError),
                before_sleep=callback,
                reraise=True,
            ):
                with attempt:
                    return await func(*args, **kwargs)

        return async_wrapper  # type: ignore

    return decorator
