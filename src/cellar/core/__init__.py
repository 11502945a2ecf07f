"""Core framework infrastructure - config, errors, logging, lifecycle."""

from cellar.core.config import ConfigManager
from cellar.core.errors import (
    CellarError,
    ConfigurationError,
    DataIntegrityError,
    ErrorCategory,
    PermanentError,
    StoreError,
    StoreUnavailableError,
    TransactionError,
    TransientError,
    TransientStoreError,
    classify_error,
    is_retryable,
    retry_transient,
    wrap_store_error,
)
from cellar.core.lifecycle import BaseComponent, HealthCheckResult, HealthStatus
from cellar.core.logging import get_logger, setup_logging

__all__ = [
    # Config
    "ConfigManager",
    # Errors (Transient)
    "CellarError",
    "ErrorCategory",
    "TransientError",
    "TransientStoreError",
    "StoreUnavailableError",
    # Errors (Permanent)
    "PermanentError",
    "ConfigurationError",
    "DataIntegrityError",
    "StoreError",
    "TransactionError",
    # Errors - Utilities
    "classify_error",
    "is_retryable",
    "wrap_store_error",
    "retry_transient",
    # Lifecycle
    "BaseComponent",
    "HealthCheckResult",
    "HealthStatus",
    # Logging
    "setup_logging",
    "get_logger",
]
