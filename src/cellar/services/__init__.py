"""Services - store context and resilience executors."""

from cellar.services.context import StoreContext
from cellar.services.resilience import (
    FallbackReason,
    OperationOutcome,
    OutcomePath,
    execute_in_transaction,
    execute_with_fallback,
    is_available,
    with_fallback,
    with_transaction,
)

__all__ = [
    "StoreContext",
    "FallbackReason",
    "OperationOutcome",
    "OutcomePath",
    "execute_in_transaction",
    "execute_with_fallback",
    "is_available",
    "with_fallback",
    "with_transaction",
]
