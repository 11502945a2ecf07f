"""Resilience executors - availability probe, fallback and transactions.

Higher layers call persistence through these helpers so that a missing or
failing store degrades to an in-memory computation instead of crashing the
session:

    settings = await with_fallback(
        context, "settings", "load", (), fallback=lambda: defaults,
    )

    await with_transaction(
        context,
        lambda tx: save_venue_and_staff(context.store),
        fallback=lambda: cache_for_later(),
    )

The bare helpers return only the value. The ``execute_*`` variants return an
OperationOutcome tagged with the path that produced the value, so callers
and tests can tell a primary result from a substituted one.
"""

import inspect
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Sequence, Union

import structlog

from cellar.core.errors import StoreUnavailableError
from cellar.store.base import Transaction

log = structlog.get_logger()

Fallback = Callable[[], Union[Any, Awaitable[Any]]]
TransactionBody = Callable[[Transaction], Union[Any, Awaitable[Any]]]


class OutcomePath(str, Enum):
    """Which path produced an operation's result."""

    PRIMARY = "primary"
    FALLBACK = "fallback"
    FAILED = "failed"


class FallbackReason(str, Enum):
    """Why the primary path was not used."""

    UNAVAILABLE = "unavailable"
    ERROR = "error"


@dataclass(frozen=True)
class OperationOutcome:
    """Result of a fallback- or transaction-wrapped call.

    Attributes:
        path: Which path produced the result.
        value: The primary or fallback result (None when FAILED).
        reason: Why the primary path was skipped (None on PRIMARY).
        error: The primary path's exception, if it raised.
        fallback_error: The fallback's own exception, if it raised.
    """

    path: OutcomePath
    value: Any = None
    reason: Optional[FallbackReason] = None
    error: Optional[Exception] = None
    fallback_error: Optional[Exception] = None

    @property
    def used_fallback(self) -> bool:
        return self.path == OutcomePath.FALLBACK

    @property
    def succeeded(self) -> bool:
        return self.path != OutcomePath.FAILED

    def unwrap(self) -> Any:
        """Return the value, or re-raise the error that made this FAILED."""
        if self.path == OutcomePath.FAILED:
            raise self.fallback_error or self.error  # type: ignore[misc]
        return self.value


async def _maybe_await(result: Any) -> Any:
    if inspect.isawaitable(result):
        return await result
    return result


# =============================================================================
# Availability Probe
# =============================================================================


def is_available(context: Any, capability: Optional[str] = None) -> bool:
    """Check whether the store, and optionally a capability, is usable.

    Never raises: a None context, a context that is not initialized or has
    no store, a non-string capability name, or an object that blows up on
    attribute access all yield False.

    Args:
        context: A StoreContext (or anything shaped like one).
        capability: Optional capability name that must also be registered.

    Returns:
        True if the primary path can be attempted.
    """
    try:
        if context is None or getattr(context, "initialized", False) is not True:
            return False
        if getattr(context, "store", None) is None:
            return False
        if capability is None:
            return True
        if not isinstance(capability, str) or not capability:
            return False
        return bool(context.has_capability(capability))
    except Exception:
        return False


# =============================================================================
# Fallback Executor
# =============================================================================


async def _resolve_with_fallback(
    fallback: Optional[Fallback],
    reason: FallbackReason,
    error: Optional[Exception],
    **log_context: Any,
) -> OperationOutcome:
    if fallback is None:
        if error is None:
            error = StoreUnavailableError("Store context unavailable")
        return OperationOutcome(path=OutcomePath.FAILED, reason=reason, error=error)

    try:
        value = await _maybe_await(fallback())
    except Exception as e:
        log.error(
            "fallback_failed",
            reason=reason.value,
            error=str(e),
            error_type=type(e).__name__,
            **log_context,
        )
        return OperationOutcome(
            path=OutcomePath.FAILED,
            reason=reason,
            error=error,
            fallback_error=e,
        )

    log.info("fallback_used", reason=reason.value, **log_context)
    return OperationOutcome(
        path=OutcomePath.FALLBACK,
        value=value,
        reason=reason,
        error=error,
    )


async def execute_with_fallback(
    context: Any,
    capability: str,
    operation: str,
    args: Sequence[Any] = (),
    fallback: Optional[Fallback] = None,
) -> OperationOutcome:
    """Run ``context.capability(capability).operation(*args)`` or the fallback.

    Args:
        context: Store context.
        capability: Name of the data-access capability (e.g. "staff").
        operation: Method name on the capability.
        args: Positional arguments for the operation.
        fallback: Zero-argument callable (sync or async) used when the
            primary path is unavailable or raises.

    Returns:
        OperationOutcome describing which path ran.
    """
    log_context = {"capability": capability, "operation": operation}

    if not is_available(context, capability):
        return await _resolve_with_fallback(
            fallback, FallbackReason.UNAVAILABLE, None, **log_context
        )

    try:
        target = getattr(context.capability(capability), operation)
        value = await _maybe_await(target(*args))
    except Exception as e:
        log.warning(
            "primary_operation_failed",
            error=str(e),
            error_type=type(e).__name__,
            **log_context,
        )
        return await _resolve_with_fallback(
            fallback, FallbackReason.ERROR, e, **log_context
        )

    return OperationOutcome(path=OutcomePath.PRIMARY, value=value)


async def with_fallback(
    context: Any,
    capability: str,
    operation: str,
    args: Sequence[Any],
    fallback: Fallback,
) -> Any:
    """Like execute_with_fallback() but returns the bare value.

    Primary-path failures never escape; the fallback's own failure does.
    """
    outcome = await execute_with_fallback(context, capability, operation, args, fallback)
    return outcome.unwrap()


# =============================================================================
# Transactional Executor
# =============================================================================


async def _rollback_quietly(store: Any, tx: Transaction, **log_context: Any) -> None:
    """Roll back; a failure here is logged and never replaces the original error."""
    try:
        await store.rollback_transaction(tx)
    except Exception as e:
        log.error(
            "transaction_rollback_failed",
            tx_id=tx.tx_id,
            error=str(e),
            error_type=type(e).__name__,
            **log_context,
        )


async def execute_in_transaction(
    context: Any,
    body: TransactionBody,
    fallback: Optional[Fallback] = None,
    *,
    label: Optional[str] = None,
) -> OperationOutcome:
    """Run ``body(tx)`` inside a store transaction.

    Begin, then commit on success or roll back on failure, exactly once.
    A failing COMMIT counts as a body failure. Without a fallback, a failure
    yields a FAILED outcome carrying the original error.

    Args:
        context: Store context.
        body: Callable (sync or async) receiving the Transaction handle.
        fallback: Optional zero-argument callable used on failure or when
            the context is unavailable.
        label: Extra log context (e.g. the migration unit name).

    Returns:
        OperationOutcome describing which path ran.
    """
    log_context: dict[str, Any] = {"label": label} if label else {}

    if not is_available(context):
        return await _resolve_with_fallback(
            fallback, FallbackReason.UNAVAILABLE, None, **log_context
        )

    store = context.store
    try:
        tx = await store.begin_transaction()
    except Exception as e:
        log.warning("transaction_begin_failed", error=str(e), **log_context)
        return await _resolve_with_fallback(
            fallback, FallbackReason.ERROR, e, **log_context
        )

    try:
        value = await _maybe_await(body(tx))
        await store.commit_transaction(tx)
    except Exception as e:
        log.warning(
            "transaction_failed",
            tx_id=tx.tx_id,
            error=str(e),
            error_type=type(e).__name__,
            **log_context,
        )
        await _rollback_quietly(store, tx, **log_context)
        return await _resolve_with_fallback(
            fallback, FallbackReason.ERROR, e, **log_context
        )
    except BaseException:
        # Cancellation: the transaction still ends before control returns
        await _rollback_quietly(store, tx, **log_context)
        raise

    return OperationOutcome(path=OutcomePath.PRIMARY, value=value)


async def with_transaction(
    context: Any,
    body: TransactionBody,
    fallback: Fallback,
) -> Any:
    """Like execute_in_transaction() but returns the bare value."""
    outcome = await execute_in_transaction(context, body, fallback)
    return outcome.unwrap()
