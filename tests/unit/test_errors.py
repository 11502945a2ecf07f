"""
Unit tests for the error hierarchy and retry logic.

Tests cover:
- Error type hierarchy (retryable vs non-retryable)
- Classification of raw sqlite3 errors
- Retry decorator with exponential backoff
"""
import sqlite3

import pytest
from unittest.mock import AsyncMock

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


class TestErrorHierarchy:
    """Test error type classification."""

    def test_transient_errors_are_retryable(self):
        """Verify TransientError and subclasses are retryable."""
        for error in (
            TransientError("test"),
            TransientStoreError("test"),
            StoreUnavailableError("test"),
        ):
            assert error.category == ErrorCategory.TRANSIENT
            assert is_retryable(error) is True

    def test_permanent_errors_are_not_retryable(self):
        """Verify PermanentError and subclasses are NOT retryable."""
        for error in (
            PermanentError("test"),
            ConfigurationError("test"),
            DataIntegrityError("test"),
            StoreError("test"),
            TransactionError("test"),
        ):
            assert error.category == ErrorCategory.PERMANENT
            assert is_retryable(error) is False

    def test_error_str_includes_cause(self):
        cause = ValueError("boom")
        error = StoreError("insert failed", cause=cause)
        assert str(error) == "insert failed (caused by: boom)"
        assert error.cause is cause
        assert error.timestamp is not None

    def test_data_integrity_error_carries_missing_units(self):
        error = DataIntegrityError("bad ledger", missing_units=["a", "b"])
        assert error.missing_units == ["a", "b"]
        assert DataIntegrityError("bad").missing_units == []


class TestClassification:
    """Test classification of raw driver errors."""

    def test_locked_database_is_transient(self):
        assert classify_error(sqlite3.OperationalError("database is locked")) == ErrorCategory.TRANSIENT

    def test_syntax_error_is_permanent(self):
        assert classify_error(sqlite3.OperationalError('near "SELEC": syntax error')) == ErrorCategory.PERMANENT

    def test_constraint_violation_is_permanent(self):
        error = sqlite3.IntegrityError("UNIQUE constraint failed: migrations.name")
        assert classify_error(error) == ErrorCategory.PERMANENT

    def test_unrelated_error_is_unknown(self):
        assert classify_error(ValueError("nope")) == ErrorCategory.UNKNOWN

    def test_wrap_store_error_transient(self):
        raw = sqlite3.OperationalError("database is locked")
        wrapped = wrap_store_error(raw, "execute")
        assert isinstance(wrapped, TransientStoreError)
        assert wrapped.cause is raw
        assert wrapped.message == "execute: database is locked"

    def test_wrap_store_error_permanent(self):
        wrapped = wrap_store_error(sqlite3.OperationalError("no such table: x"))
        assert isinstance(wrapped, StoreError)
        assert wrapped.message == "no such table: x"

    def test_wrap_store_error_passes_cellar_errors_through(self):
        error = TransactionError("nested")
        assert wrap_store_error(error, "ctx") is error


class TestRetryTransient:
    """Test the retry_transient decorator."""

    @pytest.mark.asyncio
    async def test_succeeds_without_retry(self):
        """Verify a successful call runs once."""
        mock_func = AsyncMock(return_value="ok")

        @retry_transient(max_attempts=3, min_wait=0.001, max_wait=0.01)
        async def func():
            return await mock_func()

        assert await func() == "ok"
        assert mock_func.call_count == 1

    @pytest.mark.asyncio
    async def test_retries_transient_then_succeeds(self):
        """Verify transient errors are retried."""
        mock_func = AsyncMock(
            side_effect=[TransientStoreError("locked"), TransientStoreError("locked"), "ok"]
        )

        @retry_transient(max_attempts=3, min_wait=0.001, max_wait=0.01, jitter=False)
        async def func():
            return await mock_func()

        assert await func() == "ok"
        assert mock_func.call_count == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        """Verify the last transient error is re-raised."""
        mock_func = AsyncMock(side_effect=TransientStoreError("still locked"))

        @retry_transient(max_attempts=2, min_wait=0.001, max_wait=0.01)
        async def func():
            return await mock_func()

        with pytest.raises(TransientStoreError, match="still locked"):
            await func()
        assert mock_func.call_count == 2

    @pytest.mark.asyncio
    async def test_permanent_error_not_retried(self):
        """Verify permanent errors fail immediately."""
        mock_func = AsyncMock(side_effect=StoreError("syntax error"))

        @retry_transient(max_attempts=5, min_wait=0.001, max_wait=0.01)
        async def func():
            return await mock_func()

        with pytest.raises(StoreError):
            await func()
        assert mock_func.call_count == 1

    def test_rejects_sync_functions(self):
        with pytest.raises(TypeError):

            @retry_transient()
            def func():
                return None

    def test_cellar_error_is_exception(self):
        assert issubclass(CellarError, Exception)
