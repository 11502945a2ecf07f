"""
Shared pytest fixtures for Cellar tests.
"""
from pathlib import Path
from typing import Callable

import pytest
import pytest_asyncio
from unittest.mock import AsyncMock, MagicMock

from cellar.services.context import StoreContext
from cellar.store.sqlite import SqliteStore


@pytest.fixture
def db_path(tmp_path) -> str:
    return str(tmp_path / "cellar.db")


@pytest_asyncio.fixture
async def store(db_path):
    """Connected SqliteStore on a fresh database file."""
    store = SqliteStore(db_path=db_path)
    await store.connect()
    yield store
    await store.close()


@pytest_asyncio.fixture
async def context(store):
    """Opened StoreContext around the store fixture."""
    context = StoreContext(store)
    await context.open()
    yield context
    await context.dispose()


@pytest.fixture
def mock_store():
    """Mock Store whose transaction methods are AsyncMocks."""
    from cellar.store.base import Transaction

    store = MagicMock()
    store.is_connected = True
    store.begin_transaction = AsyncMock(return_value=Transaction(tx_id="txn_test"))
    store.commit_transaction = AsyncMock()
    store.rollback_transaction = AsyncMock()
    store.execute = AsyncMock(return_value=0)
    return store


@pytest.fixture
def write_unit(tmp_path) -> Callable[[str, str], Path]:
    """Write unit modules into tmp_path/migrations."""
    directory = tmp_path / "migrations"
    directory.mkdir(exist_ok=True)

    def write(name: str, body: str) -> Path:
        path = directory / f"{name}.py"
        path.write_text(body, encoding="utf-8")
        return path

    return write
