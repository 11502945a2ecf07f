"""SQLite store adapter - async persistence over aiosqlite.

This adapter:
- Owns a single aiosqlite connection in autocommit mode
- Sequences explicit BEGIN / COMMIT / ROLLBACK for transactions
- Serializes statements with a lock, and transactions with a second lock
- Translates sqlite3 errors into the Cellar error hierarchy
"""

import asyncio
import re
import sqlite3
import uuid
from pathlib import Path
from typing import Any, Optional

import aiosqlite
import structlog

from cellar.core.config import ConfigManager
from cellar.core.errors import (
    StoreError,
    StoreUnavailableError,
    TransactionError,
    retry_transient,
    wrap_store_error,
)
from cellar.core.lifecycle import BaseComponent, HealthCheckResult
from cellar.store.base import Params, Row, Transaction

log = structlog.get_logger()

DEFAULT_DB_PATH = "./data/cellar.db"
DEFAULT_BUSY_TIMEOUT_MS = 5000

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _check_identifier(name: str) -> str:
    if not isinstance(name, str) or not _IDENTIFIER.match(name):
        raise StoreError(f"Invalid SQL identifier: {name!r}")
    return name


class SqliteStore(BaseComponent):
    """SQLite-backed implementation of the Store interface.

    SQLite has one writer at a time, so a single connection is shared and
    statements are serialized with a lock. WAL mode lets readers in other
    processes proceed while a write is in flight.

    The connection runs with ``isolation_level=None`` so that the driver
    never opens implicit transactions; every transaction is an explicit
    BEGIN issued by begin_transaction(). While one is open, every statement
    sent through this store joins it.

    Usage:
        store = SqliteStore("./data/cellar.db")
        await store.connect()
        tx = await store.begin_transaction()
        await store.execute("CREATE TABLE t (id INTEGER PRIMARY KEY)")
        await store.commit_transaction(tx)
        await store.close()
    """

    def __init__(
        self,
        db_path: Optional[str] = None,
        config: Optional[ConfigManager] = None,
        busy_timeout_ms: Optional[int] = None,
    ):
        """Initialize the store.

        Args:
            db_path: Direct path to database file (takes precedence).
            config: Configuration manager for default settings.
            busy_timeout_ms: How long SQLite waits on a locked database.
        """
        super().__init__()
        self._log = log.bind(component="sqlite_store")

        if db_path:
            self._db_path = str(db_path)
        elif config:
            self._db_path = str(config.get("database.path", DEFAULT_DB_PATH))
        else:
            self._db_path = DEFAULT_DB_PATH

        if busy_timeout_ms is not None:
            self._busy_timeout_ms = busy_timeout_ms
        elif config:
            self._busy_timeout_ms = config.get_int(
                "database.busy_timeout_ms", DEFAULT_BUSY_TIMEOUT_MS
            )
        else:
            self._busy_timeout_ms = DEFAULT_BUSY_TIMEOUT_MS

        self._connection: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()
        self._tx_lock = asyncio.Lock()
        self._transaction: Optional[Transaction] = None
        self._tx_owner: Optional[asyncio.Task] = None

    @property
    def db_path(self) -> str:
        """Path of the database file."""
        return self._db_path

    @property
    def is_connected(self) -> bool:
        """Check if database is connected."""
        return self._connection is not None

    @property
    def in_transaction(self) -> bool:
        """Check if a transaction is currently open."""
        return self._transaction is not None

    # ============ Connection ============

    async def connect(self) -> None:
        """Open the connection (alias of start())."""
        await self.start()

    async def close(self) -> None:
        """Close the connection (alias of stop())."""
        await self.stop()

    async def _do_start(self) -> None:
        self._log.info("connecting_store", db_path=self._db_path)
        self._connection = await self._open_connection()
        self._log.info("store_connected")

    @retry_transient(log_context={"operation": "store_connect"})
    async def _open_connection(self) -> aiosqlite.Connection:
        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)

        try:
            conn = await aiosqlite.connect(self._db_path, isolation_level=None)
            conn.row_factory = aiosqlite.Row
            await conn.execute("PRAGMA foreign_keys = ON")
            await conn.execute("PRAGMA journal_mode = WAL")
            await conn.execute(f"PRAGMA busy_timeout = {int(self._busy_timeout_ms)}")
        except sqlite3.Error as e:
            raise wrap_store_error(e, "connect") from e
        return conn

    async def _do_stop(self) -> None:
        if self._transaction is not None:
            self._log.warning(
                "closing_with_open_transaction",
                tx_id=self._transaction.tx_id,
            )
            self._finish_transaction()
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
        self._log.info("store_closed")

    def _acquire(self) -> aiosqlite.Connection:
        if self._connection is None:
            raise StoreUnavailableError("Store not connected")
        return self._connection

    # ============ Statements ============

    async def execute(self, sql: str, params: Params = None) -> int:
        """Run a statement; returns the number of rows changed."""
        conn = self._acquire()
        async with self._lock:
            try:
                cursor = await conn.execute(sql, tuple(params or ()))
                changes = cursor.rowcount
                await cursor.close()
            except sqlite3.Error as e:
                raise wrap_store_error(e, "execute") from e
        return changes

    async def query(self, sql: str, params: Params = None) -> list[Row]:
        """Run a query; returns all rows as dictionaries."""
        conn = self._acquire()
        async with self._lock:
            try:
                async with conn.execute(sql, tuple(params or ())) as cursor:
                    rows = await cursor.fetchall()
            except sqlite3.Error as e:
                raise wrap_store_error(e, "query") from e
        return [dict(row) for row in rows]

    async def query_one(self, sql: str, params: Params = None) -> Optional[Row]:
        """Run a query; returns the first row or None."""
        conn = self._acquire()
        async with self._lock:
            try:
                async with conn.execute(sql, tuple(params or ())) as cursor:
                    row = await cursor.fetchone()
            except sqlite3.Error as e:
                raise wrap_store_error(e, "query") from e
        return dict(row) if row is not None else None

    async def insert(self, table: str, record: dict[str, Any]) -> int:
        """Insert one record; returns the new row id.

        Args:
            table: Target table name.
            record: Column name to value mapping.
        """
        if not record:
            raise StoreError(f"Cannot insert an empty record into {table!r}")

        columns = [_check_identifier(column) for column in record]
        placeholders = ", ".join("?" for _ in columns)
        sql = (
            f"INSERT INTO {_check_identifier(table)} "
            f"({', '.join(columns)}) VALUES ({placeholders})"
        )

        conn = self._acquire()
        async with self._lock:
            try:
                cursor = await conn.execute(sql, tuple(record.values()))
                row_id = cursor.lastrowid
                await cursor.close()
            except sqlite3.Error as e:
                raise wrap_store_error(e, f"insert into {table}") from e
        return row_id

    async def table_exists(self, name: str) -> bool:
        """Check if a table exists."""
        row = await self.query_one(
            "SELECT name FROM sqlite_master WHERE type = 'table' AND name = ?",
            (name,),
        )
        return row is not None

    # ============ Transactions ============

    async def begin_transaction(self) -> Transaction:
        """Open a transaction.

        Waits while another task holds a transaction. Opening a second
        transaction from the task that already holds one raises
        TransactionError, since SQLite has no nested transactions.
        """
        self._acquire()
        current = asyncio.current_task()
        if self._transaction is not None and self._tx_owner is current:
            raise TransactionError(
                f"Transaction {self._transaction.tx_id} already open in this task"
            )

        await self._tx_lock.acquire()
        try:
            await self.execute("BEGIN")
        except BaseException:
            self._tx_lock.release()
            raise

        tx = Transaction(tx_id=f"txn_{uuid.uuid4().hex[:12]}")
        self._transaction = tx
        self._tx_owner = current
        self._log.debug("transaction_started", tx_id=tx.tx_id)
        return tx

    async def commit_transaction(self, tx: Transaction) -> None:
        """Commit a transaction.

        If COMMIT fails the transaction stays open, so the caller can still
        roll it back.
        """
        self._check_transaction(tx)
        await self.execute("COMMIT")
        self._finish_transaction()
        self._log.debug("transaction_committed", tx_id=tx.tx_id)

    async def rollback_transaction(self, tx: Transaction) -> None:
        """Roll back a transaction. The handle is released even on error."""
        self._check_transaction(tx)
        conn = self._acquire()
        try:
            # SQLite may already have rolled back on its own (e.g. SQLITE_FULL)
            if conn.in_transaction:
                await self.execute("ROLLBACK")
        finally:
            self._finish_transaction()
        self._log.debug("transaction_rolled_back", tx_id=tx.tx_id)

    def _check_transaction(self, tx: Transaction) -> None:
        if tx is None or tx.finished:
            raise TransactionError("Transaction handle is not active")
        if self._transaction is not tx:
            raise TransactionError(f"Unknown transaction: {tx.tx_id}")

    def _finish_transaction(self) -> None:
        if self._transaction is not None:
            self._transaction.finished = True
        self._transaction = None
        self._tx_owner = None
        if self._tx_lock.locked():
            self._tx_lock.release()

    # ============ Health Check ============

    async def _do_health_check(self) -> HealthCheckResult:
        try:
            await self.query_one("SELECT 1 AS ok")
        except Exception as e:
            return HealthCheckResult.unhealthy(f"Database error: {e}")
        return HealthCheckResult.healthy(
            "Database connected",
            db_path=self._db_path,
            in_transaction=self.in_transaction,
        )
