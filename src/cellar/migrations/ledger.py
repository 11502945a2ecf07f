"""Migration ledger - durable record of applied units and their batches."""

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

import structlog

from cellar.core.errors import ConfigurationError
from cellar.store.base import Row, Store

log = structlog.get_logger()

DEFAULT_LEDGER_TABLE = "migrations"

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


@dataclass(frozen=True)
class LedgerEntry:
    """One applied unit."""

    id: int
    name: str
    batch: int
    applied_at: Optional[datetime]


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value))
    # CURRENT_TIMESTAMP is UTC without an offset
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class MigrationLedger:
    """Reads and writes the ledger table.

    record() and erase() do not open transactions of their own; the engine
    calls them inside the transaction that runs the unit's procedure, so a
    unit is never applied without being recorded or recorded without being
    applied.
    """

    def __init__(self, store: Store, table: str = DEFAULT_LEDGER_TABLE) -> None:
        if not isinstance(table, str) or not _IDENTIFIER.match(table):
            raise ConfigurationError(f"Invalid ledger table name: {table!r}")
        self._store = store
        self._table = table
        self._log = log.bind(component="migration_ledger", table=table)

    @property
    def table(self) -> str:
        return self._table

    async def ensure_table(self) -> bool:
        """Create the ledger table if missing, and its unique index on name.

        The index is checked on every call so that a ledger table created
        elsewhere also rejects duplicate names.

        Returns:
            True if the table was created by this call.
        """
        created = not await self._store.table_exists(self._table)
        if created:
            await self._store.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {self._table} (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL,
                    batch INTEGER NOT NULL,
                    applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            self._log.info("ledger_table_created")

        await self._store.execute(
            f"CREATE UNIQUE INDEX IF NOT EXISTS idx_{self._table}_name "
            f"ON {self._table}(name)"
        )
        return created

    async def list_applied(self) -> list[str]:
        """Applied unit names in insertion order."""
        rows = await self._store.query(f"SELECT name FROM {self._table} ORDER BY id")
        return [row["name"] for row in rows]

    async def entries(self) -> list[LedgerEntry]:
        """All ledger rows in insertion order."""
        rows = await self._store.query(
            f"SELECT id, name, batch, applied_at FROM {self._table} ORDER BY id"
        )
        return [self._row_to_entry(row) for row in rows]

    async def current_batch(self) -> int:
        """Highest batch number, or 0 when nothing is applied."""
        row = await self._store.query_one(
            f"SELECT MAX(batch) AS batch FROM {self._table}"
        )
        if row is None or row["batch"] is None:
            return 0
        return int(row["batch"])

    async def entries_for_batch(self, batch: int) -> list[LedgerEntry]:
        """Rows of one batch, most recently applied first."""
        rows = await self._store.query(
            f"SELECT id, name, batch, applied_at FROM {self._table} "
            f"WHERE batch = ? ORDER BY id DESC",
            (batch,),
        )
        return [self._row_to_entry(row) for row in rows]

    async def record(self, name: str, batch: int) -> int:
        """Insert a row for an applied unit; returns its id."""
        entry_id = await self._store.insert(self._table, {"name": name, "batch": batch})
        self._log.debug("ledger_recorded", unit=name, batch=batch, entry_id=entry_id)
        return entry_id

    async def erase(self, name: str) -> bool:
        """Delete the row for a rolled-back unit."""
        changes = await self._store.execute(
            f"DELETE FROM {self._table} WHERE name = ?", (name,)
        )
        self._log.debug("ledger_erased", unit=name, removed=changes)
        return changes > 0

    def _row_to_entry(self, row: Row) -> LedgerEntry:
        return LedgerEntry(
            id=int(row["id"]),
            name=row["name"],
            batch=int(row["batch"]),
            applied_at=_parse_timestamp(row["applied_at"]),
        )
