"""Store adapter interface.

The migration engine and the resilience executors depend on this surface
only. Anything that can execute statements, run queries and sequence a
transaction can back them.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional, Protocol, Sequence, runtime_checkable

Params = Optional[Sequence[Any]]
Row = dict[str, Any]


@dataclass
class Transaction:
    """Handle for an open store transaction."""

    tx_id: str
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished: bool = False


@runtime_checkable
class Store(Protocol):
    """Narrow persistence interface consumed by the core."""

    @property
    def is_connected(self) -> bool:
        ...

    async def connect(self) -> None:
        ...

    async def close(self) -> None:
        ...

    async def execute(self, sql: str, params: Params = None) -> int:
        """Run a statement; returns the number of rows changed."""
        ...

    async def query(self, sql: str, params: Params = None) -> list[Row]:
        """Run a query; returns all rows as dictionaries."""
        ...

    async def query_one(self, sql: str, params: Params = None) -> Optional[Row]:
        """Run a query; returns the first row or None."""
        ...

    async def insert(self, table: str, record: dict[str, Any]) -> int:
        """Insert one record; returns the new row id."""
        ...

    async def table_exists(self, name: str) -> bool:
        ...

    async def begin_transaction(self) -> Transaction:
        ...

    async def commit_transaction(self, tx: Transaction) -> None:
        ...

    async def rollback_transaction(self, tx: Transaction) -> None:
        ...
