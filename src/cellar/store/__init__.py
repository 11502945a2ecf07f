"""Store adapters - the narrow persistence surface the core consumes."""

from cellar.store.base import Params, Row, Store, Transaction
from cellar.store.sqlite import SqliteStore

__all__ = [
    "Params",
    "Row",
    "Store",
    "Transaction",
    "SqliteStore",
]
