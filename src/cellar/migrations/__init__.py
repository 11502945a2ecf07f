"""Schema migrations - units, registry, ledger, engine and generator.

Units are applied in lexical name order, one transaction per unit, and
recorded in a ledger table together with the batch they were applied in.
"""

from cellar.migrations.engine import (
    EngineState,
    IntegrityReport,
    MigrationAction,
    MigrationEngine,
    MigrationRun,
    MigrationStatus,
    UnitStatus,
)
from cellar.migrations.generator import create_sample_migration, make_migration
from cellar.migrations.ledger import DEFAULT_LEDGER_TABLE, LedgerEntry, MigrationLedger
from cellar.migrations.registry import MigrationRegistry
from cellar.migrations.unit import MigrationUnit, load_unit_from_file, split_statements

__all__ = [
    "EngineState",
    "IntegrityReport",
    "MigrationAction",
    "MigrationEngine",
    "MigrationRun",
    "MigrationStatus",
    "UnitStatus",
    "create_sample_migration",
    "make_migration",
    "DEFAULT_LEDGER_TABLE",
    "LedgerEntry",
    "MigrationLedger",
    "MigrationRegistry",
    "MigrationUnit",
    "load_unit_from_file",
    "split_statements",
]
