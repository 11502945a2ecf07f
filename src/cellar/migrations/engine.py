"""Migration engine - applies pending units and rolls back the last batch.

Each unit runs in its own transaction together with its ledger update:

    BEGIN -> unit.up(store) -> ledger.record(name, batch) -> COMMIT

The first failing unit is rolled back and aborts the call. Units committed
earlier in the same call stay applied; atomicity is per unit, not per batch.
The failing unit's exception propagates unchanged, and the progress of the
call is kept on ``engine.last_run``.

The engine assumes a single writer. Two processes migrating the same store
at once can both read the same current batch; run migrations from one place
(application startup or the CLI).
"""

import inspect
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

import structlog

from cellar.core.errors import ConfigurationError, DataIntegrityError, StoreUnavailableError
from cellar.migrations.ledger import DEFAULT_LEDGER_TABLE, MigrationLedger
from cellar.migrations.registry import MigrationRegistry
from cellar.migrations.unit import MigrationUnit
from cellar.services.context import StoreContext
from cellar.services.resilience import execute_in_transaction, is_available
from cellar.store.base import Transaction

log = structlog.get_logger()


class EngineState(str, Enum):
    """Where the engine is within a call."""

    IDLE = "idle"
    TABLE_ENSURED = "table_ensured"
    APPLYING = "applying"
    ROLLING_BACK = "rolling_back"


class MigrationAction(str, Enum):
    MIGRATE = "migrate"
    ROLLBACK = "rollback"


class UnitStatus(str, Enum):
    APPLIED = "Applied"
    PENDING = "Pending"


@dataclass
class MigrationRun:
    """Progress of one migrate() or rollback() call."""

    action: MigrationAction
    batch: Optional[int] = None
    planned: list[str] = field(default_factory=list)
    completed: list[str] = field(default_factory=list)
    failed_unit: Optional[str] = None
    error: Optional[BaseException] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class MigrationStatus:
    """One line of the status report."""

    name: str
    status: UnitStatus
    batch: Optional[int] = None
    applied_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "batch": self.batch,
            "applied_at": self.applied_at.isoformat() if self.applied_at else None,
        }


@dataclass(frozen=True)
class IntegrityReport:
    """Result of comparing the ledger against the registry.

    Attributes:
        missing_units: Applied per the ledger but unknown to the registry.
        out_of_order: Pending units that sort before the last applied unit,
            i.e. authored with an older timestamp than something already run.
    """

    missing_units: list[str] = field(default_factory=list)
    out_of_order: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.missing_units


class MigrationEngine:
    """Orchestrates registry, ledger and transactional execution.

    Usage:
        engine = MigrationEngine(context, MigrationRegistry.from_directory(path))
        applied = await engine.migrate()
        rolled_back = await engine.rollback()
        report = await engine.status()
    """

    def __init__(
        self,
        context: StoreContext,
        registry: MigrationRegistry,
        ledger: Optional[MigrationLedger] = None,
        table: str = DEFAULT_LEDGER_TABLE,
    ) -> None:
        self._context = context
        self._registry = registry
        self._ledger = ledger or MigrationLedger(context.store, table=table)  # type: ignore[arg-type]
        self._state = EngineState.IDLE
        self._last_run: Optional[MigrationRun] = None
        self._log = log.bind(component="migration_engine")

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def last_run(self) -> Optional[MigrationRun]:
        """Progress of the latest migrate()/rollback(), including failed ones."""
        return self._last_run

    @property
    def registry(self) -> MigrationRegistry:
        return self._registry

    @property
    def ledger(self) -> MigrationLedger:
        return self._ledger

    async def _ensure_table(self) -> None:
        if not is_available(self._context):
            raise StoreUnavailableError("Store context unavailable; cannot run migrations")
        await self._ledger.ensure_table()
        self._state = EngineState.TABLE_ENSURED

    # ============ Apply ============

    async def migrate(self) -> list[str]:
        """Apply every pending unit in a new batch.

        Returns:
            Names applied by this call, in order. Empty when nothing is
            pending.

        Raises:
            ConfigurationError: A pending unit lacks an up() procedure.
            Exception: Whatever the failing unit or the store raised, after
                that unit's transaction was rolled back.
        """
        run = MigrationRun(action=MigrationAction.MIGRATE)
        self._last_run = run

        try:
            await self._ensure_table()

            applied = await self._ledger.list_applied()
            self._warn_unknown(applied)

            applied_names = set(applied)
            pending = [
                name for name in self._registry.list_available()
                if name not in applied_names
            ]
            run.planned = pending

            if not pending:
                self._log.info("no_pending_migrations")
                return []

            units = [self._registry.get(name) for name in pending]
            for unit in units:
                self._check_procedure(unit, "up")

            run.batch = await self._ledger.current_batch() + 1
            self._state = EngineState.APPLYING
            self._log.info("applying_migrations", count=len(units), batch=run.batch)

            for unit in units:
                await self._run_unit(unit, run)

            self._log.info(
                "migrations_applied",
                count=len(run.completed),
                batch=run.batch,
            )
            return list(run.completed)
        except Exception as e:
            if run.error is None:
                run.error = e
            raise
        finally:
            self._state = EngineState.IDLE

    # ============ Rollback ============

    async def rollback(self) -> list[str]:
        """Undo the most recent batch, last-applied unit first.

        Returns:
            Names rolled back by this call, in the order they were undone.

        Raises:
            DataIntegrityError: The batch references a unit the registry
                does not know.
            ConfigurationError: A unit in the batch lacks a down() procedure.
            Exception: Whatever the failing unit or the store raised, after
                that unit's transaction was rolled back.
        """
        run = MigrationRun(action=MigrationAction.ROLLBACK)
        self._last_run = run

        try:
            await self._ensure_table()

            last_batch = await self._ledger.current_batch()
            if last_batch == 0:
                self._log.info("nothing_to_roll_back")
                return []

            run.batch = last_batch
            entries = await self._ledger.entries_for_batch(last_batch)
            run.planned = [entry.name for entry in entries]

            missing = [name for name in run.planned if name not in self._registry]
            if missing:
                raise DataIntegrityError(
                    f"Batch {last_batch} references unknown migrations: "
                    f"{', '.join(missing)}",
                    missing_units=missing,
                )

            units = [self._registry.get(name) for name in run.planned]
            for unit in units:
                self._check_procedure(unit, "down")

            self._state = EngineState.ROLLING_BACK
            self._log.info("rolling_back_migrations", count=len(units), batch=last_batch)

            for unit in units:
                await self._run_unit(unit, run)

            self._log.info(
                "migrations_rolled_back",
                count=len(run.completed),
                batch=last_batch,
            )
            return list(run.completed)
        except Exception as e:
            if run.error is None:
                run.error = e
            raise
        finally:
            self._state = EngineState.IDLE

    # ============ Status ============

    async def status(self) -> list[MigrationStatus]:
        """Applied/Pending state of every known unit, in registry order."""
        try:
            await self._ensure_table()
            entries = {entry.name: entry for entry in await self._ledger.entries()}
        finally:
            self._state = EngineState.IDLE

        report = []
        for name in self._registry.list_available():
            entry = entries.get(name)
            if entry is None:
                report.append(MigrationStatus(name=name, status=UnitStatus.PENDING))
            else:
                report.append(
                    MigrationStatus(
                        name=name,
                        status=UnitStatus.APPLIED,
                        batch=entry.batch,
                        applied_at=entry.applied_at,
                    )
                )
        return report

    async def verify(self, strict: bool = False) -> IntegrityReport:
        """Compare the ledger with the registry.

        Args:
            strict: Raise DataIntegrityError instead of returning a report
                with missing units.
        """
        try:
            await self._ensure_table()
            applied = await self._ledger.list_applied()
        finally:
            self._state = EngineState.IDLE

        missing = [name for name in applied if name not in self._registry]
        known_applied = [name for name in applied if name in self._registry]
        out_of_order: list[str] = []
        if known_applied:
            latest = max(known_applied)
            applied_names = set(applied)
            out_of_order = [
                name for name in self._registry.list_available()
                if name not in applied_names and name < latest
            ]

        report = IntegrityReport(missing_units=missing, out_of_order=out_of_order)
        if out_of_order:
            self._log.warning("migrations_out_of_order", units=out_of_order)
        if missing:
            self._log.warning("ledger_references_unknown_units", units=missing)
            if strict:
                raise DataIntegrityError(
                    f"Ledger references unknown migrations: {', '.join(missing)}",
                    missing_units=missing,
                )
        return report

    # ============ Internals ============

    def _warn_unknown(self, applied: list[str]) -> None:
        missing = [name for name in applied if name not in self._registry]
        if missing:
            self._log.warning("ledger_references_unknown_units", units=missing)

    def _check_procedure(self, unit: MigrationUnit, phase: str) -> None:
        if not callable(getattr(unit, phase, None)):
            raise ConfigurationError(
                f"Migration {unit.name} does not have a {phase}() procedure"
            )

    async def _run_unit(self, unit: MigrationUnit, run: MigrationRun) -> None:
        """Run one unit and its ledger update in a single transaction."""
        store = self._context.store
        forward = run.action == MigrationAction.MIGRATE
        phase = "apply" if forward else "rollback"
        batch = run.batch or 0

        async def body(tx: Transaction) -> None:
            procedure = unit.up if forward else unit.down
            result = procedure(store)
            if inspect.isawaitable(result):
                await result
            if forward:
                await self._ledger.record(unit.name, batch)
            else:
                await self._ledger.erase(unit.name)

        self._log.info("migration_started", unit=unit.name, phase=phase, batch=batch)
        outcome = await execute_in_transaction(self._context, body, label=unit.name)

        if not outcome.succeeded:
            run.failed_unit = unit.name
            run.error = outcome.error
            self._log.error(
                "migration_failed",
                unit=unit.name,
                phase=phase,
                batch=batch,
                completed=list(run.completed),
                error=str(outcome.error),
                error_type=type(outcome.error).__name__,
            )
            outcome.unwrap()

        run.completed.append(unit.name)
        self._log.info("migration_completed", unit=unit.name, phase=phase, batch=batch)
