"""
Unit tests for MigrationEngine.

Tests verify:
- Pending units are applied in lexical order as one batch
- Re-running with nothing pending is a no-op
- A failing unit leaves no trace and aborts the remaining units
- Rollback undoes the last batch in reverse order
- Status and ledger verification reports
"""
import pytest

from cellar.core.errors import DataIntegrityError, StoreError, StoreUnavailableError
from cellar.migrations.engine import (
    EngineState,
    MigrationAction,
    MigrationEngine,
    UnitStatus,
)
from cellar.migrations.registry import MigrationRegistry
from cellar.migrations.unit import MigrationUnit
from cellar.services.context import StoreContext

A = "20240101T000000_create_venues"
B = "20240102T000000_create_staff"
C = "20240103T000000_create_events"
D = "20240104T000000_create_notes"


def recording_unit(name, table, journal, fail_up=None, fail_down=None):
    """Unit that creates/drops ``table`` and appends to ``journal``."""

    async def up(store):
        await store.execute(f"CREATE TABLE {table} (id INTEGER PRIMARY KEY)")
        if fail_up is not None:
            raise fail_up
        journal.append(("up", name))

    async def down(store):
        await store.execute(f"DROP TABLE {table}")
        if fail_down is not None:
            raise fail_down
        journal.append(("down", name))

    return MigrationUnit(name=name, up=up, down=down)


@pytest.fixture
def journal():
    return []


@pytest.fixture
def abc_registry(journal):
    return MigrationRegistry(
        [
            recording_unit(C, "events", journal),
            recording_unit(A, "venues", journal),
            recording_unit(B, "staff", journal),
        ]
    )


class TestMigrate:
    """Tests for applying migrations."""

    @pytest.mark.asyncio
    async def test_empty_registry(self, context):
        engine = MigrationEngine(context, MigrationRegistry())

        assert await engine.migrate() == []
        assert await context.store.table_exists("migrations")
        assert engine.state == EngineState.IDLE

    @pytest.mark.asyncio
    async def test_applies_in_lexical_order(self, context, abc_registry, journal):
        engine = MigrationEngine(context, abc_registry)

        applied = await engine.migrate()

        assert applied == [A, B, C]
        assert journal == [("up", A), ("up", B), ("up", C)]
        assert await engine.ledger.list_applied() == [A, B, C]
        assert await engine.ledger.current_batch() == 1
        for table in ("venues", "staff", "events"):
            assert await context.store.table_exists(table)

        run = engine.last_run
        assert run.action == MigrationAction.MIGRATE
        assert run.batch == 1
        assert run.succeeded

    @pytest.mark.asyncio
    async def test_second_run_is_noop(self, context, abc_registry, journal):
        engine = MigrationEngine(context, abc_registry)
        await engine.migrate()
        journal.clear()

        assert await engine.migrate() == []
        assert journal == []
        assert await engine.ledger.current_batch() == 1

    @pytest.mark.asyncio
    async def test_new_units_get_next_batch(self, context, abc_registry, journal):
        await MigrationEngine(context, abc_registry).migrate()

        abc_registry.register(recording_unit(D, "notes", journal))
        engine = MigrationEngine(context, abc_registry)

        assert await engine.migrate() == [D]
        entries = {entry.name: entry.batch for entry in await engine.ledger.entries()}
        assert entries == {A: 1, B: 1, C: 1, D: 2}

    @pytest.mark.asyncio
    async def test_sync_procedures(self, context):
        calls = []
        unit = MigrationUnit(
            name=A,
            up=lambda store: calls.append("up"),
            down=lambda store: calls.append("down"),
        )
        engine = MigrationEngine(context, MigrationRegistry([unit]))

        assert await engine.migrate() == [A]
        assert await engine.rollback() == [A]
        assert calls == ["up", "down"]

    @pytest.mark.asyncio
    async def test_custom_ledger_table(self, context, abc_registry):
        engine = MigrationEngine(context, abc_registry, table="schema_history")

        await engine.migrate()

        assert await context.store.table_exists("schema_history")
        assert not await context.store.table_exists("migrations")


class TestMigrateFailure:
    """Tests for a unit failing mid-batch."""

    @pytest.mark.asyncio
    async def test_failing_unit_leaves_no_trace(self, context, journal):
        error = RuntimeError("bad migration")
        registry = MigrationRegistry([recording_unit(A, "venues", journal, fail_up=error)])
        engine = MigrationEngine(context, registry)

        with pytest.raises(RuntimeError) as exc_info:
            await engine.migrate()

        assert exc_info.value is error
        assert not await context.store.table_exists("venues")
        assert await engine.ledger.list_applied() == []
        assert not context.store.in_transaction
        assert engine.state == EngineState.IDLE

    @pytest.mark.asyncio
    async def test_partial_batch(self, context, journal):
        """Units before the failure stay applied; later ones are not run."""
        registry = MigrationRegistry(
            [
                recording_unit(A, "venues", journal),
                recording_unit(B, "staff", journal, fail_up=ValueError("broken")),
                recording_unit(C, "events", journal),
            ]
        )
        engine = MigrationEngine(context, registry)

        with pytest.raises(ValueError, match="broken"):
            await engine.migrate()

        run = engine.last_run
        assert run.completed == [A]
        assert run.failed_unit == B
        assert isinstance(run.error, ValueError)
        assert not run.succeeded
        assert journal == [("up", A)]
        assert await engine.ledger.list_applied() == [A]
        assert not await context.store.table_exists("staff")
        assert not await context.store.table_exists("events")

        status = {row.name: row.status for row in await engine.status()}
        assert status == {A: UnitStatus.APPLIED, B: UnitStatus.PENDING, C: UnitStatus.PENDING}

        fixed = MigrationRegistry(
            [
                recording_unit(A, "venues", journal),
                recording_unit(B, "staff", journal),
                recording_unit(C, "events", journal),
            ]
        )
        retry = MigrationEngine(context, fixed)
        assert await retry.migrate() == [B, C]
        assert retry.last_run.batch == 2

    @pytest.mark.asyncio
    async def test_store_error_inside_unit(self, context):
        async def up(store):
            await store.execute("CREATE TABLE venues (id INTEGER PRIMARY KEY)")
            await store.execute("INSERT INTO missing_table VALUES (1)")

        async def down(store):
            await store.execute("DROP TABLE venues")

        engine = MigrationEngine(
            context, MigrationRegistry([MigrationUnit(name=A, up=up, down=down)])
        )

        with pytest.raises(StoreError, match="no such table"):
            await engine.migrate()
        assert not await context.store.table_exists("venues")

    @pytest.mark.asyncio
    async def test_unavailable_context(self, store, abc_registry):
        context = StoreContext(store)
        engine = MigrationEngine(context, abc_registry)

        with pytest.raises(StoreUnavailableError):
            await engine.migrate()
        assert engine.last_run.error is not None


class TestRollback:
    """Tests for rolling back the last batch."""

    @pytest.mark.asyncio
    async def test_nothing_to_roll_back(self, context, abc_registry):
        engine = MigrationEngine(context, abc_registry)
        assert await engine.rollback() == []

    @pytest.mark.asyncio
    async def test_reverse_order(self, context, abc_registry, journal):
        engine = MigrationEngine(context, abc_registry)
        await engine.migrate()
        journal.clear()

        rolled_back = await engine.rollback()

        assert rolled_back == [C, B, A]
        assert journal == [("down", C), ("down", B), ("down", A)]
        assert await engine.ledger.list_applied() == []
        assert engine.last_run.action == MigrationAction.ROLLBACK
        for table in ("venues", "staff", "events"):
            assert not await context.store.table_exists(table)

    @pytest.mark.asyncio
    async def test_only_last_batch(self, context, abc_registry, journal):
        engine = MigrationEngine(context, abc_registry)
        await engine.migrate()
        abc_registry.register(recording_unit(D, "notes", journal))
        await engine.migrate()

        assert await engine.rollback() == [D]
        assert await engine.ledger.list_applied() == [A, B, C]
        assert await engine.ledger.current_batch() == 1

        assert await engine.rollback() == [C, B, A]
        assert await engine.ledger.current_batch() == 0

    @pytest.mark.asyncio
    async def test_migrate_rollback_restores_schema(self, context, abc_registry):
        store = context.store
        engine = MigrationEngine(context, abc_registry)
        await engine.ledger.ensure_table()
        before = await store.query(
            "SELECT name FROM sqlite_master WHERE type = 'table' ORDER BY name"
        )

        await engine.migrate()
        await engine.rollback()

        after = await store.query(
            "SELECT name FROM sqlite_master WHERE type = 'table' ORDER BY name"
        )
        assert after == before

    @pytest.mark.asyncio
    async def test_failing_down_keeps_unit_applied(self, context, journal):
        error = RuntimeError("cannot drop")
        registry = MigrationRegistry(
            [
                recording_unit(A, "venues", journal),
                recording_unit(B, "staff", journal, fail_down=error),
            ]
        )
        engine = MigrationEngine(context, registry)
        await engine.migrate()

        with pytest.raises(RuntimeError) as exc_info:
            await engine.rollback()

        assert exc_info.value is error
        assert engine.last_run.failed_unit == B
        assert engine.last_run.completed == []
        assert await engine.ledger.list_applied() == [A, B]
        assert await context.store.table_exists("staff")

    @pytest.mark.asyncio
    async def test_unknown_unit_in_batch(self, context, abc_registry, journal):
        await MigrationEngine(context, abc_registry).migrate()

        trimmed = MigrationRegistry(
            [recording_unit(A, "venues", journal), recording_unit(B, "staff", journal)]
        )
        engine = MigrationEngine(context, trimmed)
        journal.clear()

        with pytest.raises(DataIntegrityError) as exc_info:
            await engine.rollback()

        assert exc_info.value.missing_units == [C]
        assert journal == []
        assert await engine.ledger.list_applied() == [A, B, C]


class TestStatusAndVerify:
    """Tests for status() and verify()."""

    @pytest.mark.asyncio
    async def test_status(self, context, journal):
        registry = MigrationRegistry([recording_unit(A, "venues", journal)])
        await MigrationEngine(context, registry).migrate()
        registry.register(recording_unit(B, "staff", journal))
        engine = MigrationEngine(context, registry)

        report = await engine.status()

        assert [(row.name, row.status) for row in report] == [
            (A, UnitStatus.APPLIED),
            (B, UnitStatus.PENDING),
        ]
        assert report[0].batch == 1
        assert report[0].applied_at is not None
        assert report[1].batch is None
        assert report[1].to_dict() == {
            "name": B,
            "status": "Pending",
            "batch": None,
            "applied_at": None,
        }

    @pytest.mark.asyncio
    async def test_verify_clean(self, context, abc_registry):
        engine = MigrationEngine(context, abc_registry)
        await engine.migrate()

        report = await engine.verify(strict=True)

        assert report.ok
        assert report.missing_units == []
        assert report.out_of_order == []

    @pytest.mark.asyncio
    async def test_verify_missing_units(self, context, abc_registry, journal):
        await MigrationEngine(context, abc_registry).migrate()
        engine = MigrationEngine(
            context, MigrationRegistry([recording_unit(A, "venues", journal)])
        )

        report = await engine.verify()
        assert not report.ok
        assert report.missing_units == [B, C]

        with pytest.raises(DataIntegrityError):
            await engine.verify(strict=True)

    @pytest.mark.asyncio
    async def test_verify_out_of_order(self, context, journal):
        registry = MigrationRegistry(
            [recording_unit(A, "venues", journal), recording_unit(C, "events", journal)]
        )
        await MigrationEngine(context, registry).migrate()
        registry.register(recording_unit(B, "staff", journal))
        engine = MigrationEngine(context, registry)

        report = await engine.verify(strict=True)

        assert report.ok
        assert report.out_of_order == [B]

    @pytest.mark.asyncio
    async def test_migrate_tolerates_unknown_ledger_names(self, context, abc_registry, journal):
        await MigrationEngine(context, abc_registry).migrate()
        registry = MigrationRegistry(
            [recording_unit(A, "venues", journal), recording_unit(D, "notes", journal)]
        )

        assert await MigrationEngine(context, registry).migrate() == [D]
