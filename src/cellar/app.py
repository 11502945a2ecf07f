"""
Cellar application assembly and lifecycle.

Builds the store, the store context and the migration engine from
configuration, and owns them from startup to shutdown:

Startup:
1. Discover migration units (fails before touching the store)
2. Open the store context
3. Apply pending migrations; any failure is fatal and closes the store

Shutdown:
1. Dispose the store context (closes the connection)
"""
from pathlib import Path
from typing import Optional

from cellar import __version__
from cellar.core.config import ConfigManager
from cellar.core.lifecycle import BaseComponent, HealthCheckResult, HealthStatus
from cellar.core.logging import get_logger
from cellar.migrations.engine import MigrationEngine, MigrationRun
from cellar.migrations.ledger import DEFAULT_LEDGER_TABLE
from cellar.migrations.registry import MigrationRegistry
from cellar.services.context import StoreContext
from cellar.store.base import Store
from cellar.store.sqlite import SqliteStore

DEFAULT_MIGRATIONS_DIR = "./migrations"


class CellarApp(BaseComponent):
    """Owns the persistence layer for one application process.

    Usage:
        app = CellarApp(ConfigManager(Path("config/default.toml")))
        await app.start()          # connects and migrates
        context = app.context      # hand this to data-access code
        ...
        await app.stop()
    """

    def __init__(
        self,
        config: Optional[ConfigManager] = None,
        store: Optional[Store] = None,
        registry: Optional[MigrationRegistry] = None,
        auto_migrate: bool = True,
    ) -> None:
        """Initialize the application.

        Args:
            config: Configuration manager (defaults to an empty one).
            store: Store adapter; defaults to a SqliteStore from config.
            registry: Migration units; defaults to discovery in the
                configured migrations directory.
            auto_migrate: Apply pending migrations during start().
        """
        super().__init__()
        self._config = config or ConfigManager()
        self._store = store or SqliteStore(config=self._config)
        self._context = StoreContext(self._store)
        self._registry = registry
        self._engine: Optional[MigrationEngine] = None
        self._auto_migrate = auto_migrate
        self._log = get_logger("app")

    @property
    def config(self) -> ConfigManager:
        return self._config

    @property
    def context(self) -> StoreContext:
        return self._context

    @property
    def migrations_dir(self) -> Path:
        return self._config.get_path("migrations.directory", DEFAULT_MIGRATIONS_DIR)

    @property
    def last_run(self) -> Optional[MigrationRun]:
        """Progress of the engine's latest migrate()/rollback(), if any ran."""
        return self._engine.last_run if self._engine is not None else None

    @property
    def engine(self) -> MigrationEngine:
        """The migration engine, built on first access."""
        if self._engine is None:
            if self._registry is None:
                self._registry = MigrationRegistry.from_directory(
                    self.migrations_dir,
                    strict_naming=self._config.get_bool("migrations.strict_naming", False),
                )
            self._engine = MigrationEngine(
                self._context,
                self._registry,
                table=self._config.get("migrations.table", DEFAULT_LEDGER_TABLE),
            )
        return self._engine

    async def _do_start(self) -> None:
        self._log.info("starting_cellar", version=__version__)

        engine = self.engine
        await self._context.open()

        if self._auto_migrate:
            try:
                applied = await engine.migrate()
            except Exception as e:
                self._log.error(
                    "startup_migrations_failed",
                    error=str(e),
                    error_type=type(e).__name__,
                    completed=engine.last_run.completed if engine.last_run else [],
                )
                await self._context.dispose()
                raise
            self._log.info("startup_migrations_done", applied=applied)

        self._log.info("cellar_started")

    async def _do_stop(self) -> None:
        await self._context.dispose()
        self._log.info("cellar_stopped")

    async def _do_health_check(self) -> HealthCheckResult:
        store_health = getattr(self._store, "health_check", None)
        if store_health is not None:
            result = await store_health()
            if result.status != HealthStatus.HEALTHY:
                return HealthCheckResult.degraded(
                    f"Store: {result.message}",
                    uptime_seconds=self.uptime_seconds,
                )

        report = await self.engine.verify()
        if not report.ok:
            return HealthCheckResult.degraded(
                "Ledger references unknown migrations",
                missing_units=report.missing_units,
            )

        return HealthCheckResult.healthy(uptime_seconds=self.uptime_seconds)
