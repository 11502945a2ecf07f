"""Migration units - validated, immutable schema-change steps.

A unit on disk is a Python module named ``<YYYYMMDDTHHMMSS>_<slug>.py``
that provides either two async procedures::

    async def up(store):
        await store.execute("CREATE TABLE venues (id INTEGER PRIMARY KEY)")

    async def down(store):
        await store.execute("DROP TABLE venues")

or two SQL strings, run one statement at a time::

    DESCRIPTION = "Add venues"
    UP_SQL = "CREATE TABLE venues (id INTEGER PRIMARY KEY);"
    DOWN_SQL = "DROP TABLE venues;"

Module files are checked when they are loaded, so a unit missing a
procedure is rejected before the engine opens any transaction.
"""

import importlib.util
import re
import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

from cellar.core.errors import ConfigurationError

Procedure = Callable[[Any], Awaitable[None]]

# 20240315T093000_add_staff_table
UNIT_NAME_PATTERN = re.compile(r"^(\d{8}T\d{6})_[a-z0-9_]+$")

_LINE_COMMENT = re.compile(r"--[^\n]*")
_BLOCK_COMMENT = re.compile(r"/\*.*?\*/", re.DOTALL)


@dataclass(frozen=True)
class MigrationUnit:
    """A named, reversible schema-change step.

    Attributes:
        name: Unique identity; lexical order of names is apply order.
        up: Forward procedure taking the store.
        down: Backward procedure taking the store.
        description: Human-readable summary.
        source: File the unit was loaded from, if any.
    """

    name: str
    up: Procedure
    down: Procedure
    description: str = ""
    source: Optional[Path] = None

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not self.name.strip():
            raise ConfigurationError("Migration unit needs a non-empty name")
        for phase in ("up", "down"):
            if not callable(getattr(self, phase)):
                raise ConfigurationError(
                    f"Migration {self.name} does not have a {phase}() procedure"
                )


def _has_sql(statement: str) -> bool:
    stripped = _LINE_COMMENT.sub("", _BLOCK_COMMENT.sub("", statement))
    return bool(stripped.strip().strip(";").strip())


def split_statements(sql: str) -> list[str]:
    """Split a SQL script into single statements.

    Uses sqlite3.complete_statement() so semicolons inside string literals
    and trigger bodies do not split a statement. Comment-only fragments are
    dropped.
    """
    statements: list[str] = []
    buffer = ""
    parts = sql.split(";")

    for index, part in enumerate(parts):
        buffer += part
        if index == len(parts) - 1:
            break
        buffer += ";"
        if sqlite3.complete_statement(buffer):
            if _has_sql(buffer):
                statements.append(buffer.strip())
            buffer = ""

    if _has_sql(buffer):
        statements.append(buffer.strip())

    return statements


def sql_procedure(sql: str) -> Procedure:
    """Build a procedure that runs each statement of ``sql`` in order.

    Statements go through store.execute() one by one, so they join the
    transaction the engine opened instead of committing it the way
    executescript() would.
    """
    statements = split_statements(sql)

    async def procedure(store: Any) -> None:
        for statement in statements:
            await store.execute(statement)

    return procedure


def load_unit_from_file(path: Path) -> MigrationUnit:
    """Import a unit module and wrap it in a MigrationUnit.

    Raises:
        ConfigurationError: If the module cannot be imported or lacks
            a forward or backward procedure.
    """
    path = Path(path)
    spec = importlib.util.spec_from_file_location(f"cellar_migration_{path.stem}", path)
    if spec is None or spec.loader is None:
        raise ConfigurationError(f"Cannot load migration file {path}")

    module = importlib.util.module_from_spec(spec)
    try:
        spec.loader.exec_module(module)
    except Exception as e:
        raise ConfigurationError(f"Failed to import migration {path.name}", cause=e) from e

    up = getattr(module, "up", None)
    if up is None and isinstance(getattr(module, "UP_SQL", None), str):
        up = sql_procedure(module.UP_SQL)

    down = getattr(module, "down", None)
    if down is None and isinstance(getattr(module, "DOWN_SQL", None), str):
        down = sql_procedure(module.DOWN_SQL)

    description = getattr(module, "DESCRIPTION", "")
    if not description and module.__doc__:
        description = module.__doc__.strip().splitlines()[0]

    return MigrationUnit(
        name=path.stem,
        up=up,  # type: ignore[arg-type]
        down=down,  # type: ignore[arg-type]
        description=description,
        source=path,
    )
