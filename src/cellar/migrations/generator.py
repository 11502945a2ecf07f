"""Migration generator - writes new unit files."""

import re
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional, Union

import structlog

from cellar.core.errors import ConfigurationError
from cellar.migrations.unit import UNIT_NAME_PATTERN

log = structlog.get_logger()

TIMESTAMP_FORMAT = "%Y%m%dT%H%M%S"

MIGRATION_TEMPLATE = '''"""Migration: {title}

Created at: {created_at}
"""


async def up(store):
    """Apply this migration."""
    # await store.execute(
    #     "CREATE TABLE example (id INTEGER PRIMARY KEY, name TEXT NOT NULL)"
    # )
    pass


async def down(store):
    """Revert this migration."""
    # await store.execute("DROP TABLE IF EXISTS example")
    pass
'''

SAMPLE_MIGRATION = '''"""Migration: initial schema

Created at: {created_at}
"""

DESCRIPTION = "Create the settings table"

UP_SQL = """
CREATE TABLE settings (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    sound_enabled BOOLEAN NOT NULL DEFAULT 1,
    music_volume INTEGER NOT NULL DEFAULT 50,
    sfx_volume INTEGER NOT NULL DEFAULT 50,
    text_speed TEXT NOT NULL DEFAULT 'normal',
    autosave BOOLEAN NOT NULL DEFAULT 1,
    last_save_time TEXT
);

INSERT INTO settings (id) VALUES (1);
"""

DOWN_SQL = """
DROP TABLE IF EXISTS settings;
"""
'''


def slugify(name: str) -> str:
    """Lower-case ``name`` and replace anything outside [a-z0-9] with ``_``."""
    slug = re.sub(r"[^a-z0-9]", "_", name.strip().lower())
    if not slug.strip("_"):
        raise ConfigurationError(f"Migration name {name!r} has no letters or digits")
    return slug


def migration_filename(name: str, now: Optional[datetime] = None) -> str:
    """``<YYYYMMDDTHHMMSS>_<slug>.py`` for the given time (UTC by default)."""
    moment = now or datetime.now(timezone.utc)
    return f"{moment.strftime(TIMESTAMP_FORMAT)}_{slugify(name)}.py"


def _latest_prefix(directory: Path) -> Optional[str]:
    """Highest timestamp prefix among unit files already in ``directory``."""
    if not directory.is_dir():
        return None
    prefixes = [
        match.group(1)
        for match in (UNIT_NAME_PATTERN.match(entry.stem) for entry in directory.glob("*.py"))
        if match is not None
    ]
    return max(prefixes, default=None)


def next_timestamp(directory: Union[str, Path], now: Optional[datetime] = None) -> datetime:
    """Creation time for a new unit, strictly after every existing prefix.

    Units created within the same second get consecutive prefixes, so
    lexical order stays creation order and no two units share a prefix.
    """
    moment = (now or datetime.now(timezone.utc)).replace(microsecond=0)
    latest = _latest_prefix(Path(directory))
    if latest is not None and moment.strftime(TIMESTAMP_FORMAT) <= latest:
        previous = datetime.strptime(latest, TIMESTAMP_FORMAT).replace(tzinfo=moment.tzinfo)
        moment = previous + timedelta(seconds=1)
    return moment


def _write_new(path: Path, content: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    try:
        with open(path, "x", encoding="utf-8") as f:
            f.write(content)
    except FileExistsError as e:
        raise ConfigurationError(f"Migration file already exists: {path}", cause=e) from e
    except OSError as e:
        raise ConfigurationError(f"Cannot write migration file {path}", cause=e) from e
    log.info("migration_created", path=str(path))
    return path


def make_migration(
    directory: Union[str, Path],
    name: str,
    now: Optional[datetime] = None,
) -> Path:
    """Create an empty unit with ``up``/``down`` stubs.

    Args:
        directory: Migrations directory (created if missing).
        name: Free-form name, turned into the slug.
        now: Creation time; defaults to the current UTC time.

    Returns:
        Path of the new file.
    """
    moment = next_timestamp(directory, now)
    path = Path(directory) / migration_filename(name, moment)
    title = name.strip().replace('"', "'").replace("\\", "/")
    content = MIGRATION_TEMPLATE.format(title=title, created_at=moment.isoformat())
    return _write_new(path, content)


def create_sample_migration(
    directory: Union[str, Path],
    now: Optional[datetime] = None,
) -> Path:
    """Create an initial unit that sets up a ``settings`` table."""
    moment = next_timestamp(directory, now)
    path = Path(directory) / migration_filename("initial schema", moment)
    return _write_new(path, SAMPLE_MIGRATION.format(created_at=moment.isoformat()))
