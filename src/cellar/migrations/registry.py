"""Migration registry - the set of known units, in apply order."""

from pathlib import Path
from typing import Iterable, Iterator, Union

import structlog

from cellar.core.errors import ConfigurationError
from cellar.migrations.unit import UNIT_NAME_PATTERN, MigrationUnit, load_unit_from_file

log = structlog.get_logger()


class MigrationRegistry:
    """Enumerates migration units in lexical name order.

    Precondition: lexical order of unit names is authoring order. There is
    no dependency graph between units, so the ``YYYYMMDDTHHMMSS_slug``
    naming produced by the generator is what keeps ordering correct. With
    ``strict_naming`` every name must follow that pattern and no two units
    may share a timestamp; duplicate names are always rejected.
    """

    def __init__(
        self,
        units: Iterable[MigrationUnit] = (),
        strict_naming: bool = False,
    ) -> None:
        self._units: dict[str, MigrationUnit] = {}
        self._strict_naming = strict_naming
        for unit in units:
            self.register(unit)

    @classmethod
    def from_directory(
        cls,
        directory: Union[str, Path],
        strict_naming: bool = False,
    ) -> "MigrationRegistry":
        """Discover ``*.py`` unit files in a directory.

        Files whose name starts with ``_`` (``__init__.py``, helpers) are
        skipped.

        Raises:
            ConfigurationError: If the directory cannot be read or a unit
                fails to load.
        """
        path = Path(directory)
        try:
            files = sorted(
                entry
                for entry in path.iterdir()
                if entry.is_file()
                and entry.suffix == ".py"
                and not entry.name.startswith("_")
            )
        except OSError as e:
            raise ConfigurationError(
                f"Cannot read migrations directory {path}", cause=e
            ) from e

        registry = cls((load_unit_from_file(f) for f in files), strict_naming=strict_naming)
        log.debug("migrations_discovered", directory=str(path), count=len(registry))
        return registry

    def register(self, unit: MigrationUnit) -> None:
        """Add a unit.

        Raises:
            ConfigurationError: On a non-unit, a duplicate name, or (with
                strict naming) a malformed or colliding timestamp prefix.
        """
        if not isinstance(unit, MigrationUnit):
            raise ConfigurationError(f"Not a MigrationUnit: {unit!r}")
        if unit.name in self._units:
            raise ConfigurationError(f"Duplicate migration name: {unit.name}")

        if self._strict_naming:
            match = UNIT_NAME_PATTERN.match(unit.name)
            if match is None:
                raise ConfigurationError(
                    f"Migration name {unit.name!r} does not match YYYYMMDDTHHMMSS_slug"
                )
            prefix = match.group(1)
            for existing in self._units:
                if existing.startswith(prefix + "_"):
                    raise ConfigurationError(
                        f"Migrations {existing} and {unit.name} share timestamp {prefix}"
                    )

        self._units[unit.name] = unit

    def list_available(self) -> list[str]:
        """Unit names sorted lexically."""
        return sorted(self._units)

    def get(self, name: str) -> MigrationUnit:
        try:
            return self._units[name]
        except KeyError:
            raise ConfigurationError(f"Unknown migration: {name}") from None

    def __contains__(self, name: object) -> bool:
        return name in self._units

    def __len__(self) -> int:
        return len(self._units)

    def __iter__(self) -> Iterator[MigrationUnit]:
        return (self._units[name] for name in self.list_available())
