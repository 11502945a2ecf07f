"""Cellar - Entry Point

Usage:
    python -m cellar [--config PATH] [--db PATH] [--migrations-dir DIR] COMMAND

Commands:
    migrate      - Apply all pending migrations
    rollback     - Roll back the last batch of migrations
    status       - Show Applied/Pending state of every migration
    verify       - Check the ledger against the migration files
    make NAME    - Create a new migration file
    init         - Create a sample initial migration
    version      - Show version

Examples:
    python -m cellar migrate
    python -m cellar --config config/default.toml status
    python -m cellar make "add staff table"
"""

import argparse
import asyncio
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from cellar import __version__
from cellar.migrations.engine import MigrationAction, MigrationRun

if TYPE_CHECKING:
    from cellar.core.config import ConfigManager


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        prog="cellar",
        description="Schema migrations for the application database",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"Cellar {__version__}",
    )

    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to configuration file (TOML)",
    )

    parser.add_argument(
        "--db",
        default=None,
        help="Path to the SQLite database (overrides database.path)",
    )

    parser.add_argument(
        "--migrations-dir",
        default=None,
        help="Directory holding migration files (overrides migrations.directory)",
    )

    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Log level",
    )

    parser.add_argument(
        "--log-json",
        action="store_true",
        default=None,
        help="Emit JSON logs",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    subparsers.add_parser("migrate", help="Apply all pending migrations")
    subparsers.add_parser("rollback", help="Roll back the last batch of migrations")
    subparsers.add_parser("status", help="Show migration status")

    verify_parser = subparsers.add_parser(
        "verify", help="Check the ledger against the migration files"
    )
    verify_parser.add_argument(
        "--strict",
        action="store_true",
        help="Exit non-zero if the ledger references unknown migrations",
    )

    make_parser = subparsers.add_parser("make", help="Create a new migration file")
    make_parser.add_argument("name", help="Migration name, e.g. 'add staff table'")

    subparsers.add_parser("init", help="Create a sample initial migration")
    subparsers.add_parser("version", help="Show version")

    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
    return args


def find_config_file(specified: Optional[Path]) -> Optional[Path]:
    """Find configuration file."""
    if specified and specified.exists():
        return specified

    search_paths = [
        Path("config/default.toml"),
        Path("cellar.toml"),
    ]

    for path in search_paths:
        if path.exists():
            return path

    return None


def load_config(args: argparse.Namespace) -> "ConfigManager":
    """Build configuration from file plus command-line overrides."""
    from cellar.core.config import ConfigManager

    config_path = find_config_file(args.config)
    config = ConfigManager(config_path)

    if args.db is not None:
        config.set("database.path", args.db)
    if args.migrations_dir is not None:
        config.set("migrations.directory", args.migrations_dir)
    if args.log_level is not None:
        config.set("cellar.log_level", args.log_level)
    if args.log_json is not None:
        config.set("cellar.log_json", args.log_json)

    return config


def format_status_table(rows: list[dict]) -> str:
    """Render status rows as a fixed-width table."""
    headers = ["name", "status", "batch", "applied_at"]
    cells = [
        [str(row[h]) if row[h] is not None else "-" for h in headers]
        for row in rows
    ]
    widths = [
        max([len(h)] + [len(line[i]) for line in cells])
        for i, h in enumerate(headers)
    ]

    def fmt(values: list[str]) -> str:
        return "  ".join(v.ljust(w) for v, w in zip(values, widths)).rstrip()

    lines = [fmt(headers), fmt(["-" * w for w in widths])]
    lines.extend(fmt(line) for line in cells)
    return "\n".join(lines)


def report_partial_run(run: Optional[MigrationRun]) -> None:
    """Print what a failed migrate/rollback managed to do before stopping."""
    if run is None or run.succeeded:
        return
    verb = "Applied" if run.action == MigrationAction.MIGRATE else "Rolled back"
    for name in run.completed:
        print(f"{verb}: {name}")
    if run.failed_unit is not None:
        print(f"Failed: {run.failed_unit}")


async def run_engine_command(args: argparse.Namespace, config: "ConfigManager") -> int:
    """Run a command that needs the database."""
    from cellar.app import CellarApp
    from cellar.core.logging import get_logger

    log = get_logger("cli")
    app = CellarApp(config, auto_migrate=False)

    try:
        await app.start()
        engine = app.engine

        if args.command == "migrate":
            applied = await engine.migrate()
            if not applied:
                print("No pending migrations.")
            for name in applied:
                print(f"Applied: {name}")

        elif args.command == "rollback":
            rolled_back = await engine.rollback()
            if not rolled_back:
                print("No migrations to roll back.")
            for name in rolled_back:
                print(f"Rolled back: {name}")

        elif args.command == "status":
            report = await engine.status()
            if not report:
                print("No migrations found.")
            else:
                print(format_status_table([entry.to_dict() for entry in report]))

        elif args.command == "verify":
            integrity = await engine.verify(strict=args.strict)
            for name in integrity.missing_units:
                print(f"Unknown migration in ledger: {name}")
            for name in integrity.out_of_order:
                print(f"Pending migration older than applied ones: {name}")
            if integrity.ok and not integrity.out_of_order:
                print("Ledger is consistent with migration files.")

        return 0

    except Exception as e:
        report_partial_run(app.last_run)
        log.error("fatal_error", command=args.command, error=str(e), error_type=type(e).__name__)
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        await app.stop()


def run_generator_command(args: argparse.Namespace, config: "ConfigManager") -> int:
    """Run a command that only writes files."""
    from cellar.app import DEFAULT_MIGRATIONS_DIR
    from cellar.core.errors import ConfigurationError
    from cellar.migrations.generator import create_sample_migration, make_migration

    directory = config.get_path("migrations.directory", DEFAULT_MIGRATIONS_DIR)
    try:
        if args.command == "make":
            path = make_migration(directory, args.name)
        else:
            path = create_sample_migration(directory)
    except ConfigurationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(f"Migration created at: {path}")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point."""
    from cellar.core.logging import setup_logging

    args = parse_args(argv)

    if args.command is None:
        return 1

    if args.command == "version":
        print(f"Cellar {__version__}")
        return 0

    config = load_config(args)
    setup_logging(
        level=config.get("cellar.log_level", "WARNING"),
        json_output=config.get_bool("cellar.log_json", False),
    )

    if args.command in ("make", "init"):
        return run_generator_command(args, config)

    return asyncio.run(run_engine_command(args, config))


if __name__ == "__main__":
    sys.exit(main())
