"""
Schema migrations for the state database.

Every module in this package whose name starts with a three-digit version
(`002_retry_exhaustion`) is one step. A step module exposes VERSION, NAME,
upgrade(conn) and optionally downgrade(conn); VERSION must match the file
prefix.

Applied steps are recorded in the `migrations` table, so a database that
missed a step (for instance one created by an older build) gets it on the
next start regardless of its highest version.
"""

import importlib
import logging
import pkgutil
import re
import sqlite3
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from enum import Enum

from ledger_intake.errors import PersistenceError
from ledger_intake.state_store.sqlite_store import utc_now

logger = logging.getLogger(__name__)

MIGRATIONS_PACKAGE = "ledger_intake.state_store.migrations"
STEP_MODULE = re.compile(r"^(\d{3})_\w+$")


class Direction(str, Enum):
    UP = "up"
    DOWN = "down"


@dataclass(frozen=True)
class Migration:
    """One versioned schema step."""

    version: int
    name: str
    upgrade: Callable[[sqlite3.Connection], None]
    downgrade: Callable[[sqlite3.Connection], None] | None = None

    @property
    def label(self) -> str:
        return f"{self.version:03d}_{self.name}"


def _step_modules() -> Iterator[tuple[int, str]]:
    package = importlib.import_module(MIGRATIONS_PACKAGE)
    for info in pkgutil.iter_modules(package.__path__):
        match = STEP_MODULE.match(info.name)
        if match:
            yield int(match.group(1)), info.name


def get_all_migrations() -> list[Migration]:
    """
    Load every step module, lowest version first.

    Raises:
        PersistenceError: If a module's VERSION disagrees with its file name
            or two modules share a version.
    """
    by_version: dict[int, Migration] = {}
    for prefix, module_name in _step_modules():
        module = importlib.import_module(f"{MIGRATIONS_PACKAGE}.{module_name}")
        if module.VERSION != prefix:
            raise PersistenceError(
                f"Migration {module_name} declares version {module.VERSION}"
            )
        if prefix in by_version:
            raise PersistenceError(
                f"Migrations {by_version[prefix].label} and {module_name} share version {prefix}"
            )
        by_version[prefix] = Migration(
            version=module.VERSION,
            name=module.NAME,
            upgrade=module.upgrade,
            downgrade=getattr(module, "downgrade", None),
        )
    return [by_version[v] for v in sorted(by_version)]


class MigrationRunner:
    """Brings a state database to a schema version, one recorded step at a time."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn
        with conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS migrations (
                    version INTEGER PRIMARY KEY,
                    name TEXT NOT NULL,
                    applied_at TEXT NOT NULL
                )
            """
            )

    def get_applied_versions(self) -> set[int]:
        return {row[0] for row in self.conn.execute("SELECT version FROM migrations")}

    def plan(self, target_version: int | None = None) -> list[tuple[Migration, Direction]]:
        """
        Steps needed to reach `target_version` (all known steps when None).

        Unapplied steps at or below the target go up in ascending order;
        applied steps above it come down in descending order.
        """
        applied = self.get_applied_versions()
        migrations = get_all_migrations()
        if target_version is None:
            target_version = migrations[-1].version if migrations else 0

        ups = [
            (m, Direction.UP)
            for m in migrations
            if m.version <= target_version and m.version not in applied
        ]
        downs = [
            (m, Direction.DOWN)
            for m in reversed(migrations)
            if m.version > target_version and m.version in applied
        ]
        return downs + ups

    def run_pending(self) -> list[int]:
        """Apply every step not yet recorded. Returns the versions applied."""
        steps = self.plan()
        for migration, direction in steps:
            self._run_step(migration, direction)
        if steps:
            logger.info("Schema now at %s", steps[-1][0].label)
        else:
            logger.debug("Schema is up to date")
        return [m.version for m, _ in steps]

    def migrate_to(self, target_version: int) -> None:
        """Upgrade or roll back until exactly the steps up to `target_version` are applied."""
        for migration, direction in self.plan(target_version):
            self._run_step(migration, direction)

    def _run_step(self, migration: Migration, direction: Direction) -> None:
        if direction == Direction.DOWN and migration.downgrade is None:
            raise NotImplementedError(f"Migration {migration.label} cannot be rolled back")

        logger.info("Migration %s: %s", migration.label, direction.value)
        try:
            if direction == Direction.UP:
                migration.upgrade(self.conn)
                self.conn.execute(
                    "INSERT INTO migrations (version, name, applied_at) VALUES (?, ?, ?)",
                    (migration.version, migration.name, utc_now()),
                )
            else:
                migration.downgrade(self.conn)
                self.conn.execute(
                    "DELETE FROM migrations WHERE version = ?", (migration.version,)
                )
            self.conn.commit()
        except Exception as e:
            self.conn.rollback()
            logger.error("Migration %s (%s) failed: %s", migration.label, direction.value, e)
            raise
