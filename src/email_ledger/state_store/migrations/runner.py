"""
Migration runner for versioned database schema changes.

Migrations are named {version}_{name}.py, e.g. 001_accounts.py.

Each migration module defines:
- VERSION: int
- NAME: str
- upgrade(conn: Connection) -> None
- downgrade(conn: Connection) -> None
"""

import importlib
import logging
import sqlite3
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass
class Migration:
    """A single schema migration."""

    version: int
    name: str
    upgrade: Callable[[sqlite3.Connection], None]
    downgrade: Callable[[sqlite3.Connection], None] | None


def get_all_migrations() -> list[Migration]:
    """Load every migration module in this package, sorted by version."""
    migrations = []
    for py_file in sorted(Path(__file__).parent.glob("[0-9][0-9][0-9]_*.py")):
        module = importlib.import_module(f"{__package__}.{py_file.stem}")
        migrations.append(
            Migration(
                version=module.VERSION,
                name=module.NAME,
                upgrade=module.upgrade,
                downgrade=getattr(module, "downgrade", None),
            )
        )
    return sorted(migrations, key=lambda m: m.version)


class MigrationRunner:
    """
    Applies migrations in order.

    Applied versions are tracked in a `migrations` table.
    """

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn
        self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS migrations (
                version INTEGER PRIMARY KEY,
                name TEXT NOT NULL,
                applied_at TEXT NOT NULL
            )
        """
        )
        self.conn.commit()

    def get_applied_versions(self) -> set[int]:
        cursor = self.conn.execute("SELECT version FROM migrations")
        return {row[0] for row in cursor.fetchall()}

    def get_current_version(self) -> int:
        result = self.conn.execute("SELECT MAX(version) FROM migrations").fetchone()[0]
        return result if result is not None else 0

    def _apply(self, migration: Migration) -> None:
        logger.info("Applying migration %03d: %s", migration.version, migration.name)
        try:
            migration.upgrade(self.conn)
            applied_at = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
            self.conn.execute(
                "INSERT INTO migrations (version, name, applied_at) VALUES (?, ?, ?)",
                (migration.version, migration.name, applied_at),
            )
            self.conn.commit()
        except Exception as e:
            self.conn.rollback()
            logger.error(f"Migration {migration.version} failed: {e}")
            raise

    def _rollback(self, migration: Migration) -> None:
        if migration.downgrade is None:
            raise NotImplementedError(
                f"Migration {migration.version} ({migration.name}) does not support rollback"
            )
        logger.info("Rolling back migration %03d: %s", migration.version, migration.name)
        try:
            migration.downgrade(self.conn)
            self.conn.execute("DELETE FROM migrations WHERE version = ?", (migration.version,))
            self.conn.commit()
        except Exception as e:
            self.conn.rollback()
            logger.error(f"Rollback of migration {migration.version} failed: {e}")
            raise

    def run_pending(self) -> list[int]:
        """Apply every migration not yet recorded. Returns the versions applied."""
        applied = self.get_applied_versions()
        versions = []
        for migration in get_all_migrations():
            if migration.version not in applied:
                self._apply(migration)
                versions.append(migration.version)

        if versions:
            logger.info(f"Applied {len(versions)} migrations: {versions}")
        return versions

    def rollback_to(self, target_version: int) -> list[int]:
        """Roll back applied migrations above target_version, newest first."""
        applied = self.get_applied_versions()
        versions = []
        for migration in reversed(get_all_migrations()):
            if migration.version > target_version and migration.version in applied:
                self._rollback(migration)
                versions.append(migration.version)
        return versions
