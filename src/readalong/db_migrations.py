"""
Lightweight SQLite migration runner with schema version tracking, plus the
connection handling shared by every SQLite-backed store in the package.
"""
from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

from .observability import get_logger

logger = get_logger(__name__)


MigrationRunner = Callable[[sqlite3.Connection], None]


@dataclass(frozen=True)
class SqliteMigration:
    version: int
    name: str
    statements: tuple[str, ...] = ()
    runner: MigrationRunner | None = None


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def apply_sqlite_migrations(
    conn: sqlite3.Connection,
    *,
    component: str,
    migrations: list[SqliteMigration],
):
    """Applies ordered migrations for a component and records applied versions."""
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            component TEXT NOT NULL,
            version INTEGER NOT NULL,
            name TEXT NOT NULL,
            applied_at TEXT NOT NULL,
            PRIMARY KEY(component, version)
        )
        """
    )

    rows = conn.execute(
        "SELECT version FROM schema_migrations WHERE component = ?",
        (component,),
    ).fetchall()
    applied_versions = {int(row[0]) for row in rows}

    for migration in sorted(migrations, key=lambda m: int(m.version)):
        version = int(migration.version)
        if version in applied_versions:
            continue

        for statement in migration.statements:
            sql = str(statement or "").strip()
            if sql:
                conn.execute(sql)
        if callable(migration.runner):
            migration.runner(conn)

        conn.execute(
            """
            INSERT INTO schema_migrations (component, version, name, applied_at)
            VALUES (?, ?, ?, ?)
            """,
            (component, version, migration.name, _utcnow_iso()),
        )
        logger.info(
            "db_migration_applied",
            component=component,
            version=version,
            name=migration.name,
        )


class SqliteStore:
    """
    Base class for the package's SQLite stores: one shared connection guarded
    by an RLock, commit/rollback per `_connection()` block, migrations on open.
    """

    component = "store"

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._conn: sqlite3.Connection | None = self._connect()
        try:
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA synchronous=NORMAL")
        except sqlite3.Error:
            logger.warning("sqlite_pragma_failed", component=self.component, path=str(self.db_path))
        with self._connection() as conn:
            apply_sqlite_migrations(conn, component=self.component, migrations=self.migrations())

    def migrations(self) -> list[SqliteMigration]:
        return []

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), check_same_thread=False, timeout=30.0)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _connection(self):
        with self._lock:
            if self._conn is None:
                raise RuntimeError(f"{self.component} connection is closed")
            try:
                yield self._conn
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise

    def close(self):
        with self._lock:
            if self._conn is None:
                return
            self._conn.commit()
            self._conn.close()
            self._conn = None
