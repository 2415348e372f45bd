"""Schema migration for the session ledger.

There is no version table: the full schema is applied idempotently on every
open, then additive columns are checked against ``PRAGMA table_info`` so that
databases created by older releases pick them up.
"""

import logging
import sqlite3

from session_ledger.exceptions import MigrationError
from session_ledger.store.schema import SCHEMA_SQL

logger = logging.getLogger(__name__)

# Columns added after the first release: {table: {column: definition}}
ADDITIVE_COLUMNS: dict[str, dict[str, str]] = {
    "sessions": {
        "processing_started_at": "INTEGER",
    },
}


def run_migrations(conn: sqlite3.Connection) -> None:
    """Bring the schema up to date.

    Safe to call any number of times and from concurrent processes; callers
    wrap it in retry so a peer's in-flight migration is waited out.

    Args:
        conn: Open database connection.

    Raises:
        sqlite3.OperationalError: Transient lock errors, for the caller's retry.
        MigrationError: If the schema cannot be applied for another reason.
    """
    try:
        conn.executescript(SCHEMA_SQL)
        for table, columns in ADDITIVE_COLUMNS.items():
            _ensure_columns(conn, table, columns)
        conn.commit()
    except sqlite3.OperationalError as e:
        if "no such module: fts5" in str(e).lower():
            raise MigrationError(f"SQLite build lacks FTS5 support: {e}") from e
        raise
    except sqlite3.DatabaseError as e:
        raise MigrationError(f"Schema migration failed: {e}") from e


def _ensure_columns(conn: sqlite3.Connection, table: str, columns: dict[str, str]) -> None:
    """Add any missing columns to ``table``.

    Idempotent: skips columns that already exist. A concurrent process may add
    the column between the check and the ALTER, so a duplicate-column error is
    tolerated as well.
    """
    existing_columns = {row[1] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()}
    for column, definition in columns.items():
        if column in existing_columns:
            continue
        try:
            conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")
            logger.info(f"Added column {table}.{column}")
        except sqlite3.OperationalError as e:
            if "duplicate column name" not in str(e).lower():
                raise
            logger.debug(f"Column {table}.{column} added concurrently")


def get_schema_snapshot(conn: sqlite3.Connection) -> list[tuple[str, str, str]]:
    """Return the schema objects as sorted ``(type, name, sql)`` tuples.

    Used to verify that repeated migration leaves the schema unchanged.
    """
    rows = conn.execute(
        "SELECT type, name, sql FROM sqlite_master WHERE sql IS NOT NULL ORDER BY type, name"
    ).fetchall()
    return [(row[0], row[1], row[2]) for row in rows]
