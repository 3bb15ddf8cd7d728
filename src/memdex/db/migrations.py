"""Forward-only migration runner for the index database schema.

Vec tables (vec_chunks_*) are NOT migration-managed; use ensure_vec_table().
Each migration runs in its own transaction: a failing migration is rolled
back and leaves the database at the previous version.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Callable, Union

from memdex.errors import StorageError

logger = logging.getLogger(__name__)

# schema_version is the bootstrap table, created before migrations run.
_CREATE_SCHEMA_VERSION = """
CREATE TABLE IF NOT EXISTS schema_version (
    version     INTEGER NOT NULL,
    applied_at  DATETIME NOT NULL DEFAULT (datetime('now'))
)
"""

_V1_SQL = """
CREATE TABLE IF NOT EXISTS files (
    path        TEXT NOT NULL,
    source      TEXT NOT NULL,
    hash        TEXT NOT NULL,
    mtime       INTEGER NOT NULL DEFAULT 0,
    size        INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (path, source)
);

CREATE TABLE IF NOT EXISTS chunks (
    seq         INTEGER PRIMARY KEY AUTOINCREMENT,
    id          TEXT NOT NULL UNIQUE,
    path        TEXT NOT NULL,
    source      TEXT NOT NULL,
    start_line  INTEGER NOT NULL,
    end_line    INTEGER NOT NULL,
    hash        TEXT NOT NULL,
    model       TEXT NOT NULL,
    text        TEXT NOT NULL,
    embedding   TEXT NOT NULL DEFAULT '[]',
    updated_at  INTEGER NOT NULL,
    FOREIGN KEY (path, source) REFERENCES files(path, source) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_chunks_path_source ON chunks(path, source);
CREATE INDEX IF NOT EXISTS idx_chunks_model ON chunks(model);

CREATE VIRTUAL TABLE IF NOT EXISTS chunks_fts USING fts5(text, tokenize='porter unicode61');

CREATE TABLE IF NOT EXISTS embedding_cache (
    provider    TEXT NOT NULL,
    model       TEXT NOT NULL,
    hash        TEXT NOT NULL,
    embedding   TEXT NOT NULL,
    dims        INTEGER NOT NULL,
    updated_at  INTEGER NOT NULL,
    PRIMARY KEY (provider, model, hash)
);

CREATE INDEX IF NOT EXISTS idx_embedding_cache_updated_at ON embedding_cache(updated_at);

CREATE TABLE IF NOT EXISTS meta (
    key         TEXT PRIMARY KEY,
    value       TEXT NOT NULL
);
"""


def _column_exists(conn: sqlite3.Connection, table: str, column: str) -> bool:
    return any(row[1] == column for row in conn.execute(f"PRAGMA table_info({table})"))


def _v2_project_column(conn: sqlite3.Connection) -> None:
    """Add the nullable project slug to files and chunks.

    Databases written by an interim build may already carry the column, so
    each ALTER is guarded.
    """
    for table in ("files", "chunks"):
        if not _column_exists(conn, table, "project"):
            conn.execute(f"ALTER TABLE {table} ADD COLUMN project TEXT")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_chunks_project ON chunks(project)")


Migration = Union[str, Callable[[sqlite3.Connection], None]]

# Append-only. Each entry: (version: int, sql or callable).
MIGRATIONS: list[tuple[int, Migration]] = [
    (1, _V1_SQL),
    (2, _v2_project_column),
]


def current_version(conn: sqlite3.Connection) -> int:
    """Return the highest applied migration version (0 for a fresh database)."""
    conn.execute(_CREATE_SCHEMA_VERSION)
    conn.commit()
    row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
    return row[0] if row[0] is not None else 0


def run_migrations(conn: sqlite3.Connection) -> None:
    """Apply all pending migrations in ascending version order.

    Idempotent: safe to call on a database at any version.

    Raises:
        StorageError: If a migration fails. The failing migration is rolled
            back; earlier migrations stay applied.
    """
    current = current_version(conn)

    for version, migration in MIGRATIONS:
        if version <= current:
            continue
        logger.debug("applying schema migration v%d", version)
        try:
            if callable(migration):
                conn.execute("BEGIN")
                migration(conn)
                conn.execute("INSERT INTO schema_version (version) VALUES (?)", (version,))
                conn.commit()
            else:
                # executescript() issues an implicit COMMIT before running, so the
                # transaction boundaries live inside the script itself.
                conn.executescript(
                    f"BEGIN;\n{migration}\n"
                    f"INSERT INTO schema_version (version) VALUES ({int(version)});\n"
                    "COMMIT;"
                )
        except sqlite3.Error as exc:
            if conn.in_transaction:
                conn.rollback()
            raise StorageError(f"schema migration v{version} failed: {exc}") from exc
