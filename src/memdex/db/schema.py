"""Schema version constants and initialization."""

from __future__ import annotations

import sqlite3

from memdex.db.migrations import MIGRATIONS, run_migrations

# Bumped whenever a migration changes what an indexed row means. A stored
# sync metadata record behind this value forces a full reindex.
CURRENT_VERSION = MIGRATIONS[-1][0]


def initialize(conn: sqlite3.Connection) -> None:
    """Initialize the database schema via the migration runner (idempotent)."""
    run_migrations(conn)
