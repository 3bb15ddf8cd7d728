"""SQLite connection layer with sqlite-vec extension."""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path

import sqlite_vec

logger = logging.getLogger(__name__)


class Database:
    """Index database file with optional sqlite-vec vector search support.

    The connection is opened with ``check_same_thread=False`` because the sync
    worker pool shares it; callers serialise access through
    :class:`memdex.db.repository.Repository`.
    """

    def __init__(self, db_path: Path | str, vector: bool = True) -> None:
        """Store the database path. Call connect() to open the connection.

        Args:
            db_path: Path to the SQLite database file (created if missing).
            vector: Load sqlite-vec. When False, or when the extension cannot
                be loaded, search falls back to brute-force cosine similarity.
        """
        self.db_path = Path(db_path)
        self.vector = vector
        self.vector_available = False
        self._conn: sqlite3.Connection | None = None

    def connect(self) -> sqlite3.Connection:
        """Open a connection, load sqlite-vec if requested, and return it."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.db_path, check_same_thread=False, timeout=30.0)
        conn.row_factory = sqlite3.Row
        self.vector_available = self._load_vec_extension(conn) if self.vector else False
        conn.execute("PRAGMA foreign_keys = ON")
        conn.execute("PRAGMA journal_mode = WAL")
        return conn

    def _load_vec_extension(self, conn: sqlite3.Connection) -> bool:
        try:
            conn.enable_load_extension(True)
            sqlite_vec.load(conn)
            conn.enable_load_extension(False)
        except (AttributeError, sqlite3.Error) as exc:
            # Python builds without extension loading raise AttributeError.
            logger.warning(
                "sqlite-vec extension not available (%s); falling back to brute-force vector search.",
                exc,
            )
            return False
        return True

    def __enter__(self) -> sqlite3.Connection:
        """Open the database and return the connection (context manager support)."""
        self._conn = self.connect()
        return self._conn

    def __exit__(self, *args: object) -> None:
        """Close the connection when leaving the context manager."""
        if self._conn:
            self._conn.close()
            self._conn = None
