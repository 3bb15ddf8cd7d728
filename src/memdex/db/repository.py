"""Repository pattern for all index database operations.

Single interface for: file records, chunks, FTS5 search, vec embeddings,
the embedding cache and sync metadata. Vec tables are model-managed
(ensure_vec_table); the repository handles read + write.

One connection is shared by the sync worker pool and concurrent searches, so
every method runs under a re-entrant lock and every logical write is a single
transaction.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Sequence

from sqlite_vec import serialize_float32

from memdex.db.models import Chunk, FileRecord, SourceCount, SyncMeta
from memdex.db.vectors import ensure_vec_table, model_to_slug, vec_table_exists, vec_table_name

logger = logging.getLogger(__name__)

_META_KEY = "index"
_CHUNK_COLUMNS = (
    "c.seq, c.id, c.path, c.source, c.project, c.start_line, c.end_line, "
    "c.hash, c.model, c.text, c.embedding, c.updated_at"
)


def now_ms() -> int:
    return int(time.time() * 1000)


class Repository:
    """Data access layer for all index database entities.

    Wraps an open sqlite3.Connection. The connection is owned by the caller
    and must be closed after use.
    """

    def __init__(self, conn: sqlite3.Connection, vector_available: bool = False) -> None:
        """Initialise with an open database connection.

        Args:
            conn: An open sqlite3.Connection with the schema initialised (see
                memdex.db.schema.initialize).
            vector_available: Whether sqlite-vec is loaded on *conn*. When
                False the vec tables are never touched.
        """
        self._conn = conn
        self._lock = threading.RLock()
        self.vector_available = vector_available

    @property
    def conn(self) -> sqlite3.Connection:
        return self._conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Hold the lock and commit on success, roll back on error."""
        with self._lock, self._conn:
            yield self._conn

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    def get_file(self, path: str, source: str) -> FileRecord | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT path, source, project, hash, mtime, size FROM files WHERE path = ? AND source = ?",
                (path, source),
            ).fetchone()
        return _row_to_file(row) if row else None

    def get_file_hash(self, path: str, source: str) -> str | None:
        """Return the stored content hash for ``(path, source)``, or None."""
        with self._lock:
            row = self._conn.execute(
                "SELECT hash FROM files WHERE path = ? AND source = ?", (path, source)
            ).fetchone()
        return row["hash"] if row else None

    def list_paths(self, source: str) -> list[str]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT path FROM files WHERE source = ? ORDER BY path", (source,)
            ).fetchall()
        return [r["path"] for r in rows]

    def replace_file(self, record: FileRecord, chunks: Sequence[Chunk]) -> None:
        """Upsert *record* and replace its whole chunk set in one transaction.

        FTS rows and vector rows are rewritten alongside the chunks, so a
        reader never sees a file record pointing at a partial chunk set.
        """
        with self.transaction() as conn:
            self._delete_chunk_rows(record.path, record.source)
            conn.execute(
                """
                INSERT INTO files (path, source, project, hash, mtime, size)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(path, source) DO UPDATE SET
                    project = excluded.project,
                    hash    = excluded.hash,
                    mtime   = excluded.mtime,
                    size    = excluded.size
                """,
                (record.path, record.source, record.project, record.hash, record.mtime, record.size),
            )
            vec_tables: dict[str, str] = {}
            for chunk in chunks:
                cur = conn.execute(
                    """
                    INSERT INTO chunks (id, path, source, project, start_line, end_line,
                                        hash, model, text, embedding, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        chunk.id,
                        chunk.path,
                        chunk.source,
                        chunk.project,
                        chunk.start_line,
                        chunk.end_line,
                        chunk.hash,
                        chunk.model,
                        chunk.text,
                        chunk.embedding_json,
                        chunk.updated_at or now_ms(),
                    ),
                )
                chunk.seq = cur.lastrowid
                # Keep FTS5 in sync with explicit rowid mapping
                conn.execute(
                    "INSERT INTO chunks_fts(rowid, text) VALUES (?, ?)", (chunk.seq, chunk.text)
                )
                if self.vector_available and chunk.embedding:
                    table = vec_tables.get(chunk.model)
                    if table is None:
                        table = ensure_vec_table(
                            conn, model_to_slug(chunk.model), len(chunk.embedding)
                        )
                        vec_tables[chunk.model] = table
                    conn.execute(
                        f"INSERT INTO {table}(rowid, embedding) VALUES (?, ?)",
                        (chunk.seq, serialize_float32(chunk.embedding)),
                    )

    def delete_file(self, path: str, source: str) -> int:
        """Delete a file record with its chunks, FTS rows and vector rows.

        Scoped to ``(path, source)``; rows of other sources are untouched.

        Returns:
            Number of chunks removed.
        """
        with self.transaction() as conn:
            removed = self._delete_chunk_rows(path, source)
            conn.execute("DELETE FROM files WHERE path = ? AND source = ?", (path, source))
        return removed

    def _delete_chunk_rows(self, path: str, source: str) -> int:
        """Delete chunks + FTS + vec entries for a file (cascade not available on FTS)."""
        seqs = [
            r[0]
            for r in self._conn.execute(
                "SELECT seq FROM chunks WHERE path = ? AND source = ?", (path, source)
            ).fetchall()
        ]
        if not seqs:
            return 0
        placeholders = ",".join("?" * len(seqs))
        self._conn.execute(f"DELETE FROM chunks_fts WHERE rowid IN ({placeholders})", seqs)
        if self.vector_available:
            for table in self._vec_tables():
                self._conn.executemany(
                    f"DELETE FROM [{table}] WHERE rowid = ?", [(seq,) for seq in seqs]
                )
        self._conn.execute("DELETE FROM chunks WHERE path = ? AND source = ?", (path, source))
        return len(seqs)

    def _vec_tables(self) -> list[str]:
        # vec0 also registers shadow tables under the same prefix; only the
        # virtual tables themselves accept rowid deletes.
        return [
            r[0]
            for r in self._conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table' "
                "AND name LIKE 'vec_chunks_%' AND sql LIKE 'CREATE VIRTUAL TABLE%'"
            ).fetchall()
        ]

    # ------------------------------------------------------------------
    # Counts
    # ------------------------------------------------------------------

    def count_files(self, source: str | None = None) -> int:
        with self._lock:
            if source is None:
                return self._conn.execute("SELECT COUNT(*) FROM files").fetchone()[0]
            return self._conn.execute(
                "SELECT COUNT(*) FROM files WHERE source = ?", (source,)
            ).fetchone()[0]

    def count_chunks(self, source: str | None = None) -> int:
        with self._lock:
            if source is None:
                return self._conn.execute("SELECT COUNT(*) FROM chunks").fetchone()[0]
            return self._conn.execute(
                "SELECT COUNT(*) FROM chunks WHERE source = ?", (source,)
            ).fetchone()[0]

    def count_fts_rows(self) -> int:
        with self._lock:
            return self._conn.execute("SELECT COUNT(*) FROM chunks_fts").fetchone()[0]

    def source_counts(self) -> list[SourceCount]:
        """Return per-source file and chunk counts, ordered by source name."""
        with self._lock:
            files = {
                r[0]: r[1]
                for r in self._conn.execute(
                    "SELECT source, COUNT(*) FROM files GROUP BY source"
                ).fetchall()
            }
            chunks = {
                r[0]: r[1]
                for r in self._conn.execute(
                    "SELECT source, COUNT(*) FROM chunks GROUP BY source"
                ).fetchall()
            }
        return [
            SourceCount(source=s, files=files.get(s, 0), chunks=chunks.get(s, 0))
            for s in sorted(set(files) | set(chunks))
        ]

    def get_chunks_for_file(self, path: str, source: str) -> list[Chunk]:
        with self._lock:
            rows = self._conn.execute(
                f"SELECT {_CHUNK_COLUMNS} FROM chunks c WHERE c.path = ? AND c.source = ? "
                "ORDER BY c.start_line",
                (path, source),
            ).fetchall()
        return [_row_to_chunk(r) for r in rows]

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def has_vec_table(self, model: str) -> bool:
        if not self.vector_available:
            return False
        with self._lock:
            return vec_table_exists(self._conn, vec_table_name(model_to_slug(model)))

    def search_vec(
        self,
        embedding: list[float],
        model: str,
        limit: int = 10,
        sources: Sequence[str] | None = None,
        project: str | None = None,
    ) -> list[tuple[Chunk, float]]:
        """Cosine-distance search over the vec table for *model*.

        Returns (chunk, distance) sorted by distance ascending; an empty list
        when the vec table does not exist yet.
        """
        if not embedding or limit <= 0 or not self.has_vec_table(model):
            return []
        table = vec_table_name(model_to_slug(model))
        filter_sql, filter_params = _filters("c", sources, project)
        with self._lock:
            rows = self._conn.execute(
                f"""
                SELECT {_CHUNK_COLUMNS}, vec_distance_cosine(v.embedding, ?) AS dist
                  FROM {table} v
                  JOIN chunks c ON c.seq = v.rowid
                 WHERE c.model = ?{filter_sql}
                 ORDER BY dist ASC
                 LIMIT ?
                """,
                (serialize_float32(embedding), model, *filter_params, limit),
            ).fetchall()
        return [(_row_to_chunk(r), float(r["dist"])) for r in rows]

    def list_chunks(
        self,
        model: str,
        sources: Sequence[str] | None = None,
        project: str | None = None,
    ) -> list[Chunk]:
        """Return every chunk for *model* (with embeddings) matching the filters."""
        filter_sql, filter_params = _filters("c", sources, project)
        with self._lock:
            rows = self._conn.execute(
                f"SELECT {_CHUNK_COLUMNS} FROM chunks c WHERE c.model = ?{filter_sql}",
                (model, *filter_params),
            ).fetchall()
        return [_row_to_chunk(r) for r in rows]

    def search_fts(
        self,
        fts_query: str,
        model: str,
        limit: int = 10,
        sources: Sequence[str] | None = None,
        project: str | None = None,
    ) -> list[tuple[Chunk, float]]:
        """BM25 full-text search. Returns (chunk, rank) sorted best-first.

        bm25() returns negative values; lower (more negative) = better match.
        The raw rank is returned so callers can normalise it.
        """
        if limit <= 0:
            return []
        filter_sql, filter_params = _filters("c", sources, project)
        with self._lock:
            rows = self._conn.execute(
                f"""
                SELECT {_CHUNK_COLUMNS}, bm25(chunks_fts) AS rank
                  FROM chunks_fts
                  JOIN chunks c ON c.seq = chunks_fts.rowid
                 WHERE chunks_fts MATCH ? AND c.model = ?{filter_sql}
                 ORDER BY rank ASC
                 LIMIT ?
                """,
                (fts_query, model, *filter_params, limit),
            ).fetchall()
        return [(_row_to_chunk(r), float(r["rank"])) for r in rows]

    # ------------------------------------------------------------------
    # Embedding cache
    # ------------------------------------------------------------------

    def get_cached_embeddings(
        self, provider: str, model: str, hashes: Sequence[str], dims: int | None = None
    ) -> dict[str, list[float]]:
        """Return ``{hash: embedding}`` for the cached subset of *hashes*.

        When *dims* is given, entries of any other width are treated as misses.
        """
        found: dict[str, list[float]] = {}
        unique = list(dict.fromkeys(hashes))
        width_clause = "" if dims is None else " AND dims = ?"
        width_param = () if dims is None else (dims,)
        # Stay well under SQLITE_MAX_VARIABLE_NUMBER.
        for start in range(0, len(unique), 400):
            batch = unique[start : start + 400]
            placeholders = ",".join("?" * len(batch))
            with self._lock:
                rows = self._conn.execute(
                    f"SELECT hash, embedding FROM embedding_cache "
                    f"WHERE provider = ? AND model = ? AND hash IN ({placeholders}){width_clause}",
                    (provider, model, *batch, *width_param),
                ).fetchall()
            for row in rows:
                found[row["hash"]] = json.loads(row["embedding"])
        return found

    def put_cached_embeddings(
        self, provider: str, model: str, entries: dict[str, list[float]]
    ) -> None:
        """Insert or refresh cache entries for ``(provider, model, hash)``."""
        if not entries:
            return
        stamp = now_ms()
        with self.transaction() as conn:
            conn.executemany(
                """
                INSERT INTO embedding_cache (provider, model, hash, embedding, dims, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(provider, model, hash) DO UPDATE SET
                    embedding  = excluded.embedding,
                    dims       = excluded.dims,
                    updated_at = excluded.updated_at
                """,
                [
                    (provider, model, h, json.dumps(vec), len(vec), stamp)
                    for h, vec in entries.items()
                ],
            )

    def count_cached_embeddings(self) -> int:
        with self._lock:
            return self._conn.execute("SELECT COUNT(*) FROM embedding_cache").fetchone()[0]

    def prune_embedding_cache(self, max_entries: int) -> int:
        """Delete the least recently written entries beyond *max_entries*.

        Returns:
            Number of entries removed.
        """
        with self.transaction() as conn:
            total = conn.execute("SELECT COUNT(*) FROM embedding_cache").fetchone()[0]
            excess = total - max(0, max_entries)
            if excess <= 0:
                return 0
            conn.execute(
                "DELETE FROM embedding_cache WHERE rowid IN "
                "(SELECT rowid FROM embedding_cache ORDER BY updated_at ASC LIMIT ?)",
                (excess,),
            )
        return excess

    def seed_embedding_cache(self, source_db: Path) -> int:
        """Copy every cache entry from another index database into this one.

        Used before a full reindex so rebuilt chunks reuse known vectors. A
        missing or unreadable source database seeds nothing.

        Returns:
            Number of entries copied.
        """
        if not Path(source_db).exists():
            return 0
        with self._lock:
            self._conn.commit()
            try:
                self._conn.execute("ATTACH DATABASE ? AS seed", (str(source_db),))
            except sqlite3.Error as exc:
                logger.warning("could not attach %s to seed embedding cache: %s", source_db, exc)
                return 0
            try:
                with self._conn:
                    cur = self._conn.execute(
                        """
                        INSERT OR IGNORE INTO embedding_cache
                            (provider, model, hash, embedding, dims, updated_at)
                        SELECT provider, model, hash, embedding, dims, updated_at
                          FROM seed.embedding_cache
                        """
                    )
                copied = cur.rowcount
            except sqlite3.OperationalError as exc:
                logger.warning("embedding cache not seeded from %s: %s", source_db, exc)
                copied = 0
            finally:
                self._conn.execute("DETACH DATABASE seed")
        return max(copied, 0)

    # ------------------------------------------------------------------
    # Sync metadata
    # ------------------------------------------------------------------

    def read_meta(self) -> SyncMeta | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT value FROM meta WHERE key = ?", (_META_KEY,)
            ).fetchone()
        return SyncMeta.from_json(row["value"]) if row else None

    def write_meta(self, meta: SyncMeta) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO meta (key, value) VALUES (?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value
                """,
                (_META_KEY, meta.to_json()),
            )


# ------------------------------------------------------------------
# Row → model helpers
# ------------------------------------------------------------------


def _filters(
    alias: str, sources: Sequence[str] | None, project: str | None
) -> tuple[str, list[str]]:
    """Build the source/project restriction shared by every search path.

    A project filter is an exact match: chunks of another project and chunks
    without a project are both excluded. No filter means no restriction.
    """
    sql = ""
    params: list[str] = []
    if sources:
        sql += f" AND {alias}.source IN ({','.join('?' * len(sources))})"
        params.extend(sources)
    if project is not None:
        sql += f" AND {alias}.project = ?"
        params.append(project)
    return sql, params


def _row_to_file(row: sqlite3.Row) -> FileRecord:
    return FileRecord(
        path=row["path"],
        source=row["source"],
        project=row["project"],
        hash=row["hash"],
        mtime=row["mtime"],
        size=row["size"],
    )


def _row_to_chunk(row: sqlite3.Row) -> Chunk:
    return Chunk(
        seq=row["seq"],
        id=row["id"],
        path=row["path"],
        source=row["source"],
        project=row["project"],
        start_line=row["start_line"],
        end_line=row["end_line"],
        hash=row["hash"],
        model=row["model"],
        text=row["text"],
        embedding=json.loads(row["embedding"]) if row["embedding"] else [],
        updated_at=row["updated_at"],
    )
