"""MemoryIndex: the public facade over sync, search and status.

One MemoryIndex owns one database file. ``sync()`` calls are serialised;
``search()`` and ``status()`` may run while a sync is in progress. A full
reindex is built out of place and swapped in while readers are held back by
the swap lock, so no reader ever sees a half-built index.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Sequence

from memdex.config import MemdexConfig
from memdex.db import swap
from memdex.db.connection import Database
from memdex.db.models import SourceCount, SyncMeta
from memdex.db.repository import Repository, now_ms
from memdex.db.schema import CURRENT_VERSION, initialize
from memdex.errors import EmbeddingError, StorageError
from memdex.ingest.embeddings import EmbeddingGateway
from memdex.ingest.lines import LineChunker
from memdex.ingest.providers import BatchJobRunner, EmbeddingProvider, LiteLLMEmbeddingProvider
from memdex.search.retriever import HybridRetriever, RetrieverConfig, SearchResult
from memdex.sources.base import SourceAdapter
from memdex.sources.external_notes import ExternalNotesAdapter
from memdex.sources.notes import NotesAdapter
from memdex.sources.transcripts import ForeignTranscriptsAdapter, TranscriptsAdapter
from memdex.sync.controller import SyncController, SyncReport
from memdex.sync.detector import FULL, SyncPlan, plan_sync
from memdex.sync.progress import ProgressCallback, SyncProgress

logger = logging.getLogger(__name__)

_WIDTH_SAMPLE_TEXT = "memdex"


@dataclass
class IndexStatus:
    """Snapshot of what the index holds.

    Attributes:
        files: Indexed file records across all sources.
        chunks: Stored chunks across all sources.
        sources: Per-source file and chunk counts.
        provider: Active embedding provider id.
        model: Active embedding model.
        db_path: Database file location.
        vector_available: Whether sqlite-vec is loaded (otherwise vector
            search is a brute-force scan).
        last_full_reindex_at: Epoch milliseconds of the last completed full
            reindex, or None.
        cache_entries: Rows in the embedding cache.
    """

    files: int
    chunks: int
    sources: list[SourceCount] = field(default_factory=list)
    provider: str = ""
    model: str = ""
    db_path: str = ""
    vector_available: bool = False
    last_full_reindex_at: int | None = None
    cache_entries: int = 0


def build_adapters(config: MemdexConfig) -> list[SourceAdapter]:
    """Return the adapters for every enabled source, in sync order."""
    src = config.sources
    adapters: list[SourceAdapter] = []
    if src.notes.enabled:
        adapters.append(NotesAdapter(src.notes.paths))
    if src.transcripts.enabled:
        adapters.append(TranscriptsAdapter(src.transcripts.path))
    if src.foreign_transcripts.enabled:
        f = src.foreign_transcripts
        adapters.append(
            ForeignTranscriptsAdapter(
                f.path,
                session_store=f.session_store,
                cli_name=f.cli_name,
                project_marker=f.project_marker,
            )
        )
    if src.external_notes.enabled:
        e = src.external_notes
        adapters.append(ExternalNotesAdapter(e.root, context_dir=e.context_dir, index_file=e.index_file))
    return adapters


def watch_roots(config: MemdexConfig) -> list[Path]:
    """Return the existing directories and files whose changes call for a sync.

    Covers the roots of every enabled source, plus the session store that
    decides which foreign sessions are excluded.
    """
    src = config.sources
    candidates: list[str] = []
    if src.notes.enabled:
        candidates.extend(src.notes.paths)
    if src.transcripts.enabled:
        candidates.append(src.transcripts.path)
    if src.foreign_transcripts.enabled:
        candidates.extend([src.foreign_transcripts.path, src.foreign_transcripts.session_store])
    if src.external_notes.enabled:
        candidates.append(src.external_notes.root)

    roots: list[Path] = []
    for candidate in candidates:
        path = Path(candidate).expanduser()
        if path.exists() and path not in roots:
            roots.append(path)
    return roots


class MemoryIndex:
    """Sync, search and inspect one memdex database.

    Args:
        config: Merged configuration; defaults when omitted.
        provider: Embedding provider; a LiteLLM provider built from
            ``config.embedding`` when omitted.
        adapters: Source adapters; built from ``config.sources`` when omitted.
        db_path: Database file; ``config.store.path`` when omitted.

    Raises:
        StorageError: If the database cannot be opened or migrated.
    """

    def __init__(
        self,
        config: MemdexConfig | None = None,
        *,
        provider: EmbeddingProvider | None = None,
        adapters: Sequence[SourceAdapter] | None = None,
        db_path: Path | str | None = None,
    ) -> None:
        self.config = config or MemdexConfig()
        emb = self.config.embedding
        self.db_path = Path(db_path or self.config.store.path).expanduser()
        self.provider = provider or LiteLLMEmbeddingProvider(
            emb.model,
            dimensions=emb.dimensions,
            timeout=emb.timeout,
            num_retries=emb.num_retries,
        )
        self.adapters = list(adapters) if adapters is not None else build_adapters(self.config)
        self.chunker = LineChunker(
            chunk_size=self.config.chunking.chunk_size, overlap=self.config.chunking.overlap
        )
        runner = (
            BatchJobRunner(
                self.provider.model,
                dimensions=emb.dimensions,
                poll_interval=emb.batch_poll_interval,
                timeout=emb.batch_timeout,
            )
            if emb.batch_jobs
            else None
        )
        self.gateway = EmbeddingGateway(
            self.provider,
            batch_size=emb.batch_size,
            concurrency=self.config.sync.concurrency,
            batch_runner=runner,
            batch_failure_limit=emb.batch_failure_limit,
        )
        self._sync_lock = threading.Lock()
        self._swap_lock = threading.RLock()
        self._conn: sqlite3.Connection | None = None
        self._sampled_dims: int | None = None

        swap.cleanup_temp_artifacts(self.db_path)
        self._open()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _open(self) -> None:
        database = Database(self.db_path, vector=self.config.store.vector)
        try:
            conn = database.connect()
        except sqlite3.Error as exc:
            raise StorageError(f"could not open {self.db_path}: {exc}") from exc
        try:
            initialize(conn)
        except StorageError:
            conn.close()
            raise
        self._conn = conn
        self.repo = Repository(conn, vector_available=database.vector_available)
        self.gateway.repo = self.repo
        q = self.config.query
        self.retriever = HybridRetriever(
            self.repo,
            self.gateway,
            RetrieverConfig(
                mode=q.mode,
                max_results=q.max_results,
                min_score=q.min_score,
                vector_weight=q.vector_weight,
                text_weight=q.text_weight,
                candidate_multiplier=q.candidate_multiplier,
                snippet_max_chars=q.snippet_max_chars,
            ),
        )

    def _close_live(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def close(self) -> None:
        """Close the database connection. The index cannot be used afterwards."""
        with self._swap_lock:
            self._close_live()

    def __enter__(self) -> MemoryIndex:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    def active_dims(self) -> int | None:
        """Vector width of the active provider: configured, or sampled once.

        Returns None when the width is not configured and the provider
        cannot be reached.
        """
        configured = self.config.embedding.dimensions
        if configured is not None:
            self.gateway.dims = configured
            return configured
        if self._sampled_dims is None:
            try:
                self._sampled_dims = len(self.provider.embed([_WIDTH_SAMPLE_TEXT])[0])
            except EmbeddingError as exc:
                logger.warning("could not determine the vector width of %s: %s", self.provider.model, exc)
                return None
            self.gateway.dims = self._sampled_dims
        return self._sampled_dims

    def plan(self, force: bool = False) -> SyncPlan:
        """Return the mode the next ``sync(force)`` call would run in."""
        dims = self.active_dims()
        with self._swap_lock:
            return plan_sync(
                self.repo.read_meta(),
                provider=self.provider.id,
                model=self.provider.model,
                chunk_size=self.config.chunking.chunk_size,
                overlap=self.config.chunking.overlap,
                active_dims=dims,
                file_count=self.repo.count_files(),
                chunk_count=self.repo.count_chunks(),
                force=force,
            )

    def sync(self, force: bool = False, progress: ProgressCallback | None = None) -> SyncReport:
        """Bring the index up to date with every enabled source.

        Per-file and per-source failures are reported in the returned
        SyncReport, never raised.

        Args:
            force: Rebuild the whole index out of place.
            progress: Called with a ProgressUpdate whenever progress changes.

        Raises:
            StorageError: If the store cannot be read or written.
        """
        with self._sync_lock:
            try:
                plan = self.plan(force)
                logger.info("sync mode %s: %s", plan.mode, plan.reason)
                tracker = SyncProgress(progress)
                if plan.mode == FULL:
                    report = self._full_reindex(tracker)
                else:
                    controller = self._controller(self.repo)
                    report = controller.run(plan.mode, progress=tracker)
                    self._write_meta(self.repo, controller.vector_dims)
                self._prune_cache()
            except sqlite3.Error as exc:
                raise StorageError(f"sync failed: {exc}") from exc
            return report

    def _controller(self, repo: Repository) -> SyncController:
        return SyncController(
            repo,
            self.adapters,
            self.chunker,
            self.gateway,
            concurrency=self.config.sync.concurrency,
        )

    def _write_meta(self, repo: Repository, vector_dims: int | None, full: bool = False) -> None:
        previous = repo.read_meta()
        if vector_dims is None and previous is not None:
            vector_dims = previous.vector_dims
        if full:
            last_full = now_ms()
        else:
            last_full = previous.last_full_reindex_at if previous else None
        repo.write_meta(
            SyncMeta(
                schema_version=CURRENT_VERSION,
                provider=self.provider.id,
                model=self.provider.model,
                chunk_size=self.config.chunking.chunk_size,
                overlap=self.config.chunking.overlap,
                vector_dims=vector_dims,
                last_full_reindex_at=last_full,
            )
        )

    def _full_reindex(self, progress: SyncProgress) -> SyncReport:
        """Rebuild into a temp database, then swap it over the live file.

        The live database is untouched until the swap. If any source or any
        file fails, or anything raises, the temp files are deleted and the
        previous dataset stays in place.
        """
        temp = swap.temp_path_for(self.db_path)
        temp_db = Database(temp, vector=self.config.store.vector)
        conn: sqlite3.Connection | None = None
        try:
            conn = temp_db.connect()
            initialize(conn)
            temp_repo = Repository(conn, vector_available=temp_db.vector_available)
            seeded = temp_repo.seed_embedding_cache(self.db_path)
            logger.debug("seeded %d cached embeddings into %s", seeded, temp.name)

            self.gateway.repo = temp_repo
            controller = self._controller(temp_repo)
            report = controller.run(FULL, progress=progress)
            if report.failed_sources or report.failed:
                logger.error(
                    "full reindex abandoned, keeping the previous index: %d file(s) failed%s",
                    report.failed,
                    f", source(s) {', '.join(report.failed_sources)} failed" if report.failed_sources else "",
                )
                conn.close()
                conn = None
                swap.remove_database_files(temp)
                return report

            self._write_meta(temp_repo, controller.vector_dims, full=True)
            conn.close()
            conn = None

            with self._swap_lock:
                self._close_live()
                try:
                    swap.swap_into_place(temp, self.db_path)
                finally:
                    self._open()
            logger.info("full reindex complete: %d files indexed", report.indexed)
            return report
        except BaseException:
            if conn is not None:
                conn.close()
            swap.remove_database_files(temp)
            raise
        finally:
            self.gateway.repo = self.repo

    def _prune_cache(self) -> None:
        limit = self.config.embedding.cache_max_entries
        if limit is None:
            return
        removed = self.repo.prune_embedding_cache(limit)
        if removed:
            logger.info("pruned %d embedding cache entries", removed)

    # ------------------------------------------------------------------
    # Query surface
    # ------------------------------------------------------------------

    def search(
        self,
        text: str,
        project: str | None = None,
        source: str | Sequence[str] | None = None,
        max_results: int | None = None,
        min_score: float | None = None,
        mode: str | None = None,
    ) -> list[SearchResult]:
        """Return the best matching passages for *text*.

        Args:
            text: Free-text query.
            project: Only return chunks of exactly this project.
            source: Source kind, or several, to restrict results to.
            max_results: Overrides ``query.max_results``.
            min_score: Overrides ``query.min_score``.
            mode: Overrides ``query.mode`` (hybrid, vector or keyword).
        """
        sources = [source] if isinstance(source, str) else source
        with self._swap_lock:
            return self.retriever.search(
                text,
                max_results=max_results,
                min_score=min_score,
                sources=sources,
                project=project,
                mode=mode,
            )

    def status(self) -> IndexStatus:
        with self._swap_lock:
            meta = self.repo.read_meta()
            return IndexStatus(
                files=self.repo.count_files(),
                chunks=self.repo.count_chunks(),
                sources=self.repo.source_counts(),
                provider=self.provider.id,
                model=self.provider.model,
                db_path=str(self.db_path),
                vector_available=self.repo.vector_available,
                last_full_reindex_at=meta.last_full_reindex_at if meta else None,
                cache_entries=self.repo.count_cached_embeddings(),
            )
