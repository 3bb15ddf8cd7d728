"""Sync controller: bring the store in line with what the source adapters report.

Sources are processed one after another. Within a source, changed entries
are chunked, embedded and written on a bounded thread pool; each file write
is a single transaction. Only once every task of the source has finished
are paths the adapter no longer reports removed, scoped to that source.

Per-file failures (provider errors, unreadable content) and per-source
failures (listing errors) are logged and counted; ``run()`` only raises
:class:`~memdex.errors.StorageError`.
"""

from __future__ import annotations

import logging
import sqlite3
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Sequence

from memdex.db.models import Chunk, FileRecord
from memdex.db.repository import Repository, now_ms
from memdex.errors import EmbeddingError, StorageError
from memdex.ingest.base import BaseChunker, chunk_id
from memdex.ingest.embeddings import EmbeddingGateway
from memdex.sources.base import (
    EXTERNAL_NOTES,
    FOREIGN_TRANSCRIPTS,
    NOTES,
    TRANSCRIPTS,
    SourceAdapter,
    SourceEntry,
)
from memdex.sync.detector import INCREMENTAL, UNCHANGED, classify
from memdex.sync.progress import SyncProgress

logger = logging.getLogger(__name__)

_SOURCE_LABELS = {
    NOTES: "notes",
    TRANSCRIPTS: "transcripts",
    FOREIGN_TRANSCRIPTS: "foreign sessions",
    EXTERNAL_NOTES: "external notes",
}


@dataclass
class SyncReport:
    """Outcome of one sync call.

    Attributes:
        mode: ``incremental``, ``repair`` or ``full``.
        indexed: Files (re)written.
        skipped: Files left alone: unchanged or excluded by provenance.
        failed: Files whose processing failed; they are retried next sync.
        removed: Stale files deleted because their adapter no longer lists them.
        failed_sources: Sources whose listing failed; nothing of theirs was
            deleted.
    """

    mode: str
    indexed: int = 0
    skipped: int = 0
    failed: int = 0
    removed: int = 0
    failed_sources: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed_sources


class SyncController:
    """Run sync passes over a fixed set of adapters against one repository.

    Args:
        repo: Target repository (the live store, or a rebuild temp store).
        adapters: Enabled source adapters, processed in this order.
        chunker: Chunker applied to every entry.
        gateway: Embedding gateway; its model is stamped on every chunk.
        concurrency: Worker threads per source.
    """

    def __init__(
        self,
        repo: Repository,
        adapters: Sequence[SourceAdapter],
        chunker: BaseChunker,
        gateway: EmbeddingGateway,
        concurrency: int = 4,
    ) -> None:
        self.repo = repo
        self.adapters = list(adapters)
        self.chunker = chunker
        self.gateway = gateway
        self.concurrency = max(1, concurrency)
        self.vector_dims: int | None = None

    def run(self, mode: str = INCREMENTAL, progress: SyncProgress | None = None) -> SyncReport:
        """Sync every adapter once.

        Args:
            mode: ``incremental`` skips entries whose hash is unchanged; any
                other mode re-indexes every entry.
            progress: Optional progress sink.

        Raises:
            StorageError: If the store cannot be written.
        """
        report = SyncReport(mode=mode)
        index_all = mode != INCREMENTAL
        progress = progress or SyncProgress()

        for adapter in self.adapters:
            try:
                self._sync_source(adapter, index_all, report, progress)
            except StorageError:
                raise
            except Exception:
                logger.exception("sync of source '%s' failed; keeping its indexed files", adapter.source)
                report.failed_sources.append(adapter.source)

        logger.info(
            "sync (%s): %d indexed, %d skipped, %d failed, %d removed",
            mode,
            report.indexed,
            report.skipped,
            report.failed,
            report.removed,
        )
        return report

    # ------------------------------------------------------------------
    # Per-source pass
    # ------------------------------------------------------------------

    def _sync_source(
        self,
        adapter: SourceAdapter,
        index_all: bool,
        report: SyncReport,
        progress: SyncProgress,
    ) -> None:
        source = adapter.source
        excluded_ids = adapter.load_exclusions()
        entries = list(adapter.list_entries())

        label = f"Indexing {_SOURCE_LABELS.get(source, source)}"
        label += " (batch)..." if self.gateway.batch_enabled else "..."
        progress.add_total(len(entries), label=label)

        # Every listed path is active, excluded or not; only unlisted paths are stale.
        active = {entry.path for entry in entries}
        todo: list[SourceEntry] = []
        for entry in entries:
            if entry.source_id is not None and entry.source_id in excluded_ids:
                report.skipped += 1
                progress.advance()
                continue
            todo.append(entry)

        logger.debug(
            "source %s: %d entries, %d excluded, index_all=%s",
            source,
            len(entries),
            len(entries) - len(todo),
            index_all,
        )

        with ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix="memdex-sync") as pool:
            futures: dict[Future[bool], SourceEntry] = {
                pool.submit(self._index_entry, source, entry, index_all): entry for entry in todo
            }
            for future in as_completed(futures):
                entry = futures[future]
                try:
                    written = future.result()
                except StorageError:
                    for pending in futures:
                        pending.cancel()
                    raise
                except EmbeddingError as exc:
                    logger.warning("could not embed %s: %s", entry.path, exc)
                    report.failed += 1
                except Exception:
                    logger.exception("could not index %s", entry.path)
                    report.failed += 1
                else:
                    if written:
                        report.indexed += 1
                    else:
                        report.skipped += 1
                finally:
                    progress.advance()

        report.removed += self._remove_stale(source, active)

    def _index_entry(self, source: str, entry: SourceEntry, index_all: bool) -> bool:
        """Chunk, embed and store one entry. Returns False if it was unchanged."""
        if not index_all:
            stored = self.repo.get_file_hash(entry.path, source)
            if classify(entry.hash, stored) == UNCHANGED:
                return False

        pieces = self.chunker.chunk(entry.content)
        vectors = self.gateway.embed_batch([p.text for p in pieces])
        if vectors and self.vector_dims is None:
            self.vector_dims = len(vectors[0])

        model = self.gateway.model
        stamp = now_ms()
        chunks: list[Chunk] = []
        seen: set[str] = set()
        for piece, vector in zip(pieces, vectors):
            cid = chunk_id(source, entry.path, piece.start_line, piece.end_line, piece.hash, model)
            # Identical windows cut from one long line share an id; store one.
            if cid in seen:
                continue
            seen.add(cid)
            chunks.append(
                Chunk(
                    id=cid,
                    path=entry.path,
                    source=source,
                    project=entry.project,
                    start_line=piece.start_line,
                    end_line=piece.end_line,
                    hash=piece.hash,
                    model=model,
                    text=piece.text,
                    embedding=vector,
                    updated_at=stamp,
                )
            )
        record = FileRecord(
            path=entry.path,
            source=source,
            hash=entry.hash,
            project=entry.project,
            mtime=entry.mtime,
            size=entry.size,
        )
        try:
            self.repo.replace_file(record, chunks)
        except sqlite3.Error as exc:
            raise StorageError(f"could not write {entry.path}: {exc}") from exc
        return True

    def _remove_stale(self, source: str, active: set[str]) -> int:
        """Delete every stored path of *source* that is not in *active*."""
        removed = 0
        try:
            for path in self.repo.list_paths(source):
                if path in active:
                    continue
                self.repo.delete_file(path, source)
                removed += 1
                logger.debug("removed stale %s file %s", source, path)
        except sqlite3.Error as exc:
            raise StorageError(f"could not remove stale {source} files: {exc}") from exc
        return removed
