"""Embedding gateway: cache lookup, dedup, batching and bounded provider calls.

Every text is looked up in the persistent embedding cache by
``(provider, model, sha256(text))`` before the provider is called. Texts that
miss are deduplicated, grouped into batches bounded by the batch size and a
token budget, and sent to the provider with at most ``concurrency`` calls in
flight across all threads. Fresh vectors are written back to the cache as
soon as they arrive.
"""

from __future__ import annotations

import logging
import threading
from typing import Iterator

from memdex.db.repository import Repository
from memdex.errors import EmbeddingError
from memdex.ingest.base import BaseChunker
from memdex.ingest.providers import BatchJobRunner, EmbeddingProvider
from memdex.sources.base import content_hash

logger = logging.getLogger(__name__)

MAX_BATCH_TOKENS = 8000


class EmbeddingGateway:
    """Turn texts into vectors through the cache and the configured provider.

    Args:
        provider: Synchronous embedding provider.
        repo: Repository holding the embedding cache, or None to disable
            caching.
        batch_size: Maximum number of texts per provider call.
        concurrency: Maximum provider calls in flight at once.
        batch_runner: Optional batch-job runner; when set, pending texts go
            through a batch job first.
        batch_failure_limit: Consecutive batch-job failures after which job
            mode is switched off for the rest of the process.

    Attributes:
        dims: Expected vector width, once known. Cached vectors of any other
            width are ignored.
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        repo: Repository | None = None,
        batch_size: int = 64,
        concurrency: int = 4,
        batch_runner: BatchJobRunner | None = None,
        batch_failure_limit: int = 2,
        max_batch_tokens: int = MAX_BATCH_TOKENS,
    ) -> None:
        self.provider = provider
        self.repo = repo
        self.batch_size = max(1, batch_size)
        self.max_batch_tokens = max_batch_tokens
        self.batch_runner = batch_runner
        self.dims: int | None = None
        self.batch_failure_limit = max(1, batch_failure_limit)
        self._semaphore = threading.BoundedSemaphore(max(1, concurrency))
        self._batch_lock = threading.Lock()
        self._batch_failures = 0
        self._batch_disabled = False

    @property
    def model(self) -> str:
        return self.provider.model

    @property
    def batch_enabled(self) -> bool:
        """True while batch-job mode is configured and has not been switched off."""
        return self.batch_runner is not None and not self._batch_disabled

    def embed_query(self, text: str) -> list[float]:
        """Embed a single search query. Queries bypass the cache."""
        return self._call_provider([text])[0]

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Return one vector per text, in input order.

        Raises:
            EmbeddingError: If the provider fails for any text that was not
                cached.
        """
        if not texts:
            return []
        hashes = [content_hash(t) for t in texts]
        known = self._cached(hashes)

        pending: dict[str, str] = {}
        for h, text in zip(hashes, texts):
            if h not in known and h not in pending:
                pending[h] = text

        if pending:
            fresh = self._embed_pending(pending)
            if self.repo is not None:
                self.repo.put_cached_embeddings(self.provider.id, self.model, fresh)
            known.update(fresh)

        logger.debug(
            "embedded %d text(s): %d cached, %d fresh", len(texts), len(texts) - len(pending), len(pending)
        )
        return [known[h] for h in hashes]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _cached(self, hashes: list[str]) -> dict[str, list[float]]:
        if self.repo is None:
            return {}
        return self.repo.get_cached_embeddings(self.provider.id, self.model, hashes, dims=self.dims)

    def _embed_pending(self, pending: dict[str, str]) -> dict[str, list[float]]:
        hashes = list(pending)
        texts = [pending[h] for h in hashes]

        if self.batch_enabled:
            vectors = self._try_batch_job(texts)
            if vectors is not None:
                return dict(zip(hashes, vectors))

        result: dict[str, list[float]] = {}
        for start, end in self._groups(texts):
            vectors = self._call_provider(texts[start:end])
            result.update(zip(hashes[start:end], vectors))
        return result

    def _try_batch_job(self, texts: list[str]) -> list[list[float]] | None:
        """Run a batch job; on failure count it and return None for the sync fallback."""
        assert self.batch_runner is not None
        try:
            with self._semaphore:
                vectors = self.batch_runner.run(texts)
        except EmbeddingError as exc:
            with self._batch_lock:
                self._batch_failures += 1
                if self._batch_failures >= self.batch_failure_limit and not self._batch_disabled:
                    self._batch_disabled = True
                    logger.warning(
                        "embedding batch jobs failed %d times; using synchronous calls from now on",
                        self._batch_failures,
                    )
            logger.warning("embedding batch job failed, falling back to synchronous calls: %s", exc)
            return None
        with self._batch_lock:
            self._batch_failures = 0
        return vectors

    def _groups(self, texts: list[str]) -> Iterator[tuple[int, int]]:
        """Yield ``(start, end)`` slices bounded by batch size and token budget."""
        start = 0
        tokens = 0
        for i, text in enumerate(texts):
            cost = BaseChunker.count_tokens(text)
            if i > start and (i - start >= self.batch_size or tokens + cost > self.max_batch_tokens):
                yield start, i
                start, tokens = i, 0
            tokens += cost
        if start < len(texts):
            yield start, len(texts)

    def _call_provider(self, texts: list[str]) -> list[list[float]]:
        with self._semaphore:
            vectors = self.provider.embed(texts)
        if len(vectors) != len(texts):
            raise EmbeddingError(
                f"provider returned {len(vectors)} embeddings for {len(texts)} inputs"
            )
        return vectors
