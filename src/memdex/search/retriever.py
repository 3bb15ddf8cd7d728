"""Hybrid retriever: cosine similarity (sqlite-vec) + BM25 (FTS5), weighted merge.

Vector path:
  score = 1 - cosine_distance, via vec_distance_cosine() on the model's vec
  table, or a brute-force scan of stored embeddings when sqlite-vec is
  unavailable.

Keyword path:
  FTS5 MATCH over quoted alphanumeric tokens joined with AND; the raw bm25()
  rank r_raw (negative, lower is better) maps to r / (1 + r) with r = -r_raw.

Merge:
  score = vector_weight * vector_score + text_weight * text_score
  per chunk id, stable-sorted descending (ties keep vector-first order).
"""

from __future__ import annotations

import logging
import math
import re
import sqlite3
from dataclasses import dataclass
from typing import Sequence

from memdex.db.models import Chunk
from memdex.db.repository import Repository
from memdex.errors import EmbeddingError
from memdex.ingest.embeddings import EmbeddingGateway
from memdex.search.snippets import truncate_snippet

logger = logging.getLogger(__name__)

HYBRID = "hybrid"
VECTOR = "vector"
KEYWORD = "keyword"
MODES = (HYBRID, VECTOR, KEYWORD)

_MAX_CANDIDATES = 200
_TOKEN_RE = re.compile(r"[A-Za-z0-9_]+")


@dataclass
class RetrieverConfig:
    """Configuration for the hybrid retriever.

    Attributes:
        mode: Retrieval mode: 'hybrid' (vector + keyword), 'vector', or 'keyword'.
        max_results: Maximum number of results returned.
        min_score: Results scoring below this are dropped.
        vector_weight: Weight of the vector score in the merged score.
        text_weight: Weight of the keyword score in the merged score.
        candidate_multiplier: Each path fetches ``max_results * multiplier``
            candidates (capped at 200) before merging.
        snippet_max_chars: Snippet length limit in code points.
    """

    mode: str = HYBRID              # hybrid | vector | keyword
    max_results: int = 6
    min_score: float = 0.35
    vector_weight: float = 0.7
    text_weight: float = 0.3
    candidate_multiplier: int = 4
    snippet_max_chars: int = 700


@dataclass
class SearchResult:
    path: str
    start_line: int
    end_line: int
    score: float
    snippet: str
    source: str
    project: str | None = None


def build_fts_query(raw: str) -> str | None:
    """Turn free text into an FTS5 expression, or None if it has no tokens.

    Example: ``foo-bar baz`` -> ``"foo" AND "bar" AND "baz"``
    """
    tokens = _TOKEN_RE.findall(raw)
    if not tokens:
        return None
    return " AND ".join(f'"{token}"' for token in tokens)


def bm25_rank_to_score(rank: float) -> float:
    """Map a raw bm25() rank to a score in [0, 1); better matches score higher."""
    if not math.isfinite(rank):
        return 0.0
    relevance = max(0.0, -rank)
    return relevance / (1.0 + relevance)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return dot / (norm_a * norm_b)


def merge_hybrid(
    vector_hits: list[tuple[Chunk, float]],
    keyword_hits: list[tuple[Chunk, float]],
    vector_weight: float,
    text_weight: float,
) -> list[tuple[Chunk, float]]:
    """Merge both candidate lists into one weighted, deduplicated ranking.

    A chunk missing from one list scores 0 on that side. The sort is stable,
    so equal scores keep their first-seen order (vector hits before
    keyword-only hits).
    """
    merged: dict[str, list] = {}
    for chunk, score in vector_hits:
        merged.setdefault(chunk.id, [chunk, 0.0, 0.0])[1] = score
    for chunk, score in keyword_hits:
        merged.setdefault(chunk.id, [chunk, 0.0, 0.0])[2] = score

    ranked = [
        (chunk, vector_weight * v_score + text_weight * t_score)
        for chunk, v_score, t_score in merged.values()
    ]
    ranked.sort(key=lambda item: item[1], reverse=True)
    return ranked


class HybridRetriever:
    """Run queries against one repository with one embedding model.

    Args:
        repo: Repository to search.
        gateway: Embedding gateway used for query vectors; its model
            restricts every search to chunks embedded with that model.
        config: Retrieval defaults; per-call arguments override them.
    """

    def __init__(
        self,
        repo: Repository,
        gateway: EmbeddingGateway,
        config: RetrieverConfig | None = None,
    ) -> None:
        self.repo = repo
        self.gateway = gateway
        self.config = config or RetrieverConfig()

    def search(
        self,
        query: str,
        max_results: int | None = None,
        min_score: float | None = None,
        sources: Sequence[str] | None = None,
        project: str | None = None,
        mode: str | None = None,
    ) -> list[SearchResult]:
        """Return ranked results for *query*, best first.

        Raises:
            ValueError: If *mode* is not one of hybrid, vector, keyword.
        """
        cfg = self.config
        mode = mode or cfg.mode
        if mode not in MODES:
            raise ValueError(f"Unknown retrieval mode '{mode}'; use one of {', '.join(MODES)}.")
        query = query.strip()
        if not query:
            return []
        max_results = cfg.max_results if max_results is None else max_results
        min_score = cfg.min_score if min_score is None else min_score
        if max_results <= 0 or self.repo.count_chunks() == 0:
            return []
        candidates = min(_MAX_CANDIDATES, max(1, max_results * cfg.candidate_multiplier))
        sources = list(sources) if sources else None

        vector_hits: list[tuple[Chunk, float]] | None = None
        keyword_hits: list[tuple[Chunk, float]] | None = None

        if mode in (HYBRID, VECTOR):
            vector_hits = self._search_vector(query, candidates, sources, project)
        if mode in (HYBRID, KEYWORD) or vector_hits is None:
            keyword_hits = self._search_keyword(query, candidates, sources, project)

        if vector_hits is not None and keyword_hits is not None:
            ranked = merge_hybrid(vector_hits, keyword_hits, cfg.vector_weight, cfg.text_weight)
        else:
            ranked = vector_hits or keyword_hits or []

        return [
            self._to_result(chunk, score)
            for chunk, score in ranked
            if score >= min_score
        ][:max_results]

    # ------------------------------------------------------------------
    # Vector path
    # ------------------------------------------------------------------

    def _search_vector(
        self,
        query: str,
        limit: int,
        sources: list[str] | None,
        project: str | None,
    ) -> list[tuple[Chunk, float]] | None:
        """Return (chunk, similarity) pairs, or None if the query could not be embedded."""
        try:
            query_vec = self.gateway.embed_query(query)
        except EmbeddingError as exc:
            logger.warning("query embedding failed, using keyword search only: %s", exc)
            return None

        model = self.gateway.model
        if self.repo.has_vec_table(model):
            hits = self.repo.search_vec(query_vec, model, limit=limit, sources=sources, project=project)
            return [(chunk, 1.0 - dist) for chunk, dist in hits]

        # sqlite-vec unavailable: brute-force cosine over stored embeddings
        scored = [
            (chunk, cosine_similarity(query_vec, chunk.embedding))
            for chunk in self.repo.list_chunks(model, sources=sources, project=project)
            if chunk.embedding
        ]
        scored.sort(key=lambda item: item[1], reverse=True)
        return scored[:limit]

    # ------------------------------------------------------------------
    # Keyword path
    # ------------------------------------------------------------------

    def _search_keyword(
        self,
        query: str,
        limit: int,
        sources: list[str] | None,
        project: str | None,
    ) -> list[tuple[Chunk, float]] | None:
        """Return (chunk, text score) pairs, or None if full-text search is unavailable."""
        fts_query = build_fts_query(query)
        if fts_query is None:
            return []
        try:
            hits = self.repo.search_fts(
                fts_query, self.gateway.model, limit=limit, sources=sources, project=project
            )
        except sqlite3.OperationalError as exc:
            logger.warning("full-text search unavailable: %s", exc)
            return None
        return [(chunk, bm25_rank_to_score(rank)) for chunk, rank in hits]

    def _to_result(self, chunk: Chunk, score: float) -> SearchResult:
        return SearchResult(
            path=chunk.path,
            start_line=chunk.start_line,
            end_line=chunk.end_line,
            score=score,
            snippet=truncate_snippet(chunk.text, self.config.snippet_max_chars),
            source=chunk.source,
            project=chunk.project,
        )
