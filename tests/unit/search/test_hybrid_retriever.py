"""Tests for the hybrid retriever (vector + keyword merge)."""

from __future__ import annotations

import math
import sqlite3

import pytest
from conftest import FakeEmbeddingProvider, bow_vector, requires_vec

from memdex.db.models import Chunk, FileRecord
from memdex.db.repository import Repository
from memdex.ingest.embeddings import EmbeddingGateway
from memdex.search.retriever import (
    HybridRetriever,
    RetrieverConfig,
    bm25_rank_to_score,
    build_fts_query,
    cosine_similarity,
    merge_hybrid,
)

MODEL = "fake/bow-64"

_DOCS = [
    ("/n/k8s.md", "notes", None, "kubernetes cluster upgrade runbook"),
    ("/n/bread.md", "notes", None, "banana bread recipe with walnuts"),
    ("/p/alpha/context/design.md", "external-notes", "alpha", "kubernetes deployment plan for alpha"),
    ("/t/s1.jsonl", "transcripts", None, "User: how do I upgrade kubernetes safely"),
]


def _fill(repo: Repository) -> None:
    for path, source, project, text in _DOCS:
        repo.replace_file(
            FileRecord(path=path, source=source, hash=f"h-{path}", project=project),
            [
                Chunk(
                    id=f"id-{path}",
                    path=path,
                    source=source,
                    project=project,
                    start_line=1,
                    end_line=1,
                    hash=f"c-{path}",
                    model=MODEL,
                    text=text,
                    embedding=bow_vector(text),
                )
            ],
        )


@pytest.fixture
def plain_repo(tmp_db):
    repo = Repository(tmp_db, vector_available=False)
    _fill(repo)
    return repo


def _retriever(repo, provider=None, **config):
    config.setdefault("min_score", 0.0)
    gateway = EmbeddingGateway(provider or FakeEmbeddingProvider(), repo=repo)
    return HybridRetriever(repo, gateway, RetrieverConfig(**config))


# ------------------------------------------------------------------
# Scoring helpers
# ------------------------------------------------------------------

def test_build_fts_query_quotes_tokens():
    assert build_fts_query("foo-bar baz") == '"foo" AND "bar" AND "baz"'
    assert build_fts_query('what "is" NEAR(x)') == '"what" AND "is" AND "NEAR" AND "x"'


def test_build_fts_query_without_tokens():
    assert build_fts_query("?!  --") is None


@pytest.mark.parametrize(
    ("rank", "score"),
    [(-1.0, 0.5), (-3.0, 0.75), (0.0, 0.0), (2.0, 0.0), (float("-inf"), 0.0), (float("nan"), 0.0)],
)
def test_bm25_rank_to_score(rank, score):
    assert bm25_rank_to_score(rank) == pytest.approx(score)


def test_bm25_score_monotonic():
    assert bm25_rank_to_score(-5.0) > bm25_rank_to_score(-2.0) > bm25_rank_to_score(-0.1)


def test_cosine_similarity():
    assert cosine_similarity([1.0, 0.0], [1.0, 0.0]) == pytest.approx(1.0)
    assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)
    assert cosine_similarity([1.0, 0.0], [1.0]) == 0.0
    assert cosine_similarity([0.0, 0.0], [1.0, 0.0]) == 0.0


def _c(id: str) -> Chunk:
    return Chunk(id=id, path=id, source="notes", start_line=1, end_line=1, hash=id, model=MODEL, text=id)


def test_merge_hybrid_weights_and_dedups():
    a, b, c = _c("a"), _c("b"), _c("c")
    ranked = merge_hybrid([(a, 0.8), (b, 0.4)], [(b, 0.9), (c, 0.5)], 0.7, 0.3)
    scores = {chunk.id: score for chunk, score in ranked}
    assert scores == pytest.approx({"a": 0.56, "b": 0.55, "c": 0.15})
    assert [chunk.id for chunk, _ in ranked] == ["a", "b", "c"]


def test_merge_hybrid_ties_keep_first_seen_order():
    a, b = _c("a"), _c("b")
    ranked = merge_hybrid([(a, 0.4)], [(b, 0.4)], 0.5, 0.5)
    assert [chunk.id for chunk, _ in ranked] == ["a", "b"]


# ------------------------------------------------------------------
# Guards
# ------------------------------------------------------------------

def test_invalid_mode_raises(plain_repo):
    with pytest.raises(ValueError, match="Unknown retrieval mode"):
        _retriever(plain_repo).search("kubernetes", mode="semantic")


def test_empty_query_returns_nothing(plain_repo):
    provider = FakeEmbeddingProvider()
    assert _retriever(plain_repo, provider).search("   ") == []
    assert provider.calls == []


def test_empty_store_returns_nothing(tmp_db):
    provider = FakeEmbeddingProvider()
    repo = Repository(tmp_db)
    assert _retriever(repo, provider).search("kubernetes") == []
    assert provider.calls == []


# ------------------------------------------------------------------
# Modes
# ------------------------------------------------------------------

def test_keyword_mode_scores_from_bm25(plain_repo):
    results = _retriever(plain_repo, mode="keyword").search("kubernetes upgrade")
    paths = {r.path for r in results}
    assert paths == {"/n/k8s.md", "/t/s1.jsonl"}
    hits = plain_repo.search_fts('"kubernetes" AND "upgrade"', MODEL)
    expected = {c.path: bm25_rank_to_score(rank) for c, rank in hits}
    assert {r.path: r.score for r in results} == pytest.approx(expected)


def test_vector_mode_brute_force_ranks_by_similarity(plain_repo):
    query = "kubernetes cluster upgrade"
    results = _retriever(plain_repo, mode="vector").search(query)
    assert results[0].path == "/n/k8s.md"
    expected = cosine_similarity(bow_vector(query), bow_vector(_DOCS[0][3]))
    assert results[0].score == pytest.approx(expected)
    assert [r.score for r in results] == sorted((r.score for r in results), reverse=True)


def test_hybrid_mode_merges_both_paths(plain_repo):
    query = "kubernetes upgrade"
    results = _retriever(plain_repo).search(query)
    by_path = {r.path: r for r in results}

    (k8s_hit,) = [rank for c, rank in plain_repo.search_fts('"kubernetes" AND "upgrade"', MODEL) if c.path == "/n/k8s.md"]
    vector = cosine_similarity(bow_vector(query), bow_vector(_DOCS[0][3]))
    assert by_path["/n/k8s.md"].score == pytest.approx(0.7 * vector + 0.3 * bm25_rank_to_score(k8s_hit))

    bread = cosine_similarity(bow_vector(query), bow_vector(_DOCS[1][3]))
    if "/n/bread.md" in by_path:
        assert by_path["/n/bread.md"].score == pytest.approx(0.7 * bread)
    assert len({r.path for r in results}) == len(results)


def test_result_fields(plain_repo):
    (result,) = _retriever(plain_repo, mode="keyword").search("walnuts")
    assert result.path == "/n/bread.md"
    assert (result.start_line, result.end_line) == (1, 1)
    assert result.source == "notes"
    assert result.project is None
    assert result.snippet == "banana bread recipe with walnuts"


def test_snippet_bounded(plain_repo):
    (result,) = _retriever(plain_repo, mode="keyword", snippet_max_chars=6).search("walnuts")
    assert result.snippet == "banana"


# ------------------------------------------------------------------
# Filters and limits
# ------------------------------------------------------------------

def test_project_filter_is_exact(plain_repo):
    results = _retriever(plain_repo).search("kubernetes", project="alpha")
    assert [r.path for r in results] == ["/p/alpha/context/design.md"]


def test_unknown_project_matches_nothing(plain_repo):
    assert _retriever(plain_repo).search("kubernetes", project="beta") == []


def test_source_filter(plain_repo):
    results = _retriever(plain_repo).search("kubernetes", sources=["transcripts"])
    assert {r.source for r in results} == {"transcripts"}


def test_max_results_truncates(plain_repo):
    assert len(_retriever(plain_repo).search("kubernetes", max_results=2)) == 2


def test_min_score_drops_weak_results(plain_repo):
    everything = _retriever(plain_repo).search("kubernetes upgrade")
    threshold = everything[1].score + 1e-9
    strict = _retriever(plain_repo).search("kubernetes upgrade", min_score=threshold)
    assert [r.path for r in strict] == [everything[0].path]


# ------------------------------------------------------------------
# Degradation
# ------------------------------------------------------------------

def test_embedding_failure_falls_back_to_keyword(plain_repo):
    results = _retriever(plain_repo, FakeEmbeddingProvider(fail=True)).search("walnuts")
    assert [r.path for r in results] == ["/n/bread.md"]
    assert results[0].score < 1.0


def test_vector_mode_falls_back_to_keyword_when_embedding_fails(plain_repo):
    results = _retriever(plain_repo, FakeEmbeddingProvider(fail=True), mode="vector").search("walnuts")
    assert [r.path for r in results] == ["/n/bread.md"]


def test_fts_failure_falls_back_to_vector(plain_repo, monkeypatch):
    def _broken(*args, **kwargs):
        raise sqlite3.OperationalError("no such module: fts5")

    monkeypatch.setattr(plain_repo, "search_fts", _broken)
    query = "banana bread"
    results = _retriever(plain_repo).search(query)
    assert results[0].path == "/n/bread.md"
    expected = cosine_similarity(bow_vector(query), bow_vector(_DOCS[1][3]))
    assert results[0].score == pytest.approx(expected)


def test_query_without_tokens_uses_vector_only(plain_repo):
    results = _retriever(plain_repo).search("???")
    assert all(not math.isnan(r.score) for r in results)
    assert len(results) == len(_DOCS)


# ------------------------------------------------------------------
# sqlite-vec path
# ------------------------------------------------------------------

@requires_vec
def test_vec_table_matches_brute_force(repo):
    _fill(repo)
    assert repo.has_vec_table(MODEL)
    query = "kubernetes cluster upgrade"
    indexed = _retriever(repo, mode="vector").search(query)

    expected = cosine_similarity(bow_vector(query), bow_vector(_DOCS[0][3]))
    assert indexed[0].path == "/n/k8s.md"
    assert indexed[0].score == pytest.approx(expected, abs=1e-5)
