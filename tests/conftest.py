"""Shared pytest fixtures."""

from __future__ import annotations

import hashlib
import math
import re
from pathlib import Path

import pytest
import yaml

from memdex.config import MemdexConfig
from memdex.db.connection import Database
from memdex.db.repository import Repository
from memdex.db.schema import initialize
from memdex.errors import EmbeddingError
from memdex.index import MemoryIndex
from memdex.ingest.providers import EmbeddingProvider

FAKE_DIMS = 64
_WORD_RE = re.compile(r"[a-z0-9]+")


def bow_vector(text: str, dims: int = FAKE_DIMS) -> list[float]:
    """Deterministic bag-of-words vector: texts sharing words point the same way."""
    vec = [0.0] * dims
    for token in _WORD_RE.findall(text.lower()):
        bucket = int(hashlib.md5(token.encode("utf-8")).hexdigest(), 16) % dims
        vec[bucket] += 1.0
    norm = math.sqrt(sum(v * v for v in vec))
    if norm == 0.0:
        vec[0] = 1.0
        return vec
    return [v / norm for v in vec]


class FakeEmbeddingProvider(EmbeddingProvider):
    """In-process provider recording every call; optionally failing."""

    def __init__(self, model: str = "fake/bow-64", dims: int = FAKE_DIMS, fail: bool = False) -> None:
        self.model = model
        self.id = model.split("/")[0]
        self.dims = dims
        self.fail = fail
        self.fail_on: set[str] = set()
        self.calls: list[list[str]] = []

    def embed(self, texts: list[str]) -> list[list[float]]:
        self.calls.append(list(texts))
        if self.fail or any(marker in t for t in texts for marker in self.fail_on):
            raise EmbeddingError("fake provider unavailable")
        return [bow_vector(t, self.dims) for t in texts]

    @property
    def embedded_texts(self) -> list[str]:
        return [t for call in self.calls for t in call]


def vec_extension_available() -> bool:
    db = Database(":memory:")
    conn = db.connect()
    conn.close()
    return db.vector_available


requires_vec = pytest.mark.skipif(
    not vec_extension_available(), reason="sqlite-vec extension cannot be loaded here"
)


@pytest.fixture
def tmp_db(tmp_path):
    """File-based DB in tmp_path with schema initialized, closed after test."""
    db = Database(tmp_path / "index.db")
    conn = db.connect()
    initialize(conn)
    yield conn
    conn.close()


@pytest.fixture
def repo(tmp_path):
    """Repository over a fresh, initialised database file."""
    db = Database(tmp_path / "repo.db")
    conn = db.connect()
    initialize(conn)
    yield Repository(conn, vector_available=db.vector_available)
    conn.close()


@pytest.fixture
def fake_provider() -> FakeEmbeddingProvider:
    return FakeEmbeddingProvider()


@pytest.fixture
def memdex_config(tmp_path: Path) -> MemdexConfig:
    """Config with every source enabled and rooted under tmp_path."""
    cfg = MemdexConfig()
    cfg.store.path = str(tmp_path / "index.db")
    cfg.sources.notes.paths = [str(tmp_path / "notes")]
    cfg.sources.transcripts.path = str(tmp_path / "transcripts")
    cfg.sources.foreign_transcripts.enabled = True
    cfg.sources.foreign_transcripts.path = str(tmp_path / "foreign")
    cfg.sources.foreign_transcripts.session_store = str(tmp_path / "sessions.json")
    cfg.sources.external_notes.enabled = True
    cfg.sources.external_notes.root = str(tmp_path / "projects")
    cfg.query.min_score = 0.0
    cfg.sync.concurrency = 2
    return cfg


@pytest.fixture
def make_index(memdex_config, fake_provider):
    """Factory for MemoryIndex instances over memdex_config; all closed at teardown."""
    opened: list[MemoryIndex] = []

    def _make(config: MemdexConfig | None = None, provider: EmbeddingProvider | None = None) -> MemoryIndex:
        index = MemoryIndex(config or memdex_config, provider=provider or fake_provider)
        opened.append(index)
        return index

    yield _make
    for index in opened:
        index.close()


@pytest.fixture
def cli_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> dict:
    """Write a config dir, chdir to tmp_path and route the CLI to a fake provider.

    Returns a dict with ``args`` (the ``--config-dir`` prefix), ``notes``
    (the notes directory) and ``provider``.
    """
    config_dir = tmp_path / "cfg"
    config_dir.mkdir()
    notes = tmp_path / "notes"
    notes.mkdir()
    (config_dir / "config.yaml").write_text(
        yaml.dump(
            {
                "store": {"path": str(tmp_path / "index.db"), "vector": False},
                "query": {"min_score": 0.0},
                "sources": {
                    "notes": {"paths": [str(notes)]},
                    "transcripts": {"path": str(tmp_path / "transcripts")},
                },
            }
        ),
        encoding="utf-8",
    )
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test-key")
    monkeypatch.delenv("MEMDEX_DB_PATH", raising=False)
    monkeypatch.delenv("MEMDEX_EMBEDDING_MODEL", raising=False)

    provider = FakeEmbeddingProvider()
    monkeypatch.setattr(
        "memdex.cli.common.MemoryIndex", lambda cfg: MemoryIndex(cfg, provider=provider)
    )
    return {"args": ["--config-dir", str(config_dir)], "notes": notes, "provider": provider}
