"""Domain models for the index database layer."""

from __future__ import annotations

import json
from dataclasses import dataclass, field


@dataclass
class FileRecord:
    path: str
    source: str
    hash: str
    project: str | None = None
    mtime: int = 0
    size: int = 0


@dataclass
class Chunk:
    id: str
    path: str
    source: str
    start_line: int
    end_line: int
    hash: str
    model: str
    text: str
    project: str | None = None
    embedding: list[float] = field(default_factory=list)
    updated_at: int = 0
    seq: int | None = None  # set after insert; None for unsaved chunks

    @property
    def embedding_json(self) -> str:
        return json.dumps(self.embedding)


@dataclass
class SyncMeta:
    """Process-wide sync metadata, written only after a successful sync pass.

    Attributes:
        schema_version: Schema version the index was built against.
        provider: Embedding provider id (e.g. ``openai``).
        model: Embedding model string.
        chunk_size: Chunker budget in tokens.
        overlap: Chunker overlap fraction.
        vector_dims: Embedding dimensionality observed during the last pass,
            or None if nothing has been embedded yet.
        last_full_reindex_at: Epoch milliseconds of the last completed full
            reindex, or None.
    """

    schema_version: int
    provider: str
    model: str
    chunk_size: int
    overlap: float
    vector_dims: int | None = None
    last_full_reindex_at: int | None = None

    def to_json(self) -> str:
        return json.dumps(
            {
                "schema_version": self.schema_version,
                "provider": self.provider,
                "model": self.model,
                "chunk_size": self.chunk_size,
                "overlap": self.overlap,
                "vector_dims": self.vector_dims,
                "last_full_reindex_at": self.last_full_reindex_at,
            }
        )

    @classmethod
    def from_json(cls, raw: str) -> SyncMeta | None:
        try:
            data = json.loads(raw)
            return cls(
                schema_version=int(data["schema_version"]),
                provider=str(data["provider"]),
                model=str(data["model"]),
                chunk_size=int(data["chunk_size"]),
                overlap=float(data["overlap"]),
                vector_dims=data.get("vector_dims"),
                last_full_reindex_at=data.get("last_full_reindex_at"),
            )
        except (ValueError, KeyError, TypeError):
            return None


@dataclass
class SourceCount:
    source: str
    files: int
    chunks: int
