"""Base chunker interface and the chunk identity helper."""

from __future__ import annotations

import hashlib
from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass(frozen=True)
class TextChunk:
    """A passage of a source entry, before it is embedded.

    Attributes:
        text: Passage text (whole lines joined by newlines).
        start_line: 1-based first line of the passage in the entry content.
        end_line: 1-based last line (inclusive).
        hash: SHA-256 hex digest of *text*; the embedding cache key.
    """

    text: str
    start_line: int
    end_line: int
    hash: str


def chunk_id(source: str, path: str, start_line: int, end_line: int, text_hash: str, model: str) -> str:
    """Deterministic chunk id: identical input always yields the identical id."""
    key = f"{source}:{path}:{start_line}:{end_line}:{text_hash}:{model}"
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


class BaseChunker(ABC):
    """Abstract base for all chunkers.

    Token counting uses a 4-chars-per-token approximation; no external
    tokenizer dependency is required.
    """

    def __init__(self, chunk_size: int = 400, overlap: float = 0.20) -> None:
        if chunk_size < 1:
            raise ValueError("chunk_size must be >= 1")
        if not 0.0 <= overlap < 1.0:
            raise ValueError("overlap must be in [0.0, 1.0)")
        self.chunk_size = chunk_size
        self.overlap = overlap

    @abstractmethod
    def chunk(self, content: str) -> list[TextChunk]:
        """Split *content* into ordered TextChunk passages.

        Args:
            content: Full normalised text of one source entry.

        Returns:
            Passages in document order. Blank content yields an empty list.
        """

    @staticmethod
    def count_tokens(text: str) -> int:
        """Approximate token count: 4 characters ≈ 1 token.

        Fast, dependency-free approximation consistent with GPT tokeniser
        averages for English prose and technical documentation.
        """
        return max(1, len(text) // 4)

    @property
    def max_chars(self) -> int:
        """Passage budget in characters (``chunk_size * 4``)."""
        return max(32, self.chunk_size * 4)

    @property
    def overlap_chars(self) -> int:
        return int(self.chunk_size * 4 * self.overlap)
