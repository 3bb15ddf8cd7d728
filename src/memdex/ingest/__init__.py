"""Memdex ingest pipeline: chunkers, embedding providers, embedding gateway."""

from memdex.ingest.base import BaseChunker, TextChunk, chunk_id
from memdex.ingest.embeddings import EmbeddingGateway
from memdex.ingest.lines import LineChunker
from memdex.ingest.providers import BatchJobRunner, EmbeddingProvider, LiteLLMEmbeddingProvider

__all__ = [
    "BaseChunker",
    "BatchJobRunner",
    "EmbeddingGateway",
    "EmbeddingProvider",
    "LineChunker",
    "LiteLLMEmbeddingProvider",
    "TextChunk",
    "chunk_id",
]
