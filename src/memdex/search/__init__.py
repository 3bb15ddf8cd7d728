"""Memdex hybrid query engine."""

from memdex.search.retriever import HybridRetriever, RetrieverConfig, SearchResult
from memdex.search.snippets import truncate_snippet

__all__ = ["HybridRetriever", "RetrieverConfig", "SearchResult", "truncate_snippet"]
