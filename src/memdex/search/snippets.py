"""Snippet formatting for search results."""

from __future__ import annotations


def _is_high_surrogate(ch: str) -> bool:
    return "\ud800" <= ch <= "\udbff"


def truncate_snippet(text: str, max_chars: int) -> str:
    """Cut *text* to at most *max_chars* code points.

    Text decoded with ``surrogateescape`` or read from lossy JSON can carry
    surrogate halves; a trailing high surrogate left by the cut is dropped so
    the snippet never ends in half a pair.
    """
    if max_chars <= 0:
        return ""
    if len(text) <= max_chars:
        return text
    cut = text[:max_chars]
    if _is_high_surrogate(cut[-1]):
        cut = cut[:-1]
    return cut
