"""Exception hierarchy shared by the store, the embedding gateway and the sync pipeline."""

from __future__ import annotations


class MemdexError(Exception):
    """Base class for all memdex errors."""


class StorageError(MemdexError):
    """The persistent store could not be opened, migrated or written.

    Fatal for the current sync attempt; surfaced to the caller.
    """


class EmbeddingError(MemdexError):
    """An embedding provider call failed (network, auth, rate limit, timeout).

    The sync controller treats this as a per-file failure: the file keeps its
    previous state and is retried on the next sync.
    """
