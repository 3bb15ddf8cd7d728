"""Change detection: per-file classification and the per-sync mode decision."""

from __future__ import annotations

from dataclasses import dataclass

from memdex.db.models import SyncMeta
from memdex.db.schema import CURRENT_VERSION

NEW = "new"
MODIFIED = "modified"
UNCHANGED = "unchanged"

INCREMENTAL = "incremental"
REPAIR = "repair"
FULL = "full"


def classify(entry_hash: str, stored_hash: str | None) -> str:
    """Classify one entry against the hash stored for its ``(path, source)``."""
    if stored_hash is None:
        return NEW
    if stored_hash != entry_hash:
        return MODIFIED
    return UNCHANGED


@dataclass(frozen=True)
class SyncPlan:
    """How the next sync must run.

    Attributes:
        mode: ``incremental`` (changed files only), ``repair`` (every entry
            re-indexed in place) or ``full`` (out-of-place rebuild and swap).
        reason: Human-readable explanation, logged and shown by the CLI.
    """

    mode: str
    reason: str

    @property
    def index_all(self) -> bool:
        return self.mode != INCREMENTAL


def plan_sync(
    meta: SyncMeta | None,
    *,
    provider: str,
    model: str,
    chunk_size: int,
    overlap: float,
    active_dims: int | None,
    file_count: int,
    chunk_count: int,
    force: bool = False,
    schema_version: int = CURRENT_VERSION,
) -> SyncPlan:
    """Decide the sync mode from stored metadata and the active configuration.

    A full reindex is required when any of these hold:

    * *force* is set;
    * there is no metadata but the store already holds data, so the
      configuration that built it is unknown;
    * the metadata's schema version is behind *schema_version*;
    * the provider, model, chunk size or overlap changed;
    * *active_dims* (the width the active provider produces) differs from
      the stored vector width and the store is non-empty.

    Otherwise a store whose files or chunks table is empty is repaired in
    place, and anything else syncs incrementally.
    """
    has_data = file_count > 0 or chunk_count > 0

    if force:
        return SyncPlan(FULL, "full reindex requested")
    if meta is None:
        if has_data:
            return SyncPlan(FULL, "index has data but no sync metadata")
        return SyncPlan(INCREMENTAL, "new index")
    if meta.schema_version < schema_version:
        return SyncPlan(
            FULL, f"schema upgraded from v{meta.schema_version} to v{schema_version}"
        )
    if meta.provider != provider or meta.model != model:
        return SyncPlan(
            FULL, f"embedding model changed from {meta.provider}:{meta.model} to {provider}:{model}"
        )
    if meta.chunk_size != chunk_size or meta.overlap != overlap:
        return SyncPlan(FULL, "chunking parameters changed")
    if (
        active_dims is not None
        and meta.vector_dims is not None
        and active_dims != meta.vector_dims
        and has_data
    ):
        return SyncPlan(
            FULL, f"vector dimensions changed from {meta.vector_dims} to {active_dims}"
        )
    if file_count == 0 or chunk_count == 0:
        return SyncPlan(REPAIR, "index is empty but sync metadata exists")
    return SyncPlan(INCREMENTAL, "index is current")
