"""Out-of-place database rebuild helpers.

A full reindex writes a brand-new database next to the live one
(``<db>.tmp-<hex>``) and only replaces the live file once the rebuild has
committed. Until then the live file is never touched, so a crash at any
point leaves the previous dataset intact; the abandoned temp files are
removed by :func:`cleanup_temp_artifacts` on the next open.
"""

from __future__ import annotations

import logging
import os
import uuid
from pathlib import Path

logger = logging.getLogger(__name__)

_TEMP_MARKER = ".tmp-"
_SIDECARS = ("-wal", "-shm", "-journal")


def temp_path_for(target: Path) -> Path:
    """Return a fresh, unused temp database path beside *target*."""
    return target.with_name(f"{target.name}{_TEMP_MARKER}{uuid.uuid4().hex}")


def remove_database_files(path: Path) -> None:
    """Delete *path* and its SQLite sidecar files, ignoring missing ones."""
    path.unlink(missing_ok=True)
    for suffix in _SIDECARS:
        path.with_name(path.name + suffix).unlink(missing_ok=True)


def cleanup_temp_artifacts(target: Path) -> list[Path]:
    """Remove temp databases left behind by an interrupted rebuild of *target*.

    Returns:
        The paths that were removed.
    """
    if not target.parent.exists():
        return []
    removed: list[Path] = []
    for leftover in sorted(target.parent.glob(f"{target.name}{_TEMP_MARKER}*")):
        try:
            leftover.unlink()
        except FileNotFoundError:
            continue
        removed.append(leftover)
    if removed:
        logger.info("removed %d leftover reindex file(s) beside %s", len(removed), target)
    return removed


def swap_into_place(temp: Path, target: Path) -> None:
    """Atomically replace *target* with the fully built database at *temp*.

    Every connection to both files must be closed first. The target's stale
    WAL and shared-memory files are removed so SQLite does not replay them
    against the new file.
    """
    for suffix in _SIDECARS:
        target.with_name(target.name + suffix).unlink(missing_ok=True)
    os.replace(temp, target)
    for suffix in _SIDECARS:
        temp.with_name(temp.name + suffix).unlink(missing_ok=True)
    logger.debug("swapped %s into %s", temp.name, target)
