"""Base adapter interface for every indexed source kind."""

from __future__ import annotations

import hashlib
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Iterator

logger = logging.getLogger(__name__)

# Source kind identifiers, as stored in files.source / chunks.source.
NOTES = "notes"
TRANSCRIPTS = "transcripts"
FOREIGN_TRANSCRIPTS = "foreign-transcripts"
EXTERNAL_NOTES = "external-notes"

SOURCE_KINDS: tuple[str, ...] = (NOTES, TRANSCRIPTS, FOREIGN_TRANSCRIPTS, EXTERNAL_NOTES)


@dataclass(frozen=True)
class SourceEntry:
    """One indexable file, already normalised to plain text.

    Attributes:
        path: Absolute path of the file on disk; unique within its source.
        content: Normalised text that gets chunked and embedded.
        hash: SHA-256 hex digest of *content*.
        project: Project slug, or None for sources without a project notion.
        source_id: Foreign identifier used for exclusion (the session id for
            transcript sources), or None.
        mtime: File modification time in epoch milliseconds.
        size: File size in bytes.
    """

    path: str
    content: str
    hash: str
    project: str | None = None
    source_id: str | None = None
    mtime: int = 0
    size: int = 0


def content_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def extract_project_slug(path: str | Path, marker: str = "projects-") -> str:
    """Derive a project slug from the directory that holds *path*.

    Session stores slugify the working directory (``/home/ben/projects/mine``
    becomes ``-home-ben-projects-mine``); the slug is whatever follows the
    first *marker*. Directory names without the marker are returned as-is.

    Examples:
        ".../-home-ben-projects-mine/abc.jsonl" -> "mine"
        ".../-home-ben-projects-patent-search/s.jsonl" -> "patent-search"
        ".../scratch/s.jsonl" -> "scratch"
    """
    dir_name = Path(path).parent.name
    match = re.search(rf"{re.escape(marker)}(.+)$", dir_name)
    return match.group(1) if match else dir_name


def read_text(path: Path) -> str | None:
    """Read *path* as UTF-8, returning None when it cannot be read."""
    try:
        return path.read_text(encoding="utf-8", errors="replace")
    except OSError as exc:
        logger.debug("skipping unreadable file %s: %s", path, exc)
        return None


def make_entry(
    path: Path,
    content: str,
    project: str | None = None,
    source_id: str | None = None,
) -> SourceEntry | None:
    """Build a SourceEntry for *path*, or None if *content* is blank."""
    if not content.strip():
        return None
    try:
        stat = path.stat()
        mtime, size = int(stat.st_mtime * 1000), stat.st_size
    except OSError:
        mtime, size = 0, 0
    return SourceEntry(
        path=str(path),
        content=content,
        hash=content_hash(content),
        project=project,
        source_id=source_id,
        mtime=mtime,
        size=size,
    )


class SourceAdapter(ABC):
    """Abstract base for all source adapters.

    Subclasses set ``source`` and implement ``list_entries()``. Adapters never
    raise for a missing root: they yield nothing. Files that cannot be read or
    that normalise to blank text are skipped.
    """

    source: str = ""

    @abstractmethod
    def list_entries(self) -> Iterable[SourceEntry]:
        """Yield every current, non-empty entry of this source."""

    def load_exclusions(self) -> set[str]:
        """Return source ids that must not be indexed for this source.

        Called once per sync, before the source is processed.
        """
        return set()

    @staticmethod
    def _iter_files(root: Path, patterns: Iterable[str], recursive: bool = True) -> Iterator[Path]:
        """Yield regular files under *root* matching any of *patterns*, sorted."""
        if not root.is_dir():
            return
        seen: set[Path] = set()
        for pattern in patterns:
            matches = root.rglob(pattern) if recursive else root.glob(pattern)
            for match in matches:
                if match.is_file() and match not in seen:
                    seen.add(match)
        yield from sorted(seen)
