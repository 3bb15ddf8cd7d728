"""Authored notes: markdown and text files under configured directories."""

from __future__ import annotations

from pathlib import Path
from typing import Iterator, Sequence

from memdex.sources.base import NOTES, SourceAdapter, SourceEntry, make_entry, read_text

_NOTE_PATTERNS = ("*.md", "*.markdown", "*.txt")


class NotesAdapter(SourceAdapter):
    """Index every note file under *paths*.

    A path may name a directory (searched recursively) or a single file.
    Notes carry no project.
    """

    source = NOTES

    def __init__(self, paths: Sequence[Path | str]) -> None:
        self.paths = [Path(p).expanduser() for p in paths]

    def list_entries(self) -> Iterator[SourceEntry]:
        seen: set[Path] = set()
        for root in self.paths:
            files = [root] if root.is_file() else self._iter_files(root, _NOTE_PATTERNS)
            for file in files:
                if file in seen:
                    continue
                seen.add(file)
                content = read_text(file)
                if content is None:
                    continue
                entry = make_entry(file, content)
                if entry is not None:
                    yield entry
