"""Notes trees kept inside other repositories.

A repository under the root takes part when it contains
``<context_dir>/<index_file>`` (``context/INDEX.md`` by default). Every
markdown file below its context directory is indexed, tagged with the
repository's directory name as project.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterator

from memdex.sources.base import EXTERNAL_NOTES, SourceAdapter, SourceEntry, make_entry, read_text

logger = logging.getLogger(__name__)


class ExternalNotesAdapter(SourceAdapter):
    source = EXTERNAL_NOTES

    def __init__(
        self,
        root: Path | str,
        context_dir: str = "context",
        index_file: str = "INDEX.md",
    ) -> None:
        self.root = Path(root).expanduser()
        self.context_dir = context_dir
        self.index_file = index_file

    def discover_repos(self) -> list[tuple[Path, str]]:
        """Return ``(context_dir, project)`` for every participating repository."""
        if not self.root.is_dir():
            return []
        repos: list[tuple[Path, str]] = []
        try:
            candidates = sorted(p for p in self.root.iterdir() if p.is_dir())
        except OSError as exc:
            logger.debug("cannot list %s: %s", self.root, exc)
            return []
        for repo in candidates:
            context = repo / self.context_dir
            if (context / self.index_file).is_file():
                repos.append((context, repo.name))
        return repos

    def list_entries(self) -> Iterator[SourceEntry]:
        for context, project in self.discover_repos():
            for file in self._iter_files(context, ("*.md",)):
                content = read_text(file)
                if content is None:
                    continue
                entry = make_entry(file, content, project=project)
                if entry is not None:
                    yield entry
