"""Conversation transcripts stored as JSON lines.

Two layouts are supported:

* this system's own transcripts: ``{"type": "message", "message": {"role":
  "user" | "assistant", "content": ...}}``, one ``*.jsonl`` file per session
  directly under the transcripts directory.
* a foreign assistant's session logs: ``{"type": "user" | "assistant",
  "message": {"content": ...}}``, one directory per project under the root
  and one ``*.jsonl`` file per session inside it.

Both are flattened to ``"User: ..."`` / ``"Assistant: ..."`` lines joined by
a blank line. Only ``text`` content blocks count; tool calls, tool results
and any other block types are dropped. Malformed lines are skipped.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Iterable, Iterator

from memdex.sources.base import (
    FOREIGN_TRANSCRIPTS,
    TRANSCRIPTS,
    SourceAdapter,
    SourceEntry,
    extract_project_slug,
    make_entry,
    read_text,
)
from memdex.sources.provenance import load_origin_session_ids

logger = logging.getLogger(__name__)

MESSAGE_SEPARATOR = "\n\n"
_SPEAKERS = {"user": "User", "assistant": "Assistant"}


def collapse_whitespace(text: str) -> str:
    return " ".join(text.split())


def content_text(content: Any) -> str:
    """Return the plain text of a message ``content`` field.

    A string is used as-is; a list contributes its ``text`` blocks only.
    """
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return ""
    parts = [
        block["text"]
        for block in content
        if isinstance(block, dict)
        and block.get("type") == "text"
        and isinstance(block.get("text"), str)
    ]
    return " ".join(parts)


def _own_role(record: dict[str, Any]) -> str | None:
    if record.get("type") != "message":
        return None
    message = record.get("message")
    return message.get("role") if isinstance(message, dict) else None


def _foreign_role(record: dict[str, Any]) -> str | None:
    kind = record.get("type")
    return kind if kind in _SPEAKERS else None


def extract_transcript_text(lines: Iterable[str], foreign: bool = False) -> str:
    """Flatten JSONL transcript *lines* into ``Speaker: text`` blocks.

    Args:
        lines: Raw lines of a transcript file.
        foreign: Use the foreign record layout (``type`` carries the role).

    Returns:
        The normalised transcript, or an empty string when no message holds
        any text.
    """
    role_of = _foreign_role if foreign else _own_role
    messages: list[str] = []
    for lineno, line in enumerate(lines, start=1):
        if not line.strip():
            continue
        try:
            record = json.loads(line)
        except json.JSONDecodeError:
            logger.debug("skipping malformed transcript line %d", lineno)
            continue
        if not isinstance(record, dict):
            continue
        role = role_of(record)
        if role not in _SPEAKERS:
            continue
        message = record.get("message")
        if not isinstance(message, dict):
            continue
        text = collapse_whitespace(content_text(message.get("content")))
        if text:
            messages.append(f"{_SPEAKERS[role]}: {text}")
    return MESSAGE_SEPARATOR.join(messages)


def build_transcript_entry(
    path: Path, foreign: bool = False, project: str | None = None
) -> SourceEntry | None:
    """Read one transcript file and normalise it into a SourceEntry.

    Returns None for unreadable files and transcripts without any text.
    """
    raw = read_text(path)
    if raw is None:
        return None
    text = extract_transcript_text(raw.splitlines(), foreign=foreign)
    return make_entry(path, text, project=project, source_id=path.stem)


class TranscriptsAdapter(SourceAdapter):
    """This system's own conversation transcripts (project is always None)."""

    source = TRANSCRIPTS

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path).expanduser()

    def list_entries(self) -> Iterator[SourceEntry]:
        for file in self._iter_files(self.path, ("*.jsonl",), recursive=False):
            entry = build_transcript_entry(file)
            if entry is not None:
                yield entry


def list_session_files(root: Path) -> list[Path]:
    """Return every ``*.jsonl`` file exactly one directory below *root*.

    Missing or unreadable directories contribute nothing.
    """
    if not root.is_dir():
        return []
    files: list[Path] = []
    try:
        project_dirs = sorted(p for p in root.iterdir() if p.is_dir())
    except OSError as exc:
        logger.debug("cannot list %s: %s", root, exc)
        return []
    for project_dir in project_dirs:
        try:
            files.extend(
                sorted(f for f in project_dir.iterdir() if f.is_file() and f.suffix == ".jsonl")
            )
        except OSError as exc:
            logger.debug("skipping inaccessible project directory %s: %s", project_dir, exc)
    return files


class ForeignTranscriptsAdapter(SourceAdapter):
    """Another assistant's session logs, grouped by project directory.

    Sessions that this system itself started (recorded in the provenance
    store under *cli_name*) are excluded so the same conversation is not
    indexed twice.
    """

    source = FOREIGN_TRANSCRIPTS

    def __init__(
        self,
        path: Path | str,
        session_store: Path | str | None = None,
        cli_name: str = "claude-code",
        project_marker: str = "projects-",
    ) -> None:
        self.path = Path(path).expanduser()
        self.session_store = Path(session_store).expanduser() if session_store else None
        self.cli_name = cli_name
        self.project_marker = project_marker

    def load_exclusions(self) -> set[str]:
        if self.session_store is None:
            return set()
        return load_origin_session_ids(self.session_store, self.cli_name)

    def list_entries(self) -> Iterator[SourceEntry]:
        for file in list_session_files(self.path):
            project = extract_project_slug(file, self.project_marker)
            entry = build_transcript_entry(file, foreign=True, project=project)
            if entry is not None:
                yield entry
