"""Source adapters: turn each kind of on-disk material into SourceEntry items."""

from memdex.sources.base import (
    EXTERNAL_NOTES,
    FOREIGN_TRANSCRIPTS,
    NOTES,
    SOURCE_KINDS,
    TRANSCRIPTS,
    SourceAdapter,
    SourceEntry,
    extract_project_slug,
)
from memdex.sources.external_notes import ExternalNotesAdapter
from memdex.sources.notes import NotesAdapter
from memdex.sources.provenance import foreign_session_id, load_origin_session_ids
from memdex.sources.transcripts import (
    ForeignTranscriptsAdapter,
    TranscriptsAdapter,
    extract_transcript_text,
)

__all__ = [
    "EXTERNAL_NOTES",
    "FOREIGN_TRANSCRIPTS",
    "NOTES",
    "SOURCE_KINDS",
    "TRANSCRIPTS",
    "ExternalNotesAdapter",
    "ForeignTranscriptsAdapter",
    "NotesAdapter",
    "SourceAdapter",
    "SourceEntry",
    "TranscriptsAdapter",
    "extract_project_slug",
    "extract_transcript_text",
    "foreign_session_id",
    "load_origin_session_ids",
]
