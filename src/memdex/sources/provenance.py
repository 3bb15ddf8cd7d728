"""Read the session store that records which foreign sessions this system started."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

# Field used by stores written before per-CLI ids existed.
_LEGACY_FIELD = "claudeSessionId"


def foreign_session_id(record: Any, cli_name: str) -> str | None:
    """Return the foreign session id named by one session-store *record*.

    Prefers ``cliSessionIds[cli_name]`` and falls back to the legacy flat
    field. Returns None when neither shape is present.
    """
    if not isinstance(record, dict):
        return None
    ids = record.get("cliSessionIds")
    if isinstance(ids, dict):
        value = ids.get(cli_name)
        if isinstance(value, str) and value:
            return value
    legacy = record.get(_LEGACY_FIELD)
    if isinstance(legacy, str) and legacy:
        return legacy
    return None


def load_origin_session_ids(store_path: Path | str, cli_name: str = "claude-code") -> set[str]:
    """Return every foreign session id recorded in the session store.

    A missing file, malformed JSON, or any top-level value other than an
    object all resolve to an empty set.
    """
    path = Path(store_path)
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError:
        return set()
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        logger.warning("ignoring malformed session store %s: %s", path, exc)
        return set()
    if not isinstance(data, dict):
        return set()
    ids: set[str] = set()
    for record in data.values():
        session_id = foreign_session_id(record, cli_name)
        if session_id:
            ids.add(session_id)
    return ids
