"""Memdex configuration loader.

Priority (high → low):
  1. CLI flags           (handled at call site, not in this module)
  2. Environment variables  (MEMDEX_EMBEDDING_MODEL, MEMDEX_DB_PATH)
  3. Per-directory memdex.yaml  (current working directory)
  4. Global ~/.memdex/config.yaml  (defaults only, no API keys)
  5. Hardcoded defaults

Global config must never contain API keys; use environment variables instead.
All YAML reads use yaml.safe_load(), never yaml.load().
"""

from __future__ import annotations

import os
import re
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_GLOBAL_CONFIG_DIR: Path = Path.home() / ".memdex"
_GLOBAL_CONFIG_PATH: Path = _GLOBAL_CONFIG_DIR / "config.yaml"
_PROJECT_CONFIG_NAME: str = "memdex.yaml"

# Fields that suggest an API key are forbidden in global config.
# Matches: api_key, apikey, api-key, api_secret, _token (suffix), standalone token,
# standalone secret, _secret (suffix), password, passwd, credential(s).
# Does NOT match legitimate config keys like chunk_size or max_results.
_API_KEY_RE: re.Pattern[str] = re.compile(
    r"api[_\-]?(?:key|secret)"  # api_key, api-key, api_secret, apikey
    r"|_token$"                  # github_token, access_token, auth_token (suffix)
    r"|^token$"                  # exactly "token" (standalone)
    r"|_secret$"                 # my_secret, client_secret (suffix)
    r"|^secret$"                 # exactly "secret" (standalone)
    r"|passw(?:ord|d)"           # password, passwd
    r"|credential",              # credential, credentials
    re.IGNORECASE,
)

# Known top-level sections; unknown keys produce a warning
_KNOWN_SECTIONS: frozenset[str] = frozenset(
    ["store", "embedding", "chunking", "query", "sync", "sources"]
)

_QUERY_MODES: frozenset[str] = frozenset(["hybrid", "vector", "keyword"])


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ConfigError(ValueError):
    """Raised when a config file contains an invalid or forbidden value."""


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------


@dataclass
class StoreCfg:
    """Index database location (memdex.yaml: store:)."""

    path: str = str(_GLOBAL_CONFIG_DIR / "index.db")
    vector: bool = True


@dataclass
class EmbeddingCfg:
    """Embedding provider configuration (memdex.yaml: embedding:).

    Attributes:
        model: LiteLLM embedding model string (provider/model format).
        dimensions: Requested output width, or None for the model default.
        batch_size: Maximum texts per provider call.
        timeout: Per-call timeout in seconds.
        num_retries: LiteLLM retries on transient errors.
        batch_jobs: Use asynchronous provider batch jobs.
        batch_poll_interval: Seconds between batch job status polls.
        batch_timeout: Seconds before a batch job is abandoned.
        batch_failure_limit: Consecutive batch job failures before job mode
            is switched off for the rest of the process.
        cache_max_entries: Prune the embedding cache to this many entries
            after each sync; None keeps every entry.
    """

    model: str = "openai/text-embedding-3-small"
    dimensions: int | None = None
    batch_size: int = 64
    timeout: float = 60.0
    num_retries: int = 3
    batch_jobs: bool = False
    batch_poll_interval: float = 2.0
    batch_timeout: float = 600.0
    batch_failure_limit: int = 2
    cache_max_entries: int | None = None


@dataclass
class ChunkingCfg:
    """Chunk size (tokens) and overlap fraction (memdex.yaml: chunking:)."""

    chunk_size: int = 400
    overlap: float = 0.20


@dataclass
class QueryCfg:
    """Search defaults (memdex.yaml: query:)."""

    mode: str = "hybrid"            # hybrid | vector | keyword
    max_results: int = 6
    min_score: float = 0.35
    vector_weight: float = 0.7
    text_weight: float = 0.3
    candidate_multiplier: int = 4
    snippet_max_chars: int = 700


@dataclass
class SyncCfg:
    """Sync pipeline configuration (memdex.yaml: sync:)."""

    concurrency: int = 4
    watch: bool = False
    watch_debounce: float = 1.6      # seconds of file changes grouped per watch sync


@dataclass
class NotesSourceCfg:
    enabled: bool = True
    paths: list[str] = field(default_factory=lambda: [str(_GLOBAL_CONFIG_DIR / "notes")])


@dataclass
class TranscriptsSourceCfg:
    enabled: bool = True
    path: str = str(_GLOBAL_CONFIG_DIR / "transcripts")


@dataclass
class ForeignTranscriptsSourceCfg:
    """Foreign assistant session logs (memdex.yaml: sources.foreign_transcripts:).

    Attributes:
        path: Root holding one directory per project.
        cli_name: Key under ``cliSessionIds`` in the session store.
        session_store: JSON file recording sessions this system started;
            those sessions are not indexed.
        project_marker: Directory-name marker preceding the project slug.
    """

    enabled: bool = False
    path: str = str(Path.home() / ".claude" / "projects")
    cli_name: str = "claude-code"
    session_store: str | None = str(_GLOBAL_CONFIG_DIR / "sessions.json")
    project_marker: str = "projects-"


@dataclass
class ExternalNotesSourceCfg:
    enabled: bool = False
    root: str = str(Path.home() / "projects")
    context_dir: str = "context"
    index_file: str = "INDEX.md"


@dataclass
class SourcesCfg:
    """Per-source configuration (memdex.yaml: sources:)."""

    notes: NotesSourceCfg = field(default_factory=NotesSourceCfg)
    transcripts: TranscriptsSourceCfg = field(default_factory=TranscriptsSourceCfg)
    foreign_transcripts: ForeignTranscriptsSourceCfg = field(
        default_factory=ForeignTranscriptsSourceCfg
    )
    external_notes: ExternalNotesSourceCfg = field(default_factory=ExternalNotesSourceCfg)


@dataclass
class MemdexConfig:
    """Root configuration object, built by load_config() from merged YAML layers."""

    store: StoreCfg = field(default_factory=StoreCfg)
    embedding: EmbeddingCfg = field(default_factory=EmbeddingCfg)
    chunking: ChunkingCfg = field(default_factory=ChunkingCfg)
    query: QueryCfg = field(default_factory=QueryCfg)
    sync: SyncCfg = field(default_factory=SyncCfg)
    sources: SourcesCfg = field(default_factory=SourcesCfg)


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def _check_no_api_keys(data: dict[str, Any], source: Path) -> None:
    """Raise ConfigError if *data* contains any API-key-like key names.

    Global config must never store credentials; they belong in env vars.
    """

    def _scan(obj: Any, path: str) -> None:
        if isinstance(obj, dict):
            for k, v in obj.items():
                full = f"{path}.{k}" if path else k
                if _API_KEY_RE.search(str(k)):
                    raise ConfigError(
                        f"Global config '{source}' contains a forbidden key '{full}'.\n"
                        f"  API keys must be set via environment variables, not config files.\n"
                        f"  Remove '{full}' from {source.name} and use:\n"
                        f"    export {str(k).upper().replace('-', '_')}=<value>"
                    )
                _scan(v, full)

    _scan(data, "")


def _warn_unknown_keys(data: dict[str, Any], source: Path) -> None:
    """Emit a UserWarning for unrecognised top-level keys."""
    for key in data:
        if key not in _KNOWN_SECTIONS:
            warnings.warn(
                f"Unknown config key '{key}' in '{source}'; ignored.",
                UserWarning,
                stacklevel=4,
            )


def _validate(cfg: MemdexConfig) -> None:
    """Raise ConfigError for values the pipeline cannot run with."""
    q = cfg.query
    if q.mode not in _QUERY_MODES:
        raise ConfigError(
            f"query.mode must be one of {', '.join(sorted(_QUERY_MODES))}, got '{q.mode}'."
        )
    for name, value in (("query.vector_weight", q.vector_weight), ("query.text_weight", q.text_weight)):
        if not 0.0 <= value <= 1.0:
            raise ConfigError(f"{name} must be between 0 and 1, got {value}.")
    if q.max_results < 1 or q.candidate_multiplier < 1:
        raise ConfigError("query.max_results and query.candidate_multiplier must be >= 1.")
    if cfg.sync.concurrency < 1:
        raise ConfigError(f"sync.concurrency must be >= 1, got {cfg.sync.concurrency}.")
    if cfg.chunking.chunk_size < 1:
        raise ConfigError(f"chunking.chunk_size must be >= 1, got {cfg.chunking.chunk_size}.")
    if not 0.0 <= cfg.chunking.overlap < 1.0:
        raise ConfigError(f"chunking.overlap must be in [0, 1), got {cfg.chunking.overlap}.")
    if cfg.embedding.batch_size < 1:
        raise ConfigError(f"embedding.batch_size must be >= 1, got {cfg.embedding.batch_size}.")


# ---------------------------------------------------------------------------
# Merge + build
# ---------------------------------------------------------------------------


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Return a new dict that is *base* deep-merged with *override*."""
    result = dict(base)
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = _deep_merge(result[k], v)
        else:
            result[k] = v
    return result


def _optional_int(value: Any) -> int | None:
    return None if value is None else int(value)


def _parse_sources(raw: dict[str, Any], defaults: SourcesCfg) -> SourcesCfg:
    notes = raw.get("notes") or {}
    transcripts = raw.get("transcripts") or {}
    foreign = raw.get("foreign_transcripts") or {}
    external = raw.get("external_notes") or {}

    paths = notes.get("paths", defaults.notes.paths)
    if isinstance(paths, str):
        paths = [paths]

    return SourcesCfg(
        notes=NotesSourceCfg(
            enabled=bool(notes.get("enabled", defaults.notes.enabled)),
            paths=[str(p) for p in paths],
        ),
        transcripts=TranscriptsSourceCfg(
            enabled=bool(transcripts.get("enabled", defaults.transcripts.enabled)),
            path=str(transcripts.get("path", defaults.transcripts.path)),
        ),
        foreign_transcripts=ForeignTranscriptsSourceCfg(
            enabled=bool(foreign.get("enabled", defaults.foreign_transcripts.enabled)),
            path=str(foreign.get("path", defaults.foreign_transcripts.path)),
            cli_name=str(foreign.get("cli_name", defaults.foreign_transcripts.cli_name)),
            session_store=foreign.get("session_store", defaults.foreign_transcripts.session_store),
            project_marker=str(
                foreign.get("project_marker", defaults.foreign_transcripts.project_marker)
            ),
        ),
        external_notes=ExternalNotesSourceCfg(
            enabled=bool(external.get("enabled", defaults.external_notes.enabled)),
            root=str(external.get("root", defaults.external_notes.root)),
            context_dir=str(external.get("context_dir", defaults.external_notes.context_dir)),
            index_file=str(external.get("index_file", defaults.external_notes.index_file)),
        ),
    )


def _cfg_from_dict(data: dict[str, Any]) -> MemdexConfig:
    """Build a *MemdexConfig* from a merged raw YAML dict."""
    cfg = MemdexConfig()

    if "store" in data:
        s = data["store"] or {}
        cfg.store = StoreCfg(
            path=str(s.get("path", cfg.store.path)),
            vector=bool(s.get("vector", cfg.store.vector)),
        )

    if "embedding" in data:
        e = data["embedding"] or {}
        d = cfg.embedding
        cfg.embedding = EmbeddingCfg(
            model=str(e.get("model", d.model)),
            dimensions=_optional_int(e.get("dimensions", d.dimensions)),
            batch_size=int(e.get("batch_size", d.batch_size)),
            timeout=float(e.get("timeout", d.timeout)),
            num_retries=int(e.get("num_retries", d.num_retries)),
            batch_jobs=bool(e.get("batch_jobs", d.batch_jobs)),
            batch_poll_interval=float(e.get("batch_poll_interval", d.batch_poll_interval)),
            batch_timeout=float(e.get("batch_timeout", d.batch_timeout)),
            batch_failure_limit=int(e.get("batch_failure_limit", d.batch_failure_limit)),
            cache_max_entries=_optional_int(e.get("cache_max_entries", d.cache_max_entries)),
        )

    if "chunking" in data:
        c = data["chunking"] or {}
        cfg.chunking = ChunkingCfg(
            chunk_size=int(c.get("chunk_size", cfg.chunking.chunk_size)),
            overlap=float(c.get("overlap", cfg.chunking.overlap)),
        )

    if "query" in data:
        q = data["query"] or {}
        d = cfg.query
        cfg.query = QueryCfg(
            mode=str(q.get("mode", d.mode)),
            max_results=int(q.get("max_results", d.max_results)),
            min_score=float(q.get("min_score", d.min_score)),
            vector_weight=float(q.get("vector_weight", d.vector_weight)),
            text_weight=float(q.get("text_weight", d.text_weight)),
            candidate_multiplier=int(q.get("candidate_multiplier", d.candidate_multiplier)),
            snippet_max_chars=int(q.get("snippet_max_chars", d.snippet_max_chars)),
        )

    if "sync" in data:
        sy = data["sync"] or {}
        cfg.sync = SyncCfg(
            concurrency=int(sy.get("concurrency", cfg.sync.concurrency)),
            watch=bool(sy.get("watch", cfg.sync.watch)),
            watch_debounce=float(sy.get("watch_debounce", cfg.sync.watch_debounce)),
        )

    if "sources" in data:
        cfg.sources = _parse_sources(data["sources"] or {}, cfg.sources)

    return cfg


def _apply_env_overrides(cfg: MemdexConfig) -> MemdexConfig:
    """Apply MEMDEX_* environment variable overrides (layer 2)."""
    if model := os.environ.get("MEMDEX_EMBEDDING_MODEL"):
        cfg.embedding.model = model
    if db_path := os.environ.get("MEMDEX_DB_PATH"):
        cfg.store.path = db_path
    return cfg


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_config(
    project_dir: Path | None = None,
    *,
    global_config_path: Path | None = None,
) -> MemdexConfig:
    """Load and return a merged *MemdexConfig*.

    Applies layers in order: global → per-directory → env vars.
    CLI flag overrides must be applied by the caller after this function.

    Args:
        project_dir: Directory to search for *memdex.yaml*. Defaults to CWD.
        global_config_path: Override the global config path (for testing).

    Returns:
        Fully merged *MemdexConfig* with env var overrides applied.

    Raises:
        ConfigError: If global config contains API-key-like fields, a file is
            not a YAML mapping, or a value is out of range.
    """
    global_path = global_config_path if global_config_path is not None else _GLOBAL_CONFIG_PATH
    search_dir = project_dir if project_dir is not None else Path.cwd()

    merged: dict[str, Any] = {}

    # Layer 1: global config
    if global_path.exists():
        raw_global = _read_yaml(global_path)
        _check_no_api_keys(raw_global, global_path)
        _warn_unknown_keys(raw_global, global_path)
        merged = _deep_merge(merged, raw_global)

    # Layer 2: per-directory config
    project_cfg_path = search_dir / _PROJECT_CONFIG_NAME
    if project_cfg_path.exists():
        raw_project = _read_yaml(project_cfg_path)
        _warn_unknown_keys(raw_project, project_cfg_path)
        merged = _deep_merge(merged, raw_project)

    try:
        cfg = _cfg_from_dict(merged)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid config value: {exc}") from exc

    # Layer 3: env var overrides
    cfg = _apply_env_overrides(cfg)

    _validate(cfg)
    return cfg


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Could not parse '{path}': {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"'{path}' must contain a YAML mapping at the top level.")
    return data

