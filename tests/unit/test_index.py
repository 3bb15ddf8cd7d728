"""End-to-end tests for MemoryIndex over real files, a real store and a fake provider."""

from __future__ import annotations

import json
import threading

import pytest
from conftest import FakeEmbeddingProvider

from memdex.db import swap
from memdex.index import MemoryIndex, watch_roots
from memdex.sync.detector import FULL, INCREMENTAL, REPAIR


def _note(tmp_path, name, text):
    path = tmp_path / "notes" / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


def _transcript(tmp_path, name, *messages):
    path = tmp_path / "transcripts" / name
    path.parent.mkdir(parents=True, exist_ok=True)
    lines = [
        json.dumps({"type": "message", "message": {"role": role, "content": text}})
        for role, text in messages
    ]
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return path


def _foreign_session(tmp_path, project_dir, session_id, text):
    path = tmp_path / "foreign" / project_dir / f"{session_id}.jsonl"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps({"type": "user", "message": {"content": text}}) + "\n", encoding="utf-8")
    return path


def _external_repo(tmp_path, name, **files):
    context = tmp_path / "projects" / name / "context"
    context.mkdir(parents=True, exist_ok=True)
    (context / "INDEX.md").write_text(f"# {name} index", encoding="utf-8")
    for filename, text in files.items():
        (context / f"{filename}.md").write_text(text, encoding="utf-8")


def _chunk_ids(index, path, source="notes"):
    return [(c.id, c.seq) for c in index.repo.get_chunks_for_file(str(path), source)]


def _leftovers(tmp_path):
    return sorted(p.name for p in tmp_path.glob("index.db.tmp-*"))


# ------------------------------------------------------------------
# Sync basics
# ------------------------------------------------------------------

def test_first_sync_indexes_notes_and_transcripts(tmp_path, make_index):
    _note(tmp_path, "k8s.md", "kubernetes cluster upgrade runbook")
    _transcript(tmp_path, "s1.jsonl", ("user", "Hello"), ("assistant", "Hi there!"))
    index = make_index()

    report = index.sync()

    assert report.mode == INCREMENTAL
    assert (report.indexed, report.failed) == (2, 0)
    status = index.status()
    assert (status.files, status.chunks) == (2, 2)
    assert {s.source: s.files for s in status.sources} == {"notes": 1, "transcripts": 1}
    (chunk,) = index.repo.get_chunks_for_file(str(tmp_path / "transcripts" / "s1.jsonl"), "transcripts")
    assert chunk.text == "User: Hello\n\nAssistant: Hi there!"


def test_sync_is_idempotent(tmp_path, make_index, fake_provider):
    note = _note(tmp_path, "a.md", "alpha note")
    index = make_index()
    index.sync()
    before = _chunk_ids(index, note)
    calls = len(fake_provider.calls)

    report = index.sync()

    assert (report.indexed, report.skipped) == (0, 1)
    assert _chunk_ids(index, note) == before
    assert len(fake_provider.calls) == calls


def test_only_changed_file_is_touched(tmp_path, make_index):
    a = _note(tmp_path, "a.md", "alpha note")
    b = _note(tmp_path, "b.md", "bravo note")
    index = make_index()
    index.sync()
    b_before = _chunk_ids(index, b)

    a.write_text("alpha note, second revision", encoding="utf-8")
    report = index.sync()

    assert report.indexed == 1
    assert _chunk_ids(index, b) == b_before
    assert index.repo.get_chunks_for_file(str(a), "notes")[0].text == "alpha note, second revision"


def test_deleted_file_disappears(tmp_path, make_index):
    _note(tmp_path, "keep.md", "walnut harvest log")
    gone = _note(tmp_path, "gone.md", "walnut bread recipe")
    index = make_index()
    index.sync()

    gone.unlink()
    report = index.sync()

    assert report.removed == 1
    paths = {r.path for r in index.search("walnut")}
    assert paths == {str(tmp_path / "notes" / "keep.md")}


def test_deletion_is_scoped_to_source(tmp_path, make_index):
    _note(tmp_path, "a.md", "alpha note")
    session = _transcript(tmp_path, "s1.jsonl", ("user", "alpha question"))
    index = make_index()
    index.sync()

    session.unlink()
    index.sync()

    counts = {s.source: s.files for s in index.status().sources}
    assert counts == {"notes": 1}


def test_blank_file_not_indexed(tmp_path, make_index):
    _note(tmp_path, "empty.md", "   \n\n")
    _note(tmp_path, "real.md", "content")
    index = make_index()
    index.sync()
    assert index.repo.list_paths("notes") == [str(tmp_path / "notes" / "real.md")]


def test_foreign_sessions_started_here_are_excluded(tmp_path, make_index):
    _foreign_session(tmp_path, "-home-ben-projects-mine", "own", "duplicated conversation")
    _foreign_session(tmp_path, "-home-ben-projects-mine", "theirs", "independent conversation")
    (tmp_path / "sessions.json").write_text(
        json.dumps({"main": {"cliSessionIds": {"claude-code": "own"}}}), encoding="utf-8"
    )
    index = make_index()

    report = index.sync()

    assert report.skipped == 1
    results = index.search("conversation", source="foreign-transcripts")
    assert [r.path.rsplit("/", 1)[-1] for r in results] == ["theirs.jsonl"]
    assert results[0].project == "mine"


def test_session_excluded_later_keeps_its_rows(tmp_path, make_index):
    session = _foreign_session(tmp_path, "-home-ben-projects-mine", "s1", "shared conversation")
    index = make_index()
    index.sync()

    (tmp_path / "sessions.json").write_text(
        json.dumps({"k": {"cliSessionIds": {"claude-code": "s1"}}}), encoding="utf-8"
    )
    report = index.sync()

    assert (report.skipped, report.removed) == (1, 0)
    assert index.repo.get_file(str(session), "foreign-transcripts") is not None


def test_cache_pruned_after_sync(tmp_path, make_index, memdex_config):
    for i in range(4):
        _note(tmp_path, f"n{i}.md", f"note number {i}")
    memdex_config.embedding.cache_max_entries = 2
    index = make_index()
    index.sync()
    assert index.status().cache_entries == 2


def test_progress_callback_reaches_total(tmp_path, make_index):
    _note(tmp_path, "a.md", "alpha")
    _note(tmp_path, "b.md", "bravo")
    updates = []
    make_index().sync(progress=updates.append)
    assert updates[-1].completed == updates[-1].total == 2


# ------------------------------------------------------------------
# Search
# ------------------------------------------------------------------

def test_search_ranks_relevant_note_first(tmp_path, make_index):
    _note(tmp_path, "k8s.md", "kubernetes cluster upgrade runbook")
    _note(tmp_path, "bread.md", "banana bread recipe with walnuts")
    index = make_index()
    index.sync()

    results = index.search("kubernetes upgrade")

    assert results[0].path == str(tmp_path / "notes" / "k8s.md")
    assert results[0].source == "notes"
    assert results[0].start_line == 1


def test_project_filter_is_exact(tmp_path, make_index):
    _external_repo(tmp_path, "alpha", design="deploy pipeline for alpha")
    _external_repo(tmp_path, "beta", design="deploy pipeline for beta")
    _note(tmp_path, "deploy.md", "deploy checklist")
    index = make_index()
    index.sync()

    results = index.search("deploy pipeline", project="alpha")

    assert results
    assert {r.project for r in results} == {"alpha"}
    unfiltered = {r.project for r in index.search("deploy", max_results=20)}
    assert unfiltered == {"alpha", "beta", None}


def test_search_empty_index(make_index):
    assert make_index().search("anything") == []


# ------------------------------------------------------------------
# Full reindex
# ------------------------------------------------------------------

def test_forced_full_reindex_swaps_in_new_store(tmp_path, make_index, fake_provider):
    _note(tmp_path, "a.md", "alpha note")
    _note(tmp_path, "b.md", "bravo note")
    index = make_index()
    index.sync()
    calls = len(fake_provider.calls)

    report = index.sync(force=True)

    assert report.mode == FULL
    assert report.indexed == 2
    status = index.status()
    assert (status.files, status.chunks) == (2, 2)
    assert status.last_full_reindex_at is not None
    assert len(fake_provider.calls) == calls  # every chunk came from the seeded cache
    assert _leftovers(tmp_path) == []
    assert index.search("alpha")[0].path == str(tmp_path / "notes" / "a.md")


def test_model_change_triggers_full_reindex(tmp_path, make_index, memdex_config):
    _note(tmp_path, "a.md", "alpha note")
    first = make_index()
    first.sync()
    first.close()

    other = FakeEmbeddingProvider(model="fake/other-64")
    index = make_index(provider=other)
    assert index.plan().mode == FULL

    index.sync()

    chunks = index.repo.get_chunks_for_file(str(tmp_path / "notes" / "a.md"), "notes")
    assert {c.model for c in chunks} == {"fake/other-64"}
    assert index.plan().mode == INCREMENTAL
    assert index.search("alpha")


def test_provider_width_change_triggers_full_reindex(tmp_path, make_index, fake_provider):
    note = _note(tmp_path, "a.md", "alpha note")
    first = make_index()
    first.sync()
    first.close()

    narrower = FakeEmbeddingProvider(model=fake_provider.model, dims=32)
    index = make_index(provider=narrower)
    plan = index.plan()
    assert plan.mode == FULL
    assert "64 to 32" in plan.reason

    index.sync()

    (chunk,) = index.repo.get_chunks_for_file(str(note), "notes")
    assert len(chunk.embedding) == 32
    assert index.plan().mode == INCREMENTAL


def test_unreachable_provider_does_not_block_planning(tmp_path, make_index):
    _note(tmp_path, "a.md", "alpha note")
    make_index().sync()

    index = make_index(provider=FakeEmbeddingProvider(fail=True))
    assert index.plan().mode == INCREMENTAL


def test_failed_swap_keeps_previous_index(tmp_path, make_index, monkeypatch):
    note = _note(tmp_path, "a.md", "alpha note")
    index = make_index()
    index.sync()
    before = _chunk_ids(index, note)

    def _crash(temp, target):
        raise RuntimeError("power loss")

    monkeypatch.setattr(swap, "swap_into_place", _crash)
    with pytest.raises(RuntimeError, match="power loss"):
        index.sync(force=True)

    assert _leftovers(tmp_path) == []
    assert _chunk_ids(index, note) == before
    assert index.status().last_full_reindex_at is None
    assert index.search("alpha")[0].path == str(note)


def test_full_reindex_abandoned_when_a_source_fails(tmp_path, make_index, monkeypatch):
    _note(tmp_path, "a.md", "alpha note")
    _transcript(tmp_path, "s1.jsonl", ("user", "hello"))
    index = make_index()
    index.sync()

    def _broken():
        raise OSError("notes directory unreadable")

    notes_adapter = next(a for a in index.adapters if a.source == "notes")
    monkeypatch.setattr(notes_adapter, "list_entries", _broken)
    report = index.sync(force=True)

    assert report.failed_sources == ["notes"]
    assert _leftovers(tmp_path) == []
    status = index.status()
    assert status.files == 2
    assert status.last_full_reindex_at is None


def test_full_reindex_abandoned_when_a_file_fails_to_embed(tmp_path, make_index, fake_provider):
    a = _note(tmp_path, "a.md", "alpha note")
    b = _note(tmp_path, "b.md", "bravo note")
    index = make_index()
    index.sync()
    before = _chunk_ids(index, b)

    b.write_text("bravo BROKEN note", encoding="utf-8")
    fake_provider.fail_on = {"BROKEN"}
    report = index.sync(force=True)

    assert (report.mode, report.failed) == (FULL, 1)
    assert _leftovers(tmp_path) == []
    assert index.repo.get_file(str(b), "notes") is not None
    assert _chunk_ids(index, b) == before
    assert index.repo.get_file(str(a), "notes") is not None
    assert index.status().last_full_reindex_at is None


def test_leftover_temp_files_removed_on_open(tmp_path, make_index):
    (tmp_path / "index.db.tmp-deadbeef").write_text("half built")
    make_index()
    assert _leftovers(tmp_path) == []


# ------------------------------------------------------------------
# Repair and persistence
# ------------------------------------------------------------------

def test_emptied_store_is_repaired_in_place(tmp_path, make_index):
    _note(tmp_path, "a.md", "alpha note")
    _note(tmp_path, "b.md", "bravo note")
    index = make_index()
    index.sync()
    with index.repo.transaction() as conn:
        conn.execute("DELETE FROM files")

    assert index.plan().mode == REPAIR
    report = index.sync()

    assert report.mode == REPAIR
    assert report.indexed == 2
    assert index.status().chunks == 2
    assert _leftovers(tmp_path) == []


def test_reopen_keeps_state(tmp_path, make_index, memdex_config, fake_provider):
    _note(tmp_path, "a.md", "alpha note")
    first = make_index()
    first.sync()
    first.close()

    with MemoryIndex(memdex_config, provider=fake_provider) as reopened:
        assert reopened.status().files == 1
        assert reopened.plan().mode == INCREMENTAL
        assert reopened.plan(force=True).mode == FULL


# ------------------------------------------------------------------
# Concurrency
# ------------------------------------------------------------------

class _GatedProvider(FakeEmbeddingProvider):
    """Blocks on texts containing 'gate' until released."""

    def __init__(self) -> None:
        super().__init__()
        self.entered = threading.Event()
        self.release = threading.Event()

    def embed(self, texts):
        if any("gate" in t for t in texts):
            self.entered.set()
            self.release.wait(timeout=10)
        return super().embed(texts)


def test_search_runs_while_sync_in_progress(tmp_path, make_index):
    _note(tmp_path, "a.md", "alpha note")
    provider = _GatedProvider()
    index = make_index(provider=provider)
    index.sync()

    _note(tmp_path, "b.md", "gate keeper note")
    worker = threading.Thread(target=index.sync)
    worker.start()
    try:
        assert provider.entered.wait(timeout=10)
        results = index.search("alpha")
        assert results[0].path == str(tmp_path / "notes" / "a.md")
    finally:
        provider.release.set()
        worker.join(timeout=10)

    assert index.status().files == 2


# ------------------------------------------------------------------
# Watch roots
# ------------------------------------------------------------------

def test_watch_roots_lists_existing_source_paths(tmp_path, memdex_config):
    _note(tmp_path, "a.md", "alpha")
    _foreign_session(tmp_path, "-home-ben-projects-mine", "s1", "hello")
    (tmp_path / "sessions.json").write_text("{}", encoding="utf-8")

    roots = watch_roots(memdex_config)

    assert roots == [tmp_path / "notes", tmp_path / "foreign", tmp_path / "sessions.json"]


def test_watch_roots_skip_disabled_sources(tmp_path, memdex_config):
    _note(tmp_path, "a.md", "alpha")
    memdex_config.sources.notes.enabled = False
    assert watch_roots(memdex_config) == []
