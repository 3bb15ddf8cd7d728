"""Tests for reading the session provenance store."""

from __future__ import annotations

import json

import pytest

from memdex.sources.provenance import foreign_session_id, load_origin_session_ids


def _store(tmp_path, data):
    path = tmp_path / "sessions.json"
    path.write_text(data if isinstance(data, str) else json.dumps(data))
    return path


def test_missing_store(tmp_path):
    assert load_origin_session_ids(tmp_path / "absent.json") == set()


def test_invalid_json(tmp_path):
    assert load_origin_session_ids(_store(tmp_path, "{oops")) == set()


@pytest.mark.parametrize("data", [[{"claudeSessionId": "a"}], "null", 5])
def test_non_object_top_level(tmp_path, data):
    path = _store(tmp_path, data if isinstance(data, str) else json.dumps(data))
    assert load_origin_session_ids(path) == set()


def test_legacy_and_per_cli_ids(tmp_path):
    path = _store(
        tmp_path,
        {
            "k1": {"claudeSessionId": "legacy-1"},
            "k2": {"cliSessionIds": {"claude-code": "new-2"}},
            "k3": {"cliSessionIds": {"other-cli": "skip"}},
            "k4": {"sessionId": "own-only"},
            "k5": "not a record",
        },
    )
    assert load_origin_session_ids(path) == {"legacy-1", "new-2"}


def test_other_cli_name(tmp_path):
    path = _store(tmp_path, {"k3": {"cliSessionIds": {"other-cli": "x"}}})
    assert load_origin_session_ids(path, cli_name="other-cli") == {"x"}


def test_per_cli_id_preferred_over_legacy():
    record = {"cliSessionIds": {"claude-code": "new"}, "claudeSessionId": "old"}
    assert foreign_session_id(record, "claude-code") == "new"


def test_empty_ids_ignored():
    assert foreign_session_id({"cliSessionIds": {"claude-code": ""}, "claudeSessionId": ""}, "claude-code") is None
