"""Tests for the Database connection layer."""

from __future__ import annotations

import sqlite3
from pathlib import Path

import pytest
from conftest import requires_vec

from memdex.db.connection import Database


def test_connect_creates_file_and_parent(tmp_path):
    db_path = tmp_path / "nested" / "index.db"
    db = Database(db_path)
    conn = db.connect()
    conn.close()
    assert db_path.exists()


@requires_vec
def test_sqlite_vec_loads(tmp_path):
    db = Database(tmp_path / "index.db")
    conn = db.connect()
    version = conn.execute("SELECT vec_version()").fetchone()[0]
    conn.close()
    assert version.startswith("v")
    assert db.vector_available is True


def test_vector_disabled_skips_extension(tmp_path):
    db = Database(tmp_path / "index.db", vector=False)
    conn = db.connect()
    conn.close()
    assert db.vector_available is False


def test_extension_load_failure_falls_back(tmp_path, monkeypatch):
    def _boom(conn):
        raise sqlite3.OperationalError("not authorized")

    monkeypatch.setattr("memdex.db.connection.sqlite_vec.load", _boom)
    db = Database(tmp_path / "index.db")
    conn = db.connect()
    assert conn.execute("SELECT 1").fetchone()[0] == 1
    conn.close()
    assert db.vector_available is False


def test_foreign_keys_enabled(tmp_path):
    db = Database(tmp_path / "index.db")
    conn = db.connect()
    result = conn.execute("PRAGMA foreign_keys").fetchone()[0]
    conn.close()
    assert result == 1


def test_wal_journal_mode(tmp_path):
    db = Database(tmp_path / "index.db")
    conn = db.connect()
    mode = conn.execute("PRAGMA journal_mode").fetchone()[0]
    conn.close()
    assert mode == "wal"


def test_row_factory_set(tmp_path):
    db = Database(tmp_path / "index.db")
    conn = db.connect()
    conn.execute("CREATE TABLE t (x INTEGER)")
    conn.execute("INSERT INTO t VALUES (42)")
    row = conn.execute("SELECT x FROM t").fetchone()
    conn.close()
    assert row["x"] == 42


def test_context_manager_closes_connection(tmp_path):
    db = Database(tmp_path / "index.db")
    with db as conn:
        conn.execute("CREATE TABLE t (x INTEGER)")
    with pytest.raises(sqlite3.ProgrammingError):
        conn.execute("SELECT 1")


def test_accepts_path_str(tmp_path):
    db = Database(str(tmp_path / "index.db"))
    assert isinstance(db.db_path, Path)
    with db as conn:
        assert conn.execute("SELECT 1").fetchone()[0] == 1
