"""Memdex database layer."""

from memdex.db.connection import Database
from memdex.db.migrations import MIGRATIONS, run_migrations
from memdex.db.repository import Repository
from memdex.db.schema import CURRENT_VERSION, initialize
from memdex.db.vectors import ensure_vec_table, model_to_slug, vec_table_name

__all__ = [
    "CURRENT_VERSION",
    "Database",
    "Repository",
    "initialize",
    "run_migrations",
    "MIGRATIONS",
    "ensure_vec_table",
    "model_to_slug",
    "vec_table_name",
]
