"""Shared CLI plumbing: config loading and index construction."""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console

from memdex.cli.errors import err_config, err_storage
from memdex.config import ConfigError, MemdexConfig, load_config
from memdex.errors import StorageError
from memdex.index import MemoryIndex

console = Console()


def load_cli_config(ctx: typer.Context) -> MemdexConfig:
    """Load config honouring the global ``--config-dir`` option.

    Prints an actionable message and exits with status 1 on ConfigError.
    """
    obj = ctx.obj or {}
    config_dir: Path | None = obj.get("config_dir")
    global_path = config_dir / "config.yaml" if config_dir is not None else None
    try:
        return load_config(global_config_path=global_path)
    except ConfigError as exc:
        console.print(err_config(str(exc)))
        raise typer.Exit(1)


def open_index(cfg: MemdexConfig) -> MemoryIndex:
    """Open the index described by *cfg*, exiting with status 1 if it cannot be opened."""
    try:
        return MemoryIndex(cfg)
    except StorageError as exc:
        console.print(err_storage(cfg.store.path, str(exc)))
        raise typer.Exit(1)
