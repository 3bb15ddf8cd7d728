"""memdex sync: bring the index up to date with every enabled source."""

from __future__ import annotations

from typing import Annotated

import typer
import watchfiles
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskProgressColumn, TextColumn

from memdex.cli.common import console, load_cli_config, open_index
from memdex.cli.errors import err_no_api_key, err_storage, warn_failed_sources
from memdex.errors import StorageError
from memdex.index import MemoryIndex, watch_roots
from memdex.ingest.providers import provider_of, validate_api_key
from memdex.sync.controller import SyncReport
from memdex.sync.progress import ProgressUpdate

_WATCHED_SUFFIXES = (".md", ".jsonl", ".json")


def sync_cmd(
    ctx: typer.Context,
    force: Annotated[
        bool,
        typer.Option("--force", help="Rebuild the whole index out of place."),
    ] = False,
    watch: Annotated[
        bool,
        typer.Option("--watch", help="Keep running and sync whenever a source file changes."),
    ] = False,
) -> None:
    """Index new and changed files, and drop files that disappeared."""
    cfg = load_cli_config(ctx)

    try:
        validate_api_key(cfg.embedding.model)
    except EnvironmentError:
        console.print(err_no_api_key(provider_of(cfg.embedding.model)))
        raise typer.Exit(1)

    index = open_index(cfg)
    try:
        _print_report(_run_once(index, force))
        if watch or cfg.sync.watch:
            _watch(index, cfg.sync.watch_debounce)
    except StorageError as exc:
        console.print(err_storage(str(index.db_path), str(exc)))
        raise typer.Exit(1)
    finally:
        index.close()


def _run_once(index: MemoryIndex, force: bool) -> SyncReport:
    plan = index.plan(force)
    if plan.index_all:
        console.print(f"[bold]→ {plan.mode} sync[/] [dim]({plan.reason})[/]")

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TaskProgressColumn(),
        transient=True,
        console=console,
    ) as prog:
        task = prog.add_task("Syncing…", total=None)

        def _on_progress(update: ProgressUpdate) -> None:
            prog.update(
                task,
                completed=update.completed,
                total=update.total or None,
                description=update.label or "Syncing…",
            )

        return index.sync(force=force, progress=_on_progress)


def _watch(index: MemoryIndex, debounce: float) -> None:
    """Run an incremental sync for every batch of source file changes."""
    roots = watch_roots(index.config)
    if not roots:
        console.print("[yellow]Nothing to watch:[/] no enabled source directory exists yet.")
        return

    console.print(f"[dim]Watching {len(roots)} path(s) for changes (Ctrl+C to stop)…[/]")
    try:
        for changes in watchfiles.watch(*roots, debounce=int(debounce * 1000)):
            if not any(path.endswith(_WATCHED_SUFFIXES) for _, path in changes):
                continue
            _print_report(_run_once(index, force=False))
    except KeyboardInterrupt:
        console.print("[dim]Stopped watching.[/]")


def _print_report(report: SyncReport) -> None:
    console.print(
        f"[green]✓[/] {report.mode} sync: "
        f"{report.indexed} indexed, {report.skipped} unchanged, "
        f"{report.removed} removed"
        + (f", [red]{report.failed} failed[/]" if report.failed else "")
    )
    if report.failed_sources:
        console.print(warn_failed_sources(report.failed_sources))
