"""memdex status: what the index holds and how it was built."""

from __future__ import annotations

from datetime import datetime

import typer
from rich.panel import Panel
from rich.table import Table

from memdex.cli.common import console, load_cli_config, open_index
from memdex.cli.errors import warn_empty_index
from memdex.index import IndexStatus


def status_cmd(ctx: typer.Context) -> None:
    """Show file and chunk counts per source and the active embedding model."""
    cfg = load_cli_config(ctx)
    index = open_index(cfg)
    try:
        status = index.status()
    finally:
        index.close()

    console.print(_overview_panel(status))
    if status.files == 0:
        console.print(warn_empty_index())
        return
    console.print(_sources_table(status))


def _format_ms(value: int | None) -> str:
    if value is None:
        return "never"
    return datetime.fromtimestamp(value / 1000).strftime("%Y-%m-%d %H:%M")


def _overview_panel(status: IndexStatus) -> Panel:
    vector = "[green]sqlite-vec[/]" if status.vector_available else "[yellow]brute-force[/]"
    lines = [
        f"[bold]Database:[/]      {status.db_path}",
        f"[bold]Model:[/]         {status.provider}:{status.model}",
        f"[bold]Vector search:[/] {vector}",
        f"[bold]Files:[/]         {status.files}",
        f"[bold]Chunks:[/]        {status.chunks}",
        f"[bold]Cached vectors:[/] {status.cache_entries}",
        f"[bold]Last full reindex:[/] {_format_ms(status.last_full_reindex_at)}",
    ]
    return Panel("\n".join(lines), title="[bold]Index[/]", expand=False)


def _sources_table(status: IndexStatus) -> Table:
    table = Table(title="Sources", show_lines=False)
    table.add_column("Source", style="cyan")
    table.add_column("Files", justify="right")
    table.add_column("Chunks", justify="right")
    for row in status.sources:
        table.add_row(row.source, str(row.files), str(row.chunks))
    return table
