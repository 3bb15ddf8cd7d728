"""memdex search: query the index from the terminal."""

from __future__ import annotations

import json
from dataclasses import asdict
from typing import Annotated, Optional

import typer
from rich.panel import Panel
from rich.text import Text

from memdex.cli.common import console, load_cli_config, open_index
from memdex.cli.errors import err_unknown_source, warn_empty_index
from memdex.search.retriever import MODES, SearchResult
from memdex.sources.base import SOURCE_KINDS


def search_cmd(
    ctx: typer.Context,
    query: Annotated[str, typer.Argument(help="Free-text query.")],
    project: Annotated[
        Optional[str],
        typer.Option("--project", "-p", help="Only return results from this project."),
    ] = None,
    source: Annotated[
        Optional[list[str]],
        typer.Option("--source", "-s", help="Restrict to a source kind (repeatable)."),
    ] = None,
    max_results: Annotated[
        Optional[int],
        typer.Option("--max-results", "-n", min=1, help="Maximum number of results."),
    ] = None,
    min_score: Annotated[
        Optional[float],
        typer.Option("--min-score", help="Drop results scoring below this value."),
    ] = None,
    mode: Annotated[
        Optional[str],
        typer.Option("--mode", help="Retrieval mode: hybrid, vector or keyword."),
    ] = None,
    as_json: Annotated[
        bool,
        typer.Option("--json", help="Print results as JSON."),
    ] = False,
) -> None:
    """Search notes and transcripts by meaning and keywords."""
    for name in source or []:
        if name not in SOURCE_KINDS:
            console.print(err_unknown_source(name))
            raise typer.Exit(1)
    if mode is not None and mode not in MODES:
        console.print(f"[red]Error:[/] Unknown mode '{mode}'.\n  Use one of: {', '.join(MODES)}")
        raise typer.Exit(1)

    cfg = load_cli_config(ctx)
    index = open_index(cfg)
    try:
        results = index.search(
            query,
            project=project,
            source=source or None,
            max_results=max_results,
            min_score=min_score,
            mode=mode,
        )
        empty = not results and index.status().chunks == 0
    finally:
        index.close()

    if as_json:
        typer.echo(json.dumps([asdict(r) for r in results], indent=2, ensure_ascii=False))
        return

    if not results:
        console.print(warn_empty_index() if empty else "[dim]No results.[/]")
        return

    for rank, result in enumerate(results, start=1):
        console.print(_result_panel(rank, result))


def _result_panel(rank: int, result: SearchResult) -> Panel:
    title = f"[bold]{rank}.[/] {result.path}:{result.start_line}-{result.end_line}"
    subtitle = f"{result.source}" + (f" · {result.project}" if result.project else "")
    subtitle += f" · score {result.score:.3f}"
    return Panel(
        Text(result.snippet),
        title=title,
        title_align="left",
        subtitle=f"[dim]{subtitle}[/]",
        subtitle_align="right",
        expand=True,
    )
