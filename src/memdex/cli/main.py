"""Memdex CLI entry point."""

from __future__ import annotations

import importlib.metadata
from pathlib import Path
from typing import Annotated, Optional

import typer

from memdex.cli.search import search_cmd
from memdex.cli.status import status_cmd
from memdex.cli.sync import sync_cmd
from memdex.logging_config import configure_logging


def _installed_version() -> str:
    try:
        return importlib.metadata.version("memdex")
    except importlib.metadata.PackageNotFoundError:
        return "dev"


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"memdex {_installed_version()}")
        raise typer.Exit()


app = typer.Typer(
    name="memdex",
    help=(
        "Memdex: personal knowledge index.\n\n"
        "  memdex sync     Index notes, transcripts and session logs.\n"
        "  memdex search   Hybrid semantic + keyword search over the index."
    ),
    add_completion=False,
)


@app.callback()
def main_callback(
    ctx: typer.Context,
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            callback=_version_callback,
            is_eager=True,
            help="Show version and exit.",
        ),
    ] = False,
    config_dir: Annotated[
        Optional[Path],
        typer.Option("--config-dir", help="Directory holding config.yaml (default ~/.memdex)."),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Show debug logging."),
    ] = False,
) -> None:
    """Memdex: personal knowledge index."""
    configure_logging(verbose)
    ctx.obj = {"config_dir": config_dir, "verbose": verbose}


app.command("sync")(sync_cmd)
app.command("search")(search_cmd)
app.command("status")(status_cmd)


@app.command("version")
def version_cmd() -> None:
    """Show the installed memdex version."""
    typer.echo(f"memdex {_installed_version()}")


if __name__ == "__main__":
    app()
