"""Memdex rich error messages: actionable feedback.

Every error shown to the user must contain:
  1. What went wrong (clear cause)
  2. The exact action the user should take to fix it

Usage:
    from memdex.cli.errors import err_no_api_key
    console.print(err_no_api_key("openai"))
    raise typer.Exit(1)
"""

from __future__ import annotations

from memdex.sources.base import SOURCE_KINDS


def err_no_api_key(provider: str) -> str:
    """No API key for *provider*.

    Example:
        No API key for 'openai'. Set:  export OPENAI_API_KEY=sk-...
    """
    env_map = {
        "openai": "OPENAI_API_KEY",
        "cohere": "COHERE_API_KEY",
        "gemini": "GEMINI_API_KEY",
        "mistral": "MISTRAL_API_KEY",
        "voyage": "VOYAGE_API_KEY",
        "azure": "AZURE_API_KEY",
    }
    env_var = env_map.get(provider.lower(), f"{provider.upper()}_API_KEY")
    return (
        f"[red]Error:[/] No API key for '{provider}'.\n"
        f"  Set:  export {env_var}=sk-..."
    )


def err_config(message: str) -> str:
    """Configuration could not be loaded or failed validation."""
    return (
        f"[red]Error:[/] Invalid configuration.\n"
        f"  {message}\n"
        "  Fix the value in ~/.memdex/config.yaml or ./memdex.yaml and retry."
    )


def err_storage(db_path: str, detail: str) -> str:
    """Index database could not be opened, migrated or written."""
    return (
        f"[red]Error:[/] Index database problem at '{db_path}'.\n"
        f"  {detail}\n"
        "  Check the path is writable, then run:  memdex sync --force"
    )


def err_unknown_source(name: str) -> str:
    """--source names a source kind that does not exist."""
    return (
        f"[red]Error:[/] Unknown source '{name}'.\n"
        f"  Use one of: {', '.join(SOURCE_KINDS)}"
    )


def warn_failed_sources(names: list[str]) -> str:
    """Some sources could not be listed during sync."""
    return (
        f"[yellow]Warning:[/] Could not read source(s): {', '.join(names)}.\n"
        "  Their previously indexed files were kept.\n"
        "  Run:  memdex sync --verbose  to see the cause."
    )


def warn_empty_index() -> str:
    """Search or status on an index with nothing in it."""
    return (
        "[yellow]The index is empty.[/]\n"
        "  Run:  memdex sync"
    )
