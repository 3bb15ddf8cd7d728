"""Logging configuration for memdex.

Library modules only create loggers (``logging.getLogger(__name__)``); the
CLI installs handlers here. LiteLLM output is kept quiet unless verbose.
"""

from __future__ import annotations

import logging

from rich.console import Console
from rich.logging import RichHandler

_PACKAGE_LOGGER = "memdex"
_NOISY_LOGGERS = ("LiteLLM", "litellm", "httpx", "httpcore", "openai")


def configure_logging(verbose: bool = False, console: Console | None = None) -> logging.Handler:
    """Route memdex log records to a rich handler on stderr.

    Args:
        verbose: Show DEBUG records (including library output) instead of
            WARNING and above.
        console: Console to write to; defaults to a stderr console.

    Returns:
        The installed handler, so callers can remove it again.
    """
    level = logging.DEBUG if verbose else logging.WARNING
    handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=verbose,
        rich_tracebacks=True,
        markup=False,
    )
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter("%(name)s: %(message)s", datefmt="%H:%M:%S"))

    pkg_logger = logging.getLogger(_PACKAGE_LOGGER)
    for existing in list(pkg_logger.handlers):
        if isinstance(existing, RichHandler):
            pkg_logger.removeHandler(existing)
    pkg_logger.addHandler(handler)
    pkg_logger.setLevel(level)
    pkg_logger.propagate = False

    configure_quiet_libraries(quiet=not verbose)
    return handler


def configure_quiet_libraries(quiet: bool = True) -> None:
    """Silence LiteLLM and HTTP client chatter unless *quiet* is False."""
    import litellm

    litellm.suppress_debug_info = quiet
    level = logging.WARNING if quiet else logging.DEBUG
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(level)
