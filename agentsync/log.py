"""Logging setup for the command line."""

from __future__ import annotations

import logging

from rich.console import Console
from rich.logging import RichHandler


def configure_logging(verbose: bool = False, console: Console | None = None) -> None:
    """Route agentsync loggers through rich.

    Library modules only ever call ``logging.getLogger(__name__)``; handlers
    are installed here, once, by the CLI.
    """
    level = logging.DEBUG if verbose else logging.WARNING
    handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=False,
        show_time=verbose,
        markup=False,
    )
    handler.setFormatter(logging.Formatter("%(message)s"))

    logger = logging.getLogger("agentsync")
    logger.handlers.clear()
    logger.addHandler(handler)
    logger.setLevel(level)
    logger.propagate = False
