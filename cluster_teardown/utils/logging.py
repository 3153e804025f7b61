"""Logging configuration."""

from __future__ import annotations

import logging
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

# Third-party loggers that are noisy at INFO and DEBUG
NOISY_LOGGERS = (
    "boto3",
    "botocore",
    "urllib3",
    "googleapiclient",
    "google.auth",
)


def setup_logging(level: str = "INFO", verbose: bool = False, console: Optional[Console] = None) -> None:
    """Configure the root logger with a Rich handler.

    Args:
        level: Log level name (e.g., "INFO", "DEBUG")
        verbose: Keep third-party library logs at the same level
        console: Console to log to (default: stderr)
    """
    handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=verbose,
        rich_tracebacks=verbose,
        markup=False,
    )
    handler.setFormatter(logging.Formatter("%(message)s", datefmt="[%X]"))

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level.upper())

    if not verbose:
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)
