"""
Logging configuration for snippet-runner.
"""
from __future__ import annotations

import logging
import sys

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(
    level: str = "INFO",
    log_file: str | None = None,
    rich_console: bool = False,
) -> None:
    """Configure root logging for library users and the CLI.

    Example:
        ```python
        setup_logging("DEBUG", rich_console=True)
        ```
    """
    log_level = logging.getLevelName(level.upper())
    if not isinstance(log_level, int):
        log_level = logging.INFO

    handlers: list[logging.Handler] = []
    if rich_console:
        from rich.logging import RichHandler

        handlers.append(RichHandler(rich_tracebacks=True, show_path=False))
        fmt = "%(message)s"
    else:
        handlers.append(logging.StreamHandler(sys.stderr))
        fmt = DEFAULT_FORMAT

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(logging.Formatter(DEFAULT_FORMAT))
        handlers.append(file_handler)

    logging.basicConfig(level=log_level, format=fmt, handlers=handlers, force=True)
