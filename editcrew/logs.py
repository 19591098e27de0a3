"""
Process-level log sinks for the editcrew CLI.

Library modules log through ``logging.getLogger(__name__)``; the CLI routes
those records into Loguru so console and file output share one format.
"""

from __future__ import annotations

import logging
from pathlib import Path

import click
from loguru import logger

LOG_FILENAME = "editcrew.log"
CONSOLE_FORMAT = "<level>{level: <8}</level> | <cyan>{name}</cyan> - <level>{message}</level>"
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}"


class InterceptHandler(logging.Handler):
    """Intercept standard logging messages toward Loguru sinks."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def _to_stderr(message: str) -> None:
    # Resolved per write so a swapped stderr (tests, pagers) is honored.
    click.echo(message, err=True, nl=False)


def setup_logging(verbose: bool = False, state_dir: Path | None = None) -> None:
    """Send stdlib logging to stderr, plus a rotating file when the state dir exists."""
    logger.remove()
    logger.add(_to_stderr, level="DEBUG" if verbose else "WARNING", colorize=False, format=CONSOLE_FORMAT)
    if state_dir is not None and state_dir.is_dir():
        logger.add(
            str(state_dir / LOG_FILENAME),
            level="DEBUG",
            rotation="10 MB",
            retention="1 week",
            format=FILE_FORMAT,
        )
    logging.basicConfig(handlers=[InterceptHandler()], level=logging.DEBUG if verbose else logging.INFO, force=True)
