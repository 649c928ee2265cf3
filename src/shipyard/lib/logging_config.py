"""Logging configuration for Shipyard.

Diagnostics go through the standard ``logging`` module under the
``shipyard`` logger namespace. Human-facing progress output is written by
the CLI with click.
"""

from __future__ import annotations

import logging
from pathlib import Path

ROOT_LOGGER_NAME = "shipyard"
LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"
CONSOLE_FORMAT = "%(levelname)s: %(message)s"


def get_logger(name: str) -> logging.Logger:
    """Return a logger for a Shipyard module."""
    return logging.getLogger(name)


def setup_logging(
    verbose: bool = False,
    quiet: bool = False,
    log_file: Path | None = None,
) -> logging.Logger:
    """Configure the Shipyard logger hierarchy.

    Args:
        verbose: Enable DEBUG output on the console
        quiet: Only show warnings and errors on the console
        log_file: Optional file receiving the full DEBUG log

    Returns:
        The configured root ``shipyard`` logger
    """
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(logging.DEBUG)

    # Re-running setup (tests, nested CLI invocations) must not stack handlers
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    if verbose:
        console_level = logging.DEBUG
    elif quiet:
        console_level = logging.WARNING
    else:
        console_level = logging.INFO

    console = logging.StreamHandler()
    console.setLevel(console_level)
    console.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    logger.addHandler(console)

    if log_file is not None:
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_file, encoding="utf-8")
        except OSError as exc:
            logger.warning(f"Cannot write log file {log_file}: {exc}")
        else:
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
            logger.addHandler(file_handler)

    return logger
