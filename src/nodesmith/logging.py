"""Logging setup for nodesmith.

A build can run for hours, so every message goes to a log file at DEBUG
level with timestamps, while the console shows a timestamped INFO view
(DEBUG with ``--verbose``, WARNING with ``--quiet``).
"""

from __future__ import annotations

import logging
from pathlib import Path

_LOGGER_NAME = "nodesmith"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
_FILE_FORMAT = "[%(asctime)s] %(levelname)-8s %(name)s: %(message)s"
_CONSOLE_FORMAT = "[%(asctime)s] %(message)s"


def setup_logging(
    *,
    verbose: bool = False,
    quiet: bool = False,
    log_file: Path | None = None,
) -> logging.Logger:
    """Configure and return the root nodesmith logger.

    Args:
        verbose: If True, set console log level to DEBUG. Build tool
            output is logged at DEBUG, so this also echoes compiler output.
        quiet: If True, set console log level to WARNING. Ignored if *verbose* is True.
        log_file: If provided, add a file handler at DEBUG level to this path.
            Parent directories are created; the file is appended to.

    Returns:
        The configured root logger for nodesmith.
    """
    logger = logging.getLogger(_LOGGER_NAME)
    logger.setLevel(logging.DEBUG)

    # Remove any existing handlers to allow reconfiguration.
    for handler in list(logger.handlers):
        handler.close()
    logger.handlers.clear()

    console = logging.StreamHandler()
    if verbose:
        console.setLevel(logging.DEBUG)
    elif quiet:
        console.setLevel(logging.WARNING)
    else:
        console.setLevel(logging.INFO)
    console.setFormatter(logging.Formatter(_CONSOLE_FORMAT, datefmt=_DATE_FORMAT))
    logger.addHandler(console)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(log_file, mode="a", encoding="utf-8")
        fh.setLevel(logging.DEBUG)
        fh.setFormatter(logging.Formatter(_FILE_FORMAT, datefmt=_DATE_FORMAT))
        logger.addHandler(fh)

    return logger


def get_logger(name: str) -> logging.Logger:
    """Get a named child logger under the nodesmith namespace.

    Args:
        name: The logger name (will be prefixed with ``nodesmith.``).
    """
    return logging.getLogger(f"{_LOGGER_NAME}.{name}")
