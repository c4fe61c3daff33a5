"""Logging setup shared by the daemon and the foreground commands.

Everything logs under the ``clipmesh`` logger. A long-running process gets
rich output on stderr plus size-capped files in ``~/.clipmesh/logs``:
``<name>.log`` for INFO and up, ``error.log`` for errors only.
"""

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

ROOT_LOGGER = "clipmesh"
FILE_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
MAX_LOG_BYTES = 2 * 1024 * 1024
LOG_BACKUPS = 3

# Per-request chatter from these drowns out sync activity at INFO
NOISY_LOGGERS = ("httpx", "httpcore", "uvicorn.access")


def _file_handler(path: Path, level: int) -> logging.Handler:
    handler = RotatingFileHandler(
        path,
        maxBytes=MAX_LOG_BYTES,
        backupCount=LOG_BACKUPS,
        encoding="utf-8",
    )
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    return handler


def setup_logging(
    level: str = "INFO",
    log_dir: Path | None = None,
    console: bool = True,
    log_name: str = "clipmeshd",
) -> logging.Logger:
    """Configure the ``clipmesh`` logger for this process.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR)
        log_dir: Directory for log files (defaults to ~/.clipmesh/logs)
        console: Also log to stderr through rich
        log_name: Base name of the main log file

    Returns:
        The configured ``clipmesh`` logger
    """
    if log_dir is None:
        from clipmesh.config import get_config_dir
        log_dir = get_config_dir() / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)

    numeric_level = getattr(logging, level.upper())
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(numeric_level)

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    if console:
        logger.addHandler(RichHandler(
            console=Console(stderr=True),
            show_path=False,
            rich_tracebacks=True,
        ))

    logger.addHandler(_file_handler(log_dir / f"{log_name}.log", logging.INFO))
    logger.addHandler(_file_handler(log_dir / "error.log", logging.ERROR))

    quiet = logging.DEBUG if numeric_level <= logging.DEBUG else logging.WARNING
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(quiet)

    return logger


def get_logger(name: str = ROOT_LOGGER) -> logging.Logger:
    """Get a logger instance."""
    return logging.getLogger(name)
