"""Loguru logging setup for bitcoind-manager.

Usage:
    from bitcoind_manager.daemon.logging_setup import setup_logging, get_logger

    # At startup
    setup_logging(log_level="INFO", log_dir=config.paths.app_state_dir / "logs")

    # In modules
    from loguru import logger
    logger.info("Spawned bitcoind pid={}", pid)

Features:
    - Async-safe with enqueue=True
    - Automatic rotation (10 MB) and retention (7 days)
    - Colored console output for development
    - Optional JSON file output
    - Daemon output lines carry source="bitcoind" so they can be filtered
"""

import sys
from pathlib import Path
from typing import Any

from loguru import logger

# Default console format with colors
CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{extra[source]}</cyan> | "
    "<level>{message}</level>"
)

# Simple format without colors (for file output)
FILE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
    "{level: <8} | "
    "{extra[source]} | "
    "{name}:{function}:{line} | "
    "{message}"
)

LOG_FILE_NAME = "manager.log"


def setup_logging(
    log_level: str = "INFO",
    console: bool = True,
    log_dir: Path | None = None,
    serialize_file: bool = False,
    diagnose_file: bool = False,
) -> Path | None:
    """Configure logging with console and file handlers.

    Uses ``enqueue=True`` for thread-safe async writes. Callers should
    ``await logger.complete()`` before process exit to drain the queue.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        console: Enable console (stderr) output.
        log_dir: Directory for the rotating log file; None disables file output.
        serialize_file: Use JSON format for file logs.
        diagnose_file: Show variable values in file tracebacks (leaks secrets).

    Returns:
        Path to the log file, or None when file logging is disabled.
    """
    logger.remove()
    # Records logged without an explicit source belong to the manager itself
    logger.configure(extra={"source": "manager"})

    if console:
        logger.add(
            sys.stderr,
            format=CONSOLE_FORMAT,
            level=log_level,
            colorize=True,
            backtrace=True,
            diagnose=True,
            enqueue=True,
        )

    if log_dir is None:
        return None

    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / LOG_FILE_NAME

    logger.add(
        str(log_file),
        level=log_level,
        format=FILE_FORMAT,
        rotation="10 MB",
        retention="7 days",
        compression="gz",
        serialize=serialize_file,
        enqueue=True,
        backtrace=True,
        diagnose=diagnose_file,
    )
    return log_file


def get_logger(name: str, **context: Any) -> "logger":
    """Get a context-bound logger.

    Args:
        name: Logger name (usually __name__)
        **context: Additional context to bind to all log messages

    Example:
        >>> daemon_log = get_logger(__name__, source="bitcoind")
        >>> daemon_log.info("Bitcoin Knots version v29.2.knots20251010")
    """
    return logger.bind(name=name, **context)
