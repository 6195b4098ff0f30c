"""Logging setup for the swarm CLI.

Console output is colored by level and kept quiet unless verbose; the
rotating session log in the repository's log directory always gets
DEBUG.
"""

import logging
import logging.handlers
import sys
from pathlib import Path

# Detailed format for the log file
_DEFAULT_FORMAT = (
    "%(asctime)s | %(levelname)-8s | %(name)s | %(module)s.%(funcName)s:%(lineno)d | %(message)s"
)

# Simplified format for console
_CONSOLE_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"

_LOG_COLORS = {
    "DEBUG": "\033[94m",  # Blue
    "INFO": "\033[92m",  # Green
    "WARNING": "\033[93m",  # Yellow
    "ERROR": "\033[91m",  # Red
    "CRITICAL": "\033[91m\033[1m",  # Bold Red
    "RESET": "\033[0m",
}

# Third-party loggers that are noisy at DEBUG
_QUIET_LOGGERS = ("httpx", "httpcore", "asyncio")


class ColorFormatter(logging.Formatter):
    """Formatter that adds colors to log levels for console output."""

    def format(self, record: logging.LogRecord) -> str:
        levelname = record.levelname
        if levelname in _LOG_COLORS:
            record = logging.makeLogRecord(record.__dict__)
            record.levelname = f"{_LOG_COLORS[levelname]}{levelname}{_LOG_COLORS['RESET']}"
        return super().format(record)


def configure_logging(
    verbose: bool = False,
    log_dir: str | Path | None = None,
    max_file_size_mb: int = 10,
    backup_count: int = 3,
) -> Path | None:
    """Configure console and optional file logging.

    Args:
        verbose: Show DEBUG on the console instead of WARNING
        log_dir: Directory for swarm.log; no file logging if None
        max_file_size_mb: Size at which the log file rotates
        backup_count: Rotated files to keep

    Returns:
        Path of the log file, if one was configured
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.DEBUG if verbose else logging.WARNING)
    console_handler.setFormatter(ColorFormatter(_CONSOLE_FORMAT))
    root_logger.addHandler(console_handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    log_file = None
    if log_dir:
        log_path = Path(log_dir)
        log_path.mkdir(exist_ok=True, parents=True)
        log_file = log_path / "swarm.log"
        file_handler = logging.handlers.RotatingFileHandler(
            filename=log_file,
            maxBytes=max_file_size_mb * 1024 * 1024,
            backupCount=backup_count,
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(_DEFAULT_FORMAT))
        root_logger.addHandler(file_handler)

    logging.getLogger("swarm").debug(
        "Logging initialized (console: %s, file: %s)",
        "DEBUG" if verbose else "WARNING",
        log_file or "disabled",
    )
    return log_file
