"""Logging configuration for the zerotouch package."""
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional, Union

ROOT_LOGGER = "zerotouch"
LOG_FORMAT = "[%(levelname)s] [%(asctime)s] %(message)s"

# Printed as the last line of a successful run; remote monitors poll for it.
COMPLETION_SENTINEL = "BOOTSTRAP COMPLETE"


class IsoFormatter(logging.Formatter):
    """Formatter that renders record times as ISO-8601 with the local offset."""

    def formatTime(self, record, datefmt=None):
        stamp = datetime.fromtimestamp(record.created).astimezone()
        return stamp.isoformat(timespec="seconds")


def setup_logging(
    log_file: Optional[Union[str, Path]] = None,
    level: Union[int, str] = logging.INFO,
    console: bool = True,
) -> logging.Logger:
    """
    Configure the process-wide ``zerotouch`` logger.

    Args:
        log_file: Append-only log file shared with external monitors
        level: Logging level name or number
        console: Whether to also log to stdout

    Returns:
        The configured logger
    """
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)

    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(level)
    logger.propagate = False

    # Clear existing handlers
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
        handler.close()

    formatter = IsoFormatter(LOG_FORMAT)

    if console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    if log_file:
        path = Path(log_file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path, mode="a", encoding="utf-8")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    # Keep client libraries quiet unless we are debugging
    noisy_level = logging.DEBUG if level <= logging.DEBUG else logging.WARNING
    for name in ("urllib3", "kubernetes"):
        logging.getLogger(name).setLevel(noisy_level)

    return logger


def log_header(logger: logging.Logger, message: str) -> None:
    logger.info("=" * 74)
    logger.info(message)
    logger.info("=" * 74)
