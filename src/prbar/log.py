"""Logging setup for plugin runs."""

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

LOG_FILE_NAME = "prbar.run.log"
LOG_FORMAT = "[%(asctime)s] %(levelname)s - %(name)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"


def get_log_path(log_dir: Path) -> Path:
    """Return the run log path inside the cache directory."""
    return log_dir / LOG_FILE_NAME


def setup_logging(level: str, log_dir: Path) -> None:
    """Configure the ``prbar`` logger to write to a size-rotated file.

    Stdout belongs to the menu output, so nothing is logged to the console.
    Calling this again replaces the previous handler.

    Args:
        level: Level name (DEBUG, INFO, WARNING, ERROR).
        log_dir: Directory that holds the run log.
    """
    logger = logging.getLogger("prbar")
    logger.setLevel(getattr(logging, level.upper(), logging.ERROR))
    logger.propagate = False

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(
            get_log_path(log_dir), maxBytes=512 * 1024, backupCount=1, encoding="utf-8"
        )
    except OSError:
        handler = logging.NullHandler()

    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT))
    logger.addHandler(handler)
