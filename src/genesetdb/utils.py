"""Logging setup and output directory helpers."""

import logging
from pathlib import Path
from typing import Optional, Union

PACKAGE_LOGGER = "genesetdb"
LOG_FILE = "genesetdb.log"

_FILE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
_CONSOLE_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"


def setup_logging(log_dir: Optional[Union[str, Path]] = None, level=logging.INFO,
                  console: bool = True) -> logging.Logger:
    """Send the package's log records to a log file and/or the console.

    Only the ``genesetdb`` logger is configured, so applications embedding
    the package keep control of the root logger. Handlers installed by an
    earlier call are replaced rather than stacked.

    Args:
        log_dir: Directory for ``genesetdb.log``. No file is written when omitted
        level: Logging level of the package logger
        console: Also log to stderr

    Returns:
        The package logger
    """
    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(level)
    for handler in [h for h in logger.handlers if getattr(h, "_genesetdb", False)]:
        logger.removeHandler(handler)
        handler.close()

    handlers = []
    if log_dir:
        log_dir = ensure_dir(log_dir)
        file_handler = logging.FileHandler(log_dir / LOG_FILE, mode="w")
        file_handler.setFormatter(logging.Formatter(_FILE_FORMAT))
        handlers.append(file_handler)
    if console:
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(logging.Formatter(_CONSOLE_FORMAT))
        handlers.append(console_handler)

    for handler in handlers:
        handler._genesetdb = True
        logger.addHandler(handler)
    if log_dir:
        logger.info(f"Logging to {log_dir / LOG_FILE}")
    return logger


def ensure_dir(path: Union[str, Path]) -> Path:
    """Ensure a directory exists, creating it if necessary.

    Args:
        path: Directory path

    Returns:
        Path object for the directory
    """
    path = Path(path)
    path.mkdir(parents=True, exist_ok=True)
    return path
