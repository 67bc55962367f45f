"""Logging configuration for the batchasr driver."""

import logging
import sys
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s - %(threadName)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(log_level: str, log_file: Optional[Path] = None) -> None:
    """Configure the root logger.

    Args:
        log_level: Logging level name (e.g. "INFO").
        log_file: Optional file to write log records to, in addition to stderr.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    # Replace handlers from any previous call
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)
