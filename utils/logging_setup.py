"""Logging configuration for the converter: console plus a rotating file."""

import datetime
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from config.paths import default_log_root

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"


def setup_logging(log_directory: Optional[Path] = None, verbose: bool = False) -> Optional[Path]:
    """Attach a console handler and, when possible, a rotating file handler.

    Args:
        log_directory: Where to write the application log. Defaults to the log root.
        verbose: Show DEBUG records on the console too.

    Returns:
        The log file path, or None when only console logging could be set up.
    """
    logs_dir = Path(log_directory) if log_directory else default_log_root()
    log_file: Optional[Path] = None
    try:
        logs_dir.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.datetime.now().strftime("%Y-%m-%d_%H-%M-%S")
        log_file = logs_dir / f"webp2mp4_{timestamp}.log"
    except OSError as exc:
        print(f"ERROR: Cannot create log directory '{logs_dir}': {exc}", file=sys.stderr)

    formatter = logging.Formatter(LOG_FORMAT)

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    for handler in root_logger.handlers[:]:
        handler.close()
        root_logger.removeHandler(handler)

    if log_file is not None:
        try:
            file_handler = RotatingFileHandler(log_file, maxBytes=10 * 1024 * 1024, backupCount=5, encoding="utf-8")
            file_handler.setFormatter(formatter)
            file_handler.setLevel(logging.DEBUG)
            root_logger.addHandler(file_handler)
        except OSError as exc:
            print(f"ERROR: Cannot create log file handler: {exc}", file=sys.stderr)
            log_file = None

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    console_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
    root_logger.addHandler(console_handler)

    return log_file
