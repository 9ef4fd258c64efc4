"""Stock Tracker: a per-location stock ledger with sale records and derived balances.

Importing the package configures the shared ``log`` object used by every
layer. ``STOCK_TRACKER_LOG_DIR`` relocates the rotating log file and
``STOCK_TRACKER_LOG_LEVEL`` changes the file handler's threshold.
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path


__version__ = "1.0.0"

PROJECT_ROOT = Path(__file__).resolve().parents[2]
LOG_DIR = Path(os.environ.get("STOCK_TRACKER_LOG_DIR", PROJECT_ROOT / ".logs"))
LOG_FILE = LOG_DIR / "stock_tracker.log"
LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"


def _resolve_level(raw: str) -> int:
    level = logging.getLevelName(raw.strip().upper())
    return level if isinstance(level, int) else logging.INFO


def _configure_logging() -> logging.Logger:
    """Attach a rotating file handler and a stderr handler to the package logger.

    Console output is limited to warnings and errors so CLI listings stay
    readable; the file keeps the full record of writes.
    """

    logger = logging.getLogger(__name__)
    if logger.handlers:
        return logger

    file_level = _resolve_level(os.environ.get("STOCK_TRACKER_LOG_LEVEL", "INFO"))
    logger.setLevel(min(file_level, logging.WARNING))
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    try:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            LOG_FILE,
            maxBytes=1_000_000,
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setLevel(file_level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    except OSError as exc:
        print(
            f"Warning: unable to open log file '{LOG_FILE}': {exc}",
            file=sys.stderr,
        )

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.WARNING)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    return logger


log = _configure_logging()
log.debug("Logging ready for stock_tracker %s", __version__)
