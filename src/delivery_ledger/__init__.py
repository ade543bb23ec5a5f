"""Delivery ledger: stock transfers, invoice lifecycle and text artifacts.

Importing the package sets up the ``delivery_ledger`` logger. Records go to a
rotating file under ``.logs`` at the project root and to stderr.
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parents[2]
LOG_DIR = PROJECT_ROOT / ".logs"
LOG_FILE = LOG_DIR / "delivery_ledger.log"
LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
LOG_MAX_BYTES = 1_000_000
LOG_BACKUP_COUNT = 5


def _file_handler(formatter: logging.Formatter) -> logging.Handler | None:
    """Return the rotating ledger log handler, or ``None`` when the file is unusable."""
    try:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(
            LOG_FILE,
            maxBytes=LOG_MAX_BYTES,
            backupCount=LOG_BACKUP_COUNT,
            encoding="utf-8",
        )
    except OSError as exc:
        print(f"Warning: ledger log disabled, cannot open '{LOG_FILE}': {exc}", file=sys.stderr)
        return None
    handler.setFormatter(formatter)
    return handler


def _console_handler(formatter: logging.Formatter) -> logging.Handler:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)
    return handler


def _configure_logging() -> logging.Logger:
    """Attach the file and stderr handlers once per process."""
    logger = logging.getLogger(__name__)
    if logger.handlers:
        return logger

    logger.setLevel(logging.INFO)
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
    for handler in (_file_handler(formatter), _console_handler(formatter)):
        if handler is not None:
            handler.setLevel(logging.INFO)
            logger.addHandler(handler)
    return logger


log = _configure_logging()

__all__ = ["LOG_FILE", "log"]
