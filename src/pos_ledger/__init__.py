"""Point-of-sale ledger: stock, weighted-average cost, purchases, sales and returns.

Importing the package configures the shared ``pos_ledger`` logger once; every
module logs through :data:`log`.
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path


__version__ = "0.1.0"

PROJECT_ROOT = Path(__file__).resolve().parents[2]
LOG_DIR = PROJECT_ROOT / ".logs"
LOG_FILE = LOG_DIR / "pos_ledger.log"
LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"
LOG_MAX_BYTES = 1_000_000
LOG_BACKUPS = 5


def _file_handler(formatter: logging.Formatter) -> logging.Handler | None:
    """Return the rotating file handler, or ``None`` when the log dir is unwritable."""

    try:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(
            LOG_FILE,
            maxBytes=LOG_MAX_BYTES,
            backupCount=LOG_BACKUPS,
            encoding="utf-8",
        )
    except OSError as exc:
        print(f"Warning: unable to initialize log file at '{LOG_FILE}': {exc}", file=sys.stderr)
        return None
    handler.setLevel(logging.INFO)
    handler.setFormatter(formatter)
    return handler


def _configure_logging() -> logging.Logger:
    """Attach the file and stderr handlers to the package logger exactly once."""

    logger = logging.getLogger(__name__)
    if logger.handlers:
        return logger

    logger.setLevel(logging.INFO)
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    file_handler = _file_handler(formatter)
    if file_handler is not None:
        logger.addHandler(file_handler)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    return logger


log = _configure_logging()
log.debug("Logger initialized for the '%s' package", __name__)

__all__ = ["LOG_FILE", "log", "__version__"]
