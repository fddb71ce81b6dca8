"""Stockbook: a spreadsheet-backed tabular store with a metrics cache.

Importing the package configures the shared ``stockbook`` logger. Set
``STOCKBOOK_LOG_DIR`` to move the rotating log file and ``STOCKBOOK_LOG_LEVEL``
(``DEBUG``, ``INFO``, ...) to change how much is written.
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, Union

__version__ = "0.1.0"

PROJECT_ROOT = Path(__file__).resolve().parents[2]
DEFAULT_LOG_DIR = PROJECT_ROOT / ".logs"
LOG_FILE_NAME = "stockbook.log"
LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
LOG_MAX_BYTES = 1_000_000
LOG_BACKUP_COUNT = 5


def _resolve_level(level: Union[int, str, None]) -> int:
    if isinstance(level, int):
        return level
    if not level:
        return logging.INFO
    resolved = logging.getLevelName(level.strip().upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def configure_logging(
    name: str = __name__,
    *,
    log_dir: Optional[Path] = None,
    level: Union[int, str, None] = None,
) -> logging.Logger:
    """Attach a rotating file handler and a stderr handler to logger ``name``.

    ``log_dir`` and ``level`` default to the ``STOCKBOOK_LOG_DIR`` and
    ``STOCKBOOK_LOG_LEVEL`` environment variables, then to ``.logs/`` under the
    project root and ``INFO``. Unknown level names fall back to ``INFO``. A
    logger that already has handlers is returned unchanged.
    """

    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    if log_dir is None:
        log_dir = Path(os.environ.get("STOCKBOOK_LOG_DIR") or DEFAULT_LOG_DIR)
    if level is None:
        level = os.environ.get("STOCKBOOK_LOG_LEVEL")
    resolved_level = _resolve_level(level)

    logger.setLevel(resolved_level)
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    log_file = Path(log_dir) / LOG_FILE_NAME
    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=LOG_MAX_BYTES,
            backupCount=LOG_BACKUP_COUNT,
            encoding="utf-8",
        )
        file_handler.setLevel(resolved_level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    except OSError as exc:
        print(
            f"Warning: unable to initialize log file at '{log_file}': {exc}",
            file=sys.stderr,
        )

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(resolved_level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    return logger


log = configure_logging()
log.debug("Logger initialized for the 'stockbook' package (version %s).", __version__)
