"""Back-office engine for a point-of-sale workbook.

Importing the package configures the ``pos_backoffice`` logger once: a rotating
file under ``.logs/`` and a stderr console handler. ``POS_BACKOFFICE_LOG_DIR``
moves the log directory and ``POS_BACKOFFICE_LOG_LEVEL`` sets the level of
both handlers.
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parents[2]
LOG_DIR_ENV = "POS_BACKOFFICE_LOG_DIR"
LOG_LEVEL_ENV = "POS_BACKOFFICE_LOG_LEVEL"
LOG_FILE_NAME = "pos_backoffice.log"

_CONSOLE_HANDLER_NAME = "pos_backoffice.console"


def resolve_log_level(raw: str | None, default: int = logging.INFO) -> int:
    """Map a level name such as ``"debug"`` to its ``logging`` constant."""

    if not raw:
        return default
    level = logging.getLevelName(raw.strip().upper())
    return level if isinstance(level, int) else default


def resolve_log_file() -> Path:
    log_dir = os.environ.get(LOG_DIR_ENV)
    base = Path(log_dir).expanduser() if log_dir else PROJECT_ROOT / ".logs"
    return base / LOG_FILE_NAME


def _configure_logging() -> logging.Logger:
    logger = logging.getLogger(__name__)
    if logger.handlers:
        return logger

    level = resolve_log_level(os.environ.get(LOG_LEVEL_ENV))
    logger.setLevel(level)
    formatter = logging.Formatter(
        fmt="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    log_file = resolve_log_file()
    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(log_file, maxBytes=1_000_000, backupCount=5, encoding="utf-8")
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    except OSError as exc:
        print(f"Warning: unable to open back-office log file '{log_file}': {exc}", file=sys.stderr)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.set_name(_CONSOLE_HANDLER_NAME)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    return logger


def set_console_level(level: int) -> None:
    """Change how much the console handler prints; the log file is unaffected."""

    for handler in log.handlers:
        if handler.get_name() == _CONSOLE_HANDLER_NAME:
            handler.setLevel(level)


log = _configure_logging()
log.debug("Logging ready for workbook operations")
