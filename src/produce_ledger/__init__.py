"""Produce ledger package.

Importing the package sets up the shared ``log`` used by every module. The
rotating log file keeps the full INFO trail of ledger mutations while stderr
only shows warnings unless the CLI runs with ``--verbose``. Both can be
redirected through ``PRODUCE_LEDGER_LOG_DIR`` and ``PRODUCE_LEDGER_LOG_LEVEL``.
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parents[2]
LOG_DIR = Path(os.environ.get("PRODUCE_LEDGER_LOG_DIR", PROJECT_ROOT / ".logs"))
LOG_FILE = LOG_DIR / "produce_ledger.log"
LOG_LEVEL = os.environ.get("PRODUCE_LEDGER_LOG_LEVEL", "INFO").upper()
CONSOLE_HANDLER_NAME = "produce_ledger.console"


def _resolve_level(name: str) -> int:
    level = logging.getLevelName(name)
    if not isinstance(level, int):
        print(f"Warning: unknown log level '{name}', using INFO", file=sys.stderr)
        return logging.INFO
    return level


def _configure_logging() -> logging.Logger:
    """Attach the rotating ledger file and a quiet stderr handler once per process."""

    logger = logging.getLogger(__name__)
    if logger.handlers:
        return logger

    level = _resolve_level(LOG_LEVEL)
    logger.setLevel(level)
    formatter = logging.Formatter(
        fmt="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    try:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            LOG_FILE,
            maxBytes=2_000_000,
            backupCount=10,
            encoding="utf-8",
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    except (OSError, PermissionError) as exc:
        print(
            f"Warning: ledger log file '{LOG_FILE}' is not writable: {exc}",
            file=sys.stderr,
        )

    # Report output goes to stdout; keep stderr for problems.
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.set_name(CONSOLE_HANDLER_NAME)
    console_handler.setLevel(max(level, logging.WARNING))
    console_handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
    logger.addHandler(console_handler)

    return logger


def set_console_level(level: int) -> None:
    """Change how much of the ledger log is echoed to stderr."""
    for handler in log.handlers:
        if handler.get_name() == CONSOLE_HANDLER_NAME:
            handler.setLevel(level)
    if level < log.level:
        log.setLevel(level)


log = _configure_logging()
log.debug("Ledger logger ready (file: %s, level: %s)", LOG_FILE, LOG_LEVEL)
