"""Mandi ledger: customer balances for a produce trading business kept in one workbook.

Importing the package sets up the shared ``log`` used by every layer. Ledger
activity goes to ``.logs/mandi_ledger.log`` at the project root; warnings,
errors and any ``LEDGER DISCREPANCY`` also reach stderr so the CLI user sees
them.
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parents[2]
LOG_DIR = PROJECT_ROOT / ".logs"
LOG_FILE = LOG_DIR / "mandi_ledger.log"
LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"
LOG_MAX_BYTES = 1_000_000
LOG_BACKUPS = 5


def _configure_logging() -> logging.Logger:
    """Return the ``mandi_ledger`` logger, attaching its handlers on first use."""

    logger = logging.getLogger(__name__)
    if logger.handlers:
        return logger

    logger.setLevel(logging.INFO)
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    # Sales, payments and rollbacks
    try:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        ledger_handler = RotatingFileHandler(
            LOG_FILE,
            maxBytes=LOG_MAX_BYTES,
            backupCount=LOG_BACKUPS,
            encoding="utf-8",
        )
        ledger_handler.setLevel(logging.INFO)
        ledger_handler.setFormatter(formatter)
        logger.addHandler(ledger_handler)
    except (OSError, PermissionError) as exc:
        print(
            f"Warning: ledger activity will not be written to '{LOG_FILE}': {exc}",
            file=sys.stderr,
        )

    # CLI output stays on stdout; only problems are echoed here
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.WARNING)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    return logger


log = _configure_logging()
log.info("Mandi ledger logging ready (file: %s)", LOG_FILE)
