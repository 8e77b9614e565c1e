"""Settings resolved at import time: where data lives, pay-day and currency
defaults, the commit retry budget and log formatting.

Every path can be redirected with a ``PAYCYCLE_*`` environment variable,
which is how the tests and scripts point the engine at scratch locations.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional, Tuple

# Base project root - assumes this file is in paycycle_budget/
_PROJECT_ROOT = Path(__file__).parent.parent.resolve()

# Data directories
DATA_DIR = Path(os.getenv("PAYCYCLE_DATA_DIR", _PROJECT_ROOT / "data"))
IMPORTS_DIR = DATA_DIR / "imports"

# Database
DB_PATH = Path(
    os.getenv("PAYCYCLE_DB_PATH", DATA_DIR / "budget.db")
).resolve()

# Settings file read by the settings provider
SETTINGS_PATH = Path(
    os.getenv("PAYCYCLE_SETTINGS_PATH", DATA_DIR / "settings.json")
).resolve()

# Defaults used when settings are missing
DEFAULT_PAY_DAYS: Tuple[int, int] = (1, 15)
DEFAULT_CURRENCY = "USD"
DEFAULT_TIMEZONE = "UTC"

# Atomic write units retry this many times before surfacing a failure
MAX_COMMIT_ATTEMPTS = int(os.getenv("PAYCYCLE_MAX_COMMIT_ATTEMPTS", "5"))
RETRY_BACKOFF_SECONDS = 0.05

# Transactions listing page size
PAGE_SIZE = 25

LOG_LEVEL = os.getenv("PAYCYCLE_LOG_LEVEL", "INFO").upper()
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def ensure_data_directories() -> None:
    """Make sure the data and imports directories exist."""
    for directory in [DATA_DIR, IMPORTS_DIR]:
        directory.mkdir(parents=True, exist_ok=True)


def configure_logging(level: Optional[str] = None) -> None:
    """Install a basic stream handler for scripts and local runs."""
    logging.basicConfig(level=(level or LOG_LEVEL), format=LOG_FORMAT)
