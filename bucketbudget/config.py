"""Configuration management for the bucket budgeting engine.

This module centralizes all configuration values including paths,
aggregator credentials, sync windows and cooldowns, with environment
variable overrides.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

# Base project root - assumes this file is in bucketbudget/
_PROJECT_ROOT = Path(__file__).parent.parent.resolve()

# Data directories
DATA_DIR = Path(os.getenv("BUCKETBUDGET_DATA_DIR", _PROJECT_ROOT / "data"))

# Database
DB_PATH = Path(
    os.getenv("BUCKETBUDGET_DB_PATH", DATA_DIR / "bucketbudget.db")
).resolve()

# Aggregator (bank data provider)
AGGREGATOR_BASE_URL = os.getenv("AGGREGATOR_BASE_URL", "https://api.akahu.io/v1")
AGGREGATOR_APP_TOKEN = os.getenv("AGGREGATOR_APP_TOKEN", "")
AGGREGATOR_USER_TOKEN = os.getenv("AGGREGATOR_USER_TOKEN", "")
AGGREGATOR_TIMEOUT_SECONDS = float(os.getenv("AGGREGATOR_TIMEOUT_SECONDS", "30"))

# Sync behaviour
REFRESH_COOLDOWN_SECONDS = int(os.getenv("REFRESH_COOLDOWN_SECONDS", "3600"))
STEADY_STATE_SYNC_DAYS = int(os.getenv("STEADY_STATE_SYNC_DAYS", "7"))
MAX_INITIAL_SYNC_DAYS = 30
REFRESH_SETTLE_SECONDS = float(os.getenv("REFRESH_SETTLE_SECONDS", "2"))

LOG_LEVEL = os.getenv("BUCKETBUDGET_LOG_LEVEL", "INFO")
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str | None = None) -> None:
    """Install the package's log format on the root logger."""
    logging.basicConfig(level=(level or LOG_LEVEL).upper(), format=LOG_FORMAT)
