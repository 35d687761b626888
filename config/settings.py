"""
Configuration Settings for Album Sync

This module centralizes all configuration settings for the Album Sync application,
including environment variables, remote instance access, and scheduler constants.
"""

import os
from pathlib import Path
from dotenv import load_dotenv

# Determine the application root directory
APP_ROOT = Path(__file__).resolve().parent.parent

# Load environment variables from .env file
load_dotenv(dotenv_path=os.path.join(APP_ROOT, '.env'))


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, default))
    except (TypeError, ValueError):
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, default))
    except (TypeError, ValueError):
        return default


# =============================================================================
# Remote Instance Settings
# =============================================================================

PIXELFED_INSTANCE = os.getenv("PIXELFED_INSTANCE", "https://pixelfed.social").rstrip("/")

# Access token for the remote instance (OAuth handled elsewhere)
PIXELFED_ACCESS_TOKEN = os.getenv("PIXELFED_ACCESS_TOKEN", "")
TOKEN_FILE = os.getenv("TOKEN_FILE", os.path.join(APP_ROOT, ".token.json"))

HTTP_TIMEOUT_SECONDS = _env_float("HTTP_TIMEOUT_SECONDS", 15.0)      # Per request timeout
HTTP_MAX_ATTEMPTS = _env_int("HTTP_MAX_ATTEMPTS", 3)                 # Attempts for transient upstream failures
HTTP_RETRY_DELAY_SECONDS = _env_float("HTTP_RETRY_DELAY_SECONDS", 0.4)
USER_AGENT = os.getenv("USER_AGENT", "AlbumSync/1.0 (+virtual albums)")

# =============================================================================
# Database Settings
# =============================================================================

ALBUMS_DB_PATH = os.getenv("ALBUMS_DB_PATH", os.path.join(APP_ROOT, "albums.db"))
DB_BUSY_TIMEOUT_MS = 5000

# =============================================================================
# Query Settings
# =============================================================================

DEFAULT_QUERY_LIMIT = 20             # Photos per album when none requested
MIN_QUERY_LIMIT = 1
MAX_QUERY_LIMIT = 40                 # Remote API page cap

TAG_HEADROOM_FACTOR = 5              # Over-fetch per tag for local AND/OR filtering
TAG_HEADROOM_CAP = 200
COMPOUND_HEADROOM_FACTOR = 3         # Over-fetch of user posts before tag filtering
COMPOUND_HEADROOM_CAP = 120
USER_PAGE_MIN = 10                   # Per-account statuses page bounds
USER_PAGE_MAX = 40
FETCH_MAX_WORKERS = _env_int("FETCH_MAX_WORKERS", 8)   # Fan-out threads per resolve

# =============================================================================
# Scheduler Settings
# =============================================================================

SCHEDULER_TICK_SECONDS = _env_float("SCHEDULER_TICK_SECONDS", 60.0)           # Driver cadence
SCHEDULER_ALBUM_DELAY_SECONDS = _env_float("SCHEDULER_ALBUM_DELAY_SECONDS", 1.0)
SCHEDULER_STOP_GRACE_SECONDS = _env_float("SCHEDULER_STOP_GRACE_SECONDS", 2.0)
SCHEDULER_LIST_LIMIT = 1000          # Albums considered per tick

JITTER_PERCENTAGE = _env_float("JITTER_PERCENTAGE", 10.0)     # +/- percent of interval
BASE_BACKOFF_SECONDS = _env_float("BASE_BACKOFF_SECONDS", 60.0)
MAX_BACKOFF_SECONDS = _env_float("MAX_BACKOFF_SECONDS", 6 * 60 * 60.0)

DEFAULT_REFRESH_INTERVAL_MS = _env_int("DEFAULT_REFRESH_INTERVAL_MS", 10 * 60 * 1000)
FALLBACK_REFRESH_INTERVAL_MS = 24 * 60 * 60 * 1000    # Albums stored without an interval
MAX_REFRESH_INTERVAL_MS = 30 * 24 * 60 * 60 * 1000

# Keys in the store's key/value settings table
SYNC_INTERVAL_SETTING = "sync.interval_ms"        # Default interval chosen at runtime
SCHEDULER_STATUS_SETTING = "scheduler.status"     # Last recorded scheduler status
