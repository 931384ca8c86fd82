"""Configuration settings for Orchard."""

import os
import sys
from pathlib import Path
from dotenv import load_dotenv


def is_bundled() -> bool:
    """
    Check if the application is running from a PyInstaller bundle.

    Returns:
        True if running from a bundled executable, False otherwise.
    """
    return getattr(sys, 'frozen', False) and hasattr(sys, '_MEIPASS')


def get_user_data_dir() -> Path:
    """
    Get the directory for user-writable data (engine state, shared storage).

    ORCHARD_DATA_DIR overrides the location. Otherwise development runs use
    BASE_DIR/data and bundled apps use the platform's application data folder
    so state persists across updates.

    Returns:
        Path to the user data directory.
    """
    override = os.getenv("ORCHARD_DATA_DIR", "")
    if override:
        return Path(override).expanduser()

    if not is_bundled():
        return Path(__file__).parent / "data"

    if sys.platform == 'darwin':
        # macOS: ~/Library/Application Support/Orchard
        return Path.home() / "Library" / "Application Support" / "Orchard"
    if sys.platform == 'win32':
        appdata = os.environ.get('APPDATA')
        if appdata:
            return Path(appdata) / "Orchard"
        return Path.home() / "AppData" / "Roaming" / "Orchard"
    # Linux: ~/.local/share/Orchard
    return Path.home() / ".local" / "share" / "Orchard"


def _get_int(env_var: str, default: int) -> int:
    """Read an integer setting from the environment, falling back on bad values."""
    raw = os.getenv(env_var, "")
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        import logging
        logging.getLogger(__name__).warning(
            f"{env_var}={raw!r} is not an integer, using {default}"
        )
        return default


# Load environment variables from .env file (only in development)
if not is_bundled():
    # Explicitly load from the project root (where config.py lives)
    _env_path = Path(__file__).parent / ".env"
    load_dotenv(_env_path)

# User data directory (engine state, shared storage, backups)
USER_DATA_DIR = get_user_data_dir()

# Paths
STATE_FILE = USER_DATA_DIR / "orchard_state.json"
SHARED_STORAGE_FILE = USER_DATA_DIR / "shared_storage.json"  # Read by the blocking extension
BACKUP_DIR = USER_DATA_DIR / "backups"  # Corrupt payloads preserved for manual recovery

# Persisted document version (bump together with a new step in storage/migration.py)
STORAGE_VERSION = 3

# Session statuses
STATUS_SCHEDULED = "scheduled"
STATUS_ACTIVE = "active"
STATUS_PAUSED = "paused"
STATUS_COMPLETED = "completed"
STATUS_CANCELLED = "cancelled"
TERMINAL_STATUSES = {STATUS_COMPLETED, STATUS_CANCELLED}
SESSION_STATUSES = {STATUS_SCHEDULED, STATUS_ACTIVE, STATUS_PAUSED} | TERMINAL_STATUSES

# Rewards
MINUTES_PER_FRUIT = 5  # 1 fruit per 5 focused minutes
TRANSACTION_EARNED = "earned"
TRANSACTION_SPENT = "spent"
SOURCE_FOCUS_SESSION = "focus_session"
SOURCE_TASK_COMPLETION = "task_completion"
SOURCE_STREAK_BONUS = "streak_bonus"
SOURCE_APP_UNLOCK = "app_unlock"
SOURCE_MANUAL = "manual"
TRANSACTION_SOURCES = {
    SOURCE_FOCUS_SESSION,
    SOURCE_TASK_COMPLETION,
    SOURCE_STREAK_BONUS,
    SOURCE_APP_UNLOCK,
    SOURCE_MANUAL,
}

# Blocklist settings: (minimum, maximum, step) for bounded increments
UNLOCK_COST_PER_MINUTE_BOUNDS = (1, 10, 1)
MAX_UNLOCK_DURATION_BOUNDS = (15, 180, 15)
ALLOWED_UNLOCKS_PER_DAY_BOUNDS = (1, 20, 1)

DEFAULT_UNLOCK_COST_PER_MINUTE = _get_int("ORCHARD_UNLOCK_COST_PER_MINUTE", 1)
DEFAULT_MAX_UNLOCK_DURATION = _get_int("ORCHARD_MAX_UNLOCK_DURATION", 30)
DEFAULT_ALLOWED_UNLOCKS_PER_DAY = _get_int("ORCHARD_ALLOWED_UNLOCKS_PER_DAY", 5)

# Unlock durations offered on the shield and blocking screen (minutes)
UNLOCK_DURATION_OPTIONS = [1, 5, 15, 30]

# Unlock end reasons
UNLOCK_END_EXPIRED = "expired"
UNLOCK_END_EARLY = "ended_early"
UNLOCK_END_REPLACED = "replaced"

# Housekeeping
UNLOCK_HISTORY_KEEP_DAYS = 7
TRANSACTION_ARCHIVE_THRESHOLD = 500
TRANSACTION_ARCHIVE_KEEP_DAYS = 30
SESSION_HISTORY_SUGGEST_LIMIT = 1000

# Blocking Bridge shared-storage keys and deep links
SHIELD_CONFIGURATION_KEY = "shieldConfiguration"
SHIELD_ACTIONS_KEY = "shieldActions"
PENDING_DEEP_LINK_KEY = "pendingDeepLink"
BLOCKED_TOKENS_KEY = "blockedTokens"
DEEP_LINK_SCHEME = os.getenv("ORCHARD_DEEP_LINK_SCHEME", "orchard")

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")  # Can override in .env: DEBUG, INFO, WARNING, ERROR
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
