"""Configuration for the ThermalSync field client"""

import os
import socket
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables from .env file
_repo_root = Path(__file__).parent.parent.resolve()
_env_file = _repo_root / ".env"
if _env_file.exists():
    load_dotenv(_env_file)


def _get_device_id() -> str:
    """Identify this device for logical timestamps.

    Priority:
    1. Environment variable DEVICE_ID (if explicitly set)
    2. Hostname with a ``dev-`` prefix
    3. ``unknown-device``
    """
    device_id = os.getenv("DEVICE_ID", "").strip()
    if device_id:
        return device_id

    try:
        hostname = socket.gethostname().lower().replace('.', '-')
        if hostname:
            return f"dev-{hostname}"
    except OSError:
        pass

    return "unknown-device"


DEVICE_ID = _get_device_id()

# Firebase
_default_creds = str(_repo_root / "firebase-key.json")
FIREBASE_CREDENTIALS_PATH = os.getenv("FIREBASE_CREDENTIALS_PATH", _default_creds)
FIREBASE_PROJECT_ID = os.getenv("FIREBASE_PROJECT_ID", "thermal-logs")

# Local cache
LOCAL_DB_PATH = os.getenv("LOCAL_DB_PATH", "data/thermalsync.db")

# Sync loop
SYNC_INTERVAL_S = float(os.getenv("SYNC_INTERVAL_S", "60"))
SYNC_BATCH_SIZE = int(os.getenv("SYNC_BATCH_SIZE", "50"))
SYNC_BATCH_TIME_BUDGET_S = float(os.getenv("SYNC_BATCH_TIME_BUDGET_S", "20"))
SYNC_MAX_CONCURRENCY = int(os.getenv("SYNC_MAX_CONCURRENCY", "4"))
REMOTE_TIMEOUT_S = float(os.getenv("REMOTE_TIMEOUT_S", "15"))

# Retry / backoff
RETRY_BASE_DELAY_S = float(os.getenv("RETRY_BASE_DELAY_S", "1"))
RETRY_MAX_DELAY_S = float(os.getenv("RETRY_MAX_DELAY_S", "60"))
RETRY_JITTER = float(os.getenv("RETRY_JITTER", "0.2"))
QUOTA_BACKOFF_FACTOR = float(os.getenv("QUOTA_BACKOFF_FACTOR", "4"))
QUOTA_MAX_DELAY_S = float(os.getenv("QUOTA_MAX_DELAY_S", "300"))

# Failure surfacing
SYNC_DELAYED_AFTER_ATTEMPTS = int(os.getenv("SYNC_DELAYED_AFTER_ATTEMPTS", "3"))
MAX_SYNC_ATTEMPTS = int(os.getenv("MAX_SYNC_ATTEMPTS", "12"))
STATUS_LOG_INTERVAL_S = float(os.getenv("STATUS_LOG_INTERVAL_S", "300"))

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FILE = os.getenv("LOG_FILE", "logs/thermalsync.log")

# Debug
DEBUG = os.getenv("DEBUG", "false").lower() == "true"
if DEBUG:
    LOG_LEVEL = "DEBUG"
