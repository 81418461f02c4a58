"""Configuration for the lead processing queue."""
import os
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()

# Base paths
BASE_DIR = Path(__file__).resolve().parent.parent
LOGS_DIR = Path(os.getenv("LOGS_DIR", BASE_DIR / "logs"))
LOGS_DIR.mkdir(parents=True, exist_ok=True)

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
BETTERSTACK_SOURCE_TOKEN = os.getenv("BETTERSTACK_SOURCE_TOKEN")
BETTERSTACK_INGEST_HOST = os.getenv("BETTERSTACK_INGEST_HOST")

# Database connection
DATABASE_URL = os.getenv("DATABASE_URL")

# Outbound messaging webhook
WEBHOOK_URL = os.getenv("WEBHOOK_URL")
WEBHOOK_TOKEN = os.getenv("WEBHOOK_TOKEN")

# Optional JSON file with the queue policy; env values below override it
QUEUE_CONFIG_FILE = os.getenv("QUEUE_CONFIG_FILE")

# Process settings
POLL_INTERVAL = int(os.getenv("POLL_INTERVAL", "5"))  # seconds between dispatcher ticks
RECONCILE_INTERVAL = int(os.getenv("RECONCILE_INTERVAL", "300"))

# Queue policy, kept raw here and validated by leadqueue.policy
QUEUE_ENV_KEYS = {
    "work_days": "WORK_DAYS",
    "holidays": "HOLIDAYS",
    "business_hours_start": "BUSINESS_HOURS_START",
    "business_hours_end": "BUSINESS_HOURS_END",
    "timezone": "TIMEZONE",
    "daily_limit": "DAILY_LIMIT",
    "weekly_limit": "WEEKLY_LIMIT",
    "max_attempts": "MAX_ATTEMPTS",
    "retry_base_delay_seconds": "RETRY_BASE_DELAY_SECONDS",
    "horizon_days": "HORIZON_DAYS",
    "batch_size": "BATCH_SIZE",
    "send_timeout_seconds": "SEND_TIMEOUT_SECONDS",
    "stale_after_minutes": "STALE_AFTER_MINUTES",
    "overflow_strategy": "OVERFLOW_STRATEGY",
    "respect_business_hours": "RESPECT_BUSINESS_HOURS",
    "metrics_cache_seconds": "METRICS_CACHE_SECONDS",
    "success_window_days": "SUCCESS_WINDOW_DAYS",
}


def queue_env_overrides():
    """Return the queue policy values present in the environment."""
    return {
        key: os.environ[env_name]
        for key, env_name in QUEUE_ENV_KEYS.items()
        if os.environ.get(env_name, "").strip()
    }


def validate_config():
    """Validate required configuration."""
    errors = []

    if not DATABASE_URL:
        errors.append("DATABASE_URL is required")

    if not WEBHOOK_URL:
        errors.append("WEBHOOK_URL is required")
    elif not WEBHOOK_URL.startswith(("http://", "https://")):
        errors.append(f"WEBHOOK_URL must be an http(s) URL: {WEBHOOK_URL}")

    if QUEUE_CONFIG_FILE and not Path(QUEUE_CONFIG_FILE).is_file():
        errors.append(f"QUEUE_CONFIG_FILE does not exist: {QUEUE_CONFIG_FILE}")

    if POLL_INTERVAL <= 0:
        errors.append("POLL_INTERVAL must be positive")

    if errors:
        raise ValueError("Config errors:\n  " + "\n  ".join(errors))
