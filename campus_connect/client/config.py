"""Client configuration values."""
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

STATE_DIR = Path.home() / ".campus_connect"

REQUEST_TIMEOUT_SECONDS = 10
UPLOAD_BUCKET = "Uploads"

# Message reconciliation
TEMP_MATCH_WINDOW_SECONDS = 5.0
FALLBACK_FETCH_DELAY_SECONDS = 0.5
SEND_TIMEOUT_SECONDS = 10.0

# Presence and receipts
TYPING_TTL_SECONDS = 2.0
TYPING_THROTTLE_SECONDS = 1.0
READ_RECEIPT_DEBOUNCE_SECONDS = 0.2

# Own messages can be unsent for an hour
UNSEND_WINDOW_SECONDS = 3600

# Fallbacks and caches
POLL_INTERVAL_SECONDS = 3.0
FRIENDS_CACHE_SECONDS = 30.0
NOTIFICATIONS_LIMIT = 50

TICK_INTERVAL_MS = 100


class PlatformSettings(BaseSettings):
    platform_url: str = ""
    anon_key: str = ""

    model_config = SettingsConfigDict(env_prefix="CAMPUS_", env_file=".env", env_file_encoding="utf-8")


settings = PlatformSettings()
