"""Local client storage for the session, platform URL and cached settings."""
import json
from typing import Any, Dict, Optional

from .config import STATE_DIR

STORAGE_FILE = STATE_DIR / "state.json"


def load_state() -> Dict[str, Any]:
    if STORAGE_FILE.exists():
        with STORAGE_FILE.open("r", encoding="utf-8") as f:
            return json.load(f)
    return {}


def save_state(data: Dict[str, Any]) -> None:
    STORAGE_FILE.parent.mkdir(parents=True, exist_ok=True)
    with STORAGE_FILE.open("w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)


def store_auth(token: str, user: Dict[str, Any]) -> None:
    state = load_state()
    state["token"] = token
    state["user"] = user
    save_state(state)


def clear_auth() -> None:
    state = load_state()
    for key in ["token", "user", "messaging_settings"]:
        state.pop(key, None)
    save_state(state)


def get_token() -> Optional[str]:
    return load_state().get("token")


def get_user() -> Optional[Dict[str, Any]]:
    return load_state().get("user")


def store_platform_url(url: str) -> None:
    state = load_state()
    state["platform_url"] = url
    save_state(state)


def get_platform_url() -> Optional[str]:
    return load_state().get("platform_url")


def store_messaging_settings(settings: Dict[str, Any]) -> None:
    state = load_state()
    state["messaging_settings"] = settings
    save_state(state)


def get_messaging_settings() -> Dict[str, Any]:
    return load_state().get("messaging_settings", {})
