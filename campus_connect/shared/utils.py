"""Shared utility functions."""
import uuid
from datetime import datetime, timezone
from typing import Tuple

TEMP_PREFIX = "temp-"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Return an aware UTC datetime; naive values are assumed to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def new_client_id() -> str:
    return str(uuid.uuid4())


def temp_id_for(client_id: str) -> str:
    return f"{TEMP_PREFIX}{client_id}"


def is_temp_id(message_id: str) -> bool:
    return message_id.startswith(TEMP_PREFIX)


def ordered_pair(a: str, b: str) -> Tuple[str, str]:
    """Return the two user ids as (user1_id, user2_id) with user1_id < user2_id."""
    return (a, b) if a < b else (b, a)


def preview(text: str, limit: int = 50) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "..."
