"""Typing indicators: inbound expiry and outbound throttling."""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Dict, List, Optional

from .config import TYPING_THROTTLE_SECONDS, TYPING_TTL_SECONDS

TYPING_EVENT = "typing"
TYPING_STOP_EVENT = "typing_stop"


def typing_topic(conversation_id: str) -> str:
    return f"typing:{conversation_id}"


class TypingTracker:
    """Who is typing in the open conversation, each flag expiring after ``ttl``."""

    def __init__(self, ttl: timedelta = timedelta(seconds=TYPING_TTL_SECONDS)):
        self.ttl = ttl
        self._expires: Dict[str, datetime] = {}

    def typing(self, user_id: str, now: datetime) -> None:
        self._expires[user_id] = now + self.ttl

    def stop(self, user_id: str) -> bool:
        return self._expires.pop(user_id, None) is not None

    def is_typing(self, user_id: str, now: datetime) -> bool:
        expires = self._expires.get(user_id)
        return expires is not None and now < expires

    def sweep(self, now: datetime) -> List[str]:
        expired = [user_id for user_id, expires in self._expires.items() if now >= expires]
        for user_id in expired:
            del self._expires[user_id]
        return expired

    def clear(self) -> None:
        self._expires.clear()


class TypingBroadcaster:
    """Decides when the local user's keystrokes become typing/typing_stop broadcasts."""

    def __init__(
        self,
        throttle: timedelta = timedelta(seconds=TYPING_THROTTLE_SECONDS),
        idle: timedelta = timedelta(seconds=TYPING_TTL_SECONDS),
    ):
        self.throttle = throttle
        self.idle = idle
        self._last_sent: Optional[datetime] = None
        self._last_key: Optional[datetime] = None

    def keystroke(self, now: datetime) -> bool:
        """Record a keystroke; True if a typing event should be sent now."""
        self._last_key = now
        if self._last_sent is None or now - self._last_sent >= self.throttle:
            self._last_sent = now
            return True
        return False

    def stop_due(self, now: datetime) -> bool:
        if self._last_key is not None and now - self._last_key >= self.idle:
            self.reset()
            return True
        return False

    def sent(self) -> bool:
        """The message was sent; True if a stop event is still owed."""
        owed = self._last_key is not None
        self.reset()
        return owed

    def reset(self) -> None:
        self._last_sent = None
        self._last_key = None
