"""Application state store: one observable slice per concern.

Services are the only writers; views subscribe to the slices they render.
All writes happen on the thread that owns the client state.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Generic, List, Optional, Tuple, TypeVar

from ..shared.schemas import (
    Conversation,
    Friendship,
    FriendRequest,
    Message,
    MessagePin,
    MessagingSettings,
    Notification,
    Post,
    Profile,
)
from .reactions import ReactionCount

logger = logging.getLogger("campus_connect.store")

T = TypeVar("T")
Listener = Callable[[T], None]


class Slice(Generic[T]):
    def __init__(self, name: str, initial: T):
        self.name = name
        self._value = initial
        self._listeners: List[Listener] = []

    @property
    def value(self) -> T:
        return self._value

    def set(self, value: T, *, force: bool = False) -> None:
        if not force and value == self._value:
            return
        self._value = value
        for listener in list(self._listeners):
            listener(value)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe


@dataclass(frozen=True)
class Notice:
    """A transient, toast-style message for the user."""

    title: str
    description: str = ""
    level: str = "info"
    action: Optional[str] = None
    ref: Optional[str] = None


@dataclass(frozen=True)
class ThreadView:
    peer_id: Optional[str] = None
    conversation_id: Optional[str] = None
    messages: Tuple[Message, ...] = ()
    peer_typing: bool = False
    pins: Tuple[MessagePin, ...] = ()
    reactions: Dict[str, Tuple[ReactionCount, ...]] = field(default_factory=dict)


@dataclass(frozen=True)
class FailedSend:
    """A send whose temporary entry timed out; ``temp`` is kept to spot a late confirmation."""

    temp: Message

    @property
    def temp_id(self) -> str:
        return self.temp.id

    @property
    def peer_id(self) -> str:
        return self.temp.receiver_id

    @property
    def content(self) -> Optional[str]:
        return self.temp.content

    @property
    def image_url(self) -> Optional[str]:
        return self.temp.image_url

    @property
    def reply_to(self) -> Optional[str]:
        return self.temp.reply_to


@dataclass(frozen=True)
class FriendsView:
    friends: Tuple[Friendship, ...] = ()
    incoming: Tuple[FriendRequest, ...] = ()
    outgoing: Tuple[FriendRequest, ...] = ()


class AppStore:
    def __init__(self) -> None:
        self.conversations: Slice[Tuple[Conversation, ...]] = Slice("conversations", ())
        self.thread: Slice[ThreadView] = Slice("thread", ThreadView())
        self.failed_sends: Slice[Tuple[FailedSend, ...]] = Slice("failed_sends", ())
        self.settings: Slice[MessagingSettings] = Slice("settings", MessagingSettings())
        self.profiles: Slice[Dict[str, Profile]] = Slice("profiles", {})
        self.friends: Slice[FriendsView] = Slice("friends", FriendsView())
        self.notifications: Slice[Tuple[Notification, ...]] = Slice("notifications", ())
        self.feed: Slice[Tuple[Post, ...]] = Slice("feed", ())
        self.realtime_connected: Slice[bool] = Slice("realtime_connected", False)
        self.notices: Slice[Optional[Notice]] = Slice("notices", None)

    def notify(self, notice: Notice) -> None:
        logger.info("NOTICE level=%s title=%s", notice.level, notice.title)
        self.notices.set(notice, force=True)

    def merge_profiles(self, profiles: List[Profile]) -> None:
        if not profiles:
            return
        merged = dict(self.profiles.value)
        merged.update({p.user_id: p for p in profiles})
        self.profiles.set(merged)

    def display_name(self, user_id: str) -> str:
        profile = self.profiles.value.get(user_id)
        return profile.display_name if profile else user_id
