"""Pydantic schemas for platform rows and realtime events.

Rows arrive from the platform as untyped JSON. Everything that enters the
client state goes through these models first; rows that fail validation are
logged and dropped by :func:`parse_rows`.
"""
from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Type, TypeVar

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .utils import as_utc, is_temp_id

logger = logging.getLogger("campus_connect.schemas")

ModelT = TypeVar("ModelT", bound=BaseModel)


class Row(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True, populate_by_name=True)


class MessageStatus(str, Enum):
    SENDING = "sending"
    SENT = "sent"
    DELIVERED = "delivered"
    SEEN = "seen"

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]


_STATUS_RANK = {
    MessageStatus.SENDING: 0,
    MessageStatus.SENT: 1,
    MessageStatus.DELIVERED: 2,
    MessageStatus.SEEN: 3,
}


def later_status(a: MessageStatus, b: MessageStatus) -> MessageStatus:
    return a if a.rank >= b.rank else b


class Message(Row):
    id: str
    sender_id: str
    receiver_id: str
    content: Optional[str] = None
    image_url: Optional[str] = None
    status: MessageStatus = MessageStatus.SENT
    is_read: bool = False
    created_at: datetime
    reply_to: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("reply_to", "reply_to_message_id")
    )
    client_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("client_id", "client_msg_id"))

    @field_validator("content", "image_url", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("created_at")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return as_utc(value)

    @model_validator(mode="after")
    def _check_body_and_lifecycle(self) -> "Message":
        if (self.content is None) == (self.image_url is None):
            raise ValueError("message needs exactly one of content or image_url")
        if is_temp_id(self.id) != (self.status is MessageStatus.SENDING):
            raise ValueError("only temporary messages may be in 'sending' state")
        return self

    @property
    def is_temporary(self) -> bool:
        return is_temp_id(self.id)

    def peer_of(self, me: str) -> str:
        return self.receiver_id if self.sender_id == me else self.sender_id

    def involves(self, a: str, b: str) -> bool:
        return {self.sender_id, self.receiver_id} == {a, b}


class Conversation(Row):
    id: str
    user1_id: str
    user2_id: str
    last_message_at: datetime
    user1_is_pinned: bool = False
    user2_is_pinned: bool = False
    user1_is_muted: bool = False
    user2_is_muted: bool = False
    unread_count: int = 0
    display_order: Optional[int] = None

    @field_validator("last_message_at")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return as_utc(value)

    @field_validator("user1_is_pinned", "user2_is_pinned", "user1_is_muted", "user2_is_muted", mode="before")
    @classmethod
    def _null_is_false(cls, value: Any) -> Any:
        return False if value is None else value

    @field_validator("unread_count", mode="before")
    @classmethod
    def _null_is_zero(cls, value: Any) -> Any:
        return 0 if value is None else value

    def _slot(self, me: str) -> str:
        if me == self.user1_id:
            return "user1"
        if me == self.user2_id:
            return "user2"
        raise ValueError(f"user {me} is not a participant of conversation {self.id}")

    def peer_of(self, me: str) -> str:
        return self.user2_id if self._slot(me) == "user1" else self.user1_id

    def pin_column(self, me: str) -> str:
        return f"{self._slot(me)}_is_pinned"

    def mute_column(self, me: str) -> str:
        return f"{self._slot(me)}_is_muted"

    def is_pinned_for(self, me: str) -> bool:
        return bool(getattr(self, self.pin_column(me)))

    def is_muted_for(self, me: str) -> bool:
        return bool(getattr(self, self.mute_column(me)))


class Reaction(Row):
    id: str
    message_id: str
    user_id: str
    emoji: str
    created_at: Optional[datetime] = None


class MessagePin(Row):
    message_id: str
    conversation_id: str
    pinned_by: str
    pinned_at: datetime

    @field_validator("pinned_at")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return as_utc(value)


class Profile(Row):
    user_id: str
    display_name: str = "Unknown User"
    avatar_url: Optional[str] = None
    school: Optional[str] = None
    major: Optional[str] = None

    @field_validator("display_name", mode="before")
    @classmethod
    def _default_name(cls, value: Any) -> Any:
        return value or "Unknown User"


class Friendship(Row):
    id: str
    user1_id: str
    user2_id: str
    created_at: Optional[datetime] = None

    def friend_of(self, me: str) -> str:
        return self.user2_id if self.user1_id == me else self.user1_id


class FriendRequestStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class FriendRequest(Row):
    id: str
    sender_id: str
    receiver_id: str
    status: FriendRequestStatus = FriendRequestStatus.PENDING
    created_at: Optional[datetime] = None


class Notification(Row):
    id: str
    user_id: str
    type: str
    title: str
    message: Optional[str] = None
    is_read: bool = False
    created_at: datetime
    data: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("data", mode="before")
    @classmethod
    def _null_is_empty(cls, value: Any) -> Any:
        return value or {}


class Post(Row):
    id: str
    user_id: str
    content: str = ""
    likes_count: int = 0
    comments_count: int = 0
    created_at: datetime
    liked: bool = False


class Comment(Row):
    id: str
    post_id: str
    user_id: str
    content: str
    created_at: datetime


class MessagingSettings(Row):
    read_receipts_enabled: bool = True
    typing_indicators_enabled: bool = True


class ChangeType(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class ChangeEvent(Row):
    """A postgres change delivered over a realtime channel."""

    table: str
    type: ChangeType = Field(validation_alias=AliasChoices("type", "eventType"))
    record: Dict[str, Any] = Field(default_factory=dict, validation_alias=AliasChoices("record", "new"))
    old_record: Dict[str, Any] = Field(default_factory=dict, validation_alias=AliasChoices("old_record", "old"))

    @field_validator("record", "old_record", mode="before")
    @classmethod
    def _null_is_empty(cls, value: Any) -> Any:
        return value or {}

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "ChangeEvent":
        # Realtime wraps the change in {"data": {...}, "ids": [...]}
        body = payload.get("data", payload)
        return cls.model_validate(body)


class BroadcastEvent(Row):
    topic: str = ""
    event: str
    payload: Dict[str, Any] = Field(default_factory=dict)

    @property
    def user_id(self) -> Optional[str]:
        value = self.payload.get("userId")
        return str(value) if value is not None else None


def parse_row(model: Type[ModelT], row: Dict[str, Any]) -> Optional[ModelT]:
    try:
        return model.model_validate(row)
    except ValidationError as exc:
        logger.warning("ROW_REJECTED model=%s id=%s errors=%s", model.__name__, row.get("id"), exc.error_count())
        return None


def parse_rows(model: Type[ModelT], rows: Iterable[Dict[str, Any]]) -> List[ModelT]:
    parsed: List[ModelT] = []
    for row in rows:
        item = parse_row(model, row)
        if item is not None:
            parsed.append(item)
    return parsed
