"""Table-level queries against the platform, returning validated entities."""
from __future__ import annotations

import logging
import mimetypes
from typing import Any, Dict, Iterable, List, Optional, Sequence

from ..shared.schemas import (
    Comment,
    Conversation,
    FriendRequest,
    FriendRequestStatus,
    Friendship,
    Message,
    MessagePin,
    MessagingSettings,
    Notification,
    Post,
    Profile,
    Reaction,
    parse_row,
    parse_rows,
)
from ..shared.utils import new_client_id, ordered_pair
from .api import PlatformClient, and_, eq, in_, or_
from .config import UPLOAD_BUCKET
from .errors import PlatformError

logger = logging.getLogger("campus_connect.gateway")

PROFILE_COLUMNS = "user_id,display_name,avatar_url,school,major"


def _first(rows: Sequence[Dict[str, Any]]) -> Dict[str, Any]:
    if not rows:
        raise PlatformError("platform returned no row")
    return rows[0]


class Gateway:
    def __init__(self, client: PlatformClient):
        self.client = client

    # Profiles

    def fetch_profiles(self, user_ids: Iterable[str]) -> List[Profile]:
        ids = sorted(set(user_ids))
        if not ids:
            return []
        rows = self.client.select("profiles", columns=PROFILE_COLUMNS, filters={"user_id": in_(ids)})
        return parse_rows(Profile, rows)

    def search_profiles(self, name: str, limit: int = 20) -> List[Profile]:
        rows = self.client.select(
            "profiles", columns=PROFILE_COLUMNS, filters={"display_name": f"ilike.*{name}*"}, limit=limit
        )
        return parse_rows(Profile, rows)

    # Conversations

    def fetch_conversations(self, me: str) -> List[Conversation]:
        rows = self.client.select(
            "conversations",
            filters={"or": or_(f"user1_id.{eq(me)}", f"user2_id.{eq(me)}")},
            order="last_message_at.desc",
        )
        return parse_rows(Conversation, rows)

    def get_or_create_conversation(self, peer_id: str) -> str:
        return str(self.client.rpc("get_or_create_conversation", {"other_user_id": peer_id}))

    def update_conversation(self, conversation_id: str, values: Dict[str, Any]) -> None:
        self.client.update("conversations", values, filters={"id": eq(conversation_id)})

    def save_order(self, rows: List[Dict[str, Any]]) -> None:
        self.client.upsert("conversations", rows, on_conflict="id")

    # Messages

    def fetch_thread(self, me: str, peer_id: str) -> List[Message]:
        rows = self.client.select(
            "messages",
            filters={
                "or": or_(
                    and_(f"sender_id.{eq(me)}", f"receiver_id.{eq(peer_id)}"),
                    and_(f"sender_id.{eq(peer_id)}", f"receiver_id.{eq(me)}"),
                )
            },
            order="created_at.asc",
        )
        return parse_rows(Message, rows)

    def latest_sent(self, me: str, peer_id: str) -> Optional[Message]:
        rows = self.client.select(
            "messages",
            filters={"sender_id": eq(me), "receiver_id": eq(peer_id)},
            order="created_at.desc",
            limit=1,
        )
        return parse_row(Message, rows[0]) if rows else None

    def insert_message(
        self,
        me: str,
        peer_id: str,
        *,
        content: Optional[str],
        image_url: Optional[str],
        reply_to: Optional[str],
        client_id: Optional[str],
    ) -> Optional[Message]:
        rows = self.client.insert(
            "messages",
            {
                "sender_id": me,
                "receiver_id": peer_id,
                "content": content,
                "image_url": image_url,
                "reply_to_message_id": reply_to,
                "client_msg_id": client_id,
            },
        )
        return parse_row(Message, rows[0]) if rows else None

    def update_messages(self, message_ids: Sequence[str], values: Dict[str, Any]) -> None:
        if message_ids:
            self.client.update("messages", values, filters={"id": in_(message_ids)})

    def delete_message(self, message_id: str, me: str) -> None:
        self.client.delete("messages", filters={"id": eq(message_id), "sender_id": eq(me)})

    def upload_image(self, me: str, filename: str, data: bytes) -> str:
        content_type = mimetypes.guess_type(filename)[0] or "application/octet-stream"
        path = f"messages/{me}/{new_client_id()}-{filename}"
        self.client.upload(UPLOAD_BUCKET, path, data, content_type)
        return self.client.public_url(UPLOAD_BUCKET, path)

    def send_push(self, user_id: str, title: str, message: str, data: Dict[str, Any]) -> None:
        self.client.invoke(
            "send-notification",
            {"userId": user_id, "type": "new_message", "title": title, "message": message, "data": data},
        )

    # Message pins and reactions

    def fetch_pins(self, conversation_id: str) -> List[MessagePin]:
        rows = self.client.select(
            "message_pins", filters={"conversation_id": eq(conversation_id)}, order="pinned_at.desc"
        )
        return parse_rows(MessagePin, rows)

    def insert_pin(self, message_id: str, conversation_id: str, me: str) -> None:
        self.client.insert(
            "message_pins", {"message_id": message_id, "conversation_id": conversation_id, "pinned_by": me}
        )

    def delete_pin(self, message_id: str) -> None:
        self.client.delete("message_pins", filters={"message_id": eq(message_id)})

    def fetch_reactions(self, message_ids: Sequence[str]) -> List[Reaction]:
        if not message_ids:
            return []
        rows = self.client.select("reactions", filters={"message_id": in_(message_ids)}, order="created_at.asc")
        return parse_rows(Reaction, rows)

    def insert_reaction(self, message_id: str, me: str, emoji: str) -> None:
        self.client.insert("reactions", {"message_id": message_id, "user_id": me, "emoji": emoji})

    def update_reaction(self, reaction_id: str, emoji: str) -> None:
        self.client.update("reactions", {"emoji": emoji}, filters={"id": eq(reaction_id)})

    def delete_reaction(self, message_id: str, me: str) -> None:
        self.client.delete("reactions", filters={"message_id": eq(message_id), "user_id": eq(me)})

    # Settings

    def fetch_settings(self, me: str) -> Optional[MessagingSettings]:
        rows = self.client.select(
            "user_settings",
            columns="settings_data",
            filters={"user_id": eq(me), "settings_type": eq("messaging")},
            limit=1,
        )
        if not rows:
            return None
        return parse_row(MessagingSettings, rows[0].get("settings_data") or {})

    def save_settings(self, me: str, settings: MessagingSettings) -> None:
        self.client.upsert(
            "user_settings",
            [{"user_id": me, "settings_type": "messaging", "settings_data": settings.model_dump()}],
            on_conflict="user_id,settings_type",
        )

    # Friends

    def fetch_friendships(self, me: str) -> List[Friendship]:
        rows = self.client.select("friendships", filters={"or": or_(f"user1_id.{eq(me)}", f"user2_id.{eq(me)}")})
        return parse_rows(Friendship, rows)

    def find_friendship(self, me: str, other: str) -> Optional[Friendship]:
        user1, user2 = ordered_pair(me, other)
        rows = self.client.select("friendships", filters={"user1_id": eq(user1), "user2_id": eq(user2)}, limit=1)
        return parse_row(Friendship, rows[0]) if rows else None

    def insert_friendship(self, me: str, other: str) -> None:
        user1, user2 = ordered_pair(me, other)
        self.client.insert("friendships", {"user1_id": user1, "user2_id": user2})

    def delete_friendship(self, friendship_id: str, me: str) -> None:
        self.client.delete(
            "friendships",
            filters={"id": eq(friendship_id), "or": or_(f"user1_id.{eq(me)}", f"user2_id.{eq(me)}")},
        )

    def fetch_pending_requests(self, me: str, *, incoming: bool) -> List[FriendRequest]:
        column = "receiver_id" if incoming else "sender_id"
        rows = self.client.select(
            "friend_requests", filters={column: eq(me), "status": eq(FriendRequestStatus.PENDING.value)}
        )
        return parse_rows(FriendRequest, rows)

    def find_pending_request(self, sender_id: str, receiver_id: str) -> Optional[FriendRequest]:
        rows = self.client.select(
            "friend_requests",
            filters={
                "sender_id": eq(sender_id),
                "receiver_id": eq(receiver_id),
                "status": eq(FriendRequestStatus.PENDING.value),
            },
            limit=1,
        )
        return parse_row(FriendRequest, rows[0]) if rows else None

    def insert_request(self, me: str, receiver_id: str) -> None:
        self.client.insert(
            "friend_requests",
            {"sender_id": me, "receiver_id": receiver_id, "status": FriendRequestStatus.PENDING.value},
        )

    def respond_request(self, request_id: str, me: str, status: FriendRequestStatus) -> FriendRequest:
        rows = self.client.update(
            "friend_requests", {"status": status.value}, filters={"id": eq(request_id), "receiver_id": eq(me)}
        )
        return FriendRequest.model_validate(_first(rows))

    # Notifications

    def fetch_notifications(self, me: str, limit: int) -> List[Notification]:
        rows = self.client.select(
            "notifications", filters={"user_id": eq(me)}, order="created_at.desc", limit=limit
        )
        return parse_rows(Notification, rows)

    def mark_notification_read(self, notification_id: str) -> None:
        self.client.update("notifications", {"is_read": True}, filters={"id": eq(notification_id)})

    def mark_all_notifications_read(self, me: str) -> None:
        self.client.update("notifications", {"is_read": True}, filters={"user_id": eq(me), "is_read": eq(False)})

    # Feed

    def fetch_posts(self, me: str, limit: int = 50) -> List[Post]:
        rows = self.client.select("posts", order="created_at.desc", limit=limit)
        posts = parse_rows(Post, rows)
        if not posts:
            return []
        likes = self.client.select(
            "post_likes", columns="post_id", filters={"user_id": eq(me), "post_id": in_([p.id for p in posts])}
        )
        liked = {row["post_id"] for row in likes}
        return [p.model_copy(update={"liked": p.id in liked}) for p in posts]

    def like_post(self, post_id: str, me: str) -> None:
        self.client.insert("post_likes", {"post_id": post_id, "user_id": me})
        self.client.rpc("increment_likes_count", {"post_id": post_id})

    def unlike_post(self, post_id: str, me: str) -> None:
        self.client.delete("post_likes", filters={"post_id": eq(post_id), "user_id": eq(me)})
        self.client.rpc("decrement_likes_count", {"post_id": post_id})

    def add_comment(self, post_id: str, me: str, content: str) -> Optional[Comment]:
        rows = self.client.insert("comments", {"post_id": post_id, "user_id": me, "content": content})
        self.client.rpc("increment_comments_count", {"post_id": post_id})
        return parse_row(Comment, rows[0]) if rows else None
