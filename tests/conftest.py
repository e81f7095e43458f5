from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

import campus_connect.client.storage as storage_module
from campus_connect.client.errors import PlatformError
from campus_connect.client.store import AppStore
from campus_connect.client.tasks import InlineRunner
from campus_connect.shared.schemas import (
    Conversation,
    FriendRequest,
    FriendRequestStatus,
    Friendship,
    Message,
    MessagePin,
    MessageStatus,
    MessagingSettings,
    Notification,
    Post,
    Reaction,
)
from campus_connect.shared.utils import ordered_pair

ME = "alice"
PEER = "bob"
START = datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


class ManualRunner:
    """Queues submitted calls so tests decide when, and in which order, they complete."""

    def __init__(self):
        self.queue: List[tuple] = []

    def submit(self, fn, on_success, on_error) -> None:
        self.queue.append((fn, on_success, on_error))

    def run_next(self, index: int = 0) -> None:
        fn, on_success, on_error = self.queue.pop(index)
        InlineRunner().submit(fn, on_success, on_error)

    def run_all(self) -> None:
        while self.queue:
            self.run_next()


class FakeRealtime:
    def __init__(self):
        self.joined: List[str] = []
        self.left: List[str] = []
        self.sent: List[tuple] = []

    def join(self, topic: str) -> None:
        self.joined.append(topic)

    def leave(self, topic: str) -> None:
        self.left.append(topic)

    def send_broadcast(self, topic: str, event: str, payload: Dict[str, Any]) -> None:
        self.sent.append((topic, event, payload))


def make_message(
    message_id: str,
    sender: str = ME,
    receiver: str = PEER,
    content: Optional[str] = "hello",
    at: datetime = START,
    **extra: Any,
) -> Message:
    values = {
        "id": message_id,
        "sender_id": sender,
        "receiver_id": receiver,
        "content": content,
        "created_at": at,
        "status": MessageStatus.SENT,
    }
    values.update(extra)
    return Message(**values)


def make_conversation(conversation_id: str, peer: str, at: datetime = START, **extra: Any) -> Conversation:
    user1, user2 = ordered_pair(ME, peer)
    return Conversation(id=conversation_id, user1_id=user1, user2_id=user2, last_message_at=at, **extra)


class FakeGateway:
    """In-memory stand-in for the platform gateway."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.calls: List[tuple] = []
        self.fail: set = set()
        self.keep_client_id = True
        self.conversations: Dict[str, Conversation] = {}
        self.messages: List[Message] = []
        self.pins: List[MessagePin] = []
        self.reactions: List[Reaction] = []
        self.settings: Optional[MessagingSettings] = None
        self.friendships: List[Friendship] = []
        self.requests: List[FriendRequest] = []
        self.notifications: List[Notification] = []
        self.posts: List[Post] = []
        self._seq = 0

    def _call(self, name: str, *args: Any) -> None:
        self.calls.append((name,) + args)
        if name in self.fail:
            raise PlatformError(f"{name} failed", status=500)

    def _next_id(self, prefix: str) -> str:
        self._seq += 1
        return f"{prefix}{self._seq}"

    def called(self, name: str) -> List[tuple]:
        return [c for c in self.calls if c[0] == name]

    # Profiles and conversations

    def fetch_profiles(self, user_ids):
        self._call("fetch_profiles", list(user_ids))
        return []

    def search_profiles(self, name):
        self._call("search_profiles", name)
        return []

    def fetch_conversations(self, me):
        self._call("fetch_conversations", me)
        return [c for c in self.conversations.values() if me in (c.user1_id, c.user2_id)]

    def get_or_create_conversation(self, peer_id):
        self._call("get_or_create_conversation", peer_id)
        for conv in self.conversations.values():
            if peer_id in (conv.user1_id, conv.user2_id):
                return conv.id
        conv = make_conversation(self._next_id("c"), peer_id, at=self.clock())
        self.conversations[conv.id] = conv
        return conv.id

    def update_conversation(self, conversation_id, values):
        self._call("update_conversation", conversation_id, values)
        conv = self.conversations[conversation_id]
        self.conversations[conversation_id] = conv.model_copy(update=values)

    def save_order(self, rows):
        self._call("save_order", rows)
        for row in rows:
            conv = self.conversations[row["id"]]
            self.conversations[row["id"]] = conv.model_copy(update={"display_order": row["display_order"]})

    # Messages

    def fetch_thread(self, me, peer_id):
        self._call("fetch_thread", me, peer_id)
        return sorted((m for m in self.messages if m.involves(me, peer_id)), key=lambda m: m.created_at)

    def latest_sent(self, me, peer_id):
        self._call("latest_sent", me, peer_id)
        sent = [m for m in self.messages if m.sender_id == me and m.receiver_id == peer_id]
        return max(sent, key=lambda m: m.created_at) if sent else None

    def insert_message(self, me, peer_id, *, content, image_url, reply_to, client_id):
        self._call("insert_message", me, peer_id, content, image_url)
        message = Message(
            id=self._next_id("m"),
            sender_id=me,
            receiver_id=peer_id,
            content=content,
            image_url=image_url,
            reply_to=reply_to,
            client_id=client_id if self.keep_client_id else None,
            created_at=self.clock(),
        )
        self.messages.append(message)
        return message

    def update_messages(self, message_ids, values):
        self._call("update_messages", list(message_ids), values)

    def delete_message(self, message_id, me):
        self._call("delete_message", message_id, me)
        self.messages = [m for m in self.messages if m.id != message_id]

    def upload_image(self, me, filename, data):
        self._call("upload_image", filename)
        return f"https://files.example/{filename}"

    def send_push(self, user_id, title, message, data):
        self._call("send_push", user_id, title, message)

    # Pins and reactions

    def fetch_pins(self, conversation_id):
        self._call("fetch_pins", conversation_id)
        return [p for p in self.pins if p.conversation_id == conversation_id]

    def insert_pin(self, message_id, conversation_id, me):
        self._call("insert_pin", message_id)
        self.pins.append(
            MessagePin(message_id=message_id, conversation_id=conversation_id, pinned_by=me, pinned_at=self.clock())
        )

    def delete_pin(self, message_id):
        self._call("delete_pin", message_id)
        self.pins = [p for p in self.pins if p.message_id != message_id]

    def fetch_reactions(self, message_ids):
        self._call("fetch_reactions", list(message_ids))
        return [r for r in self.reactions if r.message_id in set(message_ids)]

    def insert_reaction(self, message_id, me, emoji):
        self._call("insert_reaction", message_id, emoji)
        self.reactions.append(Reaction(id=self._next_id("r"), message_id=message_id, user_id=me, emoji=emoji))

    def update_reaction(self, reaction_id, emoji):
        self._call("update_reaction", reaction_id, emoji)
        self.reactions = [r.model_copy(update={"emoji": emoji}) if r.id == reaction_id else r for r in self.reactions]

    def delete_reaction(self, message_id, me):
        self._call("delete_reaction", message_id)
        self.reactions = [r for r in self.reactions if not (r.message_id == message_id and r.user_id == me)]

    # Settings

    def fetch_settings(self, me):
        self._call("fetch_settings", me)
        return self.settings

    def save_settings(self, me, settings):
        self._call("save_settings", me, settings)
        self.settings = settings

    # Friends

    def fetch_friendships(self, me):
        self._call("fetch_friendships", me)
        return [f for f in self.friendships if me in (f.user1_id, f.user2_id)]

    def find_friendship(self, me, other):
        self._call("find_friendship", me, other)
        pair = ordered_pair(me, other)
        return next((f for f in self.friendships if (f.user1_id, f.user2_id) == pair), None)

    def insert_friendship(self, me, other):
        self._call("insert_friendship", me, other)
        user1, user2 = ordered_pair(me, other)
        self.friendships.append(Friendship(id=self._next_id("f"), user1_id=user1, user2_id=user2))

    def delete_friendship(self, friendship_id, me):
        self._call("delete_friendship", friendship_id)
        self.friendships = [f for f in self.friendships if f.id != friendship_id]

    def fetch_pending_requests(self, me, *, incoming):
        self._call("fetch_pending_requests", me, incoming)
        column = "receiver_id" if incoming else "sender_id"
        return [
            r for r in self.requests if getattr(r, column) == me and r.status is FriendRequestStatus.PENDING
        ]

    def find_pending_request(self, sender_id, receiver_id):
        self._call("find_pending_request", sender_id, receiver_id)
        return next(
            (
                r
                for r in self.requests
                if r.sender_id == sender_id
                and r.receiver_id == receiver_id
                and r.status is FriendRequestStatus.PENDING
            ),
            None,
        )

    def insert_request(self, me, receiver_id):
        self._call("insert_request", me, receiver_id)
        self.requests.append(FriendRequest(id=self._next_id("fr"), sender_id=me, receiver_id=receiver_id))

    def respond_request(self, request_id, me, status):
        self._call("respond_request", request_id, status)
        for i, request in enumerate(self.requests):
            if request.id == request_id and request.receiver_id == me:
                self.requests[i] = request.model_copy(update={"status": status})
                return self.requests[i]
        raise PlatformError("platform returned no row")

    # Notifications and feed

    def fetch_notifications(self, me, limit):
        self._call("fetch_notifications", me)
        return [n for n in self.notifications if n.user_id == me][:limit]

    def mark_notification_read(self, notification_id):
        self._call("mark_notification_read", notification_id)

    def mark_all_notifications_read(self, me):
        self._call("mark_all_notifications_read", me)

    def fetch_posts(self, me, limit=50):
        self._call("fetch_posts", me)
        return list(self.posts)

    def like_post(self, post_id, me):
        self._call("like_post", post_id)

    def unlike_post(self, post_id, me):
        self._call("unlike_post", post_id)

    def add_comment(self, post_id, me, content):
        self._call("add_comment", post_id, content)


@pytest.fixture(autouse=True)
def isolated_state(tmp_path, monkeypatch):
    monkeypatch.setattr(storage_module, "STORAGE_FILE", tmp_path / "state.json")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def runner():
    return ManualRunner()


@pytest.fixture
def gateway(clock):
    return FakeGateway(clock)


@pytest.fixture
def store():
    return AppStore()


@pytest.fixture
def realtime():
    return FakeRealtime()


@pytest.fixture
def notices(store):
    seen = []
    store.notices.subscribe(lambda notice: seen.append(notice))
    return seen
