"""Friends, notifications and the post feed."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, List, Optional, Tuple

from ..shared.schemas import (
    ChangeEvent,
    ChangeType,
    FriendRequest,
    FriendRequestStatus,
    Friendship,
    Notification,
    Post,
    parse_row,
)
from ..shared.utils import utcnow
from .config import FRIENDS_CACHE_SECONDS, NOTIFICATIONS_LIMIT
from .gateway import Gateway
from .store import AppStore, FriendsView, Notice
from .tasks import TaskRunner

logger = logging.getLogger("campus_connect.social")

Clock = Callable[[], datetime]


class FriendshipStatus(str, Enum):
    NONE = "none"
    FRIENDS = "friends"
    SENT = "sent"
    RECEIVED = "received"


class FriendsService:
    def __init__(
        self,
        gateway: Gateway,
        me: str,
        *,
        store: AppStore,
        runner: TaskRunner,
        clock: Clock = utcnow,
        cache_for: timedelta = timedelta(seconds=FRIENDS_CACHE_SECONDS),
    ):
        self.gateway = gateway
        self.me = me
        self.store = store
        self.runner = runner
        self.clock = clock
        self.cache_for = cache_for
        self._loaded_at: Optional[datetime] = None

    def load(self, force: bool = False) -> None:
        now = self.clock()
        if not force and self._loaded_at is not None and now - self._loaded_at < self.cache_for:
            logger.debug("FRIENDS_CACHE_HIT age=%s", now - self._loaded_at)
            return

        def fetch() -> Tuple[List[Friendship], List[FriendRequest], List[FriendRequest], list]:
            friends = self.gateway.fetch_friendships(self.me)
            incoming = self.gateway.fetch_pending_requests(self.me, incoming=True)
            outgoing = self.gateway.fetch_pending_requests(self.me, incoming=False)
            users = [f.friend_of(self.me) for f in friends]
            users += [r.sender_id for r in incoming] + [r.receiver_id for r in outgoing]
            return friends, incoming, outgoing, self.gateway.fetch_profiles(users)

        def done(result) -> None:
            friends, incoming, outgoing, profiles = result
            self._loaded_at = now
            self.store.merge_profiles(profiles)
            self.store.friends.set(FriendsView(tuple(friends), tuple(incoming), tuple(outgoing)))

        def failed(exc: Exception) -> None:
            logger.warning("FRIENDS_LOAD_FAIL error=%s", exc)
            self.store.notify(Notice(title="Could not load friends", description=str(exc), level="error"))

        self.runner.submit(fetch, done, failed)

    def status(self, other: str) -> FriendshipStatus:
        view = self.store.friends.value
        if any(f.friend_of(self.me) == other for f in view.friends):
            return FriendshipStatus.FRIENDS
        if any(r.receiver_id == other for r in view.outgoing):
            return FriendshipStatus.SENT
        if any(r.sender_id == other for r in view.incoming):
            return FriendshipStatus.RECEIVED
        return FriendshipStatus.NONE

    def send_request(self, receiver_id: str) -> bool:
        if receiver_id == self.me:
            self.store.notify(Notice(title="You cannot add yourself", level="warning"))
            return False
        if self.status(receiver_id) is not FriendshipStatus.NONE:
            return False

        def send() -> None:
            if self.gateway.find_pending_request(self.me, receiver_id) is None:
                self.gateway.insert_request(self.me, receiver_id)

        def done(_) -> None:
            logger.info("FRIEND_REQUEST_SENT receiver=%s", receiver_id)
            self.store.notify(Notice(title="Friend request sent"))
            self.load(force=True)

        def failed(exc: Exception) -> None:
            logger.warning("FRIEND_REQUEST_FAIL receiver=%s error=%s", receiver_id, exc)
            self.store.notify(Notice(title="Could not send friend request", description=str(exc), level="error"))

        self.runner.submit(send, done, failed)
        return True

    def respond(self, request_id: str, accept: bool) -> None:
        status = FriendRequestStatus.ACCEPTED if accept else FriendRequestStatus.REJECTED

        def send() -> FriendRequest:
            request = self.gateway.respond_request(request_id, self.me, status)
            if accept and self.gateway.find_friendship(self.me, request.sender_id) is None:
                self.gateway.insert_friendship(self.me, request.sender_id)
            return request

        def done(request: FriendRequest) -> None:
            logger.info("FRIEND_REQUEST_%s id=%s", status.value.upper(), request.id)
            self.load(force=True)

        def failed(exc: Exception) -> None:
            logger.warning("FRIEND_RESPOND_FAIL id=%s error=%s", request_id, exc)
            self.store.notify(Notice(title="Could not answer friend request", description=str(exc), level="error"))

        self.runner.submit(send, done, failed)

    def remove_friend(self, friendship_id: str) -> None:
        previous = self.store.friends.value
        self.store.friends.set(
            FriendsView(
                tuple(f for f in previous.friends if f.id != friendship_id), previous.incoming, previous.outgoing
            )
        )

        def failed(exc: Exception) -> None:
            logger.warning("FRIEND_REMOVE_FAIL id=%s error=%s", friendship_id, exc)
            self.store.friends.set(previous)
            self.store.notify(Notice(title="Could not remove friend", description=str(exc), level="error"))

        self.runner.submit(lambda: self.gateway.delete_friendship(friendship_id, self.me), lambda _: None, failed)

    def handle_change(self, event: ChangeEvent) -> None:
        if event.table not in ("friend_requests", "friendships"):
            return
        record = event.record or event.old_record
        involved = {record.get("sender_id"), record.get("receiver_id"), record.get("user1_id"), record.get("user2_id")}
        if self.me in involved:
            self.load(force=True)


class NotificationsService:
    def __init__(self, gateway: Gateway, me: str, *, store: AppStore, runner: TaskRunner):
        self.gateway = gateway
        self.me = me
        self.store = store
        self.runner = runner

    @property
    def unread_count(self) -> int:
        return sum(1 for n in self.store.notifications.value if not n.is_read)

    def load(self) -> None:
        def done(notifications: List[Notification]) -> None:
            self.store.notifications.set(tuple(notifications))

        self.runner.submit(
            lambda: self.gateway.fetch_notifications(self.me, NOTIFICATIONS_LIMIT),
            done,
            lambda exc: logger.warning("NOTIFICATIONS_LOAD_FAIL error=%s", exc),
        )

    def _replace(self, update: Callable[[Notification], Notification]) -> Tuple[Notification, ...]:
        previous = self.store.notifications.value
        self.store.notifications.set(tuple(update(n) for n in previous))
        return previous

    def mark_read(self, notification_id: str) -> None:
        previous = self._replace(
            lambda n: n.model_copy(update={"is_read": True}) if n.id == notification_id else n
        )

        def failed(exc: Exception) -> None:
            logger.warning("NOTIFICATION_READ_FAIL id=%s error=%s", notification_id, exc)
            self.store.notifications.set(previous)

        self.runner.submit(lambda: self.gateway.mark_notification_read(notification_id), lambda _: None, failed)

    def mark_all_read(self) -> None:
        previous = self._replace(lambda n: n.model_copy(update={"is_read": True}))

        def failed(exc: Exception) -> None:
            logger.warning("NOTIFICATIONS_READ_ALL_FAIL error=%s", exc)
            self.store.notifications.set(previous)

        self.runner.submit(lambda: self.gateway.mark_all_notifications_read(self.me), lambda _: None, failed)

    def handle_change(self, event: ChangeEvent) -> None:
        if event.table != "notifications" or event.type is not ChangeType.INSERT:
            return
        notification = parse_row(Notification, event.record)
        if notification is None or notification.user_id != self.me:
            return
        current = self.store.notifications.value
        if any(n.id == notification.id for n in current):
            return
        self.store.notifications.set((notification,) + current[: NOTIFICATIONS_LIMIT - 1])
        self.store.notify(Notice(title=notification.title, description=notification.message or ""))


class FeedService:
    def __init__(self, gateway: Gateway, me: str, *, store: AppStore, runner: TaskRunner):
        self.gateway = gateway
        self.me = me
        self.store = store
        self.runner = runner

    def load(self) -> None:
        def done(posts: List[Post]) -> None:
            self.store.feed.set(tuple(posts))

        def failed(exc: Exception) -> None:
            logger.warning("FEED_LOAD_FAIL error=%s", exc)
            self.store.notify(Notice(title="Could not load posts", description=str(exc), level="error"))

        self.runner.submit(lambda: self.gateway.fetch_posts(self.me), done, failed)

    def _post(self, post_id: str) -> Optional[Post]:
        return next((p for p in self.store.feed.value if p.id == post_id), None)

    def _update(self, post_id: str, **values) -> Tuple[Post, ...]:
        previous = self.store.feed.value
        self.store.feed.set(tuple(p.model_copy(update=values) if p.id == post_id else p for p in previous))
        return previous

    def toggle_like(self, post_id: str) -> None:
        post = self._post(post_id)
        if post is None:
            return
        liked = not post.liked
        count = max(post.likes_count + (1 if liked else -1), 0)
        previous = self._update(post_id, liked=liked, likes_count=count)

        def send() -> None:
            if liked:
                self.gateway.like_post(post_id, self.me)
            else:
                self.gateway.unlike_post(post_id, self.me)

        def failed(exc: Exception) -> None:
            logger.warning("LIKE_FAIL post=%s liked=%s error=%s", post_id, liked, exc)
            self.store.feed.set(previous)
            self.store.notify(Notice(title="Could not update like", description=str(exc), level="error"))

        self.runner.submit(send, lambda _: None, failed)

    def add_comment(self, post_id: str, content: str) -> None:
        post = self._post(post_id)
        content = content.strip()
        if post is None or not content:
            return
        previous = self._update(post_id, comments_count=post.comments_count + 1)

        def failed(exc: Exception) -> None:
            logger.warning("COMMENT_FAIL post=%s error=%s", post_id, exc)
            self.store.feed.set(previous)
            self.store.notify(Notice(title="Could not add comment", description=str(exc), level="error"))

        self.runner.submit(lambda: self.gateway.add_comment(post_id, self.me, content), lambda _: None, failed)
