"""Application controller shared by the PyQt GUI and the console client."""
from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional

from ..api import PlatformClient
from ..config import settings
from ..errors import NotSignedIn, PlatformError
from ..gateway import Gateway
from ..messaging import MessagingService
from ..realtime import RealtimeBridge
from ..social import FeedService, FriendsService, NotificationsService
from ..storage import (
    clear_auth,
    get_messaging_settings,
    get_platform_url,
    get_token,
    get_user,
    store_auth,
    store_messaging_settings,
    store_platform_url,
)
from ..store import AppStore
from ..tasks import InlineRunner, TaskRunner
from ...shared.schemas import ChangeEvent, MessagingSettings, Profile

logger = logging.getLogger("campus_connect.app")

Post = Callable[[Callable[[], None]], None]


class ChatController:
    """Owns the platform client, the state store and the services of one session.

    ``post`` schedules a callable on the owner's thread. Without it there is no
    realtime connection and the messaging service polls instead.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        anon_key: Optional[str] = None,
        *,
        runner: Optional[TaskRunner] = None,
        post: Optional[Post] = None,
    ):
        self.base_url = base_url or get_platform_url() or settings.platform_url
        self.anon_key = anon_key or settings.anon_key
        self.runner = runner or InlineRunner()
        self.post = post
        self.client: Optional[PlatformClient] = None
        if self.base_url:
            self.client = PlatformClient(self.base_url, self.anon_key)
        self.user: Optional[Dict[str, Any]] = get_user()
        self.store = AppStore()
        self.messaging: Optional[MessagingService] = None
        self.friends: Optional[FriendsService] = None
        self.notifications: Optional[NotificationsService] = None
        self.feed: Optional[FeedService] = None
        self.realtime: Optional[RealtimeBridge] = None
        self.gateway: Optional[Gateway] = None
        self._unsubscribe: Optional[Callable[[], None]] = None

    @property
    def me(self) -> str:
        if not self.user:
            raise NotSignedIn("Not signed in")
        return self.user["id"]

    @property
    def signed_in(self) -> bool:
        return self.messaging is not None

    def set_base_url(self, url: str) -> None:
        self.base_url = url.rstrip("/")
        store_platform_url(self.base_url)
        self.client = PlatformClient(self.base_url, self.anon_key)

    def ensure_ready(self) -> PlatformClient:
        if self.client is None:
            raise RuntimeError("Platform URL not configured")
        return self.client

    def sign_in(self, email: str, password: str) -> Dict[str, Any]:
        client = self.ensure_ready()
        response = client.sign_in(email, password)
        store_auth(response["access_token"], response["user"])
        self.user = response["user"]
        logger.info("SIGNED_IN user=%s", self.user.get("id"))
        self._start_session()
        return self.user

    def resume(self) -> bool:
        """Start a session from the stored token, if there is one."""
        if self.client is None or not get_token() or not self.user:
            return False
        self._start_session()
        return True

    def _start_session(self) -> None:
        gateway = Gateway(self.ensure_ready())
        self.gateway = gateway
        me = self.me
        self.store = AppStore()
        self.store.settings.set(MessagingSettings.model_validate(get_messaging_settings()))
        self._unsubscribe = self.store.settings.subscribe(lambda s: store_messaging_settings(s.model_dump()))

        self.messaging = MessagingService(gateway, me, store=self.store, runner=self.runner)
        self.friends = FriendsService(gateway, me, store=self.store, runner=self.runner)
        self.notifications = NotificationsService(gateway, me, store=self.store, runner=self.runner)
        self.feed = FeedService(gateway, me, store=self.store, runner=self.runner)

        if self.post is not None:
            self.realtime = RealtimeBridge(
                self.base_url,
                self.anon_key,
                self.post,
                on_change=self.handle_change,
                on_broadcast=self.messaging.handle_broadcast,
                on_status=self.messaging.channel_status,
            )
            self.messaging.realtime = self.realtime
            self.realtime.start(get_token(), me)
        else:
            self.messaging.channel_status(False)

        self.messaging.load_settings()
        self.messaging.load_conversations()
        self.friends.load()
        self.notifications.load()

    def handle_change(self, event: ChangeEvent) -> None:
        if self.messaging is None:
            return
        self.messaging.handle_change(event)
        self.friends.handle_change(event)
        self.notifications.handle_change(event)

    def tick(self) -> None:
        if self.messaging is not None:
            self.messaging.tick()

    def search_profiles(self, name: str) -> List[Profile]:
        if self.gateway is None:
            raise NotSignedIn("Not signed in")
        return [p for p in self.gateway.search_profiles(name) if p.user_id != self.me]

    def sign_out(self) -> None:
        if self.messaging is not None:
            self.messaging.close_conversation()
        if self.realtime is not None:
            self.realtime.stop()
            self.realtime = None
        if self.client is not None and get_token():
            try:
                self.client.sign_out()
            except PlatformError as exc:
                logger.warning("SIGN_OUT_FAIL error=%s", exc)
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        clear_auth()
        self.user = None
        self.messaging = None
        self.friends = None
        self.notifications = None
        self.feed = None
        self.gateway = None
        self.store = AppStore()
        logger.info("SIGNED_OUT")
