"""Bridge between the realtime websocket client and the thread that owns client state.

The ``realtime`` client is asyncio based. It runs on a private event loop in a
daemon thread; every inbound event is validated, then handed to ``post`` so the
handlers run on the owner's thread. Outbound calls from the owner are scheduled
onto the loop with ``run_coroutine_threadsafe`` and never block.
"""
from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import Future
from typing import Any, Callable, Dict, Optional

from pydantic import ValidationError
from realtime import AsyncRealtimeClient, RealtimeSubscribeStates

from ..shared.schemas import BroadcastEvent, ChangeEvent
from .presence import TYPING_EVENT, TYPING_STOP_EVENT

logger = logging.getLogger("campus_connect.realtime")

Post = Callable[[Callable[[], None]], None]

CHANGES_TOPIC = "campus-changes"
WATCHED_TABLES = ("messages", "conversations", "reactions", "message_pins", "friend_requests", "friendships")


def realtime_url(platform_url: str) -> str:
    return platform_url.rstrip("/") + "/realtime/v1"


class RealtimeBridge:
    def __init__(
        self,
        platform_url: str,
        anon_key: str,
        post: Post,
        on_change: Callable[[ChangeEvent], None],
        on_broadcast: Callable[[BroadcastEvent], None],
        on_status: Callable[[bool], None],
    ):
        self.url = realtime_url(platform_url)
        self.anon_key = anon_key
        self._post = post
        self._on_change = on_change
        self._on_broadcast = on_broadcast
        self._on_status = on_status
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._client: Optional[AsyncRealtimeClient] = None
        self._channels: Dict[str, Any] = {}

    # Lifecycle (owner thread)

    def start(self, access_token: Optional[str], me: str) -> None:
        if self._loop is not None:
            return
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._loop.run_forever, name="campus-realtime", daemon=True)
        self._thread.start()
        self._schedule(self._connect(access_token, me))

    def stop(self) -> None:
        loop = self._loop
        if loop is None:
            return
        future = self._schedule(self._close())
        if future is not None:
            try:
                future.result(timeout=5)
            except Exception as exc:  # noqa: BLE001
                logger.warning("REALTIME_CLOSE_FAIL error=%s", exc)
        loop.call_soon_threadsafe(loop.stop)
        self._loop = None
        self._thread = None

    def join(self, topic: str) -> None:
        """Subscribe to the typing broadcasts of one conversation."""
        self._schedule(self._join_broadcast(topic))

    def leave(self, topic: str) -> None:
        self._schedule(self._leave(topic))

    def send_broadcast(self, topic: str, event: str, payload: Dict[str, Any]) -> None:
        self._schedule(self._send(topic, event, payload))

    def _schedule(self, coro) -> Optional[Future]:
        if self._loop is None:
            coro.close()
            return None
        future = asyncio.run_coroutine_threadsafe(coro, self._loop)
        future.add_done_callback(self._log_failure)
        return future

    @staticmethod
    def _log_failure(future: Future) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.warning("REALTIME_CALL_FAIL error=%s", exc)

    # Event loop side

    async def _connect(self, access_token: Optional[str], me: str) -> None:
        self._client = AsyncRealtimeClient(self.url, self.anon_key)
        try:
            await self._client.connect()
            if access_token:
                await self._client.set_auth(access_token)
        except Exception as exc:  # noqa: BLE001
            logger.warning("REALTIME_CONNECT_FAIL url=%s error=%s", self.url, exc)
            self._report(False)
            return

        channel = self._client.channel(CHANGES_TOPIC)
        for table in WATCHED_TABLES:
            channel.on_postgres_changes("*", table=table, schema="public", callback=self._handle_change)
        channel.on_postgres_changes(
            "INSERT", table="notifications", schema="public", filter=f"user_id=eq.{me}", callback=self._handle_change
        )
        await channel.subscribe(self._subscribe_callback(CHANGES_TOPIC))
        self._channels[CHANGES_TOPIC] = channel

    async def _join_broadcast(self, topic: str) -> None:
        if self._client is None or topic in self._channels:
            return
        channel = self._client.channel(topic)
        for event in (TYPING_EVENT, TYPING_STOP_EVENT):
            channel.on_broadcast(event, self._broadcast_handler(topic))
        await channel.subscribe(self._subscribe_callback(topic))
        self._channels[topic] = channel

    async def _leave(self, topic: str) -> None:
        channel = self._channels.pop(topic, None)
        if channel is not None:
            await channel.unsubscribe()

    async def _send(self, topic: str, event: str, payload: Dict[str, Any]) -> None:
        channel = self._channels.get(topic)
        if channel is None:
            logger.debug("BROADCAST_SKIPPED topic=%s event=%s", topic, event)
            return
        await channel.send_broadcast(event, payload)

    async def _close(self) -> None:
        for topic in list(self._channels):
            await self._leave(topic)
        if self._client is not None:
            await self._client.close()
            self._client = None

    def _subscribe_callback(self, topic: str):
        def callback(state: RealtimeSubscribeStates, error: Optional[Exception]) -> None:
            ok = state == RealtimeSubscribeStates.SUBSCRIBED
            if ok:
                logger.info("REALTIME_SUBSCRIBED topic=%s", topic)
            else:
                logger.warning("REALTIME_STATE topic=%s state=%s error=%s", topic, state, error)
            if topic == CHANGES_TOPIC:
                self._report(ok)

        return callback

    def _handle_change(self, payload: Dict[str, Any]) -> None:
        try:
            event = ChangeEvent.from_payload(payload)
        except ValidationError as exc:
            logger.warning("CHANGE_REJECTED errors=%s", exc.error_count())
            return
        self._post(lambda: self._on_change(event))

    def _broadcast_handler(self, topic: str):
        def handler(payload: Dict[str, Any]) -> None:
            try:
                event = BroadcastEvent.model_validate({**payload, "topic": topic})
            except ValidationError as exc:
                logger.warning("BROADCAST_REJECTED topic=%s errors=%s", topic, exc.error_count())
                return
            self._post(lambda: self._on_broadcast(event))

        return handler

    def _report(self, ok: bool) -> None:
        self._post(lambda: self._on_status(ok))
