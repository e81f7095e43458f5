"""Messaging service: conversation list, open thread, sends, receipts and typing.

The service is the only writer of the messaging slices of :class:`AppStore`.
Platform calls go through the task runner; their callbacks and realtime events
arrive on the owner's thread, and ``tick`` drives every timer.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime, timedelta
from functools import partial
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Set, Tuple

from ..shared.schemas import (
    BroadcastEvent,
    ChangeEvent,
    ChangeType,
    Conversation,
    Message,
    MessagePin,
    MessagingSettings,
    MessageStatus,
    Reaction,
    parse_row,
)
from ..shared.utils import new_client_id, preview, temp_id_for, utcnow
from .config import POLL_INTERVAL_SECONDS, UNSEND_WINDOW_SECONDS
from .errors import ReorderRejected
from .gateway import Gateway
from .ordering import ConversationList
from .presence import TYPING_EVENT, TYPING_STOP_EVENT, TypingBroadcaster, TypingTracker, typing_topic
from .reactions import ReactionAction, aggregate, plan_toggle
from .receipts import ReadReceiptDebouncer, read_update, unread_for
from .store import AppStore, FailedSend, Notice, ThreadView
from .sync import MessageThread, matches_temporary
from .tasks import TaskRunner

logger = logging.getLogger("campus_connect.messaging")

Clock = Callable[[], datetime]
Image = Tuple[str, bytes]


class Broadcaster(Protocol):
    def join(self, topic: str) -> None:
        ...

    def leave(self, topic: str) -> None:
        ...

    def send_broadcast(self, topic: str, event: str, payload: Dict[str, Any]) -> None:
        ...


class MessagingService:
    def __init__(
        self,
        gateway: Gateway,
        me: str,
        *,
        store: AppStore,
        runner: TaskRunner,
        clock: Clock = utcnow,
        realtime: Optional[Broadcaster] = None,
        poll_interval: timedelta = timedelta(seconds=POLL_INTERVAL_SECONDS),
    ):
        self.gateway = gateway
        self.me = me
        self.store = store
        self.runner = runner
        self.clock = clock
        self.realtime = realtime
        self.poll_interval = poll_interval

        self.conversations = ConversationList(me)
        self.thread: Optional[MessageThread] = None
        self.conversation_id: Optional[str] = None
        self.typing = TypingTracker()
        self.broadcaster = TypingBroadcaster()
        self.receipts = ReadReceiptDebouncer()

        self._pins: List[MessagePin] = []
        self._reactions: List[Reaction] = []
        self._failed: Dict[str, FailedSend] = {}
        self._hidden: Set[str] = set()
        self._polling = False
        self._next_poll: Optional[datetime] = None

    @property
    def settings(self) -> MessagingSettings:
        return self.store.settings.value

    @property
    def polling(self) -> bool:
        return self._polling

    # Publishing

    def _publish_conversations(self) -> None:
        self.store.conversations.set(self.conversations.items)

    def _publish_thread(self) -> None:
        thread = self.thread
        if thread is None:
            self.store.thread.set(ThreadView())
            return
        grouped: Dict[str, List[Reaction]] = defaultdict(list)
        for reaction in self._reactions:
            grouped[reaction.message_id].append(reaction)
        self.store.thread.set(
            ThreadView(
                peer_id=thread.peer_id,
                conversation_id=self.conversation_id,
                messages=thread.messages,
                peer_typing=self.typing.is_typing(thread.peer_id, self.clock()),
                pins=tuple(self._pins),
                reactions={mid: tuple(aggregate(items, self.me)) for mid, items in grouped.items()},
            )
        )

    def _publish_failed(self) -> None:
        self.store.failed_sends.set(tuple(self._failed.values()))

    def _error(self, title: str, exc: Exception, **kwargs: Any) -> None:
        self.store.notify(Notice(title=title, description=str(exc), level="error", **kwargs))

    # Conversations

    def load_conversations(self) -> None:
        def fetch() -> Tuple[List[Conversation], list]:
            conversations = self.gateway.fetch_conversations(self.me)
            profiles = self.gateway.fetch_profiles(c.peer_of(self.me) for c in conversations)
            return conversations, profiles

        def done(result) -> None:
            conversations, profiles = result
            self.store.merge_profiles(profiles)
            if self.conversations.replace(conversations):
                self._publish_conversations()
            else:
                logger.info("REFRESH_SUPPRESSED reason=saving_order")

        def failed(exc: Exception) -> None:
            logger.warning("CONVERSATIONS_LOAD_FAIL error=%s", exc)
            self._error("Could not load conversations", exc)

        self.runner.submit(fetch, done, failed)

    def load_settings(self) -> None:
        def done(settings: Optional[MessagingSettings]) -> None:
            if settings is not None:
                self.store.settings.set(settings)

        self.runner.submit(
            lambda: self.gateway.fetch_settings(self.me),
            done,
            lambda exc: logger.warning("SETTINGS_LOAD_FAIL error=%s", exc),
        )

    def open_conversation(self, peer_id: str) -> None:
        self.close_conversation()
        thread = MessageThread(self.me, peer_id)
        self.thread = thread
        known = self.conversations.find_by_peer(peer_id)
        self.conversation_id = known.id if known else None
        self._publish_thread()

        def fetch():
            conversation_id = known.id if known else self.gateway.get_or_create_conversation(peer_id)
            messages = self.gateway.fetch_thread(self.me, peer_id)
            pins = self.gateway.fetch_pins(conversation_id)
            reactions = self.gateway.fetch_reactions([m.id for m in messages])
            return conversation_id, messages, pins, reactions

        def done(result) -> None:
            if self.thread is not thread:
                return
            conversation_id, messages, pins, reactions = result
            self.conversation_id = conversation_id
            self._resolve_failed(messages)
            thread.load([m for m in messages if m.id not in self._hidden])
            self._pins = list(pins)
            self._reactions = list(reactions)
            if self.realtime is not None:
                self.realtime.join(typing_topic(conversation_id))
            self._mark_thread_read()
            self._publish_thread()

        def failed(exc: Exception) -> None:
            logger.warning("THREAD_LOAD_FAIL peer=%s error=%s", peer_id, exc)
            if self.thread is thread:
                self._error("Could not load messages", exc)

        self.runner.submit(fetch, done, failed)

    def close_conversation(self) -> None:
        if self.thread is None:
            return
        if self.conversation_id is not None:
            if self.broadcaster.sent():
                self._broadcast(TYPING_STOP_EVENT)
            if self.realtime is not None:
                self.realtime.leave(typing_topic(self.conversation_id))
        self.broadcaster.reset()
        self.receipts.cancel()
        self.typing.clear()
        self.thread = None
        self.conversation_id = None
        self._pins = []
        self._reactions = []
        self._publish_thread()

    def _mark_thread_read(self) -> None:
        thread = self.thread
        if thread is None:
            return
        self.receipts.schedule(unread_for(thread.messages, self.me), self.clock())
        if self.conversation_id is None:
            return
        conversation = self.conversations.mark_read(self.conversation_id, self.clock())
        self._publish_conversations()
        if conversation is not None:
            self.runner.submit(
                lambda: self.gateway.update_conversation(conversation.id, {"unread_count": 0}),
                lambda _: None,
                lambda exc: logger.warning("MARK_READ_FAIL conversation=%s error=%s", conversation.id, exc),
            )

    # Sending

    def send_message(
        self, text: Optional[str] = None, image: Optional[Image] = None, reply_to: Optional[str] = None
    ) -> Optional[Message]:
        """Send text and/or an image to the open conversation.

        An attached image is uploaded first and goes out as its own message,
        followed by the text. An upload failure aborts both.
        """
        thread = self.thread
        if thread is None:
            self.store.notify(Notice(title="No conversation open", level="warning"))
            return None
        text = text.strip() if text else None
        if not text and image is None:
            return None
        if image is None:
            return self._send(thread, content=text, reply_to=reply_to)

        filename, data = image

        def uploaded(url: str) -> None:
            if self.thread is not thread:
                return
            self._send(thread, image_url=url, reply_to=reply_to)
            if text:
                self._send(thread, content=text)

        def failed(exc: Exception) -> None:
            logger.warning("UPLOAD_FAIL file=%s error=%s", filename, exc)
            self._error("Image upload failed", exc)

        self.runner.submit(lambda: self.gateway.upload_image(self.me, filename, data), uploaded, failed)
        return None

    def _send(
        self,
        thread: MessageThread,
        content: Optional[str] = None,
        image_url: Optional[str] = None,
        reply_to: Optional[str] = None,
    ) -> Message:
        temp = thread.add_temporary(self.clock(), content=content, image_url=image_url, reply_to=reply_to)
        logger.info("MESSAGE_QUEUED temp_id=%s peer=%s", temp.id, thread.peer_id)
        self._publish_thread()
        if self.conversation_id is not None and self.broadcaster.sent():
            self._broadcast(TYPING_STOP_EVENT)

        def persist() -> Optional[Message]:
            return self.gateway.insert_message(
                self.me,
                thread.peer_id,
                content=content,
                image_url=image_url,
                reply_to=reply_to,
                client_id=temp.client_id,
            )

        def done(row: Optional[Message]) -> None:
            logger.info("MESSAGE_SENT temp_id=%s", temp.id)
            thread.mark_persisted(temp.id, self.clock())
            if row is not None and temp.id in self._failed:
                self._resolve_failed([row])
                if thread.apply(row) and self.thread is thread:
                    self._publish_thread()
            self._push(thread.peer_id, content)

        def failed(exc: Exception) -> None:
            logger.warning("MESSAGE_SEND_FAIL temp_id=%s error=%s", temp.id, exc)
            thread.discard(temp.id)
            if self.thread is thread:
                self._publish_thread()
            self._error("Message failed to send", exc)

        self.runner.submit(persist, done, failed)
        return temp

    def _push(self, peer_id: str, content: Optional[str]) -> None:
        title = self.store.display_name(self.me)
        body = preview(content) if content else "Sent an image"
        self.runner.submit(
            lambda: self.gateway.send_push(peer_id, title, body, {"senderId": self.me}),
            lambda _: None,
            lambda exc: logger.warning("PUSH_FAIL peer=%s error=%s", peer_id, exc),
        )

    def retry_failed(self, temp_id: str) -> Optional[Message]:
        failed = self._failed.get(temp_id)
        if failed is None:
            return None
        thread = self.thread
        if thread is None or thread.peer_id != failed.peer_id:
            self.store.notify(Notice(title="Open the conversation to retry", level="warning"))
            return None
        del self._failed[temp_id]
        self._publish_failed()
        return self._send(thread, content=failed.content, image_url=failed.image_url, reply_to=failed.reply_to)

    def dismiss_failed(self, temp_id: str) -> None:
        if self._failed.pop(temp_id, None) is not None:
            self._publish_failed()

    def _resolve_failed(self, confirmed: Iterable[Message]) -> None:
        """Forget timed-out sends whose row reached the platform after all."""
        if not self._failed:
            return
        confirmed = list(confirmed)
        resolved = [
            temp_id
            for temp_id, failed in self._failed.items()
            if any(matches_temporary(failed.temp, m) for m in confirmed)
        ]
        for temp_id in resolved:
            logger.info("LATE_CONFIRM temp_id=%s", temp_id)
            del self._failed[temp_id]
        if resolved:
            self._publish_failed()

    # Message actions

    def delete_for_me(self, message_id: str) -> None:
        """Hide a message locally; the row stays for the other participant."""
        thread = self.thread
        if thread is None or thread.remove(message_id) is None:
            return
        self._hidden.add(message_id)
        self._publish_thread()
        self.store.notify(Notice(title="Deleted", description="Message deleted for you"))

    def can_unsend(self, message: Message) -> bool:
        age = self.clock() - message.created_at
        return message.sender_id == self.me and not message.is_temporary and age < timedelta(
            seconds=UNSEND_WINDOW_SECONDS
        )

    def unsend(self, message_id: str) -> None:
        thread = self.thread
        message = thread.get(message_id) if thread else None
        if thread is None or message is None:
            return
        if not self.can_unsend(message):
            self.store.notify(Notice(title="This message can no longer be unsent", level="warning"))
            return
        thread.remove(message_id)
        self._publish_thread()

        def done(_) -> None:
            self.store.notify(Notice(title="Unsent", description="Message removed for everyone"))

        def failed(exc: Exception) -> None:
            logger.warning("UNSEND_FAIL message=%s error=%s", message_id, exc)
            thread.apply(message)
            if self.thread is thread:
                self._publish_thread()
            self._error("Failed to unsend message", exc)

        self.runner.submit(lambda: self.gateway.delete_message(message_id, self.me), done, failed)

    # Conversation list actions

    def reorder(self, source_id: str, target_index: int) -> bool:
        try:
            token, rows = self.conversations.reorder(source_id, target_index)
        except ReorderRejected as exc:
            logger.info("REORDER_REJECTED conversation=%s", source_id)
            self.store.notify(Notice(title="Cannot move conversation", description=str(exc), level="warning"))
            return False
        self._publish_conversations()
        logger.info("REORDER_SAVE token=%s rows=%s", token, len(rows))

        def refreshed(conversations: List[Conversation]) -> None:
            if self.conversations.finish_save(token):
                self.conversations.replace(conversations, force=True)
                self._publish_conversations()

        def refresh_failed(exc: Exception) -> None:
            logger.warning("REORDER_REFRESH_FAIL token=%s error=%s", token, exc)
            self.conversations.finish_save(token)

        def saved(_) -> None:
            self.runner.submit(lambda: self.gateway.fetch_conversations(self.me), refreshed, refresh_failed)

        def failed(exc: Exception) -> None:
            logger.warning("REORDER_FAIL token=%s error=%s", token, exc)
            if self.conversations.finish_save(token):
                self.load_conversations()
            self._error("Could not save conversation order", exc)

        self.runner.submit(lambda: self.gateway.save_order(rows), saved, failed)
        return True

    def _toggle(self, conversation_id: str, values: Dict[str, Any], title: str) -> None:
        conversation = self.conversations.get(conversation_id)
        if conversation is None:
            return
        previous = {column: getattr(conversation, column) for column in values}
        for column, value in values.items():
            self.conversations.set_flag(conversation_id, column, value)
        self._publish_conversations()

        def failed(exc: Exception) -> None:
            logger.warning("CONVERSATION_UPDATE_FAIL conversation=%s error=%s", conversation_id, exc)
            for column, value in previous.items():
                self.conversations.set_flag(conversation_id, column, value)
            self._publish_conversations()
            self._error(title, exc)

        self.runner.submit(
            lambda: self.gateway.update_conversation(conversation_id, values), lambda _: None, failed
        )

    def toggle_pin(self, conversation_id: str) -> None:
        conversation = self.conversations.get(conversation_id)
        if conversation is None:
            return
        pinned = not conversation.is_pinned_for(self.me)
        values = {conversation.pin_column(self.me): pinned, "display_order": -1 if pinned else 0}
        self._toggle(conversation_id, values, "Could not update pin")

    def toggle_mute(self, conversation_id: str) -> None:
        conversation = self.conversations.get(conversation_id)
        if conversation is None:
            return
        values = {conversation.mute_column(self.me): not conversation.is_muted_for(self.me)}
        self._toggle(conversation_id, values, "Could not update mute")

    def mark_unread(self, conversation_id: str) -> None:
        conversation = self.conversations.get(conversation_id)
        if conversation is None:
            return
        self.conversations.mark_unread(conversation_id)
        self._publish_conversations()
        count = conversation.unread_count + 1

        def failed(exc: Exception) -> None:
            logger.warning("MARK_UNREAD_FAIL conversation=%s error=%s", conversation_id, exc)
            self.conversations.set_flag(conversation_id, "unread_count", conversation.unread_count)
            self._publish_conversations()
            self._error("Could not mark as unread", exc)

        self.runner.submit(
            lambda: self.gateway.update_conversation(conversation_id, {"unread_count": count}),
            lambda _: None,
            failed,
        )

    # Pins and reactions

    def _refresh_pins(self) -> None:
        conversation_id = self.conversation_id
        if conversation_id is None:
            return

        def done(pins: List[MessagePin]) -> None:
            if self.conversation_id == conversation_id:
                self._pins = list(pins)
                self._publish_thread()

        self.runner.submit(
            lambda: self.gateway.fetch_pins(conversation_id),
            done,
            lambda exc: logger.warning("PINS_LOAD_FAIL conversation=%s error=%s", conversation_id, exc),
        )

    def pin_message(self, message_id: str) -> None:
        conversation_id = self.conversation_id
        if conversation_id is None:
            return

        def failed(exc: Exception) -> None:
            logger.warning("PIN_FAIL message=%s error=%s", message_id, exc)
            self._error("Failed to pin message", exc)

        self.runner.submit(
            lambda: self.gateway.insert_pin(message_id, conversation_id, self.me),
            lambda _: self._refresh_pins(),
            failed,
        )

    def unpin_message(self, message_id: str) -> None:
        previous = list(self._pins)
        self._pins = [p for p in self._pins if p.message_id != message_id]
        self._publish_thread()

        def failed(exc: Exception) -> None:
            logger.warning("UNPIN_FAIL message=%s error=%s", message_id, exc)
            self._pins = previous
            self._publish_thread()
            self._error("Failed to unpin message", exc)

        self.runner.submit(lambda: self.gateway.delete_pin(message_id), lambda _: None, failed)

    def react(self, message_id: str, emoji: str) -> None:
        thread = self.thread
        if thread is None or thread.get(message_id) is None:
            return
        previous = list(self._reactions)
        existing = next((r for r in previous if r.message_id == message_id and r.user_id == self.me), None)
        action = plan_toggle(existing, emoji)
        others = [r for r in previous if r is not existing]
        if action is ReactionAction.DELETE:
            self._reactions = others
            call = partial(self.gateway.delete_reaction, message_id, self.me)
        elif action is ReactionAction.UPDATE:
            self._reactions = others + [existing.model_copy(update={"emoji": emoji})]
            call = partial(self.gateway.update_reaction, existing.id, emoji)
        else:
            local = Reaction(id=temp_id_for(new_client_id()), message_id=message_id, user_id=self.me, emoji=emoji)
            self._reactions = previous + [local]
            call = partial(self.gateway.insert_reaction, message_id, self.me, emoji)
        self._publish_thread()

        def done(_) -> None:
            self._refresh_reactions()

        def failed(exc: Exception) -> None:
            logger.warning("REACTION_FAIL message=%s action=%s error=%s", message_id, action.value, exc)
            if self.thread is thread:
                self._reactions = previous
                self._publish_thread()
            self._error("Could not update reaction", exc)

        self.runner.submit(call, done, failed)

    def _refresh_reactions(self) -> None:
        thread = self.thread
        if thread is None:
            return
        ids = [m.id for m in thread.messages if not m.is_temporary]

        def done(reactions: List[Reaction]) -> None:
            if self.thread is thread:
                self._reactions = list(reactions)
                self._publish_thread()

        self.runner.submit(
            lambda: self.gateway.fetch_reactions(ids),
            done,
            lambda exc: logger.warning("REACTIONS_LOAD_FAIL error=%s", exc),
        )

    # Presence and settings

    def user_typing(self) -> None:
        if self.conversation_id is None or not self.settings.typing_indicators_enabled:
            return
        if self.broadcaster.keystroke(self.clock()):
            self._broadcast(TYPING_EVENT)

    def _broadcast(self, event: str) -> None:
        if self.realtime is None or self.conversation_id is None:
            return
        self.realtime.send_broadcast(typing_topic(self.conversation_id), event, {"userId": self.me})

    def set_setting(self, key: str, value: bool) -> None:
        previous = self.settings
        if key not in MessagingSettings.model_fields:
            raise KeyError(key)
        updated = previous.model_copy(update={key: value})
        self.store.settings.set(updated)
        if not updated.typing_indicators_enabled:
            if self.conversation_id is not None and self.broadcaster.sent():
                self._broadcast(TYPING_STOP_EVENT)
            self.typing.clear()
            self._publish_thread()

        def failed(exc: Exception) -> None:
            logger.warning("SETTINGS_SAVE_FAIL key=%s error=%s", key, exc)
            self.store.settings.set(previous)
            self._error("Could not save settings", exc)

        self.runner.submit(lambda: self.gateway.save_settings(self.me, updated), lambda _: None, failed)

    # Realtime ingestion

    def handle_change(self, event: ChangeEvent) -> None:
        handler = {
            "messages": self._message_change,
            "conversations": self._conversation_change,
            "reactions": self._reaction_change,
            "message_pins": self._pin_change,
        }.get(event.table)
        if handler is not None:
            handler(event)

    def _message_change(self, event: ChangeEvent) -> None:
        thread = self.thread
        if event.type is ChangeType.DELETE:
            message_id = event.old_record.get("id")
            if thread is not None and message_id and thread.remove(message_id) is not None:
                self._publish_thread()
            return

        message = parse_row(Message, event.record)
        if message is None or message.id in self._hidden:
            return
        if event.type is ChangeType.UPDATE:
            if thread is not None and thread.apply_update(message):
                self._publish_thread()
            return
        self._resolve_failed([message])

        if message.receiver_id == self.me and message.status is MessageStatus.SENT:
            message = message.model_copy(update={"status": MessageStatus.DELIVERED})
            self.runner.submit(
                lambda: self.gateway.update_messages([message.id], {"status": MessageStatus.DELIVERED.value}),
                lambda _: None,
                lambda exc: logger.warning("DELIVERED_FAIL message=%s error=%s", message.id, exc),
            )
        if thread is None or not thread.belongs(message):
            return
        incoming = message.receiver_id == self.me
        changed = thread.apply(message)
        if incoming and self.typing.stop(message.sender_id):
            changed = True
        if changed:
            self._publish_thread()
        if incoming:
            self.receipts.schedule([message.id], self.clock())

    def _conversation_change(self, event: ChangeEvent) -> None:
        record = event.record or event.old_record
        participants = {record.get("user1_id"), record.get("user2_id")}
        if self.me in participants or event.type is ChangeType.DELETE:
            self.load_conversations()

    def _reaction_change(self, event: ChangeEvent) -> None:
        if self.thread is None:
            return
        if event.type is ChangeType.DELETE:
            reaction_id = event.old_record.get("id")
            kept = [r for r in self._reactions if r.id != reaction_id]
        else:
            reaction = parse_row(Reaction, event.record)
            if reaction is None or self.thread.get(reaction.message_id) is None:
                return
            kept = [
                r
                for r in self._reactions
                if r.id != reaction.id and not (r.message_id == reaction.message_id and r.user_id == reaction.user_id)
            ]
            kept.append(reaction)
        if kept != self._reactions:
            self._reactions = kept
            self._publish_thread()

    def _pin_change(self, event: ChangeEvent) -> None:
        record = event.record or event.old_record
        conversation_id = record.get("conversation_id")
        if conversation_id is None or conversation_id == self.conversation_id:
            self._refresh_pins()

    def handle_broadcast(self, event: BroadcastEvent) -> None:
        if self.conversation_id is None or event.topic != typing_topic(self.conversation_id):
            return
        user_id = event.user_id
        if user_id is None or user_id == self.me or not self.settings.typing_indicators_enabled:
            return
        if event.event == TYPING_EVENT:
            self.typing.typing(user_id, self.clock())
        elif event.event == TYPING_STOP_EVENT:
            self.typing.stop(user_id)
        else:
            return
        self._publish_thread()

    def channel_status(self, ok: bool) -> None:
        self.store.realtime_connected.set(ok)
        if ok and self._polling:
            logger.info("REALTIME_RECOVERED polling=off")
            self._polling = False
            self._next_poll = None
        elif not ok and not self._polling:
            logger.warning("REALTIME_DOWN polling=on interval=%s", self.poll_interval.total_seconds())
            self._polling = True
            self._next_poll = self.clock()

    def poll(self) -> None:
        self.load_conversations()
        thread = self.thread
        if thread is None:
            return

        def done(messages: List[Message]) -> None:
            if self.thread is not thread:
                return
            self._resolve_failed(messages)
            before = thread.messages
            thread.load([m for m in messages if m.id not in self._hidden])
            if thread.messages != before:
                self.receipts.schedule(unread_for(thread.messages, self.me), self.clock())
                self._publish_thread()

        self.runner.submit(
            lambda: self.gateway.fetch_thread(self.me, thread.peer_id),
            done,
            lambda exc: logger.warning("POLL_FAIL peer=%s error=%s", thread.peer_id, exc),
        )

    # Timers

    def tick(self) -> None:
        now = self.clock()
        thread = self.thread
        if thread is not None:
            for pending in thread.fallback_due(now):
                self._fallback_fetch(thread, pending.temp_id)
            expired = thread.expire(now)
            for temp in expired:
                self._send_timed_out(thread, temp)
            if expired:
                self._publish_failed()
                self._publish_thread()
            if self.typing.sweep(now):
                self._publish_thread()
            self._flush_receipts(thread, self.receipts.due(now))
        if self.conversation_id is not None and self.broadcaster.stop_due(now):
            self._broadcast(TYPING_STOP_EVENT)
        if self._polling and self._next_poll is not None and now >= self._next_poll:
            self._next_poll = now + self.poll_interval
            self.poll()

    def _fallback_fetch(self, thread: MessageThread, temp_id: str) -> None:
        def done(message: Optional[Message]) -> None:
            if message is not None:
                self._resolve_failed([message])
            if message is not None and thread.apply(message) and self.thread is thread:
                logger.info("FALLBACK_RECONCILED temp_id=%s id=%s", temp_id, message.id)
                self._publish_thread()

        self.runner.submit(
            lambda: self.gateway.latest_sent(self.me, thread.peer_id),
            done,
            lambda exc: logger.warning("FALLBACK_FAIL temp_id=%s error=%s", temp_id, exc),
        )

    def _send_timed_out(self, thread: MessageThread, temp: Message) -> None:
        logger.warning("SEND_TIMEOUT temp_id=%s peer=%s", temp.id, thread.peer_id)
        self._failed[temp.id] = FailedSend(temp=temp)
        self.store.notify(
            Notice(
                title="Message not delivered",
                description=preview(temp.content or "Image"),
                level="error",
                action="retry",
                ref=temp.id,
            )
        )

    def _flush_receipts(self, thread: MessageThread, ids: List[str]) -> None:
        wanted = set(ids)
        pending = [m for m in thread.messages if m.id in wanted and not m.is_read]
        if not pending:
            return
        values = read_update(self.settings)
        local = {"is_read": True}
        if "status" in values:
            local["status"] = MessageStatus(values["status"])

        def done(_) -> None:
            changed = False
            for message in pending:
                changed = thread.apply_update(message.model_copy(update=local)) or changed
            if changed and self.thread is thread:
                self._publish_thread()

        self.runner.submit(
            lambda: self.gateway.update_messages([m.id for m in pending], values),
            done,
            lambda exc: logger.warning("READ_RECEIPT_FAIL count=%s error=%s", len(pending), exc),
        )
