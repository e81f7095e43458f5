"""Reconciliation of optimistic messages with server-confirmed rows.

Three sources feed a thread: the local user sending, realtime INSERT/UPDATE
events, and fetches (the post-send fallback and the polling loop). All of
them go through :func:`merge_message`, which merges by identifier or by
temporary-entry match and never by arrival order, so any interleaving of
completions ends in the same visible list.
"""
from __future__ import annotations

import bisect
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence, Tuple

from ..shared.schemas import Message, MessageStatus, later_status
from ..shared.utils import new_client_id, temp_id_for
from .config import FALLBACK_FETCH_DELAY_SECONDS, SEND_TIMEOUT_SECONDS, TEMP_MATCH_WINDOW_SECONDS

DEFAULT_WINDOW = timedelta(seconds=TEMP_MATCH_WINDOW_SECONDS)


def matches_temporary(temp: Message, incoming: Message, window: timedelta = DEFAULT_WINDOW) -> bool:
    """Return True if ``incoming`` is the confirmed row for the temporary entry ``temp``."""
    if not temp.is_temporary or incoming.is_temporary:
        return False
    if incoming.client_id is not None and temp.client_id is not None:
        return incoming.client_id == temp.client_id
    return (
        temp.sender_id == incoming.sender_id
        and temp.receiver_id == incoming.receiver_id
        and temp.content == incoming.content
        and temp.image_url == incoming.image_url
        and abs(temp.created_at - incoming.created_at) <= window
    )


def _merge_same(current: Message, incoming: Message) -> Message:
    return incoming.model_copy(
        update={
            "status": later_status(current.status, incoming.status),
            "is_read": current.is_read or incoming.is_read,
        }
    )


def _insert_by_creation(messages: List[Message], incoming: Message) -> None:
    keys = [m.created_at for m in messages]
    messages.insert(bisect.bisect_right(keys, incoming.created_at), incoming)


def merge_message(
    messages: Sequence[Message], incoming: Message, window: timedelta = DEFAULT_WINDOW
) -> List[Message]:
    """Merge one message into a thread and return the new list."""
    merged = list(messages)
    if incoming.is_temporary:
        if not any(m.id == incoming.id for m in merged):
            merged.append(incoming)
        return merged

    for i, current in enumerate(merged):
        if current.id == incoming.id:
            merged[i] = _merge_same(current, incoming)
            return [m for m in merged if not matches_temporary(m, incoming, window)]

    for i, current in enumerate(merged):
        if matches_temporary(current, incoming, window):
            merged[i] = incoming
            return merged

    _insert_by_creation(merged, incoming)
    return merged


def apply_status_update(messages: Sequence[Message], incoming: Message) -> List[Message]:
    """Apply an UPDATE event: only status (monotonic) and the read flag change."""
    updated = []
    for m in messages:
        if m.id == incoming.id:
            m = m.model_copy(
                update={
                    "status": later_status(m.status, incoming.status),
                    "is_read": m.is_read or incoming.is_read,
                }
            )
        updated.append(m)
    return updated


@dataclass
class PendingSend:
    temp_id: str
    client_id: str
    created_at: datetime
    persisted_at: Optional[datetime] = None
    fallback_started: bool = False


class MessageThread:
    """The visible message list of one conversation plus its in-flight sends."""

    def __init__(
        self,
        me: str,
        peer_id: str,
        *,
        window: timedelta = DEFAULT_WINDOW,
        fallback_delay: timedelta = timedelta(seconds=FALLBACK_FETCH_DELAY_SECONDS),
        send_timeout: timedelta = timedelta(seconds=SEND_TIMEOUT_SECONDS),
    ):
        self.me = me
        self.peer_id = peer_id
        self.window = window
        self.fallback_delay = fallback_delay
        self.send_timeout = send_timeout
        self._messages: List[Message] = []
        self._pending: Dict[str, PendingSend] = {}

    @property
    def messages(self) -> Tuple[Message, ...]:
        return tuple(self._messages)

    @property
    def pending(self) -> Tuple[PendingSend, ...]:
        return tuple(self._pending.values())

    def get(self, message_id: str) -> Optional[Message]:
        return next((m for m in self._messages if m.id == message_id), None)

    def belongs(self, message: Message) -> bool:
        return message.involves(self.me, self.peer_id)

    def load(self, rows: Sequence[Message]) -> None:
        temps = [m for m in self._messages if m.is_temporary]
        merged: List[Message] = []
        for row in sorted(rows, key=lambda m: m.created_at):
            if self.belongs(row):
                merged = merge_message(merged, row, self.window)
        for temp in temps:
            if not any(matches_temporary(temp, m, self.window) for m in merged):
                merged.append(temp)
        self._messages = merged
        self._prune_pending()

    def add_temporary(
        self,
        now: datetime,
        content: Optional[str] = None,
        image_url: Optional[str] = None,
        reply_to: Optional[str] = None,
    ) -> Message:
        client_id = new_client_id()
        temp = Message(
            id=temp_id_for(client_id),
            sender_id=self.me,
            receiver_id=self.peer_id,
            content=content,
            image_url=image_url,
            status=MessageStatus.SENDING,
            is_read=False,
            created_at=now,
            reply_to=reply_to,
            client_id=client_id,
        )
        self._messages.append(temp)
        self._pending[temp.id] = PendingSend(temp_id=temp.id, client_id=client_id, created_at=now)
        return temp

    def mark_persisted(self, temp_id: str, now: datetime) -> None:
        pending = self._pending.get(temp_id)
        if pending is not None:
            pending.persisted_at = now

    def discard(self, temp_id: str) -> Optional[Message]:
        self._pending.pop(temp_id, None)
        temp = self.get(temp_id)
        if temp is not None:
            self._messages = [m for m in self._messages if m.id != temp_id]
        return temp

    def apply(self, message: Message) -> bool:
        """Merge a confirmed row. Returns True if the visible list changed."""
        if not self.belongs(message):
            return False
        before = self._messages
        self._messages = merge_message(before, message, self.window)
        self._prune_pending()
        return self._messages != before

    def apply_update(self, message: Message) -> bool:
        before = self._messages
        self._messages = apply_status_update(before, message)
        return self._messages != before

    def remove(self, message_id: str) -> Optional[Message]:
        removed = self.get(message_id)
        if removed is not None:
            self._messages = [m for m in self._messages if m.id != message_id]
        return removed

    def fallback_due(self, now: datetime) -> List[PendingSend]:
        due = []
        for pending in self._pending.values():
            if pending.persisted_at is None or pending.fallback_started:
                continue
            if now - pending.persisted_at >= self.fallback_delay:
                pending.fallback_started = True
                due.append(pending)
        return due

    def expire(self, now: datetime) -> List[Message]:
        """Remove temporary entries older than the send timeout and return them."""
        expired = [m for m in self._messages if m.is_temporary and now - m.created_at >= self.send_timeout]
        if expired:
            ids = {m.id for m in expired}
            self._messages = [m for m in self._messages if m.id not in ids]
            for temp_id in ids:
                self._pending.pop(temp_id, None)
        return expired

    def _prune_pending(self) -> None:
        live = {m.id for m in self._messages if m.is_temporary}
        for temp_id in list(self._pending):
            if temp_id not in live:
                del self._pending[temp_id]
