"""Read receipts: which messages to mark read, when, and what status to show."""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from ..shared.schemas import Message, MessagingSettings, MessageStatus
from .config import READ_RECEIPT_DEBOUNCE_SECONDS


def unread_for(messages: Iterable[Message], me: str) -> List[str]:
    return [m.id for m in messages if m.receiver_id == me and not m.is_read and not m.is_temporary]


def read_update(settings: MessagingSettings) -> Dict[str, Any]:
    """Column values written when marking messages read.

    The read flag always clears the unread badge; the ``seen`` status is only
    revealed to the sender when the reader has read receipts enabled.
    """
    values: Dict[str, Any] = {"is_read": True}
    if settings.read_receipts_enabled:
        values["status"] = MessageStatus.SEEN.value
    return values


def visible_status(message: Message, me: str, settings: MessagingSettings) -> Optional[MessageStatus]:
    """Status indicator for a bubble, or None for messages from others.

    Turning read receipts off is symmetric: others' ``seen`` is shown as
    ``delivered`` even when the stored status is ``seen``.
    """
    if message.sender_id != me:
        return None
    if message.status is MessageStatus.SEEN and not settings.read_receipts_enabled:
        return MessageStatus.DELIVERED
    return message.status


class ReadReceiptDebouncer:
    def __init__(self, delay: timedelta = timedelta(seconds=READ_RECEIPT_DEBOUNCE_SECONDS)):
        self.delay = delay
        self._ids: List[str] = []
        self._deadline: Optional[datetime] = None

    def schedule(self, message_ids: Iterable[str], now: datetime) -> None:
        message_ids = list(message_ids)
        if not message_ids:
            return
        for message_id in message_ids:
            if message_id not in self._ids:
                self._ids.append(message_id)
        self._deadline = now + self.delay

    def due(self, now: datetime) -> List[str]:
        if self._deadline is None or now < self._deadline or not self._ids:
            return []
        ids, self._ids, self._deadline = self._ids, [], None
        return ids

    def cancel(self) -> None:
        self._ids = []
        self._deadline = None
