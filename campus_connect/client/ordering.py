"""Ordering of the conversation list: pinned partition first, manual drag order within."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..shared.schemas import Conversation
from .errors import ReorderRejected


def _sort_key(conv: Conversation, me: str) -> Tuple[int, int, int, float]:
    pinned = conv.is_pinned_for(me)
    has_order = conv.display_order is not None
    rank = abs(conv.display_order) if has_order else 0
    return (0 if pinned else 1, 0 if has_order else 1, rank, -conv.last_message_at.timestamp())


def sort_conversations(conversations: Sequence[Conversation], me: str) -> List[Conversation]:
    return sorted(conversations, key=lambda c: _sort_key(c, me))


def move(conversations: Sequence[Conversation], source_id: str, target_index: int, me: str) -> List[Conversation]:
    """Move ``source_id`` to ``target_index`` within its own partition."""
    items = list(conversations)
    old_index = next((i for i, c in enumerate(items) if c.id == source_id), None)
    if old_index is None:
        raise ReorderRejected(f"Unknown conversation {source_id}")
    if not 0 <= target_index < len(items):
        raise ReorderRejected(f"No position {target_index}")
    source = items[old_index]
    if source.is_pinned_for(me) != items[target_index].is_pinned_for(me):
        raise ReorderRejected("Cannot move between pinned and unpinned conversations")
    if old_index == target_index:
        return items
    items.pop(old_index)
    items.insert(target_index, source)
    return items


def assign_display_order(conversations: Sequence[Conversation], me: str) -> List[Conversation]:
    """Pinned get -1, -2, ... in list order; unpinned get 0, 1, ..."""
    pinned_seen = 0
    unpinned_seen = 0
    result = []
    for conv in conversations:
        if conv.is_pinned_for(me):
            pinned_seen += 1
            order = -pinned_seen
        else:
            order = unpinned_seen
            unpinned_seen += 1
        result.append(conv.model_copy(update={"display_order": order}))
    return result


def order_rows(conversations: Sequence[Conversation]) -> List[Dict[str, Any]]:
    """Rows for the batch upsert that persists a new order."""
    return [
        {"id": c.id, "user1_id": c.user1_id, "user2_id": c.user2_id, "display_order": c.display_order}
        for c in conversations
    ]


class ConversationList:
    """The locally ordered conversation list of the signed-in user.

    Background refreshes are ignored while a reorder is being persisted.
    Each reorder bumps a generation counter; only the completion of the newest
    one lowers the guard, so a slow older save cannot reopen the window for a
    refresh to clobber a newer optimistic order.
    """

    def __init__(self, me: str):
        self.me = me
        self._items: List[Conversation] = []
        self._generation = 0
        self._saving: Optional[int] = None
        self._read_marks: Dict[str, datetime] = {}

    @property
    def items(self) -> Tuple[Conversation, ...]:
        return tuple(self._items)

    @property
    def saving_order(self) -> bool:
        return self._saving is not None

    def get(self, conversation_id: str) -> Optional[Conversation]:
        return next((c for c in self._items if c.id == conversation_id), None)

    def find_by_peer(self, peer_id: str) -> Optional[Conversation]:
        return next((c for c in self._items if c.peer_of(self.me) == peer_id), None)

    def replace(self, conversations: Sequence[Conversation], *, force: bool = False) -> bool:
        """Take a fresh list from the platform. Returns False when suppressed."""
        if self.saving_order and not force:
            return False
        self._items = sort_conversations([self._apply_read_mark(c) for c in conversations], self.me)
        return True

    def _apply_read_mark(self, conv: Conversation) -> Conversation:
        marked = self._read_marks.get(conv.id)
        if marked is not None and conv.unread_count and conv.last_message_at <= marked:
            return conv.model_copy(update={"unread_count": 0})
        return conv

    def _update(self, conversation_id: str, **values: Any) -> Optional[Conversation]:
        for i, conv in enumerate(self._items):
            if conv.id == conversation_id:
                self._items[i] = conv.model_copy(update=values)
                return self._items[i]
        return None

    def mark_read(self, conversation_id: str, now: datetime) -> Optional[Conversation]:
        self._read_marks[conversation_id] = now
        return self._update(conversation_id, unread_count=0)

    def mark_unread(self, conversation_id: str) -> Optional[Conversation]:
        self._read_marks.pop(conversation_id, None)
        conv = self.get(conversation_id)
        if conv is None:
            return None
        return self._update(conversation_id, unread_count=conv.unread_count + 1)

    def set_flag(self, conversation_id: str, column: str, value: Any) -> Optional[Conversation]:
        updated = self._update(conversation_id, **{column: value})
        self._items = sort_conversations(self._items, self.me)
        return updated

    def reorder(self, source_id: str, target_index: int) -> Tuple[int, List[Dict[str, Any]]]:
        """Apply a drag locally and return (save token, rows to persist).

        Raises ReorderRejected, leaving the list untouched, for an unknown id, a
        target outside the list or a drop into the other partition.
        """
        moved = move(self._items, source_id, target_index, self.me)
        self._items = assign_display_order(moved, self.me)
        self._generation += 1
        self._saving = self._generation
        return self._generation, order_rows(self._items)

    def finish_save(self, token: int) -> bool:
        """Lower the save guard if ``token`` is the newest reorder."""
        if self._saving == token:
            self._saving = None
            return True
        return False
