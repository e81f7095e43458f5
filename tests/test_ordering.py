from datetime import timedelta

import pytest
from conftest import ME, START, make_conversation

from campus_connect.client.errors import ReorderRejected
from campus_connect.client.ordering import ConversationList, assign_display_order, move, sort_conversations


def _pinned(conv_id, peer, **extra):
    conv = make_conversation(conv_id, peer, **extra)
    return conv.model_copy(update={conv.pin_column(ME): True})


def _ids(conversations):
    return [c.id for c in conversations]


def test_sort_puts_pinned_first_then_manual_order_then_recency():
    convs = [
        make_conversation("recent", "p1", at=START + timedelta(hours=2)),
        make_conversation("ordered1", "p2", display_order=1),
        make_conversation("ordered0", "p3", display_order=0),
        make_conversation("old", "p4", at=START - timedelta(hours=2)),
        _pinned("pin2", "p5", display_order=-2),
        _pinned("pin1", "p6", display_order=-1),
    ]

    assert _ids(sort_conversations(convs, ME)) == ["pin1", "pin2", "ordered0", "ordered1", "recent", "old"]


def test_move_within_partition():
    convs = [make_conversation(c, "p" + c) for c in "abc"]
    assert _ids(move(convs, "c", 0, ME)) == ["c", "a", "b"]


def test_move_to_same_index_is_noop():
    convs = [make_conversation(c, "p" + c) for c in "abc"]
    assert _ids(move(convs, "b", 1, ME)) == ["a", "b", "c"]


def test_move_across_partition_rejected():
    convs = [_pinned("a", "pa"), make_conversation("b", "pb")]
    with pytest.raises(ReorderRejected):
        move(convs, "b", 0, ME)


def test_move_to_missing_position_or_conversation_rejected():
    convs = [make_conversation("a", "pa"), make_conversation("b", "pb")]
    with pytest.raises(ReorderRejected):
        move(convs, "a", 5, ME)
    with pytest.raises(ReorderRejected):
        move(convs, "a", -1, ME)
    with pytest.raises(ReorderRejected):
        move(convs, "zz", 0, ME)


def test_assign_display_order_per_partition():
    convs = [_pinned("a", "pa"), _pinned("b", "pb"), make_conversation("c", "pc"), make_conversation("d", "pd")]
    ordered = assign_display_order(convs, ME)
    assert [c.display_order for c in ordered] == [-1, -2, 0, 1]


def test_reorder_assigns_orders_and_raises_guard():
    convs = ConversationList(ME)
    convs.replace([make_conversation(c, "p" + c, at=START - timedelta(minutes=i)) for i, c in enumerate("abc")])

    token, rows = convs.reorder("c", 0)

    assert _ids(convs.items) == ["c", "a", "b"]
    assert [r["display_order"] for r in rows] == [0, 1, 2]
    assert set(rows[0]) == {"id", "user1_id", "user2_id", "display_order"}
    assert convs.saving_order
    assert not convs.replace([make_conversation("a", "pa")])
    assert _ids(convs.items) == ["c", "a", "b"]
    assert convs.finish_save(token)
    assert not convs.saving_order


def test_rejected_reorder_leaves_list_untouched():
    convs = ConversationList(ME)
    convs.replace([_pinned("a", "pa", display_order=-1), make_conversation("b", "pb")])
    before = convs.items

    with pytest.raises(ReorderRejected):
        convs.reorder("b", 0)

    assert convs.items == before
    assert not convs.saving_order


def test_older_save_cannot_lower_newer_guard():
    convs = ConversationList(ME)
    convs.replace([make_conversation(c, "p" + c) for c in "abc"])
    first, _ = convs.reorder("c", 0)
    second, _ = convs.reorder("b", 0)

    assert not convs.finish_save(first)
    assert convs.saving_order
    assert convs.finish_save(second)
    assert not convs.saving_order


def test_read_mark_stops_stale_unread_count():
    convs = ConversationList(ME)
    convs.replace([make_conversation("a", "pa", unread_count=3)])
    convs.mark_read("a", START + timedelta(seconds=1))

    convs.replace([make_conversation("a", "pa", unread_count=3)])
    assert convs.get("a").unread_count == 0

    newer = make_conversation("a", "pa", at=START + timedelta(seconds=5), unread_count=1)
    convs.replace([newer])
    assert convs.get("a").unread_count == 1


def test_mark_unread_increments_and_clears_read_mark():
    convs = ConversationList(ME)
    convs.replace([make_conversation("a", "pa")])
    convs.mark_read("a", START + timedelta(seconds=1))

    convs.mark_unread("a")
    convs.replace([make_conversation("a", "pa", unread_count=1)])

    assert convs.get("a").unread_count == 1
