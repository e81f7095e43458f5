from datetime import timedelta

from conftest import ME, PEER, START, make_message

from campus_connect.client.receipts import ReadReceiptDebouncer, read_update, unread_for, visible_status
from campus_connect.client.sync import MessageThread
from campus_connect.shared.schemas import MessageStatus, MessagingSettings


def test_unread_for_only_confirmed_incoming():
    thread = MessageThread(ME, PEER)
    thread.load(
        [
            make_message("in1", sender=PEER, receiver=ME),
            make_message("in2", sender=PEER, receiver=ME, is_read=True),
            make_message("out1"),
        ]
    )
    thread.add_temporary(START, content="pending")

    assert unread_for(thread.messages, ME) == ["in1"]


def test_read_update_respects_receipt_setting():
    assert read_update(MessagingSettings()) == {"is_read": True, "status": "seen"}
    assert read_update(MessagingSettings(read_receipts_enabled=False)) == {"is_read": True}


def test_visible_status():
    settings = MessagingSettings()
    private = MessagingSettings(read_receipts_enabled=False)
    seen = make_message("m1", status=MessageStatus.SEEN)

    assert visible_status(seen, ME, settings) is MessageStatus.SEEN
    assert visible_status(seen, ME, private) is MessageStatus.DELIVERED
    assert visible_status(make_message("m2", sender=PEER, receiver=ME), ME, settings) is None


def test_debouncer_batches_until_quiet():
    debouncer = ReadReceiptDebouncer()
    debouncer.schedule(["a"], START)
    debouncer.schedule(["b", "a"], START + timedelta(seconds=0.1))

    assert debouncer.due(START + timedelta(seconds=0.25)) == []
    assert debouncer.due(START + timedelta(seconds=0.3)) == ["a", "b"]
    assert debouncer.due(START + timedelta(seconds=1)) == []


def test_debouncer_ignores_empty_schedule():
    debouncer = ReadReceiptDebouncer()
    debouncer.schedule([], START)
    assert debouncer.due(START + timedelta(seconds=1)) == []


def test_debouncer_cancel():
    debouncer = ReadReceiptDebouncer()
    debouncer.schedule(["a"], START)
    debouncer.cancel()
    assert debouncer.due(START + timedelta(seconds=1)) == []
