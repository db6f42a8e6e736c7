from dataclasses import replace
from datetime import datetime, timedelta, timezone

from clstr.domain.messaging.models import Message
from clstr.domain.messaging.realtime import MessageBuffer

BASE = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)


def _message(message_id, offset, *, read=False):
    at = BASE + timedelta(seconds=offset)
    return Message(
        id=message_id,
        sender_id="a",
        receiver_id="b",
        content=f"body-{message_id}",
        read=read,
        created_at=at,
        updated_at=at,
    )


def test_upsert_collapses_duplicates_and_orders_chronologically():
    buffer = MessageBuffer()
    late = _message("02", 10)
    early = _message("01", 5)

    assert buffer.upsert(late) is True
    assert buffer.upsert(early) is True
    assert buffer.upsert(late) is False

    assert [m.id for m in buffer.messages()] == ["01", "02"]
    assert len(buffer) == 2
    assert "01" in buffer


def test_read_flip_replaces_entry_but_stale_copy_does_not():
    buffer = MessageBuffer()
    original = _message("01", 0)
    buffer.upsert(original)
    read = replace(original, read=True, updated_at=original.updated_at + timedelta(seconds=3))

    assert buffer.upsert(read) is True
    assert buffer.upsert(original) is False
    assert buffer.messages()[0].read is True


def test_optimistic_send_confirm_and_rollback():
    buffer = MessageBuffer()
    kept = buffer.add_pending("a", "b", "hello")
    dropped = buffer.add_pending("a", "b", "oops")
    assert buffer.pending_count == 2
    assert len(buffer.messages()) == 2

    stored = _message("01", 0)
    buffer.confirm(kept, stored)
    rolled_back = buffer.rollback(dropped)

    assert rolled_back.content == "oops"
    assert buffer.pending_count == 0
    assert [m.id for m in buffer.messages()] == ["01"]
    assert buffer.rollback(dropped) is None
