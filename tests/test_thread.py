from datetime import datetime, timedelta, timezone

import pytest

from app.chat.schemas import Message
from app.chat.thread import MessageThread

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def msg(id, content="x", seconds=0, read=False, sender="u1"):
    return Message(
        id=id,
        conversation_id="c1",
        sender_id=sender,
        content=content,
        read=read,
        created_at=T0 + timedelta(seconds=seconds),
    )


def test_upsert_appends_new_and_replaces_existing_in_place():
    thread = MessageThread([msg("a"), msg("b")])

    assert thread.upsert(msg("c")) is True
    assert thread.upsert(msg("a", content="edited")) is False

    assert [m.id for m in thread] == ["a", "b", "c"]
    assert thread.get("a").content == "edited"


def test_append_refuses_duplicate_ids():
    thread = MessageThread([msg("a")])
    with pytest.raises(ValueError):
        thread.append(msg("a"))


def test_replace_keeps_position():
    thread = MessageThread([msg("a"), msg("tmp-1"), msg("b")])

    assert thread.replace("tmp-1", msg("real-1"))

    assert [m.id for m in thread] == ["a", "real-1", "b"]
    assert not thread.replace("tmp-missing", msg("real-2"))


def test_replace_collapses_an_echo_that_arrived_first():
    thread = MessageThread([msg("a"), msg("tmp-1"), msg("real-1")])

    thread.replace("tmp-1", msg("real-1"))

    assert [m.id for m in thread] == ["a", "real-1"]


def test_remove_and_membership():
    thread = MessageThread([msg("a"), msg("tmp-1")])

    removed = thread.remove("tmp-1")

    assert removed.id == "tmp-1"
    assert "tmp-1" not in thread
    assert thread.remove("tmp-1") is None
    assert len(thread) == 1


def test_read_flag_never_goes_back_to_false():
    thread = MessageThread([msg("a")])
    thread.mark_read("a")
    assert thread.get("a").read is True

    thread.upsert(msg("a", read=False))

    assert thread.get("a").read is True


def test_provisional_ids():
    assert msg("tmp-123").is_provisional
    assert not msg("3f1c").is_provisional
