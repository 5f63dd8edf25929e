"""Message pipeline against the in-memory stores."""

import os
from dataclasses import replace
from datetime import datetime, timezone

import pytest

from constants import EVENT_MESSAGE_DELETED, EVENT_MESSAGE_UPDATED, EVENT_RECEIVE_MESSAGE
from errors import ErrorKind, Result
from memory_store import MemoryMessageStore
from messages import UNKNOWN_SENDER, MessagePipeline
from models import Message, MessageBody

from conftest import RecordingBroadcaster


@pytest.fixture
def room(authority, new_user):
    """A private group with an admin owner and one active member."""
    owner, bob = new_user("owner"), new_user("bob")
    group = authority.create_group("room", False, owner).value
    authority.invite(group.id, owner, bob)
    authority.accept_invitation(group.id, bob)
    return group.id, owner, bob


def test_send_persists_and_broadcasts(pipeline, broadcaster, room):
    gid, owner, _ = room

    result = pipeline.send_message(gid, owner, "  hello  ")

    assert result.ok
    view = result.value
    assert view.content == "hello"
    assert view.sender_username == "owner"
    assert pipeline.messages.get_by_id(view.id) is not None
    assert broadcaster.calls == [(gid, EVENT_RECEIVE_MESSAGE, view.to_wire())]


def test_send_requires_active_membership(pipeline, broadcaster, authority, new_user, room):
    gid, owner, _ = room
    carol = new_user("carol")
    authority.apply(gid, carol)

    result = pipeline.send_message(gid, carol, "let me in")

    assert result.error == ErrorKind.UNAUTHORIZED
    assert broadcaster.calls == []


@pytest.mark.parametrize("content", [None, "", "   "])
def test_send_rejects_empty_body(pipeline, room, content):
    gid, owner, _ = room
    assert pipeline.send_message(gid, owner, content).error == ErrorKind.INVALID_INPUT


def test_send_rejects_overlong_body(users, authority, room):
    gid, owner, _ = room
    short = MessagePipeline(MemoryMessageStore(), users, authority, max_message_chars=5)
    assert short.send_message(gid, owner, "123456").error == ErrorKind.INVALID_INPUT
    assert short.send_message(gid, owner, "12345").ok


def test_broadcast_failure_keeps_stored_message(users, authority, room):
    gid, owner, _ = room
    failing = RecordingBroadcaster(fail=True)
    p = MessagePipeline(MemoryMessageStore(), users, authority, broadcaster=failing)

    result = p.send_message(gid, owner, "still saved")

    assert result.ok
    assert len(failing.calls) == 1
    assert p.messages.get_by_id(result.value.id).content == "still saved"


def test_get_messages_newest_first_and_paged(pipeline, room):
    gid, owner, bob = room
    sent = [pipeline.send_message(gid, owner if i % 2 else bob, f"msg {i}").value.id for i in range(5)]

    page1 = pipeline.get_messages(gid, 1, 2).value
    page2 = pipeline.get_messages(gid, 2, 2).value
    page3 = pipeline.get_messages(gid, 3, 2).value
    page4 = pipeline.get_messages(gid, 4, 2).value

    assert [m.id for m in page1] == [sent[4], sent[3]]
    assert [m.id for m in page2] == [sent[2], sent[1]]
    assert [m.id for m in page3] == [sent[0]]
    assert page4 == []


def test_get_messages_search_matches_any_term(pipeline, room):
    gid, owner, _ = room
    pipeline.send_message(gid, owner, "Lunch at noon")
    pipeline.send_message(gid, owner, "deploy is done")
    pipeline.send_message(gid, owner, "unrelated")

    hits = pipeline.get_messages(gid, 1, 10, search_text="LUNCH deploy").value

    assert sorted(m.content for m in hits) == ["Lunch at noon", "deploy is done"]


def test_get_messages_resolves_sender_names(pipeline, users, room):
    gid, owner, bob = room
    pipeline.send_message(gid, owner, "a")
    pipeline.send_message(gid, bob, "b")
    # a row whose author no longer resolves
    pipeline.messages.insert(Message.create(gid, "ghost-id", MessageBody("c")))

    names = {m.content: m.sender_username for m in pipeline.get_messages(gid, 1, 10).value}

    assert names == {"a": "owner", "b": "bob", "c": UNKNOWN_SENDER}


@pytest.mark.parametrize("page,size", [(0, 10), (1, 0), (1, 51), ("x", 10)])
def test_get_messages_rejects_bad_paging(pipeline, room, page, size):
    gid, _, _ = room
    assert pipeline.get_messages(gid, page, size).error == ErrorKind.INVALID_INPUT


def test_get_messages_checks_requester(pipeline, new_user, room):
    gid, owner, _ = room
    outsider = new_user("outsider")
    pipeline.send_message(gid, owner, "secret")

    assert pipeline.get_messages(gid, 1, 10, requester_id=outsider).error == ErrorKind.FORBIDDEN
    assert len(pipeline.get_messages(gid, 1, 10, requester_id=owner).value) == 1


def test_update_by_owner(pipeline, broadcaster, room):
    gid, owner, _ = room
    mid = pipeline.send_message(gid, owner, "frist").value.id

    result = pipeline.update_message(mid, owner, "first")

    assert result.ok
    assert result.value.content == "first"
    assert result.value.last_edited_at is not None
    assert broadcaster.calls[-1] == (gid, EVENT_MESSAGE_UPDATED, result.value.to_wire())


def test_update_by_other_user_is_not_found(pipeline, room):
    gid, owner, bob = room
    mid = pipeline.send_message(gid, owner, "mine").value.id

    assert pipeline.update_message(mid, bob, "yours now").error == ErrorKind.NOT_FOUND
    assert pipeline.update_message("missing", owner, "x").error == ErrorKind.NOT_FOUND
    assert pipeline.messages.get_by_id(mid).content == "mine"


def test_update_rejects_empty_text(pipeline, room):
    gid, owner, _ = room
    mid = pipeline.send_message(gid, owner, "text").value.id
    assert pipeline.update_message(mid, owner, "  ").error == ErrorKind.INVALID_INPUT


def test_delete_is_soft(pipeline, broadcaster, room):
    gid, owner, bob = room
    mid = pipeline.send_message(gid, owner, "oops").value.id

    assert not pipeline.delete_message(mid, bob)
    assert pipeline.delete_message(mid, owner).ok
    assert broadcaster.calls[-1] == (gid, EVENT_MESSAGE_DELETED, mid)

    listed = pipeline.get_messages(gid, 1, 10).value
    assert [(m.id, m.is_deleted) for m in listed] == [(mid, True)]


def test_upload_stores_blob_and_sends(pipeline, broadcaster, room):
    gid, owner, _ = room

    result = pipeline.upload_file(gid, owner, b"%PDF-1.4", "report.pdf")

    assert result.ok
    view = result.value
    assert view.content == "[File]: report.pdf"
    assert view.file_url.startswith("/uploads/") and view.file_url.endswith(".pdf")
    assert view.mime_type == "application/pdf"
    assert pipeline.blobs.get(view.file_url) == b"%PDF-1.4"
    assert broadcaster.calls[-1][1] == EVENT_RECEIVE_MESSAGE


def test_upload_keeps_caption(pipeline, room):
    gid, owner, _ = room
    view = pipeline.upload_file(gid, owner, b"png", "cat.png", content="look").value
    assert view.content == "look"
    assert view.mime_type == "image/png"


def test_upload_checks_membership_and_size(pipeline, new_user, room):
    gid, owner, _ = room
    outsider = new_user("outsider")

    assert pipeline.upload_file(gid, outsider, b"x", "a.txt").error == ErrorKind.UNAUTHORIZED
    assert pipeline.upload_file(gid, owner, b"", "a.txt").error == ErrorKind.INVALID_INPUT
    assert pipeline.upload_file(gid, owner, b"x" * 2048, "a.txt").error == ErrorKind.INVALID_INPUT


def test_upload_with_overlong_caption_writes_nothing(pipeline, broadcaster, room):
    gid, owner, _ = room
    caption = "x" * (pipeline.max_message_chars + 1)

    result = pipeline.upload_file(gid, owner, b"abc", "a.txt", content=caption)

    assert result.error == ErrorKind.INVALID_INPUT
    assert os.listdir(pipeline.blobs.upload_root) == []
    assert broadcaster.calls == []


def test_upload_removes_blob_when_send_is_refused(pipeline, room, monkeypatch):
    gid, owner, _ = room
    # membership lost between the upload checks and the send
    monkeypatch.setattr(
        pipeline, "send_message", lambda *a, **kw: Result.failure(ErrorKind.UNAUTHORIZED, "gone")
    )

    result = pipeline.upload_file(gid, owner, b"abc", "a.txt")

    assert result.error == ErrorKind.UNAUTHORIZED
    assert os.listdir(pipeline.blobs.upload_root) == []


def test_download_names_file_after_timestamp(pipeline, room):
    gid, owner, bob = room
    view = pipeline.upload_file(gid, owner, b"hello", "notes.txt").value
    stored = pipeline.messages.get_by_id(view.id)
    pinned = replace(stored, timestamp=datetime(2024, 3, 9, 14, 5, 7, tzinfo=timezone.utc))
    pipeline.messages.replace(view.id, pinned)

    blob = pipeline.download_file(view.id, bob).value

    assert blob.data == b"hello"
    assert blob.file_name == "CRTalk file - 2024-03-09 14-05-07.txt"
    assert blob.content_type == "text/plain"


def test_download_error_kinds(pipeline, new_user, room):
    gid, owner, _ = room
    outsider = new_user("outsider")
    text_only = pipeline.send_message(gid, owner, "no file").value.id
    with_file = pipeline.upload_file(gid, owner, b"data", "a.bin").value.id

    assert pipeline.download_file("missing", owner).error == ErrorKind.NOT_FOUND
    assert pipeline.download_file(text_only, owner).error == ErrorKind.NOT_FOUND
    assert pipeline.download_file(with_file, outsider).error == ErrorKind.FORBIDDEN
