import asyncio
from datetime import timedelta

import pytest

from app.domain.chat.attachments import UploadError
from app.domain.chat.delivery import DebouncedTasks
from app.domain.chat.models import MessageType, TickState
from app.domain.chat.room import DRAFT_EDIT, DRAFT_REPLY, ChatRoom
from app.domain.chat.service import ChatService
from app.domain.common.timestamps import now_utc
from app.infra.store import SERVER_TIMESTAMP, Query, StoreError


class RecordingService(ChatService):
    def __init__(self, store):
        super().__init__(store)
        self.calls = []

    async def mark_delivered(self, chat_id, message_ids, user_id, *, source="recipient"):
        self.calls.append(("delivered", source, user_id, tuple(message_ids)))
        return await super().mark_delivered(chat_id, message_ids, user_id, source=source)

    async def mark_seen(self, chat_id, message_ids, user_id, *, reset_unseen=True):
        self.calls.append(("seen", user_id, tuple(message_ids)))
        return await super().mark_seen(chat_id, message_ids, user_id, reset_unseen=reset_unseen)


class FakeUploader:
    def __init__(self, fail=False):
        self.fail = fail
        self.uploads = []

    async def upload(self, blob, kind):
        if self.fail:
            raise UploadError("media host unavailable")
        self.uploads.append((blob, kind))
        return f"https://media.example/{len(self.uploads)}.{kind}"


@pytest.fixture
def service(store):
    return RecordingService(store)


async def message_docs(store, chat_id):
    return [snap.to_dict() for snap in await store.query(Query(f"chats/{chat_id}/messages", order_by="createdAt"))]


@pytest.mark.asyncio
async def test_opening_chat_marks_delivered_then_seen_and_resets_unseen(service, store, poll):
    chat = await service.ensure_chat("bob", "alice")
    for text in ("one", "two", "three"):
        await service.send_message(chat.id, "bob", text)
    assert (await service.get_chat(chat.id)).unseen_for("alice") == 3

    room = ChatRoom(service, chat.id, "alice")
    room.open()

    async def all_seen():
        docs = await message_docs(store, chat.id)
        return len(docs) == 3 and all("alice" in doc.get("seenBy", []) for doc in docs)

    await poll(all_seen)
    await poll(lambda: _unseen(service, chat.id, "alice"))
    docs = await message_docs(store, chat.id)
    assert all("alice" in doc["deliveredTo"] for doc in docs)

    kinds = [call[0] for call in service.calls]
    assert kinds.index("delivered") < kinds.index("seen")
    assert service.calls[0] == ("delivered", "recipient", "alice", tuple(room.messages[i].id for i in range(3)))
    room.close()
    assert store.listener_count == 0


async def _unseen(service, chat_id, user_id):
    return (await service.get_chat(chat_id)).unseen_for(user_id) == 0


@pytest.mark.asyncio
async def test_closing_before_debounce_cancels_seen_marking(service, store, poll, fast_settings):
    fast_settings.seen_debounce_seconds = 0.3
    chat = await service.ensure_chat("bob", "alice")
    await service.send_message(chat.id, "bob", "ping")

    room = ChatRoom(service, chat.id, "alice")
    room.open()

    async def delivered():
        docs = await message_docs(store, chat.id)
        return docs and "alice" in docs[0]["deliveredTo"]

    await poll(delivered)
    room.close()
    await asyncio.sleep(0.4)

    docs = await message_docs(store, chat.id)
    assert "seenBy" not in docs[0]
    assert (await service.get_chat(chat.id)).unseen_for("alice") == 1
    assert not [call for call in service.calls if call[0] == "seen"]


@pytest.mark.asyncio
async def test_phantom_unread_count_is_reset_on_open(service, store, poll):
    chat = await service.ensure_chat("bob", "alice")
    await store.update(f"chats/{chat.id}", {"unseenCounts.alice": 4})

    room = ChatRoom(service, chat.id, "alice")
    room.open()
    await poll(lambda: _unseen(service, chat.id, "alice"))
    room.close()


@pytest.mark.asyncio
async def test_missing_chat_navigates_away_and_releases_listeners(service, store, poll):
    left = []
    room = ChatRoom(service, "does-not-exist", "alice", on_missing=left.append)
    room.open()
    await poll(lambda: left)
    assert left == ["does-not-exist"]
    assert room.state == "missing"
    assert store.listener_count == 0


@pytest.mark.asyncio
async def test_chat_deleted_while_open_triggers_on_missing(service, store, poll):
    chat = await service.ensure_chat("alice", "bob")
    left = []
    room = ChatRoom(service, chat.id, "alice", on_missing=left.append)
    room.open()
    await poll(lambda: room.chat is not None)
    assert await room.delete_chat() is True
    await poll(lambda: left)
    assert store.listener_count == 0


@pytest.mark.asyncio
async def test_sender_marks_delivered_when_counterpart_online(service, store, poll):
    chat = await service.ensure_chat("alice", "bob")
    await store.set("profiles/bob", {"online": True, "lastSeen": SERVER_TIMESTAMP})

    room = ChatRoom(service, chat.id, "alice")
    room.open()
    await poll(lambda: room.online)
    message_id = await room.send("are you there?")
    assert message_id is not None

    async def delivered_to_bob():
        snap = await store.get(f"chats/{chat.id}/messages/{message_id}")
        return "bob" in snap.get("deliveredTo", [])

    await poll(delivered_to_bob)
    await poll(lambda: room.find_message(message_id) and room.tick(room.find_message(message_id)) is TickState.DELIVERED)
    assert any(call[:2] == ("delivered", "sender") for call in service.calls)
    room.close()


@pytest.mark.asyncio
async def test_offline_counterpart_gets_no_sender_side_mark(service, store, flush, fast_settings):
    chat = await service.ensure_chat("alice", "bob")
    await store.set("profiles/bob", {"online": False, "lastSeen": now_utc() - timedelta(hours=2)})

    room = ChatRoom(service, chat.id, "alice")
    room.open()
    message_id = await room.send("hello?")
    await asyncio.sleep(fast_settings.sender_delivery_delay_seconds * 3)
    await flush(store)

    snap = await store.get(f"chats/{chat.id}/messages/{message_id}")
    assert snap.get("deliveredTo") == ["alice"]
    assert room.tick(room.find_message(message_id)) is TickState.SENT
    room.close()


@pytest.mark.asyncio
async def test_single_active_draft_and_edit_flow(service, store, poll):
    chat = await service.ensure_chat("alice", "bob")
    theirs = await service.send_message(chat.id, "bob", "question")
    mine = await service.send_message(chat.id, "alice", "answr")

    room = ChatRoom(service, chat.id, "alice")
    room.open()
    await poll(lambda: len(room.messages) == 2)

    assert room.start_reply(theirs)
    assert room.draft.mode == DRAFT_REPLY
    assert room.start_edit(mine)
    assert room.draft.mode == DRAFT_EDIT
    assert room.draft.message.id == mine

    assert await room.send("answer") == mine
    assert room.draft is None
    edited = await service.get_message(chat.id, mine)
    assert edited.text == "answer" and edited.is_edited

    assert room.start_edit(theirs) is False
    assert room.draft is None
    assert [(notice.level, notice.text) for notice in room.notices()] == [
        ("info", "Message edited successfully"),
        ("error", "This message can no longer be edited."),
    ]

    assert room.start_reply(theirs)
    reply_id = await room.send("see above")
    reply = await service.get_message(chat.id, reply_id)
    assert reply.reply_to.id == theirs
    assert reply.reply_to.text == "question"
    assert room.draft is None
    room.close()


@pytest.mark.asyncio
async def test_failed_send_posts_notice_and_keeps_draft(service, store, poll, monkeypatch):
    chat = await service.ensure_chat("alice", "bob")
    theirs = await service.send_message(chat.id, "bob", "hello")
    room = ChatRoom(service, chat.id, "alice")
    room.open()
    await poll(lambda: room.messages)
    room.start_reply(theirs)

    async def broken_send(*args, **kwargs):
        raise StoreError("network down")

    monkeypatch.setattr(service, "send_message", broken_send)
    assert await room.send("hi back") is None
    assert room.draft is not None and room.draft.message.id == theirs

    notices = room.notices()
    assert [notice.level for notice in notices] == ["error"]
    assert notices[0].text == "Message not sent. Please try again."
    assert room.notices(now=notices[0].expires_at + timedelta(seconds=0.1)) == []
    room.close()


@pytest.mark.asyncio
async def test_rejected_delete_of_someone_elses_message(service, store, poll):
    chat = await service.ensure_chat("alice", "bob")
    theirs = await service.send_message(chat.id, "bob", "mine, not yours")
    room = ChatRoom(service, chat.id, "alice")
    room.open()
    assert await room.delete_message(theirs) is False
    assert room.notices()[0].text == "Only the sender can change this message."
    assert (await service.get_message(chat.id, theirs)).is_deleted is False
    room.close()


@pytest.mark.asyncio
async def test_attachment_is_uploaded_before_message_is_created(service, store, poll):
    chat = await service.ensure_chat("alice", "bob")
    room = ChatRoom(service, chat.id, "alice")
    room.open()
    await poll(lambda: room.chat is not None)

    uploader = FakeUploader()
    message_id = await room.send_attachment(uploader, b"\x89PNG", "image/png")
    message = await service.get_message(chat.id, message_id)
    assert uploader.uploads == [(b"\x89PNG", "image")]
    assert message.type is MessageType.IMAGE
    assert message.file_url == "https://media.example/1.image"
    assert (await service.get_chat(chat.id)).last_message == "Image"

    failing = FakeUploader(fail=True)
    assert await room.send_attachment(failing, b"voice", "voice") is None
    assert await room.send_attachment(uploader, b"exe", "x-unknown/kind") is None
    assert len(await message_docs(store, chat.id)) == 1
    assert len(room.notices()) == 2
    room.close()


@pytest.mark.asyncio
async def test_moderation_actions_through_room(service, store, poll):
    chat = await service.ensure_chat("alice", "bob")
    room = ChatRoom(service, chat.id, "alice")
    room.open()
    await poll(lambda: room.chat is not None)

    assert await room.block()
    await poll(lambda: room.chat.is_blocked_by("alice"))
    assert room.can_send is False
    assert await room.send("blocked") is None
    assert await message_docs(store, chat.id) == []
    assert [(notice.level, notice.text) for notice in room.notices()] == [("info", "User blocked")]

    assert await room.unblock()
    assert await room.mute()
    assert await room.toggle_favorite() is True
    await poll(lambda: room.chat.is_muted_by("alice") and room.chat.is_favorite and room.can_send)
    assert await room.unmute()
    await poll(lambda: not room.chat.is_muted_by("alice"))

    mine = await room.send("hello")
    assert await room.delete_message(mine)
    assert [notice.text for notice in room.notices() if notice.level == "info"] == [
        "User blocked",
        "User unblocked",
        "Notifications muted",
        "Notifications unmuted",
        "Message deleted successfully",
    ]
    assert [notice for notice in room.notices() if notice.level != "info"] == []
    room.close()


@pytest.mark.asyncio
async def test_two_viewers_on_one_chat_keep_separate_seen_tasks(service, store, poll, fast_settings):
    fast_settings.seen_debounce_seconds = 0.2
    chat = await service.ensure_chat("bob", "alice")
    await service.send_message(chat.id, "bob", "ping")

    scheduler = DebouncedTasks()
    alice_room = ChatRoom(service, chat.id, "alice", scheduler=scheduler)
    bob_room = ChatRoom(service, chat.id, "bob", scheduler=scheduler)
    assert alice_room.seen_key != bob_room.seen_key
    alice_room.open()
    bob_room.open()

    async def delivered():
        docs = await message_docs(store, chat.id)
        return docs and "alice" in docs[0]["deliveredTo"]

    await poll(delivered)
    await poll(lambda: scheduler.pending(alice_room.seen_key))
    bob_room.close()
    assert scheduler.pending(alice_room.seen_key)

    async def seen():
        docs = await message_docs(store, chat.id)
        return "alice" in docs[0].get("seenBy", [])

    await poll(seen)
    alice_room.close()
    await scheduler.aclose()


@pytest.mark.asyncio
async def test_clear_messages_hides_earlier_history_for_viewer_only(service, store, poll):
    chat = await service.ensure_chat("alice", "bob")
    await service.send_message(chat.id, "bob", "old news")
    await asyncio.sleep(0.002)

    alice_room = ChatRoom(service, chat.id, "alice")
    bob_room = ChatRoom(service, chat.id, "bob")
    alice_room.open()
    bob_room.open()
    await poll(lambda: alice_room.messages and bob_room.messages)

    assert await alice_room.clear_messages()
    assert alice_room.notices()[-1].text == "Messages cleared"
    await poll(lambda: alice_room.messages == [])
    await asyncio.sleep(0.002)

    await service.send_message(chat.id, "bob", "fresh")
    await poll(lambda: [m.text for m in alice_room.messages] == ["fresh"])
    await poll(lambda: [m.text for m in bob_room.messages] == ["old news", "fresh"])
    assert len(await message_docs(store, chat.id)) == 2
    alice_room.close()
    bob_room.close()
