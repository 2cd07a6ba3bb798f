import asyncio

import pytest

from app.domain.chat.models import MessageType, ReplySnapshot
from app.domain.chat.service import ChatActionError, ChatService
from app.infra.store import Query


@pytest.fixture
def service(store):
    return ChatService(store)


async def messages_of(store, chat_id):
    return await store.query(Query(f"chats/{chat_id}/messages", order_by="createdAt"))


@pytest.mark.asyncio
async def test_ensure_chat_creates_once_and_reuses_canonical(service, store):
    chat = await service.ensure_chat("alice", "bob", title="Plumbing job")
    assert chat.participants == ("alice", "bob")
    assert chat.unseen_counts == {"alice": 0, "bob": 0}
    assert chat.chat_title == "Plumbing job"

    again = await service.ensure_chat("alice", "bob")
    assert again.id == chat.id

    with pytest.raises(ChatActionError):
        await service.ensure_chat("alice", "alice")


@pytest.mark.asyncio
async def test_send_initialises_delivery_and_bumps_counterpart(service, store):
    chat = await service.ensure_chat("alice", "bob")
    message_id = await service.send_message(chat.id, "alice", "hello")

    snap = await store.get(f"chats/{chat.id}/messages/{message_id}")
    assert snap.get("deliveredTo") == ["alice"]
    assert "seenBy" not in snap.to_dict()
    assert snap.get("replyTo") is None

    updated = await service.get_chat(chat.id)
    assert updated.last_message == "hello"
    assert updated.last_sender_id == "alice"
    assert updated.unseen_for("bob") == 1
    assert updated.unseen_for("alice") == 0
    assert updated.updated_ms > 0


@pytest.mark.asyncio
async def test_concurrent_sends_increment_exactly_per_chat(service, store):
    with_bob = await service.ensure_chat("alice", "bob")
    with_carol = await service.ensure_chat("alice", "carol")

    await asyncio.gather(
        *(service.send_message(with_bob.id, "alice", f"b{i}") for i in range(7)),
        *(service.send_message(with_carol.id, "alice", f"c{i}") for i in range(4)),
        *(service.send_message(with_bob.id, "bob", f"reply{i}") for i in range(2)),
    )

    bob_chat = await service.get_chat(with_bob.id)
    carol_chat = await service.get_chat(with_carol.id)
    assert bob_chat.unseen_for("bob") == 7
    assert bob_chat.unseen_for("alice") == 2
    assert carol_chat.unseen_for("carol") == 4
    assert len(await messages_of(store, with_bob.id)) == 9


@pytest.mark.asyncio
async def test_blocked_sender_send_is_a_silent_noop(service, store):
    chat = await service.ensure_chat("alice", "bob")
    await service.block(chat.id, "alice")

    blocked = await service.get_chat(chat.id)
    assert "alice" in blocked.blocked_by
    assert blocked.recipient_blocked is True

    assert await service.send_message(chat.id, "bob", "let me in") is None
    assert await service.send_message(chat.id, "alice", "bye") is None
    assert await messages_of(store, chat.id) == []

    await service.unblock(chat.id, "alice")
    unblocked = await service.get_chat(chat.id)
    assert unblocked.blocked_by == frozenset()
    assert unblocked.recipient_blocked is False
    assert await service.send_message(chat.id, "bob", "thanks") is not None


@pytest.mark.asyncio
async def test_reply_snapshot_is_not_resynchronised(service, store):
    chat = await service.ensure_chat("alice", "bob")
    original_id = await service.send_message(chat.id, "bob", "original")
    original = await service.get_message(chat.id, original_id)

    reply_id = await service.send_message(chat.id, "alice", "answer", reply_to=original.quote())
    await service.edit_message(chat.id, original_id, "bob", "changed")

    reply = await service.get_message(chat.id, reply_id)
    assert reply.reply_to == ReplySnapshot(id=original_id, text="original", type=MessageType.TEXT, sender_id="bob")


@pytest.mark.asyncio
async def test_edit_rules(service, store):
    chat = await service.ensure_chat("alice", "bob")
    text_id = await service.send_message(chat.id, "alice", "typo")
    image_id = await service.send_message(chat.id, "alice", message_type=MessageType.IMAGE, file_url="https://cdn/x.png")

    await service.edit_message(chat.id, text_id, "alice", "fixed")
    edited = await service.get_message(chat.id, text_id)
    assert edited.text == "fixed"
    assert edited.is_edited is True
    assert edited.updated_at is not None

    with pytest.raises(ChatActionError) as not_sender:
        await service.edit_message(chat.id, text_id, "bob", "hijack")
    assert not_sender.value.code == "not_sender"

    with pytest.raises(ChatActionError) as not_text:
        await service.edit_message(chat.id, image_id, "alice", "caption")
    assert not_text.value.code == "not_editable"

    await service.delete_message(chat.id, text_id, "alice")
    with pytest.raises(ChatActionError) as deleted:
        await service.edit_message(chat.id, text_id, "alice", "again")
    assert deleted.value.code == "not_editable"


@pytest.mark.asyncio
async def test_soft_delete_keeps_position_and_is_idempotent(service, store):
    chat = await service.ensure_chat("alice", "bob")
    ids = []
    for text in ("one", "two", "three"):
        ids.append(await service.send_message(chat.id, "alice", text))
        await asyncio.sleep(0.002)
    voice_id = await service.send_message(chat.id, "alice", message_type=MessageType.AUDIO, file_url="https://cdn/v.ogg")
    ids.append(voice_id)

    await service.delete_message(chat.id, ids[1], "alice")
    await service.delete_message(chat.id, voice_id, "alice")
    await service.delete_message(chat.id, ids[1], "alice")

    ordered = await messages_of(store, chat.id)
    assert [snap.id for snap in ordered] == ids
    tombstone = ordered[1].to_dict()
    assert tombstone["isDeleted"] is True
    assert tombstone["text"] == ""
    assert tombstone["fileUrl"] == ""
    assert tombstone["type"] == "text"
    voice = ordered[3].to_dict()
    assert voice["type"] == "text" and voice["fileUrl"] == ""

    with pytest.raises(ChatActionError):
        await service.delete_message(chat.id, ids[0], "bob")


@pytest.mark.asyncio
async def test_media_messages_need_url_and_use_kind_labels(service, store):
    chat = await service.ensure_chat("alice", "bob")
    with pytest.raises(ChatActionError) as missing_url:
        await service.send_message(chat.id, "alice", message_type=MessageType.IMAGE)
    assert missing_url.value.code == "invalid_message"

    await service.send_message(chat.id, "alice", message_type=MessageType.AUDIO, file_url="https://cdn/v.ogg")
    assert (await service.get_chat(chat.id)).last_message == "Voice message"
    await service.send_message(chat.id, "alice", message_type=MessageType.IMAGE, file_url="https://cdn/i.png")
    assert (await service.get_chat(chat.id)).last_message == "Image"

    with pytest.raises(ChatActionError):
        await service.send_message(chat.id, "alice", "   ")


@pytest.mark.asyncio
async def test_mute_favorite_and_hard_delete(service, store):
    chat = await service.ensure_chat("alice", "bob")
    await service.send_message(chat.id, "alice", "hi")

    await service.mute(chat.id, "alice")
    await service.mute(chat.id, "alice")
    assert (await service.get_chat(chat.id)).muted_by == frozenset({"alice"})
    await service.unmute(chat.id, "alice")
    assert (await service.get_chat(chat.id)).muted_by == frozenset()

    assert await service.toggle_favorite(chat.id, "alice") is True
    assert await service.toggle_favorite(chat.id, "bob") is False

    await service.delete_chat(chat.id, "alice")
    assert await service.get_chat(chat.id) is None
    assert await messages_of(store, chat.id) == []
    with pytest.raises(ChatActionError):
        await service.block(chat.id, "alice")


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "action",
    [
        lambda service, chat_id: service.mute(chat_id, "mallory"),
        lambda service, chat_id: service.unmute(chat_id, "mallory"),
        lambda service, chat_id: service.toggle_favorite(chat_id, "mallory"),
        lambda service, chat_id: service.clear_messages(chat_id, "mallory"),
        lambda service, chat_id: service.delete_chat(chat_id, "mallory"),
        lambda service, chat_id: service.block(chat_id, "mallory"),
    ],
    ids=["mute", "unmute", "favorite", "clear", "delete_chat", "block"],
)
async def test_chat_actions_reject_outsiders(service, store, action):
    chat = await service.ensure_chat("alice", "bob")
    await service.send_message(chat.id, "alice", "hi")

    with pytest.raises(ChatActionError) as rejected:
        await action(service, chat.id)
    assert rejected.value.code == "not_participant"

    stored = await service.get_chat(chat.id)
    assert stored is not None
    assert stored.muted_by == frozenset()
    assert stored.is_favorite is False
    assert stored.cleared_at == {}
    assert len(await messages_of(store, chat.id)) == 1


@pytest.mark.asyncio
async def test_clear_messages_hides_history_for_actor_only(service):
    chat = await service.ensure_chat("alice", "bob")
    await service.send_message(chat.id, "bob", "before")
    await asyncio.sleep(0.002)
    await service.clear_messages(chat.id, "alice")
    await asyncio.sleep(0.002)
    await service.send_message(chat.id, "bob", "after")

    stored = await service.get_chat(chat.id)
    assert stored.cleared_ms_for("alice") > 0
    assert stored.cleared_ms_for("bob") == 0

    messages = await service.list_messages(chat.id)
    assert [m.text for m in messages] == ["before", "after"]
    for_alice = [m.text for m in messages if m.visible_after(stored.cleared_ms_for("alice"))]
    for_bob = [m.text for m in messages if m.visible_after(stored.cleared_ms_for("bob"))]
    assert for_alice == ["after"]
    assert for_bob == ["before", "after"]
