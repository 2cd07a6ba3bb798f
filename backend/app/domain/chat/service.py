"""Chat writes: creation, sending, edit/delete and directional moderation."""

from __future__ import annotations

import logging
from typing import List, Optional

from pydantic import ValidationError

from . import aggregation, attachments, delivery
from .models import (
	CHATS,
	Chat,
	ChatMessage,
	MessageType,
	ReplySnapshot,
	chat_path,
	message_path,
	messages_collection,
	new_chat_document,
	new_message_document,
)
from .schemas import EditMessageRequest, ReplyPayload, SendMessageRequest
from app.infra.store import (
	SERVER_TIMESTAMP,
	ArrayRemove,
	ArrayUnion,
	DocumentStore,
	Increment,
	Query,
)
from app.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)


class ChatActionError(Exception):
	"""A user action rejected by chat rules (not the sender, not editable, ...)."""

	def __init__(self, code: str, message: str | None = None) -> None:
		super().__init__(message or code)
		self.code = code


class ChatService:
	def __init__(self, store: DocumentStore) -> None:
		self._store = store

	@property
	def store(self) -> DocumentStore:
		return self._store

	async def get_chat(self, chat_id: str) -> Optional[Chat]:
		snapshot = await self._store.get(chat_path(chat_id))
		if not snapshot.exists:
			return None
		return Chat.from_snapshot(snapshot)

	async def _require_chat(self, chat_id: str) -> Chat:
		chat = await self.get_chat(chat_id)
		if chat is None:
			raise ChatActionError("chat_missing")
		return chat

	async def get_message(self, chat_id: str, message_id: str) -> Optional[ChatMessage]:
		snapshot = await self._store.get(message_path(chat_id, message_id))
		if not snapshot.exists:
			return None
		return ChatMessage.from_snapshot(chat_id, snapshot)

	async def list_chats(self, user_id: str) -> List[Chat]:
		snapshots = await self._store.query(Query(CHATS).where("participants", "array-contains", user_id))
		return [Chat.from_snapshot(snapshot) for snapshot in snapshots]

	async def list_messages(self, chat_id: str) -> List[ChatMessage]:
		snapshots = await self._store.query(Query(messages_collection(chat_id), order_by="createdAt"))
		return [ChatMessage.from_snapshot(chat_id, snapshot) for snapshot in snapshots]

	async def ensure_chat(self, initiator_id: str, recipient_id: str, *, title: Optional[str] = None) -> Chat:
		"""Return the canonical chat for the pair, creating it when none is listed."""
		if str(initiator_id) == str(recipient_id):
			raise ChatActionError("cannot_chat_self")
		existing = aggregation.find_canonical(await self.list_chats(initiator_id), initiator_id, recipient_id)
		if existing is not None:
			return existing
		chat_id = self._store.new_id()
		await self._store.set(chat_path(chat_id), new_chat_document(initiator_id, recipient_id, title=title))
		logger.info("chat created chat=%s initiator=%s recipient=%s", chat_id, initiator_id, recipient_id)
		return await self._require_chat(chat_id)

	async def send_message(
		self,
		chat_id: str,
		sender_id: str,
		text: str = "",
		*,
		message_type: MessageType = MessageType.TEXT,
		file_url: str = "",
		reply_to: Optional[ReplySnapshot] = None,
	) -> Optional[str]:
		"""Create a message and bump the chat; returns ``None`` when the sender is blocked."""
		try:
			payload = SendMessageRequest(
				chat_id=chat_id,
				sender_id=sender_id,
				text=text,
				type=message_type,
				file_url=file_url,
				reply_to=ReplyPayload.from_snapshot(reply_to) if reply_to else None,
			)
		except ValidationError as exc:
			raise ChatActionError("invalid_message", str(exc)) from exc
		chat = await self._require_chat(payload.chat_id)
		if sender_id not in chat.participants:
			raise ChatActionError("not_participant")
		if not chat.can_send(sender_id):
			obs_metrics.inc_chat_send_skipped("blocked")
			logger.info("send skipped, sender blocked chat=%s sender=%s", chat.id, sender_id)
			return None
		counterpart = chat.counterpart(sender_id)
		message_id = self._store.new_id()
		batch = self._store.batch()
		batch.set(
			message_path(chat.id, message_id),
			new_message_document(
				sender_id,
				text=payload.text,
				message_type=payload.type,
				file_url=payload.file_url,
				reply_to=payload.reply_to.to_snapshot() if payload.reply_to else None,
			),
		)
		batch.update(
			chat_path(chat.id),
			{
				"lastMessage": attachments.preview_text(payload.type, payload.text),
				"lastSenderId": sender_id,
				"updatedAt": SERVER_TIMESTAMP,
				f"unseenCounts.{counterpart}": Increment(1),
			},
		)
		await batch.commit()
		obs_metrics.inc_chat_send(payload.type.value)
		logger.debug("message sent chat=%s message=%s type=%s", chat.id, message_id, payload.type.value)
		return message_id

	async def _require_own_message(self, chat_id: str, message_id: str, actor_id: str) -> ChatMessage:
		message = await self.get_message(chat_id, message_id)
		if message is None:
			raise ChatActionError("message_missing")
		if not message.is_from(actor_id):
			raise ChatActionError("not_sender")
		return message

	async def edit_message(self, chat_id: str, message_id: str, editor_id: str, text: str) -> None:
		try:
			payload = EditMessageRequest(text=text)
		except ValidationError as exc:
			raise ChatActionError("invalid_message", str(exc)) from exc
		message = await self._require_own_message(chat_id, message_id, editor_id)
		if message.is_deleted or message.type is not MessageType.TEXT:
			raise ChatActionError("not_editable")
		await self._store.update(
			message_path(chat_id, message_id),
			{"text": payload.text, "isEdited": True, "updatedAt": SERVER_TIMESTAMP},
		)
		logger.debug("message edited chat=%s message=%s", chat_id, message_id)

	async def delete_message(self, chat_id: str, message_id: str, actor_id: str) -> None:
		"""Soft delete; repeating it on a tombstone is allowed and changes nothing visible."""
		await self._require_own_message(chat_id, message_id, actor_id)
		await self._store.update(
			message_path(chat_id, message_id),
			{
				"isDeleted": True,
				"text": "",
				"fileUrl": "",
				"type": MessageType.TEXT.value,
				"updatedAt": SERVER_TIMESTAMP,
			},
		)
		logger.debug("message deleted chat=%s message=%s", chat_id, message_id)

	async def _require_participant(self, chat_id: str, actor_id: str) -> Chat:
		chat = await self._require_chat(chat_id)
		if actor_id not in chat.participants or chat.counterpart(actor_id) is None:
			raise ChatActionError("not_participant")
		return chat

	async def block(self, chat_id: str, actor_id: str) -> None:
		chat = await self._require_participant(chat_id, actor_id)
		counterpart = chat.counterpart(actor_id)
		await self._store.update(
			chat_path(chat_id),
			{"blockedBy": ArrayUnion(actor_id), chat.blocked_flag_field(counterpart): True},
		)
		logger.info("chat blocked chat=%s actor=%s", chat_id, actor_id)

	async def unblock(self, chat_id: str, actor_id: str) -> None:
		chat = await self._require_participant(chat_id, actor_id)
		counterpart = chat.counterpart(actor_id)
		await self._store.update(
			chat_path(chat_id),
			{"blockedBy": ArrayRemove(actor_id), chat.blocked_flag_field(counterpart): False},
		)
		logger.info("chat unblocked chat=%s actor=%s", chat_id, actor_id)

	async def mute(self, chat_id: str, actor_id: str) -> None:
		await self._require_participant(chat_id, actor_id)
		await self._store.update(chat_path(chat_id), {"mutedBy": ArrayUnion(actor_id)})

	async def unmute(self, chat_id: str, actor_id: str) -> None:
		await self._require_participant(chat_id, actor_id)
		await self._store.update(chat_path(chat_id), {"mutedBy": ArrayRemove(actor_id)})

	async def toggle_favorite(self, chat_id: str, actor_id: str) -> bool:
		chat = await self._require_participant(chat_id, actor_id)
		value = not chat.is_favorite
		await self._store.update(chat_path(chat_id), {"isFavorite": value})
		return value

	async def clear_messages(self, chat_id: str, actor_id: str) -> None:
		"""Hide every message up to now for ``actor_id`` only; the counterpart keeps the history."""
		await self._require_participant(chat_id, actor_id)
		await self._store.update(chat_path(chat_id), {f"clearedAt.{actor_id}": SERVER_TIMESTAMP})
		logger.info("chat messages cleared chat=%s actor=%s", chat_id, actor_id)

	async def delete_chat(self, chat_id: str, actor_id: str) -> None:
		"""Hard delete of the chat document together with its messages."""
		await self._require_participant(chat_id, actor_id)
		snapshots = await self._store.query(Query(messages_collection(chat_id)))
		batch = self._store.batch()
		for snapshot in snapshots:
			batch.delete(snapshot.path)
		batch.delete(chat_path(chat_id))
		await batch.commit()
		logger.info("chat deleted chat=%s actor=%s messages=%d", chat_id, actor_id, len(snapshots))

	async def mark_delivered(self, chat_id: str, message_ids, user_id: str, *, source: str = "recipient") -> int:
		return await delivery.mark_delivered(self._store, chat_id, message_ids, user_id, source=source)

	async def mark_seen(self, chat_id: str, message_ids, user_id: str, *, reset_unseen: bool = True) -> int:
		return await delivery.mark_seen(self._store, chat_id, message_ids, user_id, reset_unseen=reset_unseen)


__all__ = ["ChatActionError", "ChatService"]
