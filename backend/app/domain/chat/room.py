"""Open-chat state: live subscriptions, delivery/seen marking, drafts and notices."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

from app.domain.common.timestamps import now_utc
from app.domain.presence.status import format_last_seen, is_user_online
from app.domain.presence.tracker import profile_path
from app.infra.store import DocumentSnapshot, Query, StoreError, Unsubscribe
from app.obs import metrics as obs_metrics
from app.obs.logging import bind_context, reset_context
from app.settings import settings

from . import attachments, delivery
from .models import Chat, ChatMessage, MessageType, TickState, chat_path, messages_collection
from .service import ChatActionError, ChatService

logger = logging.getLogger(__name__)

T = TypeVar("T")

DRAFT_REPLY = "reply"
DRAFT_EDIT = "edit"

_REJECTION_TEXT = {
	"not_sender": "Only the sender can change this message.",
	"not_editable": "This message can no longer be edited.",
	"message_missing": "This message no longer exists.",
	"chat_missing": "This chat no longer exists.",
	"invalid_message": "The message could not be sent.",
	"not_participant": "You are not part of this chat.",
}

_FAILURE_TEXT = {
	"send": "Message not sent. Please try again.",
	"edit": "Could not edit the message.",
	"delete": "Could not delete the message.",
	"block": "Could not update the block setting.",
	"mute": "Could not update notifications for this chat.",
	"favorite": "Could not update favorites.",
	"delete_chat": "Could not delete the chat.",
	"clear": "Could not clear messages.",
	"upload": "Upload failed. Please try again.",
}

_CONFIRMATION_TEXT = {
	"edit": "Message edited successfully",
	"delete": "Message deleted successfully",
	"block": "User blocked",
	"unblock": "User unblocked",
	"mute": "Notifications muted",
	"unmute": "Notifications unmuted",
	"clear": "Messages cleared",
}


@dataclass(slots=True)
class Notice:
	text: str
	level: str
	expires_at: datetime

	def expired(self, now: datetime) -> bool:
		return now >= self.expires_at


@dataclass(slots=True)
class Draft:
	mode: str
	message: ChatMessage


class ChatRoom:
	"""One open chat seen by ``viewer_id``.

	While open, messages from the counterpart are marked delivered as soon as
	they are observed and marked seen after ``settings.seen_debounce_seconds``;
	the debounced task is keyed by chat id so closing or reopening cancels it.
	User actions never raise: failures are logged and posted as notices.
	"""

	def __init__(
		self,
		service: ChatService,
		chat_id: str,
		viewer_id: str,
		*,
		scheduler: Optional[delivery.DebouncedTasks] = None,
		on_missing: Optional[Callable[[str], Any]] = None,
		on_change: Optional[Callable[["ChatRoom"], Any]] = None,
		on_close: Optional[Callable[["ChatRoom"], Any]] = None,
		clock: Callable[[], datetime] = now_utc,
	) -> None:
		self._service = service
		self._store = service.store
		self.chat_id = chat_id
		self.viewer_id = viewer_id
		self._scheduler = scheduler or delivery.DebouncedTasks()
		self._on_missing = on_missing
		self._on_change = on_change
		self._on_close = on_close
		self._clock = clock
		self._unsubscribes: Dict[str, Unsubscribe] = {}
		self._delivering: set[str] = set()
		self._state = "idle"
		self.chat: Optional[Chat] = None
		self._received: List[ChatMessage] = []
		self.messages: List[ChatMessage] = []
		self.counterpart_profile: Optional[Dict[str, Any]] = None
		self.draft: Optional[Draft] = None
		self._notices: List[Notice] = []

	@property
	def state(self) -> str:
		return self._state

	@property
	def is_open(self) -> bool:
		return self._state == "open"

	@property
	def seen_key(self) -> str:
		return f"{self.chat_id}:{self.viewer_id}"

	@property
	def sender_delivery_key(self) -> str:
		return f"{self.seen_key}:sender-delivery"

	@property
	def counterpart_id(self) -> Optional[str]:
		return self.chat.counterpart(self.viewer_id) if self.chat else None

	@property
	def online(self) -> bool:
		profile = self.counterpart_profile
		if not profile:
			return False
		return is_user_online(profile.get("online"), profile.get("lastSeen"), self._clock())

	@property
	def last_seen_label(self) -> str:
		profile = self.counterpart_profile or {}
		return format_last_seen(profile.get("lastSeen"), self._clock())

	@property
	def can_send(self) -> bool:
		return self.chat is not None and self.chat.can_send(self.viewer_id)

	def open(self) -> None:
		if self.is_open:
			return
		# A pending seen task from an earlier visit must not fire for this one.
		self._scheduler.cancel_prefix(self.seen_key)
		self._state = "open"
		self._unsubscribes["chat"] = self._store.on_snapshot(chat_path(self.chat_id), self._on_chat)
		self._unsubscribes["messages"] = self._store.on_query_snapshot(
			Query(messages_collection(self.chat_id), order_by="createdAt"),
			self._on_messages,
		)
		logger.debug("chat room opened chat=%s viewer=%s", self.chat_id, self.viewer_id)

	def close(self) -> None:
		if self._state != "open":
			return
		self._teardown("closed")
		logger.debug("chat room closed chat=%s viewer=%s", self.chat_id, self.viewer_id)

	def _teardown(self, state: str) -> None:
		for unsubscribe in self._unsubscribes.values():
			unsubscribe()
		self._unsubscribes.clear()
		self._scheduler.cancel_prefix(self.seen_key)
		self._delivering.clear()
		self._state = state
		if self._on_close is not None:
			self._on_close(self)

	async def __aenter__(self) -> "ChatRoom":
		self.open()
		return self

	async def __aexit__(self, *exc_info) -> None:
		self.close()

	def _changed(self) -> None:
		if self._on_change is not None:
			self._on_change(self)

	def _on_chat(self, snapshot: DocumentSnapshot) -> None:
		if not self.is_open:
			return
		if not snapshot.exists:
			self._handle_missing()
			return
		self.chat = Chat.from_snapshot(snapshot)
		self._apply_clear_watermark()
		counterpart = self.chat.counterpart(self.viewer_id)
		if counterpart and "profile" not in self._unsubscribes:
			self._unsubscribes["profile"] = self._store.on_snapshot(profile_path(counterpart), self._on_profile)
		self._schedule_seen()
		self._changed()

	def _handle_missing(self) -> None:
		logger.info("chat missing, leaving room chat=%s viewer=%s", self.chat_id, self.viewer_id)
		self._teardown("missing")
		self.chat = None
		self.draft = None
		if self._on_missing is not None:
			self._on_missing(self.chat_id)
		self._changed()

	async def _on_messages(self, snapshots: List[DocumentSnapshot]) -> None:
		if not self.is_open:
			return
		self._received = [ChatMessage.from_snapshot(self.chat_id, snapshot) for snapshot in snapshots]
		self._apply_clear_watermark()
		self._changed()
		await self._deliver_incoming()
		self._schedule_seen()
		self._schedule_sender_delivery()

	def _apply_clear_watermark(self) -> None:
		cleared_ms = self.chat.cleared_ms_for(self.viewer_id) if self.chat else 0
		self.messages = [message for message in self._received if message.visible_after(cleared_ms)]

	def _on_profile(self, snapshot: DocumentSnapshot) -> None:
		if not self.is_open:
			return
		self.counterpart_profile = snapshot.to_dict() if snapshot.exists else None
		self._schedule_sender_delivery()
		self._changed()

	async def _deliver_incoming(self) -> None:
		pending = [
			message.id
			for message in delivery.pending_delivery(self.messages, self.viewer_id)
			if message.id not in self._delivering
		]
		if not pending:
			return
		self._delivering.update(pending)
		try:
			await self._service.mark_delivered(self.chat_id, pending, self.viewer_id, source="recipient")
		except StoreError:
			logger.warning("delivered marking failed chat=%s", self.chat_id, exc_info=True)
		finally:
			self._delivering.difference_update(pending)

	def _needs_seen_pass(self) -> bool:
		if delivery.pending_seen(self.messages, self.viewer_id):
			return True
		# Phantom count: unread recorded on the chat without any unseen message.
		return self.chat is not None and self.chat.unseen_for(self.viewer_id) > 0

	def _schedule_seen(self) -> None:
		if self.is_open and self._needs_seen_pass():
			self._scheduler.schedule(self.seen_key, settings.seen_debounce_seconds, self._mark_seen)

	async def _mark_seen(self) -> None:
		if not self.is_open or not self._needs_seen_pass():
			return
		pending = [message.id for message in delivery.pending_seen(self.messages, self.viewer_id)]
		try:
			await self._service.mark_seen(self.chat_id, pending, self.viewer_id, reset_unseen=True)
		except StoreError:
			logger.warning("seen marking failed chat=%s", self.chat_id, exc_info=True)

	def _schedule_sender_delivery(self) -> None:
		counterpart = self.counterpart_id
		if not self.is_open or not counterpart or not self.online:
			return
		if not delivery.undelivered_outgoing(self.messages, self.viewer_id, counterpart):
			return
		if self._scheduler.pending(self.sender_delivery_key):
			return
		self._scheduler.schedule(
			self.sender_delivery_key,
			settings.sender_delivery_delay_seconds,
			self._mark_sent_delivered,
		)

	async def _mark_sent_delivered(self) -> None:
		counterpart = self.counterpart_id
		if not self.is_open or not counterpart or not self.online:
			return
		pending = [message.id for message in delivery.undelivered_outgoing(self.messages, self.viewer_id, counterpart)]
		if not pending:
			return
		try:
			await self._service.mark_delivered(self.chat_id, pending, counterpart, source="sender")
		except StoreError:
			logger.warning("sender-side delivered marking failed chat=%s", self.chat_id, exc_info=True)

	def tick(self, message: ChatMessage) -> Optional[TickState]:
		return delivery.tick_state(message, self.viewer_id, self.counterpart_id)

	def find_message(self, message_id: str) -> Optional[ChatMessage]:
		for message in self.messages:
			if message.id == message_id:
				return message
		return None

	def post_notice(self, text: str, level: str = "error") -> Notice:
		notice = Notice(
			text=text,
			level=level,
			expires_at=self._clock() + timedelta(seconds=settings.notice_ttl_seconds),
		)
		self._notices.append(notice)
		self._changed()
		return notice

	def notices(self, now: Optional[datetime] = None) -> List[Notice]:
		current = now or self._clock()
		self._notices = [notice for notice in self._notices if not notice.expired(current)]
		return list(self._notices)

	def start_reply(self, message_id: str) -> bool:
		message = self.find_message(message_id)
		if message is None or message.is_deleted:
			return False
		self.draft = Draft(DRAFT_REPLY, message)
		self._changed()
		return True

	def start_edit(self, message_id: str) -> bool:
		message = self.find_message(message_id)
		if (
			message is None
			or not message.is_from(self.viewer_id)
			or message.is_deleted
			or message.type is not MessageType.TEXT
		):
			self.post_notice(_REJECTION_TEXT["not_editable"])
			return False
		self.draft = Draft(DRAFT_EDIT, message)
		self._changed()
		return True

	def cancel_draft(self) -> None:
		if self.draft is not None:
			self.draft = None
			self._changed()

	async def _run_action(
		self,
		action: str,
		call: Awaitable[T],
		*,
		confirm: Optional[str] = None,
	) -> Tuple[bool, Optional[T]]:
		"""Await ``call``; rejections and store failures become error notices, ``confirm`` an info notice."""
		tokens = bind_context(user_id=self.viewer_id, chat_id=self.chat_id)
		try:
			result = await call
			if confirm is not None:
				self.post_notice(_CONFIRMATION_TEXT[confirm], level="info")
			return True, result
		except ChatActionError as exc:
			obs_metrics.inc_chat_action_failure(action)
			logger.info("chat action rejected action=%s code=%s", action, exc.code)
			self.post_notice(_REJECTION_TEXT.get(exc.code, _FAILURE_TEXT.get(action, "Action failed.")))
		except StoreError:
			obs_metrics.inc_chat_action_failure(action)
			logger.warning("chat action failed action=%s", action, exc_info=True)
			self.post_notice(_FAILURE_TEXT.get(action, "Action failed."))
		finally:
			reset_context(tokens)
		return False, None

	def _reply_snapshot(self):
		draft = self.draft
		if draft is not None and draft.mode == DRAFT_REPLY:
			return draft.message.quote()
		return None

	def _clear_draft(self, draft: Optional[Draft]) -> None:
		if draft is not None and self.draft is draft:
			self.draft = None
			self._changed()

	async def send(self, text: str) -> Optional[str]:
		"""Send ``text`` (or apply it to the message being edited); returns the message id."""
		draft = self.draft
		if draft is not None and draft.mode == DRAFT_EDIT:
			ok, _ = await self._run_action(
				"edit",
				self._service.edit_message(self.chat_id, draft.message.id, self.viewer_id, text),
				confirm="edit",
			)
			if not ok:
				return None
			self._clear_draft(draft)
			return draft.message.id
		ok, message_id = await self._run_action(
			"send",
			self._service.send_message(self.chat_id, self.viewer_id, text, reply_to=self._reply_snapshot()),
		)
		if ok and message_id is not None:
			self._clear_draft(draft)
		return message_id

	async def send_attachment(self, uploader: attachments.MediaUploader, blob: bytes, kind: str) -> Optional[str]:
		"""Upload ``blob`` first; the message is only created once a URL exists."""
		try:
			message_type = attachments.normalize_kind(kind)
		except ValueError:
			obs_metrics.inc_chat_action_failure("upload")
			self.post_notice("This file type is not supported.")
			return None
		if self.chat is not None and not self.chat.can_send(self.viewer_id):
			obs_metrics.inc_chat_send_skipped("blocked")
			return None
		try:
			url = await uploader.upload(blob, message_type.value)
		except attachments.UploadError:
			obs_metrics.inc_chat_action_failure("upload")
			logger.warning("attachment upload failed chat=%s kind=%s", self.chat_id, message_type.value, exc_info=True)
			self.post_notice(_FAILURE_TEXT["upload"])
			return None
		draft = self.draft
		ok, message_id = await self._run_action(
			"send",
			self._service.send_message(
				self.chat_id,
				self.viewer_id,
				"",
				message_type=message_type,
				file_url=url,
				reply_to=self._reply_snapshot(),
			),
		)
		if ok and message_id is not None and draft is not None and draft.mode == DRAFT_REPLY:
			self._clear_draft(draft)
		return message_id

	async def delete_message(self, message_id: str) -> bool:
		ok, _ = await self._run_action(
			"delete",
			self._service.delete_message(self.chat_id, message_id, self.viewer_id),
			confirm="delete",
		)
		if ok and self.draft is not None and self.draft.message.id == message_id:
			self._clear_draft(self.draft)
		return ok

	async def block(self) -> bool:
		ok, _ = await self._run_action("block", self._service.block(self.chat_id, self.viewer_id), confirm="block")
		return ok

	async def unblock(self) -> bool:
		ok, _ = await self._run_action("block", self._service.unblock(self.chat_id, self.viewer_id), confirm="unblock")
		return ok

	async def mute(self) -> bool:
		ok, _ = await self._run_action("mute", self._service.mute(self.chat_id, self.viewer_id), confirm="mute")
		return ok

	async def unmute(self) -> bool:
		ok, _ = await self._run_action("mute", self._service.unmute(self.chat_id, self.viewer_id), confirm="unmute")
		return ok

	async def toggle_favorite(self) -> Optional[bool]:
		_, value = await self._run_action("favorite", self._service.toggle_favorite(self.chat_id, self.viewer_id))
		return value

	async def clear_messages(self) -> bool:
		ok, _ = await self._run_action(
			"clear",
			self._service.clear_messages(self.chat_id, self.viewer_id),
			confirm="clear",
		)
		if ok:
			self.cancel_draft()
		return ok

	async def delete_chat(self) -> bool:
		ok, _ = await self._run_action("delete_chat", self._service.delete_chat(self.chat_id, self.viewer_id))
		return ok


__all__ = ["ChatRoom", "Draft", "Notice", "DRAFT_EDIT", "DRAFT_REPLY"]
