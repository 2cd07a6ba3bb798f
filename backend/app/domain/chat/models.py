"""Domain models for chats and messages as stored in the document store."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple

from app.domain.common.timestamps import to_millis
from app.infra.store import SERVER_TIMESTAMP, DocumentSnapshot

CHATS = "chats"


def chat_path(chat_id: str) -> str:
	return f"{CHATS}/{chat_id}"


def messages_collection(chat_id: str) -> str:
	return f"{CHATS}/{chat_id}/messages"


def message_path(chat_id: str, message_id: str) -> str:
	return f"{messages_collection(chat_id)}/{message_id}"


class MessageType(str, enum.Enum):
	TEXT = "text"
	IMAGE = "image"
	AUDIO = "audio"
	FILE = "file"

	@classmethod
	def parse(cls, value: Any) -> "MessageType":
		try:
			return cls(str(value or "text").lower())
		except ValueError:
			return cls.TEXT


class TickState(str, enum.Enum):
	SENT = "sent"
	DELIVERED = "delivered"
	SEEN = "seen"


def _uid_set(raw: Any) -> FrozenSet[str]:
	if not raw:
		return frozenset()
	if isinstance(raw, (list, tuple, set, frozenset)):
		return frozenset(str(item) for item in raw if item)
	return frozenset()


def _counts(raw: Any) -> Dict[str, int]:
	if not isinstance(raw, Mapping):
		return {}
	counts: Dict[str, int] = {}
	for key, value in raw.items():
		try:
			counts[str(key)] = int(value or 0)
		except (TypeError, ValueError):
			counts[str(key)] = 0
	return counts


@dataclass(slots=True, frozen=True)
class ReplySnapshot:
	"""Copy of the quoted message taken at send time; never resynchronised."""

	id: str
	text: str
	type: MessageType
	sender_id: str

	@classmethod
	def from_mapping(cls, raw: Any) -> Optional["ReplySnapshot"]:
		if not isinstance(raw, Mapping) or not raw.get("id"):
			return None
		return cls(
			id=str(raw["id"]),
			text=str(raw.get("text") or ""),
			type=MessageType.parse(raw.get("type")),
			sender_id=str(raw.get("senderId") or ""),
		)

	def to_dict(self) -> Dict[str, Any]:
		return {"id": self.id, "text": self.text, "type": self.type.value, "senderId": self.sender_id}


@dataclass(slots=True)
class Chat:
	id: str
	participants: Tuple[str, ...]
	initiator_id: str = ""
	recipient_id: str = ""
	initiator_blocked: bool = False
	recipient_blocked: bool = False
	blocked_by: FrozenSet[str] = frozenset()
	muted_by: FrozenSet[str] = frozenset()
	deleted_by: FrozenSet[str] = frozenset()
	deleted_by_initiator: bool = False
	deleted_by_recipient: bool = False
	is_favorite: bool = False
	last_message: str = ""
	last_sender_id: Optional[str] = None
	unseen_counts: Dict[str, int] = field(default_factory=dict)
	updated_at: Any = None
	chat_title: Optional[str] = None
	# Per-viewer "clear messages" watermark; earlier messages stay hidden for that viewer only.
	cleared_at: Dict[str, Any] = field(default_factory=dict)

	@classmethod
	def from_mapping(cls, chat_id: str, data: Mapping[str, Any]) -> "Chat":
		participants = tuple(str(p) for p in (data.get("participants") or []) if p)
		return cls(
			id=str(chat_id),
			participants=participants,
			initiator_id=str(data.get("initiatorId") or (participants[0] if participants else "")),
			recipient_id=str(data.get("recipientId") or (participants[1] if len(participants) > 1 else "")),
			initiator_blocked=bool(data.get("initiatorBlocked")),
			recipient_blocked=bool(data.get("recipientBlocked")),
			blocked_by=_uid_set(data.get("blockedBy")),
			muted_by=_uid_set(data.get("mutedBy")),
			deleted_by=_uid_set(data.get("deletedBy")),
			deleted_by_initiator=bool(data.get("deletedByInitiator")),
			deleted_by_recipient=bool(data.get("deletedByRecipient")),
			is_favorite=bool(data.get("isFavorite")),
			last_message=str(data.get("lastMessage") or ""),
			last_sender_id=data.get("lastSenderId"),
			unseen_counts=_counts(data.get("unseenCounts")),
			updated_at=data.get("updatedAt"),
			chat_title=data.get("chatTitle"),
			cleared_at=dict(data["clearedAt"]) if isinstance(data.get("clearedAt"), Mapping) else {},
		)

	@classmethod
	def from_snapshot(cls, snapshot: DocumentSnapshot) -> "Chat":
		return cls.from_mapping(snapshot.id, snapshot.data or {})

	@property
	def updated_ms(self) -> int:
		return to_millis(self.updated_at)

	def counterpart(self, viewer_id: str) -> Optional[str]:
		for participant in self.participants:
			if participant != viewer_id:
				return participant
		return None

	def cleared_ms_for(self, user_id: str) -> int:
		return to_millis(self.cleared_at.get(user_id))

	def unseen_for(self, user_id: str) -> int:
		return max(0, self.unseen_counts.get(user_id, 0))

	def is_blocked_by(self, user_id: str) -> bool:
		return user_id in self.blocked_by

	def is_muted_by(self, user_id: str) -> bool:
		return user_id in self.muted_by

	def blocked_flag_field(self, user_id: str) -> str:
		"""Directional flag recording that ``user_id`` was blocked by the other side."""
		return "initiatorBlocked" if user_id == self.initiator_id else "recipientBlocked"

	def is_participant_blocked(self, user_id: str) -> bool:
		if user_id == self.initiator_id:
			return self.initiator_blocked
		return self.recipient_blocked

	def can_send(self, user_id: str) -> bool:
		return not self.is_blocked_by(user_id) and not self.is_participant_blocked(user_id)

	def deleted_for(self, user_id: str) -> bool:
		if user_id in self.deleted_by:
			return True
		if user_id == self.initiator_id:
			return self.deleted_by_initiator
		return self.deleted_by_recipient

	def initiated_by(self, user_id: str) -> bool:
		return self.initiator_id == user_id


@dataclass(slots=True)
class ChatMessage:
	id: str
	chat_id: str
	sender_id: str
	text: str = ""
	type: MessageType = MessageType.TEXT
	file_url: str = ""
	created_at: Any = None
	updated_at: Any = None
	delivered_to: FrozenSet[str] = frozenset()
	seen_by: FrozenSet[str] = frozenset()
	is_deleted: bool = False
	is_edited: bool = False
	reply_to: Optional[ReplySnapshot] = None

	@classmethod
	def from_mapping(cls, chat_id: str, message_id: str, data: Mapping[str, Any]) -> "ChatMessage":
		return cls(
			id=str(message_id),
			chat_id=str(chat_id),
			sender_id=str(data.get("senderId") or ""),
			text=str(data.get("text") or ""),
			type=MessageType.parse(data.get("type")),
			file_url=str(data.get("fileUrl") or ""),
			created_at=data.get("createdAt"),
			updated_at=data.get("updatedAt"),
			delivered_to=_uid_set(data.get("deliveredTo")),
			seen_by=_uid_set(data.get("seenBy")),
			is_deleted=bool(data.get("isDeleted")),
			is_edited=bool(data.get("isEdited")),
			reply_to=ReplySnapshot.from_mapping(data.get("replyTo")),
		)

	@classmethod
	def from_snapshot(cls, chat_id: str, snapshot: DocumentSnapshot) -> "ChatMessage":
		return cls.from_mapping(chat_id, snapshot.id, snapshot.data or {})

	@property
	def created_ms(self) -> int:
		return to_millis(self.created_at)

	def is_from(self, user_id: str) -> bool:
		return self.sender_id == user_id

	def visible_after(self, cleared_ms: int) -> bool:
		"""False when the message predates a clear watermark; unresolved timestamps count as new."""
		if cleared_ms <= 0:
			return True
		created = self.created_ms
		return created == 0 or created > cleared_ms

	def quote(self) -> ReplySnapshot:
		return ReplySnapshot(id=self.id, text=self.text, type=self.type, sender_id=self.sender_id)


def new_chat_document(initiator_id: str, recipient_id: str, *, title: Optional[str] = None) -> Dict[str, Any]:
	if not initiator_id or not recipient_id or initiator_id == recipient_id:
		raise ValueError("a chat needs two distinct participants")
	return {
		"participants": [initiator_id, recipient_id],
		"initiatorId": initiator_id,
		"recipientId": recipient_id,
		"initiatorBlocked": False,
		"recipientBlocked": False,
		"blockedBy": [],
		"mutedBy": [],
		"deletedByInitiator": False,
		"deletedByRecipient": False,
		"isFavorite": False,
		"lastMessage": "",
		"lastSenderId": None,
		"unseenCounts": {initiator_id: 0, recipient_id: 0},
		"createdAt": SERVER_TIMESTAMP,
		"updatedAt": SERVER_TIMESTAMP,
		"chatTitle": title,
	}


def new_message_document(
	sender_id: str,
	*,
	text: str,
	message_type: MessageType,
	file_url: str = "",
	reply_to: Optional[ReplySnapshot] = None,
) -> Dict[str, Any]:
	# seenBy is left out on purpose: nobody has seen a message at send time.
	return {
		"senderId": sender_id,
		"text": text,
		"type": message_type.value,
		"fileUrl": file_url,
		"createdAt": SERVER_TIMESTAMP,
		"deliveredTo": [sender_id],
		"isDeleted": False,
		"isEdited": False,
		"replyTo": reply_to.to_dict() if reply_to else None,
	}


__all__ = [
	"Chat",
	"ChatMessage",
	"MessageType",
	"ReplySnapshot",
	"TickState",
	"chat_path",
	"message_path",
	"messages_collection",
	"new_chat_document",
	"new_message_document",
]
