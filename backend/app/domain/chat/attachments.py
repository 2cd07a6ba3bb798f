"""Attachment helpers for chat messages."""

from __future__ import annotations

from typing import Protocol

from .models import MessageType

_KIND_ALIASES = {
	"image": MessageType.IMAGE,
	"photo": MessageType.IMAGE,
	"audio": MessageType.AUDIO,
	"voice": MessageType.AUDIO,
	"file": MessageType.FILE,
	"document": MessageType.FILE,
}

_PREVIEW_LABELS = {
	MessageType.IMAGE: "Image",
	MessageType.AUDIO: "Voice message",
	MessageType.FILE: "File",
}

_ALLOWED_PREFIXES = {
	"image/": MessageType.IMAGE,
	"audio/": MessageType.AUDIO,
}


class UploadError(Exception):
	"""Raised by media uploaders when a blob could not be stored."""


class MediaUploader(Protocol):
	async def upload(self, blob: bytes, kind: str) -> str:
		...


def normalize_kind(kind: str) -> MessageType:
	"""Map a declared kind (``image``, ``voice``) or MIME type to a non-text message type."""
	value = str(kind or "").strip().lower()
	if value in _KIND_ALIASES:
		return _KIND_ALIASES[value]
	for prefix, message_type in _ALLOWED_PREFIXES.items():
		if value.startswith(prefix):
			return message_type
	if value.startswith("application/"):
		return MessageType.FILE
	raise ValueError("unsupported attachment kind")


def preview_text(message_type: MessageType, text: str) -> str:
	"""Value stored as the chat's ``lastMessage`` for a new message."""
	return _PREVIEW_LABELS.get(message_type, text)
