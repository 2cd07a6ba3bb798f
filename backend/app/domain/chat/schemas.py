"""Pydantic schemas validating chat write payloads."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from app.settings import settings

from .models import MessageType, ReplySnapshot


class ReplyPayload(BaseModel):
	id: str = Field(..., min_length=1)
	text: str = ""
	type: MessageType = MessageType.TEXT
	sender_id: str = ""

	@classmethod
	def from_snapshot(cls, snapshot: ReplySnapshot) -> "ReplyPayload":
		return cls(id=snapshot.id, text=snapshot.text, type=snapshot.type, sender_id=snapshot.sender_id)

	def to_snapshot(self) -> ReplySnapshot:
		return ReplySnapshot(id=self.id, text=self.text, type=self.type, sender_id=self.sender_id)


class SendMessageRequest(BaseModel):
	chat_id: str = Field(..., min_length=1)
	sender_id: str = Field(..., min_length=1)
	text: str = ""
	type: MessageType = MessageType.TEXT
	file_url: str = ""
	reply_to: Optional[ReplyPayload] = None

	@field_validator("text")
	@classmethod
	def _limit_text(cls, value: str) -> str:
		if len(value) > settings.message_max_length:
			raise ValueError("message too long")
		return value

	@model_validator(mode="after")
	def _require_content(self) -> "SendMessageRequest":
		if self.type is MessageType.TEXT:
			if not self.text.strip():
				raise ValueError("text message requires text")
			self.file_url = ""
		elif not self.file_url:
			raise ValueError("media message requires a resolved file url")
		return self


class EditMessageRequest(BaseModel):
	text: str = Field(..., min_length=1)

	@field_validator("text")
	@classmethod
	def _check_text(cls, value: str) -> str:
		if not value.strip():
			raise ValueError("edited text cannot be blank")
		if len(value) > settings.message_max_length:
			raise ValueError("message too long")
		return value
