"""Delivery/seen tracking: tick rules, confirmation writes and debounced tasks."""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from typing import Awaitable, Callable, Dict, Iterable, List, Optional

from app.domain.chat.models import ChatMessage, TickState, chat_path, message_path
from app.infra.store import ArrayUnion, DocumentStore
from app.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)


def tick_state(message: ChatMessage, viewer_id: str, counterpart_id: Optional[str]) -> Optional[TickState]:
	"""Highest state reached by the viewer's own message; ``None`` for other people's."""
	if not message.is_from(viewer_id):
		return None
	if counterpart_id and counterpart_id in message.seen_by:
		return TickState.SEEN
	if counterpart_id and counterpart_id in message.delivered_to:
		return TickState.DELIVERED
	return TickState.SENT


def pending_delivery(messages: Iterable[ChatMessage], viewer_id: str) -> List[ChatMessage]:
	return [
		message
		for message in messages
		if not message.is_deleted and not message.is_from(viewer_id) and viewer_id not in message.delivered_to
	]


def pending_seen(messages: Iterable[ChatMessage], viewer_id: str) -> List[ChatMessage]:
	return [
		message
		for message in messages
		if not message.is_deleted and not message.is_from(viewer_id) and viewer_id not in message.seen_by
	]


def undelivered_outgoing(messages: Iterable[ChatMessage], sender_id: str, counterpart_id: str) -> List[ChatMessage]:
	return [
		message
		for message in messages
		if message.is_from(sender_id) and not message.is_deleted and counterpart_id not in message.delivered_to
	]


async def mark_delivered(
	store: DocumentStore,
	chat_id: str,
	message_ids: Iterable[str],
	user_id: str,
	*,
	source: str = "recipient",
) -> int:
	"""Add ``user_id`` to ``deliveredTo``; set-add keeps concurrent writers safe."""
	ids = list(dict.fromkeys(message_ids))
	if not ids:
		return 0
	batch = store.batch()
	for message_id in ids:
		batch.update(message_path(chat_id, message_id), {"deliveredTo": ArrayUnion(user_id)})
	await batch.commit()
	obs_metrics.inc_chat_delivered(source, len(ids))
	logger.debug("marked %d message(s) delivered chat=%s user=%s source=%s", len(ids), chat_id, user_id, source)
	return len(ids)


async def mark_seen(
	store: DocumentStore,
	chat_id: str,
	message_ids: Iterable[str],
	user_id: str,
	*,
	reset_unseen: bool = True,
) -> int:
	ids = list(dict.fromkeys(message_ids))
	if not ids and not reset_unseen:
		return 0
	batch = store.batch()
	for message_id in ids:
		batch.update(message_path(chat_id, message_id), {"seenBy": ArrayUnion(user_id)})
	if reset_unseen:
		batch.update(chat_path(chat_id), {f"unseenCounts.{user_id}": 0})
	await batch.commit()
	if ids:
		obs_metrics.inc_chat_read(len(ids))
	logger.debug("marked %d message(s) seen chat=%s user=%s", len(ids), chat_id, user_id)
	return len(ids)


class DebouncedTasks:
	"""Delayed coroutines keyed by name; rescheduling or cancelling a key drops the pending run."""

	def __init__(self) -> None:
		self._tasks: Dict[str, asyncio.Task] = {}

	def schedule(self, key: str, delay: float, action: Callable[[], Awaitable[None]]) -> asyncio.Task:
		self.cancel(key)
		task = asyncio.create_task(self._run(key, max(0.0, float(delay)), action), name=f"debounce:{key}")
		self._tasks[key] = task
		return task

	def pending(self, key: str) -> bool:
		task = self._tasks.get(key)
		return task is not None and not task.done()

	def cancel(self, key: str) -> bool:
		task = self._tasks.pop(key, None)
		if task is None or task.done():
			return False
		task.cancel()
		return True

	def cancel_prefix(self, prefix: str) -> int:
		cancelled = 0
		for key in [key for key in self._tasks if key == prefix or key.startswith(f"{prefix}:")]:
			if self.cancel(key):
				cancelled += 1
		return cancelled

	def __len__(self) -> int:
		return sum(1 for task in self._tasks.values() if not task.done())

	async def _run(self, key: str, delay: float, action: Callable[[], Awaitable[None]]) -> None:
		try:
			await asyncio.sleep(delay)
			await action()
		except asyncio.CancelledError:
			raise
		except Exception:
			logger.exception("debounced task failed key=%s", key)
		finally:
			if self._tasks.get(key) is asyncio.current_task():
				self._tasks.pop(key, None)

	async def aclose(self) -> None:
		tasks = list(self._tasks.values())
		self._tasks.clear()
		for task in tasks:
			task.cancel()
		for task in tasks:
			with suppress(asyncio.CancelledError):
				await task


__all__ = [
	"DebouncedTasks",
	"mark_delivered",
	"mark_seen",
	"pending_delivery",
	"pending_seen",
	"tick_state",
	"undelivered_outgoing",
]
