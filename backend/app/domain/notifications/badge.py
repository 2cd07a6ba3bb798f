"""Single "has unread" indicator over chats, system notifications and review replies."""

from __future__ import annotations

import logging
from datetime import datetime
from functools import partial
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from app.domain.chat import aggregation
from app.domain.chat.models import CHATS, Chat
from app.domain.common.timestamps import now_utc, to_millis
from app.infra.store import DocumentSnapshot, DocumentStore, Query, Unsubscribe
from app.obs import metrics as obs_metrics
from app.settings import settings

from .watermarks import WatermarkStore

logger = logging.getLogger(__name__)

NOTIFICATIONS = "notifications"

# Chat notifications duplicate the per-chat unseen counters; post status
# changes are shown on the post itself.
_IGNORED_TYPES = frozenset({"chat", "post_status"})


def notification_is_unread(data: Mapping[str, Any], watermark_ms: int) -> bool:
	if str(data.get("type") or "") in _IGNORED_TYPES:
		return False
	return to_millis(data.get("createdAt")) > watermark_ms


def review_reply_is_unread(data: Mapping[str, Any], watermark_ms: int) -> bool:
	reply = data.get("reply")
	if not isinstance(reply, str) or not reply.strip():
		return False
	return to_millis(data.get("updatedAt") or data.get("createdAt")) > watermark_ms


def any_unread_notifications(docs: Iterable[Mapping[str, Any]], watermark_ms: int) -> bool:
	return any(notification_is_unread(doc, watermark_ms) for doc in docs)


def any_unread_replies(docs: Iterable[Mapping[str, Any]], watermark_ms: int) -> bool:
	return any(review_reply_is_unread(doc, watermark_ms) for doc in docs)


class NotificationBadge:
	"""Subscribes to every badge source and recomputes the flag on each snapshot.

	The watermark only moves on ``mark_viewed``; chat unread state is cleared
	per chat when a room is opened, never by visiting notifications.
	"""

	def __init__(
		self,
		store: DocumentStore,
		viewer_id: str,
		watermarks: WatermarkStore,
		*,
		review_collections: Optional[Sequence[str]] = None,
		on_change: Optional[Callable[["NotificationBadge"], Any]] = None,
		on_close: Optional[Callable[["NotificationBadge"], Any]] = None,
		clock: Callable[[], datetime] = now_utc,
	) -> None:
		self._store = store
		self.viewer_id = viewer_id
		self._watermarks = watermarks
		if review_collections is None:
			review_collections = settings.review_collections
		self.review_collections = tuple(review_collections)
		self._on_change = on_change
		self._on_close = on_close
		self._clock = clock
		self._unsubscribes: List[Unsubscribe] = []
		self._chats: List[Chat] = []
		self._notifications: List[Dict[str, Any]] = []
		self._reviews: Dict[str, List[Dict[str, Any]]] = {}
		self.watermark_ms = 0
		self._last_state: Optional[bool] = None

	@property
	def is_open(self) -> bool:
		return bool(self._unsubscribes)

	def open(self) -> None:
		if self.is_open:
			return
		self.watermark_ms = self._watermarks.load(self.viewer_id)
		self._unsubscribes.append(
			self._store.on_query_snapshot(
				Query(CHATS).where("participants", "array-contains", self.viewer_id),
				self._on_chats,
			)
		)
		self._unsubscribes.append(
			self._store.on_query_snapshot(
				Query(NOTIFICATIONS).where("userId", "==", self.viewer_id),
				self._on_notifications,
			)
		)
		for collection in self.review_collections:
			self._unsubscribes.append(
				self._store.on_query_snapshot(
					Query(collection).where("userId", "==", self.viewer_id),
					partial(self._on_reviews, collection),
				)
			)
		logger.debug("notification badge opened viewer=%s sources=%d", self.viewer_id, len(self._unsubscribes))

	def close(self) -> None:
		was_open = self.is_open
		for unsubscribe in self._unsubscribes:
			unsubscribe()
		self._unsubscribes.clear()
		if was_open and self._on_close is not None:
			self._on_close(self)

	def _on_chats(self, snapshots: List[DocumentSnapshot]) -> None:
		self._chats = [Chat.from_snapshot(snapshot) for snapshot in snapshots]
		self._recompute()

	def _on_notifications(self, snapshots: List[DocumentSnapshot]) -> None:
		self._notifications = [snapshot.to_dict() for snapshot in snapshots]
		self._recompute()

	def _on_reviews(self, collection: str, snapshots: List[DocumentSnapshot]) -> None:
		self._reviews[collection] = [snapshot.to_dict() for snapshot in snapshots]
		self._recompute()

	@property
	def has_unread_chats(self) -> bool:
		return aggregation.has_unread_chats(self._chats, self.viewer_id)

	@property
	def has_unread_notifications(self) -> bool:
		if any_unread_notifications(self._notifications, self.watermark_ms):
			return True
		return any(any_unread_replies(docs, self.watermark_ms) for docs in self._reviews.values())

	@property
	def has_unread(self) -> bool:
		return self.has_unread_chats or self.has_unread_notifications

	def mark_viewed(self, now: Optional[datetime] = None) -> int:
		"""Move the watermark to ``now``; called when the notifications view is visited."""
		self.watermark_ms = to_millis(now or self._clock())
		self._watermarks.save(self.viewer_id, self.watermark_ms)
		logger.debug("notifications viewed viewer=%s watermark=%d", self.viewer_id, self.watermark_ms)
		self._recompute()
		return self.watermark_ms

	def _recompute(self) -> None:
		state = self.has_unread
		if state == self._last_state:
			return
		self._last_state = state
		obs_metrics.set_badge_state(state)
		if self._on_change is not None:
			self._on_change(self)


__all__ = [
	"NotificationBadge",
	"any_unread_notifications",
	"any_unread_replies",
	"notification_is_unread",
	"review_reply_is_unread",
]
