"""Live chat list: one chats query plus one profile subscription per counterpart."""

from __future__ import annotations

import logging
from datetime import datetime
from functools import partial
from typing import Any, Callable, Dict, List, Optional

from app.domain.common.timestamps import now_utc
from app.domain.presence.tracker import profile_path
from app.infra.store import DocumentSnapshot, DocumentStore, Query, Unsubscribe
from app.obs import metrics as obs_metrics

from . import aggregation
from .models import CHATS, Chat

logger = logging.getLogger(__name__)


class ChatListView:
	"""Keeps the viewer's chats and counterpart profiles current.

	Profile subscriptions follow the deduplicated set: one is created when a
	counterpart first appears and removed when it drops out, so the number of
	live profile listeners equals the number of distinct partners.
	"""

	def __init__(
		self,
		store: DocumentStore,
		viewer_id: str,
		*,
		on_change: Optional[Callable[["ChatListView"], Any]] = None,
		on_close: Optional[Callable[["ChatListView"], Any]] = None,
		clock: Callable[[], datetime] = now_utc,
	) -> None:
		self._store = store
		self.viewer_id = viewer_id
		self._on_change = on_change
		self._on_close = on_close
		self._clock = clock
		self._chats: List[Chat] = []
		self._profiles: Dict[str, Optional[Dict[str, Any]]] = {}
		self._profile_unsubscribes: Dict[str, Unsubscribe] = {}
		self._unsubscribe_chats: Optional[Unsubscribe] = None
		self._collapsed = 0

	@property
	def is_open(self) -> bool:
		return self._unsubscribe_chats is not None

	@property
	def profile_subscription_count(self) -> int:
		return len(self._profile_unsubscribes)

	@property
	def chats(self) -> List[Chat]:
		return list(self._chats)

	def open(self) -> None:
		if self.is_open:
			return
		query = Query(CHATS).where("participants", "array-contains", self.viewer_id)
		self._unsubscribe_chats = self._store.on_query_snapshot(query, self._on_chats)
		logger.debug("chat list opened viewer=%s", self.viewer_id)

	def close(self) -> None:
		was_open = self.is_open
		if self._unsubscribe_chats is not None:
			self._unsubscribe_chats()
			self._unsubscribe_chats = None
		for unsubscribe in self._profile_unsubscribes.values():
			unsubscribe()
		self._profile_unsubscribes.clear()
		self._profiles.clear()
		logger.debug("chat list closed viewer=%s", self.viewer_id)
		if was_open and self._on_close is not None:
			self._on_close(self)

	def __enter__(self) -> "ChatListView":
		self.open()
		return self

	def __exit__(self, *exc_info) -> None:
		self.close()

	def _on_chats(self, snapshots: List[DocumentSnapshot]) -> None:
		if not self.is_open:
			return
		self._chats = [Chat.from_snapshot(snapshot) for snapshot in snapshots]
		deduped = aggregation.dedupe_by_counterpart(self._chats, self.viewer_id)
		listed = sum(1 for chat in self._chats if aggregation.is_listed(chat, self.viewer_id))
		collapsed = listed - len(deduped)
		if collapsed > self._collapsed:
			obs_metrics.inc_chat_duplicates(collapsed - self._collapsed)
		self._collapsed = collapsed
		self._reconcile_profiles({chat.counterpart(self.viewer_id) for chat in deduped} - {None})
		self._changed()

	def _reconcile_profiles(self, counterparts: set) -> None:
		for user_id in list(self._profile_unsubscribes):
			if user_id not in counterparts:
				self._profile_unsubscribes.pop(user_id)()
				self._profiles.pop(user_id, None)
		for user_id in sorted(counterparts):
			if user_id not in self._profile_unsubscribes:
				self._profile_unsubscribes[user_id] = self._store.on_snapshot(
					profile_path(user_id),
					partial(self._on_profile, user_id),
				)

	def _on_profile(self, user_id: str, snapshot: DocumentSnapshot) -> None:
		if user_id not in self._profile_unsubscribes:
			return
		self._profiles[user_id] = snapshot.to_dict() if snapshot.exists else None
		self._changed()

	def _changed(self) -> None:
		if self._on_change is not None:
			self._on_change(self)

	def visible(
		self,
		tab: str = aggregation.TAB_ALL,
		status: str = aggregation.STATUS_ALL,
		search: str = "",
	) -> List[aggregation.ChatRow]:
		return aggregation.build_rows(
			self._chats,
			self.viewer_id,
			self._profiles,
			tab=tab,
			status=status,
			search=search,
			now=self._clock(),
		)

	def tab_counts(self) -> Dict[str, int]:
		return aggregation.tab_counts(self._chats, self.viewer_id)

	def has_unread(self) -> bool:
		return aggregation.has_unread_chats(self._chats, self.viewer_id)


__all__ = ["ChatListView"]
