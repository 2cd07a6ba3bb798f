"""Pure chat-list reducer: snapshots in, deduplicated/filtered/sorted rows out.

Every function here recomputes from its inputs and never mutates them, so it is
safe to call again on each snapshot regardless of arrival order.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional

from app.domain.chat.models import Chat
from app.domain.presence.status import format_last_seen, is_user_online

TAB_ALL = "all"
TAB_USER = "user"
TAB_OTHERS = "others"
TABS = (TAB_ALL, TAB_USER, TAB_OTHERS)

STATUS_ALL = "all"
STATUS_FAVORITES = "favorites"
STATUS_UNREAD = "unread"
STATUS_MUTED = "muted"
STATUS_BLOCKED = "blocked"
STATUSES = (STATUS_ALL, STATUS_FAVORITES, STATUS_UNREAD, STATUS_MUTED, STATUS_BLOCKED)


@dataclass(slots=True)
class ChatRow:
	chat: Chat
	counterpart_id: str
	profile: Optional[Dict[str, Any]]
	unseen: int
	is_blocked: bool
	is_muted: bool
	online: bool
	last_seen_label: str

	@property
	def chat_id(self) -> str:
		return self.chat.id

	@property
	def username(self) -> str:
		return counterpart_name(self.profile)


def counterpart_name(profile: Optional[Mapping[str, Any]]) -> str:
	if not profile:
		return ""
	for key in ("username", "displayName", "name"):
		value = profile.get(key)
		if value:
			return str(value)
	return ""


def is_listed(chat: Chat, viewer_id: str) -> bool:
	if len(chat.participants) != 2 or len(set(chat.participants)) != 2:
		return False
	if viewer_id not in chat.participants:
		return False
	return not chat.deleted_for(viewer_id)


def _recency(chat: Chat) -> tuple:
	return (chat.updated_ms, chat.id)


def dedupe_by_counterpart(chats: Iterable[Chat], viewer_id: str) -> List[Chat]:
	"""Keep one chat per counterpart: the most recently updated one.

	Missing ``updatedAt`` counts as zero; equal timestamps fall back to the
	larger document id so the choice does not depend on input order.
	"""
	canonical: Dict[str, Chat] = {}
	for chat in chats:
		if not is_listed(chat, viewer_id):
			continue
		counterpart = chat.counterpart(viewer_id)
		if counterpart is None:
			continue
		current = canonical.get(counterpart)
		if current is None or _recency(chat) > _recency(current):
			canonical[counterpart] = chat
	return [canonical[key] for key in sorted(canonical)]


def matches_tab(chat: Chat, viewer_id: str, tab: str) -> bool:
	if tab == TAB_USER:
		return chat.initiated_by(viewer_id)
	if tab == TAB_OTHERS:
		return not chat.initiated_by(viewer_id)
	return True


def matches_status(chat: Chat, viewer_id: str, status: str) -> bool:
	if status == STATUS_FAVORITES:
		return chat.is_favorite
	if status == STATUS_UNREAD:
		return chat.unseen_for(viewer_id) > 0
	if status == STATUS_MUTED:
		return chat.is_muted_by(viewer_id)
	if status == STATUS_BLOCKED:
		return chat.is_blocked_by(viewer_id)
	return True


def matches_search(chat: Chat, profile: Optional[Mapping[str, Any]], term: str) -> bool:
	needle = (term or "").strip().lower()
	if not needle:
		return True
	return needle in counterpart_name(profile).lower() or needle in chat.last_message.lower()


def sort_chats(chats: Iterable[Chat]) -> List[Chat]:
	"""Favorites first, then newest activity; document id keeps the order total."""
	by_recency = sorted(chats, key=lambda chat: (-chat.updated_ms, chat.id))
	return sorted(by_recency, key=lambda chat: not chat.is_favorite)


def build_rows(
	chats: Iterable[Chat],
	viewer_id: str,
	profiles: Mapping[str, Optional[Mapping[str, Any]]],
	*,
	tab: str = TAB_ALL,
	status: str = STATUS_ALL,
	search: str = "",
	now: Optional[datetime] = None,
) -> List[ChatRow]:
	if tab not in TABS:
		raise ValueError(f"unknown tab: {tab}")
	if status not in STATUSES:
		raise ValueError(f"unknown status filter: {status}")
	visible: List[Chat] = []
	for chat in dedupe_by_counterpart(chats, viewer_id):
		if not matches_tab(chat, viewer_id, tab):
			continue
		if not matches_status(chat, viewer_id, status):
			continue
		if not matches_search(chat, profiles.get(chat.counterpart(viewer_id) or ""), search):
			continue
		visible.append(chat)
	rows: List[ChatRow] = []
	for chat in sort_chats(visible):
		counterpart = chat.counterpart(viewer_id) or ""
		profile = profiles.get(counterpart)
		profile_dict = dict(profile) if profile else None
		online_flag = profile_dict.get("online") if profile_dict else None
		last_seen = profile_dict.get("lastSeen") if profile_dict else None
		rows.append(
			ChatRow(
				chat=chat,
				counterpart_id=counterpart,
				profile=profile_dict,
				unseen=chat.unseen_for(viewer_id),
				is_blocked=chat.is_blocked_by(viewer_id),
				is_muted=chat.is_muted_by(viewer_id),
				online=is_user_online(online_flag, last_seen, now) if profile_dict else False,
				last_seen_label=format_last_seen(last_seen, now),
			)
		)
	return rows


def tab_counts(chats: Iterable[Chat], viewer_id: str) -> Dict[str, int]:
	deduped = dedupe_by_counterpart(chats, viewer_id)
	mine = sum(1 for chat in deduped if chat.initiated_by(viewer_id))
	return {TAB_ALL: len(deduped), TAB_USER: mine, TAB_OTHERS: len(deduped) - mine}


def has_unread_chats(chats: Iterable[Chat], viewer_id: str) -> bool:
	for chat in dedupe_by_counterpart(chats, viewer_id):
		if chat.is_blocked_by(viewer_id) or chat.is_participant_blocked(viewer_id):
			continue
		if chat.unseen_for(viewer_id) > 0:
			return True
	return False


def find_canonical(chats: Iterable[Chat], viewer_id: str, counterpart_id: str) -> Optional[Chat]:
	for chat in dedupe_by_counterpart(chats, viewer_id):
		if chat.counterpart(viewer_id) == counterpart_id:
			return chat
	return None


__all__ = [
	"ChatRow",
	"STATUSES",
	"TABS",
	"build_rows",
	"counterpart_name",
	"dedupe_by_counterpart",
	"find_canonical",
	"has_unread_chats",
	"is_listed",
	"matches_search",
	"matches_status",
	"matches_tab",
	"sort_chats",
	"tab_counts",
]
