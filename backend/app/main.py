"""Application root: builds the engine's collaborators and owns their lifecycle."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, List, Optional

from app.domain.chat import ChatListView, ChatRoom, ChatService, DebouncedTasks
from app.domain.notifications import FileWatermarkStore, NotificationBadge, WatermarkStore
from app.domain.presence import PresenceTracker, SessionLifecycleManager
from app.infra.auth import LocalAuthProvider
from app.infra.hooks import BEFORE_UNLOAD, VISIBILITY_CHANGE, LifecycleHooks
from app.infra.redis import redis_client
from app.infra.store import DocumentStore, MemoryDocumentStore, RedisDocumentStore
from app.obs import init as obs_init
from app.settings import settings

logger = logging.getLogger(__name__)


def build_store(auth: LocalAuthProvider) -> DocumentStore:
	if settings.store_backend == "redis":
		return RedisDocumentStore(redis_client, auth=auth)
	return MemoryDocumentStore(auth=auth)


class ClientRuntime:
	"""Explicitly constructed replacement for a process-wide presence singleton.

	``async with ClientRuntime() as runtime`` runs ``init`` and ``destroy``;
	views created through the factory methods are closed on ``destroy`` and
	dropped from the runtime as soon as they close.
	"""

	def __init__(
		self,
		*,
		store: Optional[DocumentStore] = None,
		auth: Optional[LocalAuthProvider] = None,
		hooks: Optional[LifecycleHooks] = None,
		watermarks: Optional[WatermarkStore] = None,
	) -> None:
		obs_init()
		self.auth = auth or LocalAuthProvider()
		self._owns_store = store is None
		self.store = store or build_store(self.auth)
		if store is not None:
			store.bind_auth(self.auth)
		self.hooks = hooks or LifecycleHooks()
		self.watermarks = watermarks or FileWatermarkStore(settings.watermark_path)
		self.presence = PresenceTracker(self.store, self.auth)
		self.session = SessionLifecycleManager(self.auth, self.store, self.presence, self.hooks)
		self.chats = ChatService(self.store)
		self.scheduler = DebouncedTasks()
		self._views: List[Any] = []

	@property
	def user_id(self) -> Optional[str]:
		user = self.auth.current_user
		return user.id if user else None

	def _require_user(self, user_id: Optional[str]) -> str:
		resolved = user_id or self.user_id
		if not resolved:
			raise RuntimeError("no signed-in user")
		return resolved

	async def init(self) -> None:
		await self.session.init()

	def _release_view(self, view: Any) -> None:
		if view in self._views:
			self._views.remove(view)

	async def destroy(self) -> None:
		for view in list(self._views):
			view.close()
		self._views.clear()
		self.session.destroy()
		await self.scheduler.aclose()
		await self.presence.aclose()
		await self.store.drain()
		if self._owns_store:
			await self.store.aclose()
		logger.info("client runtime destroyed")

	async def __aenter__(self) -> "ClientRuntime":
		await self.init()
		return self

	async def __aexit__(self, *exc_info) -> None:
		await self.destroy()

	async def sign_in(self, user_id: str, *, display_name: Optional[str] = None) -> None:
		await self.auth.sign_in(user_id, display_name=display_name)

	async def sign_out(self) -> None:
		await self.session.sign_out()

	async def set_hidden(self, hidden: bool) -> None:
		await self.hooks.emit(VISIBILITY_CHANGE, hidden=hidden)

	async def before_unload(self) -> None:
		await self.hooks.emit(BEFORE_UNLOAD)

	def chat_list(
		self,
		user_id: Optional[str] = None,
		*,
		on_change: Optional[Callable[[ChatListView], Any]] = None,
	) -> ChatListView:
		view = ChatListView(
			self.store,
			self._require_user(user_id),
			on_change=on_change,
			on_close=self._release_view,
		)
		self._views.append(view)
		view.open()
		return view

	def chat_room(
		self,
		chat_id: str,
		user_id: Optional[str] = None,
		*,
		on_missing: Optional[Callable[[str], Any]] = None,
		on_change: Optional[Callable[[ChatRoom], Any]] = None,
	) -> ChatRoom:
		room = ChatRoom(
			self.chats,
			chat_id,
			self._require_user(user_id),
			scheduler=self.scheduler,
			on_missing=on_missing,
			on_change=on_change,
			on_close=self._release_view,
		)
		self._views.append(room)
		room.open()
		return room

	def notification_badge(
		self,
		user_id: Optional[str] = None,
		*,
		on_change: Optional[Callable[[NotificationBadge], Any]] = None,
	) -> NotificationBadge:
		badge = NotificationBadge(
			self.store,
			self._require_user(user_id),
			self.watermarks,
			on_change=on_change,
			on_close=self._release_view,
		)
		self._views.append(badge)
		badge.open()
		return badge


async def run_demo() -> None:
	"""Smoke run against the configured backend: two users exchange a message."""
	async with ClientRuntime() as runtime:
		await runtime.sign_in("demo-alice")
		chat = await runtime.chats.ensure_chat("demo-alice", "demo-bob")
		message_id = await runtime.chats.send_message(chat.id, "demo-alice", "hello")
		logger.info("demo message sent chat=%s message=%s", chat.id, message_id)
		await runtime.sign_out()


if __name__ == "__main__":
	asyncio.run(run_demo())
