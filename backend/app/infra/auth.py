"""Authentication provider seam.

The auth provider owns credentials; the engine only observes signed-in and
signed-out transitions and asks it to sign out.
"""

from __future__ import annotations

import inspect
import itertools
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)

AuthListener = Callable[[Optional["AuthenticatedUser"]], Any]


@dataclass(slots=True, frozen=True)
class AuthenticatedUser:
	id: str
	display_name: Optional[str] = None


class LocalAuthProvider:
	"""In-process auth provider emitting state changes to registered listeners.

	Listeners run in registration order and coroutine listeners are awaited, so
	``sign_in``/``sign_out`` return once every observer has reacted.
	"""

	def __init__(self) -> None:
		self._user: Optional[AuthenticatedUser] = None
		self._listeners: Dict[int, AuthListener] = {}
		self._ids = itertools.count(1)

	@property
	def current_user(self) -> Optional[AuthenticatedUser]:
		return self._user

	@property
	def listener_count(self) -> int:
		return len(self._listeners)

	def on_auth_state_changed(self, listener: AuthListener) -> Callable[[], None]:
		listener_id = next(self._ids)
		self._listeners[listener_id] = listener

		def unsubscribe() -> None:
			self._listeners.pop(listener_id, None)

		return unsubscribe

	async def sign_in(self, user_id: str, *, display_name: Optional[str] = None) -> AuthenticatedUser:
		user_id = str(user_id).strip()
		if not user_id:
			raise ValueError("user id required")
		user = AuthenticatedUser(id=user_id, display_name=display_name)
		self._user = user
		logger.info("auth signed in user=%s", user_id)
		await self._emit(user)
		return user

	async def sign_out(self) -> None:
		if self._user is None:
			return
		previous = self._user.id
		self._user = None
		logger.info("auth signed out user=%s", previous)
		await self._emit(None)

	async def _emit(self, user: Optional[AuthenticatedUser]) -> None:
		for listener in list(self._listeners.values()):
			result = listener(user)
			if inspect.isawaitable(result):
				await result


__all__ = ["AuthenticatedUser", "LocalAuthProvider"]
