"""Host lifecycle hooks (page visibility, unload) exposed as an event registry."""

from __future__ import annotations

import inspect
import logging
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

VISIBILITY_CHANGE = "visibilitychange"
BEFORE_UNLOAD = "beforeunload"

HookListener = Callable[..., Any]


class LifecycleHooks:
	def __init__(self) -> None:
		self._listeners: Dict[str, List[HookListener]] = {}

	def add_listener(self, event: str, listener: HookListener) -> None:
		bucket = self._listeners.setdefault(event, [])
		if listener not in bucket:
			bucket.append(listener)

	def remove_listener(self, event: str, listener: HookListener) -> None:
		bucket = self._listeners.get(event)
		if not bucket:
			return
		if listener in bucket:
			bucket.remove(listener)
		if not bucket:
			self._listeners.pop(event, None)

	def listener_count(self, event: Optional[str] = None) -> int:
		if event is not None:
			return len(self._listeners.get(event, ()))
		return sum(len(bucket) for bucket in self._listeners.values())

	async def emit(self, event: str, **payload: Any) -> None:
		for listener in list(self._listeners.get(event, ())):
			try:
				result = listener(**payload)
				if inspect.isawaitable(result):
					await result
			except Exception:
				logger.exception("lifecycle hook failed event=%s", event)


__all__ = ["BEFORE_UNLOAD", "LifecycleHooks", "VISIBILITY_CHANGE"]
