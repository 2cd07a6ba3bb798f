"""In-process document store used for local runs and tests."""

from __future__ import annotations

import asyncio
import copy
import itertools
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from app.infra.store.base import (
	DocumentSnapshot,
	DocumentStore,
	Query,
	Unsubscribe,
	Write,
	split_document_path,
)

logger = logging.getLogger(__name__)


class MemoryDocumentStore(DocumentStore):
	"""Dictionary-backed store with event-loop delivered live snapshots.

	Every write batch is applied without yielding, which makes it atomic with
	respect to other coroutines. Listeners receive snapshots through
	``loop.call_soon`` so they never run inside the writer's stack frame, and a
	listener removed before delivery is skipped.
	"""

	backend = "memory"

	def __init__(self, **kwargs: Any) -> None:
		super().__init__(**kwargs)
		self._docs: Dict[str, Dict[str, Any]] = {}
		self._ids = itertools.count(1)
		self._doc_listeners: Dict[int, Tuple[str, Callable[[DocumentSnapshot], Any]]] = {}
		self._query_listeners: Dict[int, Tuple[Query, Callable[[List[DocumentSnapshot]], Any]]] = {}
		self.write_count = 0

	@property
	def listener_count(self) -> int:
		return len(self._doc_listeners) + len(self._query_listeners)

	def _snapshot(self, path: str) -> DocumentSnapshot:
		_, doc_id = split_document_path(path)
		data = self._docs.get(path)
		return DocumentSnapshot(id=doc_id, path=path, data=copy.deepcopy(data) if data is not None else None)

	def _collection_snapshots(self, collection: str) -> List[DocumentSnapshot]:
		snapshots: List[DocumentSnapshot] = []
		for path in list(self._docs):
			parent, _ = split_document_path(path)
			if parent == collection:
				snapshots.append(self._snapshot(path))
		return snapshots

	async def get(self, path: str) -> DocumentSnapshot:
		await asyncio.sleep(0)
		return self._snapshot(path)

	async def query(self, query: Query) -> List[DocumentSnapshot]:
		await asyncio.sleep(0)
		return query.apply(self._collection_snapshots(query.collection))

	async def _commit(self, writes: List[Write]) -> None:
		# One suspension point before the batch lands, like a network round trip.
		await asyncio.sleep(0)
		now = self._clock()
		staged: Dict[str, Optional[Dict[str, Any]]] = {}
		for write in writes:
			current = staged[write.path] if write.path in staged else self._docs.get(write.path)
			staged[write.path] = self._next_state(write, current, now)
		for path, state in staged.items():
			if state is None:
				self._docs.pop(path, None)
			else:
				self._docs[path] = state
		self.write_count += len(writes)
		self._notify(list(staged))

	def _notify(self, paths: List[str]) -> None:
		loop = asyncio.get_running_loop()
		changed_collections = set()
		for path in paths:
			parent, _ = split_document_path(path)
			changed_collections.add(parent)
			for listener_id, (listened_path, callback) in list(self._doc_listeners.items()):
				if listened_path == path:
					loop.call_soon(self._deliver_doc, listener_id, callback, self._snapshot(path))
		for listener_id, (query, callback) in list(self._query_listeners.items()):
			if query.collection in changed_collections:
				loop.call_soon(self._deliver_query, listener_id, callback)

	def _deliver_doc(self, listener_id: int, callback: Callable[[DocumentSnapshot], Any], snapshot: DocumentSnapshot) -> None:
		if listener_id not in self._doc_listeners:
			return
		self._invoke(callback, snapshot)

	def _deliver_query(self, listener_id: int, callback: Callable[[List[DocumentSnapshot]], Any]) -> None:
		entry = self._query_listeners.get(listener_id)
		if entry is None:
			return
		query, _ = entry
		# Evaluated at delivery time so a burst of writes yields current results.
		self._invoke(callback, query.apply(self._collection_snapshots(query.collection)))

	def on_snapshot(self, path: str, callback: Callable[[DocumentSnapshot], Any]) -> Unsubscribe:
		split_document_path(path)
		listener_id = next(self._ids)
		self._doc_listeners[listener_id] = (path, callback)
		self._listeners_changed()
		asyncio.get_running_loop().call_soon(self._deliver_doc, listener_id, callback, self._snapshot(path))

		def unsubscribe() -> None:
			if self._doc_listeners.pop(listener_id, None) is not None:
				self._listeners_changed()

		return unsubscribe

	def on_query_snapshot(self, query: Query, callback: Callable[[List[DocumentSnapshot]], Any]) -> Unsubscribe:
		listener_id = next(self._ids)
		self._query_listeners[listener_id] = (query, callback)
		self._listeners_changed()
		asyncio.get_running_loop().call_soon(self._deliver_query, listener_id, callback)

		def unsubscribe() -> None:
			if self._query_listeners.pop(listener_id, None) is not None:
				self._listeners_changed()

		return unsubscribe

	async def aclose(self) -> None:
		self._doc_listeners.clear()
		self._query_listeners.clear()
		self._listeners_changed()
		await super().aclose()


__all__ = ["MemoryDocumentStore"]
