"""Redis-backed document store.

Layout:
- ``doc:{path}`` holds the JSON document body
- ``col:{collection}`` is the set of document ids in a collection
- writes publish on ``chan:doc:{path}`` and ``chan:col:{collection}``

Field operations (increments, array unions, server timestamps) are resolved
under WATCH/MULTI so concurrent writers never lose each other's changes.
Datetimes are stored as epoch-seconds objects.
"""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import suppress
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from redis.exceptions import RedisError, WatchError

from app.domain.common.timestamps import to_epoch_seconds
from app.infra.redis import redis_client
from app.infra.store.base import (
	DocumentSnapshot,
	DocumentStore,
	Query,
	StoreError,
	Unsubscribe,
	Write,
	split_document_path,
)

logger = logging.getLogger(__name__)

_MAX_WATCH_RETRIES = 50
_POLL_TIMEOUT_SECONDS = 1.0


def _encode_default(value: Any) -> Any:
	if isinstance(value, datetime):
		return to_epoch_seconds(value)
	if isinstance(value, (set, tuple)):
		return list(value)
	raise TypeError(f"cannot serialise {type(value).__name__}")


def encode_document(data: Dict[str, Any]) -> str:
	return json.dumps(data, default=_encode_default, separators=(",", ":"))


def decode_document(raw: Optional[str]) -> Optional[Dict[str, Any]]:
	if raw is None:
		return None
	if isinstance(raw, bytes):
		raw = raw.decode("utf-8")
	return json.loads(raw)


class RedisDocumentStore(DocumentStore):
	backend = "redis"

	def __init__(self, client=redis_client, *, prefix: str = "", **kwargs: Any) -> None:
		super().__init__(**kwargs)
		self._client = client
		self._prefix = prefix
		self._listener_tasks: Dict[int, asyncio.Task] = {}
		self._next_listener = 0

	def _doc_key(self, path: str) -> str:
		return f"{self._prefix}doc:{path}"

	def _col_key(self, collection: str) -> str:
		return f"{self._prefix}col:{collection}"

	def _doc_channel(self, path: str) -> str:
		return f"{self._prefix}chan:doc:{path}"

	def _col_channel(self, collection: str) -> str:
		return f"{self._prefix}chan:col:{collection}"

	@property
	def listener_count(self) -> int:
		return len(self._listener_tasks)

	async def get(self, path: str) -> DocumentSnapshot:
		_, doc_id = split_document_path(path)
		try:
			raw = await self._client.get(self._doc_key(path))
		except RedisError as exc:
			raise StoreError(str(exc)) from exc
		return DocumentSnapshot(id=doc_id, path=path, data=decode_document(raw))

	async def query(self, query: Query) -> List[DocumentSnapshot]:
		try:
			ids = sorted(await self._client.smembers(self._col_key(query.collection)))
			if not ids:
				return []
			paths = [f"{query.collection}/{doc_id}" for doc_id in ids]
			raws = await self._client.mget([self._doc_key(path) for path in paths])
		except RedisError as exc:
			raise StoreError(str(exc)) from exc
		snapshots = [
			DocumentSnapshot(id=doc_id, path=path, data=decode_document(raw))
			for doc_id, path, raw in zip(ids, paths, raws)
		]
		return query.apply(snapshots)

	async def _commit(self, writes: List[Write]) -> None:
		paths = list(dict.fromkeys(write.path for write in writes))
		keys = [self._doc_key(path) for path in paths]
		try:
			async with self._client.pipeline(transaction=True) as pipe:
				for _attempt in range(_MAX_WATCH_RETRIES):
					try:
						await pipe.watch(*keys)
						staged: Dict[str, Optional[Dict[str, Any]]] = {}
						for path, key in zip(paths, keys):
							staged[path] = decode_document(await pipe.get(key))
						now = self._clock()
						for write in writes:
							staged[write.path] = self._next_state(write, staged[write.path], now)
						pipe.multi()
						for path, state in staged.items():
							collection, doc_id = split_document_path(path)
							if state is None:
								pipe.delete(self._doc_key(path))
								pipe.srem(self._col_key(collection), doc_id)
							else:
								pipe.set(self._doc_key(path), encode_document(state))
								pipe.sadd(self._col_key(collection), doc_id)
						await pipe.execute()
						break
					except WatchError:
						logger.debug("document write contended, retrying paths=%s", paths)
						continue
				else:
					raise StoreError("write contention retries exhausted")
			await self._publish(paths)
		except RedisError as exc:
			raise StoreError(str(exc)) from exc

	async def _publish(self, paths: List[str]) -> None:
		collections = set()
		for path in paths:
			collection, _ = split_document_path(path)
			collections.add(collection)
			await self._client.publish(self._doc_channel(path), "1")
		for collection in collections:
			await self._client.publish(self._col_channel(collection), "1")

	def _register(self, channel: str, fetch: Callable[[], Any], callback: Callable[[Any], Any]) -> Unsubscribe:
		self._next_listener += 1
		listener_id = self._next_listener
		task = asyncio.create_task(self._listen(channel, fetch, callback), name=f"store-listener:{channel}")
		self._listener_tasks[listener_id] = task
		self._listeners_changed()

		def unsubscribe() -> None:
			listener = self._listener_tasks.pop(listener_id, None)
			if listener is None:
				return
			listener.cancel()
			self._listeners_changed()

		return unsubscribe

	async def _listen(self, channel: str, fetch: Callable[[], Any], callback: Callable[[Any], Any]) -> None:
		pubsub = self._client.pubsub()
		try:
			await pubsub.subscribe(channel)
			self._invoke(callback, await fetch())
			while True:
				message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=_POLL_TIMEOUT_SECONDS)
				if message is None:
					continue
				self._invoke(callback, await fetch())
		except asyncio.CancelledError:
			raise
		except Exception:
			logger.exception("store listener failed channel=%s", channel)
		finally:
			with suppress(Exception):
				await pubsub.unsubscribe(channel)
			with suppress(Exception):
				await pubsub.aclose()

	def on_snapshot(self, path: str, callback: Callable[[DocumentSnapshot], Any]) -> Unsubscribe:
		split_document_path(path)
		return self._register(self._doc_channel(path), lambda: self.get(path), callback)

	def on_query_snapshot(self, query: Query, callback: Callable[[List[DocumentSnapshot]], Any]) -> Unsubscribe:
		return self._register(self._col_channel(query.collection), lambda: self.query(query), callback)

	async def aclose(self) -> None:
		tasks = list(self._listener_tasks.values())
		self._listener_tasks.clear()
		for task in tasks:
			task.cancel()
		await asyncio.gather(*tasks, return_exceptions=True)
		self._listeners_changed()
		await super().aclose()


__all__ = ["RedisDocumentStore", "decode_document", "encode_document"]
