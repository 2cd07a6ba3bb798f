"""Document store contract shared by the memory and Redis backends."""

from __future__ import annotations

import abc
import asyncio
import copy
import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, TYPE_CHECKING

import ulid

from app.domain.common.timestamps import now_utc, to_millis
from app.infra.store import fields
from app.obs import metrics as obs_metrics

if TYPE_CHECKING:  # pragma: no cover - typing only
	from app.infra.auth import LocalAuthProvider

logger = logging.getLogger(__name__)

Unsubscribe = Callable[[], None]
Rules = Callable[[Optional[str], str, str], bool]

_OPERATORS = ("==", "!=", "array-contains", "in")


class StoreError(Exception):
	"""Base class for store failures; plain instances represent transient write errors."""


class PermissionDenied(StoreError):
	"""Raised when the bound credentials may not perform a write."""


class NotFound(StoreError):
	"""Raised when a partial update targets a missing document."""


def split_document_path(path: str) -> Tuple[str, str]:
	parts = [part for part in str(path).strip("/").split("/") if part]
	if len(parts) < 2 or len(parts) % 2:
		raise ValueError(f"not a document path: {path!r}")
	return "/".join(parts[:-1]), parts[-1]


def validate_collection_path(path: str) -> str:
	parts = [part for part in str(path).strip("/").split("/") if part]
	if not parts or len(parts) % 2 == 0:
		raise ValueError(f"not a collection path: {path!r}")
	return "/".join(parts)


def default_rules(uid: Optional[str], operation: str, path: str) -> bool:
	"""Owner-only profile writes, signed-in writes everywhere else."""
	if not uid:
		return False
	collection, doc_id = split_document_path(path)
	if collection == "profiles":
		return doc_id == uid
	return True


@dataclass(slots=True)
class DocumentSnapshot:
	id: str
	path: str
	data: Optional[Dict[str, Any]] = None

	@property
	def exists(self) -> bool:
		return self.data is not None

	def get(self, field_path: str, default: Any = None) -> Any:
		if self.data is None:
			return default
		value = fields.get_field(self.data, field_path)
		return default if value is None else value

	def to_dict(self) -> Dict[str, Any]:
		return copy.deepcopy(self.data) if self.data is not None else {}


@dataclass(frozen=True, slots=True)
class Filter:
	field: str
	op: str
	value: Any

	def __post_init__(self) -> None:
		if self.op not in _OPERATORS:
			raise ValueError(f"unsupported operator: {self.op}")

	def matches(self, data: Mapping[str, Any]) -> bool:
		current = fields.get_field(data, self.field)
		if self.op == "==":
			return current == self.value
		if self.op == "!=":
			return current is not None and current != self.value
		if self.op == "array-contains":
			return isinstance(current, list) and self.value in current
		return current in self.value


@dataclass(frozen=True)
class Query:
	collection: str
	filters: Tuple[Filter, ...] = ()
	order_by: Optional[str] = None
	descending: bool = False
	limit: Optional[int] = None

	def __post_init__(self) -> None:
		object.__setattr__(self, "collection", validate_collection_path(self.collection))
		object.__setattr__(self, "filters", tuple(self.filters))

	def where(self, field_path: str, op: str, value: Any) -> "Query":
		return Query(
			collection=self.collection,
			filters=self.filters + (Filter(field_path, op, value),),
			order_by=self.order_by,
			descending=self.descending,
			limit=self.limit,
		)

	def matches(self, data: Mapping[str, Any]) -> bool:
		return all(item.matches(data) for item in self.filters)

	def apply(self, snapshots: Iterable[DocumentSnapshot]) -> List[DocumentSnapshot]:
		"""Filter, order and limit snapshots; timestamp order ties break on document id."""
		matched = [snap for snap in snapshots if snap.data is not None and self.matches(snap.data)]
		if self.order_by:
			order_field = self.order_by
			matched.sort(
				key=lambda snap: (_order_value(fields.get_field(snap.data or {}, order_field)), snap.id),
				reverse=self.descending,
			)
		else:
			matched.sort(key=lambda snap: snap.id)
		if self.limit is not None:
			matched = matched[: max(0, int(self.limit))]
		return matched


def _order_value(value: Any) -> Any:
	if isinstance(value, (int, float)) and not isinstance(value, bool):
		return float(value)
	return float(to_millis(value))


@dataclass(slots=True)
class Write:
	kind: str  # set | update | delete
	path: str
	data: Dict[str, Any] = field(default_factory=dict)
	merge: bool = False


class WriteBatch:
	"""Collects writes and commits them atomically."""

	def __init__(self, store: "DocumentStore") -> None:
		self._store = store
		self._writes: List[Write] = []
		self._committed = False

	def set(self, path: str, data: Mapping[str, Any], *, merge: bool = False) -> "WriteBatch":
		self._writes.append(Write("set", path, dict(data), merge))
		return self

	def update(self, path: str, data: Mapping[str, Any]) -> "WriteBatch":
		self._writes.append(Write("update", path, dict(data)))
		return self

	def delete(self, path: str) -> "WriteBatch":
		self._writes.append(Write("delete", path))
		return self

	def __len__(self) -> int:
		return len(self._writes)

	async def commit(self) -> None:
		if self._committed:
			raise StoreError("batch already committed")
		self._committed = True
		if self._writes:
			await self._store.commit(self._writes)


class DocumentStore(abc.ABC):
	"""Async document/collection store with live subscriptions."""

	backend = "abstract"

	def __init__(
		self,
		*,
		auth: "LocalAuthProvider | None" = None,
		rules: Optional[Rules] = default_rules,
		clock: Callable[[], datetime] = now_utc,
	) -> None:
		self._auth = auth
		self._rules = rules
		self._clock = clock
		self._callback_tasks: set[asyncio.Task] = set()

	def bind_auth(self, auth: "LocalAuthProvider | None") -> None:
		self._auth = auth

	def new_id(self) -> str:
		return str(ulid.new())

	def batch(self) -> WriteBatch:
		return WriteBatch(self)

	async def set(self, path: str, data: Mapping[str, Any], *, merge: bool = False) -> None:
		await self.commit([Write("set", path, dict(data), merge)])

	async def update(self, path: str, data: Mapping[str, Any]) -> None:
		await self.commit([Write("update", path, dict(data))])

	async def delete(self, path: str) -> None:
		await self.commit([Write("delete", path)])

	async def add(self, collection: str, data: Mapping[str, Any]) -> str:
		doc_id = self.new_id()
		await self.set(f"{validate_collection_path(collection)}/{doc_id}", data)
		return doc_id

	async def commit(self, writes: Sequence[Write]) -> None:
		for write in writes:
			split_document_path(write.path)
			self._authorize(write.kind, write.path)
		await self._commit(list(writes))

	def _authorize(self, operation: str, path: str) -> None:
		if self._auth is None or self._rules is None:
			return
		user = self._auth.current_user
		uid = user.id if user else None
		if not self._rules(uid, operation, path):
			raise PermissionDenied(f"{operation} denied on {path}")

	def _next_state(self, write: Write, current: Optional[Dict[str, Any]], now: datetime) -> Optional[Dict[str, Any]]:
		if write.kind == "delete":
			return None
		if write.kind == "update":
			if current is None:
				raise NotFound(write.path)
			return fields.apply_update(current, write.data, now)
		if write.merge and current is not None:
			return fields.merge_set(current, write.data, now)
		return fields.replace_document(write.data, now)

	def _invoke(self, callback: Callable[[Any], Any], payload: Any) -> None:
		"""Run a listener callback; coroutine results are scheduled as tracked tasks."""
		try:
			result = callback(payload)
		except Exception:
			logger.exception("snapshot listener failed")
			return
		if inspect.isawaitable(result):
			task = asyncio.ensure_future(result)
			self._callback_tasks.add(task)
			task.add_done_callback(self._callback_done)

	def _callback_done(self, task: asyncio.Task) -> None:
		self._callback_tasks.discard(task)
		if task.cancelled():
			return
		exc = task.exception()
		if exc is not None:
			logger.error("snapshot listener task failed", exc_info=exc)

	def _listeners_changed(self) -> None:
		obs_metrics.set_store_listeners(self.backend, self.listener_count)

	async def drain(self) -> None:
		"""Wait for coroutine callbacks scheduled by listeners."""
		while self._callback_tasks:
			await asyncio.gather(*list(self._callback_tasks), return_exceptions=True)

	@abc.abstractmethod
	async def _commit(self, writes: List[Write]) -> None:
		...

	@abc.abstractmethod
	async def get(self, path: str) -> DocumentSnapshot:
		...

	@abc.abstractmethod
	async def query(self, query: Query) -> List[DocumentSnapshot]:
		...

	@abc.abstractmethod
	def on_snapshot(self, path: str, callback: Callable[[DocumentSnapshot], Any]) -> Unsubscribe:
		...

	@abc.abstractmethod
	def on_query_snapshot(self, query: Query, callback: Callable[[List[DocumentSnapshot]], Any]) -> Unsubscribe:
		...

	@property
	@abc.abstractmethod
	def listener_count(self) -> int:
		...

	async def aclose(self) -> None:
		for task in list(self._callback_tasks):
			task.cancel()
		await asyncio.gather(*list(self._callback_tasks), return_exceptions=True)
		self._callback_tasks.clear()

__all__ = [
	"DocumentSnapshot",
	"DocumentStore",
	"Filter",
	"NotFound",
	"PermissionDenied",
	"Query",
	"StoreError",
	"Unsubscribe",
	"Write",
	"WriteBatch",
	"default_rules",
	"split_document_path",
	"validate_collection_path",
]
