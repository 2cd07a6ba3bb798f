"""Document store used for profiles, chats, messages and notifications."""

from app.infra.store.base import (
	DocumentSnapshot,
	DocumentStore,
	Filter,
	NotFound,
	PermissionDenied,
	Query,
	StoreError,
	Unsubscribe,
	WriteBatch,
	default_rules,
)
from app.infra.store.fields import DELETE_FIELD, SERVER_TIMESTAMP, ArrayRemove, ArrayUnion, Increment
from app.infra.store.memory import MemoryDocumentStore
from app.infra.store.redis_store import RedisDocumentStore

__all__ = [
	"ArrayRemove",
	"ArrayUnion",
	"DELETE_FIELD",
	"DocumentSnapshot",
	"DocumentStore",
	"Filter",
	"Increment",
	"MemoryDocumentStore",
	"NotFound",
	"PermissionDenied",
	"Query",
	"RedisDocumentStore",
	"SERVER_TIMESTAMP",
	"StoreError",
	"Unsubscribe",
	"WriteBatch",
	"default_rules",
]
