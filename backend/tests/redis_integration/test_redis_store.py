import asyncio
import json
from datetime import datetime, timezone

import pytest
import pytest_asyncio

from app.domain.common.timestamps import to_millis
from app.infra.store import (
    SERVER_TIMESTAMP,
    ArrayUnion,
    Increment,
    NotFound,
    Query,
    RedisDocumentStore,
)

FIXED_NOW = datetime(2024, 5, 1, 9, 30, 15, 250000, tzinfo=timezone.utc)


@pytest_asyncio.fixture
async def redis_store(fake_redis):
    store = RedisDocumentStore(fake_redis, rules=None, clock=lambda: FIXED_NOW, prefix="t:")
    try:
        yield store
    finally:
        await store.aclose()


@pytest.mark.asyncio
async def test_field_operations_and_epoch_encoding(redis_store, fake_redis):
    await redis_store.set("chats/c1", {"participants": ["a", "b"], "unseenCounts": {"a": 1}})
    await redis_store.update(
        "chats/c1",
        {
            "unseenCounts.b": Increment(2),
            "mutedBy": ArrayUnion("a"),
            "updatedAt": SERVER_TIMESTAMP,
        },
    )

    raw = json.loads(await fake_redis.get("t:doc:chats/c1"))
    assert raw["updatedAt"] == {"seconds": int(FIXED_NOW.timestamp()), "nanoseconds": 250000000}
    assert await fake_redis.smembers("t:col:chats") == {"c1"}

    snap = await redis_store.get("chats/c1")
    assert snap.get("unseenCounts") == {"a": 1, "b": 2}
    assert snap.get("mutedBy") == ["a"]
    assert to_millis(snap.get("updatedAt")) == to_millis(FIXED_NOW)


@pytest.mark.asyncio
async def test_concurrent_increments_are_not_lost(redis_store):
    await redis_store.set("chats/c1", {"unseenCounts": {"b": 0}})
    await asyncio.gather(*(redis_store.update("chats/c1", {"unseenCounts.b": Increment(1)}) for _ in range(10)))
    assert (await redis_store.get("chats/c1")).get("unseenCounts.b") == 10


@pytest.mark.asyncio
async def test_update_missing_document_raises_and_delete_clears_index(redis_store, fake_redis):
    with pytest.raises(NotFound):
        await redis_store.update("chats/missing", {"x": 1})

    await redis_store.set("chats/c1", {"x": 1})
    await redis_store.delete("chats/c1")
    assert not (await redis_store.get("chats/c1")).exists
    assert await fake_redis.smembers("t:col:chats") == set()


@pytest.mark.asyncio
async def test_batch_and_query_filters(redis_store):
    batch = redis_store.batch()
    batch.set("chats/c1", {"participants": ["a", "b"]})
    batch.set("chats/c2", {"participants": ["b", "c"]})
    batch.set("chats/c3", {"participants": ["a", "c"]})
    await batch.commit()

    results = await redis_store.query(Query("chats").where("participants", "array-contains", "a"))
    assert sorted(snap.id for snap in results) == ["c1", "c3"]


@pytest.mark.asyncio
async def test_listeners_receive_published_changes(redis_store, poll):
    docs = []
    lists = []
    stop_doc = redis_store.on_snapshot("profiles/alice", docs.append)
    stop_query = redis_store.on_query_snapshot(Query("profiles"), lists.append)
    assert redis_store.listener_count == 2

    await poll(lambda: docs and lists)
    assert not docs[0].exists
    assert lists[0] == []

    await redis_store.set("profiles/alice", {"online": True})
    await poll(lambda: docs[-1].exists and docs[-1].get("online") is True)
    await poll(lambda: lists[-1] and lists[-1][0].id == "alice")

    stop_doc()
    stop_query()
    stop_doc()
    assert redis_store.listener_count == 0
