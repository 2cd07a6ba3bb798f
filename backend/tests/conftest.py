import asyncio
import sys
from pathlib import Path

import pytest
import pytest_asyncio
from fakeredis.aioredis import FakeRedis

# Ensure backend package is importable when tests run from repo root
BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from app.infra.auth import LocalAuthProvider
from app.infra.store import MemoryDocumentStore
from app.settings import settings


@pytest_asyncio.fixture(autouse=True)
async def fake_redis():
    from app.infra.redis import redis_client, set_redis_client

    original = redis_client.client
    client = FakeRedis(decode_responses=True)
    set_redis_client(client)
    try:
        yield client
    finally:
        set_redis_client(original)
        await client.flushall()


@pytest.fixture(autouse=True)
def fast_settings():
    """Shrink timers so debounce/heartbeat behaviour is observable in tests."""
    overrides = {
        "presence_heartbeat_seconds": 0.05,
        "seen_debounce_seconds": 0.05,
        "sender_delivery_delay_seconds": 0.05,
        "notice_ttl_seconds": 3.0,
        "store_backend": "memory",
        "obs_enabled": False,
    }
    originals = {name: getattr(settings, name) for name in overrides}
    for name, value in overrides.items():
        setattr(settings, name, value)
    try:
        yield settings
    finally:
        for name, value in originals.items():
            setattr(settings, name, value)


@pytest.fixture
def auth():
    return LocalAuthProvider()


@pytest_asyncio.fixture
async def store():
    """Store without security rules; tests that exercise rules bind auth explicitly."""
    memory = MemoryDocumentStore(rules=None)
    try:
        yield memory
    finally:
        await memory.aclose()


async def wait_for(predicate, timeout: float = 2.0, interval: float = 0.01):
    """Poll ``predicate`` (sync or async) until it returns truthy or time runs out."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        result = predicate()
        if asyncio.iscoroutine(result):
            result = await result
        if result:
            return result
        if loop.time() >= deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


async def settle(store=None, rounds: int = 5):
    """Let queued snapshot callbacks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)
        if store is not None:
            await store.drain()


@pytest.fixture
def poll():
    return wait_for


@pytest.fixture
def flush():
    return settle
