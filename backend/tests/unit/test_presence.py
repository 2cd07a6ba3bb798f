import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from app.domain.presence import PresenceTracker, format_last_seen, is_user_online
from app.domain.common.timestamps import to_millis
from app.infra.auth import LocalAuthProvider
from app.infra.store import MemoryDocumentStore, StoreError

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    "online,age,expected",
    [
        (False, timedelta(seconds=30), True),
        (True, timedelta(minutes=10), False),
        (True, timedelta(minutes=3), True),
        (False, timedelta(minutes=3), False),
        (True, None, True),
        (None, None, False),
    ],
)
def test_is_user_online_combines_flag_and_heartbeat(online, age, expected):
    last_seen = NOW - age if age is not None else None
    assert is_user_online(online, last_seen, NOW) is expected


@pytest.mark.parametrize(
    "age,label",
    [
        (timedelta(seconds=20), "just now"),
        (timedelta(minutes=1), "1 min ago"),
        (timedelta(minutes=45), "45 mins ago"),
        (timedelta(hours=1), "1 hour ago"),
        (timedelta(hours=5), "5 hours ago"),
        (timedelta(days=1, hours=2), "yesterday"),
        (timedelta(days=3), "3 days ago"),
        (timedelta(days=30), "02/05/2024"),
        (timedelta(minutes=-5), "Unknown"),
    ],
)
def test_format_last_seen(age, label):
    assert format_last_seen(NOW - age, NOW) == label


def test_format_last_seen_accepts_epoch_objects_and_garbage():
    assert format_last_seen({"seconds": int(NOW.timestamp()) - 120}, NOW) == "2 mins ago"
    assert format_last_seen(None, NOW) == "Never online"
    assert format_last_seen("garbage", NOW) == "Never online"


@pytest.mark.asyncio
async def test_heartbeat_keeps_profile_online_then_offline_on_deactivate(poll):
    auth = LocalAuthProvider()
    store = MemoryDocumentStore(auth=auth)
    tracker = PresenceTracker(store, auth)
    await auth.sign_in("alice")

    await tracker.activate("alice")
    first = await store.get("profiles/alice")
    assert first.get("online") is True
    first_seen = to_millis(first.get("lastSeen"))

    async def heartbeat_advanced():
        snap = await store.get("profiles/alice")
        return to_millis(snap.get("lastSeen")) > first_seen

    await poll(heartbeat_advanced)
    assert tracker.is_running

    await tracker.deactivate()
    assert not tracker.is_running
    assert (await store.get("profiles/alice")).get("online") is False
    await tracker.aclose()


@pytest.mark.asyncio
async def test_offline_write_after_sign_out_is_swallowed(caplog):
    auth = LocalAuthProvider()
    store = MemoryDocumentStore(auth=auth)
    tracker = PresenceTracker(store, auth)
    await auth.sign_in("alice")
    await tracker.activate("alice")
    await auth.sign_out()

    caplog.clear()
    await tracker.deactivate("alice")
    assert (await store.get("profiles/alice")).get("online") is True
    assert not [record for record in caplog.records if record.levelname in ("ERROR", "WARNING")]


@pytest.mark.asyncio
async def test_heartbeat_stops_once_signed_out(fast_settings):
    auth = LocalAuthProvider()
    store = MemoryDocumentStore(auth=auth)
    tracker = PresenceTracker(store, auth)
    await auth.sign_in("alice")
    await tracker.activate("alice")
    await auth.sign_out()
    await asyncio.sleep(fast_settings.presence_heartbeat_seconds * 3)
    assert not tracker.is_running


@pytest.mark.asyncio
async def test_transient_failure_is_logged_and_non_fatal(store, monkeypatch, caplog):
    auth = LocalAuthProvider()
    tracker = PresenceTracker(store, auth)

    async def failing_set(*args, **kwargs):
        raise StoreError("unavailable")

    monkeypatch.setattr(store, "set", failing_set)
    await tracker.activate("alice")
    assert "presence online write failed" in caplog.text
    await tracker.aclose()
