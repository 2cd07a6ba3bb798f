import json
import logging

import pytest
from pydantic import ValidationError

from app.obs import logging as obs_logging
from app.obs import metrics as obs_metrics
from app.settings import Settings


def test_review_collections_accept_env_formats(monkeypatch):
    monkeypatch.setenv("REVIEW_COLLECTIONS", "workerReviews, adReviews")
    assert Settings().review_collections == ("workerReviews", "adReviews")

    monkeypatch.setenv("REVIEW_COLLECTIONS", '["serviceReviews"]')
    assert Settings().review_collections == ("serviceReviews",)

    monkeypatch.delenv("REVIEW_COLLECTIONS")
    assert Settings().review_collections == ("workerReviews", "serviceReviews", "adReviews")


def test_store_backend_is_validated(monkeypatch):
    monkeypatch.setenv("STORE_BACKEND", "Redis")
    assert Settings().store_backend == "redis"
    monkeypatch.setenv("STORE_BACKEND", "sqlite")
    with pytest.raises(ValidationError):
        Settings()


def test_timer_defaults(monkeypatch):
    for name in ("PRESENCE_HEARTBEAT_SECONDS", "SEEN_DEBOUNCE_SECONDS", "NOTICE_TTL_SECONDS"):
        monkeypatch.delenv(name, raising=False)
    fresh = Settings()
    assert fresh.presence_heartbeat_seconds == 30.0
    assert fresh.seen_debounce_seconds == 0.5
    assert fresh.notice_ttl_seconds == 3.0
    assert fresh.presence_online_window_seconds == 120.0
    assert fresh.presence_offline_after_seconds == 300.0


def test_json_formatter_redacts_message_content_and_carries_context():
    formatter = obs_logging.JSONLogFormatter()
    tokens = obs_logging.bind_context(user_id="alice", chat_id="c1")
    try:
        record = logging.LogRecord("app.test", logging.INFO, __file__, 1, "sent %s", ("x",), None)
        record.text = "very private"
        payload = json.loads(formatter.format(record))
    finally:
        obs_logging.reset_context(tokens)
    assert payload["msg"] == "sent x"
    assert payload["user_id"] == "alice"
    assert payload["chat_id"] == "c1"
    assert payload["text"] != "very private"


def test_metric_helpers_record_values():
    before = obs_metrics.CHAT_SEND.labels(type="text")._value.get()
    obs_metrics.inc_chat_send("text")
    assert obs_metrics.CHAT_SEND.labels(type="text")._value.get() == before + 1

    obs_metrics.set_store_listeners("memory", 4)
    assert obs_metrics.STORE_LISTENERS.labels(backend="memory")._value.get() == 4
