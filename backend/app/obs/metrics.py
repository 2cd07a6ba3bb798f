"""Central registry for Prometheus metrics used across the engine."""

from __future__ import annotations

from prometheus_client import Counter, Gauge


CHAT_SEND = Counter(
	"servepure_chat_send_total",
	"Chat messages written",
	["type"],
)

CHAT_SEND_SKIPPED = Counter(
	"servepure_chat_send_skipped_total",
	"Chat sends dropped before any write",
	["reason"],
)

CHAT_DELIVERED_UPDATES = Counter(
	"servepure_chat_delivered_updates_total",
	"Messages marked delivered",
	["source"],
)

CHAT_READ_UPDATES = Counter(
	"servepure_chat_read_updates_total",
	"Messages marked seen",
)

CHAT_ACTION_FAILURES = Counter(
	"servepure_chat_action_failures_total",
	"User-initiated chat actions that failed",
	["action"],
)

CHAT_DUPLICATES_COLLAPSED = Counter(
	"servepure_chat_duplicates_collapsed_total",
	"Chat documents hidden by per-counterpart deduplication",
)

PRESENCE_WRITES = Counter(
	"servepure_presence_writes_total",
	"Presence profile writes",
	["state", "result"],
)

STORE_LISTENERS = Gauge(
	"servepure_store_listeners",
	"Active live subscriptions per store backend",
	["backend"],
)

BADGE_STATE = Gauge(
	"servepure_notification_badge_unread",
	"Last computed notification badge state (1 = unread)",
)


def inc_chat_send(message_type: str) -> None:
	CHAT_SEND.labels(type=message_type).inc()


def inc_chat_send_skipped(reason: str) -> None:
	CHAT_SEND_SKIPPED.labels(reason=reason).inc()


def inc_chat_delivered(source: str, count: int = 1) -> None:
	if count > 0:
		CHAT_DELIVERED_UPDATES.labels(source=source).inc(count)


def inc_chat_read(count: int = 1) -> None:
	if count > 0:
		CHAT_READ_UPDATES.inc(count)


def inc_chat_action_failure(action: str) -> None:
	CHAT_ACTION_FAILURES.labels(action=action).inc()


def inc_chat_duplicates(count: int) -> None:
	if count > 0:
		CHAT_DUPLICATES_COLLAPSED.inc(count)


def inc_presence_write(state: str, result: str) -> None:
	PRESENCE_WRITES.labels(state=state, result=result).inc()


def set_store_listeners(backend: str, count: int) -> None:
	STORE_LISTENERS.labels(backend=backend).set(float(count))


def set_badge_state(unread: bool) -> None:
	BADGE_STATE.set(1.0 if unread else 0.0)


__all__ = [
	"inc_chat_action_failure",
	"inc_chat_delivered",
	"inc_chat_duplicates",
	"inc_chat_read",
	"inc_chat_send",
	"inc_chat_send_skipped",
	"inc_presence_write",
	"set_badge_state",
	"set_store_listeners",
]
