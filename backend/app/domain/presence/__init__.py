"""Presence domain exports."""

from .session import SessionLifecycleManager, SessionState
from .status import format_last_seen, is_user_online
from .tracker import PresenceTracker

__all__ = [
	"PresenceTracker",
	"SessionLifecycleManager",
	"SessionState",
	"format_last_seen",
	"is_user_online",
]
