"""Chat domain exports."""

from .aggregation import ChatRow, build_rows, dedupe_by_counterpart, has_unread_chats, tab_counts
from .delivery import DebouncedTasks, tick_state
from .list_view import ChatListView
from .models import Chat, ChatMessage, MessageType, ReplySnapshot, TickState
from .room import ChatRoom, Notice
from .service import ChatActionError, ChatService

__all__ = [
	"Chat",
	"ChatActionError",
	"ChatListView",
	"ChatMessage",
	"ChatRoom",
	"ChatRow",
	"ChatService",
	"DebouncedTasks",
	"MessageType",
	"Notice",
	"ReplySnapshot",
	"TickState",
	"build_rows",
	"dedupe_by_counterpart",
	"has_unread_chats",
	"tab_counts",
	"tick_state",
]
