"""Online-status inference and last-seen labels for profiles."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from app.domain.common.timestamps import now_utc, to_datetime
from app.settings import settings


def is_user_online(online: Any, last_seen: Any, now: Optional[datetime] = None) -> bool:
    """Infer presence from the stored flag and the lastSeen heartbeat.

    A fresh heartbeat wins over a stale ``online=False`` and an old one wins over
    a stale ``online=True`` (a client that died without its offline write).
    """
    seen_at = to_datetime(last_seen)
    if seen_at is not None:
        current = now or now_utc()
        age = (current - seen_at).total_seconds()
        if age > settings.presence_offline_after_seconds:
            return False
        if age < settings.presence_online_window_seconds:
            return True
    return online is True


def format_last_seen(last_seen: Any, now: Optional[datetime] = None) -> str:
    seen_at = to_datetime(last_seen)
    if seen_at is None:
        return "Never online"
    current = now or now_utc()
    if seen_at > current:
        return "Unknown"
    seconds = int((current - seen_at).total_seconds())
    minutes = seconds // 60
    hours = minutes // 60
    days = hours // 24
    if seconds < 60:
        return "just now"
    if minutes < 60:
        return f"{minutes} min{'s' if minutes != 1 else ''} ago"
    if hours < 24:
        return f"{hours} hour{'s' if hours != 1 else ''} ago"
    if days == 1:
        return "yesterday"
    if days < 7:
        return f"{days} days ago"
    return seen_at.strftime("%d/%m/%Y")


__all__ = ["format_last_seen", "is_user_online"]
