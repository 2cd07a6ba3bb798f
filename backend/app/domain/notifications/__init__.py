"""Notification badge exports."""

from .badge import NotificationBadge
from .watermarks import FileWatermarkStore, MemoryWatermarkStore, WatermarkStore

__all__ = ["FileWatermarkStore", "MemoryWatermarkStore", "NotificationBadge", "WatermarkStore"]
