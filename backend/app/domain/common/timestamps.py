"""Timestamp normalisation shared by every time comparison.

Documents reach the client through several write paths, so a single field such
as ``updatedAt`` can hold a resolved server time, an epoch-seconds object
(``{"seconds": ..., "nanoseconds": ...}``) or a loose date-like value (epoch
number, ISO string). ``classify`` tags the raw value and ``to_millis`` folds
every variant onto epoch milliseconds, falling back to 0 instead of raising.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping, Optional, Union

logger = logging.getLogger(__name__)

# Epoch numbers above this are treated as milliseconds.
_MILLIS_THRESHOLD = 1e11


@dataclass(frozen=True, slots=True)
class ServerTime:
	"""A timestamp resolved by the store (or an object exposing to_datetime())."""

	value: datetime


@dataclass(frozen=True, slots=True)
class EpochSeconds:
	seconds: int
	nanoseconds: int = 0


@dataclass(frozen=True, slots=True)
class DateLike:
	"""Anything else that might parse as a date: numbers and strings."""

	raw: Any


Timestamp = Union[ServerTime, EpochSeconds, DateLike]


def now_utc() -> datetime:
	return datetime.now(timezone.utc)


def _aware(value: datetime) -> datetime:
	return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def classify(value: Any) -> Optional[Timestamp]:
	if value is None or isinstance(value, bool):
		return None
	if isinstance(value, datetime):
		return ServerTime(_aware(value))
	to_datetime_fn = getattr(value, "to_datetime", None)
	if callable(to_datetime_fn):
		try:
			resolved = to_datetime_fn()
		except Exception:
			logger.debug("timestamp to_datetime() failed", exc_info=True)
			return None
		return ServerTime(_aware(resolved)) if isinstance(resolved, datetime) else None
	timestamp_fn = getattr(value, "timestamp", None)
	if callable(timestamp_fn):
		try:
			return ServerTime(datetime.fromtimestamp(float(timestamp_fn()), tz=timezone.utc))
		except (TypeError, ValueError, OverflowError, OSError):
			logger.debug("timestamp timestamp() failed", exc_info=True)
			return None
	if isinstance(value, Mapping):
		seconds = value.get("seconds", value.get("_seconds"))
		if seconds is None:
			return None
		nanos = value.get("nanoseconds", value.get("_nanoseconds")) or 0
		try:
			return EpochSeconds(int(seconds), int(nanos))
		except (TypeError, ValueError, OverflowError):
			return None
	if isinstance(value, (int, float, str)):
		return DateLike(value)
	return None


def _date_like_millis(raw: Any) -> int:
	if isinstance(raw, (int, float)):
		number = float(raw)
		return int(number) if abs(number) > _MILLIS_THRESHOLD else int(number * 1000)
	text = str(raw).strip()
	if not text:
		return 0
	try:
		return _date_like_millis(float(text))
	except ValueError:
		pass
	if text.endswith("Z"):
		text = text[:-1] + "+00:00"
	parsed = datetime.fromisoformat(text)
	return int(_aware(parsed).timestamp() * 1000)


def to_millis(value: Any) -> int:
	"""Return epoch milliseconds for any supported timestamp shape, 0 when absent or invalid."""
	try:
		tagged = classify(value)
		if isinstance(tagged, ServerTime):
			return int(tagged.value.timestamp() * 1000)
		if isinstance(tagged, EpochSeconds):
			return tagged.seconds * 1000 + tagged.nanoseconds // 1_000_000
		if isinstance(tagged, DateLike):
			return _date_like_millis(tagged.raw)
	except (OverflowError, ValueError, OSError):
		logger.debug("unparseable timestamp %r", value)
	return 0


def to_datetime(value: Any) -> Optional[datetime]:
	millis = to_millis(value)
	if not millis:
		return None
	try:
		return datetime.fromtimestamp(millis / 1000, tz=timezone.utc)
	except (OverflowError, ValueError, OSError):
		return None


def to_epoch_seconds(value: datetime) -> dict[str, int]:
	"""Serialise a datetime as an epoch-seconds object."""
	value = _aware(value)
	seconds = int(value.timestamp())
	nanos = value.microsecond * 1000
	return {"seconds": seconds, "nanoseconds": nanos}


__all__ = [
	"DateLike",
	"EpochSeconds",
	"ServerTime",
	"Timestamp",
	"classify",
	"now_utc",
	"to_datetime",
	"to_epoch_seconds",
	"to_millis",
]
