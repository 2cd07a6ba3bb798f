"""Client-local "last viewed" watermark persistence (epoch milliseconds)."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Dict, Protocol

logger = logging.getLogger(__name__)


class WatermarkStore(Protocol):
	def load(self, user_id: str) -> int:
		...

	def save(self, user_id: str, value_ms: int) -> None:
		...


class MemoryWatermarkStore:
	def __init__(self, initial: Dict[str, int] | None = None) -> None:
		self._values: Dict[str, int] = dict(initial or {})

	def load(self, user_id: str) -> int:
		return int(self._values.get(user_id, 0))

	def save(self, user_id: str, value_ms: int) -> None:
		self._values[user_id] = int(value_ms)


class FileWatermarkStore:
	"""JSON file keyed by user id; an unreadable file counts as "never viewed"."""

	def __init__(self, path: str | os.PathLike[str]) -> None:
		self.path = Path(path)

	def _read(self) -> Dict[str, int]:
		try:
			raw = self.path.read_text(encoding="utf-8")
		except FileNotFoundError:
			return {}
		except OSError:
			logger.warning("watermark file unreadable path=%s", self.path, exc_info=True)
			return {}
		try:
			payload = json.loads(raw)
		except json.JSONDecodeError:
			logger.warning("watermark file corrupt path=%s", self.path)
			return {}
		if not isinstance(payload, dict):
			return {}
		values: Dict[str, int] = {}
		for key, value in payload.items():
			try:
				values[str(key)] = int(value)
			except (TypeError, ValueError):
				continue
		return values

	def load(self, user_id: str) -> int:
		return self._read().get(user_id, 0)

	def save(self, user_id: str, value_ms: int) -> None:
		values = self._read()
		values[user_id] = int(value_ms)
		self.path.parent.mkdir(parents=True, exist_ok=True)
		fd, tmp_name = tempfile.mkstemp(prefix=".watermarks-", dir=str(self.path.parent))
		try:
			with os.fdopen(fd, "w", encoding="utf-8") as handle:
				json.dump(values, handle, sort_keys=True)
			os.replace(tmp_name, self.path)
		except BaseException:
			Path(tmp_name).unlink(missing_ok=True)
			raise


__all__ = ["FileWatermarkStore", "MemoryWatermarkStore", "WatermarkStore"]
