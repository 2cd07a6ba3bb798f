"""Field-level write operations shared by every document store backend.

Updates are expressed as ``{field_path: value}`` mappings. Dotted paths address
nested maps (``unseenCounts.<uid>``) and sentinel values describe operations the
store applies against the current document state, so callers never have to read
a document before changing a counter or a set-like array.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Mapping, Tuple


class _ServerTimestamp:
	"""Replaced by the store's clock when the write is applied."""

	def __repr__(self) -> str:
		return "SERVER_TIMESTAMP"


class _DeleteField:
	def __repr__(self) -> str:
		return "DELETE_FIELD"


SERVER_TIMESTAMP = _ServerTimestamp()
DELETE_FIELD = _DeleteField()


@dataclass(frozen=True, slots=True)
class Increment:
	amount: int | float = 1


@dataclass(frozen=True)
class ArrayUnion:
	values: Tuple[Any, ...]

	def __init__(self, *values: Any) -> None:
		object.__setattr__(self, "values", tuple(values))


@dataclass(frozen=True)
class ArrayRemove:
	values: Tuple[Any, ...]

	def __init__(self, *values: Any) -> None:
		object.__setattr__(self, "values", tuple(values))


def split_path(field_path: str) -> list[str]:
	parts = [part for part in str(field_path).split(".") if part]
	if not parts:
		raise ValueError("empty field path")
	return parts


def _resolve(value: Any, now: datetime, current: Any) -> Any:
	if value is SERVER_TIMESTAMP:
		return now
	if isinstance(value, Increment):
		base = current if isinstance(current, (int, float)) and not isinstance(current, bool) else 0
		return base + value.amount
	if isinstance(value, ArrayUnion):
		existing = list(current) if isinstance(current, list) else []
		for item in value.values:
			if item not in existing:
				existing.append(item)
		return existing
	if isinstance(value, ArrayRemove):
		existing = list(current) if isinstance(current, list) else []
		return [item for item in existing if item not in value.values]
	if isinstance(value, Mapping):
		return {key: _resolve(nested, now, None) for key, nested in value.items()}
	if isinstance(value, (list, tuple)):
		return [_resolve(item, now, None) for item in value]
	return copy.deepcopy(value)


def apply_update(document: Mapping[str, Any], changes: Mapping[str, Any], now: datetime) -> Dict[str, Any]:
	"""Return a new document with ``changes`` applied field by field."""
	result: Dict[str, Any] = copy.deepcopy(dict(document))
	for field_path, value in changes.items():
		parts = split_path(field_path)
		target = result
		for part in parts[:-1]:
			nested = target.get(part)
			if not isinstance(nested, dict):
				nested = {}
				target[part] = nested
			target = nested
		leaf = parts[-1]
		if value is DELETE_FIELD:
			target.pop(leaf, None)
			continue
		target[leaf] = _resolve(value, now, target.get(leaf))
	return result


def merge_set(document: Mapping[str, Any], data: Mapping[str, Any], now: datetime) -> Dict[str, Any]:
	"""Deep-merge ``data`` into ``document`` the way ``set(..., merge=True)`` does."""
	result: Dict[str, Any] = copy.deepcopy(dict(document))
	for key, value in data.items():
		if isinstance(value, Mapping) and isinstance(result.get(key), dict):
			result[key] = merge_set(result[key], value, now)
		elif value is DELETE_FIELD:
			result.pop(key, None)
		else:
			result[key] = _resolve(value, now, result.get(key))
	return result


def replace_document(data: Mapping[str, Any], now: datetime) -> Dict[str, Any]:
	return {key: _resolve(value, now, None) for key, value in data.items() if value is not DELETE_FIELD}


def get_field(document: Mapping[str, Any], field_path: str) -> Any:
	current: Any = document
	for part in split_path(field_path):
		if not isinstance(current, Mapping):
			return None
		current = current.get(part)
	return current


__all__ = [
	"ArrayRemove",
	"ArrayUnion",
	"DELETE_FIELD",
	"Increment",
	"SERVER_TIMESTAMP",
	"apply_update",
	"get_field",
	"merge_set",
	"replace_document",
	"split_path",
]
