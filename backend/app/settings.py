"""Settings for the chat sync engine with observability configuration."""

from __future__ import annotations

import json
from typing import Any, Tuple, Union

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _env_field(default, *env_names: str):
	if env_names:
		alias = AliasChoices(*env_names) if len(env_names) > 1 else env_names[0]
		return Field(default=default, validation_alias=alias)
	return Field(default=default)


class Settings(BaseSettings):
	redis_url: str = _env_field("redis://localhost:6379/0", "REDIS_URL")
	# "memory" keeps documents in-process, "redis" shares them through Redis
	store_backend: str = _env_field("memory", "STORE_BACKEND")

	# Presence heartbeat re-asserts online/lastSeen at this interval
	presence_heartbeat_seconds: float = _env_field(30.0, "PRESENCE_HEARTBEAT_SECONDS")
	# lastSeen younger than this counts as online regardless of the stored flag
	presence_online_window_seconds: float = _env_field(120.0, "PRESENCE_ONLINE_WINDOW_SECONDS")
	# lastSeen older than this counts as offline regardless of the stored flag
	presence_offline_after_seconds: float = _env_field(300.0, "PRESENCE_OFFLINE_AFTER_SECONDS")

	seen_debounce_seconds: float = _env_field(0.5, "SEEN_DEBOUNCE_SECONDS")
	sender_delivery_delay_seconds: float = _env_field(1.0, "SENDER_DELIVERY_DELAY_SECONDS")
	notice_ttl_seconds: float = _env_field(3.0, "NOTICE_TTL_SECONDS")
	message_max_length: int = _env_field(4000, "MESSAGE_MAX_LENGTH")

	review_collections: Union[str, Tuple[str, ...]] = _env_field(
		("workerReviews", "serviceReviews", "adReviews"),
		"REVIEW_COLLECTIONS",
	)
	watermark_path: str = _env_field(".servepure/watermarks.json", "WATERMARK_PATH")

	environment: str = _env_field("production", "ENV", "APP_ENV", "ENVIRONMENT")
	obs_enabled: bool = _env_field(True, "OBS_ENABLED")
	obs_log_level: str = _env_field("INFO", "LOG_LEVEL")
	obs_log_sampling_rate_info: float = _env_field(1.0, "LOG_SAMPLING_RATE_INFO")
	service_name: str = _env_field("servepure-chat", "SERVICE_NAME")
	git_commit: str = _env_field("unknown", "GIT_COMMIT", "COMMIT_SHA", "SOURCE_VERSION")

	model_config = SettingsConfigDict(
		env_prefix="",
		env_file=".env",
		case_sensitive=False,
		env_nested_delimiter="__",
	)

	@field_validator("review_collections", mode="before")
	def _split_collections(cls, value):  # type: ignore[override]
		"""Normalise env/JSON formats for review_collections.

		Supports:
		- empty / missing -> ()
		- comma-separated string -> tuple of names
		- JSON string (e.g. '["workerReviews","adReviews"]') -> tuple of names
		- list / tuple / set -> tuple of names
		"""
		if value in (None, ""):
			return ()
		if isinstance(value, (list, tuple, set)):
			return tuple(str(item).strip() for item in value if str(item).strip())
		if isinstance(value, str):
			text = value.strip()
			if text.startswith("["):
				try:
					data = json.loads(text)
				except ValueError:
					data = None
				if isinstance(data, list):
					return tuple(str(item).strip() for item in data if str(item).strip())
			return tuple(part.strip() for part in text.split(",") if part.strip())
		return ()

	@field_validator("store_backend", mode="before")
	def _normalise_backend(cls, value: Any):  # type: ignore[override]
		text = str(value or "memory").strip().lower()
		if text not in ("memory", "redis"):
			raise ValueError(f"unsupported store backend: {value}")
		return text


def _normalise_level(level: str) -> str:
	return level.upper()


settings = Settings()
settings.obs_log_level = _normalise_level(settings.obs_log_level)
