"""Heartbeat-driven online/lastSeen tracking for the signed-in user."""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from typing import Optional

from app.infra.auth import LocalAuthProvider
from app.infra.store import SERVER_TIMESTAMP, DocumentStore, PermissionDenied, StoreError
from app.obs import metrics as obs_metrics
from app.settings import settings

logger = logging.getLogger(__name__)


def profile_path(user_id: str) -> str:
    return f"profiles/{user_id}"


class PresenceTracker:
    """Keeps ``profiles/{uid}`` at ``online=true`` while a session is active.

    Presence is best-effort: a failed write is logged and the loop keeps going.
    The offline write on shutdown is advisory, since a session that has already
    lost its credentials is not allowed to write its own profile.
    """

    def __init__(self, store: DocumentStore, auth: LocalAuthProvider) -> None:
        self._store = store
        self._auth = auth
        self._user_id: Optional[str] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def user_id(self) -> Optional[str]:
        return self._user_id

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def activate(self, user_id: str) -> None:
        """Mark the user online now and keep re-asserting it every heartbeat."""
        if self._user_id != user_id:
            self.halt()
        self._user_id = user_id
        await self._write(user_id, online=True)
        if not self.is_running:
            self._task = asyncio.create_task(self._heartbeat(user_id), name=f"presence-heartbeat:{user_id}")

    async def deactivate(self, user_id: Optional[str] = None) -> None:
        """Stop the heartbeat and record the user offline (best-effort)."""
        target = user_id or self._user_id
        self.halt()
        if not target:
            return
        await self._write(target, online=False)

    def halt(self) -> None:
        """Stop the heartbeat without writing anything."""
        task = self._task
        self._task = None
        if task is not None and not task.done():
            task.cancel()

    async def aclose(self) -> None:
        task = self._task
        self.halt()
        if task is not None:
            with suppress(asyncio.CancelledError):
                await task

    async def _write(self, user_id: str, *, online: bool) -> None:
        state = "online" if online else "offline"
        try:
            await self._store.set(
                profile_path(user_id),
                {"online": online, "lastSeen": SERVER_TIMESTAMP},
                merge=True,
            )
        except PermissionDenied:
            # Expected once credentials are gone (sign-out races).
            obs_metrics.inc_presence_write(state, "denied")
            logger.debug("presence %s write denied for user=%s", state, user_id)
            return
        except StoreError:
            obs_metrics.inc_presence_write(state, "error")
            logger.warning("presence %s write failed for user=%s", state, user_id, exc_info=True)
            return
        obs_metrics.inc_presence_write(state, "ok")
        logger.debug("presence %s for user=%s", state, user_id)

    async def _heartbeat(self, user_id: str) -> None:
        try:
            while True:
                await asyncio.sleep(max(0.01, float(settings.presence_heartbeat_seconds)))
                current = self._auth.current_user
                if current is None or current.id != user_id:
                    logger.debug("presence heartbeat stopping for user=%s (signed out)", user_id)
                    return
                await self._write(user_id, online=True)
        except asyncio.CancelledError:
            raise
        except Exception:  # pragma: no cover - defensive logging
            logger.exception("presence heartbeat failed for user=%s", user_id)


__all__ = ["PresenceTracker", "profile_path"]
