"""Binds authentication state to presence and owns the related listeners."""

from __future__ import annotations

import enum
import logging
from typing import Callable, Optional

from app.domain.presence.tracker import PresenceTracker, profile_path
from app.infra.auth import AuthenticatedUser, LocalAuthProvider
from app.infra.hooks import BEFORE_UNLOAD, VISIBILITY_CHANGE, LifecycleHooks
from app.infra.store import DocumentSnapshot, DocumentStore

logger = logging.getLogger(__name__)


class SessionState(str, enum.Enum):
    UNINITIALIZED = "uninitialized"
    ACTIVE = "active"
    TORN_DOWN = "torn_down"


class SessionLifecycleManager:
    """Starts presence on sign-in and tears every listener down on destroy.

    One instance is owned by the application root. ``init`` is idempotent and
    ``destroy`` leaves the manager ready for another ``init``.
    """

    def __init__(
        self,
        auth: LocalAuthProvider,
        store: DocumentStore,
        tracker: PresenceTracker,
        hooks: LifecycleHooks,
    ) -> None:
        self._auth = auth
        self._store = store
        self._tracker = tracker
        self._hooks = hooks
        self._state = SessionState.UNINITIALIZED
        self._user_id: Optional[str] = None
        self._unsubscribe_auth: Optional[Callable[[], None]] = None
        self._unsubscribe_profile: Optional[Callable[[], None]] = None
        self.profile: Optional[dict] = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def current_user_id(self) -> Optional[str]:
        return self._user_id

    async def init(self) -> None:
        if self._state is SessionState.ACTIVE:
            logger.debug("session lifecycle already initialised")
            return
        self._state = SessionState.ACTIVE
        self._unsubscribe_auth = self._auth.on_auth_state_changed(self._on_auth_state)
        self._hooks.add_listener(VISIBILITY_CHANGE, self.on_visibility_change)
        self._hooks.add_listener(BEFORE_UNLOAD, self.on_before_unload)
        if self._auth.current_user is not None:
            await self._on_auth_state(self._auth.current_user)
        logger.info("session lifecycle initialised")

    def destroy(self) -> None:
        if self._state is not SessionState.ACTIVE:
            return
        if self._unsubscribe_auth is not None:
            self._unsubscribe_auth()
            self._unsubscribe_auth = None
        self._drop_profile_listener()
        self._hooks.remove_listener(VISIBILITY_CHANGE, self.on_visibility_change)
        self._hooks.remove_listener(BEFORE_UNLOAD, self.on_before_unload)
        self._tracker.halt()
        self._user_id = None
        self._state = SessionState.TORN_DOWN
        logger.info("session lifecycle destroyed")

    async def _on_auth_state(self, user: Optional[AuthenticatedUser]) -> None:
        if user is not None:
            await self._signed_in(user.id)
        else:
            self._signed_out()

    async def _signed_in(self, user_id: str) -> None:
        if self._user_id and self._user_id != user_id:
            self._drop_profile_listener()
        self._user_id = user_id
        await self._tracker.activate(user_id)
        if self._unsubscribe_profile is None:
            self._unsubscribe_profile = self._store.on_snapshot(profile_path(user_id), self._on_profile)

    def _signed_out(self) -> None:
        # No offline write here: the credentials are already gone, so the
        # visibility/unload hooks (or sign_out below) must have recorded it.
        self._drop_profile_listener()
        self._tracker.halt()
        self._user_id = None
        self.profile = None

    def _drop_profile_listener(self) -> None:
        if self._unsubscribe_profile is not None:
            self._unsubscribe_profile()
            self._unsubscribe_profile = None

    def _on_profile(self, snapshot: DocumentSnapshot) -> None:
        if not snapshot.exists:
            return
        self.profile = snapshot.to_dict()
        logger.debug(
            "own profile updated user=%s online=%s",
            snapshot.id,
            snapshot.get("online"),
        )

    async def on_visibility_change(self, hidden: bool) -> None:
        if not self._user_id:
            return
        if hidden:
            await self._tracker.deactivate(self._user_id)
        else:
            await self._tracker.activate(self._user_id)

    async def on_before_unload(self) -> None:
        if self._user_id:
            await self._tracker.deactivate(self._user_id)

    async def sign_out(self) -> None:
        """Record offline while still authenticated, then drop the credentials."""
        if self._user_id:
            await self._tracker.deactivate(self._user_id)
        await self._auth.sign_out()

    async def __aenter__(self) -> "SessionLifecycleManager":
        await self.init()
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.destroy()
        await self._tracker.aclose()


__all__ = ["SessionLifecycleManager", "SessionState"]
