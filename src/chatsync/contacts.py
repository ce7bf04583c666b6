"""Contact directory: every other user, plus per-user favorites and blocks."""

from __future__ import annotations

import logging
from typing import Callable, Dict, List

from .models import UserProfile
from .store import StoreError

logger = logging.getLogger(__name__)

Listener = Callable[[], None]


def _matches(profile: UserProfile, query: str) -> bool:
    return query in profile.full_name.lower() or query in profile.username.lower()


async def search_users(store, query: str, *, exclude: str | None = None) -> List[UserProfile]:
    """Case-insensitive substring match on full name and username."""

    needle = query.lower()
    return [profile for profile in await store.list_users(exclude=exclude) if _matches(profile, needle)]


class ContactDirectory:
    """The signed-in user's contacts, favorites and block list.

    There is no live feed behind this view. The lists are read on
    :meth:`start` and :meth:`refresh`, and every action re-reads the lists it
    changed. Blocked users never appear in :attr:`contacts` or
    :attr:`favorites`.
    """

    def __init__(self, store) -> None:
        self._store = store
        self.user_id: str | None = None
        self.is_loading = False
        self.error_message: str | None = None
        self._users: Dict[str, UserProfile] = {}
        self._favorite_ids: List[str] = []
        self._blocked_ids: List[str] = []
        self._search_query = ""
        self._listeners: List[Listener] = []

    @property
    def contacts(self) -> List[UserProfile]:
        visible = [profile for profile in self._users.values() if profile.user_id not in self._blocked_ids]
        if not self._search_query:
            return visible
        query = self._search_query.lower()
        return [profile for profile in visible if _matches(profile, query)]

    @property
    def favorites(self) -> List[UserProfile]:
        return [
            self._users[user_id]
            for user_id in self._favorite_ids
            if user_id in self._users and user_id not in self._blocked_ids
        ]

    @property
    def blocked_users(self) -> List[UserProfile]:
        return [self._users[user_id] for user_id in self._blocked_ids if user_id in self._users]

    @property
    def search_query(self) -> str:
        return self._search_query

    def is_favorite(self, user_id: str) -> bool:
        return user_id in self._favorite_ids

    def is_blocked(self, user_id: str) -> bool:
        return user_id in self._blocked_ids

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def start(self, user_id: str) -> bool:
        if not user_id:
            raise ValueError("user_id is required")
        if user_id == self.user_id and self._users:
            return True
        self.user_id = user_id
        self._users = {}
        self._favorite_ids = []
        self._blocked_ids = []
        return await self.refresh()

    async def refresh(self) -> bool:
        if self.user_id is None:
            return False
        self._set_loading(True)
        try:
            profiles = await self._store.list_users(exclude=self.user_id)
            favorite_ids = await self._store.list_favorites(self.user_id)
            blocked_ids = await self._store.list_blocked(self.user_id)
        except StoreError as exc:
            self._fail("Failed to load contacts", exc)
            return False
        finally:
            self._set_loading(False)
        self._users = {profile.user_id: profile for profile in profiles}
        self._favorite_ids = favorite_ids
        self._blocked_ids = blocked_ids
        logger.debug("loaded %d contacts for %s", len(profiles), self.user_id)
        self._notify_listeners()
        return True

    def search(self, query: str) -> None:
        self._search_query = query
        self._notify_listeners()

    def clear_search(self) -> None:
        self._search_query = ""
        self._notify_listeners()

    async def get_user(self, user_id: str) -> UserProfile | None:
        profile = self._users.get(user_id)
        if profile is not None:
            return profile
        try:
            return await self._store.get_user(user_id)
        except StoreError as exc:
            self._fail("Failed to load user", exc)
            return None

    async def toggle_favorite(self, target_id: str) -> bool:
        if self.user_id is None:
            return False
        if self.is_favorite(target_id):
            context = "Failed to remove from favorites"
            action = self._store.remove_favorite
        else:
            context = "Failed to add to favorites"
            action = self._store.add_favorite
        try:
            await action(self.user_id, target_id)
            self._favorite_ids = await self._store.list_favorites(self.user_id)
        except StoreError as exc:
            self._fail(context, exc)
            return False
        self._notify_listeners()
        return True

    async def block_user(self, target_id: str) -> bool:
        """Block ``target_id`` and drop it from favorites."""

        if self.user_id is None:
            return False
        try:
            await self._store.block_user(self.user_id, target_id)
            if self.is_favorite(target_id):
                await self._store.remove_favorite(self.user_id, target_id)
            self._blocked_ids = await self._store.list_blocked(self.user_id)
            self._favorite_ids = await self._store.list_favorites(self.user_id)
        except StoreError as exc:
            self._fail("Failed to block user", exc)
            return False
        logger.info("%s blocked %s", self.user_id, target_id)
        self._notify_listeners()
        return True

    async def unblock_user(self, target_id: str) -> bool:
        if self.user_id is None:
            return False
        try:
            await self._store.unblock_user(self.user_id, target_id)
            self._blocked_ids = await self._store.list_blocked(self.user_id)
        except StoreError as exc:
            self._fail("Failed to unblock user", exc)
            return False
        self._notify_listeners()
        return True

    def clear_error(self) -> None:
        self.error_message = None
        self._notify_listeners()

    def _set_loading(self, value: bool) -> None:
        self.is_loading = value
        self._notify_listeners()

    def _fail(self, context: str, exc: Exception) -> None:
        self.error_message = f"{context}: {exc}"
        logger.warning("%s", self.error_message)
        self._notify_listeners()

    def _notify_listeners(self) -> None:
        for listener in list(self._listeners):
            listener()
