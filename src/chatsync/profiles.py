from __future__ import annotations

import logging
from dataclasses import replace
from pathlib import Path
from typing import Callable, Dict, List

from .media import UploadError, validate_image_file
from .models import UserProfile
from .store import StoreError
from .validators import validate_full_name, validate_username

logger = logging.getLogger(__name__)

Listener = Callable[[], None]


class ProfileCache:
    """Write-through cache of user profiles: fetched once, kept forever."""

    def __init__(self, store) -> None:
        self._store = store
        self._profiles: Dict[str, UserProfile] = {}

    def cached(self, user_id: str) -> UserProfile | None:
        return self._profiles.get(user_id)

    def __contains__(self, user_id: object) -> bool:
        return user_id in self._profiles

    async def get(self, user_id: str) -> UserProfile | None:
        if not user_id:
            return None
        profile = self._profiles.get(user_id)
        if profile is not None:
            return profile
        profile = await self._store.get_user(user_id)
        if profile is not None:
            self._profiles[user_id] = profile
            logger.debug("cached profile for %s", user_id)
        return profile

    def clear(self) -> None:
        self._profiles.clear()


class ProfileEditor:
    """Edits the signed-in user's own profile document.

    Field values are validated before any write and raise
    :class:`~chatsync.validators.ValidationError`. Store and upload failures
    land in ``error_message`` and leave :attr:`profile` unchanged.
    """

    def __init__(self, store, *, uploader=None) -> None:
        self._store = store
        self._uploader = uploader
        self.profile: UserProfile | None = None
        self.is_loading = False
        self.is_uploading_photo = False
        self.error_message: str | None = None
        self._listeners: List[Listener] = []

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def load(self, user_id: str) -> UserProfile | None:
        self._set_loading(True)
        try:
            self.profile = await self._store.get_user(user_id)
        except StoreError as exc:
            self._fail("Failed to load profile", exc)
            return None
        finally:
            self._set_loading(False)
        return self.profile

    async def update_profile(self, *, full_name: str | None = None, username: str | None = None) -> bool:
        if self.profile is None:
            return False
        changes = {}
        if full_name is not None:
            changes["full_name"] = validate_full_name(full_name.strip())
        if username is not None:
            changes["username"] = validate_username(username.strip())
        self._set_loading(True)
        try:
            return await self._save(replace(self.profile, **changes), "Failed to update profile")
        finally:
            self._set_loading(False)

    async def update_photo(self, path: Path | str) -> bool:
        if self.profile is None:
            return False
        if self._uploader is None:
            raise RuntimeError("no media uploader configured")
        validate_image_file(path)

        self.is_uploading_photo = True
        self._notify_listeners()
        try:
            try:
                photo_url = await self._uploader.upload_profile_photo(self.profile.user_id, path)
            except UploadError as exc:
                self._fail("Failed to upload photo", exc)
                return False
            return await self._save(replace(self.profile, photo_url=photo_url), "Failed to update photo")
        finally:
            self.is_uploading_photo = False
            self._notify_listeners()

    async def remove_photo(self) -> bool:
        """Clear the photo URL; the hosted image itself is left in place."""

        if self.profile is None:
            return False
        self._set_loading(True)
        try:
            return await self._save(replace(self.profile, photo_url=None), "Failed to remove photo")
        finally:
            self._set_loading(False)

    def clear_error(self) -> None:
        self.error_message = None
        self._notify_listeners()

    async def _save(self, updated: UserProfile, context: str) -> bool:
        try:
            await self._store.put_user(updated)
        except StoreError as exc:
            self._fail(context, exc)
            return False
        self.profile = updated
        logger.info("updated profile of %s", updated.user_id)
        return True

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
