"""Live, per-user conversation list with unread-activity notifications."""

from __future__ import annotations

import logging
from typing import Callable, Dict, List

from .feeds import Subscription
from .message_stream import MessageStreamSynchronizer
from .models import Conversation, UserProfile, _now_ms
from .notifications import Notification
from .profiles import ProfileCache
from .resolver import get_or_create_conversation
from .store import StoreError

logger = logging.getLogger(__name__)

Listener = Callable[[], None]


class ConversationListSynchronizer:
    """Keeps the signed-in user's conversations in sync with the live feed.

    Each snapshot replaces the cached list wholesale. Unread counters are
    compared against a shadow map of the previous values so that exactly one
    notification fires per increase, however large the increase is.
    """

    def __init__(
        self,
        store,
        notifier,
        *,
        uploader=None,
        now_func: Callable[[], int] = _now_ms,
    ) -> None:
        self._store = store
        self._notifier = notifier
        self._now = now_func
        self.profiles = ProfileCache(store)
        self.messages = MessageStreamSynchronizer(
            store, notifier, self.profiles, uploader=uploader, now_func=now_func
        )
        self.user_id: str | None = None
        self.current_conv_id: str | None = None
        self.is_loading = False
        self.error_message: str | None = None
        self._subscription: Subscription | None = None
        self._conversations: List[Conversation] = []
        self._previous_unread: Dict[str, int] = {}
        self._search_query = ""
        self._listeners: List[Listener] = []

    # views

    @property
    def conversations(self) -> List[Conversation]:
        if not self._search_query:
            return list(self._conversations)
        query = self._search_query.lower()
        return [conversation for conversation in self._conversations if self._matches(conversation, query)]

    # pin partition is over the full list, not the search view
    @property
    def pinned_conversations(self) -> List[Conversation]:
        if self.user_id is None:
            return []
        return [conversation for conversation in self._conversations if conversation.is_pinned_for(self.user_id)]

    @property
    def unpinned_conversations(self) -> List[Conversation]:
        if self.user_id is None:
            return list(self._conversations)
        return [
            conversation for conversation in self._conversations if not conversation.is_pinned_for(self.user_id)
        ]

    @property
    def total_unread_count(self) -> int:
        if self.user_id is None:
            return 0
        return sum(conversation.unread_for(self.user_id) for conversation in self._conversations)

    @property
    def subscription(self) -> Subscription | None:
        return self._subscription

    @property
    def idle(self) -> bool:
        return all(subscription.idle for subscription in self._active_subscriptions())

    @property
    def search_query(self) -> str:
        return self._search_query

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)
        self.messages.add_listener(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)
        self.messages.remove_listener(listener)

    # lifecycle

    def start(self, user_id: str) -> None:
        if not user_id:
            raise ValueError("user_id is required")
        if user_id == self.user_id:
            if self._subscription is not None and self._subscription.active:
                return
            # same user after a dead feed: keep the list and the shadow map
            self._cancel_subscription()
        else:
            self._cancel_subscription()
            if self.current_conv_id is not None:
                self.close_conversation(silent=True)
            self.user_id = user_id
            self._conversations = []
            self._previous_unread = {}
            self.profiles.clear()
        self._subscription = self._store.watch_conversations(
            user_id, self.handle_snapshot, on_error=self._on_feed_error
        )
        logger.info("watching conversations of %s", user_id)

    def close(self) -> None:
        """Tear down both feeds without notifying listeners."""

        self._cancel_subscription()
        self.close_conversation(silent=True)

    async def aclose(self) -> None:
        subscriptions = self._active_subscriptions()
        self.close()
        for subscription in subscriptions:
            await subscription.wait_closed()

    async def wait_idle(self) -> None:
        """Wait until both feeds have handled every queued snapshot."""

        while True:
            if self.idle:
                return
            for subscription in self._active_subscriptions():
                await subscription.drain()

    async def handle_snapshot(self, conversations: List[Conversation]) -> None:
        user_id = self.user_id
        if user_id is None:
            return

        self._conversations = list(conversations)

        for conversation in conversations:
            current = conversation.unread_for(user_id)
            previous = self._previous_unread.get(conversation.conv_id, 0)
            if current > previous:
                await self._notify_new_activity(conversation, user_id)
            self._previous_unread[conversation.conv_id] = current

        for conversation in conversations:
            await self._cache_profile(conversation.other_member(user_id))

        self._notify_listeners()

    # search

    def search(self, query: str) -> None:
        self._search_query = query
        self._notify_listeners()

    def clear_search(self) -> None:
        self._search_query = ""
        self._notify_listeners()

    # profiles

    async def get_user(self, user_id: str) -> UserProfile | None:
        return await self._cache_profile(user_id)

    def cached_user(self, user_id: str) -> UserProfile | None:
        return self.profiles.cached(user_id)

    # actions

    async def toggle_pin(self, conv_id: str) -> bool:
        """Flip the pinned flag remotely; the list changes when the feed echoes it."""

        if self.user_id is None:
            return False
        conversation = self._find(conv_id)
        if conversation is None:
            self._fail("Failed to update pin", KeyError(conv_id))
            return False
        try:
            await self._store.set_pinned(conv_id, self.user_id, not conversation.is_pinned_for(self.user_id))
        except StoreError as exc:
            self._fail("Failed to update pin", exc)
            return False
        return True

    async def open_conversation(self, other_user_id: str) -> Conversation | None:
        if self.user_id is None:
            return None
        self._set_loading(True)
        try:
            conversation = await get_or_create_conversation(
                self._store, self.user_id, other_user_id, now_func=self._now
            )
            self._activate(conversation.conv_id)
            await self._store.set_unread(conversation.conv_id, self.user_id, 0)
        except StoreError as exc:
            self._fail("Failed to open conversation", exc)
            return None
        finally:
            self._set_loading(False)
        return conversation

    async def open_conversation_by_id(self, conv_id: str) -> bool:
        if self.user_id is None:
            return False
        self._activate(conv_id)
        try:
            await self._store.set_unread(conv_id, self.user_id, 0)
        except StoreError as exc:
            self._fail("Failed to open conversation", exc)
            return False
        return True

    def close_conversation(self, *, silent: bool = False) -> None:
        self.messages.stop(silent=True)
        self.current_conv_id = None
        if not silent:
            self._notify_listeners()

    async def delete_conversation(self, conv_id: str) -> bool:
        """Hard-delete every message, then the conversation itself."""

        if conv_id == self.current_conv_id:
            self.close_conversation()
        try:
            await self._store.delete_messages(conv_id)
            await self._store.delete_conversation(conv_id)
        except StoreError as exc:
            self._fail("Failed to delete conversation", exc)
            return False
        logger.info("deleted conversation %s", conv_id)
        return True

    def clear_error(self) -> None:
        self.error_message = None
        self._notify_listeners()

    # internals

    def _activate(self, conv_id: str) -> None:
        self.current_conv_id = conv_id
        self.messages.start(conv_id, self.user_id)

    def _find(self, conv_id: str) -> Conversation | None:
        for conversation in self._conversations:
            if conversation.conv_id == conv_id:
                return conversation
        return None

    def _matches(self, conversation: Conversation, query: str) -> bool:
        if query in conversation.last_message.lower():
            return True
        profile = self.profiles.cached(conversation.other_member(self.user_id or ""))
        if profile is None:
            return False
        return query in profile.full_name.lower() or query in profile.username.lower()

    async def _notify_new_activity(self, conversation: Conversation, user_id: str) -> None:
        sender = await self._cache_profile(conversation.other_member(user_id))
        if sender is None:
            return
        self._notifier.show(
            Notification(title=sender.full_name, body=conversation.last_message, payload=conversation.conv_id)
        )

    async def _cache_profile(self, user_id: str) -> UserProfile | None:
        try:
            return await self.profiles.get(user_id)
        except StoreError as exc:
            self._fail("Failed to load user", exc)
            return None

    def _on_feed_error(self, exc: Exception) -> None:
        self._fail("Conversation feed failed", exc)

    def _active_subscriptions(self) -> List[Subscription]:
        return [sub for sub in (self._subscription, self.messages.subscription) if sub is not None]

    def _cancel_subscription(self) -> None:
        if self._subscription is not None:
            self._subscription.cancel()
            self._subscription = None

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
