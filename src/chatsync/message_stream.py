"""Live message list for the single open conversation."""

from __future__ import annotations

import logging
import secrets
from dataclasses import replace
from pathlib import Path
from typing import Callable, Dict, List

from .feeds import Subscription
from .media import UploadError, validate_image_file
from .models import Message, MessageStatus, _now_ms
from .notifications import Notification
from .profiles import ProfileCache
from .store import NotFound, StoreError
from .validators import MAX_MESSAGE_LENGTH, ValidationError, validate_message

logger = logging.getLogger(__name__)

Listener = Callable[[], None]


class MessageStreamSynchronizer:
    """Mirrors one conversation's messages and drives read receipts.

    At most one conversation is watched at a time: :meth:`start` always
    cancels the previous feed before subscribing to the next one.
    """

    def __init__(
        self,
        store,
        notifier,
        profiles: ProfileCache,
        *,
        uploader=None,
        now_func: Callable[[], int] = _now_ms,
    ) -> None:
        self._store = store
        self._notifier = notifier
        self._profiles = profiles
        self._uploader = uploader
        self._now = now_func
        self.conv_id: str | None = None
        self.user_id: str | None = None
        self.is_sending = False
        self.error_message: str | None = None
        self._subscription: Subscription | None = None
        self._messages: List[Message] = []
        # local echoes of in-flight sends, dropped once the feed carries them
        self._pending: Dict[str, Message] = {}
        self._previous_count = 0
        self._listeners: List[Listener] = []

    @property
    def subscription(self) -> Subscription | None:
        return self._subscription

    @property
    def messages(self) -> List[Message]:
        if not self._pending:
            return list(self._messages)
        return list(self._messages) + list(self._pending.values())

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def start(self, conv_id: str, user_id: str) -> None:
        self._cancel_subscription()
        self.conv_id = conv_id
        self.user_id = user_id
        # seeded from the list shown before the switch, which is empty after stop
        self._previous_count = len(self._messages)
        self._messages = []
        self._pending.clear()
        self._subscription = self._store.watch_messages(
            conv_id, self.handle_snapshot, on_error=self._on_feed_error
        )
        logger.info("watching messages of %s", conv_id)

    def stop(self, *, silent: bool = False) -> None:
        self._cancel_subscription()
        self.conv_id = None
        self._messages = []
        self._pending.clear()
        self._previous_count = 0
        if not silent:
            self._notify_listeners()

    async def wait_idle(self) -> None:
        if self._subscription is not None:
            await self._subscription.drain()

    async def handle_snapshot(self, messages: List[Message]) -> None:
        conv_id = self.conv_id
        if conv_id is None:
            return

        previous = self._previous_count
        self._previous_count = len(messages)
        if len(messages) > previous:
            self._notify_incoming(conv_id, messages[-1])

        self._messages = list(messages)
        stored_ids = {message.msg_id for message in messages}
        for msg_id in [msg_id for msg_id in self._pending if msg_id in stored_ids]:
            self._pending.pop(msg_id)

        await self._mark_seen(conv_id)
        self._notify_listeners()

    async def send_text(self, text: str) -> bool:
        if self.conv_id is None or self.user_id is None:
            return False
        if not text or not text.strip():
            return False
        body = validate_message(text)
        return await self._append(body, None)

    async def send_image(self, path: Path | str, caption: str | None = None) -> bool:
        if self.conv_id is None or self.user_id is None:
            return False
        if self._uploader is None:
            raise RuntimeError("no media uploader configured")
        caption_text = (caption or "").strip()
        if len(caption_text) > MAX_MESSAGE_LENGTH:
            raise ValidationError(f"Message is too long (max {MAX_MESSAGE_LENGTH} characters)")
        validate_image_file(path)

        conv_id = self.conv_id
        self._set_sending(True)
        try:
            try:
                image_url = await self._uploader.upload_chat_image(conv_id, path)
            except UploadError as exc:
                self._fail("Failed to send image", exc)
                return False
            return await self._append(caption_text, image_url)
        finally:
            self._set_sending(False)

    async def delete_message(self, msg_id: str) -> bool:
        if self.conv_id is None:
            return False
        try:
            await self._store.delete_message(self.conv_id, msg_id)
        except StoreError as exc:
            self._fail("Failed to delete message", exc)
            return False
        self._pending.pop(msg_id, None)
        return True

    async def search_in_conversation(self, query: str) -> List[Message]:
        """Return messages whose text contains ``query``, newest first."""

        if self.conv_id is None:
            return []
        try:
            history = await self._store.list_messages(self.conv_id)
        except StoreError as exc:
            self._fail("Failed to search messages", exc)
            return []
        needle = query.lower()
        return [message for message in reversed(history) if needle in message.text.lower()]

    def clear_error(self) -> None:
        self.error_message = None
        self._notify_listeners()

    async def _append(self, text: str, image_url: str | None) -> bool:
        conv_id = self.conv_id
        user_id = self.user_id
        time_ms = self._now()
        placeholder = Message(
            msg_id=f"local_{secrets.token_hex(6)}",
            conv_id=conv_id,
            sender_id=user_id,
            text=text,
            image_url=image_url,
            time_ms=time_ms,
            status=MessageStatus.SENDING,
        )
        self._pending[placeholder.msg_id] = placeholder
        self._set_sending(True)
        try:
            stored = await self._store.add_message(replace(placeholder, status=MessageStatus.SENT))
            self._pending.pop(placeholder.msg_id, None)
            if self.conv_id == conv_id and stored.msg_id not in {message.msg_id for message in self._messages}:
                self._pending[stored.msg_id] = stored
            await self._store.record_message(conv_id, user_id, stored.preview, time_ms)
        except StoreError as exc:
            self._fail("Failed to send message", exc)
            return False
        finally:
            self._pending.pop(placeholder.msg_id, None)
            self._set_sending(False)
        return True

    def _notify_incoming(self, conv_id: str, latest: Message) -> None:
        if latest.sender_id == self.user_id:
            return
        sender = self._profiles.cached(latest.sender_id)
        if sender is None:
            logger.debug("sender %s not cached, skipping notification", latest.sender_id)
            return
        body = latest.text if latest.has_text else latest.preview
        self._notifier.show(Notification(title=sender.full_name, body=body, payload=conv_id))

    async def _mark_seen(self, conv_id: str) -> None:
        # re-read so writes already made by earlier snapshots are not repeated
        try:
            current = await self._store.list_messages(conv_id)
        except StoreError as exc:
            self._fail("Failed to mark messages as seen", exc)
            return
        for message in current:
            if message.sender_id == self.user_id or message.status is MessageStatus.SEEN:
                continue
            try:
                await self._store.update_message_status(conv_id, message.msg_id, MessageStatus.SEEN)
            except NotFound:
                continue
            except StoreError as exc:
                self._fail("Failed to mark messages as seen", exc)
                return

    def _on_feed_error(self, exc: Exception) -> None:
        self._fail("Message feed failed", exc)

    def _cancel_subscription(self) -> None:
        if self._subscription is not None:
            self._subscription.cancel()
            self._subscription = None

    def _set_sending(self, value: bool) -> None:
        self.is_sending = value
        self._notify_listeners()

    def _fail(self, context: str, exc: Exception) -> None:
        self.error_message = f"{context}: {exc}"
        logger.warning("%s", self.error_message)
        self._notify_listeners()

    def _notify_listeners(self) -> None:
        for listener in list(self._listeners):
            listener()
