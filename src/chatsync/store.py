"""Document-store contract and the in-memory backend.

Every backend exposes the same async surface: point reads and writes on
conversations, messages and user profiles, plus live ordered queries
(``watch_conversations`` / ``watch_messages``) that push a full snapshot on
subscribe and after every change.

Each user also owns two id lists, favorites and blocked users, ordered by
when an id was added. Adding an id that is already listed is a no-op.
"""

from __future__ import annotations

import copy
import secrets
from dataclasses import replace
from typing import Any, Callable, Dict, Iterable, List

from .feeds import FeedHub, SnapshotHandler, Subscription, conversations_topic, messages_topic
from .models import Conversation, Message, MessageStatus, UserProfile, _now_ms


class StoreError(Exception):
    pass


class NotFound(StoreError):
    pass


def new_message_id() -> str:
    return f"m_{secrets.token_urlsafe(12)}"


def sort_conversations(conversations: Iterable[Conversation]) -> List[Conversation]:
    return sorted(conversations, key=lambda conv: (-conv.last_time_ms, conv.conv_id))


class LiveQueryStore:
    """Shared live-query plumbing for stores that own their data locally."""

    def __init__(self) -> None:
        self.hub = FeedHub()

    def watch_conversations(
        self,
        user_id: str,
        handler: SnapshotHandler,
        *,
        on_error: Callable[[Exception], None] | None = None,
    ) -> Subscription:
        subscription = self.hub.subscribe(conversations_topic(user_id), handler, on_error=on_error)
        subscription.deliver(self._query_conversations(user_id))
        return subscription

    def watch_messages(
        self,
        conv_id: str,
        handler: SnapshotHandler,
        *,
        on_error: Callable[[Exception], None] | None = None,
    ) -> Subscription:
        subscription = self.hub.subscribe(messages_topic(conv_id), handler, on_error=on_error)
        subscription.deliver(self._query_messages(conv_id))
        return subscription

    def _publish_conversations(self, members: Iterable[str]) -> None:
        for member in set(members):
            topic = conversations_topic(member)
            if self.hub.has_subscribers(topic):
                self.hub.publish(topic, self._query_conversations(member))

    def _publish_messages(self, conv_id: str) -> None:
        topic = messages_topic(conv_id)
        if self.hub.has_subscribers(topic):
            self.hub.publish(topic, self._query_messages(conv_id))

    def _query_conversations(self, user_id: str) -> List[Conversation]:
        raise NotImplementedError

    def _query_messages(self, conv_id: str) -> List[Message]:
        raise NotImplementedError


class InMemoryChatStore(LiveQueryStore):
    """Keeps native document dicts keyed by id, like the hosted database."""

    def __init__(self) -> None:
        super().__init__()
        self._conversations: Dict[str, Dict[str, Any]] = {}
        self._messages: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._users: Dict[str, Dict[str, Any]] = {}
        # list name -> owner -> target -> time added
        self._user_lists: Dict[str, Dict[str, Dict[str, int]]] = {"favorites": {}, "blocked": {}}

    async def get_conversation(self, conv_id: str) -> Conversation | None:
        doc = self._conversations.get(conv_id)
        if doc is None:
            return None
        return Conversation.from_document(conv_id, copy.deepcopy(doc))

    async def put_conversation(self, conversation: Conversation) -> None:
        self._conversations[conversation.conv_id] = conversation.to_document()
        self._publish_conversations(conversation.members)

    async def set_pinned(self, conv_id: str, user_id: str, pinned: bool) -> None:
        doc = self._require_conversation(conv_id)
        self._require_member(doc, conv_id, user_id)
        doc["isPinned"][user_id] = pinned
        self._publish_conversations(doc["members"])

    async def set_unread(self, conv_id: str, user_id: str, count: int) -> None:
        if count < 0:
            raise ValueError("unread count must be non-negative")
        doc = self._require_conversation(conv_id)
        self._require_member(doc, conv_id, user_id)
        doc["unreadCount"][user_id] = count
        self._publish_conversations(doc["members"])

    async def record_message(self, conv_id: str, sender_id: str, preview: str, time_ms: int) -> None:
        doc = self._require_conversation(conv_id)
        doc["lastMessage"] = preview
        doc["lastTime"] = time_ms
        for member in doc["members"]:
            if member != sender_id:
                doc["unreadCount"][member] = int(doc["unreadCount"].get(member, 0)) + 1
        self._publish_conversations(doc["members"])

    async def delete_conversation(self, conv_id: str) -> None:
        doc = self._conversations.pop(conv_id, None)
        if doc is not None:
            self._publish_conversations(doc["members"])

    async def add_message(self, message: Message) -> Message:
        if message.conv_id not in self._conversations:
            raise NotFound(f"unknown conversation {message.conv_id}")
        stored = replace(message, msg_id=new_message_id())
        self._messages.setdefault(message.conv_id, {})[stored.msg_id] = stored.to_document()
        self._publish_messages(message.conv_id)
        return stored

    async def list_messages(self, conv_id: str) -> List[Message]:
        return self._query_messages(conv_id)

    async def update_message_status(self, conv_id: str, msg_id: str, status: MessageStatus) -> None:
        doc = self._messages.get(conv_id, {}).get(msg_id)
        if doc is None:
            raise NotFound(f"unknown message {msg_id}")
        doc["status"] = status.value
        self._publish_messages(conv_id)

    async def delete_message(self, conv_id: str, msg_id: str) -> None:
        if self._messages.get(conv_id, {}).pop(msg_id, None) is not None:
            self._publish_messages(conv_id)

    async def delete_messages(self, conv_id: str) -> None:
        if self._messages.pop(conv_id, None):
            self._publish_messages(conv_id)

    async def get_user(self, user_id: str) -> UserProfile | None:
        doc = self._users.get(user_id)
        if doc is None:
            return None
        return UserProfile.from_document(user_id, doc)

    async def put_user(self, profile: UserProfile) -> None:
        self._users[profile.user_id] = profile.to_document()

    async def list_users(self, exclude: str | None = None) -> List[UserProfile]:
        profiles = [
            UserProfile.from_document(user_id, doc) for user_id, doc in self._users.items() if user_id != exclude
        ]
        return sorted(profiles, key=lambda profile: profile.user_id)

    async def add_favorite(self, user_id: str, target_id: str) -> None:
        self._user_lists["favorites"].setdefault(user_id, {}).setdefault(target_id, _now_ms())

    async def remove_favorite(self, user_id: str, target_id: str) -> None:
        self._user_lists["favorites"].get(user_id, {}).pop(target_id, None)

    async def list_favorites(self, user_id: str) -> List[str]:
        return self._list_ids("favorites", user_id)

    async def block_user(self, user_id: str, target_id: str) -> None:
        self._user_lists["blocked"].setdefault(user_id, {}).setdefault(target_id, _now_ms())

    async def unblock_user(self, user_id: str, target_id: str) -> None:
        self._user_lists["blocked"].get(user_id, {}).pop(target_id, None)

    async def list_blocked(self, user_id: str) -> List[str]:
        return self._list_ids("blocked", user_id)

    def _list_ids(self, name: str, user_id: str) -> List[str]:
        added = self._user_lists[name].get(user_id, {})
        # dicts keep insertion order, which is also the order ids were added
        return list(added)

    def _require_conversation(self, conv_id: str) -> Dict[str, Any]:
        doc = self._conversations.get(conv_id)
        if doc is None:
            raise NotFound(f"unknown conversation {conv_id}")
        return doc

    @staticmethod
    def _require_member(doc: Dict[str, Any], conv_id: str, user_id: str) -> None:
        if user_id not in doc["members"]:
            raise NotFound(f"{user_id} is not a member of {conv_id}")

    def _query_conversations(self, user_id: str) -> List[Conversation]:
        matches = [
            Conversation.from_document(conv_id, copy.deepcopy(doc))
            for conv_id, doc in self._conversations.items()
            if user_id in doc["members"]
        ]
        return sort_conversations(matches)

    def _query_messages(self, conv_id: str) -> List[Message]:
        docs = self._messages.get(conv_id, {})
        messages = [Message.from_document(msg_id, conv_id, dict(doc)) for msg_id, doc in docs.items()]
        # stable sort keeps insertion order for equal timestamps
        messages.sort(key=lambda message: message.time_ms)
        return messages
