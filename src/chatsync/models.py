from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List

IMAGE_PREVIEW = "📷 Photo"


def _now_ms() -> int:
    return int(time.time() * 1000)


class InvalidMessage(ValueError):
    pass


class MessageStatus(Enum):
    SENDING = "sending"
    SENT = "sent"
    DELIVERED = "delivered"
    SEEN = "seen"

    @property
    def rank(self) -> int:
        return _STATUS_ORDER.index(self)

    @classmethod
    def parse(cls, raw: Any) -> "MessageStatus":
        for status in cls:
            if status.value == raw:
                return status
        return cls.SENDING


_STATUS_ORDER = [MessageStatus.SENDING, MessageStatus.SENT, MessageStatus.DELIVERED, MessageStatus.SEEN]


@dataclass
class Conversation:
    """A two-party conversation as stored in the ``chats`` collection."""

    conv_id: str
    members: List[str]
    last_message: str = ""
    last_time_ms: int = 0
    pinned: Dict[str, bool] = field(default_factory=dict)
    unread: Dict[str, int] = field(default_factory=dict)

    def other_member(self, user_id: str) -> str:
        for member in self.members:
            if member != user_id:
                return member
        return ""

    def is_pinned_for(self, user_id: str) -> bool:
        return bool(self.pinned.get(user_id, False))

    def unread_for(self, user_id: str) -> int:
        return int(self.unread.get(user_id, 0))

    def to_document(self) -> Dict[str, Any]:
        return {
            "members": list(self.members),
            "lastMessage": self.last_message,
            "lastTime": self.last_time_ms,
            "isPinned": dict(self.pinned),
            "unreadCount": dict(self.unread),
        }

    @classmethod
    def from_document(cls, conv_id: str, doc: Dict[str, Any]) -> "Conversation":
        return cls(
            conv_id=conv_id,
            members=[str(member) for member in doc.get("members") or []],
            last_message=str(doc.get("lastMessage") or ""),
            last_time_ms=int(doc.get("lastTime") or 0),
            pinned={str(k): bool(v) for k, v in (doc.get("isPinned") or {}).items()},
            unread={str(k): int(v) for k, v in (doc.get("unreadCount") or {}).items()},
        )


@dataclass
class Message:
    """A single message owned by one conversation.

    A message always carries text, an image reference, or both; constructing
    one with neither raises :class:`InvalidMessage`.
    """

    msg_id: str
    conv_id: str
    sender_id: str
    text: str = ""
    image_url: str | None = None
    time_ms: int = 0
    status: MessageStatus = MessageStatus.SENDING

    def __post_init__(self) -> None:
        if not self.has_text and not self.has_image:
            raise InvalidMessage("message requires text or an image")

    @property
    def has_text(self) -> bool:
        return bool(self.text)

    @property
    def has_image(self) -> bool:
        return bool(self.image_url)

    @property
    def is_image_only(self) -> bool:
        return self.has_image and not self.has_text

    @property
    def preview(self) -> str:
        return IMAGE_PREVIEW if self.has_image else self.text

    def to_document(self) -> Dict[str, Any]:
        return {
            "senderId": self.sender_id,
            "text": self.text,
            "imageUrl": self.image_url,
            "time": self.time_ms,
            "status": self.status.value,
        }

    @classmethod
    def from_document(cls, msg_id: str, conv_id: str, doc: Dict[str, Any]) -> "Message":
        return cls(
            msg_id=msg_id,
            conv_id=conv_id,
            sender_id=str(doc.get("senderId") or ""),
            text=str(doc.get("text") or ""),
            image_url=doc.get("imageUrl") or None,
            time_ms=int(doc.get("time") or 0),
            status=MessageStatus.parse(doc.get("status")),
        )


@dataclass
class UserProfile:
    user_id: str
    full_name: str
    username: str = ""
    photo_url: str | None = None
    email: str = ""

    @property
    def initials(self) -> str:
        names = self.full_name.split()
        if len(names) >= 2:
            return (names[0][0] + names[1][0]).upper()
        return self.full_name[:1].upper() or "?"

    def to_document(self) -> Dict[str, Any]:
        return {
            "fullName": self.full_name,
            "username": self.username,
            "photoUrl": self.photo_url,
            "email": self.email,
        }

    @classmethod
    def from_document(cls, user_id: str, doc: Dict[str, Any]) -> "UserProfile":
        return cls(
            user_id=user_id,
            full_name=str(doc.get("fullName") or ""),
            username=str(doc.get("username") or ""),
            photo_url=doc.get("photoUrl") or None,
            email=str(doc.get("email") or ""),
        )
