"""Chat sync core: conversation identity and live list/message synchronizers."""

from .client import ChatClient, create_client
from .contacts import ContactDirectory
from .conversation_list import ConversationListSynchronizer
from .feeds import FeedHub, Subscription
from .message_stream import MessageStreamSynchronizer
from .models import Conversation, Message, MessageStatus, UserProfile
from .notifications import LocalNotifier, Notification
from .profiles import ProfileEditor
from .resolver import conversation_id, get_or_create_conversation
from .store import InMemoryChatStore, NotFound, StoreError

__all__ = [
    "ChatClient",
    "create_client",
    "ContactDirectory",
    "ConversationListSynchronizer",
    "FeedHub",
    "Subscription",
    "MessageStreamSynchronizer",
    "Conversation",
    "Message",
    "MessageStatus",
    "UserProfile",
    "LocalNotifier",
    "Notification",
    "ProfileEditor",
    "conversation_id",
    "get_or_create_conversation",
    "InMemoryChatStore",
    "NotFound",
    "StoreError",
]
