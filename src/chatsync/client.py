"""Assemble a client-side chatsync stack from :class:`ClientConfig`."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

from .contacts import ContactDirectory
from .conversation_list import ConversationListSynchronizer
from .media import MediaUploader
from .notifications import LocalNotifier, Notification
from .profiles import ProfileEditor
from .remote_store import RemoteChatStore
from .settings import ClientConfig, SettingsStore, load_client_config_from_env

logger = logging.getLogger(__name__)


@dataclass
class ChatClient:
    config: ClientConfig
    settings: SettingsStore
    store: RemoteChatStore
    notifier: LocalNotifier
    uploader: MediaUploader | None
    conversations: ConversationListSynchronizer
    contacts: ContactDirectory
    profile: ProfileEditor

    def set_notifications_enabled(self, enabled: bool) -> None:
        """Persist the toggle and apply it to the live notifier."""

        self.settings.notifications_enabled = enabled
        self.notifier.set_enabled(enabled)

    async def close(self) -> None:
        await self.conversations.aclose()
        await self.store.close()


def create_client(
    config: ClientConfig | None = None,
    *,
    sink: Callable[[Notification], None] | None = None,
) -> ChatClient:
    """Build a client against the document service named by ``config``.

    Without ``config`` the ``CHATSYNC_*`` environment variables are read.
    Image sending and photo upload stay disabled unless a media host is
    configured.
    """

    config = config or load_client_config_from_env()
    settings = SettingsStore(config.settings_path)
    notifier = LocalNotifier(sink, enabled=settings.notifications_enabled)
    uploader = MediaUploader.from_config(config)
    store = RemoteChatStore.from_config(config)
    if uploader is None:
        logger.info("no media host configured; image upload disabled")
    return ChatClient(
        config=config,
        settings=settings,
        store=store,
        notifier=notifier,
        uploader=uploader,
        conversations=ConversationListSynchronizer(store, notifier, uploader=uploader),
        contacts=ContactDirectory(store),
        profile=ProfileEditor(store, uploader=uploader),
    )
