from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Notification:
    title: str
    body: str
    payload: str


class LocalNotifier:
    """Displays local notifications through ``sink`` while enabled."""

    def __init__(self, sink: Callable[[Notification], None] | None = None, *, enabled: bool = True) -> None:
        self._sink = sink
        self.enabled = enabled

    def set_enabled(self, enabled: bool) -> None:
        self.enabled = enabled

    def show(self, notification: Notification) -> None:
        if not self.enabled:
            logger.debug("notifications disabled, dropping %s", notification.payload)
            return
        logger.info("notify %s: %s", notification.title, notification.body)
        if self._sink is not None:
            self._sink(notification)
