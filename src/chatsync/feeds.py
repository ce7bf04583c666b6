from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List

logger = logging.getLogger(__name__)

SnapshotHandler = Callable[[List[Any]], Awaitable[None]]


def conversations_topic(user_id: str) -> str:
    return f"conversations:{user_id}"


def messages_topic(conv_id: str) -> str:
    return f"messages:{conv_id}"


class Subscription:
    """Cancellable handle on one live feed.

    Snapshots are queued and handed to ``handler`` one at a time, in the order
    they were delivered. Once :meth:`cancel` returns no further snapshot
    reaches the handler.
    """

    def __init__(
        self,
        topic: str,
        handler: SnapshotHandler,
        *,
        on_cancel: Callable[["Subscription"], None] | None = None,
        on_error: Callable[[Exception], None] | None = None,
    ) -> None:
        self.topic = topic
        self._handler = handler
        self._on_cancel = on_cancel
        self._on_error = on_error
        self._error: Exception | None = None
        self._queue: asyncio.Queue[List[Any]] = asyncio.Queue()
        self._cancelled = False
        self._unfinished = 0
        self._pump: asyncio.Task | None = None
        self._consumer = asyncio.create_task(self._consume())

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def idle(self) -> bool:
        return self._cancelled or self._unfinished == 0

    @property
    def error(self) -> Exception | None:
        return self._error

    @property
    def active(self) -> bool:
        """False once cancelled, failed, or once the upstream pump has ended."""

        if self._cancelled or self._error is not None:
            return False
        return self._pump is None or not self._pump.done()

    def deliver(self, snapshot: List[Any]) -> None:
        if self._cancelled:
            return
        self._unfinished += 1
        self._queue.put_nowait(snapshot)

    def attach(self, source: Awaitable[None]) -> None:
        """Run ``source`` as this feed's upstream pump until cancellation."""

        self._pump = asyncio.create_task(source)

    def fail(self, exc: Exception) -> None:
        """Record that the upstream feed broke and tell the owner once."""

        if self._cancelled or self._error is not None:
            return
        self._error = exc
        logger.warning("feed %s failed: %s", self.topic, exc)
        if self._on_error is not None:
            self._on_error(exc)

    async def drain(self) -> None:
        """Wait until every snapshot delivered so far has been handled."""

        if self._cancelled:
            return
        await self._queue.join()

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        if self._on_cancel is not None:
            self._on_cancel(self)
        if self._pump is not None:
            self._pump.cancel()
        self._consumer.cancel()
        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()
        self._unfinished = 0

    async def wait_closed(self) -> None:
        for task in (self._pump, self._consumer):
            if task is None or task is asyncio.current_task():
                continue
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _consume(self) -> None:
        while True:
            snapshot = await self._queue.get()
            try:
                await self._handler(snapshot)
            except Exception:
                logger.exception("snapshot handler failed for %s", self.topic)
            finally:
                self._unfinished = max(0, self._unfinished - 1)
                self._queue.task_done()


class FeedHub:
    """Registers live-feed subscriptions and publishes snapshots per topic."""

    def __init__(self) -> None:
        self._subscriptions: Dict[str, List[Subscription]] = {}

    def subscribe(
        self,
        topic: str,
        handler: SnapshotHandler,
        *,
        on_error: Callable[[Exception], None] | None = None,
    ) -> Subscription:
        subscription = Subscription(topic, handler, on_cancel=self.unsubscribe, on_error=on_error)
        self._subscriptions.setdefault(topic, []).append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subs = self._subscriptions.get(subscription.topic)
        if not subs:
            return
        try:
            subs.remove(subscription)
        except ValueError:
            return
        if not subs:
            self._subscriptions.pop(subscription.topic, None)

    def has_subscribers(self, topic: str) -> bool:
        return bool(self._subscriptions.get(topic))

    def publish(self, topic: str, snapshot: List[Any]) -> None:
        for subscription in list(self._subscriptions.get(topic, [])):
            subscription.deliver(snapshot)
