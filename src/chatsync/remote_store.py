"""Store client that talks to the document service over HTTP and WebSockets."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, List

import aiohttp

from .feeds import SnapshotHandler, Subscription, conversations_topic, messages_topic
from .models import Conversation, Message, MessageStatus, UserProfile
from .settings import ClientConfig
from .store import NotFound, StoreError

logger = logging.getLogger(__name__)


def _decode_conversations(items: List[Dict[str, Any]]) -> List[Conversation]:
    return [Conversation.from_document(str(item["id"]), item) for item in items]


def _message_decoder(conv_id: str) -> Callable[[List[Dict[str, Any]]], List[Message]]:
    def decode(items: List[Dict[str, Any]]) -> List[Message]:
        return [Message.from_document(str(item["id"]), conv_id, item) for item in items]

    return decode


class RemoteChatStore:
    """Implements the store contract against a running document service.

    Transport failures and non-2xx responses surface as :class:`StoreError`
    (``NotFound`` for 404s on writes), including requests that outlive
    ``request_timeout_s``. Point reads of missing documents return ``None``.
    A feed whose socket drops or is closed by the service fails its
    subscription instead of going quiet.
    """

    def __init__(
        self,
        base_url: str,
        *,
        session: aiohttp.ClientSession | None = None,
        request_timeout_s: float | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._session = session
        self._owns_session = session is None
        self._timeout = None if request_timeout_s is None else aiohttp.ClientTimeout(total=request_timeout_s)

    @classmethod
    def from_config(cls, config: ClientConfig) -> "RemoteChatStore":
        return cls(config.base_url, request_timeout_s=config.request_timeout_s)

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    async def get_conversation(self, conv_id: str) -> Conversation | None:
        payload = await self._request("GET", f"/v1/conversations/{conv_id}", allow_missing=True)
        if payload is None:
            return None
        return Conversation.from_document(conv_id, payload)

    async def put_conversation(self, conversation: Conversation) -> None:
        await self._request("PUT", f"/v1/conversations/{conversation.conv_id}", json=conversation.to_document())

    async def set_pinned(self, conv_id: str, user_id: str, pinned: bool) -> None:
        await self._request("POST", f"/v1/conversations/{conv_id}/pin", json={"user_id": user_id, "pinned": pinned})

    async def set_unread(self, conv_id: str, user_id: str, count: int) -> None:
        if count < 0:
            raise ValueError("unread count must be non-negative")
        await self._request("POST", f"/v1/conversations/{conv_id}/unread", json={"user_id": user_id, "count": count})

    async def record_message(self, conv_id: str, sender_id: str, preview: str, time_ms: int) -> None:
        await self._request(
            "POST",
            f"/v1/conversations/{conv_id}/activity",
            json={"sender_id": sender_id, "preview": preview, "time": time_ms},
        )

    async def delete_conversation(self, conv_id: str) -> None:
        await self._request("DELETE", f"/v1/conversations/{conv_id}")

    async def add_message(self, message: Message) -> Message:
        payload = await self._request(
            "POST", f"/v1/conversations/{message.conv_id}/messages", json=message.to_document()
        )
        return Message.from_document(str(payload["id"]), message.conv_id, payload)

    async def list_messages(self, conv_id: str) -> List[Message]:
        payload = await self._request("GET", f"/v1/conversations/{conv_id}/messages")
        return _message_decoder(conv_id)(payload.get("messages") or [])

    async def update_message_status(self, conv_id: str, msg_id: str, status: MessageStatus) -> None:
        await self._request(
            "PATCH", f"/v1/conversations/{conv_id}/messages/{msg_id}", json={"status": status.value}
        )

    async def delete_message(self, conv_id: str, msg_id: str) -> None:
        await self._request("DELETE", f"/v1/conversations/{conv_id}/messages/{msg_id}")

    async def delete_messages(self, conv_id: str) -> None:
        await self._request("DELETE", f"/v1/conversations/{conv_id}/messages")

    async def get_user(self, user_id: str) -> UserProfile | None:
        payload = await self._request("GET", f"/v1/users/{user_id}", allow_missing=True)
        if payload is None:
            return None
        return UserProfile.from_document(user_id, payload)

    async def put_user(self, profile: UserProfile) -> None:
        await self._request("PUT", f"/v1/users/{profile.user_id}", json=profile.to_document())

    async def list_users(self, exclude: str | None = None) -> List[UserProfile]:
        params = {} if exclude is None else {"exclude": exclude}
        payload = await self._request("GET", "/v1/users", params=params)
        return [UserProfile.from_document(str(item["id"]), item) for item in payload.get("users") or []]

    async def add_favorite(self, user_id: str, target_id: str) -> None:
        await self._request("PUT", f"/v1/users/{user_id}/favorites/{target_id}")

    async def remove_favorite(self, user_id: str, target_id: str) -> None:
        await self._request("DELETE", f"/v1/users/{user_id}/favorites/{target_id}")

    async def list_favorites(self, user_id: str) -> List[str]:
        payload = await self._request("GET", f"/v1/users/{user_id}/favorites")
        return [str(item) for item in payload.get("ids") or []]

    async def block_user(self, user_id: str, target_id: str) -> None:
        await self._request("PUT", f"/v1/users/{user_id}/blocked/{target_id}")

    async def unblock_user(self, user_id: str, target_id: str) -> None:
        await self._request("DELETE", f"/v1/users/{user_id}/blocked/{target_id}")

    async def list_blocked(self, user_id: str) -> List[str]:
        payload = await self._request("GET", f"/v1/users/{user_id}/blocked")
        return [str(item) for item in payload.get("ids") or []]

    def watch_conversations(
        self,
        user_id: str,
        handler: SnapshotHandler,
        *,
        on_error: Callable[[Exception], None] | None = None,
    ) -> Subscription:
        subscription = Subscription(conversations_topic(user_id), handler, on_error=on_error)
        subscription.attach(
            self._pump(f"/v1/feeds/conversations/{user_id}", subscription, _decode_conversations)
        )
        return subscription

    def watch_messages(
        self,
        conv_id: str,
        handler: SnapshotHandler,
        *,
        on_error: Callable[[Exception], None] | None = None,
    ) -> Subscription:
        subscription = Subscription(messages_topic(conv_id), handler, on_error=on_error)
        subscription.attach(self._pump(f"/v1/feeds/messages/{conv_id}", subscription, _message_decoder(conv_id)))
        return subscription

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Dict[str, Any] | None = None,
        params: Dict[str, str] | None = None,
        allow_missing: bool = False,
    ) -> Dict[str, Any] | None:
        session = self._ensure_session()
        options: Dict[str, Any] = {"params": params or {}}
        if self._timeout is not None:
            options["timeout"] = self._timeout
        try:
            async with session.request(method, self._base_url + path, json=json, **options) as resp:
                if resp.status == 404 and allow_missing:
                    return None
                if resp.status >= 400:
                    raise self._error_for(resp.status, await resp.text())
                return await resp.json()
        except asyncio.TimeoutError as exc:
            raise StoreError(f"{method} {path} timed out") from exc
        except (aiohttp.ClientError, ValueError) as exc:
            raise StoreError(f"{method} {path} failed: {exc}") from exc

    @staticmethod
    def _error_for(status: int, text: str) -> StoreError:
        if status == 404:
            return NotFound(text)
        return StoreError(f"HTTP {status}: {text}")

    async def _pump(
        self,
        path: str,
        subscription: Subscription,
        decode: Callable[[List[Dict[str, Any]]], List[Any]],
    ) -> None:
        session = self._ensure_session()
        try:
            async with session.ws_connect(self._base_url + path) as ws:
                logger.debug("feed %s connected", subscription.topic)
                async for msg in ws:
                    if msg.type == aiohttp.WSMsgType.TEXT:
                        frame = msg.json()
                        if frame.get("t") == "snapshot":
                            subscription.deliver(decode(frame["body"]["items"]))
                    elif msg.type == aiohttp.WSMsgType.ERROR:
                        break
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError, KeyError) as exc:
            subscription.fail(StoreError(f"feed {subscription.topic} dropped: {exc}"))
            return
        # only a service-side close gets here; cancellation raises out of the loop
        subscription.fail(StoreError(f"feed {subscription.topic} closed by the service"))
