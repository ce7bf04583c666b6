"""aiohttp document service exposing a chat store over HTTP and WebSocket feeds."""

from __future__ import annotations

import argparse
import logging
import sys
from typing import Any, Callable, Dict, List, TextIO

from aiohttp import WSMsgType, web

from .feeds import Subscription
from .models import Conversation, InvalidMessage, Message, MessageStatus, UserProfile
from .resolver import conversation_id
from .sqlite_backend import SQLiteBackend
from .sqlite_store import SQLiteChatStore
from .store import InMemoryChatStore, NotFound, StoreError

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = 1

# list name -> (read, add, remove) store methods
USER_LISTS = {
    "favorites": ("list_favorites", "add_favorite", "remove_favorite"),
    "blocked": ("list_blocked", "block_user", "unblock_user"),
}


class Runtime:
    def __init__(self, *, store, backend: SQLiteBackend | None = None) -> None:
        self.store = store
        self.backend = backend


def conversation_payload(conversation: Conversation) -> Dict[str, Any]:
    return {"id": conversation.conv_id, **conversation.to_document()}


def message_payload(message: Message) -> Dict[str, Any]:
    return {"id": message.msg_id, **message.to_document()}


def user_payload(profile: UserProfile) -> Dict[str, Any]:
    return {"id": profile.user_id, **profile.to_document()}


def snapshot_frame(items: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {"v": PROTOCOL_VERSION, "t": "snapshot", "body": {"items": items}}


def _error(code: str, message: str, status: int) -> web.Response:
    return web.json_response({"code": code, "message": message}, status=status)


def _invalid_request(message: str) -> web.Response:
    return _error("invalid_request", message, 400)


def _not_found(message: str) -> web.Response:
    return _error("not_found", message, 404)


def _ok() -> web.Response:
    return web.json_response({"status": "ok"})


async def _read_body(request: web.Request) -> Dict[str, Any] | None:
    try:
        body = await request.json()
    except ValueError:
        return None
    if not isinstance(body, dict):
        return None
    return body


@web.middleware
async def store_errors(request: web.Request, handler):
    try:
        return await handler(request)
    except NotFound as exc:
        return _not_found(str(exc))
    except StoreError as exc:
        logger.exception("store failure on %s %s", request.method, request.path)
        return _error("store_error", str(exc), 500)


async def handle_health(_: web.Request) -> web.Response:
    return web.Response(text="ok")


async def handle_conversation_get(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    conv_id = request.match_info["conv_id"]
    conversation = await runtime.store.get_conversation(conv_id)
    if conversation is None:
        return _not_found(f"unknown conversation {conv_id}")
    return web.json_response(conversation_payload(conversation))


async def handle_conversation_put(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    body = await _read_body(request)
    if body is None:
        return _invalid_request("malformed json")
    members = body.get("members")
    if not isinstance(members, list) or len(members) != 2 or any(not isinstance(m, str) or not m for m in members):
        return _invalid_request("two members required")
    try:
        conversation = Conversation.from_document(request.match_info["conv_id"], body)
    except (TypeError, ValueError):
        return _invalid_request("malformed conversation")
    await runtime.store.put_conversation(conversation)
    return _ok()


async def handle_conversation_delete(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    await runtime.store.delete_conversation(request.match_info["conv_id"])
    return _ok()


async def handle_pin(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    body = await _read_body(request)
    if body is None:
        return _invalid_request("malformed json")
    user_id = body.get("user_id")
    pinned = body.get("pinned")
    if not isinstance(user_id, str) or not isinstance(pinned, bool):
        return _invalid_request("user_id and pinned required")
    await runtime.store.set_pinned(request.match_info["conv_id"], user_id, pinned)
    return _ok()


async def handle_unread(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    body = await _read_body(request)
    if body is None:
        return _invalid_request("malformed json")
    user_id = body.get("user_id")
    count = body.get("count")
    if not isinstance(user_id, str) or not isinstance(count, int) or isinstance(count, bool) or count < 0:
        return _invalid_request("user_id and non-negative count required")
    await runtime.store.set_unread(request.match_info["conv_id"], user_id, count)
    return _ok()


async def handle_activity(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    body = await _read_body(request)
    if body is None:
        return _invalid_request("malformed json")
    sender_id = body.get("sender_id")
    preview = body.get("preview")
    time_ms = body.get("time")
    if not isinstance(sender_id, str) or not isinstance(preview, str) or not isinstance(time_ms, int):
        return _invalid_request("sender_id, preview and time required")
    await runtime.store.record_message(request.match_info["conv_id"], sender_id, preview, time_ms)
    return _ok()


async def handle_messages_list(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    messages = await runtime.store.list_messages(request.match_info["conv_id"])
    return web.json_response({"messages": [message_payload(message) for message in messages]})


async def handle_message_add(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    body = await _read_body(request)
    if body is None:
        return _invalid_request("malformed json")
    if not isinstance(body.get("senderId"), str) or not body["senderId"]:
        return _invalid_request("senderId required")
    try:
        message = Message.from_document("", request.match_info["conv_id"], body)
    except InvalidMessage as exc:
        return _invalid_request(str(exc))
    except (TypeError, ValueError):
        return _invalid_request("malformed message")
    stored = await runtime.store.add_message(message)
    return web.json_response(message_payload(stored), status=201)


async def handle_messages_delete(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    await runtime.store.delete_messages(request.match_info["conv_id"])
    return _ok()


async def handle_message_patch(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    body = await _read_body(request)
    if body is None:
        return _invalid_request("malformed json")
    raw_status = body.get("status")
    if raw_status not in {status.value for status in MessageStatus}:
        return _invalid_request("unknown status")
    await runtime.store.update_message_status(
        request.match_info["conv_id"], request.match_info["msg_id"], MessageStatus(raw_status)
    )
    return _ok()


async def handle_message_delete(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    await runtime.store.delete_message(request.match_info["conv_id"], request.match_info["msg_id"])
    return _ok()


async def handle_user_get(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    user_id = request.match_info["user_id"]
    profile = await runtime.store.get_user(user_id)
    if profile is None:
        return _not_found(f"unknown user {user_id}")
    return web.json_response(user_payload(profile))


async def handle_user_put(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    body = await _read_body(request)
    if body is None:
        return _invalid_request("malformed json")
    if not isinstance(body.get("fullName"), str):
        return _invalid_request("fullName required")
    await runtime.store.put_user(UserProfile.from_document(request.match_info["user_id"], body))
    return _ok()


async def handle_users_list(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    profiles = await runtime.store.list_users(exclude=request.query.get("exclude") or None)
    return web.json_response({"users": [user_payload(profile) for profile in profiles]})


async def handle_user_list_get(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    read, _, _ = USER_LISTS[request.match_info["list_name"]]
    ids = await getattr(runtime.store, read)(request.match_info["user_id"])
    return web.json_response({"ids": ids})


async def handle_user_list_put(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    user_id = request.match_info["user_id"]
    target_id = request.match_info["target_id"]
    if user_id == target_id:
        return _invalid_request("a user cannot list themselves")
    _, add, _ = USER_LISTS[request.match_info["list_name"]]
    await getattr(runtime.store, add)(user_id, target_id)
    return _ok()


async def handle_user_list_delete(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    _, _, remove = USER_LISTS[request.match_info["list_name"]]
    await getattr(runtime.store, remove)(request.match_info["user_id"], request.match_info["target_id"])
    return _ok()


async def _serve_feed(
    request: web.Request,
    watch: Callable[..., Subscription],
    target: str,
    encode: Callable[[Any], Dict[str, Any]],
) -> web.WebSocketResponse:
    ws = web.WebSocketResponse()
    await ws.prepare(request)

    async def push(snapshot: List[Any]) -> None:
        if ws.closed:
            return
        await ws.send_json(snapshot_frame([encode(item) for item in snapshot]))

    subscription = watch(target, push)
    logger.debug("feed opened for %s", subscription.topic)
    try:
        async for msg in ws:
            if msg.type == WSMsgType.TEXT and msg.data == "ping":
                await ws.send_str("pong")
            elif msg.type == WSMsgType.ERROR:
                break
    finally:
        subscription.cancel()
        logger.debug("feed closed for %s", subscription.topic)
    return ws


async def conversations_feed(request: web.Request) -> web.WebSocketResponse:
    runtime: Runtime = request.app["runtime"]
    return await _serve_feed(
        request, runtime.store.watch_conversations, request.match_info["user_id"], conversation_payload
    )


async def messages_feed(request: web.Request) -> web.WebSocketResponse:
    runtime: Runtime = request.app["runtime"]
    return await _serve_feed(request, runtime.store.watch_messages, request.match_info["conv_id"], message_payload)


def create_app(*, db_path: str | None = None) -> web.Application:
    backend: SQLiteBackend | None = None
    if db_path is not None:
        backend = SQLiteBackend(db_path)
        store = SQLiteChatStore(backend)
    else:
        store = InMemoryChatStore()

    app = web.Application(middlewares=[store_errors])
    app["runtime"] = Runtime(store=store, backend=backend)
    app.router.add_get("/healthz", handle_health)

    conversation = "/v1/conversations/{conv_id}"
    app.router.add_get(conversation, handle_conversation_get)
    app.router.add_put(conversation, handle_conversation_put)
    app.router.add_delete(conversation, handle_conversation_delete)
    app.router.add_post(conversation + "/pin", handle_pin)
    app.router.add_post(conversation + "/unread", handle_unread)
    app.router.add_post(conversation + "/activity", handle_activity)
    app.router.add_get(conversation + "/messages", handle_messages_list)
    app.router.add_post(conversation + "/messages", handle_message_add)
    app.router.add_delete(conversation + "/messages", handle_messages_delete)
    app.router.add_patch(conversation + "/messages/{msg_id}", handle_message_patch)
    app.router.add_delete(conversation + "/messages/{msg_id}", handle_message_delete)

    app.router.add_get("/v1/users", handle_users_list)
    app.router.add_get("/v1/users/{user_id}", handle_user_get)
    app.router.add_put("/v1/users/{user_id}", handle_user_put)
    user_list = "/v1/users/{user_id}/{list_name:favorites|blocked}"
    app.router.add_get(user_list, handle_user_list_get)
    app.router.add_put(user_list + "/{target_id}", handle_user_list_put)
    app.router.add_delete(user_list + "/{target_id}", handle_user_list_delete)

    app.router.add_get("/v1/feeds/conversations/{user_id}", conversations_feed)
    app.router.add_get("/v1/feeds/messages/{conv_id}", messages_feed)

    if backend is not None:
        async def close_db(_: web.Application) -> None:
            backend.close()

        app.on_cleanup.append(close_db)
    return app


def _run_serve(args: argparse.Namespace) -> int:
    app = create_app(db_path=args.db)
    logger.info("serving on %s:%s (db=%s)", args.host, args.port, args.db or "memory")
    web.run_app(app, host=args.host, port=args.port)
    return 0


def _run_resolve(args: argparse.Namespace, output: TextIO) -> int:
    try:
        resolved = conversation_id(args.user_a, args.user_b)
    except ValueError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2
    output.write(resolved + "\n")
    return 0


def main(argv: list[str] | None = None, output: TextIO | None = None) -> int:
    """Entry point for CLI commands."""

    parser = argparse.ArgumentParser(description="chatsync document service")
    parser.add_argument("--log-level", default="INFO", help="Logging level (DEBUG, INFO, WARNING, ...)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="Run the aiohttp document service")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Host to bind")
    serve_parser.add_argument("--port", type=int, default=8080, help="Port to bind")
    serve_parser.add_argument("--db", type=str, default=None, help="Path to SQLite database for durability")

    resolve_parser = subparsers.add_parser("resolve", help="Print the conversation id for two users")
    resolve_parser.add_argument("user_a")
    resolve_parser.add_argument("user_b")

    args = parser.parse_args(sys.argv[1:] if argv is None else argv)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "serve":
        return _run_serve(args)
    return _run_resolve(args, output or sys.stdout)


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
