from __future__ import annotations

import sqlite3
from dataclasses import replace
from typing import Callable, List, TypeVar

from .models import Conversation, Message, MessageStatus, UserProfile, _now_ms
from .sqlite_backend import SQLiteBackend
from .store import LiveQueryStore, NotFound, StoreError, new_message_id

T = TypeVar("T")


class SQLiteChatStore(LiveQueryStore):
    """Durable chat store; multi-row writes run in one transaction."""

    def __init__(self, backend: SQLiteBackend) -> None:
        super().__init__()
        self._backend = backend

    async def get_conversation(self, conv_id: str) -> Conversation | None:
        with self._backend.lock:
            return self._load_conversation(self._backend.connection, conv_id)

    async def put_conversation(self, conversation: Conversation) -> None:
        def work(cursor: sqlite3.Cursor) -> None:
            cursor.execute(
                "INSERT OR REPLACE INTO conversations (conv_id, last_message, last_time_ms) VALUES (?, ?, ?)",
                (conversation.conv_id, conversation.last_message, conversation.last_time_ms),
            )
            cursor.execute("DELETE FROM conversation_members WHERE conv_id=?", (conversation.conv_id,))
            for position, member in enumerate(conversation.members):
                cursor.execute(
                    "INSERT INTO conversation_members (conv_id, user_id, position, pinned, unread) VALUES (?, ?, ?, ?, ?)",
                    (
                        conversation.conv_id,
                        member,
                        position,
                        int(conversation.is_pinned_for(member)),
                        conversation.unread_for(member),
                    ),
                )

        self._transaction(work)
        self._publish_conversations(conversation.members)

    async def set_pinned(self, conv_id: str, user_id: str, pinned: bool) -> None:
        self._update_member(conv_id, user_id, "pinned", int(pinned))

    async def set_unread(self, conv_id: str, user_id: str, count: int) -> None:
        if count < 0:
            raise ValueError("unread count must be non-negative")
        self._update_member(conv_id, user_id, "unread", count)

    async def record_message(self, conv_id: str, sender_id: str, preview: str, time_ms: int) -> None:
        def work(cursor: sqlite3.Cursor) -> None:
            updated = cursor.execute(
                "UPDATE conversations SET last_message=?, last_time_ms=? WHERE conv_id=?",
                (preview, time_ms, conv_id),
            ).rowcount
            if not updated:
                raise NotFound(f"unknown conversation {conv_id}")
            cursor.execute(
                "UPDATE conversation_members SET unread = unread + 1 WHERE conv_id=? AND user_id != ?",
                (conv_id, sender_id),
            )

        self._transaction(work)
        self._publish_conversations(self._members(conv_id))

    async def delete_conversation(self, conv_id: str) -> None:
        members = self._members(conv_id)

        def work(cursor: sqlite3.Cursor) -> None:
            cursor.execute("DELETE FROM conversations WHERE conv_id=?", (conv_id,))

        self._transaction(work)
        self._publish_conversations(members)

    async def add_message(self, message: Message) -> Message:
        stored = replace(message, msg_id=new_message_id())

        def work(cursor: sqlite3.Cursor) -> None:
            known = cursor.execute("SELECT 1 FROM conversations WHERE conv_id=?", (message.conv_id,)).fetchone()
            if known is None:
                raise NotFound(f"unknown conversation {message.conv_id}")
            cursor.execute(
                """
                INSERT INTO messages (msg_id, conv_id, sender_id, text, image_url, time_ms, status)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    stored.msg_id,
                    stored.conv_id,
                    stored.sender_id,
                    stored.text,
                    stored.image_url,
                    stored.time_ms,
                    stored.status.value,
                ),
            )

        self._transaction(work)
        self._publish_messages(message.conv_id)
        return stored

    async def list_messages(self, conv_id: str) -> List[Message]:
        return self._query_messages(conv_id)

    async def update_message_status(self, conv_id: str, msg_id: str, status: MessageStatus) -> None:
        def work(cursor: sqlite3.Cursor) -> None:
            updated = cursor.execute(
                "UPDATE messages SET status=? WHERE conv_id=? AND msg_id=?",
                (status.value, conv_id, msg_id),
            ).rowcount
            if not updated:
                raise NotFound(f"unknown message {msg_id}")

        self._transaction(work)
        self._publish_messages(conv_id)

    async def delete_message(self, conv_id: str, msg_id: str) -> None:
        deleted = self._transaction(
            lambda cursor: cursor.execute(
                "DELETE FROM messages WHERE conv_id=? AND msg_id=?", (conv_id, msg_id)
            ).rowcount
        )
        if deleted:
            self._publish_messages(conv_id)

    async def delete_messages(self, conv_id: str) -> None:
        deleted = self._transaction(
            lambda cursor: cursor.execute("DELETE FROM messages WHERE conv_id=?", (conv_id,)).rowcount
        )
        if deleted:
            self._publish_messages(conv_id)

    async def get_user(self, user_id: str) -> UserProfile | None:
        with self._backend.lock:
            row = self._backend.connection.execute(
                "SELECT full_name, username, photo_url, email FROM users WHERE user_id=?", (user_id,)
            ).fetchone()
        if row is None:
            return None
        return UserProfile(
            user_id=user_id,
            full_name=row["full_name"],
            username=row["username"],
            photo_url=row["photo_url"],
            email=row["email"],
        )

    async def put_user(self, profile: UserProfile) -> None:
        self._transaction(
            lambda cursor: cursor.execute(
                "INSERT OR REPLACE INTO users (user_id, full_name, username, photo_url, email) VALUES (?, ?, ?, ?, ?)",
                (profile.user_id, profile.full_name, profile.username, profile.photo_url, profile.email),
            )
        )

    async def list_users(self, exclude: str | None = None) -> List[UserProfile]:
        with self._backend.lock:
            rows = self._backend.connection.execute(
                "SELECT user_id, full_name, username, photo_url, email FROM users WHERE user_id IS NOT ? ORDER BY user_id",
                (exclude,),
            ).fetchall()
        return [
            UserProfile(
                user_id=row["user_id"],
                full_name=row["full_name"],
                username=row["username"],
                photo_url=row["photo_url"],
                email=row["email"],
            )
            for row in rows
        ]

    async def add_favorite(self, user_id: str, target_id: str) -> None:
        self._add_to_list("favorites", user_id, target_id)

    async def remove_favorite(self, user_id: str, target_id: str) -> None:
        self._remove_from_list("favorites", user_id, target_id)

    async def list_favorites(self, user_id: str) -> List[str]:
        return self._list_ids("favorites", user_id)

    async def block_user(self, user_id: str, target_id: str) -> None:
        self._add_to_list("blocked", user_id, target_id)

    async def unblock_user(self, user_id: str, target_id: str) -> None:
        self._remove_from_list("blocked", user_id, target_id)

    async def list_blocked(self, user_id: str) -> List[str]:
        return self._list_ids("blocked", user_id)

    def _transaction(self, work: Callable[[sqlite3.Cursor], T]) -> T:
        with self._backend.lock:
            conn = self._backend.connection
            cursor = conn.cursor()
            try:
                cursor.execute("BEGIN IMMEDIATE")
                result = work(cursor)
                conn.commit()
                return result
            except sqlite3.Error as exc:
                conn.rollback()
                raise StoreError(str(exc)) from exc
            except Exception:
                conn.rollback()
                raise
            finally:
                cursor.close()

    def _update_member(self, conv_id: str, user_id: str, column: str, value: int) -> None:
        def work(cursor: sqlite3.Cursor) -> None:
            updated = cursor.execute(
                f"UPDATE conversation_members SET {column}=? WHERE conv_id=? AND user_id=?",
                (value, conv_id, user_id),
            ).rowcount
            if not updated:
                raise NotFound(f"{user_id} is not a member of {conv_id}")

        self._transaction(work)
        self._publish_conversations(self._members(conv_id))

    def _add_to_list(self, table: str, user_id: str, target_id: str) -> None:
        self._transaction(
            lambda cursor: cursor.execute(
                f"INSERT OR IGNORE INTO {table} (user_id, target_id, added_ms) VALUES (?, ?, ?)",
                (user_id, target_id, _now_ms()),
            )
        )

    def _remove_from_list(self, table: str, user_id: str, target_id: str) -> None:
        self._transaction(
            lambda cursor: cursor.execute(
                f"DELETE FROM {table} WHERE user_id=? AND target_id=?", (user_id, target_id)
            )
        )

    def _list_ids(self, table: str, user_id: str) -> List[str]:
        with self._backend.lock:
            rows = self._backend.connection.execute(
                f"SELECT target_id FROM {table} WHERE user_id=? ORDER BY added_ms ASC, rowid ASC", (user_id,)
            ).fetchall()
        return [row["target_id"] for row in rows]

    def _members(self, conv_id: str) -> List[str]:
        with self._backend.lock:
            rows = self._backend.connection.execute(
                "SELECT user_id FROM conversation_members WHERE conv_id=? ORDER BY position", (conv_id,)
            ).fetchall()
        return [row["user_id"] for row in rows]

    @staticmethod
    def _load_conversation(conn: sqlite3.Connection, conv_id: str) -> Conversation | None:
        row = conn.execute(
            "SELECT conv_id, last_message, last_time_ms FROM conversations WHERE conv_id=?", (conv_id,)
        ).fetchone()
        if row is None:
            return None
        members = conn.execute(
            "SELECT user_id, pinned, unread FROM conversation_members WHERE conv_id=? ORDER BY position",
            (conv_id,),
        ).fetchall()
        return Conversation(
            conv_id=row["conv_id"],
            members=[member["user_id"] for member in members],
            last_message=row["last_message"],
            last_time_ms=row["last_time_ms"],
            pinned={member["user_id"]: bool(member["pinned"]) for member in members},
            unread={member["user_id"]: int(member["unread"]) for member in members},
        )

    def _query_conversations(self, user_id: str) -> List[Conversation]:
        with self._backend.lock:
            conn = self._backend.connection
            rows = conn.execute(
                """
                SELECT c.conv_id FROM conversations c
                JOIN conversation_members m ON m.conv_id = c.conv_id
                WHERE m.user_id=?
                ORDER BY c.last_time_ms DESC, c.conv_id ASC
                """,
                (user_id,),
            ).fetchall()
            conversations = [self._load_conversation(conn, row["conv_id"]) for row in rows]
        return [conversation for conversation in conversations if conversation is not None]

    def _query_messages(self, conv_id: str) -> List[Message]:
        with self._backend.lock:
            rows = self._backend.connection.execute(
                """
                SELECT msg_id, sender_id, text, image_url, time_ms, status FROM messages
                WHERE conv_id=? ORDER BY time_ms ASC, rowid ASC
                """,
                (conv_id,),
            ).fetchall()
        return [
            Message(
                msg_id=row["msg_id"],
                conv_id=conv_id,
                sender_id=row["sender_id"],
                text=row["text"],
                image_url=row["image_url"],
                time_ms=row["time_ms"],
                status=MessageStatus.parse(row["status"]),
            )
            for row in rows
        ]
