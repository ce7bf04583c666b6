from __future__ import annotations

import sqlite3
import threading
from pathlib import Path

SCHEMA_VERSION = 2


class SQLiteBackend:
    """Owns a shared SQLite connection and applies chat-store migrations."""

    def __init__(self, db_path: str) -> None:
        self._lock = threading.Lock()
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._configure(in_memory=db_path == ":memory:")
        self._apply_migrations()

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    @property
    def lock(self) -> threading.Lock:
        return self._lock

    def close(self) -> None:
        self._conn.close()

    def _configure(self, *, in_memory: bool) -> None:
        cursor = self._conn.cursor()
        if not in_memory:
            cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA busy_timeout=5000")
        cursor.close()

    def _apply_migrations(self) -> None:
        user_version = self._conn.execute("PRAGMA user_version").fetchone()[0]
        if user_version > SCHEMA_VERSION:
            raise ValueError(f"Unsupported schema version: {user_version}")
        if user_version == 0:
            self._create_v1_schema()
            user_version = 1
            self._conn.execute("PRAGMA user_version = 1")
        if user_version == 1:
            self._create_v2_schema()
            self._conn.execute("PRAGMA user_version = 2")

    def _create_v1_schema(self) -> None:
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS conversations (
                conv_id TEXT PRIMARY KEY,
                last_message TEXT NOT NULL,
                last_time_ms INTEGER NOT NULL
            )
            """
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS conversation_members (
                conv_id TEXT NOT NULL REFERENCES conversations(conv_id) ON DELETE CASCADE,
                user_id TEXT NOT NULL,
                position INTEGER NOT NULL,
                pinned INTEGER NOT NULL DEFAULT 0,
                unread INTEGER NOT NULL DEFAULT 0,
                PRIMARY KEY (conv_id, user_id)
            )
            """
        )
        self._conn.execute(
            "CREATE INDEX IF NOT EXISTS conversation_members_user ON conversation_members (user_id)"
        )
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS messages (
                msg_id TEXT PRIMARY KEY,
                conv_id TEXT NOT NULL,
                sender_id TEXT NOT NULL,
                text TEXT NOT NULL,
                image_url TEXT,
                time_ms INTEGER NOT NULL,
                status TEXT NOT NULL
            )
            """
        )
        self._conn.execute("CREATE INDEX IF NOT EXISTS messages_conv_time ON messages (conv_id, time_ms)")
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS users (
                user_id TEXT PRIMARY KEY,
                full_name TEXT NOT NULL,
                username TEXT NOT NULL,
                photo_url TEXT,
                email TEXT NOT NULL
            )
            """
        )

    def _create_v2_schema(self) -> None:
        for table in ("favorites", "blocked"):
            self._conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    user_id TEXT NOT NULL,
                    target_id TEXT NOT NULL,
                    added_ms INTEGER NOT NULL,
                    PRIMARY KEY (user_id, target_id)
                )
                """
            )
