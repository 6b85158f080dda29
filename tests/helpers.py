"""Record builders and raw-database helpers shared by the test modules."""

from __future__ import annotations

import sqlite3
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from chatvault.models import Chat, Message
from chatvault.storage.query import to_db_timestamp
from chatvault.types import Provider


class MemoryKeyStore:
    """In-memory KeyStore so tests never touch the system keyring."""

    def __init__(self) -> None:
        self.secrets: dict[str, str] = {}

    def get(self, account: str) -> str | None:
        return self.secrets.get(account)

    def set(self, account: str, secret: str) -> None:
        self.secrets[account] = secret

    def delete(self, account: str) -> None:
        self.secrets.pop(account, None)


def days_ago(days: float, *, now: datetime | None = None) -> datetime:
    return (now or datetime.now(timezone.utc)) - timedelta(days=days)


def make_chat(
    title: str = "Test Chat",
    *,
    provider: Provider = Provider.OPENAI,
    created_at: datetime | None = None,
    updated_at: datetime | None = None,
    **kwargs: Any,
) -> Chat:
    created = created_at or datetime.now(timezone.utc)
    return Chat(
        title=title,
        provider=provider,
        model_name=provider.default_model,
        created_at=created,
        updated_at=updated_at or created,
        **kwargs,
    )


def make_message(
    chat_id: str,
    content: str = "hello",
    *,
    is_user: bool = True,
    timestamp: datetime | None = None,
    **kwargs: Any,
) -> Message:
    return Message(
        chat_id=chat_id,
        content=content,
        is_user=is_user,
        timestamp=timestamp or datetime.now(timezone.utc),
        **kwargs,
    )


def make_conversation(chat_id: str, count: int, *, start: datetime | None = None, prefix: str = "message") -> list[Message]:
    """``count`` alternating user/assistant messages one second apart."""
    start = start or datetime.now(timezone.utc) - timedelta(hours=1)
    return [
        make_message(chat_id, f"{prefix} {i}", is_user=i % 2 == 0, timestamp=start + timedelta(seconds=i))
        for i in range(count)
    ]


async def set_chat_updated_at(manager, chat_id: str, when: datetime) -> None:
    async with manager.transaction() as conn:
        await conn.execute("UPDATE chats SET updated_at = ? WHERE id = ?", (to_db_timestamp(when), chat_id))


async def scalar(manager, sql: str, params: tuple = ()) -> Any:
    conn = manager.ensure_initialized()
    cursor = await conn.execute(sql, params)
    row = await cursor.fetchone()
    return row[0] if row else None


_V1_SCHEMA = """
CREATE TABLE chats (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL DEFAULT '',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    llm_provider TEXT NOT NULL,
    model_name TEXT NOT NULL DEFAULT '',
    is_archived INTEGER NOT NULL DEFAULT 0,
    message_count INTEGER NOT NULL DEFAULT 0,
    last_message_preview TEXT
);
CREATE TABLE messages (
    id TEXT PRIMARY KEY,
    chat_id TEXT NOT NULL REFERENCES chats(id) ON DELETE CASCADE,
    content TEXT NOT NULL DEFAULT '',
    is_user INTEGER NOT NULL,
    timestamp TEXT NOT NULL,
    image_data BLOB,
    status TEXT NOT NULL DEFAULT 'sent',
    edited_at TEXT,
    model TEXT,
    provider TEXT,
    response_time REAL,
    prompt_tokens INTEGER,
    response_tokens INTEGER,
    total_tokens INTEGER
);
CREATE TABLE settings (
    key TEXT PRIMARY KEY,
    value TEXT,
    type TEXT NOT NULL DEFAULT 'string',
    updated_at TEXT NOT NULL
);
CREATE TABLE chat_stats (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    chat_id TEXT NOT NULL REFERENCES chats(id) ON DELETE CASCADE,
    date TEXT NOT NULL,
    message_count INTEGER NOT NULL DEFAULT 0,
    word_count INTEGER NOT NULL DEFAULT 0,
    token_count INTEGER NOT NULL DEFAULT 0,
    avg_response_time REAL,
    UNIQUE (chat_id, date)
);
CREATE VIRTUAL TABLE chats_fts USING fts5(title, last_message_preview, content='chats', content_rowid='rowid');
CREATE VIRTUAL TABLE messages_fts USING fts5(content, content='messages', content_rowid='rowid');
CREATE TRIGGER update_chats_fts_insert AFTER INSERT ON chats BEGIN
    INSERT INTO chats_fts(rowid, title, last_message_preview) VALUES (new.rowid, new.title, new.last_message_preview);
END;
CREATE TRIGGER update_messages_fts_insert AFTER INSERT ON messages BEGIN
    INSERT INTO messages_fts(rowid, content) VALUES (new.rowid, new.content);
END;
CREATE TRIGGER update_chat_stats_insert AFTER INSERT ON messages BEGIN
    UPDATE chats SET message_count = message_count + 1 WHERE id = new.chat_id;
END;
"""


def create_v1_database(path: Path, *, chat_id: str = "legacy-chat", user_version: int = 1) -> None:
    """Write a version-1 database with trigger-maintained search tables and one chat."""
    now = to_db_timestamp(datetime.now(timezone.utc) - timedelta(days=1))
    conn = sqlite3.connect(path)
    try:
        conn.executescript(_V1_SCHEMA)
        conn.execute(
            "INSERT INTO chats (id, title, created_at, updated_at, llm_provider, model_name) VALUES (?, ?, ?, ?, ?, ?)",
            (chat_id, "Legacy chat", now, now, "anthropic", "claude-3-opus-20240229"),
        )
        for i, text in enumerate(["legacy greeting", "legacy reply"]):
            conn.execute(
                "INSERT INTO messages (id, chat_id, content, is_user, timestamp) VALUES (?, ?, ?, ?, ?)",
                (f"legacy-{i}", chat_id, text, int(i == 0), now),
            )
        conn.execute(f"PRAGMA user_version = {user_version}")
        conn.commit()
    finally:
        conn.close()


def create_index_mismatch_database(path: Path) -> None:
    """Write a database that opens and reads fine but fails ``PRAGMA integrity_check``.

    The index is built over one column, then its recorded definition is
    pointed at another, so its entries no longer match the table rows.
    """
    conn = sqlite3.connect(path)
    try:
        conn.execute("CREATE TABLE chats (id TEXT PRIMARY KEY, title TEXT, note TEXT)")
        conn.execute("CREATE INDEX idx_chats_note ON chats(title)")
        conn.executemany(
            "INSERT INTO chats (id, title, note) VALUES (?, ?, ?)",
            [(f"doomed-{i}", f"title {i}", f"note {i}") for i in range(3)],
        )
        conn.commit()
        conn.execute("PRAGMA writable_schema = ON")
        conn.execute(
            "UPDATE sqlite_master SET sql = 'CREATE INDEX idx_chats_note ON chats(note)' WHERE name = 'idx_chats_note'"
        )
        conn.commit()
        conn.execute("PRAGMA writable_schema = OFF")
    finally:
        conn.close()
