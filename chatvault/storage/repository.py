"""Record store: CRUD and search over chats and messages.

The record store owns the chat aggregates. ``message_count``,
``last_message_preview`` and the ``updated_at`` bump are recomputed from
the messages table inside the same transaction as every message write, and
every write is followed by an explicit search index sync.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any

import aiosqlite
from pydantic import ValidationError

from chatvault.errors import DeleteFailedError, InsertFailedError, QueryFailedError, RecordNotFoundError
from chatvault.lib.json import JSONDecodeError
from chatvault.lib.json import dumps as json_dumps
from chatvault.lib.json import loads as json_loads
from chatvault.lib.log import get_logger
from chatvault.models import Chat, Message, MessageMetadata
from chatvault.storage import driver
from chatvault.storage.connection import ConnectionManager
from chatvault.storage.query import DateRange, from_db_timestamp, to_db_timestamp
from chatvault.types import Provider, SearchScope

LOGGER = get_logger(__name__)

# SQLite's default host parameter limit is 999 on older builds
_IN_CHUNK = 500

_METADATA_COLUMNS = (
    "model",
    "provider",
    "provider_config_id",
    "response_time",
    "prompt_tokens",
    "response_tokens",
    "total_tokens",
    "temperature",
    "max_tokens",
    "finish_reason",
    "error",
)
_MESSAGE_COLUMNS = (
    "id",
    "chat_id",
    "content",
    "is_user",
    "timestamp",
    "image_data",
    "status",
    "edited_at",
    *_METADATA_COLUMNS,
)

UPSERT_MESSAGE_SQL = (
    f"INSERT INTO messages ({', '.join(_MESSAGE_COLUMNS)}) "
    f"VALUES ({', '.join('?' * len(_MESSAGE_COLUMNS))}) "
    "ON CONFLICT(id) DO UPDATE SET "
    + ", ".join(f"{column} = excluded.{column}" for column in _MESSAGE_COLUMNS[1:])
)

UPSERT_CHAT_SQL = """
    INSERT INTO chats (id, title, created_at, updated_at, llm_provider, model_name, is_archived,
                       message_count, last_message_preview)
    VALUES (?, ?, ?, ?, ?, ?, ?, 0, NULL)
    ON CONFLICT(id) DO UPDATE SET
        title = excluded.title,
        updated_at = excluded.updated_at,
        llm_provider = excluded.llm_provider,
        model_name = excluded.model_name,
        is_archived = excluded.is_archived
"""

# Aggregates are derived from the messages table, never taken from the caller.
REFRESH_AGGREGATES_SQL = """
    UPDATE chats SET
        message_count = (SELECT COUNT(*) FROM messages WHERE chat_id = :chat_id),
        last_message_preview = (
            SELECT substr(content, 1, :preview_length) FROM messages
            WHERE chat_id = :chat_id
            ORDER BY timestamp DESC, rowid DESC
            LIMIT 1
        ),
        updated_at = MAX(created_at, :now)
    WHERE id = :chat_id
"""

_REFRESH_DAILY_STATS_SQL = """
    INSERT INTO chat_stats (chat_id, date, message_count, word_count, token_count, avg_response_time)
    SELECT :chat_id, :day,
           COUNT(*),
           COALESCE(SUM(CASE WHEN length(trim(content)) = 0 THEN 0
                        ELSE length(trim(content)) - length(replace(trim(content), ' ', '')) + 1 END), 0),
           COALESCE(SUM(total_tokens), 0),
           AVG(response_time)
    FROM messages
    WHERE chat_id = :chat_id AND substr(timestamp, 1, 10) = :day
    ON CONFLICT(chat_id, date) DO UPDATE SET
        message_count = excluded.message_count,
        word_count = excluded.word_count,
        token_count = excluded.token_count,
        avg_response_time = excluded.avg_response_time
"""


@dataclass(frozen=True)
class ChatStatistics:
    total_chats: int
    active_chats: int
    archived_chats: int
    total_messages: int
    chats_by_provider: dict[str, int] = field(default_factory=dict)

    @property
    def average_messages_per_chat(self) -> float:
        return self.total_messages / self.total_chats if self.total_chats else 0.0


@dataclass(frozen=True)
class DailyChatStats:
    chat_id: str
    date: date
    message_count: int
    word_count: int
    token_count: int
    avg_response_time: float | None


# =============================================================================
# Row conversion
# =============================================================================


def _row_get(row: Any, key: str, default: Any = None) -> Any:
    try:
        return row[key]
    except (IndexError, KeyError):
        return default


def row_to_chat(row: Any) -> Chat | None:
    """Build a Chat from a row, or None (logged) when the row is malformed."""
    try:
        return Chat(
            id=row["id"],
            title=row["title"] or "",
            created_at=from_db_timestamp(row["created_at"]),
            updated_at=from_db_timestamp(row["updated_at"]),
            provider=Provider(row["llm_provider"]),
            model_name=row["model_name"] or "",
            is_archived=bool(row["is_archived"]),
            message_count=row["message_count"] or 0,
            last_message_preview=row["last_message_preview"],
        )
    except (ValidationError, ValueError, TypeError, KeyError) as exc:
        LOGGER.warning("Skipping unreadable chat row %s: %s", _row_get(row, "id"), exc)
        return None


def row_to_message(row: Any) -> Message | None:
    """Build a Message from a row, or None (logged) when the row is malformed."""
    try:
        raw_meta = {column: _row_get(row, column) for column in _METADATA_COLUMNS}
        if raw_meta["error"] is not None:
            raw_meta["error"] = json_loads(raw_meta["error"])
        metadata = MessageMetadata.model_validate(raw_meta)
        return Message(
            id=row["id"],
            chat_id=row["chat_id"],
            content=row["content"] or "",
            is_user=bool(row["is_user"]),
            timestamp=from_db_timestamp(row["timestamp"]),
            image_data=row["image_data"],
            metadata=None if metadata.is_empty() else metadata,
            status=row["status"],
            edited_at=from_db_timestamp(row["edited_at"]),
        )
    except (ValidationError, JSONDecodeError, ValueError, TypeError, KeyError) as exc:
        LOGGER.warning("Skipping unreadable message row %s: %s", _row_get(row, "id"), exc)
        return None


def chat_params(chat: Chat) -> tuple[object, ...]:
    return (
        chat.id,
        chat.title,
        to_db_timestamp(chat.created_at),
        to_db_timestamp(chat.updated_at),
        chat.provider.value,
        chat.model_name,
        int(chat.is_archived),
    )


def message_params(message: Message) -> tuple[object, ...]:
    meta = message.metadata or MessageMetadata()
    return (
        message.id,
        message.chat_id,
        message.content,
        int(message.is_user),
        to_db_timestamp(message.timestamp),
        message.image_data,
        message.status.value,
        to_db_timestamp(message.edited_at) if message.edited_at else None,
        meta.model,
        meta.provider.value if meta.provider else None,
        meta.provider_config_id,
        meta.response_time,
        meta.prompt_tokens,
        meta.response_tokens,
        meta.total_tokens,
        meta.temperature,
        meta.max_tokens,
        meta.finish_reason,
        json_dumps(meta.error.model_dump(mode="json")) if meta.error else None,
    )


def _chunks(items: Sequence[str], size: int = _IN_CHUNK) -> Iterable[Sequence[str]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


def utc_day(value: datetime) -> date:
    return date.fromisoformat(to_db_timestamp(value)[:10])


def _now() -> str:
    return to_db_timestamp(datetime.now(timezone.utc))


# =============================================================================
# Store
# =============================================================================


class RecordStore:
    """Chat and message persistence over the shared connection."""

    def __init__(self, manager: ConnectionManager) -> None:
        self._manager = manager
        self._index = manager.search_index
        self._preview_length = manager.settings.preview_length

    # -------------------------------------------------------------------------
    # Aggregates (called inside an open transaction)
    # -------------------------------------------------------------------------

    async def refresh_chat_aggregates(self, conn: aiosqlite.Connection, chat_id: str) -> None:
        """Recompute count and preview, bump updated_at, and resync the chat's index row."""
        await conn.execute(
            REFRESH_AGGREGATES_SQL,
            {"chat_id": chat_id, "preview_length": self._preview_length, "now": _now()},
        )
        await self._index.sync_chat(conn, chat_id)

    async def refresh_daily_stats(self, conn: aiosqlite.Connection, chat_id: str, day: date) -> None:
        await conn.execute(_REFRESH_DAILY_STATS_SQL, {"chat_id": chat_id, "day": day.isoformat()})

    async def _after_message_change(
        self, conn: aiosqlite.Connection, chat_id: str, day: date
    ) -> None:
        await self.refresh_chat_aggregates(conn, chat_id)
        await self.refresh_daily_stats(conn, chat_id, day)

    # -------------------------------------------------------------------------
    # Chats
    # -------------------------------------------------------------------------

    async def save_chat(self, chat: Chat) -> None:
        """Insert or update a chat by id. Cached aggregates are left untouched."""
        try:
            async with self._manager.transaction() as conn:
                await conn.execute(UPSERT_CHAT_SQL, chat_params(chat))
                await self._index.sync_chat(conn, chat.id)
        except driver.DRIVER_ERRORS as exc:
            raise InsertFailedError(f"Failed to save chat {chat.id}: {exc}") from exc

    async def load_chat(self, chat_id: str) -> Chat | None:
        rows = await self._fetch("SELECT * FROM chats WHERE id = ?", (chat_id,))
        return row_to_chat(rows[0]) if rows else None

    async def load_all_chats(self) -> list[Chat]:
        """All chats, most recently updated first."""
        rows = await self._fetch("SELECT * FROM chats ORDER BY updated_at DESC")
        return _parsed(rows, row_to_chat)

    async def load_chats(self, chat_ids: Sequence[str]) -> list[Chat]:
        """Load chats by id, preserving the order of chat_ids and skipping missing ones."""
        by_id: dict[str, Chat] = {}
        for chunk in _chunks(list(chat_ids)):
            placeholders = ",".join("?" * len(chunk))
            rows = await self._fetch(f"SELECT * FROM chats WHERE id IN ({placeholders})", tuple(chunk))
            by_id.update((chat.id, chat) for chat in _parsed(rows, row_to_chat))
        return [by_id[chat_id] for chat_id in chat_ids if chat_id in by_id]

    async def delete_chat(self, chat_id: str) -> bool:
        """Delete a chat and, by cascade, all of its messages.

        Returns:
            True if deleted, False if not found
        """
        try:
            async with self._manager.transaction() as conn:
                await self._index.remove_chat(conn, chat_id)
                cursor = await conn.execute("DELETE FROM chats WHERE id = ?", (chat_id,))
                return cursor.rowcount > 0
        except driver.DRIVER_ERRORS as exc:
            raise DeleteFailedError(f"Failed to delete chat {chat_id}: {exc}") from exc

    async def set_archived(self, chat_id: str, archived: bool) -> bool:
        try:
            async with self._manager.transaction() as conn:
                cursor = await conn.execute(
                    "UPDATE chats SET is_archived = ? WHERE id = ?", (int(archived), chat_id)
                )
                return cursor.rowcount > 0
        except driver.DRIVER_ERRORS as exc:
            raise InsertFailedError(f"Failed to update chat {chat_id}: {exc}") from exc

    async def search_chats(self, query: str) -> list[Chat]:
        return await self.load_chats(await self._index.search(query, SearchScope.CHATS))

    async def search_chats_filtered(
        self,
        query: str,
        *,
        provider: Provider | None = None,
        is_archived: bool | None = None,
        date_range: DateRange | None = None,
    ) -> list[Chat]:
        """Search, then keep chats matching every given filter (date range applies to updated_at)."""
        return [
            chat
            for chat in await self.search_chats(query)
            if (provider is None or chat.provider is provider)
            and (is_archived is None or chat.is_archived == is_archived)
            and (date_range is None or date_range.contains(chat.updated_at))
        ]

    async def get_chats_by_provider(self, provider: Provider) -> list[Chat]:
        rows = await self._fetch(
            "SELECT * FROM chats WHERE llm_provider = ? ORDER BY updated_at DESC", (provider.value,)
        )
        return _parsed(rows, row_to_chat)

    async def get_chats_by_date_range(self, start: datetime, end: datetime) -> list[Chat]:
        """Chats created within [start, end], newest first."""
        rows = await self._fetch(
            "SELECT * FROM chats WHERE created_at >= ? AND created_at <= ? ORDER BY created_at DESC",
            (to_db_timestamp(start), to_db_timestamp(end)),
        )
        return _parsed(rows, row_to_chat)

    async def get_recent_chats(self, limit: int = 10) -> list[Chat]:
        rows = await self._fetch(
            "SELECT * FROM chats WHERE is_archived = 0 ORDER BY updated_at DESC LIMIT ?", (limit,)
        )
        return _parsed(rows, row_to_chat)

    # -------------------------------------------------------------------------
    # Messages
    # -------------------------------------------------------------------------

    async def save_message(self, message: Message) -> None:
        """Insert or replace a message by id and refresh its chat's aggregates atomically.

        Raises:
            RecordNotFoundError: the owning chat does not exist.
        """
        try:
            async with self._manager.transaction() as conn:
                cursor = await conn.execute("SELECT 1 FROM chats WHERE id = ?", (message.chat_id,))
                if await cursor.fetchone() is None:
                    raise RecordNotFoundError(f"Chat {message.chat_id} does not exist")
                previous = await self._message_chat(conn, message.id)
                await conn.execute(UPSERT_MESSAGE_SQL, message_params(message))
                await self._index.sync_message(conn, message.id)
                await self._after_message_change(conn, message.chat_id, utc_day(message.timestamp))
                if previous is not None and previous[0] != message.chat_id:
                    await self._after_message_change(conn, previous[0], previous[1])
        except driver.DRIVER_ERRORS as exc:
            raise InsertFailedError(f"Failed to save message {message.id}: {exc}") from exc

    async def update_message(self, message: Message) -> None:
        """Replace an existing message; a message not stored yet is saved instead."""
        conn = self._manager.ensure_initialized()
        if await self._message_chat(conn, message.id) is None:
            LOGGER.debug("Message %s not found for update, saving instead", message.id)
        await self.save_message(message)

    async def delete_message(self, message_id: str) -> bool:
        """Delete a message and refresh its chat's aggregates.

        Returns:
            True if deleted, False if not found
        """
        try:
            async with self._manager.transaction() as conn:
                owner = await self._message_chat(conn, message_id)
                if owner is None:
                    return False
                await self._index.remove_message(conn, message_id)
                await conn.execute("DELETE FROM messages WHERE id = ?", (message_id,))
                await self._after_message_change(conn, owner[0], owner[1])
                return True
        except driver.DRIVER_ERRORS as exc:
            raise DeleteFailedError(f"Failed to delete message {message_id}: {exc}") from exc

    async def load_message(self, message_id: str) -> Message | None:
        rows = await self._fetch("SELECT * FROM messages WHERE id = ?", (message_id,))
        return row_to_message(rows[0]) if rows else None

    async def load_messages(self, chat_id: str) -> list[Message]:
        """All messages of a chat, oldest first."""
        rows = await self._fetch(
            "SELECT * FROM messages WHERE chat_id = ? ORDER BY timestamp ASC, rowid ASC", (chat_id,)
        )
        return _parsed(rows, row_to_message)

    async def load_recent_messages(self, chat_id: str, limit: int = 50) -> list[Message]:
        """The newest ``limit`` messages of a chat, returned oldest first."""
        rows = await self._fetch(
            "SELECT * FROM messages WHERE chat_id = ? ORDER BY timestamp DESC, rowid DESC LIMIT ?",
            (chat_id, limit),
        )
        return list(reversed(_parsed(rows, row_to_message)))

    async def load_messages_by_ids(self, message_ids: Sequence[str]) -> list[Message]:
        by_id: dict[str, Message] = {}
        for chunk in _chunks(list(message_ids)):
            placeholders = ",".join("?" * len(chunk))
            rows = await self._fetch(f"SELECT * FROM messages WHERE id IN ({placeholders})", tuple(chunk))
            by_id.update((message.id, message) for message in _parsed(rows, row_to_message))
        return [by_id[message_id] for message_id in message_ids if message_id in by_id]

    async def search_messages(
        self,
        query: str,
        *,
        chat_id: str | None = None,
        is_user: bool | None = None,
        date_range: DateRange | None = None,
    ) -> list[Message]:
        ids = await self._index.search(query, SearchScope.MESSAGES)
        return [
            message
            for message in await self.load_messages_by_ids(ids)
            if (chat_id is None or message.chat_id == chat_id)
            and (is_user is None or message.is_user == is_user)
            and (date_range is None or date_range.contains(message.timestamp))
        ]

    async def get_messages_by_date_range(
        self, start: datetime, end: datetime, *, chat_id: str | None = None
    ) -> list[Message]:
        sql = "SELECT * FROM messages WHERE timestamp >= ? AND timestamp <= ?"
        params: list[object] = [to_db_timestamp(start), to_db_timestamp(end)]
        if chat_id is not None:
            sql += " AND chat_id = ?"
            params.append(chat_id)
        rows = await self._fetch(sql + " ORDER BY timestamp ASC", params)
        return _parsed(rows, row_to_message)

    async def _message_chat(self, conn: aiosqlite.Connection, message_id: str) -> tuple[str, date] | None:
        cursor = await conn.execute("SELECT chat_id, timestamp FROM messages WHERE id = ?", (message_id,))
        row = await cursor.fetchone()
        if row is None:
            return None
        return row[0], date.fromisoformat(row[1][:10])

    # -------------------------------------------------------------------------
    # Statistics and bulk data
    # -------------------------------------------------------------------------

    async def get_chat_statistics(self) -> ChatStatistics:
        rows = await self._fetch(
            "SELECT COUNT(*) AS total, COALESCE(SUM(is_archived), 0) AS archived FROM chats"
        )
        total, archived = rows[0]["total"], rows[0]["archived"]
        message_rows = await self._fetch("SELECT COUNT(*) FROM messages")
        provider_rows = await self._fetch(
            "SELECT llm_provider, COUNT(*) AS n FROM chats GROUP BY llm_provider ORDER BY llm_provider"
        )
        return ChatStatistics(
            total_chats=total,
            active_chats=total - archived,
            archived_chats=archived,
            total_messages=message_rows[0][0],
            chats_by_provider={row["llm_provider"]: row["n"] for row in provider_rows},
        )

    async def get_daily_stats(self, chat_id: str) -> list[DailyChatStats]:
        rows = await self._fetch(
            "SELECT * FROM chat_stats WHERE chat_id = ? AND message_count > 0 ORDER BY date", (chat_id,)
        )
        return [
            DailyChatStats(
                chat_id=row["chat_id"],
                date=date.fromisoformat(row["date"]),
                message_count=row["message_count"],
                word_count=row["word_count"],
                token_count=row["token_count"],
                avg_response_time=row["avg_response_time"],
            )
            for row in rows
        ]

    async def delete_all_data(self) -> None:
        """Remove every chat, message and statistics row."""
        try:
            async with self._manager.transaction() as conn:
                await self._index.clear(conn)
                await conn.execute("DELETE FROM messages")
                await conn.execute("DELETE FROM chat_stats")
                await conn.execute("DELETE FROM chats")
        except driver.DRIVER_ERRORS as exc:
            raise DeleteFailedError(f"Failed to delete all data: {exc}") from exc
        LOGGER.info("Deleted all chat data")

    # -------------------------------------------------------------------------
    # Settings
    # -------------------------------------------------------------------------

    async def get_setting(self, key: str) -> str | None:
        rows = await self._fetch("SELECT value FROM settings WHERE key = ?", (key,))
        return rows[0][0] if rows else None

    async def set_setting(self, key: str, value: str | None, value_type: str = "string") -> None:
        try:
            async with self._manager.transaction() as conn:
                await conn.execute(
                    "INSERT INTO settings (key, value, type, updated_at) VALUES (?, ?, ?, ?) "
                    "ON CONFLICT(key) DO UPDATE SET value = excluded.value, type = excluded.type, "
                    "updated_at = excluded.updated_at",
                    (key, value, value_type, _now()),
                )
        except driver.DRIVER_ERRORS as exc:
            raise InsertFailedError(f"Failed to save setting {key}: {exc}") from exc

    async def delete_setting(self, key: str) -> bool:
        try:
            async with self._manager.transaction() as conn:
                cursor = await conn.execute("DELETE FROM settings WHERE key = ?", (key,))
                return cursor.rowcount > 0
        except driver.DRIVER_ERRORS as exc:
            raise DeleteFailedError(f"Failed to delete setting {key}: {exc}") from exc

    async def all_settings(self) -> dict[str, str | None]:
        rows = await self._fetch("SELECT key, value FROM settings ORDER BY key")
        return {row["key"]: row["value"] for row in rows}

    # -------------------------------------------------------------------------

    async def _fetch(self, sql: str, params: Sequence[object] = ()) -> list[Any]:
        conn = self._manager.ensure_initialized()
        try:
            cursor = await conn.execute(sql, params)
            return list(await cursor.fetchall())
        except driver.DRIVER_ERRORS as exc:
            raise QueryFailedError(f"Query failed: {exc}") from exc


def _parsed(rows: Iterable[Any], convert: Any) -> list[Any]:
    return [record for record in (convert(row) for row in rows) if record is not None]


__all__ = [
    "ChatStatistics",
    "DailyChatStats",
    "RecordStore",
    "chat_params",
    "message_params",
    "row_to_chat",
    "row_to_message",
]
