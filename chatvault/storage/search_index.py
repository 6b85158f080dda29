"""Full-text search index synchronizer.

Two FTS5 tables shadow the primary tables by physical rowid:

- ``chats_fts(title, last_message_preview)``
- ``messages_fts(content)``

There are no triggers. Every mutation path in the record store calls
``sync_*``/``remove_*`` explicitly, inside its own transaction. Index
maintenance failures are logged and absorbed: primary data never depends on
the index, and search falls back to a table scan when the index is
unusable. The scan matches through ``chatvault_match()``, a SQL function
registered on every connection that tokenizes and folds text the way the
``unicode61`` tokenizer does, so both paths agree on which rows match.
"""

from __future__ import annotations

import re
import unicodedata
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING

import aiosqlite

from chatvault.errors import (
    IndexRecordNotFoundError,
    IndexSetupError,
    IndexUnavailableError,
    SearchFailedError,
    SearchIndexError,
    SyncFailedError,
)
from chatvault.lib.log import get_logger
from chatvault.storage import driver
from chatvault.storage.schema import CHATS_FTS_DDL, FTS_TABLES, MESSAGES_FTS_DDL
from chatvault.types import SearchScope

if TYPE_CHECKING:
    from chatvault.storage.connection import ConnectionManager

LOGGER = get_logger(__name__)

# Anything that is not a letter or digit is FTS5 syntax, punctuation or a
# unicode61 separator (the tokenizer splits on underscores too)
_NON_WORD = re.compile(r"[\W_]+", re.UNICODE)
_FTS5_OPERATORS = {"AND", "OR", "NOT", "NEAR"}

MATCH_FUNCTION = "chatvault_match"

_SyncOp = Callable[[aiosqlite.Connection, str], Awaitable[None]]


def query_terms(query: str) -> list[str]:
    """Split a user query into plain search terms.

    Strips quotes, ``*``, ``-``, parentheses and every other non-word
    character, and drops bare boolean operators.
    """
    return [term for term in _NON_WORD.sub(" ", query).split() if term not in _FTS5_OPERATORS]


def sanitize_query(query: str) -> str:
    """Turn free text into a prefix-match FTS5 query.

    Examples:
        sanitize_query('foo bar') -> 'foo bar*'
        sanitize_query('"a" OR -b') -> 'a b*'
        sanitize_query('***') -> ''
    """
    terms = query_terms(query)
    return " ".join(terms) + "*" if terms else ""


def fold(text: str) -> str:
    """Lowercase and strip diacritics, as unicode61 does before indexing."""
    decomposed = unicodedata.normalize("NFD", text.lower())
    return "".join(char for char in decomposed if not unicodedata.combining(char))


def index_tokens(text: str) -> set[str]:
    return set(_NON_WORD.sub(" ", fold(text)).split())


def text_matches(text: str | None, terms: Sequence[str]) -> bool:
    """True when the index would return text for the query built from terms.

    Every term but the last must equal a token; the last must prefix one.
    """
    if not terms or not text:
        return False
    tokens = index_tokens(text)
    *exact, last = [fold(term) for term in terms]
    return all(term in tokens for term in exact) and any(token.startswith(last) for token in tokens)


def _sql_text_matches(text: str | None, joined_terms: str) -> int:
    return int(text_matches(text, joined_terms.split()))


async def register_functions(conn: aiosqlite.Connection) -> None:
    await conn.create_function(MATCH_FUNCTION, 2, _sql_text_matches, deterministic=True)


@dataclass(frozen=True)
class FTSHealth:
    tables_exist: bool
    chats_synchronized: bool
    messages_synchronized: bool
    is_corrupted: bool

    @property
    def is_healthy(self) -> bool:
        return (
            self.tables_exist
            and self.chats_synchronized
            and self.messages_synchronized
            and not self.is_corrupted
        )


_POPULATE_CHATS = (
    "INSERT INTO chats_fts(rowid, title, last_message_preview) "
    "SELECT rowid, title, COALESCE(last_message_preview, '') FROM chats"
)
_POPULATE_MESSAGES = "INSERT INTO messages_fts(rowid, content) SELECT rowid, content FROM messages"


class SearchIndexSynchronizer:
    """Keeps the FTS shadow tables eventually consistent with primary data."""

    def __init__(self, manager: ConnectionManager) -> None:
        self._manager = manager

    # =========================================================================
    # Setup
    # =========================================================================

    async def setup_indexes(self) -> None:
        """Create the index tables and populate them once from primary data."""
        try:
            async with self._manager.transaction() as conn:
                await conn.execute(CHATS_FTS_DDL)
                await conn.execute(MESSAGES_FTS_DDL)
                if await _count(conn, "chats") and not await _count(conn, "chats_fts"):
                    await conn.execute(_POPULATE_CHATS)
                    LOGGER.info("Populated chat search index")
                if await _count(conn, "messages") and not await _count(conn, "messages_fts"):
                    await conn.execute(_POPULATE_MESSAGES)
                    LOGGER.info("Populated message search index")
        except driver.DRIVER_ERRORS as exc:
            raise IndexSetupError(f"Search index setup failed: {exc}") from exc

    async def rebuild(self) -> None:
        """Drop, recreate and repopulate both index tables."""
        try:
            async with self._manager.transaction() as conn:
                for table in FTS_TABLES:
                    await conn.execute(f"DROP TABLE IF EXISTS {table}")
                await conn.execute(CHATS_FTS_DDL)
                await conn.execute(MESSAGES_FTS_DDL)
                await conn.execute(_POPULATE_CHATS)
                await conn.execute(_POPULATE_MESSAGES)
        except driver.DRIVER_ERRORS as exc:
            raise SyncFailedError(f"Search index rebuild failed: {exc}") from exc
        LOGGER.info("Rebuilt search index")

    # =========================================================================
    # Per-mutation sync
    # =========================================================================

    async def sync_chat(self, conn: aiosqlite.Connection, chat_id: str) -> None:
        await self._guarded(conn, "sync chat", chat_id, self._sync_chat)

    async def sync_message(self, conn: aiosqlite.Connection, message_id: str) -> None:
        await self._guarded(conn, "sync message", message_id, self._sync_message)

    async def remove_chat(self, conn: aiosqlite.Connection, chat_id: str) -> None:
        """Remove the chat's shadow row and those of all its messages.

        Must run before the primary rows are deleted: rowids are looked up from them.
        """
        await self._guarded(conn, "remove chat", chat_id, self._remove_chat)

    async def remove_message(self, conn: aiosqlite.Connection, message_id: str) -> None:
        await self._guarded(conn, "remove message", message_id, self._remove_message)

    async def clear(self, conn: aiosqlite.Connection) -> None:
        await self._guarded(conn, "clear", "all rows", self._clear)

    async def _guarded(self, conn: aiosqlite.Connection, action: str, record_id: str, op: _SyncOp) -> None:
        # A savepoint keeps a half-applied sync from leaking into the caller's transaction.
        await conn.execute("SAVEPOINT fts_sync")
        try:
            await op(conn, record_id)
        except (SearchIndexError, *driver.DRIVER_ERRORS) as exc:
            await conn.execute("ROLLBACK TO SAVEPOINT fts_sync")
            LOGGER.warning("Search index %s failed for %s: %s", action, record_id, exc)
        finally:
            await conn.execute("RELEASE SAVEPOINT fts_sync")

    async def _sync_chat(self, conn: aiosqlite.Connection, chat_id: str) -> None:
        cursor = await conn.execute(
            "SELECT rowid, title, last_message_preview FROM chats WHERE id = ?", (chat_id,)
        )
        row = await cursor.fetchone()
        if row is None:
            raise IndexRecordNotFoundError(f"chat {chat_id} has no primary row")
        await conn.execute("DELETE FROM chats_fts WHERE rowid = ?", (row[0],))
        await conn.execute(
            "INSERT INTO chats_fts(rowid, title, last_message_preview) VALUES (?, ?, ?)",
            (row[0], row[1], row[2] or ""),
        )

    async def _sync_message(self, conn: aiosqlite.Connection, message_id: str) -> None:
        cursor = await conn.execute("SELECT rowid, content FROM messages WHERE id = ?", (message_id,))
        row = await cursor.fetchone()
        if row is None:
            raise IndexRecordNotFoundError(f"message {message_id} has no primary row")
        await conn.execute("DELETE FROM messages_fts WHERE rowid = ?", (row[0],))
        await conn.execute("INSERT INTO messages_fts(rowid, content) VALUES (?, ?)", (row[0], row[1]))

    async def _remove_chat(self, conn: aiosqlite.Connection, chat_id: str) -> None:
        await conn.execute(
            "DELETE FROM messages_fts WHERE rowid IN (SELECT rowid FROM messages WHERE chat_id = ?)",
            (chat_id,),
        )
        await conn.execute(
            "DELETE FROM chats_fts WHERE rowid IN (SELECT rowid FROM chats WHERE id = ?)", (chat_id,)
        )

    async def _clear(self, conn: aiosqlite.Connection, _record_id: str) -> None:
        await conn.execute("DELETE FROM chats_fts")
        await conn.execute("DELETE FROM messages_fts")

    async def _remove_message(self, conn: aiosqlite.Connection, message_id: str) -> None:
        await conn.execute(
            "DELETE FROM messages_fts WHERE rowid IN (SELECT rowid FROM messages WHERE id = ?)",
            (message_id,),
        )

    # =========================================================================
    # Search
    # =========================================================================

    async def search(self, query: str, scope: SearchScope, limit: int | None = None) -> list[str]:
        """Return ids of matching chats or messages, best match first.

        Uses the FTS index when it answers, otherwise a table scan with the
        same term semantics ordered by recency. Callers cannot tell which path
        served the request.
        """
        terms = query_terms(query)
        if not terms:
            return []
        conn = self._manager.ensure_initialized()
        try:
            return await self._index_search(conn, terms, scope, limit)
        except SearchIndexError as exc:
            LOGGER.warning("Index search failed, scanning instead: %s", exc)
        try:
            return await self.scan_search(terms, scope, limit)
        except driver.DRIVER_ERRORS as exc:
            raise SearchFailedError(f"Search for {query!r} failed: {exc}") from exc

    async def _index_search(
        self, conn: aiosqlite.Connection, terms: list[str], scope: SearchScope, limit: int | None
    ) -> list[str]:
        match = " ".join(terms) + "*"
        if scope is SearchScope.CHATS:
            sql = (
                "SELECT c.id FROM chats_fts JOIN chats c ON c.rowid = chats_fts.rowid "
                "WHERE chats_fts MATCH ? ORDER BY bm25(chats_fts) LIMIT ?"
            )
        else:
            sql = (
                "SELECT m.id FROM messages_fts JOIN messages m ON m.rowid = messages_fts.rowid "
                "WHERE messages_fts MATCH ? ORDER BY bm25(messages_fts) LIMIT ?"
            )
        try:
            cursor = await conn.execute(sql, (match, limit if limit is not None else -1))
            return [row[0] for row in await cursor.fetchall()]
        except driver.DRIVER_ERRORS as exc:
            raise IndexUnavailableError(f"{scope.value} index query failed: {exc}") from exc

    async def scan_search(self, terms: list[str], scope: SearchScope, limit: int | None = None) -> list[str]:
        """Match terms against every row without the index, newest first."""
        conn = self._manager.ensure_initialized()
        if scope is SearchScope.CHATS:
            sql = (
                f"SELECT id FROM chats WHERE {MATCH_FUNCTION}(title || ' ' || COALESCE(last_message_preview, ''), ?) "
                "ORDER BY updated_at DESC LIMIT ?"
            )
        else:
            sql = f"SELECT id FROM messages WHERE {MATCH_FUNCTION}(content, ?) ORDER BY timestamp DESC LIMIT ?"
        cursor = await conn.execute(sql, (" ".join(terms), limit if limit is not None else -1))
        return [row[0] for row in await cursor.fetchall()]

    # =========================================================================
    # Health
    # =========================================================================

    async def check_health(self) -> FTSHealth:
        conn = self._manager.ensure_initialized()
        cursor = await conn.execute(
            "SELECT name FROM sqlite_master WHERE type = 'table' AND name IN (?, ?)", FTS_TABLES
        )
        if len(await cursor.fetchall()) != len(FTS_TABLES):
            return FTSHealth(False, False, False, False)

        try:
            chats_synchronized = await _synchronized(conn, "chats", "chats_fts")
            messages_synchronized = await _synchronized(conn, "messages", "messages_fts")
        except driver.DRIVER_ERRORS as exc:
            LOGGER.warning("Search index sync check failed: %s", exc)
            return FTSHealth(True, False, False, True)

        is_corrupted = False
        for table in FTS_TABLES:
            try:
                await conn.execute(f"SELECT rowid FROM {table} WHERE {table} MATCH 'test' LIMIT 1")
            except driver.DRIVER_ERRORS as exc:
                LOGGER.warning("Search index %s failed self-query: %s", table, exc)
                is_corrupted = True
        return FTSHealth(True, chats_synchronized, messages_synchronized, is_corrupted)


async def _count(conn: aiosqlite.Connection, table: str) -> int:
    cursor = await conn.execute(f"SELECT COUNT(*) FROM {table}")
    row = await cursor.fetchone()
    return row[0] if row else 0


async def _synchronized(conn: aiosqlite.Connection, table: str, fts_table: str) -> bool:
    cursor = await conn.execute(
        f"SELECT COUNT(*) FROM {table} t LEFT JOIN {fts_table} f ON f.rowid = t.rowid WHERE f.rowid IS NULL"
    )
    missing = (await cursor.fetchone())[0]
    cursor = await conn.execute(f"SELECT COUNT(*) FROM {fts_table} WHERE rowid NOT IN (SELECT rowid FROM {table})")
    stale = (await cursor.fetchone())[0]
    return missing == 0 and stale == 0


__all__ = [
    "FTSHealth",
    "MATCH_FUNCTION",
    "SearchIndexSynchronizer",
    "fold",
    "index_tokens",
    "query_terms",
    "register_functions",
    "sanitize_query",
    "text_matches",
]
