"""Performance optimizer: pagination, batch writes, archival, cleanup and telemetry.

Every multi-statement mutation here runs in its own transaction. Batch
operations commit chunk by chunk so a failing chunk only loses itself, and
the result object says exactly which items did not make it.
"""

from __future__ import annotations

import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Generic, TypeVar

import aiosqlite

from chatvault.errors import ChatVaultError, DeleteFailedError, QueryFailedError, SearchIndexError
from chatvault.lib.json import dumps as json_dumps
from chatvault.lib.log import get_logger
from chatvault.models import Chat, Message
from chatvault.storage import driver
from chatvault.storage.connection import ConnectionManager
from chatvault.storage.query import ChatFilters, MessageFilters, to_db_timestamp
from chatvault.storage.repository import (
    UPSERT_CHAT_SQL,
    UPSERT_MESSAGE_SQL,
    RecordStore,
    chat_params,
    message_params,
    row_to_chat,
    row_to_message,
    utc_day,
)
from chatvault.types import SearchScope, SortOrder

LOGGER = get_logger(__name__)

T = TypeVar("T")

DEFAULT_CHAT_BATCH_SIZE = 100
DEFAULT_MESSAGE_BATCH_SIZE = 200
DEFAULT_DELETE_BATCH_SIZE = 500

TRUNCATE_LENGTH = 500
TRUNCATION_MARKER = "...[truncated]"

# Thresholds for optimize_database()
REINDEX_FRAGMENTATION_PERCENT = 15.0
VACUUM_FRAGMENTATION_PERCENT = 10.0
VACUUM_MIN_SIZE_BYTES = 100 * 1024 * 1024

_QUERY_SAMPLES = 3

# Ids from the search index, joined so that key is their rank
_RANKED_JOIN = "{table} JOIN json_each(?) AS ranked ON ranked.value = {table}.id"


# =============================================================================
# Options and results
# =============================================================================


@dataclass(frozen=True)
class PaginationOptions:
    offset: int = 0
    limit: int = 50
    sort_order: SortOrder = SortOrder.NEWEST

    def __post_init__(self) -> None:
        if self.offset < 0:
            raise ValueError("offset must be >= 0")
        if self.limit < 1:
            raise ValueError("limit must be >= 1")


@dataclass(frozen=True)
class PaginatedResult(Generic[T]):
    items: list[T]
    total_count: int
    has_more: bool
    next_offset: int | None

    @classmethod
    def build(cls, items: list[T], total_count: int, options: PaginationOptions) -> PaginatedResult[T]:
        # A page may hold fewer rows than the limit when some fail to parse;
        # the next page still starts where this one was asked to end.
        end = options.offset + options.limit
        has_more = end < total_count
        return cls(items=items, total_count=total_count, has_more=has_more, next_offset=end if has_more else None)


@dataclass
class BatchOperationResult:
    success_count: int = 0
    failure_count: int = 0
    errors: list[str] = field(default_factory=list)
    failed_ids: list[str] = field(default_factory=list)
    execution_time_ms: float = 0.0

    @property
    def all_succeeded(self) -> bool:
        return self.failure_count == 0


@dataclass(frozen=True)
class ArchivalOptions:
    older_than_days: int = 90
    keep_recent_messages_count: int = 100
    delete_images: bool = True
    compress_content: bool = True


@dataclass(frozen=True)
class ArchivalResult:
    archived_chats: int
    archived_messages: int
    freed_space_bytes: int
    execution_time_ms: float


@dataclass(frozen=True)
class CleanupResult:
    deleted_records: int
    freed_space_bytes: int
    execution_time_ms: float


@dataclass(frozen=True)
class PerformanceMetrics:
    database_size: int = 0
    chat_count: int = 0
    message_count: int = 0
    avg_chat_query_time_ms: float = 0.0
    avg_message_query_time_ms: float = 0.0
    index_count: int = 0
    fragmentation_percent: float = 0.0

    @property
    def is_performance_good(self) -> bool:
        return (
            self.avg_chat_query_time_ms < 50
            and self.avg_message_query_time_ms < 100
            and self.fragmentation_percent < 10
        )


@dataclass
class OptimizationReport:
    performed: list[str] = field(default_factory=list)
    skipped: dict[str, str] = field(default_factory=dict)
    cleanup: CleanupResult | None = None


def _elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000


def _chunked(items: Sequence[T], size: int) -> list[Sequence[T]]:
    if size < 1:
        raise ValueError("batch size must be >= 1")
    return [items[start : start + size] for start in range(0, len(items), size)]


# =============================================================================
# Optimizer
# =============================================================================


class PerformanceOptimizer:
    def __init__(self, manager: ConnectionManager, records: RecordStore) -> None:
        self._manager = manager
        self._records = records
        self._index = manager.search_index

    # -------------------------------------------------------------------------
    # Pagination
    # -------------------------------------------------------------------------

    async def load_chats_paginated(
        self, options: PaginationOptions | None = None, filters: ChatFilters | None = None
    ) -> PaginatedResult[Chat]:
        """One page of chats matching filters, plus the total match count.

        A search term is resolved through the search index for every sort
        order, so the matching set does not depend on the order. Relevance
        order keeps the index ranking and falls back to newest-updated when
        no search term is given.
        """
        options = options or PaginationOptions()
        filters = filters or ChatFilters()
        where, params = filters.where("chats")
        source = "chats"
        if filters.search_term:
            ranked = await self._index.search(filters.search_term, SearchScope.CHATS)
            if not ranked:
                return PaginatedResult.build([], 0, options)
            source = _RANKED_JOIN.format(table="chats")
            params = [json_dumps(ranked), *params]

        if options.sort_order is SortOrder.OLDEST:
            order = "chats.created_at ASC, chats.id ASC"
        elif options.sort_order is SortOrder.RELEVANCE and filters.search_term:
            order = "ranked.key ASC"
        else:
            order = "chats.updated_at DESC, chats.id ASC"

        conn = self._manager.ensure_initialized()
        try:
            total = await _scalar(conn, f"SELECT COUNT(*) FROM {source} WHERE {where}", params)
            cursor = await conn.execute(
                f"SELECT chats.* FROM {source} WHERE {where} ORDER BY {order} LIMIT ? OFFSET ?",
                [*params, options.limit, options.offset],
            )
            rows = await cursor.fetchall()
        except driver.DRIVER_ERRORS as exc:
            raise QueryFailedError(f"Failed to load chat page: {exc}") from exc
        chats = [chat for chat in map(row_to_chat, rows) if chat is not None]
        return PaginatedResult.build(chats, total, options)

    async def load_messages_paginated(
        self,
        chat_id: str,
        options: PaginationOptions | None = None,
        filters: MessageFilters | None = None,
    ) -> PaginatedResult[Message]:
        options = options or PaginationOptions()
        filters = filters or MessageFilters()
        where, params = filters.where("messages")
        params = [chat_id, *params]
        source = "messages"
        if filters.search_term:
            ranked = await self._index.search(filters.search_term, SearchScope.MESSAGES)
            if not ranked:
                return PaginatedResult.build([], 0, options)
            source = _RANKED_JOIN.format(table="messages")
            params = [json_dumps(ranked), *params]

        if options.sort_order is SortOrder.OLDEST:
            order = "messages.timestamp ASC, messages.rowid ASC"
        elif options.sort_order is SortOrder.RELEVANCE and filters.search_term:
            order = "ranked.key ASC"
        else:
            order = "messages.timestamp DESC, messages.rowid DESC"

        conn = self._manager.ensure_initialized()
        try:
            total = await _scalar(
                conn, f"SELECT COUNT(*) FROM {source} WHERE messages.chat_id = ? AND {where}", params
            )
            cursor = await conn.execute(
                f"SELECT messages.* FROM {source} WHERE messages.chat_id = ? AND {where} "
                f"ORDER BY {order} LIMIT ? OFFSET ?",
                [*params, options.limit, options.offset],
            )
            rows = await cursor.fetchall()
        except driver.DRIVER_ERRORS as exc:
            raise QueryFailedError(f"Failed to load message page for chat {chat_id}: {exc}") from exc
        messages = [message for message in map(row_to_message, rows) if message is not None]
        return PaginatedResult.build(messages, total, options)

    # -------------------------------------------------------------------------
    # Batch operations
    # -------------------------------------------------------------------------

    async def batch_insert_chats(
        self, chats: Sequence[Chat], batch_size: int = DEFAULT_CHAT_BATCH_SIZE
    ) -> BatchOperationResult:
        result = BatchOperationResult()
        start = time.perf_counter()
        for number, chunk in enumerate(_chunked(chats, batch_size), start=1):
            try:
                async with self._manager.transaction() as conn:
                    for chat in chunk:
                        await conn.execute(UPSERT_CHAT_SQL, chat_params(chat))
                        await self._index.sync_chat(conn, chat.id)
            except driver.DRIVER_ERRORS as exc:
                self._record_chunk_failure(result, number, [chat.id for chat in chunk], exc)
            else:
                result.success_count += len(chunk)
        result.execution_time_ms = _elapsed_ms(start)
        return result

    async def batch_insert_messages(
        self, messages: Sequence[Message], batch_size: int = DEFAULT_MESSAGE_BATCH_SIZE
    ) -> BatchOperationResult:
        """Upsert messages chunk by chunk, refreshing aggregates of every touched chat."""
        result = BatchOperationResult()
        start = time.perf_counter()
        for number, chunk in enumerate(_chunked(messages, batch_size), start=1):
            try:
                async with self._manager.transaction() as conn:
                    touched: set[tuple[str, date]] = set()
                    for message in chunk:
                        touched.update(await _owners(conn, [message.id]))
                        await conn.execute(UPSERT_MESSAGE_SQL, message_params(message))
                        await self._index.sync_message(conn, message.id)
                        touched.add((message.chat_id, utc_day(message.timestamp)))
                    await self._refresh(conn, touched)
            except driver.DRIVER_ERRORS as exc:
                self._record_chunk_failure(result, number, [message.id for message in chunk], exc)
            else:
                result.success_count += len(chunk)
        result.execution_time_ms = _elapsed_ms(start)
        return result

    async def batch_delete_chats(
        self, chat_ids: Sequence[str], batch_size: int = DEFAULT_DELETE_BATCH_SIZE
    ) -> BatchOperationResult:
        result = BatchOperationResult()
        start = time.perf_counter()
        for number, chunk in enumerate(_chunked(chat_ids, batch_size), start=1):
            try:
                async with self._manager.transaction() as conn:
                    for chat_id in chunk:
                        await self._index.remove_chat(conn, chat_id)
                    placeholders = ",".join("?" * len(chunk))
                    await conn.execute(f"DELETE FROM chats WHERE id IN ({placeholders})", list(chunk))
            except driver.DRIVER_ERRORS as exc:
                self._record_chunk_failure(result, number, list(chunk), exc)
            else:
                result.success_count += len(chunk)
        result.execution_time_ms = _elapsed_ms(start)
        return result

    async def batch_delete_messages(
        self, message_ids: Sequence[str], batch_size: int = DEFAULT_DELETE_BATCH_SIZE
    ) -> BatchOperationResult:
        result = BatchOperationResult()
        start = time.perf_counter()
        for number, chunk in enumerate(_chunked(message_ids, batch_size), start=1):
            try:
                async with self._manager.transaction() as conn:
                    touched = await _owners(conn, chunk)
                    for message_id in chunk:
                        await self._index.remove_message(conn, message_id)
                    placeholders = ",".join("?" * len(chunk))
                    await conn.execute(f"DELETE FROM messages WHERE id IN ({placeholders})", list(chunk))
                    await self._refresh(conn, touched)
            except driver.DRIVER_ERRORS as exc:
                self._record_chunk_failure(result, number, list(chunk), exc)
            else:
                result.success_count += len(chunk)
        result.execution_time_ms = _elapsed_ms(start)
        return result

    async def _refresh(self, conn: aiosqlite.Connection, touched: set[tuple[str, date]]) -> None:
        for chat_id in sorted({chat_id for chat_id, _ in touched}):
            await self._records.refresh_chat_aggregates(conn, chat_id)
        for chat_id, day in sorted(touched):
            await self._records.refresh_daily_stats(conn, chat_id, day)

    @staticmethod
    def _record_chunk_failure(
        result: BatchOperationResult, number: int, ids: list[str], exc: BaseException
    ) -> None:
        LOGGER.warning("Batch chunk %d (%d items) failed: %s", number, len(ids), exc)
        result.failure_count += len(ids)
        result.failed_ids.extend(ids)
        result.errors.append(f"chunk {number}: {exc}")

    # -------------------------------------------------------------------------
    # Archival
    # -------------------------------------------------------------------------

    async def archive_old_data(self, options: ArchivalOptions | None = None) -> ArchivalResult:
        """Archive chats untouched since the cutoff and prune their old messages.

        For each chat last updated before the cutoff and not yet archived, the
        messages older than the cutoff are candidates. The newest
        ``keep_recent_messages_count`` candidates are left alone; the rest are
        truncated (and stripped of images) when ``compress_content`` is set, or
        deleted otherwise.
        """
        options = options or ArchivalOptions()
        start = time.perf_counter()
        cutoff = to_db_timestamp(datetime.now(timezone.utc) - timedelta(days=options.older_than_days))
        conn = self._manager.ensure_initialized()
        try:
            cursor = await conn.execute(
                "SELECT id FROM chats WHERE updated_at < ? AND is_archived = 0 ORDER BY updated_at", (cutoff,)
            )
            chat_ids = [row[0] for row in await cursor.fetchall()]
        except driver.DRIVER_ERRORS as exc:
            raise QueryFailedError(f"Failed to select chats for archival: {exc}") from exc

        archived_chats = archived_messages = freed = 0
        for chat_id in chat_ids:
            try:
                freed_here, count = await self._archive_chat(chat_id, cutoff, options)
            except driver.DRIVER_ERRORS as exc:
                # Chats archived so far stay committed.
                raise DeleteFailedError(f"Failed to archive chat {chat_id}: {exc}") from exc
            freed += freed_here
            archived_messages += count
            archived_chats += 1

        result = ArchivalResult(
            archived_chats=archived_chats,
            archived_messages=archived_messages,
            freed_space_bytes=freed,
            execution_time_ms=_elapsed_ms(start),
        )
        LOGGER.info(
            "Archived %d chats (%d messages, ~%d bytes freed)", archived_chats, archived_messages, freed
        )
        return result

    async def _archive_chat(self, chat_id: str, cutoff: str, options: ArchivalOptions) -> tuple[int, int]:
        """Archive one chat in its own transaction; returns (bytes freed, messages archived)."""
        freed = 0
        async with self._manager.transaction() as conn:
            cursor = await conn.execute(
                "SELECT id, timestamp, length(CAST(content AS BLOB)) AS content_bytes, "
                "length(content) AS content_chars, COALESCE(length(image_data), 0) AS image_bytes, "
                "length(CAST(substr(content, 1, ?) || ? AS BLOB)) AS truncated_bytes "
                "FROM messages WHERE chat_id = ? AND timestamp < ? "
                "ORDER BY timestamp DESC, rowid DESC LIMIT -1 OFFSET ?",
                (TRUNCATE_LENGTH, TRUNCATION_MARKER, chat_id, cutoff, options.keep_recent_messages_count),
            )
            overflow = await cursor.fetchall()
            touched: set[tuple[str, date]] = set()
            for row in overflow:
                touched.add((chat_id, date.fromisoformat(row["timestamp"][:10])))
                if options.compress_content:
                    freed += await self._compress_message(conn, row, options.delete_images)
                else:
                    await self._index.remove_message(conn, row["id"])
                    await conn.execute("DELETE FROM messages WHERE id = ?", (row["id"],))
                    freed += row["content_bytes"] + row["image_bytes"]
            await conn.execute("UPDATE chats SET is_archived = 1 WHERE id = ?", (chat_id,))
            if overflow:
                await self._refresh(conn, touched)
        return freed, len(overflow)

    async def _compress_message(self, conn: aiosqlite.Connection, row: aiosqlite.Row, delete_images: bool) -> int:
        freed = 0
        if row["content_chars"] > TRUNCATE_LENGTH + len(TRUNCATION_MARKER):
            await conn.execute(
                "UPDATE messages SET content = substr(content, 1, ?) || ? WHERE id = ?",
                (TRUNCATE_LENGTH, TRUNCATION_MARKER, row["id"]),
            )
            freed += max(0, row["content_bytes"] - row["truncated_bytes"])
            await self._index.sync_message(conn, row["id"])
        if delete_images and row["image_bytes"]:
            await conn.execute("UPDATE messages SET image_data = NULL WHERE id = ?", (row["id"],))
            freed += row["image_bytes"]
        return freed

    # -------------------------------------------------------------------------
    # Cleanup
    # -------------------------------------------------------------------------

    async def cleanup_orphaned_data(self) -> CleanupResult:
        """Delete messages whose chat is gone, rebuild the index, recount every chat."""
        start = time.perf_counter()
        try:
            async with self._manager.transaction() as conn:
                cursor = await conn.execute(
                    "SELECT COUNT(*), "
                    "COALESCE(SUM(length(CAST(m.content AS BLOB)) + COALESCE(length(m.image_data), 0)), 0) "
                    "FROM messages m LEFT JOIN chats c ON c.id = m.chat_id WHERE c.id IS NULL"
                )
                orphan_count, orphan_bytes = await cursor.fetchone()
                await conn.execute("DELETE FROM messages WHERE chat_id NOT IN (SELECT id FROM chats)")
                cursor = await conn.execute("DELETE FROM chat_stats WHERE chat_id NOT IN (SELECT id FROM chats)")
                stats_deleted = max(cursor.rowcount, 0)
                # Ground-truth recount; this is a repair, so updated_at is left alone.
                await conn.execute(
                    """
                    UPDATE chats SET
                        message_count = (SELECT COUNT(*) FROM messages WHERE messages.chat_id = chats.id),
                        last_message_preview = (
                            SELECT substr(content, 1, ?) FROM messages
                            WHERE messages.chat_id = chats.id
                            ORDER BY timestamp DESC, rowid DESC LIMIT 1
                        )
                    """,
                    (self._manager.settings.preview_length,),
                )
        except driver.DRIVER_ERRORS as exc:
            raise DeleteFailedError(f"Orphan cleanup failed: {exc}") from exc
        try:
            await self._index.rebuild()
        except SearchIndexError as exc:
            LOGGER.warning("Index rebuild after cleanup failed: %s", exc)

        deleted = orphan_count + stats_deleted
        if deleted:
            LOGGER.info("Removed %d orphaned records", deleted)
        return CleanupResult(
            deleted_records=deleted, freed_space_bytes=orphan_bytes, execution_time_ms=_elapsed_ms(start)
        )

    # -------------------------------------------------------------------------
    # Telemetry and maintenance
    # -------------------------------------------------------------------------

    async def get_performance_metrics(self) -> PerformanceMetrics:
        """Collect size, counts, sample query latency and fragmentation.

        A failing query is logged and reported as zero.
        """
        conn = self._manager.ensure_initialized()
        values: dict[str, float] = {"database_size": await self._manager.database_size()}
        counters = {
            "chat_count": "SELECT COUNT(*) FROM chats",
            "message_count": "SELECT COUNT(*) FROM messages",
            "index_count": "SELECT COUNT(*) FROM sqlite_master WHERE type = 'index' AND name NOT LIKE 'sqlite_autoindex%'",
            "page_count": "PRAGMA page_count",
            "freelist_count": "PRAGMA freelist_count",
        }
        for name, sql in counters.items():
            try:
                values[name] = await _scalar(conn, sql)
            except driver.DRIVER_ERRORS as exc:
                LOGGER.warning("Metric query %s failed: %s", name, exc)
                values[name] = 0

        values["avg_chat_query_time_ms"] = await self._time_query(
            conn, "SELECT * FROM chats ORDER BY updated_at DESC LIMIT 50"
        )
        values["avg_message_query_time_ms"] = await self._time_query(
            conn,
            "SELECT * FROM messages WHERE chat_id = "
            "(SELECT id FROM chats ORDER BY updated_at DESC LIMIT 1) ORDER BY timestamp LIMIT 100",
        )
        page_count = values["page_count"]
        fragmentation = values["freelist_count"] / page_count * 100 if page_count else 0.0
        return PerformanceMetrics(
            database_size=int(values["database_size"]),
            chat_count=int(values["chat_count"]),
            message_count=int(values["message_count"]),
            avg_chat_query_time_ms=values["avg_chat_query_time_ms"],
            avg_message_query_time_ms=values["avg_message_query_time_ms"],
            index_count=int(values["index_count"]),
            fragmentation_percent=fragmentation,
        )

    async def _time_query(self, conn: aiosqlite.Connection, sql: str) -> float:
        timings: list[float] = []
        for _ in range(_QUERY_SAMPLES):
            start = time.perf_counter()
            try:
                cursor = await conn.execute(sql)
                await cursor.fetchall()
            except driver.DRIVER_ERRORS as exc:
                LOGGER.warning("Timing query failed: %s", exc)
                return 0.0
            timings.append(_elapsed_ms(start))
        LOGGER.debug("Query %r averaged %.2fms", sql, sum(timings) / len(timings))
        return sum(timings) / len(timings)

    async def analyze(self) -> None:
        async with self._manager.writer() as conn:
            await conn.execute("ANALYZE")

    async def reindex(self) -> None:
        async with self._manager.maintenance(), self._manager.writer() as conn:
            await conn.execute("REINDEX")

    async def vacuum(self) -> None:
        async with self._manager.maintenance():
            async with self._manager.writer() as conn:
                await conn.execute("VACUUM")
            await self._resync_index()

    async def _resync_index(self) -> None:
        # VACUUM may renumber implicit rowids, which key the search index.
        try:
            await self._index.rebuild()
        except SearchIndexError as exc:
            LOGGER.warning("Search index rebuild after VACUUM failed: %s", exc)

    async def optimize_database(self) -> OptimizationReport:
        """ANALYZE, then REINDEX/VACUUM when warranted, then orphan cleanup.

        Each step is attempted independently; a failure skips only that step.
        """
        report = OptimizationReport()
        metrics = await self.get_performance_metrics()
        async with self._manager.maintenance():
            steps: list[tuple[str, bool, str]] = [
                ("analyze", True, "ANALYZE"),
                ("reindex", metrics.fragmentation_percent > REINDEX_FRAGMENTATION_PERCENT, "REINDEX"),
                (
                    "vacuum",
                    metrics.database_size > VACUUM_MIN_SIZE_BYTES
                    and metrics.fragmentation_percent > VACUUM_FRAGMENTATION_PERCENT,
                    "VACUUM",
                ),
            ]
            for name, wanted, sql in steps:
                if not wanted:
                    continue
                try:
                    async with self._manager.writer() as conn:
                        await conn.execute(sql)
                except driver.DRIVER_ERRORS as exc:
                    LOGGER.warning("Optimize step %s skipped: %s", name, exc)
                    report.skipped[name] = str(exc)
                else:
                    report.performed.append(name)
                    if name == "vacuum":
                        await self._resync_index()

            try:
                report.cleanup = await self.cleanup_orphaned_data()
            except (ChatVaultError, *driver.DRIVER_ERRORS) as exc:
                LOGGER.warning("Optimize step cleanup skipped: %s", exc)
                report.skipped["cleanup"] = str(exc)
            else:
                report.performed.append("cleanup")
        return report


async def _scalar(conn: aiosqlite.Connection, sql: str, params: Sequence[object] = ()) -> int:
    cursor = await conn.execute(sql, params)
    row = await cursor.fetchone()
    return row[0] if row else 0


async def _owners(conn: aiosqlite.Connection, message_ids: Sequence[str]) -> set[tuple[str, date]]:
    """(chat_id, day) pairs currently owning the given messages."""
    if not message_ids:
        return set()
    placeholders = ",".join("?" * len(message_ids))
    cursor = await conn.execute(
        f"SELECT chat_id, timestamp FROM messages WHERE id IN ({placeholders})", list(message_ids)
    )
    return {(row[0], date.fromisoformat(row[1][:10])) for row in await cursor.fetchall()}


__all__ = [
    "ArchivalOptions",
    "ArchivalResult",
    "BatchOperationResult",
    "CleanupResult",
    "OptimizationReport",
    "PaginatedResult",
    "PaginationOptions",
    "PerformanceMetrics",
    "PerformanceOptimizer",
]
