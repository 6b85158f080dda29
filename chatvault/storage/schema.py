"""Schema catalog: tables, columns and indexes of the chat database.

Static description only. Applying it is the migration engine's job and the
full-text tables are owned by the search index synchronizer.
"""

from __future__ import annotations

from typing import NamedTuple

SCHEMA_VERSION = 2

_CHATS_DDL = """
CREATE TABLE IF NOT EXISTS chats (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL DEFAULT '',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    llm_provider TEXT NOT NULL,
    model_name TEXT NOT NULL DEFAULT '',
    is_archived INTEGER NOT NULL DEFAULT 0,
    message_count INTEGER NOT NULL DEFAULT 0,
    last_message_preview TEXT
)
"""

_MESSAGES_DDL = """
CREATE TABLE IF NOT EXISTS messages (
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
    provider_config_id TEXT,
    response_time REAL,
    prompt_tokens INTEGER,
    response_tokens INTEGER,
    total_tokens INTEGER,
    temperature REAL,
    max_tokens INTEGER,
    finish_reason TEXT,
    error TEXT
)
"""

_SETTINGS_DDL = """
CREATE TABLE IF NOT EXISTS settings (
    key TEXT PRIMARY KEY,
    value TEXT,
    type TEXT NOT NULL DEFAULT 'string',
    updated_at TEXT NOT NULL
)
"""

_CHAT_STATS_DDL = """
CREATE TABLE IF NOT EXISTS chat_stats (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    chat_id TEXT NOT NULL REFERENCES chats(id) ON DELETE CASCADE,
    date TEXT NOT NULL,
    message_count INTEGER NOT NULL DEFAULT 0,
    word_count INTEGER NOT NULL DEFAULT 0,
    token_count INTEGER NOT NULL DEFAULT 0,
    avg_response_time REAL,
    UNIQUE (chat_id, date)
)
"""

MIGRATION_INFO_DDL = """
CREATE TABLE IF NOT EXISTS migration_info (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    version INTEGER NOT NULL,
    description TEXT,
    applied_at TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'completed',
    error_message TEXT
)
"""

TABLES: dict[str, str] = {
    "chats": _CHATS_DDL,
    "messages": _MESSAGES_DDL,
    "settings": _SETTINGS_DDL,
    "chat_stats": _CHAT_STATS_DDL,
    "migration_info": MIGRATION_INFO_DDL,
}


class IndexSpec(NamedTuple):
    name: str
    table: str
    columns: tuple[str, ...]

    @property
    def ddl(self) -> str:
        return f"CREATE INDEX IF NOT EXISTS {self.name} ON {self.table}({', '.join(self.columns)})"


INDEXES: tuple[IndexSpec, ...] = (
    IndexSpec("idx_chats_updated_at", "chats", ("updated_at DESC",)),
    IndexSpec("idx_chats_is_archived", "chats", ("is_archived",)),
    IndexSpec("idx_chats_provider", "chats", ("llm_provider",)),
    IndexSpec("idx_chats_title", "chats", ("title",)),
    IndexSpec("idx_chats_provider_archived", "chats", ("llm_provider", "is_archived")),
    IndexSpec("idx_messages_chat_id", "messages", ("chat_id",)),
    IndexSpec("idx_messages_timestamp", "messages", ("timestamp",)),
    IndexSpec("idx_messages_is_user", "messages", ("is_user",)),
    IndexSpec("idx_messages_status", "messages", ("status",)),
    IndexSpec("idx_messages_provider", "messages", ("provider",)),
    IndexSpec("idx_messages_chat_timestamp", "messages", ("chat_id", "timestamp")),
    IndexSpec("idx_messages_user_timestamp", "messages", ("is_user", "timestamp")),
    IndexSpec("idx_chat_stats_date", "chat_stats", ("date",)),
    IndexSpec("idx_chat_stats_chat", "chat_stats", ("chat_id",)),
    IndexSpec("idx_migration_info_version", "migration_info", ("version",)),
)

# Full-text shadow tables. Rowids mirror the physical rowid of the source row;
# the tables keep their own copy of the indexed text so a stale shadow row can
# always be deleted without consulting the primary table.
CHATS_FTS_DDL = (
    "CREATE VIRTUAL TABLE IF NOT EXISTS chats_fts "
    "USING fts5(title, last_message_preview, tokenize='unicode61')"
)
MESSAGES_FTS_DDL = (
    "CREATE VIRTUAL TABLE IF NOT EXISTS messages_fts "
    "USING fts5(content, tokenize='unicode61')"
)
FTS_TABLES = ("chats_fts", "messages_fts")

REQUIRED_TABLES: tuple[str, ...] = tuple(TABLES)
REQUIRED_INDEXES: tuple[str, ...] = tuple(index.name for index in INDEXES)
REQUIRED_COLUMNS: dict[str, tuple[str, ...]] = {
    "chats": (
        "id", "title", "created_at", "updated_at", "llm_provider", "model_name",
        "is_archived", "message_count", "last_message_preview",
    ),
    "messages": (
        "id", "chat_id", "content", "is_user", "timestamp", "image_data", "status",
        "edited_at", "model", "provider", "provider_config_id", "response_time",
        "prompt_tokens", "response_tokens", "total_tokens", "temperature",
        "max_tokens", "finish_reason", "error",
    ),
}

# Objects created by v1 databases that kept the index in sync with triggers.
LEGACY_TRIGGERS: tuple[str, ...] = (
    "update_chat_stats_insert",
    "update_chat_stats_delete",
    "update_chats_fts_insert",
    "update_chats_fts_update",
    "update_chats_fts_delete",
    "update_messages_fts_insert",
    "update_messages_fts_update",
    "update_messages_fts_delete",
)

__all__ = [
    "CHATS_FTS_DDL",
    "FTS_TABLES",
    "INDEXES",
    "LEGACY_TRIGGERS",
    "MESSAGES_FTS_DDL",
    "MIGRATION_INFO_DDL",
    "REQUIRED_COLUMNS",
    "REQUIRED_INDEXES",
    "REQUIRED_TABLES",
    "SCHEMA_VERSION",
    "TABLES",
]
