"""ChatVault - local persistence engine for multi-provider chat clients.

Stores chats and messages in SQLite with schema migrations, full-text search,
paginated and batched access, archival, and optional SQLCipher encryption.

Example:
    from chatvault import Chat, ChatVault, Message, Provider

    async with ChatVault(db_path="~/chats.db") as vault:
        chat = Chat(title="Trip planning", provider=Provider.ANTHROPIC, model_name="claude-3-opus-20240229")
        await vault.records.save_chat(chat)
        await vault.records.save_message(Message(chat_id=chat.id, content="Where to?", is_user=True))

        for hit in await vault.records.search_messages("where"):
            print(hit.content)
"""

from chatvault.config import StorageSettings
from chatvault.errors import ChatVaultError, DatabaseError, SecurityError
from chatvault.facade import ChatVault
from chatvault.models import Chat, Message, MessageError, MessageMetadata, ProviderConfiguration
from chatvault.storage.optimizer import ArchivalOptions, PaginatedResult, PaginationOptions
from chatvault.storage.query import ChatFilters, DateRange, MessageFilters
from chatvault.types import MessageStatus, Provider, SearchScope, SortOrder

__all__ = [
    "ArchivalOptions",
    "Chat",
    "ChatFilters",
    "ChatVault",
    "ChatVaultError",
    "DatabaseError",
    "DateRange",
    "Message",
    "MessageError",
    "MessageFilters",
    "MessageMetadata",
    "MessageStatus",
    "PaginatedResult",
    "PaginationOptions",
    "Provider",
    "ProviderConfiguration",
    "SearchScope",
    "SecurityError",
    "SortOrder",
    "StorageSettings",
]
