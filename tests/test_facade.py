"""End-to-end tests through the ChatVault facade."""

import pytest

from chatvault import ChatVault, ChatFilters, PaginationOptions, Provider
from tests.helpers import MemoryKeyStore, create_v1_database, make_chat, make_conversation


@pytest.mark.asyncio
async def test_context_manager_lifecycle(settings):
    async with ChatVault(settings, keystore=MemoryKeyStore()) as vault:
        assert vault.is_initialized
        assert vault.db_path == settings.resolved_db_path()
    assert not vault.is_initialized


@pytest.mark.asyncio
async def test_db_path_override(tmp_path):
    target = tmp_path / "elsewhere" / "vault.db"
    async with ChatVault(db_path=target, keystore=MemoryKeyStore()) as vault:
        assert vault.db_path == target
    assert target.exists()


@pytest.mark.asyncio
async def test_conversation_flow(settings):
    async with ChatVault(settings, keystore=MemoryKeyStore()) as vault:
        chat = make_chat("Weekend hiking", provider=Provider.GOOGLE)
        await vault.records.save_chat(chat)
        result = await vault.optimizer.batch_insert_messages(make_conversation(chat.id, 4, prefix="trail"))
        assert result.all_succeeded

        page = await vault.optimizer.load_chats_paginated(
            PaginationOptions(limit=10), ChatFilters(provider=Provider.GOOGLE)
        )
        assert [c.id for c in page.items] == [chat.id]
        assert page.items[0].message_count == 4

        assert len(await vault.records.search_messages("trail")) == 4
        assert (await vault.check_search_health()).is_healthy
        assert (await vault.validate_schema()).is_valid


@pytest.mark.asyncio
async def test_migration_history_and_backups(settings, db_path):
    create_v1_database(db_path)
    async with ChatVault(settings, keystore=MemoryKeyStore()) as vault:
        history = await vault.migration_history()
        assert [record.version for record in history] == [2]

        [backup] = vault.list_backups()
        await vault.restore_backup(backup)
        assert (await vault.validate_schema()).is_valid


@pytest.mark.asyncio
async def test_rebuild_search_index(settings):
    async with ChatVault(settings, keystore=MemoryKeyStore()) as vault:
        await vault.records.save_chat(make_chat("Rebuild me"))
        await vault.rebuild_search_index()
        assert len(await vault.records.search_chats("rebuild")) == 1


@pytest.mark.asyncio
async def test_provider_store_shares_preferences_file(settings):
    vault = ChatVault(settings, keystore=MemoryKeyStore())
    vault.providers.ensure_defaults()
    assert vault.preferences.path == settings.resolved_preferences_path()
    assert vault.preferences.path.exists()
