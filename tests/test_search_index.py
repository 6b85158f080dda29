"""Search index tests: query sanitizing, ranking, fallback, health and rebuild."""

import pytest

from chatvault.storage.search_index import query_terms, sanitize_query, text_matches
from chatvault.types import SearchScope
from tests.helpers import make_chat, make_conversation, make_message


# =============================================================================
# Query sanitizing
# =============================================================================


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("foo bar", "foo bar*"),
        ('"a" OR -b', "a b*"),
        ("***", ""),
        ("", ""),
        ("NEAR(alpha beta)", "alpha beta*"),
        ("title:secret AND (x)", "title secret x*"),
        ("naïve café", "naïve café*"),
        ("snake_case name", "snake case name*"),
    ],
)
def test_sanitize_query(raw, expected):
    assert sanitize_query(raw) == expected


def test_lowercase_operators_are_terms():
    assert query_terms("this and that or not") == ["this", "and", "that", "or", "not"]


# =============================================================================
# Searching
# =============================================================================


async def _seed(store):
    chat = make_chat("Gardening")
    await store.save_chat(chat)
    contents = [
        "tomato seedlings need light",
        "water the tomato plants daily",
        "basil grows well next to tomatoes",
        "prune the roses in spring",
    ]
    messages = [make_message(chat.id, text) for text in contents]
    for message in messages:
        await store.save_message(message)
    return chat, messages


@pytest.mark.asyncio
async def test_prefix_search_finds_word_starts(manager, store):
    _, messages = await _seed(store)

    ids = await manager.search_index.search("tomat", SearchScope.MESSAGES)

    assert set(ids) == {messages[0].id, messages[1].id, messages[2].id}


@pytest.mark.asyncio
async def test_all_terms_must_match(manager, store):
    _, messages = await _seed(store)

    ids = await manager.search_index.search("tomato plan", SearchScope.MESSAGES)

    assert ids == [messages[1].id]


@pytest.mark.asyncio
async def test_operator_injection_is_harmless(manager, store):
    await _seed(store)
    for query in ['"unterminated', "NOT", "roses OR", "(((", "*:*", "roses -prune"]:
        await manager.search_index.search(query, SearchScope.MESSAGES)


@pytest.mark.asyncio
async def test_limit_is_applied(manager, store):
    await _seed(store)
    ids = await manager.search_index.search("tomat", SearchScope.MESSAGES, limit=2)
    assert len(ids) == 2


@pytest.mark.asyncio
async def test_index_and_scan_paths_agree(manager, store):
    chat = make_chat("Kitchen")
    await store.save_chat(chat)
    for text in [
        "basil grows well next to tomatoes",
        "tomato basil salad",
        "Crème brûlée for dessert",
        "rename snake_case helpers",
        "TOMATO SOUP",
    ]:
        await store.save_message(make_message(chat.id, text))

    for query in ["tomato basil", "tomato", "creme brul", "brûlée", "snake case", "case", "soup tomato", "basil grow"]:
        indexed = await manager.search_index.search(query, SearchScope.MESSAGES)
        scanned = await manager.search_index.scan_search(query_terms(query), SearchScope.MESSAGES)
        assert set(indexed) == set(scanned), query


@pytest.mark.parametrize(
    ("text", "terms", "expected"),
    [
        ("basil grows well next to tomatoes", ["tomato", "basil"], False),
        ("tomato basil salad", ["tomato", "basil"], True),
        ("tomato basil salad", ["basil", "tom"], True),
        ("Crème brûlée", ["creme", "brul"], True),
        ("rename snake_case helpers", ["case"], True),
        ("catalogue", ["log"], False),
        (None, ["anything"], False),
    ],
)
def test_text_matches_uses_index_term_rules(text, terms, expected):
    assert text_matches(text, terms) is expected


@pytest.mark.asyncio
async def test_fallback_keeps_index_term_rules(manager, store):
    _, messages = await _seed(store)
    conn = manager.ensure_initialized()
    await conn.execute("DROP TABLE messages_fts")

    assert await manager.search_index.search("tomato basil", SearchScope.MESSAGES) == []
    assert await manager.search_index.search("basil tomat", SearchScope.MESSAGES) == [messages[2].id]


@pytest.mark.asyncio
async def test_sync_of_missing_row_is_absorbed(manager):
    async with manager.transaction() as conn:
        await manager.search_index.sync_message(conn, "no-such-message")
        await manager.search_index.sync_chat(conn, "no-such-chat")

    assert (await manager.search_index.check_health()).is_healthy


@pytest.mark.asyncio
async def test_search_falls_back_when_index_is_missing(manager, store):
    _, messages = await _seed(store)
    conn = manager.ensure_initialized()
    await conn.execute("DROP TABLE messages_fts")

    ids = await manager.search_index.search("roses", SearchScope.MESSAGES)

    assert ids == [messages[3].id]


@pytest.mark.asyncio
async def test_writes_succeed_while_index_is_broken(manager, store):
    chat, _ = await _seed(store)
    conn = manager.ensure_initialized()
    await conn.execute("DROP TABLE messages_fts")

    message = make_message(chat.id, "late addition about cucumbers")
    await store.save_message(message)

    assert (await store.load_chat(chat.id)).message_count == 5
    assert [m.id for m in await store.search_messages("cucumber")] == [message.id]
    health = await manager.search_index.check_health()
    assert not health.tables_exist


# =============================================================================
# Health and rebuild
# =============================================================================


@pytest.mark.asyncio
async def test_fresh_index_is_healthy(manager, store):
    await _seed(store)
    health = await manager.search_index.check_health()
    assert health.is_healthy


@pytest.mark.asyncio
async def test_missing_shadow_rows_are_detected_and_rebuilt(manager, store):
    chat = make_chat("Drift")
    await store.save_chat(chat)
    for message in make_conversation(chat.id, 3, prefix="drifting"):
        await store.save_message(message)
    conn = manager.ensure_initialized()
    await conn.execute("DELETE FROM messages_fts")

    health = await manager.search_index.check_health()
    assert health.tables_exist
    assert health.chats_synchronized
    assert not health.messages_synchronized
    assert not health.is_healthy

    await manager.search_index.rebuild()

    assert (await manager.search_index.check_health()).is_healthy
    assert len(await store.search_messages("drifting")) == 3


@pytest.mark.asyncio
async def test_setup_recreates_dropped_tables(manager, store):
    await _seed(store)
    conn = manager.ensure_initialized()
    await conn.execute("DROP TABLE chats_fts")
    await conn.execute("DROP TABLE messages_fts")

    await manager.search_index.setup_indexes()

    assert (await manager.search_index.check_health()).is_healthy
    assert len(await store.search_chats("garden")) == 1
