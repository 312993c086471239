"""Tests for conversation persistence and its optimistic-concurrency rules."""

from __future__ import annotations

import asyncio

import fakeredis
import pytest

from linguachat.ai.orchestration.session import ConversationSession
from linguachat.chat.message_model import Conversation, Mistake, Sender
from linguachat.errors import MalformedDocumentError
from linguachat.services.conversation_store import ConversationStore
from linguachat.services.tree_store import MemoryTreeStore, PushIdGenerator, RedisTreeStore

from tests.helpers import LANGUAGE, SequentialKeys

MESSAGES_ROOT = "users/user-1/languages/Spanish/conversationMessages"


def _mistake(description: str = "wrong verb tense", severity: int = 3) -> Mistake:
    return Mistake(
        description=description,
        severity=severity,
        english_explanation="used past tense instead of present",
        language_explanation="usaste el pasado",
    )


@pytest.mark.asyncio
async def test_create_and_read_conversation(conversation_store: ConversationStore, conversation: Conversation) -> None:
    assert conversation.conversation_topic == "Ordering food at a restaurant"
    assert conversation.study_topics == ("preterite",)
    assert conversation.study_words == ("cuenta",)
    assert conversation.date.year == 2023

    listed = await conversation_store.get_conversations(LANGUAGE)
    assert [item.id for item in listed] == [conversation.id]
    assert await conversation_store.get_conversation_messages(LANGUAGE, conversation.id) == []
    assert await conversation_store.get_conversations("French") == []


@pytest.mark.asyncio
async def test_missing_conversation_reads_as_none(conversation_store: ConversationStore) -> None:
    assert await conversation_store.get_conversation(LANGUAGE, "nope") is None
    assert await conversation_store.get_conversation_messages(LANGUAGE, "nope") is None
    assert await conversation_store.append_message(LANGUAGE, "nope", "", Sender.USER, "hola") is None


@pytest.mark.asyncio
async def test_append_follows_tail_pointer(
    conversation_store: ConversationStore, tree_store: MemoryTreeStore, conversation: Conversation
) -> None:
    first = await conversation_store.append_message(LANGUAGE, conversation.id, "", Sender.SYSTEM, "prompt", 12)
    assert first is not None
    second = await conversation_store.append_message(LANGUAGE, conversation.id, first, Sender.USER, "hola")
    assert second is not None

    stale = await conversation_store.append_message(LANGUAGE, conversation.id, first, Sender.USER, "otra vez")
    assert stale is None

    messages = await conversation_store.get_conversation_messages(LANGUAGE, conversation.id)
    assert messages is not None
    assert [(m.id, m.sender, m.content) for m in messages] == [
        (first, Sender.SYSTEM, "prompt"),
        (second, Sender.USER, "hola"),
    ]
    assert messages[0].token_count == 12
    assert messages[1].token_count is None
    assert messages[1].mistakes_processed is False

    document = await tree_store.get(f"{MESSAGES_ROOT}/{conversation.id}")
    assert document["lastMessageId"] == second


@pytest.mark.asyncio
async def test_history_follows_the_chain_when_a_writer_clock_runs_behind() -> None:
    ticks = iter([10_000, 10_000, 8_000, 8_000])
    keys = PushIdGenerator(clock=lambda: next(ticks))
    store = ConversationStore(MemoryTreeStore(key_generator=keys), "user-1", clock=lambda: 1_700_000_000_000)
    conversation_id = await store.create_conversation(LANGUAGE, "Weather")
    prompt_id = await store.append_message(LANGUAGE, conversation_id, "", Sender.SYSTEM, "prompt")
    reply_id = await store.append_message(LANGUAGE, conversation_id, prompt_id, Sender.USER, "hola")
    assert reply_id < prompt_id

    messages = await store.get_conversation_messages(LANGUAGE, conversation_id)

    assert [m.content for m in messages] == ["prompt", "hola"]
    conversation = await store.get_conversation(LANGUAGE, conversation_id)
    session = ConversationSession(store, LANGUAGE, conversation, messages)
    assert session.tail_id() == reply_id
    added = await session.add_message(Sender.ASSISTANT, "¿Qué tal?")
    assert [m.id for m in session.messages] == [prompt_id, reply_id, added.id]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "document",
    [
        {"lastMessageId": "m2", "messages": {"m2": {"sender": "User", "content": "b", "previousMessageId": "m1"}}},
        {
            "lastMessageId": "m2",
            "messages": {
                "m1": {"sender": "User", "content": "a", "previousMessageId": "m2"},
                "m2": {"sender": "User", "content": "b", "previousMessageId": "m1"},
            },
        },
        {
            "lastMessageId": "m2",
            "messages": {
                "m1": {"sender": "User", "content": "a", "previousMessageId": ""},
                "m2": {"sender": "User", "content": "b", "previousMessageId": ""},
            },
        },
    ],
    ids=["missing-predecessor", "loop", "unlinked-message"],
)
async def test_broken_message_chain_raises(
    conversation_store: ConversationStore, tree_store: MemoryTreeStore, conversation: Conversation, document
) -> None:
    await tree_store.update({f"{MESSAGES_ROOT}/{conversation.id}": document})

    with pytest.raises(MalformedDocumentError):
        await conversation_store.get_conversation_messages(LANGUAGE, conversation.id)


@pytest.mark.asyncio
async def test_conversations_are_listed_newest_first(tree_store: MemoryTreeStore) -> None:
    ticks = iter([1_000, 3_000, 2_000])
    store = ConversationStore(tree_store, "user-1", clock=lambda: next(ticks))
    older = await store.create_conversation(LANGUAGE, "Travel")
    newest = await store.create_conversation(LANGUAGE, "Weather")
    middle = await store.create_conversation(LANGUAGE, "Sports")

    assert [item.id for item in await store.get_conversations(LANGUAGE)] == [newest, middle, older]


@pytest.mark.asyncio
async def test_concurrent_appends_with_same_tail_admit_exactly_one(
    conversation_store: ConversationStore, tree_store: MemoryTreeStore, conversation: Conversation
) -> None:
    results = await asyncio.gather(
        conversation_store.append_message(LANGUAGE, conversation.id, "", Sender.USER, "tab one"),
        conversation_store.append_message(LANGUAGE, conversation.id, "", Sender.USER, "tab two"),
    )

    winners = [result for result in results if result is not None]
    assert len(winners) == 1
    document = await tree_store.get(f"{MESSAGES_ROOT}/{conversation.id}")
    assert document["lastMessageId"] == winners[0]
    assert list(document["messages"]) == winners


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("setter", "first", "second", "read"),
    [
        ("set_message_token_count", 5, 9, lambda message: message.token_count),
        ("set_message_summary", "primero", "segundo", lambda message: message.summary),
        ("set_message_mistakes", (_mistake("one"),), (_mistake("two"),), lambda message: message.mistakes),
    ],
)
async def test_write_once_fields_accept_a_single_writer(
    conversation_store: ConversationStore, conversation: Conversation, setter, first, second, read
) -> None:
    message_id = await conversation_store.append_message(LANGUAGE, conversation.id, "", Sender.USER, "hola")
    assert message_id is not None
    write = getattr(conversation_store, setter)

    results = await asyncio.gather(
        write(LANGUAGE, conversation.id, message_id, first),
        write(LANGUAGE, conversation.id, message_id, second),
    )

    assert sorted(results) == [False, True]
    winner = first if results[0] else second
    messages = await conversation_store.get_conversation_messages(LANGUAGE, conversation.id)
    assert read(messages[0]) == winner

    assert await write(LANGUAGE, conversation.id, message_id, first) is False
    messages = await conversation_store.get_conversation_messages(LANGUAGE, conversation.id)
    assert read(messages[0]) == winner


@pytest.fixture
def redis_conversation_store() -> ConversationStore:
    client = fakeredis.FakeAsyncRedis(decode_responses=True)
    tree = RedisTreeStore(client, prefix="test", key_generator=SequentialKeys())
    return ConversationStore(tree, "user-1", clock=lambda: 1_700_000_000_000)


@pytest.mark.asyncio
async def test_redis_concurrent_appends_with_same_tail_admit_exactly_one(
    redis_conversation_store: ConversationStore,
) -> None:
    store = redis_conversation_store
    conversation_id = await store.create_conversation(LANGUAGE, "Weather")
    tail = await store.append_message(LANGUAGE, conversation_id, "", Sender.SYSTEM, "prompt")

    results = await asyncio.gather(
        *(store.append_message(LANGUAGE, conversation_id, tail, Sender.USER, f"tab {n}") for n in range(5))
    )

    winners = [result for result in results if result is not None]
    assert len(winners) == 1
    messages = await store.get_conversation_messages(LANGUAGE, conversation_id)
    assert [m.id for m in messages] == [tail, winners[0]]
    document = await store.tree_store.get(f"{MESSAGES_ROOT}/{conversation_id}")
    assert document["lastMessageId"] == winners[0]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("setter", "values", "read"),
    [
        ("set_message_token_count", [1, 2, 3, 4, 5], lambda message: message.token_count),
        ("set_message_summary", ["uno", "dos", "tres", "cuatro", "cinco"], lambda message: message.summary),
        (
            "set_message_mistakes",
            [(_mistake(f"mistake {n}"),) for n in range(5)],
            lambda message: message.mistakes,
        ),
    ],
)
async def test_redis_write_once_fields_accept_a_single_writer(
    redis_conversation_store: ConversationStore, setter, values, read
) -> None:
    store = redis_conversation_store
    conversation_id = await store.create_conversation(LANGUAGE, "Weather")
    message_id = await store.append_message(LANGUAGE, conversation_id, "", Sender.USER, "hola")
    write = getattr(store, setter)

    results = await asyncio.gather(*(write(LANGUAGE, conversation_id, message_id, value) for value in values))

    assert results.count(True) == 1
    winner = values[results.index(True)]
    messages = await store.get_conversation_messages(LANGUAGE, conversation_id)
    assert read(messages[0]) == winner


@pytest.mark.asyncio
async def test_write_once_on_unknown_message_is_rejected(
    conversation_store: ConversationStore, conversation: Conversation
) -> None:
    assert await conversation_store.set_message_summary(LANGUAGE, conversation.id, "missing", "x") is False


@pytest.mark.asyncio
async def test_empty_mistakes_are_stored_as_marker(
    conversation_store: ConversationStore, tree_store: MemoryTreeStore, conversation: Conversation
) -> None:
    message_id = await conversation_store.append_message(LANGUAGE, conversation.id, "", Sender.USER, "hola")

    assert await conversation_store.set_message_mistakes(LANGUAGE, conversation.id, message_id, ()) is True

    document = await tree_store.get(f"{MESSAGES_ROOT}/{conversation.id}")
    assert document["messages"][message_id]["mistakes"] == ""
    messages = await conversation_store.get_conversation_messages(LANGUAGE, conversation.id)
    assert messages[0].mistakes_processed is True
    assert messages[0].mistakes == ()


@pytest.mark.asyncio
async def test_mistakes_round_trip_with_camel_case_fields(
    conversation_store: ConversationStore, tree_store: MemoryTreeStore, conversation: Conversation
) -> None:
    message_id = await conversation_store.append_message(LANGUAGE, conversation.id, "", Sender.USER, "yo fui")
    await conversation_store.set_message_mistakes(LANGUAGE, conversation.id, message_id, [_mistake()])

    document = await tree_store.get(f"{MESSAGES_ROOT}/{conversation.id}")
    assert document["messages"][message_id]["mistakes"] == [
        {
            "description": "wrong verb tense",
            "severity": 3,
            "englishExplanation": "used past tense instead of present",
            "languageExplanation": "usaste el pasado",
        }
    ]
    messages = await conversation_store.get_conversation_messages(LANGUAGE, conversation.id)
    assert messages[0].mistakes == (_mistake(),)


@pytest.mark.asyncio
async def test_mistakes_keyed_by_position_are_read_in_order(
    conversation_store: ConversationStore, tree_store: MemoryTreeStore, conversation: Conversation
) -> None:
    path = f"{MESSAGES_ROOT}/{conversation.id}"
    await tree_store.update(
        {
            path: {
                "lastMessageId": "m1",
                "messages": {
                    "m1": {
                        "date": 0,
                        "sender": "User",
                        "content": "hola",
                        "mistakes": {
                            "1": _mistake("second").to_dict(),
                            "0": _mistake("first").to_dict(),
                        },
                    }
                },
            }
        }
    )

    messages = await conversation_store.get_conversation_messages(LANGUAGE, conversation.id)

    assert [mistake.description for mistake in messages[0].mistakes] == ["first", "second"]


@pytest.mark.asyncio
async def test_malformed_message_raises(
    conversation_store: ConversationStore, tree_store: MemoryTreeStore, conversation: Conversation
) -> None:
    path = f"{MESSAGES_ROOT}/{conversation.id}"
    await tree_store.update({path: {"lastMessageId": "m1", "messages": {"m1": {"sender": "Robot", "content": "x"}}}})

    with pytest.raises(MalformedDocumentError):
        await conversation_store.get_conversation_messages(LANGUAGE, conversation.id)


@pytest.mark.asyncio
async def test_delete_removes_metadata_and_history(
    conversation_store: ConversationStore, tree_store: MemoryTreeStore, conversation: Conversation
) -> None:
    keep_id = await conversation_store.create_conversation(LANGUAGE, "Travel")
    await conversation_store.append_message(LANGUAGE, conversation.id, "", Sender.USER, "hola")

    await conversation_store.delete_conversations(LANGUAGE, [conversation.id])

    assert await conversation_store.get_conversation(LANGUAGE, conversation.id) is None
    assert await tree_store.get(f"{MESSAGES_ROOT}/{conversation.id}") is None
    assert [item.id for item in await conversation_store.get_conversations(LANGUAGE)] == [keep_id]


def test_user_id_is_required(tree_store: MemoryTreeStore) -> None:
    with pytest.raises(ValueError):
        ConversationStore(tree_store, "")
