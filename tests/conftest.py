"""Shared pytest fixtures."""

from __future__ import annotations

import pytest
import pytest_asyncio

from linguachat.chat.message_model import Conversation
from linguachat.services import telemetry as telemetry_service
from linguachat.services.conversation_store import ConversationStore
from linguachat.services.tree_store import MemoryTreeStore

from tests.helpers import LANGUAGE, FakeCompletionEndpoint, SequentialKeys


@pytest.fixture
def tree_store() -> MemoryTreeStore:
    return MemoryTreeStore(key_generator=SequentialKeys())


@pytest.fixture
def conversation_store(tree_store: MemoryTreeStore) -> ConversationStore:
    return ConversationStore(tree_store, "user-1", clock=lambda: 1_700_000_000_000)


@pytest.fixture
def endpoint() -> FakeCompletionEndpoint:
    return FakeCompletionEndpoint()


@pytest.fixture
def telemetry_sink():
    sink = telemetry_service.InMemoryTelemetrySink().attach()
    yield sink
    sink.detach()


@pytest_asyncio.fixture
async def conversation(conversation_store: ConversationStore) -> Conversation:
    conversation_id = await conversation_store.create_conversation(
        LANGUAGE, "Ordering food at a restaurant", ["preterite"], ["cuenta"]
    )
    conversation = await conversation_store.get_conversation(LANGUAGE, conversation_id)
    assert conversation is not None
    return conversation
