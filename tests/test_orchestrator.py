"""Tests for the conversation turn-taking state machine."""

from __future__ import annotations

import asyncio

import pytest

from linguachat.ai.orchestration import ConversationOrchestrator, ConversationSession, ConversationState
from linguachat.chat.message_model import Conversation, Sender
from linguachat.errors import MalformedResponseError, TransportError
from linguachat.services import telemetry as telemetry_service
from linguachat.services.conversation_store import ConversationStore
from linguachat.ui.events import ConversationFailed, ConversationStateChanged, MessagesUpdated

from tests.helpers import DEFAULT_REPLY, LANGUAGE, FakeCompletionEndpoint, default_responder, request_kind

CONFLICT_TEXT = (
    "This conversation has been modified in another window or tab, please refresh the page and try again."
)
GENERIC_TEXT = "An error occurred, please exit the conversation and try again."


def _record(session: ConversationSession):
    states: list[ConversationState] = []
    failures: list[ConversationFailed] = []
    session.bus.subscribe(ConversationStateChanged, lambda event: states.append(event.state))
    session.bus.subscribe(ConversationFailed, failures.append)
    return states, failures


async def _started(
    store: ConversationStore, conversation: Conversation, endpoint: FakeCompletionEndpoint
) -> ConversationOrchestrator:
    session = ConversationSession(store, LANGUAGE, conversation)
    orchestrator = ConversationOrchestrator(session, endpoint)
    orchestrator.start()
    await orchestrator.wait_idle()
    return orchestrator


@pytest.mark.asyncio
async def test_start_opens_conversation_with_system_prompt(
    conversation_store: ConversationStore, conversation: Conversation, endpoint: FakeCompletionEndpoint
) -> None:
    session = ConversationSession(conversation_store, LANGUAGE, conversation)
    states, failures = _record(session)
    orchestrator = ConversationOrchestrator(session, endpoint)
    assert orchestrator.state is ConversationState.INITIALIZING

    orchestrator.start()
    await orchestrator.wait_idle()

    assert orchestrator.state is ConversationState.WAITING_FOR_USER
    assert states == [ConversationState.WAITING_FOR_ASSISTANT, ConversationState.WAITING_FOR_USER]
    assert failures == []
    assert [m.sender for m in orchestrator.messages] == [Sender.SYSTEM, Sender.ASSISTANT]
    opening = orchestrator.messages[0].content
    assert conversation.conversation_topic in opening and "preterite" in opening and "cuenta" in opening
    assert orchestrator.messages[1].content == DEFAULT_REPLY

    request = endpoint.requests[0]
    assert request.temperature == 0.5
    assert [m.content for m in request.messages] == [opening]

    stored = await conversation_store.get_conversation_messages(LANGUAGE, conversation.id)
    assert [(m.sender, m.token_count) for m in stored] == [(Sender.SYSTEM, 7), (Sender.ASSISTANT, 7)]


@pytest.mark.asyncio
async def test_send_message_round_trip(
    conversation_store: ConversationStore,
    conversation: Conversation,
    endpoint: FakeCompletionEndpoint,
    telemetry_sink,
) -> None:
    orchestrator = await _started(conversation_store, conversation, endpoint)

    assert orchestrator.send_message("hola") is True
    assert orchestrator.state is ConversationState.WAITING_FOR_ASSISTANT

    await orchestrator.wait_idle()
    await orchestrator.wait_for_mistake_analysis()

    assert orchestrator.state is ConversationState.WAITING_FOR_USER
    assert [(m.sender, m.content) for m in orchestrator.messages[2:]] == [
        (Sender.USER, "hola"),
        (Sender.ASSISTANT, DEFAULT_REPLY),
    ]
    stored = await conversation_store.get_conversation_messages(LANGUAGE, conversation.id)
    assert [m.id for m in stored] == [m.id for m in orchestrator.messages]
    assert stored[2].token_count == 7
    assert stored[2].mistakes_processed is True and stored[2].mistakes == ()
    assert orchestrator.messages[2].mistakes_processed is True
    assert telemetry_sink.names().count(telemetry_service.TURN_COMPLETED) == 2


@pytest.mark.asyncio
async def test_send_message_rejected_unless_waiting_for_user(
    conversation_store: ConversationStore, conversation: Conversation
) -> None:
    release = asyncio.Event()

    async def slow(request):
        await release.wait()
        return default_responder(request)

    session = ConversationSession(conversation_store, LANGUAGE, conversation)
    orchestrator = ConversationOrchestrator(session, FakeCompletionEndpoint(slow))
    assert orchestrator.send_message("too early") is False

    orchestrator.start()
    await asyncio.sleep(0.01)
    assert orchestrator.state is ConversationState.WAITING_FOR_ASSISTANT
    assert orchestrator.send_message("still waiting") is False

    release.set()
    await orchestrator.wait_idle()
    assert orchestrator.state is ConversationState.WAITING_FOR_USER
    assert all(m.content not in ("too early", "still waiting") for m in orchestrator.messages)


@pytest.mark.asyncio
async def test_append_conflict_moves_to_error(
    conversation_store: ConversationStore, conversation: Conversation, endpoint: FakeCompletionEndpoint
) -> None:
    orchestrator = await _started(conversation_store, conversation, endpoint)
    states, failures = _record(orchestrator.session)
    # Another tab appends behind this session's back.
    await conversation_store.append_message(
        LANGUAGE, conversation.id, orchestrator.messages[-1].id, Sender.USER, "from another tab"
    )

    assert orchestrator.send_message("hola") is True
    await orchestrator.wait_idle()

    assert orchestrator.state is ConversationState.ERROR
    assert states == [ConversationState.WAITING_FOR_ASSISTANT, ConversationState.ERROR]
    assert [(f.title, f.message, f.error_code) for f in failures] == [("Conflict", CONFLICT_TEXT, "conflict")]
    assert len(orchestrator.messages) == 2
    assert orchestrator.send_message("again") is False


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error",
    [TransportError(message="HTTP 503", status_code=503), MalformedResponseError(message="no body")],
)
async def test_endpoint_failure_moves_to_error(
    conversation_store: ConversationStore, conversation: Conversation, error: Exception
) -> None:
    session = ConversationSession(conversation_store, LANGUAGE, conversation)
    states, failures = _record(session)
    orchestrator = ConversationOrchestrator(session, FakeCompletionEndpoint(lambda request: error))

    orchestrator.start()
    await orchestrator.wait_idle()

    assert orchestrator.state is ConversationState.ERROR
    assert states[-1] is ConversationState.ERROR
    assert [(f.title, f.message) for f in failures] == [("Error", GENERIC_TEXT)]
    assert [m.sender for m in orchestrator.messages] == [Sender.SYSTEM]


@pytest.mark.asyncio
async def test_unexpected_exception_is_reported_generically(
    conversation_store: ConversationStore, conversation: Conversation
) -> None:
    session = ConversationSession(conversation_store, LANGUAGE, conversation)
    _, failures = _record(session)
    orchestrator = ConversationOrchestrator(session, FakeCompletionEndpoint(lambda request: RuntimeError("boom")))

    orchestrator.start()
    await orchestrator.wait_idle()

    assert orchestrator.state is ConversationState.ERROR
    assert [(f.title, f.error_code) for f in failures] == [("Error", "unexpected")]


@pytest.mark.asyncio
async def test_mistake_failures_do_not_affect_the_turn(
    conversation_store: ConversationStore, conversation: Conversation
) -> None:
    def responder(request):
        if request_kind(request) == "mistakes":
            return TransportError(message="analysis offline")
        return default_responder(request)

    orchestrator = await _started(conversation_store, conversation, FakeCompletionEndpoint(responder))

    orchestrator.send_message("hola")
    await orchestrator.wait_idle()
    await orchestrator.wait_for_mistake_analysis()

    assert orchestrator.state is ConversationState.WAITING_FOR_USER
    assert orchestrator.messages[2].mistakes_processed is False


@pytest.mark.asyncio
async def test_start_resumes_pending_mistake_analysis(
    conversation_store: ConversationStore, conversation: Conversation, endpoint: FakeCompletionEndpoint
) -> None:
    tail = await conversation_store.append_message(LANGUAGE, conversation.id, "", Sender.SYSTEM, "prompt", 3)
    tail = await conversation_store.append_message(LANGUAGE, conversation.id, tail, Sender.ASSISTANT, "¿Qué tal?", 3)
    await conversation_store.append_message(LANGUAGE, conversation.id, tail, Sender.USER, "bien", 3)
    messages = await conversation_store.get_conversation_messages(LANGUAGE, conversation.id)
    session = ConversationSession(conversation_store, LANGUAGE, conversation, messages)
    orchestrator = ConversationOrchestrator(session, endpoint)

    orchestrator.start()
    await orchestrator.wait_idle()
    await orchestrator.wait_for_mistake_analysis()

    assert sorted(request_kind(r) for r in endpoint.requests) == ["conversation", "mistakes"]
    assert orchestrator.messages[2].mistakes_processed is True
    assert orchestrator.messages[-1].sender is Sender.ASSISTANT
    assert orchestrator.state is ConversationState.WAITING_FOR_USER


@pytest.mark.asyncio
async def test_history_ending_with_assistant_waits_for_user(
    conversation_store: ConversationStore, conversation: Conversation, endpoint: FakeCompletionEndpoint
) -> None:
    tail = await conversation_store.append_message(LANGUAGE, conversation.id, "", Sender.SYSTEM, "prompt", 3)
    await conversation_store.append_message(LANGUAGE, conversation.id, tail, Sender.ASSISTANT, "¿Qué tal?", 3)
    messages = await conversation_store.get_conversation_messages(LANGUAGE, conversation.id)
    orchestrator = ConversationOrchestrator(
        ConversationSession(conversation_store, LANGUAGE, conversation, messages), endpoint
    )

    orchestrator.start()
    await orchestrator.wait_idle()

    assert orchestrator.state is ConversationState.WAITING_FOR_USER
    assert endpoint.requests == []


@pytest.mark.asyncio
async def test_close_suppresses_late_results(
    conversation_store: ConversationStore, conversation: Conversation
) -> None:
    release = asyncio.Event()

    async def slow(request):
        await release.wait()
        return default_responder(request)

    session = ConversationSession(conversation_store, LANGUAGE, conversation)
    snapshots: list[MessagesUpdated] = []
    states, failures = _record(session)
    orchestrator = ConversationOrchestrator(session, FakeCompletionEndpoint(slow))
    orchestrator.start()
    await asyncio.sleep(0.01)
    session.bus.subscribe(MessagesUpdated, snapshots.append)

    orchestrator.close()
    release.set()
    await orchestrator.wait_idle()

    assert session.closed
    assert snapshots == []
    assert failures == []
    assert states == [ConversationState.WAITING_FOR_ASSISTANT]
    assert [m.sender for m in orchestrator.messages] == [Sender.SYSTEM]
    assert orchestrator.send_message("hola") is False
