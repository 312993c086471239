"""Shared test helpers and stub classes.

Import from here instead of duplicating these classes in individual test files.
"""

from __future__ import annotations

import asyncio
import inspect
from typing import Any, Callable

from linguachat.ai import prompts
from linguachat.ai.ai_types import ChatRequest, ChatResponse
from linguachat.chat.message_model import Sender
from linguachat.services.conversation_store import ConversationStore

LANGUAGE = "Spanish"
DEFAULT_REPLY = "¡Hola! ¿Qué te gustaría pedir hoy?"
DEFAULT_SUMMARY = "Hablamos de la comida."


class SequentialKeys:
    """Deterministic, ordered replacement for the push-id generator."""

    def __init__(self, prefix: str = "k") -> None:
        self._prefix = prefix
        self._next = 0

    def __call__(self) -> str:
        self._next += 1
        return f"{self._prefix}{self._next:06d}"


def request_kind(request: ChatRequest) -> str:
    """Classify a request by the system prompt it opens with."""

    first = request.messages[0]
    if first.sender is Sender.SYSTEM:
        if prompts.NO_MISTAKES_TOKEN in first.content:
            return "mistakes"
        if "write a brief summary" in first.content:
            return "summary"
        if "list of" in first.content and "conversation topic" in first.content:
            return "topics"
    return "conversation"


def default_responder(request: ChatRequest) -> str:
    kind = request_kind(request)
    if kind == "mistakes":
        return prompts.NO_MISTAKES_TOKEN
    if kind == "summary":
        return DEFAULT_SUMMARY
    return DEFAULT_REPLY


class FakeCompletionEndpoint:
    """Scripted completion endpoint that records every request it receives.

    ``responder`` maps a request to a reply string, a ready ``ChatResponse``
    or an exception to raise. It may also be a coroutine function.
    """

    def __init__(
        self,
        responder: Callable[[ChatRequest], Any] | None = None,
        *,
        token_count: int = 7,
    ) -> None:
        self.requests: list[ChatRequest] = []
        self._responder = responder or default_responder
        self._token_count = token_count

    def kinds(self) -> list[str]:
        return [request_kind(request) for request in self.requests]

    async def chat(self, request: ChatRequest) -> ChatResponse:
        self.requests.append(request)
        await asyncio.sleep(0)
        result = self._responder(request)
        if inspect.isawaitable(result):
            result = await result
        if isinstance(result, BaseException):
            raise result
        if isinstance(result, ChatResponse):
            return result
        return ChatResponse(
            message=str(result),
            input_token_counts=tuple(self._token_count for _ in request.messages),
            output_token_count=self._token_count,
        )


async def seed_messages(
    store: ConversationStore,
    language: str,
    conversation_id: str,
    count: int,
    *,
    token_count: int | None = 10,
    system_prompt: str = "system prompt",
) -> None:
    """Append a system prompt followed by ``count`` alternating messages, the last one from the user."""

    tail = await store.append_message(language, conversation_id, "", Sender.SYSTEM, system_prompt, token_count)
    assert tail is not None
    for index in range(count):
        sender = Sender.USER if (count - index) % 2 == 1 else Sender.ASSISTANT
        tail = await store.append_message(language, conversation_id, tail, sender, f"message {index}", token_count)
        assert tail is not None
