"""Bounds the prompt size by summarizing older history on demand.

The *anchor* is the newest message carrying a summary. Everything before it
is represented by that summary inside a rebuilt system prompt; the anchor and
everything after it are sent verbatim. Once that window grows too long, the
older half is summarized and the summary is stored, write-once, on the first
message of the newer half, which becomes the next anchor.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from ...chat.message_model import ChatMessage, Message
from ...services import telemetry as telemetry_service
from .. import prompts
from ..ai_types import ChatRequest, CompletionEndpoint, system_message
from .session import ConversationSession
from .token_budget import window_token_total
from .types import ANALYSIS_TEMPERATURE, ConversationConfig

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class PromptWindow:
    """Where the verbatim part of the prompt starts and which summary precedes it."""

    start: int
    summary: str | None


def find_window(messages: tuple[Message, ...]) -> PromptWindow:
    for index in range(len(messages) - 1, -1, -1):
        summary = messages[index].summary
        if summary is not None:
            return PromptWindow(start=index, summary=summary)
    return PromptWindow(start=1, summary=None)


class SummarizationPolicy:
    """Prepares the outgoing prompt, summarizing the history when it is due."""

    def __init__(
        self,
        session: ConversationSession,
        endpoint: CompletionEndpoint,
        config: ConversationConfig,
    ) -> None:
        self._session = session
        self._endpoint = endpoint
        self._config = config

    def needs_summary(self, window: tuple[Message, ...], token_total: int) -> bool:
        if window[len(window) // 2].summary is not None:
            return False
        return (
            len(window) >= self._config.message_count_summary_threshold
            or token_total >= self._config.token_count_summary_threshold
        )

    async def prepare_messages(self) -> list[ChatMessage]:
        """Return the prompt for the next assistant reply.

        Raises :class:`~linguachat.errors.ConflictError` when the new summary
        cannot be stored because another writer already summarized that
        message. The turn is abandoned in that case.
        """

        messages = self._session.messages
        if len(messages) <= 1:
            return [message.as_chat_message() for message in messages]

        anchor = find_window(messages)
        window = messages[anchor.start:]
        token_total = window_token_total(messages, anchor.start)

        if not self.needs_summary(window, token_total):
            if anchor.summary is None:
                prompt = messages[0].content
            else:
                prompt = self._conversation_prompt(anchor.summary)
            return [system_message(prompt), *(message.as_chat_message() for message in window)]

        half = len(window) // 2
        LOGGER.info(
            "Summarizing %d message(s) of conversation %s (window %d, %d token(s))",
            half,
            self._session.conversation_id,
            len(window),
            token_total,
        )
        summary_request = ChatRequest.build(
            self._config.model,
            [
                system_message(
                    prompts.summary_prompt(
                        language=self._session.language,
                        previous_summary=anchor.summary,
                        recent_messages=[message.as_chat_message() for message in window[:half]],
                    )
                )
            ],
            ANALYSIS_TEMPERATURE,
        )
        response = await self._endpoint.chat(summary_request)
        self._session.token.raise_if_cancelled()

        new_anchor = window[half]
        await self._session.set_message_summary(new_anchor.id, response.message)
        LOGGER.debug("Stored summary on message %s", new_anchor.id)
        telemetry_service.emit(
            telemetry_service.SUMMARY_CREATED,
            {
                "conversation_id": self._session.conversation_id,
                "message_id": new_anchor.id,
                "summarized_messages": half,
                "token_total": token_total,
            },
        )

        prompt = self._conversation_prompt(response.message)
        return [system_message(prompt), *(message.as_chat_message() for message in window[half:])]

    def _conversation_prompt(self, summary: str | None) -> str:
        conversation = self._session.conversation
        return prompts.conversation_prompt(
            language=self._session.language,
            conversation_topic=conversation.conversation_topic,
            study_topics=conversation.study_topics,
            study_words=conversation.study_words,
            summary=summary,
        )


__all__ = ["PromptWindow", "SummarizationPolicy", "find_window"]
