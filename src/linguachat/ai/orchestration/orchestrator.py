"""Turn-taking state machine for a single conversation.

States::

    Initializing -> WaitingForAssistant -> WaitingForUser <-> WaitingForAssistant
                         (any) -> Error   (terminal)

After every change the orchestrator looks at the newest message: a system or
user message means the assistant owes a reply. User messages additionally get
a detached mistake analysis which never blocks or fails the turn.
"""

from __future__ import annotations

import asyncio
import logging
from functools import partial
from typing import Any, Coroutine

from ...chat.message_model import Message, Sender
from ...errors import ConversationError, SessionClosedError
from ...services import telemetry as telemetry_service
from ...ui.events import ConversationFailed, ConversationStateChanged
from .. import prompts
from ..ai_types import ChatRequest, CompletionEndpoint
from .mistakes import MistakeCorrectionPipeline
from .session import ConversationSession
from .summarization import SummarizationPolicy
from .token_budget import TokenBudgetTracker
from .types import ConversationConfig, ConversationState

LOGGER = logging.getLogger(__name__)


class ConversationOrchestrator:
    """Drives a conversation: posts prompts, awaits replies, reports failures."""

    def __init__(
        self,
        session: ConversationSession,
        endpoint: CompletionEndpoint,
        config: ConversationConfig | None = None,
    ) -> None:
        self._session = session
        self._endpoint = endpoint
        self._config = config or ConversationConfig()
        self._state = ConversationState.INITIALIZING
        self._started = False
        self._budget = TokenBudgetTracker(session)
        self._summarization = SummarizationPolicy(session, endpoint, self._config)
        self._mistakes = MistakeCorrectionPipeline(session, endpoint, self._config)
        self._turn_tasks: set[asyncio.Task[Any]] = set()
        self._mistake_tasks: set[asyncio.Task[Any]] = set()

    # ------------------------------------------------------------------
    # Public surface
    # ------------------------------------------------------------------
    @property
    def state(self) -> ConversationState:
        return self._state

    @property
    def messages(self) -> tuple[Message, ...]:
        return self._session.messages

    @property
    def session(self) -> ConversationSession:
        return self._session

    @property
    def config(self) -> ConversationConfig:
        return self._config

    def start(self) -> None:
        """Kick off the first action and re-run interrupted mistake analyses.

        Must be called from a running event loop.
        """

        if self._started:
            return
        self._started = True
        self._spawn(self._turn_tasks, self._perform_next_action())
        for message in self._session.messages:
            if message.sender is Sender.USER and not message.mistakes_processed:
                self._spawn_mistake_analysis(message.id)

    def send_message(self, text: str) -> bool:
        """Post a user message.

        Returns ``False`` without side effects unless the conversation is
        waiting for the user. Otherwise the state is ``WaitingForAssistant``
        by the time this returns and the turn runs in the background.
        """

        if self._state is not ConversationState.WAITING_FOR_USER:
            return False
        if not self._set_state(ConversationState.WAITING_FOR_ASSISTANT):
            return False
        self._spawn(self._turn_tasks, self._send_message_async(text))
        return True

    async def wait_idle(self) -> None:
        """Wait until no turn is in progress."""

        await self._drain(self._turn_tasks)

    async def wait_for_mistake_analysis(self) -> None:
        await self._drain(self._mistake_tasks)

    def close(self) -> None:
        """Stop applying results locally. In-flight requests and writes still complete."""

        LOGGER.debug("Closing orchestrator for conversation %s", self._session.conversation_id)
        self._session.close("orchestrator closed")

    # ------------------------------------------------------------------
    # Turn logic
    # ------------------------------------------------------------------
    async def _send_message_async(self, text: str) -> None:
        try:
            message = await self._session.add_message(Sender.USER, text)
        except Exception as exc:
            self._fail(exc)
            return
        self._spawn_mistake_analysis(message.id)
        await self._perform_next_action()

    async def _perform_next_action(self) -> None:
        try:
            if not self._session.messages:
                if not self._set_state(ConversationState.WAITING_FOR_ASSISTANT):
                    return
                await self._session.add_message(Sender.SYSTEM, self._opening_prompt())

            last_sender = self._session.messages[-1].sender
            if last_sender in (Sender.SYSTEM, Sender.USER):
                if not self._set_state(ConversationState.WAITING_FOR_ASSISTANT):
                    return
                await self._assistant_turn()
        except Exception as exc:
            self._fail(exc)
            return

        self._set_state(ConversationState.WAITING_FOR_USER)

    async def _assistant_turn(self) -> None:
        prepared = await self._summarization.prepare_messages()
        request = ChatRequest.build(self._config.model, prepared, self._config.temperature)
        response = await self._endpoint.chat(request)
        self._session.token.raise_if_cancelled()

        await self._budget.backfill(response.input_token_counts)
        reply = await self._session.add_message(Sender.ASSISTANT, response.message, response.output_token_count)

        LOGGER.info(
            "Conversation %s: assistant replied (%d prompt message(s), %d output token(s))",
            self._session.conversation_id,
            len(prepared),
            response.output_token_count,
        )
        telemetry_service.emit(
            telemetry_service.TURN_COMPLETED,
            {
                "conversation_id": self._session.conversation_id,
                "message_id": reply.id,
                "prompt_messages": len(prepared),
                "input_tokens": sum(response.input_token_counts),
                "output_tokens": response.output_token_count,
            },
        )

    def _opening_prompt(self) -> str:
        conversation = self._session.conversation
        return prompts.conversation_prompt(
            language=self._session.language,
            conversation_topic=conversation.conversation_topic,
            study_topics=conversation.study_topics,
            study_words=conversation.study_words,
            summary=None,
        )

    # ------------------------------------------------------------------
    # State handling
    # ------------------------------------------------------------------
    def _set_state(self, state: ConversationState) -> bool:
        """Move to ``state`` unless the conversation failed or was closed."""

        if self._state is ConversationState.ERROR or self._session.closed:
            return False
        self._transition(state)
        return True

    def _transition(self, state: ConversationState) -> None:
        previous = self._state
        if previous is state:
            return
        self._state = state
        LOGGER.debug("Conversation %s: %s -> %s", self._session.conversation_id, previous.value, state.value)
        self._session.bus.publish(
            ConversationStateChanged(
                conversation_id=self._session.conversation_id,
                state=state,
                previous=previous,
            )
        )

    def _fail(self, exc: BaseException) -> None:
        if isinstance(exc, SessionClosedError) or self._session.closed:
            LOGGER.debug("Dropping result for closed conversation %s", self._session.conversation_id)
            return
        if self._state is ConversationState.ERROR:
            return

        if isinstance(exc, ConversationError):
            title, text, code = exc.title, exc.user_message, exc.error_code
            if exc.severity == "warning":
                LOGGER.warning("Conversation %s: %s", self._session.conversation_id, exc)
            else:
                LOGGER.error("Conversation %s: %s", self._session.conversation_id, exc)
        else:
            fallback = ConversationError(error_code="unexpected", message=str(exc))
            title, text, code = fallback.title, fallback.user_message, fallback.error_code
            LOGGER.error(
                "Conversation %s failed unexpectedly",
                self._session.conversation_id,
                exc_info=(type(exc), exc, exc.__traceback__),
            )

        self._transition(ConversationState.ERROR)
        self._session.bus.publish(
            ConversationFailed(
                conversation_id=self._session.conversation_id,
                title=title,
                message=text,
                error_code=code,
            )
        )

    # ------------------------------------------------------------------
    # Task management
    # ------------------------------------------------------------------
    def _spawn_mistake_analysis(self, message_id: str) -> None:
        self._spawn(self._mistake_tasks, self._mistakes.correct(message_id))

    def _spawn(self, bucket: set[asyncio.Task[Any]], coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        task = asyncio.get_running_loop().create_task(coro)
        bucket.add(task)
        task.add_done_callback(partial(self._on_task_finished, bucket))
        return task

    def _on_task_finished(self, bucket: set[asyncio.Task[Any]], task: asyncio.Task[Any]) -> None:
        bucket.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.error(
                "Background task for conversation %s failed",
                self._session.conversation_id,
                exc_info=(type(exc), exc, exc.__traceback__),
            )

    @staticmethod
    async def _drain(bucket: set[asyncio.Task[Any]]) -> None:
        while bucket:
            await asyncio.gather(*list(bucket), return_exceptions=True)


__all__ = ["ConversationOrchestrator"]
