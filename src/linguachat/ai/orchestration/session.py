"""Local view of one conversation, shared by the orchestration components.

Every mutation goes to the store first. Once the write returns, the session
checks its cancellation token, turns a rejected write into
:class:`~linguachat.errors.ConflictError` and only then updates the local
message list and publishes the new snapshot.
"""

from __future__ import annotations

import logging
from typing import Callable, Iterable, Sequence

from ...chat.message_model import Conversation, Message, Mistake, Sender
from ...errors import ConflictError
from ...services import telemetry as telemetry_service
from ...services.conversation_store import EMPTY_TAIL, ConversationStore
from ...ui.events import EventBus, MessagesUpdated, MistakesAnalyzed
from .cancellation import CancellationToken

LOGGER = logging.getLogger(__name__)


class ConversationSession:
    """Conversation metadata plus the locally known message history."""

    def __init__(
        self,
        store: ConversationStore,
        language: str,
        conversation: Conversation,
        messages: Sequence[Message] = (),
        *,
        bus: EventBus | None = None,
        token: CancellationToken | None = None,
    ) -> None:
        self._store = store
        self._language = language
        self._conversation = conversation
        self._messages: tuple[Message, ...] = tuple(messages)
        self._bus = bus or EventBus()
        self._token = token or CancellationToken()

    @property
    def store(self) -> ConversationStore:
        return self._store

    @property
    def language(self) -> str:
        return self._language

    @property
    def conversation(self) -> Conversation:
        return self._conversation

    @property
    def conversation_id(self) -> str:
        return self._conversation.id

    @property
    def messages(self) -> tuple[Message, ...]:
        return self._messages

    @property
    def bus(self) -> EventBus:
        return self._bus

    @property
    def token(self) -> CancellationToken:
        return self._token

    @property
    def closed(self) -> bool:
        return self._token.cancelled

    def tail_id(self) -> str:
        return self._messages[-1].id if self._messages else EMPTY_TAIL

    def index_of(self, message_id: str) -> int:
        for index, message in enumerate(self._messages):
            if message.id == message_id:
                return index
        raise KeyError(message_id)

    def get_message(self, message_id: str) -> Message:
        return self._messages[self.index_of(message_id)]

    def close(self, reason: str | None = None) -> None:
        self._token.cancel(reason)

    async def add_message(self, sender: Sender, content: str, token_count: int | None = None) -> Message:
        """Append a message after the locally known tail."""

        expected_tail = self.tail_id()
        message_id = await self._store.append_message(
            self._language,
            self.conversation_id,
            expected_tail,
            sender,
            content,
            token_count,
        )
        self._token.raise_if_cancelled()
        if message_id is None:
            raise self._conflict("append", details={"expected_tail": expected_tail, "sender": sender.value})

        message = Message(
            id=message_id,
            sender=sender,
            content=content,
            token_count=token_count,
            mistakes_processed=sender is not Sender.USER,
        )
        self._replace_messages(self._messages + (message,))
        return message

    async def set_message_token_count(self, message_id: str, token_count: int) -> None:
        did_set = await self._store.set_message_token_count(
            self._language, self.conversation_id, message_id, token_count
        )
        self._token.raise_if_cancelled()
        if not did_set:
            raise self._conflict("token_count", details={"message_id": message_id})
        self._update_message(message_id, lambda message: message.with_token_count(token_count))

    async def set_message_summary(self, message_id: str, summary: str) -> None:
        did_set = await self._store.set_message_summary(self._language, self.conversation_id, message_id, summary)
        self._token.raise_if_cancelled()
        if not did_set:
            raise self._conflict("summary", details={"message_id": message_id})
        self._update_message(message_id, lambda message: message.with_summary(summary))

    async def set_message_mistakes(self, message_id: str, mistakes: Iterable[Mistake]) -> bool:
        """Persist a mistake analysis; returns ``False`` when another writer got there first."""

        mistakes = tuple(mistakes)
        did_set = await self._store.set_message_mistakes(self._language, self.conversation_id, message_id, mistakes)
        self._token.raise_if_cancelled()
        if not did_set:
            LOGGER.warning("Mistakes for message %s were already recorded elsewhere", message_id)
            return False
        self._update_message(message_id, lambda message: message.with_mistakes(mistakes))
        self._bus.publish(
            MistakesAnalyzed(conversation_id=self.conversation_id, message_id=message_id, mistakes=mistakes)
        )
        return True

    def _update_message(self, message_id: str, transform: Callable[[Message], Message]) -> None:
        self._replace_messages(
            tuple(transform(message) if message.id == message_id else message for message in self._messages)
        )

    def _replace_messages(self, messages: tuple[Message, ...]) -> None:
        self._messages = messages
        self._bus.publish(MessagesUpdated(conversation_id=self.conversation_id, messages=messages))

    def _conflict(self, operation: str, *, details: dict) -> ConflictError:
        payload = {"conversation_id": self.conversation_id, "operation": operation, **details}
        LOGGER.warning("Conversation %s: %s write lost to another writer", self.conversation_id, operation)
        telemetry_service.emit(telemetry_service.CONVERSATION_CONFLICT, payload)
        return ConflictError(message=f"{operation} rejected for conversation {self.conversation_id}", details=payload)


__all__ = ["ConversationSession"]
