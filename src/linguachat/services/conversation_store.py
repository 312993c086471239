"""Conversation persistence on top of a :class:`~linguachat.services.tree_store.TreeStore`.

Layout, per user and language::

    users/{user}/languages/{language}/conversations/{conversationId}
        {date, conversationTopic, studyTopics, studyWords}
    users/{user}/languages/{language}/conversationMessages/{conversationId}
        {lastMessageId, messages: {messageId: {date, sender, content, previousMessageId,
                                               tokenCount?, summary?, mistakes?}}}

``lastMessageId`` is the tail pointer and ``previousMessageId`` links each
message to its predecessor; history order is the order of that chain, not of
the ids. Appends present the tail they last observed and are rejected when it
moved. ``tokenCount``, ``summary`` and ``mistakes`` are write-once. An empty
string in ``mistakes`` records "analysed, no mistakes"; a missing key means
the message was not analysed.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Iterable, Mapping, Sequence

from ..chat.message_model import Conversation, Message, Mistake, Sender, datetime_from_millis
from ..errors import MalformedDocumentError
from .tree_store import TreeStore, join_path

__all__ = ["ConversationStore", "EMPTY_TAIL", "NO_MISTAKES_MARKER"]

LOGGER = logging.getLogger(__name__)

EMPTY_TAIL = ""
NO_MISTAKES_MARKER = ""


def _now_millis() -> int:
    return int(time.time() * 1000)


class ConversationStore:
    """Optimistic-concurrency reads and writes of conversations and messages."""

    def __init__(
        self,
        store: TreeStore,
        user_id: str,
        *,
        clock: Callable[[], int] | None = None,
    ) -> None:
        if not user_id:
            raise ValueError("user_id is required")
        self._store = store
        self._user_id = user_id
        self._clock = clock or _now_millis

    @property
    def tree_store(self) -> TreeStore:
        return self._store

    @property
    def user_id(self) -> str:
        return self._user_id

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------
    def _language_path(self, language: str) -> str:
        return join_path("users", self._user_id, "languages", language)

    def _conversations_path(self, language: str) -> str:
        return join_path(self._language_path(language), "conversations")

    def _conversation_path(self, language: str, conversation_id: str) -> str:
        return join_path(self._conversations_path(language), conversation_id)

    def _messages_document_path(self, language: str, conversation_id: str) -> str:
        return join_path(self._language_path(language), "conversationMessages", conversation_id)

    # ------------------------------------------------------------------
    # Plain reads and writes
    # ------------------------------------------------------------------
    async def get_conversations(self, language: str) -> list[Conversation]:
        """Return the conversations of ``language``, newest first."""

        documents = await self._store.children(self._conversations_path(language))
        conversations = [
            _parse_conversation(conversation_id, document, path=self._conversation_path(language, conversation_id))
            for conversation_id, document in documents.items()
        ]
        conversations.sort(key=lambda item: item.date, reverse=True)
        return conversations

    async def get_conversation(self, language: str, conversation_id: str) -> Conversation | None:
        path = self._conversation_path(language, conversation_id)
        document = await self._store.get(path)
        if document is None:
            return None
        return _parse_conversation(conversation_id, document, path=path)

    async def get_conversation_messages(self, language: str, conversation_id: str) -> list[Message] | None:
        """Return the messages of a conversation in append order, or ``None`` if it does not exist."""

        path = self._messages_document_path(language, conversation_id)
        document = await self._store.get(path)
        if document is None:
            return None
        return _parse_messages(document, path=path)

    async def create_conversation(
        self,
        language: str,
        conversation_topic: str,
        study_topics: Sequence[str] = (),
        study_words: Sequence[str] = (),
    ) -> str:
        conversation_id = self._store.new_key()
        updates = {
            self._conversation_path(language, conversation_id): {
                "date": self._clock(),
                "conversationTopic": conversation_topic,
                "studyTopics": list(study_topics),
                "studyWords": list(study_words),
            },
            self._messages_document_path(language, conversation_id): {"lastMessageId": EMPTY_TAIL},
        }
        await self._store.update(updates)
        LOGGER.info("Created conversation %s (%s)", conversation_id, language)
        return conversation_id

    async def delete_conversations(self, language: str, conversation_ids: Iterable[str]) -> None:
        """Delete conversations and their histories.

        Metadata and histories are removed by two separate writes, so a
        failure in between leaves one of them behind.
        """

        ids = list(conversation_ids)
        if not ids:
            return
        await self._store.update({self._conversation_path(language, cid): None for cid in ids})
        await self._store.update({self._messages_document_path(language, cid): None for cid in ids})
        LOGGER.info("Deleted %d conversation(s) (%s)", len(ids), language)

    # ------------------------------------------------------------------
    # Conditional writes
    # ------------------------------------------------------------------
    async def append_message(
        self,
        language: str,
        conversation_id: str,
        expected_tail_id: str,
        sender: Sender,
        content: str,
        token_count: int | None = None,
    ) -> str | None:
        """Append a message if the tail pointer still equals ``expected_tail_id``.

        Returns the new message id, or ``None`` when another writer advanced
        the tail first or the conversation no longer exists.
        """

        message_id = self._store.new_key()
        record: dict[str, Any] = {
            "date": self._clock(),
            "sender": Sender.parse(sender).value,
            "content": content,
            "previousMessageId": expected_tail_id,
        }
        if token_count is not None:
            record["tokenCount"] = int(token_count)

        def _append(current: Any) -> Any:
            if not isinstance(current, dict):
                return None
            if current.get("lastMessageId", EMPTY_TAIL) != expected_tail_id:
                return None
            messages = current.get("messages")
            if not isinstance(messages, dict):
                messages = {}
            messages[message_id] = dict(record)
            current["messages"] = messages
            current["lastMessageId"] = message_id
            return current

        path = self._messages_document_path(language, conversation_id)
        result = await self._store.transaction(path, _append)
        if not result.committed:
            LOGGER.debug(
                "Append to %s rejected: expected tail %r, found %r",
                conversation_id,
                expected_tail_id,
                (result.value or {}).get("lastMessageId") if isinstance(result.value, dict) else None,
            )
            return None
        return message_id

    async def set_message_token_count(
        self, language: str, conversation_id: str, message_id: str, token_count: int
    ) -> bool:
        return await self._set_once(language, conversation_id, message_id, "tokenCount", int(token_count))

    async def set_message_summary(
        self, language: str, conversation_id: str, message_id: str, summary: str
    ) -> bool:
        return await self._set_once(language, conversation_id, message_id, "summary", summary)

    async def set_message_mistakes(
        self, language: str, conversation_id: str, message_id: str, mistakes: Sequence[Mistake]
    ) -> bool:
        blob: Any = [mistake.to_dict() for mistake in mistakes] if mistakes else NO_MISTAKES_MARKER
        return await self._set_once(language, conversation_id, message_id, "mistakes", blob)

    async def _set_once(
        self, language: str, conversation_id: str, message_id: str, field: str, value: Any
    ) -> bool:
        def _write(current: Any) -> Any:
            if not isinstance(current, dict):
                return None
            messages = current.get("messages")
            if not isinstance(messages, dict):
                return None
            message = messages.get(message_id)
            if not isinstance(message, dict) or field in message:
                return None
            message[field] = value
            return current

        path = self._messages_document_path(language, conversation_id)
        result = await self._store.transaction(path, _write)
        if not result.committed:
            LOGGER.debug("Write-once %s on message %s was rejected", field, message_id)
        return result.committed


def _parse_conversation(conversation_id: str, document: Any, *, path: str) -> Conversation:
    try:
        return Conversation(
            id=conversation_id,
            date=datetime_from_millis(document["date"]),
            conversation_topic=str(document["conversationTopic"]),
            study_topics=tuple(str(item) for item in document.get("studyTopics") or ()),
            study_words=tuple(str(item) for item in document.get("studyWords") or ()),
        )
    except (KeyError, TypeError, AttributeError) as exc:
        raise MalformedDocumentError(
            message=f"Conversation document at {path} is malformed: {exc}",
            path=path,
        ) from exc


def _parse_messages(document: Any, *, path: str) -> list[Message]:
    if not isinstance(document, Mapping):
        raise MalformedDocumentError(message=f"Messages document at {path} is not an object", path=path)
    raw_messages = document.get("messages") or {}
    if not isinstance(raw_messages, Mapping):
        raise MalformedDocumentError(message=f"Messages map at {path} is not an object", path=path)
    order = _chain_order(document.get("lastMessageId") or EMPTY_TAIL, raw_messages, path=path)
    return [_parse_message(message_id, raw_messages[message_id], path=path) for message_id in order]


def _chain_order(tail_id: Any, raw_messages: Mapping[str, Any], *, path: str) -> list[str]:
    """Walk ``previousMessageId`` links back from the tail pointer.

    Every stored message must be reachable from the tail exactly once.
    """

    order: list[str] = []
    seen: set[str] = set()
    message_id = tail_id
    while message_id != EMPTY_TAIL:
        if not isinstance(message_id, str) or message_id in seen:
            raise MalformedDocumentError(message=f"Message chain at {path} loops at {message_id!r}", path=path)
        payload = raw_messages.get(message_id)
        if not isinstance(payload, Mapping):
            raise MalformedDocumentError(
                message=f"Message chain at {path} references missing message {message_id!r}",
                path=path,
            )
        seen.add(message_id)
        order.append(message_id)
        message_id = payload.get("previousMessageId", EMPTY_TAIL)
    if len(order) != len(raw_messages):
        orphans = sorted(set(raw_messages) - seen)
        raise MalformedDocumentError(
            message=f"Messages at {path} are not linked from the tail: {', '.join(orphans)}",
            path=path,
        )
    order.reverse()
    return order


def _parse_message(message_id: str, payload: Any, *, path: str) -> Message:
    try:
        mistakes_processed = "mistakes" in payload
        return Message(
            id=message_id,
            sender=Sender.parse(payload["sender"]),
            content=str(payload["content"]),
            date=datetime_from_millis(payload.get("date")),
            token_count=_optional_int(payload.get("tokenCount")),
            summary=payload.get("summary"),
            mistakes_processed=mistakes_processed,
            mistakes=_parse_mistakes_blob(payload.get("mistakes")) if mistakes_processed else (),
        )
    except (KeyError, TypeError, ValueError, AttributeError) as exc:
        raise MalformedDocumentError(
            message=f"Message {message_id} at {path} is malformed: {exc}",
            path=path,
        ) from exc


def _parse_mistakes_blob(blob: Any) -> tuple[Mistake, ...]:
    if isinstance(blob, str) or blob is None:
        return ()
    if isinstance(blob, Mapping):
        # Keyed by position ("0", "1", ...).
        items = [blob[key] for key in sorted(blob, key=lambda key: int(key))]
    else:
        items = list(blob)
    return tuple(Mistake.from_dict(item) for item in items)


def _optional_int(value: Any) -> int | None:
    if value is None:
        return None
    return int(value)
