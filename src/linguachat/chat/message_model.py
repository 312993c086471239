"""Conversation, message and mistake data models."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, Mapping


def _utcnow() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""

    return datetime.now(timezone.utc)


def datetime_from_millis(value: Any) -> datetime:
    """Convert a millisecond epoch timestamp into an aware datetime."""

    try:
        millis = float(value)
    except (TypeError, ValueError):
        return _utcnow()
    return datetime.fromtimestamp(millis / 1000.0, tz=timezone.utc)


class Sender(str, Enum):
    """Author of a message. Values match the persisted and wire spelling."""

    SYSTEM = "System"
    ASSISTANT = "Assistant"
    USER = "User"

    @classmethod
    def parse(cls, value: Any) -> "Sender":
        if isinstance(value, Sender):
            return value
        try:
            return cls(str(value))
        except ValueError as exc:
            raise ValueError(f"Unknown message sender: {value!r}") from exc


@dataclass(slots=True, frozen=True)
class ChatMessage:
    """A single entry of a prompt sent to the completion endpoint."""

    sender: Sender
    content: str

    def to_dict(self) -> Dict[str, str]:
        return {"sender": self.sender.value, "content": self.content}


@dataclass(slots=True, frozen=True)
class Mistake:
    """A language mistake found in a user message.

    Attributes:
        description: Short English phrase naming the mistake.
        severity: Integer rating reported by the model.
        english_explanation: What went wrong, in English.
        language_explanation: The same explanation in the studied language.
    """

    description: str
    severity: int
    english_explanation: str
    language_explanation: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "description": self.description,
            "severity": self.severity,
            "englishExplanation": self.english_explanation,
            "languageExplanation": self.language_explanation,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Mistake":
        return cls(
            description=str(payload.get("description") or ""),
            severity=int(payload.get("severity") or 0),
            english_explanation=str(payload.get("englishExplanation") or ""),
            language_explanation=str(payload.get("languageExplanation") or ""),
        )


@dataclass(slots=True, frozen=True)
class Conversation:
    """Metadata describing a conversation. Immutable once created."""

    id: str
    date: datetime
    conversation_topic: str
    study_topics: tuple[str, ...] = ()
    study_words: tuple[str, ...] = ()


@dataclass(slots=True, frozen=True)
class Message:
    """A persisted conversation message.

    ``token_count``, ``summary`` and ``mistakes`` are write-once in the store;
    local copies are replaced (never mutated) when one of them gets filled in.
    ``mistakes_processed`` is only meaningful for :attr:`Sender.USER` messages.
    """

    id: str
    sender: Sender
    content: str
    date: datetime = field(default_factory=_utcnow)
    token_count: int | None = None
    summary: str | None = None
    mistakes_processed: bool = True
    mistakes: tuple[Mistake, ...] = ()

    def as_chat_message(self) -> ChatMessage:
        return ChatMessage(sender=self.sender, content=self.content)

    def with_token_count(self, token_count: int) -> "Message":
        return replace(self, token_count=token_count)

    def with_summary(self, summary: str) -> "Message":
        return replace(self, summary=summary)

    def with_mistakes(self, mistakes: Iterable[Mistake]) -> "Message":
        return replace(self, mistakes_processed=True, mistakes=tuple(mistakes))


__all__ = [
    "ChatMessage",
    "Conversation",
    "Message",
    "Mistake",
    "Sender",
    "datetime_from_millis",
]
