"""Shared typing contracts for the completion and speech endpoints."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Protocol, Sequence

from ..chat.message_model import ChatMessage, Sender
from ..errors import MalformedResponseError

SUPPORTED_MODELS: tuple[str, ...] = ("gpt-3.5-turbo", "gpt-4o-mini", "gpt-4o", "gpt-4", "gpt-4-turbo")
DEFAULT_MODEL = "gpt-4o"

VOICE_GENDERS: tuple[str, ...] = ("Male", "Female")
MIN_SPEECH_SPEED = 50
MAX_SPEECH_SPEED = 100


class TokenCounterProtocol(Protocol):
    """Protocol describing tokenizer implementations."""

    model_name: str | None

    def count(self, text: str) -> int:
        """Return the precise token count for *text*."""
        ...

    def estimate(self, text: str) -> int:
        """Return a deterministic fallback estimate when precise counts fail."""
        ...


@dataclass(slots=True, frozen=True)
class ChatRequest:
    """A completion request: model, ordered prompt and sampling temperature."""

    model: str
    messages: tuple[ChatMessage, ...]
    temperature: float

    def __post_init__(self) -> None:
        if self.model not in SUPPORTED_MODELS:
            raise ValueError(f"Unsupported model {self.model!r}; expected one of {', '.join(SUPPORTED_MODELS)}")
        if not self.messages:
            raise ValueError("At least one message is required to start a chat")
        if not 0.0 <= float(self.temperature) <= 1.0:
            raise ValueError(f"Temperature must be between 0 and 1, got {self.temperature}")

    @classmethod
    def build(cls, model: str, messages: Sequence[ChatMessage], temperature: float) -> "ChatRequest":
        return cls(model=model, messages=tuple(messages), temperature=float(temperature))

    def to_payload(self) -> dict[str, Any]:
        return {
            "model": self.model,
            "messages": [message.to_dict() for message in self.messages],
            "temperature": self.temperature,
        }


@dataclass(slots=True, frozen=True)
class ChatResponse:
    """Completion reply with per-input token counts aligned to the prompt sent."""

    message: str
    input_token_counts: tuple[int, ...]
    output_token_count: int

    @classmethod
    def from_payload(cls, payload: Any, *, expected_inputs: int) -> "ChatResponse":
        if not isinstance(payload, Mapping):
            raise MalformedResponseError(message="Chat response body is not an object")
        missing = [key for key in ("message", "inputTokenCounts", "outputTokenCount") if key not in payload]
        if missing:
            raise MalformedResponseError(
                message=f"Chat response is missing {', '.join(missing)}",
                details={"missing": missing},
            )
        message = payload["message"]
        counts = payload["inputTokenCounts"]
        if not isinstance(message, str) or not isinstance(counts, list):
            raise MalformedResponseError(message="Chat response fields have unexpected types")
        try:
            input_counts = tuple(int(count) for count in counts)
            output_count = int(payload["outputTokenCount"])
        except (TypeError, ValueError) as exc:
            raise MalformedResponseError(message=f"Chat response token counts are invalid: {exc}") from exc
        if len(input_counts) != expected_inputs:
            raise MalformedResponseError(
                message=(
                    f"Chat response carried {len(input_counts)} input token count(s) "
                    f"for {expected_inputs} message(s)"
                ),
                details={"expected": expected_inputs, "received": len(input_counts)},
            )
        return cls(message=message, input_token_counts=input_counts, output_token_count=output_count)


class CompletionEndpoint(Protocol):
    """Anything that can answer a :class:`ChatRequest`."""

    async def chat(self, request: ChatRequest) -> ChatResponse:
        ...


@dataclass(slots=True, frozen=True)
class Voice:
    name: str
    gender: str


@dataclass(slots=True, frozen=True)
class LanguageVoices:
    language: str
    voices: tuple[Voice, ...] = field(default_factory=tuple)


@dataclass(slots=True, frozen=True)
class SpeechRequest:
    """Text-to-speech request; ``speed`` is a percentage between 50 and 100."""

    language: str
    voice: str
    speed: int
    message: str

    def __post_init__(self) -> None:
        if not MIN_SPEECH_SPEED <= int(self.speed) <= MAX_SPEECH_SPEED:
            raise ValueError(f"Speech speed must be between {MIN_SPEECH_SPEED} and {MAX_SPEECH_SPEED}")

    def to_payload(self) -> dict[str, Any]:
        return {"language": self.language, "voice": self.voice, "speed": self.speed, "message": self.message}


def system_message(content: str) -> ChatMessage:
    return ChatMessage(sender=Sender.SYSTEM, content=content)


__all__ = [
    "ChatRequest",
    "ChatResponse",
    "CompletionEndpoint",
    "DEFAULT_MODEL",
    "LanguageVoices",
    "SUPPORTED_MODELS",
    "SpeechRequest",
    "TokenCounterProtocol",
    "Voice",
    "system_message",
]
