"""Core type definitions for conversation orchestration."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from ..ai_types import DEFAULT_MODEL

__all__ = [
    "ANALYSIS_TEMPERATURE",
    "ConversationConfig",
    "ConversationState",
    "DEFAULT_CONVERSATION_TEMPERATURE",
    "DEFAULT_CORRECT_MISTAKES_PREVIOUS_MESSAGE_COUNT",
    "DEFAULT_MESSAGE_COUNT_SUMMARY_THRESHOLD",
    "DEFAULT_TOKEN_COUNT_SUMMARY_THRESHOLD",
]

DEFAULT_MESSAGE_COUNT_SUMMARY_THRESHOLD = 50
DEFAULT_TOKEN_COUNT_SUMMARY_THRESHOLD = 30_000
DEFAULT_CORRECT_MISTAKES_PREVIOUS_MESSAGE_COUNT = 4
DEFAULT_CONVERSATION_TEMPERATURE = 0.5
ANALYSIS_TEMPERATURE = 0.0


class ConversationState(str, Enum):
    """Turn-taking state of a conversation. ``ERROR`` is terminal."""

    INITIALIZING = "Initializing"
    WAITING_FOR_ASSISTANT = "WaitingForAssistant"
    WAITING_FOR_USER = "WaitingForUser"
    ERROR = "Error"


@dataclass(slots=True, frozen=True)
class ConversationConfig:
    """Tunables shared by the orchestrator and its components.

    Attributes:
        model: Completion model used for every request.
        temperature: Sampling temperature of conversation replies.
        message_count_summary_threshold: Window length that forces a summary.
        token_count_summary_threshold: Token total that forces a summary.
        correct_mistakes_previous_message_count: Context messages sent with
            a mistake-analysis request.
    """

    model: str = DEFAULT_MODEL
    temperature: float = DEFAULT_CONVERSATION_TEMPERATURE
    message_count_summary_threshold: int = DEFAULT_MESSAGE_COUNT_SUMMARY_THRESHOLD
    token_count_summary_threshold: int = DEFAULT_TOKEN_COUNT_SUMMARY_THRESHOLD
    correct_mistakes_previous_message_count: int = DEFAULT_CORRECT_MISTAKES_PREVIOUS_MESSAGE_COUNT

    @classmethod
    def from_settings(cls, settings: Any) -> "ConversationConfig":
        return cls(
            model=settings.model,
            temperature=settings.temperature,
            message_count_summary_threshold=settings.message_count_summary_threshold,
            token_count_summary_threshold=settings.token_count_summary_threshold,
            correct_mistakes_previous_message_count=settings.correct_mistakes_previous_message_count,
        )
