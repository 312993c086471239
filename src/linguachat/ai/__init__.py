"""Completion endpoints, prompts and conversation orchestration."""

from .ai_types import ChatRequest, ChatResponse, CompletionEndpoint
from .client import ChatApiClient, ClientSettings, OpenAIChatEndpoint, TokenCounterRegistry

__all__ = [
    "ChatApiClient",
    "ChatRequest",
    "ChatResponse",
    "ClientSettings",
    "CompletionEndpoint",
    "OpenAIChatEndpoint",
    "TokenCounterRegistry",
]
