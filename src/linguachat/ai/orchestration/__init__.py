"""Conversation orchestration: session view, summarization, mistakes, state machine."""

from .cancellation import CancellationToken
from .types import ConversationConfig, ConversationState
from .session import ConversationSession
from .token_budget import TokenBudgetTracker, window_token_total
from .summarization import SummarizationPolicy
from .mistakes import MistakeCorrectionPipeline, MistakeParseResult, parse_mistakes
from .orchestrator import ConversationOrchestrator

__all__ = [
    "CancellationToken",
    "ConversationConfig",
    "ConversationOrchestrator",
    "ConversationSession",
    "ConversationState",
    "MistakeCorrectionPipeline",
    "MistakeParseResult",
    "SummarizationPolicy",
    "TokenBudgetTracker",
    "parse_mistakes",
    "window_token_total",
]
