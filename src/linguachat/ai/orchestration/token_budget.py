"""Token bookkeeping for conversation messages."""

from __future__ import annotations

import logging
from typing import Sequence

from ...chat.message_model import Message
from .session import ConversationSession

LOGGER = logging.getLogger(__name__)


def window_token_total(messages: Sequence[Message], window_start: int) -> int:
    """Token total used to decide whether the prompt window must be summarized.

    Counts the opening system prompt plus every message from ``window_start``
    on. Missing counts are treated as zero; the newest message usually has
    none yet.
    """

    if not messages:
        return 0
    opening = messages[0].token_count or 0
    return opening + sum(message.token_count or 0 for message in messages[window_start:])


class TokenBudgetTracker:
    """Backfills message token counts reported by the completion endpoint."""

    def __init__(self, session: ConversationSession) -> None:
        self._session = session

    async def backfill(self, input_token_counts: Sequence[int]) -> int:
        """Store counts for messages that have none yet.

        ``input_token_counts`` is aligned with the prompt that was sent: its
        first entry belongs to the opening system prompt and the remaining
        entries to the newest messages of the history. A rejected write raises
        :class:`~linguachat.errors.ConflictError`.

        Returns the number of counts written.
        """

        written = 0
        total = len(input_token_counts)
        for index, token_count in enumerate(input_token_counts):
            messages = self._session.messages
            message_index = 0 if index == 0 else len(messages) - total + index
            if not 0 <= message_index < len(messages):
                LOGGER.debug("Token count %d has no matching message (index %d)", index, message_index)
                continue
            message = messages[message_index]
            if message.token_count is not None:
                continue
            await self._session.set_message_token_count(message.id, int(token_count))
            written += 1
        if written:
            LOGGER.debug("Backfilled %d token count(s) for conversation %s", written, self._session.conversation_id)
        return written


__all__ = ["TokenBudgetTracker", "window_token_total"]
