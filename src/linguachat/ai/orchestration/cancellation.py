"""Liveness token for conversation sessions.

Cancelling the token does not cancel in-flight requests or store writes. It
only tells continuations to stop before they touch observable state.
"""

from __future__ import annotations

import logging

from ...errors import SessionClosedError

LOGGER = logging.getLogger(__name__)


class CancellationToken:
    """One-shot flag checked by every continuation before it mutates state."""

    __slots__ = ("_cancelled", "_reason")

    def __init__(self) -> None:
        self._cancelled = False
        self._reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str | None = None) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self._reason = reason
        LOGGER.debug("Cancellation token tripped (%s)", reason or "no reason")

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise SessionClosedError(details={"reason": self._reason} if self._reason else {})


__all__ = ["CancellationToken"]
