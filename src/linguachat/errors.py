"""Error taxonomy for conversation storage and orchestration.

Store conflicts and transport failures propagate up to the orchestrator,
which turns them into its terminal ``Error`` state. Each error carries the
title and text shown to the user when that happens.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar


# -----------------------------------------------------------------------------
# Error Code Constants
# -----------------------------------------------------------------------------

class ErrorCode:
    """Constants for machine-readable error codes."""

    CONFLICT = "conflict"
    TRANSPORT = "transport"
    MALFORMED_RESPONSE = "malformed_response"
    MALFORMED_DOCUMENT = "malformed_document"
    SESSION_CLOSED = "session_closed"


_GENERIC_TITLE = "Error"
_GENERIC_MESSAGE = "An error occurred, please exit the conversation and try again."


# -----------------------------------------------------------------------------
# Base Error Class
# -----------------------------------------------------------------------------

@dataclass
class ConversationError(Exception):
    """Base exception class for conversation failures.

    Attributes:
        error_code: Machine-readable error identifier.
        message: Diagnostic description, written to the log.
        details: Additional structured error information.
        title: Short heading of the user-facing failure notice.
        user_message: Text of the user-facing failure notice.
    """

    error_code: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)
    title: str = _GENERIC_TITLE
    user_message: str = _GENERIC_MESSAGE

    severity: ClassVar[str] = "error"

    def __post_init__(self) -> None:
        Exception.__init__(self, self.message)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = dict(self.details)
        return result

    def __str__(self) -> str:
        return f"[{self.error_code}] {self.message}"


@dataclass
class ConflictError(ConversationError):
    """A tail-advance or write-once precondition failed: another writer won."""

    error_code: str = field(default=ErrorCode.CONFLICT)
    message: str = field(default="The conversation was modified by another writer")
    details: dict[str, Any] = field(default_factory=dict)
    title: str = field(default="Conflict")
    user_message: str = field(
        default=(
            "This conversation has been modified in another window or tab, "
            "please refresh the page and try again."
        )
    )

    severity: ClassVar[str] = "warning"


@dataclass
class TransportError(ConversationError):
    """The store or the completion endpoint could not be reached or failed."""

    error_code: str = field(default=ErrorCode.TRANSPORT)
    message: str = field(default="Request failed")
    details: dict[str, Any] = field(default_factory=dict)
    title: str = field(default=_GENERIC_TITLE)
    user_message: str = field(default=_GENERIC_MESSAGE)

    status_code: int | None = field(default=None)

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.status_code is not None:
            result["status_code"] = self.status_code
        return result


@dataclass
class MalformedResponseError(TransportError):
    """The completion endpoint answered with a body we cannot use."""

    error_code: str = field(default=ErrorCode.MALFORMED_RESPONSE)
    message: str = field(default="Completion response was malformed")


@dataclass
class MalformedDocumentError(TransportError):
    """A stored document could not be decoded."""

    error_code: str = field(default=ErrorCode.MALFORMED_DOCUMENT)
    message: str = field(default="Stored document was malformed")

    path: str | None = field(default=None)

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.path is not None:
            result["path"] = self.path
        return result


@dataclass
class SessionClosedError(ConversationError):
    """The owning session was closed while an operation was in flight.

    Raised only to unwind a stale continuation; it is never surfaced.
    """

    error_code: str = field(default=ErrorCode.SESSION_CLOSED)
    message: str = field(default="Conversation session was closed")

    severity: ClassVar[str] = "info"


@dataclass(slots=True, frozen=True)
class ParseAnomaly:
    """A malformed mistake-analysis reply. Logged, never raised."""

    reason: str
    raw: str


__all__ = [
    "ConflictError",
    "ConversationError",
    "ErrorCode",
    "MalformedDocumentError",
    "MalformedResponseError",
    "ParseAnomaly",
    "SessionClosedError",
    "TransportError",
]
