"""Event bus for conversation state notifications.

The orchestrator publishes a snapshot on every state change, every change to
its local message list and every surfaced failure. Consumers subscribe per
event type; delivery is synchronous and in registration order.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import (
    Callable,
    Generic,
    TypeVar,
    TYPE_CHECKING,
)
from weakref import WeakMethod, ref

if TYPE_CHECKING:  # pragma: no cover - imports for type checking only
    from typing import DefaultDict

    from ..ai.orchestration.types import ConversationState
    from ..chat.message_model import Message, Mistake

logger = logging.getLogger(__name__)

E = TypeVar("E", bound="Event")

Handler = Callable[[E], None]


@dataclass(slots=True)
class Event:
    """Base class for all events published on the bus."""

    pass


@dataclass(slots=True)
class ConversationStateChanged(Event):
    """The orchestrator moved to a new state.

    Attributes:
        conversation_id: Conversation the orchestrator drives.
        state: The state just entered.
        previous: The state that was left.
    """

    conversation_id: str
    state: ConversationState
    previous: ConversationState


@dataclass(slots=True)
class MessagesUpdated(Event):
    """The local message list changed; ``messages`` is the full new snapshot."""

    conversation_id: str
    messages: tuple[Message, ...]


@dataclass(slots=True)
class MistakesAnalyzed(Event):
    """Mistake analysis for a user message was persisted."""

    conversation_id: str
    message_id: str
    mistakes: tuple[Mistake, ...]


@dataclass(slots=True)
class ConversationFailed(Event):
    """A failure moved the conversation into its terminal error state.

    Attributes:
        conversation_id: Conversation that failed.
        title: Short heading for the failure notice.
        message: User-facing explanation.
        error_code: Machine-readable code of the underlying error.
    """

    conversation_id: str
    title: str
    message: str
    error_code: str


# High-frequency event types that should not log each publish
_QUIET_EVENT_TYPES: set[type] = {MessagesUpdated}


class EventBus(Generic[E]):
    """A typed publish-subscribe event bus.

    Handlers are stored as weak references where possible (bound methods),
    so subscribers do not need to unsubscribe before being collected.

    Example::

        bus = EventBus()
        bus.subscribe(ConversationFailed, lambda event: print(event.message))

    Thread Safety:
        Not thread-safe. Publish and subscribe from the event loop thread.
    """

    __slots__ = ("_handlers",)

    def __init__(self) -> None:
        self._handlers: DefaultDict[type[Event], list[_HandlerRef]] = defaultdict(list)

    def subscribe(self, event_type: type[E], handler: Handler[E]) -> None:
        """Register ``handler`` for events of exactly ``event_type``."""

        self._handlers[event_type].append(_HandlerRef.create(handler))
        logger.debug(
            "Subscribed handler %s to event type %s",
            _handler_name(handler),
            event_type.__name__,
        )

    def unsubscribe(self, event_type: type[E], handler: Handler[E]) -> None:
        """Remove the first registration of ``handler``; unknown handlers are ignored."""

        handlers = self._handlers.get(event_type)
        if handlers is None:
            return
        for i, handler_ref in enumerate(handlers):
            if handler_ref.matches(handler):
                handlers.pop(i)
                logger.debug(
                    "Unsubscribed handler %s from event type %s",
                    _handler_name(handler),
                    event_type.__name__,
                )
                return

    def publish(self, event: E) -> None:
        """Deliver ``event`` to every handler in registration order.

        A handler that raises is logged and the remaining handlers still run.
        """

        event_type = type(event)
        handlers = self._handlers.get(event_type)
        is_quiet = event_type in _QUIET_EVENT_TYPES

        if not handlers:
            if not is_quiet:
                logger.debug("No handlers for event type %s", event_type.__name__)
            return

        if not is_quiet:
            logger.debug("Publishing %s to %d handler(s)", event_type.__name__, len(handlers))

        dead_indices: list[int] = []
        # Iterate over a copy; handlers may unsubscribe while being called.
        for i, handler_ref in enumerate(list(handlers)):
            handler = handler_ref.resolve()
            if handler is None:
                dead_indices.append(i)
                continue
            try:
                handler(event)
            except Exception:
                logger.exception(
                    "Handler %s raised exception for event %s",
                    _handler_name(handler),
                    event_type.__name__,
                )

        for i in reversed(dead_indices):
            if i < len(handlers) and handlers[i].resolve() is None:
                handlers.pop(i)

    def handler_count(self, event_type: type[E] | None = None) -> int:
        if event_type is not None:
            return len(self._handlers.get(event_type, []))
        return sum(len(handlers) for handlers in self._handlers.values())


class _HandlerRef:
    """Weak reference for bound methods, strong reference for everything else."""

    __slots__ = ("_ref", "_is_weak")

    def __init__(self, handler_ref: WeakMethod | ref | Handler, is_weak: bool) -> None:
        self._ref = handler_ref
        self._is_weak = is_weak

    @classmethod
    def create(cls, handler: Handler) -> _HandlerRef:
        if hasattr(handler, "__self__") and hasattr(handler, "__func__"):
            try:
                return cls(WeakMethod(handler), is_weak=True)
            except TypeError:
                pass
        return cls(handler, is_weak=False)

    def resolve(self) -> Handler | None:
        if not self._is_weak:
            return self._ref  # type: ignore[return-value]
        return self._ref()  # type: ignore[operator]

    def matches(self, handler: Handler) -> bool:
        resolved = self.resolve()
        if resolved is None:
            return False
        return resolved == handler


def _handler_name(handler: Handler) -> str:
    if hasattr(handler, "__self__") and hasattr(handler, "__func__"):
        return f"{type(handler.__self__).__name__}.{handler.__func__.__name__}"
    if hasattr(handler, "__name__"):
        return handler.__name__
    return repr(handler)


__all__ = [
    "ConversationFailed",
    "ConversationStateChanged",
    "Event",
    "EventBus",
    "Handler",
    "MessagesUpdated",
    "MistakesAnalyzed",
]
