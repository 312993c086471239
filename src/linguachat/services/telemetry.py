"""In-process telemetry hooks for conversation events.

Emitted event names:

``conversation.conflict``
    A store write lost an optimistic-concurrency race.
``conversation.summary_created``
    A summary of the older history was persisted.
``conversation.turn_completed``
    An assistant reply was appended.
``mistakes.parse_anomaly``
    A mistake-analysis reply did not follow the sentinel format.
``mistakes.analysis_failed``
    Mistake analysis could not be obtained or persisted.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Callable, Iterable, Mapping

LOGGER = logging.getLogger(__name__)

CONVERSATION_CONFLICT = "conversation.conflict"
SUMMARY_CREATED = "conversation.summary_created"
TURN_COMPLETED = "conversation.turn_completed"
MISTAKES_PARSE_ANOMALY = "mistakes.parse_anomaly"
MISTAKES_ANALYSIS_FAILED = "mistakes.analysis_failed"

EVENT_NAMES: tuple[str, ...] = (
    CONVERSATION_CONFLICT,
    SUMMARY_CREATED,
    TURN_COMPLETED,
    MISTAKES_PARSE_ANOMALY,
    MISTAKES_ANALYSIS_FAILED,
)

_EVENT_LISTENERS: dict[str, list[Callable[[dict[str, Any]], None]]] = {}


@dataclass(slots=True, frozen=True)
class TelemetryRecord:
    """A captured telemetry event."""

    event: str
    payload: Mapping[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


class InMemoryTelemetrySink:
    """Ring buffer of emitted events for local inspection and tests."""

    def __init__(self, capacity: int = 200) -> None:
        self._capacity = max(10, capacity)
        self._buffer: deque[TelemetryRecord] = deque(maxlen=self._capacity)
        self._lock = Lock()

    @property
    def capacity(self) -> int:
        return self._capacity

    def __call__(self, payload: dict[str, Any]) -> None:
        name = str(payload.get("event", ""))
        with self._lock:
            self._buffer.append(TelemetryRecord(event=name, payload=dict(payload)))

    def attach(self, event_names: Iterable[str] = EVENT_NAMES) -> "InMemoryTelemetrySink":
        for name in event_names:
            register_event_listener(name, self)
        return self

    def detach(self, event_names: Iterable[str] = EVENT_NAMES) -> None:
        for name in event_names:
            unregister_event_listener(name, self)

    def tail(self, limit: int | None = None) -> list[TelemetryRecord]:
        with self._lock:
            events = list(self._buffer)
        if limit is None or limit >= len(events):
            return events
        return events[-limit:]

    def names(self) -> list[str]:
        return [record.event for record in self.tail()]

    def __len__(self) -> int:
        with self._lock:
            return len(self._buffer)


def register_event_listener(event_name: str, callback: Callable[[dict[str, Any]], None]) -> None:
    """Register a callback invoked whenever :func:`emit` fires *event_name*."""

    if not event_name or callback is None:
        return
    listeners = _EVENT_LISTENERS.setdefault(event_name, [])
    if callback not in listeners:
        listeners.append(callback)


def unregister_event_listener(event_name: str, callback: Callable[[dict[str, Any]], None]) -> None:
    listeners = _EVENT_LISTENERS.get(event_name)
    if listeners and callback in listeners:
        listeners.remove(callback)


def emit(event_name: str, payload: Mapping[str, Any] | None = None) -> None:
    """Broadcast a structured telemetry event to in-process listeners."""

    if not event_name:
        return
    event_payload: dict[str, Any] = {"event": event_name}
    if payload:
        event_payload.update(payload)
    listeners = list(_EVENT_LISTENERS.get(event_name, ()))
    for callback in listeners:
        try:
            callback(dict(event_payload))
        except Exception:  # pragma: no cover - listeners must not break emitters
            LOGGER.debug("Telemetry listener %s failed", callback, exc_info=True)
    LOGGER.debug("Telemetry emit %s: %s", event_name, event_payload)


__all__ = [
    "CONVERSATION_CONFLICT",
    "EVENT_NAMES",
    "InMemoryTelemetrySink",
    "MISTAKES_ANALYSIS_FAILED",
    "MISTAKES_PARSE_ANOMALY",
    "SUMMARY_CREATED",
    "TURN_COMPLETED",
    "TelemetryRecord",
    "emit",
    "register_event_listener",
    "unregister_event_listener",
]
