"""
Observer Pattern – EventBus
===========================
A lightweight publish-subscribe bus used by the deliberation phases to emit
progress events (phase completions, debate rounds, per-responder outcomes,
circuit transitions) without coupling to concrete loggers or UIs.

Subscribers implement the :class:`EventObserver` protocol or are plain
callables.  Orchestrators own a bus each; the module-level :data:`event_bus`
carries process-wide events such as circuit-breaker transitions.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Callable, Protocol

logger = logging.getLogger(__name__)


class EventType(Enum):
    """Categories of pipeline events."""

    PHASE_COMPLETED = auto()
    DEBATE_ROUND = auto()
    MODEL_RESPONSE = auto()
    MODEL_FAILURE = auto()
    CIRCUIT_STATE = auto()
    SESSION_COMPLETED = auto()
    SESSION_FAILED = auto()


@dataclass
class Event:
    """A single pipeline event."""

    event_type: EventType
    payload: dict[str, Any] = field(default_factory=dict)
    message: str = ""
    session_id: str = ""


class EventObserver(Protocol):
    """Protocol that any subscriber must satisfy."""

    def on_event(self, event: Event) -> None: ...


def _as_callback(callback: Callable[[Event], None] | EventObserver) -> Callable[[Event], None]:
    if hasattr(callback, "on_event"):
        return callback.on_event
    return callback


class EventBus:
    """Simple synchronous pub-sub bus.

    Usage::

        bus = EventBus()
        bus.subscribe(EventType.DEBATE_ROUND, my_logger)
        bus.publish(Event(EventType.DEBATE_ROUND, message="…"))
    """

    def __init__(self) -> None:
        self._subscribers: dict[EventType, list[Callable[[Event], None]]] = {}

    def subscribe(
        self,
        event_type: EventType,
        callback: Callable[[Event], None] | EventObserver,
    ) -> None:
        """Register *callback* (or an :class:`EventObserver`) for *event_type*."""
        self._subscribers.setdefault(event_type, []).append(_as_callback(callback))

    def subscribe_all(self, callback: Callable[[Event], None] | EventObserver) -> None:
        """Register *callback* for **every** event type."""
        for et in EventType:
            self.subscribe(et, callback)

    def unsubscribe_all(self, callback: Callable[[Event], None] | EventObserver) -> None:
        """Remove *callback* from every event type it was registered for."""
        fn = _as_callback(callback)
        for subscribers in self._subscribers.values():
            while fn in subscribers:
                subscribers.remove(fn)

    def publish(self, event: Event) -> None:
        """Dispatch *event* to all registered subscribers."""
        for fn in list(self._subscribers.get(event.event_type, [])):
            try:
                fn(event)
            except Exception:
                logger.exception("Subscriber raised for %s", event.event_type)


class LoggingObserver:
    """Default observer that writes every event to Python's logging module."""

    def on_event(self, event: Event) -> None:
        if event.session_id:
            logger.info("[%s] %s | session=%s", event.event_type.name,
                        event.message or event.payload, event.session_id)
        else:
            logger.info("[%s] %s", event.event_type.name, event.message or event.payload)


# Module-level convenience instance
event_bus = EventBus()
