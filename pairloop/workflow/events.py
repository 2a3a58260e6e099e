"""
Typed event stream for pair-mode runs.

Every component reports outward through an EventBus: the engine, the
consensus runner, the reviewer, web search and the rate limiter. Subscribers
(loggers, UIs) receive events in emission order. A subscriber that raises is
logged and skipped; delivery to the rest continues.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    PHASE_CHANGE = "phase-change"
    REVIEWER_STARTED = "reviewer-started"
    REVIEWER_COMPLETED = "reviewer-completed"
    REVIEWER_TIMEOUT = "reviewer-timeout"
    EXECUTOR_STARTED = "executor-started"
    EXECUTOR_COMPLETED = "executor-completed"
    CONSENSUS_STARTED = "consensus-started"
    CONSENSUS_ROUND = "consensus-round"
    CONSENSUS_ULTRATHINK = "consensus-ultrathink"
    CONSENSUS_COMPLETED = "consensus-completed"
    CONSENSUS_TIMEOUT = "consensus-timeout"
    WEB_SEARCH_STARTED = "web-search-started"
    WEB_SEARCH_COMPLETED = "web-search-completed"
    WEB_SEARCH_FAILED = "web-search-failed"
    RATE_LIMIT_HIT = "rate-limit-hit"
    RATE_LIMIT_RECOVERED = "rate-limit-recovered"
    CIRCUIT_OPEN = "circuit-open"
    CIRCUIT_HALF_OPEN = "circuit-half-open"
    CIRCUIT_CLOSED = "circuit-closed"
    DEGRADED_MODE = "degraded-mode"
    PAUSED = "paused"
    RESUMED = "resumed"
    STOPPED = "stopped"
    ERROR = "error"
    COST_UPDATE = "cost-update"


@dataclass
class PairEvent:
    """One event on the stream. `data` holds the type-specific payload."""
    type: EventType
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def __getitem__(self, key: str) -> Any:
        return self.data[key]


Listener = Callable[[PairEvent], None]


class EventBus:
    """Explicit subscriber list with in-order, synchronous delivery."""

    def __init__(self):
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener. Returns a function that unsubscribes it."""
        self._listeners.append(listener)
        return lambda: self.unsubscribe(listener)

    def unsubscribe(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def emit(self, event_type: EventType, **data) -> PairEvent:
        event = PairEvent(type=event_type, data=data)
        # Copy so a listener may unsubscribe itself during delivery
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception(f"Event listener failed on {event_type.value}")
        return event

    def __len__(self) -> int:
        return len(self._listeners)


class EventRecorder:
    """Listener that keeps every event; handy for tests and post-run summaries."""

    def __init__(self, bus: EventBus = None):
        self.events: list[PairEvent] = []
        if bus is not None:
            bus.subscribe(self)

    def __call__(self, event: PairEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: EventType) -> list[PairEvent]:
        return [e for e in self.events if e.type is event_type]

    def types(self) -> list[EventType]:
        return [e.type for e in self.events]
