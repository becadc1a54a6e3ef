"""
In-process event bus for negotiation and enforcement observers.

Data-serving layers and dashboards subscribe with glob-style patterns
instead of polling the contract store.
"""

from __future__ import annotations

import fnmatch
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

logger = logging.getLogger(__name__)

# Standard event types
EVENT_NEGOTIATION_TRANSITION = "negotiation.transition"
EVENT_AGREEMENT_SETTLED = "agreement.settled"
EVENT_ACCESS_ALLOWED = "access.allowed"
EVENT_ACCESS_DENIED = "access.denied"
EVENT_POLICY_CONFLICT = "policy.conflict"
EVENT_MESSAGE_DROPPED = "negotiation.message_dropped"

ALL_EVENT_TYPES = [
    EVENT_NEGOTIATION_TRANSITION,
    EVENT_AGREEMENT_SETTLED,
    EVENT_ACCESS_ALLOWED,
    EVENT_ACCESS_DENIED,
    EVENT_POLICY_CONFLICT,
    EVENT_MESSAGE_DROPPED,
]


@dataclass
class Event:
    """An event emitted by a connector."""

    event_type: str
    source: str
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    event_id: str = field(default_factory=lambda: f"evt-{time.monotonic_ns()}")


EventHandler = Callable[[Event], Any]


class EventBus(ABC):
    """Abstract base class for event bus implementations."""

    @abstractmethod
    def emit(self, event: Event) -> None:
        """Emit an event to all matching subscribers."""

    @abstractmethod
    def subscribe(self, pattern: str, handler: EventHandler) -> None:
        """Subscribe a handler to events matching a glob-style pattern.

        Args:
            pattern: Glob-style pattern (e.g., ``access.*``, ``*``).
            handler: Callable invoked with the matching Event.
        """

    @abstractmethod
    def unsubscribe(self, handler: EventHandler) -> None:
        """Remove a handler from all subscriptions."""


class InMemoryEventBus(EventBus):
    """Synchronous in-process event bus with glob-style pattern matching.

    A failing handler is logged and skipped; it never aborts the
    negotiation or enforcement step that emitted the event.
    """

    def __init__(self) -> None:
        self._subscriptions: list[tuple[str, EventHandler]] = []

    def emit(self, event: Event) -> None:
        for pattern, handler in list(self._subscriptions):
            if fnmatch.fnmatch(event.event_type, pattern):
                try:
                    handler(event)
                except Exception:
                    logger.exception("Event handler failed for %s", event.event_type)

    def subscribe(self, pattern: str, handler: EventHandler) -> None:
        self._subscriptions.append((pattern, handler))

    def unsubscribe(self, handler: EventHandler) -> None:
        self._subscriptions = [
            (p, h) for p, h in self._subscriptions if h is not handler
        ]
