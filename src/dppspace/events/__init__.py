"""
Connector events.
"""

from .bus import (
    ALL_EVENT_TYPES,
    EVENT_ACCESS_ALLOWED,
    EVENT_ACCESS_DENIED,
    EVENT_AGREEMENT_SETTLED,
    EVENT_MESSAGE_DROPPED,
    EVENT_NEGOTIATION_TRANSITION,
    EVENT_POLICY_CONFLICT,
    Event,
    EventBus,
    EventHandler,
    InMemoryEventBus,
)

__all__ = [
    "ALL_EVENT_TYPES",
    "EVENT_ACCESS_ALLOWED",
    "EVENT_ACCESS_DENIED",
    "EVENT_AGREEMENT_SETTLED",
    "EVENT_MESSAGE_DROPPED",
    "EVENT_NEGOTIATION_TRANSITION",
    "EVENT_POLICY_CONFLICT",
    "Event",
    "EventBus",
    "EventHandler",
    "InMemoryEventBus",
]
