"""
Governance: the structured audit sink for negotiation and enforcement.
"""

from .audit import (
    AuditEntry,
    AuditLog,
    EVENT_ACCESS_DECISION,
    EVENT_POLICY_CONFLICT,
    EVENT_TRANSITION,
)

__all__ = [
    "AuditEntry",
    "AuditLog",
    "EVENT_ACCESS_DECISION",
    "EVENT_POLICY_CONFLICT",
    "EVENT_TRANSITION",
]
