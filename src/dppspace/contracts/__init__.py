"""
Contract records: offers, negotiations, agreements and their store.
"""

from .models import (
    Agreement,
    Negotiation,
    NegotiationRole,
    NegotiationState,
    Offer,
    Party,
    RejectReason,
    TERMINAL_STATES,
    TransitionRecord,
    utcnow,
)
from .store import ContractStore, reconcile_agreements

__all__ = [
    "Agreement",
    "Negotiation",
    "NegotiationRole",
    "NegotiationState",
    "Offer",
    "Party",
    "RejectReason",
    "TERMINAL_STATES",
    "TransitionRecord",
    "utcnow",
    "ContractStore",
    "reconcile_agreements",
]
