# Copyright (c) DPP Dataspace Contributors. All rights reserved.
# Licensed under the MIT License.
"""
Negotiation state machine.

The transition table is the single authority on which state changes are
legal. Terminal states have no outgoing transitions and nothing leads
back into ``Initiated``.
"""

from datetime import datetime
from typing import Optional

from dppspace.contracts.models import (
    Negotiation,
    NegotiationState,
    TransitionRecord,
    utcnow,
)
from dppspace.exceptions import InvalidTransitionError

_OPEN_EXITS = frozenset({
    NegotiationState.ACCEPTED,
    NegotiationState.REJECTED,
    NegotiationState.WITHDRAWN,
    NegotiationState.EXPIRED,
})

TRANSITIONS: dict[NegotiationState, frozenset[NegotiationState]] = {
    NegotiationState.INITIATED: frozenset({
        NegotiationState.OFFERED,
        NegotiationState.WITHDRAWN,
        NegotiationState.EXPIRED,
    }),
    NegotiationState.OFFERED: _OPEN_EXITS | {NegotiationState.COUNTER_OFFERED},
    NegotiationState.COUNTER_OFFERED: _OPEN_EXITS | {NegotiationState.COUNTER_OFFERED},
    NegotiationState.ACCEPTED: frozenset(),
    NegotiationState.REJECTED: frozenset(),
    NegotiationState.WITHDRAWN: frozenset(),
    NegotiationState.EXPIRED: frozenset(),
}

# States in which the last offer is waiting for an answer.
OPEN_STATES = frozenset({NegotiationState.OFFERED, NegotiationState.COUNTER_OFFERED})


def can_transition(from_state: NegotiationState, to_state: NegotiationState) -> bool:
    return to_state in TRANSITIONS[from_state]


def apply_transition(
    negotiation: Negotiation,
    to_state: NegotiationState,
    reason: str = "",
    at: Optional[datetime] = None,
) -> TransitionRecord:
    """Move a negotiation copy to ``to_state`` and record the change.

    Raises:
        InvalidTransitionError: If the table does not allow the change.
    """
    from_state = negotiation.state
    if not can_transition(from_state, to_state):
        raise InvalidTransitionError(
            f"Negotiation {negotiation.negotiation_id}: "
            f"{from_state.value} -> {to_state.value} is not allowed"
        )
    record = TransitionRecord(
        from_state=from_state,
        to_state=to_state,
        reason=reason,
        at=at or utcnow(),
    )
    negotiation.state = to_state
    negotiation.transitions.append(record)
    return record


__all__ = [
    "TRANSITIONS",
    "OPEN_STATES",
    "can_transition",
    "apply_transition",
]
