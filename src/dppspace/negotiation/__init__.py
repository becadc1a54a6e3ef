"""
Contract negotiation protocol: wire messages, the transition table,
offer strategies and the per-party manager.
"""

from .messages import (
    AcceptMessage,
    NegotiationMessage,
    OfferMessage,
    RejectMessage,
    WithdrawMessage,
    decode_message,
    encode_message,
)
from .state_machine import OPEN_STATES, TRANSITIONS, apply_transition, can_transition
from .strategy import (
    AcceptWhenGranted,
    CatalogueStrategy,
    ManualStrategy,
    NegotiationStrategy,
    Response,
    RoleStrategy,
    ResponseKind,
)
from .manager import NegotiationManager

__all__ = [
    "AcceptMessage",
    "NegotiationMessage",
    "OfferMessage",
    "RejectMessage",
    "WithdrawMessage",
    "decode_message",
    "encode_message",
    "OPEN_STATES",
    "TRANSITIONS",
    "apply_transition",
    "can_transition",
    "AcceptWhenGranted",
    "CatalogueStrategy",
    "ManualStrategy",
    "NegotiationStrategy",
    "Response",
    "RoleStrategy",
    "ResponseKind",
    "NegotiationManager",
]
