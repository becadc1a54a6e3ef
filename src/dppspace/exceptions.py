# Copyright (c) DPP Dataspace Contributors. All rights reserved.
# Licensed under the MIT License.
"""Centralized exception hierarchy for dppspace.

All dppspace exceptions inherit from DataspaceError, enabling
consistent error handling across the negotiation, contract and
enforcement layers.
"""

from typing import Optional


class DataspaceError(Exception):
    """Base exception for all dppspace errors."""


class NotFoundError(DataspaceError):
    """A negotiation or agreement lookup missed."""


class NoSuchAgreementError(NotFoundError):
    """Enforcement was asked about an agreement that does not exist."""


class AlreadySettledError(DataspaceError):
    """An agreement has already been settled for this negotiation."""

    def __init__(self, negotiation_id: str, agreement_id: Optional[str] = None) -> None:
        self.negotiation_id = negotiation_id
        self.agreement_id = agreement_id
        detail = f" as {agreement_id}" if agreement_id else ""
        super().__init__(f"Negotiation {negotiation_id} already settled{detail}")


class NegotiationError(DataspaceError):
    """Errors raised by the negotiation protocol."""


class NegotiationExhaustedError(NegotiationError):
    """The counter-offer budget of a negotiation was exceeded."""


class NegotiationExpiredError(NegotiationError):
    """The negotiation deadline passed before the transition was attempted."""


class InvalidTransitionError(NegotiationError):
    """A transition is not allowed from the negotiation's current state."""


class PolicyConflictError(DataspaceError):
    """Two parties settled different policy content for the same negotiation."""

    def __init__(self, negotiation_id: str, local_hash: str, peer_hash: str) -> None:
        self.negotiation_id = negotiation_id
        self.local_hash = local_hash
        self.peer_hash = peer_hash
        super().__init__(
            f"Policy conflict on negotiation {negotiation_id}: "
            f"local {local_hash[:12]} != peer {peer_hash[:12]}"
        )


class PolicyError(DataspaceError):
    """Malformed policy documents or catalogues."""


class StorageError(DataspaceError):
    """Errors related to storage backend operations."""


class TransportError(DataspaceError):
    """Errors raised while delivering negotiation messages."""


class ConfigurationError(DataspaceError):
    """Invalid connector configuration."""


__all__ = [
    "DataspaceError",
    "NotFoundError",
    "NoSuchAgreementError",
    "AlreadySettledError",
    "NegotiationError",
    "NegotiationExhaustedError",
    "NegotiationExpiredError",
    "InvalidTransitionError",
    "PolicyConflictError",
    "PolicyError",
    "StorageError",
    "TransportError",
    "ConfigurationError",
]
