"""
Contract Entities

Offers, negotiations and agreements as held in one party's local store.
Each side of a negotiation keeps its own copy; copies converge only
through message content, never through shared objects.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Callable, Optional
import hashlib
import json
import uuid

from pydantic import AwareDatetime, BaseModel, ConfigDict, Field, StringConstraints

from dppspace.policy.model import UsagePolicy

# Opaque, stable identifier of a stakeholder connector.
Party = Annotated[str, StringConstraints(min_length=1, pattern=r"^\S+$")]

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def new_negotiation_id() -> str:
    return f"neg-{uuid.uuid4().hex}"


def new_offer_id() -> str:
    return f"off-{uuid.uuid4().hex}"


def new_agreement_id() -> str:
    return f"agr-{uuid.uuid4().hex}"


class NegotiationState(str, Enum):
    """States of a contract negotiation."""

    INITIATED = "Initiated"
    OFFERED = "Offered"
    COUNTER_OFFERED = "CounterOffered"
    ACCEPTED = "Accepted"
    REJECTED = "Rejected"
    WITHDRAWN = "Withdrawn"
    EXPIRED = "Expired"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({
    NegotiationState.ACCEPTED,
    NegotiationState.REJECTED,
    NegotiationState.WITHDRAWN,
    NegotiationState.EXPIRED,
})


class NegotiationRole(str, Enum):
    """Which side of the negotiation the local copy belongs to."""

    CONSUMER = "consumer"
    PROVIDER = "provider"


class RejectReason(str, Enum):
    """Reason codes carried by Reject messages and rejected negotiations."""

    NEGOTIATION_EXHAUSTED = "NegotiationExhausted"
    FORBIDDEN_ACTION = "ForbiddenAction"
    NO_ACCEPTABLE_TERMS = "NoAcceptableTerms"
    UNKNOWN_RESOURCE = "UnknownResource"
    DECLINED = "Declined"


class Offer(BaseModel):
    """A policy proposal. Immutable once sent."""

    model_config = ConfigDict(frozen=True)

    offer_id: str = Field(default_factory=new_offer_id)
    negotiation_id: str
    proposer: Party
    policy: UsagePolicy
    resource_ref: str
    created_at: AwareDatetime = Field(default_factory=utcnow)


class TransitionRecord(BaseModel):
    """One state change in a negotiation's local history."""

    from_state: NegotiationState
    to_state: NegotiationState
    reason: str = ""
    at: datetime


class Negotiation(BaseModel):
    """
    One party's local view of a negotiation.

    ``offers`` is append-only. ``seen_messages`` records processed message
    keys so duplicated deliveries never re-trigger a transition.
    """

    negotiation_id: str = Field(default_factory=new_negotiation_id)
    consumer: Party
    provider: Party
    role: NegotiationRole
    resource_ref: str
    state: NegotiationState = NegotiationState.INITIATED

    offers: list[Offer] = Field(default_factory=list)
    deadline: datetime
    counter_offer_budget: int = Field(default=5, ge=0)

    agreement_id: Optional[str] = None
    reject_reason: Optional[RejectReason] = None
    seen_messages: list[str] = Field(default_factory=list)
    transitions: list[TransitionRecord] = Field(default_factory=list)

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def local_party(self) -> str:
        return self.consumer if self.role == NegotiationRole.CONSUMER else self.provider

    @property
    def peer(self) -> str:
        return self.provider if self.role == NegotiationRole.CONSUMER else self.consumer

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @property
    def last_offer(self) -> Optional[Offer]:
        return self.offers[-1] if self.offers else None

    @property
    def counter_offers(self) -> int:
        """Number of offers after the opening one."""
        return max(len(self.offers) - 1, 0)

    def is_overdue(self, now: datetime) -> bool:
        return now > self.deadline

    def has_seen(self, key: str) -> bool:
        return key in self.seen_messages

    def mark_seen(self, key: str) -> None:
        if key not in self.seen_messages:
            self.seen_messages.append(key)

    def find_offer(self, offer_id: str) -> Optional[Offer]:
        for offer in self.offers:
            if offer.offer_id == offer_id:
                return offer
        return None


class Agreement(BaseModel):
    """
    The settled outcome of a negotiation.

    Immutable and authoritative for every enforcement decision tied to the
    negotiation. The policy is held by value.
    """

    model_config = ConfigDict(frozen=True)

    agreement_id: str = Field(default_factory=new_agreement_id)
    negotiation_id: str
    policy: UsagePolicy
    consumer: Party
    provider: Party
    resource_ref: str
    signed_at: datetime = Field(default_factory=utcnow)

    def policy_hash(self) -> str:
        return self.policy.content_hash()

    def content_hash(self) -> str:
        """SHA-256 binding the agreement identity to its policy content."""
        canonical = json.dumps(
            {
                "agreement_id": self.agreement_id,
                "negotiation_id": self.negotiation_id,
                "consumer": self.consumer,
                "provider": self.provider,
                "resource_ref": self.resource_ref,
                "policy": self.policy_hash(),
            },
            sort_keys=True,
        )
        return hashlib.sha256(canonical.encode()).hexdigest()
