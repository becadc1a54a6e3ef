# Copyright (c) DPP Dataspace Contributors. All rights reserved.
# Licensed under the MIT License.
"""
Negotiation strategies.

A strategy decides how the local party answers an offer it received:
accept it, counter with a new policy, reject it, or return ``None`` to
leave the decision to an explicit API call.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional

from dppspace.contracts.models import Negotiation, NegotiationRole, Offer, RejectReason
from dppspace.policy.catalogue import PolicyCatalogue
from dppspace.policy.comparison import OfferVerdict, assess_offer
from dppspace.policy.model import Action, UsagePolicy

logger = logging.getLogger(__name__)


class ResponseKind(str, Enum):
    ACCEPT = "accept"
    COUNTER = "counter"
    REJECT = "reject"


@dataclass(frozen=True)
class Response:
    """Answer to a received offer."""

    kind: ResponseKind
    policy: Optional[UsagePolicy] = None
    reason: Optional[RejectReason] = None
    detail: str = ""

    @classmethod
    def accept(cls, detail: str = "") -> "Response":
        return cls(kind=ResponseKind.ACCEPT, detail=detail)

    @classmethod
    def counter(cls, policy: UsagePolicy, detail: str = "") -> "Response":
        return cls(kind=ResponseKind.COUNTER, policy=policy, detail=detail)

    @classmethod
    def reject(cls, reason: RejectReason, detail: str = "") -> "Response":
        return cls(kind=ResponseKind.REJECT, reason=reason, detail=detail)


class NegotiationStrategy(ABC):
    """Decides the local answer to an incoming offer."""

    @abstractmethod
    async def respond(self, negotiation: Negotiation, offer: Offer) -> Optional[Response]:
        """Return the answer to ``offer``, or ``None`` to defer."""


class ManualStrategy(NegotiationStrategy):
    """Never answers on its own; the application calls accept/counter/reject."""

    async def respond(self, negotiation: Negotiation, offer: Offer) -> Optional[Response]:
        return None


class CatalogueStrategy(NegotiationStrategy):
    """
    Provider-side strategy backed by an acceptance catalogue.

    Offers within the catalogue policy for the resource are accepted,
    offers with a stricter grantable variant are countered, everything
    else is rejected with a reason code.
    """

    def __init__(self, catalogue: PolicyCatalogue) -> None:
        self._catalogue = catalogue

    @property
    def catalogue(self) -> PolicyCatalogue:
        return self._catalogue

    async def respond(self, negotiation: Negotiation, offer: Offer) -> Optional[Response]:
        acceptance = self._catalogue.lookup(offer.resource_ref)
        if acceptance is None:
            return Response.reject(
                RejectReason.UNKNOWN_RESOURCE,
                f"No acceptance policy for {offer.resource_ref}",
            )

        assessment = assess_offer(offer.policy, acceptance)
        logger.debug(
            "Assessed offer %s on %s: %s (%s)",
            offer.offer_id,
            negotiation.negotiation_id,
            assessment.verdict.value,
            assessment.reason,
        )
        if assessment.verdict == OfferVerdict.ACCEPTABLE:
            return Response.accept(assessment.reason)
        if assessment.verdict == OfferVerdict.NEGOTIABLE and assessment.counter_policy is not None:
            return Response.counter(assessment.counter_policy, assessment.reason)
        if assessment.forbidden_actions:
            return Response.reject(RejectReason.FORBIDDEN_ACTION, assessment.reason)
        return Response.reject(RejectReason.NO_ACCEPTABLE_TERMS, assessment.reason)


class AcceptWhenGranted(NegotiationStrategy):
    """
    Consumer-side strategy: accept a counter-offer when it still grants
    the actions the consumer needs.

    With no required actions, any offer granting at least one permission
    is accepted.
    """

    def __init__(self, required_actions: Iterable[Action] = ()) -> None:
        self._required = frozenset(required_actions)

    async def respond(self, negotiation: Negotiation, offer: Offer) -> Optional[Response]:
        granted = {p.action for p in offer.policy.permissions}
        if not granted:
            return Response.reject(RejectReason.DECLINED, "Offer grants nothing")
        missing = self._required - granted
        if missing:
            names = ", ".join(sorted(a.value for a in missing))
            return Response.reject(RejectReason.DECLINED, f"Offer does not grant {names}")
        return Response.accept()


class RoleStrategy(NegotiationStrategy):
    """Dispatch to one strategy per local role in the negotiation."""

    def __init__(
        self,
        provider: Optional[NegotiationStrategy] = None,
        consumer: Optional[NegotiationStrategy] = None,
    ) -> None:
        self.provider = provider or ManualStrategy()
        self.consumer = consumer or ManualStrategy()

    async def respond(self, negotiation: Negotiation, offer: Offer) -> Optional[Response]:
        if negotiation.role == NegotiationRole.PROVIDER:
            return await self.provider.respond(negotiation, offer)
        return await self.consumer.respond(negotiation, offer)


__all__ = [
    "ResponseKind",
    "Response",
    "NegotiationStrategy",
    "ManualStrategy",
    "CatalogueStrategy",
    "AcceptWhenGranted",
    "RoleStrategy",
]
