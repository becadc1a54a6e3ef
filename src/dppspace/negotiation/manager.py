# Copyright (c) DPP Dataspace Contributors. All rights reserved.
# Licensed under the MIT License.
"""
Negotiation Manager

Drives one party's side of every contract negotiation it takes part in.
Local calls (``request``, ``counter``, ``accept``, ``reject``,
``withdraw``) change the local copy and notify the peer; ``receive``
applies the peer's messages. Both paths go through the transition table,
the deadline check and a per-negotiation lock.

Anomalies caused by an unreliable transport (duplicates, late or stale
messages, messages for terminal or unknown negotiations) are logged and
dropped. Misuse of the local API raises. A policy hash mismatch on
acceptance always raises ``PolicyConflictError``.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import AsyncIterator, Optional

from dppspace.constants import (
    DEFAULT_COUNTER_OFFER_BUDGET,
    DEFAULT_NEGOTIATION_TTL_SECONDS,
    MAX_NEGOTIATION_TTL_SECONDS,
)
from dppspace.contracts.models import (
    Agreement,
    Clock,
    Negotiation,
    NegotiationRole,
    NegotiationState,
    Offer,
    RejectReason,
    utcnow,
)
from dppspace.contracts.store import ContractStore
from dppspace.events.bus import (
    EVENT_AGREEMENT_SETTLED,
    EVENT_MESSAGE_DROPPED,
    EVENT_NEGOTIATION_TRANSITION,
    EVENT_POLICY_CONFLICT,
    Event,
    EventBus,
    InMemoryEventBus,
)
from dppspace.exceptions import (
    AlreadySettledError,
    InvalidTransitionError,
    NegotiationError,
    NegotiationExhaustedError,
    NegotiationExpiredError,
    NotFoundError,
    PolicyConflictError,
)
from dppspace.governance.audit import AuditLog
from dppspace.policy.model import UsagePolicy
from dppspace.transport.base import Transport

from .messages import (
    AcceptMessage,
    NegotiationMessage,
    OfferMessage,
    RejectMessage,
    WithdrawMessage,
    encode_message,
)
from .state_machine import OPEN_STATES, apply_transition, can_transition
from .strategy import ManualStrategy, NegotiationStrategy, Response, ResponseKind

logger = logging.getLogger(__name__)


class NegotiationManager:
    """
    Negotiation protocol driver for one party.

    Args:
        party: Identifier of the local connector.
        store: The party's own contract store.
        transport: Transport used to reach peers.
        strategy: Answers received offers; defaults to manual answers.
        audit: Audit sink for every transition.
        events: Event bus notified of transitions and settlements.
        clock: Source of the current time.
        counter_offer_budget: Counter-offers allowed per negotiation.
        negotiation_ttl_seconds: Default and maximum lifetime of a negotiation.
    """

    def __init__(
        self,
        party: str,
        store: ContractStore,
        transport: Transport,
        strategy: Optional[NegotiationStrategy] = None,
        audit: Optional[AuditLog] = None,
        events: Optional[EventBus] = None,
        clock: Optional[Clock] = None,
        counter_offer_budget: int = DEFAULT_COUNTER_OFFER_BUDGET,
        negotiation_ttl_seconds: int = DEFAULT_NEGOTIATION_TTL_SECONDS,
    ):
        if counter_offer_budget < 0:
            raise ValueError("counter_offer_budget must be >= 0")
        if not 0 < negotiation_ttl_seconds <= MAX_NEGOTIATION_TTL_SECONDS:
            raise ValueError(
                f"negotiation_ttl_seconds must be in (0, {MAX_NEGOTIATION_TTL_SECONDS}]"
            )
        self.party = party
        self.store = store
        self.transport = transport
        self.strategy = strategy or ManualStrategy()
        self._clock = clock or utcnow
        self.audit = audit or AuditLog(clock=self._clock)
        self.events = events or InMemoryEventBus()
        self.counter_offer_budget = counter_offer_budget
        self.negotiation_ttl_seconds = negotiation_ttl_seconds
        # negotiation id -> (lock, number of holders and waiters)
        self._locks: dict[str, tuple[asyncio.Lock, int]] = {}

    @asynccontextmanager
    async def _lock(self, negotiation_id: str) -> AsyncIterator[None]:
        """Serialize work on one negotiation; the lock is dropped once idle."""
        lock, users = self._locks.get(negotiation_id, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        self._locks[negotiation_id] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            lock, users = self._locks[negotiation_id]
            if users == 1:
                del self._locks[negotiation_id]
            else:
                self._locks[negotiation_id] = (lock, users - 1)

    async def get(self, negotiation_id: str) -> Negotiation:
        return await self.store.get(negotiation_id)

    # ── Consumer side ─────────────────────────────────────────

    async def initiate(
        self,
        provider: str,
        resource_ref: str,
        ttl_seconds: Optional[int] = None,
    ) -> Negotiation:
        """Create a negotiation for a resource of ``provider``.

        The deadline is fixed here and travels with the first offer.
        """
        if provider == self.party:
            raise NegotiationError("Cannot negotiate with oneself")
        ttl = ttl_seconds if ttl_seconds is not None else self.negotiation_ttl_seconds
        if not 0 < ttl <= MAX_NEGOTIATION_TTL_SECONDS:
            raise NegotiationError(f"Negotiation TTL {ttl}s is out of range")

        now = self._clock()
        negotiation = Negotiation(
            consumer=self.party,
            provider=provider,
            role=NegotiationRole.CONSUMER,
            resource_ref=resource_ref,
            deadline=now + timedelta(seconds=ttl),
            counter_offer_budget=self.counter_offer_budget,
            created_at=now,
        )
        await self.store.put(negotiation)
        logger.info(
            "Initiated negotiation %s with %s for %s (deadline %s)",
            negotiation.negotiation_id,
            provider,
            resource_ref,
            negotiation.deadline.isoformat(),
        )
        return negotiation

    async def send_offer(self, negotiation_id: str, policy: UsagePolicy) -> Offer:
        """Send the opening offer of an initiated negotiation.

        Raises:
            NegotiationExpiredError: If the deadline has already passed.
            InvalidTransitionError: If the negotiation is not ``Initiated``.
        """
        async with self._lock(negotiation_id):
            negotiation = await self.store.get(negotiation_id)
            await self._check_open(negotiation)
            if negotiation.state != NegotiationState.INITIATED:
                raise InvalidTransitionError(
                    f"Negotiation {negotiation_id} already has an offer"
                )
            offer = self._new_offer(negotiation, policy)
            negotiation.offers.append(offer)
            negotiation.mark_seen(f"offer:{offer.offer_id}")
            self._transition(negotiation, NegotiationState.OFFERED, "offer sent")
            await self.store.put(negotiation)
            await self._send(negotiation, OfferMessage(
                negotiation_id=negotiation_id,
                sender=self.party,
                recipient=negotiation.peer,
                offer=offer,
                deadline=negotiation.deadline,
            ))
            return offer

    async def request(
        self,
        provider: str,
        resource_ref: str,
        policy: UsagePolicy,
        ttl_seconds: Optional[int] = None,
    ) -> Negotiation:
        """Initiate a negotiation and send its opening offer."""
        negotiation = await self.initiate(provider, resource_ref, ttl_seconds)
        await self.send_offer(negotiation.negotiation_id, policy)
        return await self.store.get(negotiation.negotiation_id)

    # ── Answers to the peer's last offer ──────────────────────

    async def counter(self, negotiation_id: str, policy: UsagePolicy) -> Offer:
        """Answer the peer's last offer with a new one.

        Raises:
            NegotiationExhaustedError: If the counter-offer budget is used
                up; the negotiation is rejected and the peer notified.
        """
        async with self._lock(negotiation_id):
            negotiation = await self._load_for_answer(negotiation_id)
            return await self._counter(negotiation, policy)

    async def accept(self, negotiation_id: str) -> Agreement:
        """Accept the peer's last offer and settle the agreement."""
        async with self._lock(negotiation_id):
            negotiation = await self._load_for_answer(negotiation_id)
            return await self._accept(negotiation)

    async def reject(
        self,
        negotiation_id: str,
        reason: RejectReason = RejectReason.DECLINED,
        detail: str = "",
    ) -> Negotiation:
        async with self._lock(negotiation_id):
            negotiation = await self._load_for_answer(negotiation_id)
            await self._reject(negotiation, reason, detail)
            return negotiation

    async def withdraw(self, negotiation_id: str, reason: str = "") -> Negotiation:
        """Cancel a non-terminal negotiation.

        The peer is notified unless the negotiation never left ``Initiated``.
        """
        async with self._lock(negotiation_id):
            negotiation = await self.store.get(negotiation_id)
            await self._check_open(negotiation)
            previous = negotiation.state
            self._transition(negotiation, NegotiationState.WITHDRAWN, reason or "withdrawn")
            await self.store.put(negotiation)
            if previous != NegotiationState.INITIATED:
                await self._send(negotiation, WithdrawMessage(
                    negotiation_id=negotiation_id,
                    sender=self.party,
                    recipient=negotiation.peer,
                    reason=reason,
                ))
            return negotiation

    async def expire_overdue(self) -> list[str]:
        """Expire every non-terminal negotiation whose deadline has passed."""
        expired = []
        for snapshot in await self.store.list_negotiations():
            if snapshot.is_terminal or not snapshot.is_overdue(self._clock()):
                continue
            async with self._lock(snapshot.negotiation_id):
                negotiation = await self.store.get(snapshot.negotiation_id)
                if await self._expire_if_overdue(negotiation):
                    expired.append(negotiation.negotiation_id)
        return expired

    # ── Incoming messages ─────────────────────────────────────

    async def receive(self, message: NegotiationMessage) -> Optional[Negotiation]:
        """Apply a message from a peer.

        Returns:
            The updated negotiation, or ``None`` when the message was dropped.

        Raises:
            PolicyConflictError: If an Accept carries a policy hash that
                differs from the local copy of the accepted offer.
        """
        if message.recipient != self.party:
            return self._drop(message, f"addressed to {message.recipient}")

        async with self._lock(message.negotiation_id):
            try:
                negotiation = await self.store.get(message.negotiation_id)
            except NotFoundError:
                if isinstance(message, OfferMessage) and not message.counter:
                    return await self._open_as_provider(message)
                return self._drop(message, "unknown negotiation")

            if message.sender != negotiation.peer:
                return self._drop(message, f"sender is not the peer {negotiation.peer}")
            if negotiation.has_seen(message.dedupe_key()):
                return self._drop(message, "duplicate")
            if negotiation.is_terminal:
                return self._drop(message, f"negotiation is {negotiation.state.value}")
            if await self._expire_if_overdue(negotiation):
                self._drop(message, "deadline passed")
                return negotiation

            if isinstance(message, OfferMessage):
                return await self._on_offer(negotiation, message)
            if isinstance(message, AcceptMessage):
                return await self._on_accept(negotiation, message)
            if isinstance(message, RejectMessage):
                return await self._on_reject(negotiation, message)
            return await self._on_withdraw(negotiation, message)

    async def _open_as_provider(self, message: OfferMessage) -> Optional[Negotiation]:
        offer = message.offer
        if offer.proposer != message.sender or offer.negotiation_id != message.negotiation_id:
            return self._drop(message, "offer does not belong to its envelope")

        now = self._clock()
        cap = now + timedelta(seconds=self.negotiation_ttl_seconds)
        negotiation = Negotiation(
            negotiation_id=message.negotiation_id,
            consumer=message.sender,
            provider=self.party,
            role=NegotiationRole.PROVIDER,
            resource_ref=offer.resource_ref,
            deadline=min(message.deadline, cap),
            counter_offer_budget=self.counter_offer_budget,
            created_at=now,
        )
        negotiation.mark_seen(message.dedupe_key())
        if await self._expire_if_overdue(negotiation):
            logger.warning(
                "Offer %s for negotiation %s arrived after its deadline",
                offer.offer_id,
                negotiation.negotiation_id,
            )
            return negotiation

        negotiation.offers.append(offer)
        self._transition(negotiation, NegotiationState.OFFERED, f"offer {offer.offer_id} received")
        await self.store.put(negotiation)
        await self._respond(negotiation, offer)
        return await self.store.get(negotiation.negotiation_id)

    async def _on_offer(self, negotiation: Negotiation, message: OfferMessage) -> Optional[Negotiation]:
        offer = message.offer
        if offer.proposer != message.sender or offer.negotiation_id != negotiation.negotiation_id:
            return self._drop(message, "offer does not belong to its envelope")
        if not self._awaiting_peer(negotiation):
            return self._drop(message, "no own offer is pending")

        negotiation.mark_seen(message.dedupe_key())
        if negotiation.counter_offers + 1 > negotiation.counter_offer_budget:
            await self._exhaust(negotiation, offer.offer_id)
            return negotiation

        negotiation.offers.append(offer)
        self._transition(
            negotiation,
            NegotiationState.COUNTER_OFFERED,
            f"counter-offer {offer.offer_id} received",
        )
        await self.store.put(negotiation)
        await self._respond(negotiation, offer)
        return await self.store.get(negotiation.negotiation_id)

    async def _on_accept(self, negotiation: Negotiation, message: AcceptMessage) -> Optional[Negotiation]:
        offer = negotiation.last_offer
        if (
            offer is None
            or offer.offer_id != message.offer_id
            or offer.proposer != self.party
            or negotiation.state not in OPEN_STATES
        ):
            return self._drop(message, f"offer {message.offer_id} is not the pending own offer")

        local_hash = offer.policy.content_hash()
        if local_hash != message.policy_hash:
            self._report_conflict(negotiation, local_hash, message.policy_hash)
            raise PolicyConflictError(negotiation.negotiation_id, local_hash, message.policy_hash)

        now = self._clock()
        try:
            agreement = await self.store.settle_agreement(
                negotiation.negotiation_id,
                offer.policy,
                agreement_id=message.agreement_id,
                signed_at=now,
            )
            self._settled(agreement)
        except AlreadySettledError:
            try:
                agreement = await self.store.reconcile(negotiation.negotiation_id, message.policy_hash)
            except PolicyConflictError as e:
                self._report_conflict(negotiation, e.local_hash, e.peer_hash)
                raise

        negotiation.agreement_id = agreement.agreement_id
        negotiation.mark_seen(message.dedupe_key())
        self._transition(
            negotiation,
            NegotiationState.ACCEPTED,
            f"peer accepted offer {offer.offer_id}",
        )
        await self.store.put(negotiation)
        return negotiation

    async def _on_reject(self, negotiation: Negotiation, message: RejectMessage) -> Optional[Negotiation]:
        if message.offer_id is not None and negotiation.find_offer(message.offer_id) is None:
            return self._drop(message, f"offer {message.offer_id} is unknown")
        negotiation.mark_seen(message.dedupe_key())
        negotiation.reject_reason = message.reason
        self._transition(
            negotiation,
            NegotiationState.REJECTED,
            f"peer rejected: {message.reason.value} {message.detail}".rstrip(),
        )
        await self.store.put(negotiation)
        return negotiation

    async def _on_withdraw(self, negotiation: Negotiation, message: WithdrawMessage) -> Optional[Negotiation]:
        negotiation.mark_seen(message.dedupe_key())
        self._transition(
            negotiation,
            NegotiationState.WITHDRAWN,
            f"peer withdrew {message.reason}".rstrip(),
        )
        await self.store.put(negotiation)
        return negotiation

    # ── Shared steps (caller holds the lock) ──────────────────

    async def _respond(self, negotiation: Negotiation, offer: Offer) -> None:
        response: Optional[Response] = await self.strategy.respond(negotiation, offer)
        if response is None:
            return
        if response.kind == ResponseKind.ACCEPT:
            await self._accept(negotiation)
        elif response.kind == ResponseKind.COUNTER:
            try:
                await self._counter(negotiation, response.policy)
            except NegotiationExhaustedError:
                logger.info("Negotiation %s ran out of counter-offers", negotiation.negotiation_id)
        else:
            await self._reject(negotiation, response.reason or RejectReason.DECLINED, response.detail)

    async def _counter(self, negotiation: Negotiation, policy: UsagePolicy) -> Offer:
        if negotiation.counter_offers + 1 > negotiation.counter_offer_budget:
            await self._exhaust(negotiation, None)
            raise NegotiationExhaustedError(
                f"Negotiation {negotiation.negotiation_id} exceeded "
                f"{negotiation.counter_offer_budget} counter-offers"
            )
        offer = self._new_offer(negotiation, policy)
        negotiation.offers.append(offer)
        negotiation.mark_seen(f"offer:{offer.offer_id}")
        self._transition(negotiation, NegotiationState.COUNTER_OFFERED, f"counter-offer {offer.offer_id} sent")
        await self.store.put(negotiation)
        await self._send(negotiation, OfferMessage(
            negotiation_id=negotiation.negotiation_id,
            sender=self.party,
            recipient=negotiation.peer,
            offer=offer,
            deadline=negotiation.deadline,
            counter=True,
        ))
        return offer

    async def _accept(self, negotiation: Negotiation) -> Agreement:
        offer = negotiation.last_offer
        if offer is None:
            raise InvalidTransitionError(f"Negotiation {negotiation.negotiation_id} has no offer")
        if not can_transition(negotiation.state, NegotiationState.ACCEPTED):
            raise InvalidTransitionError(
                f"Negotiation {negotiation.negotiation_id} cannot be accepted "
                f"in state {negotiation.state.value}"
            )

        agreement = await self.store.settle_agreement(
            negotiation.negotiation_id,
            offer.policy,
            signed_at=self._clock(),
        )
        negotiation.agreement_id = agreement.agreement_id
        self._transition(negotiation, NegotiationState.ACCEPTED, f"accepted offer {offer.offer_id}")
        await self.store.put(negotiation)
        self._settled(agreement)
        await self._send(negotiation, AcceptMessage(
            negotiation_id=negotiation.negotiation_id,
            sender=self.party,
            recipient=negotiation.peer,
            offer_id=offer.offer_id,
            agreement_id=agreement.agreement_id,
            policy_hash=agreement.policy_hash(),
        ))
        return agreement

    async def _reject(self, negotiation: Negotiation, reason: RejectReason, detail: str = "") -> None:
        offer = negotiation.last_offer
        negotiation.reject_reason = reason
        self._transition(negotiation, NegotiationState.REJECTED, f"{reason.value} {detail}".rstrip())
        await self.store.put(negotiation)
        await self._send(negotiation, RejectMessage(
            negotiation_id=negotiation.negotiation_id,
            sender=self.party,
            recipient=negotiation.peer,
            offer_id=offer.offer_id if offer else None,
            reason=reason,
            detail=detail,
        ))

    async def _exhaust(self, negotiation: Negotiation, offer_id: Optional[str]) -> None:
        negotiation.reject_reason = RejectReason.NEGOTIATION_EXHAUSTED
        self._transition(
            negotiation,
            NegotiationState.REJECTED,
            f"counter-offer budget of {negotiation.counter_offer_budget} exceeded",
        )
        await self.store.put(negotiation)
        await self._send(negotiation, RejectMessage(
            negotiation_id=negotiation.negotiation_id,
            sender=self.party,
            recipient=negotiation.peer,
            offer_id=offer_id,
            reason=RejectReason.NEGOTIATION_EXHAUSTED,
        ))

    async def _load_for_answer(self, negotiation_id: str) -> Negotiation:
        negotiation = await self.store.get(negotiation_id)
        await self._check_open(negotiation)
        if negotiation.state not in OPEN_STATES or self._awaiting_peer(negotiation):
            raise InvalidTransitionError(
                f"Negotiation {negotiation_id} has no pending offer from {negotiation.peer}"
            )
        return negotiation

    async def _check_open(self, negotiation: Negotiation) -> None:
        """Raise unless the negotiation can still change state."""
        if negotiation.is_terminal:
            raise InvalidTransitionError(
                f"Negotiation {negotiation.negotiation_id} is {negotiation.state.value}"
            )
        if await self._expire_if_overdue(negotiation):
            raise NegotiationExpiredError(
                f"Negotiation {negotiation.negotiation_id} expired at "
                f"{negotiation.deadline.isoformat()}"
            )

    async def _expire_if_overdue(self, negotiation: Negotiation) -> bool:
        if negotiation.is_terminal or not negotiation.is_overdue(self._clock()):
            return False
        self._transition(
            negotiation,
            NegotiationState.EXPIRED,
            f"deadline {negotiation.deadline.isoformat()} passed",
        )
        await self.store.put(negotiation)
        return True

    def _awaiting_peer(self, negotiation: Negotiation) -> bool:
        """Whether the last offer is our own and the peer must answer it."""
        offer = negotiation.last_offer
        return (
            negotiation.state in OPEN_STATES
            and offer is not None
            and offer.proposer == self.party
        )

    def _new_offer(self, negotiation: Negotiation, policy: UsagePolicy) -> Offer:
        return Offer(
            negotiation_id=negotiation.negotiation_id,
            proposer=self.party,
            policy=policy,
            resource_ref=negotiation.resource_ref,
            created_at=self._clock(),
        )

    def _transition(self, negotiation: Negotiation, to_state: NegotiationState, reason: str) -> None:
        record = apply_transition(negotiation, to_state, reason, at=self._clock())
        self.audit.record_transition(
            self.party,
            negotiation.negotiation_id,
            record.from_state.value,
            record.to_state.value,
            reason=reason,
            data={"role": negotiation.role.value, "offers": len(negotiation.offers)},
        )
        logger.info(
            "Negotiation %s: %s -> %s (%s)",
            negotiation.negotiation_id,
            record.from_state.value,
            record.to_state.value,
            reason,
        )
        self.events.emit(Event(
            event_type=EVENT_NEGOTIATION_TRANSITION,
            source=self.party,
            payload={
                "negotiation_id": negotiation.negotiation_id,
                "from_state": record.from_state.value,
                "to_state": record.to_state.value,
                "reason": reason,
            },
        ))

    def _settled(self, agreement: Agreement) -> None:
        self.events.emit(Event(
            event_type=EVENT_AGREEMENT_SETTLED,
            source=self.party,
            payload={
                "agreement_id": agreement.agreement_id,
                "negotiation_id": agreement.negotiation_id,
                "policy_hash": agreement.policy_hash(),
            },
        ))

    def _report_conflict(self, negotiation: Negotiation, local_hash: str, peer_hash: str) -> None:
        reason = f"local policy {local_hash[:12]} differs from peer {peer_hash[:12]}"
        logger.error("Policy conflict on negotiation %s: %s", negotiation.negotiation_id, reason)
        self.audit.record_conflict(
            self.party,
            negotiation.negotiation_id,
            reason,
            data={"local_hash": local_hash, "peer_hash": peer_hash},
        )
        self.events.emit(Event(
            event_type=EVENT_POLICY_CONFLICT,
            source=self.party,
            payload={
                "negotiation_id": negotiation.negotiation_id,
                "local_hash": local_hash,
                "peer_hash": peer_hash,
            },
        ))

    def _drop(self, message: NegotiationMessage, reason: str) -> None:
        logger.warning(
            "Dropped %s message %s for negotiation %s from %s: %s",
            message.type,
            message.message_id,
            message.negotiation_id,
            message.sender,
            reason,
        )
        self.events.emit(Event(
            event_type=EVENT_MESSAGE_DROPPED,
            source=self.party,
            payload={
                "negotiation_id": message.negotiation_id,
                "message_type": message.type,
                "sender": message.sender,
                "reason": reason,
            },
        ))

    async def _send(self, negotiation: Negotiation, message: NegotiationMessage) -> None:
        await self.transport.send(negotiation.peer, encode_message(message))


__all__ = ["NegotiationManager"]
