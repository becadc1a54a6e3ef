# Copyright (c) DPP Dataspace Contributors. All rights reserved.
# Licensed under the MIT License.
"""
Enforcement Gate

Every release of passport data goes through ``authorize``: the agreement
is resolved from the contract store, an access request is built and the
pure evaluator decides. There is no default policy; an unknown agreement
raises ``NoSuchAgreementError`` and nothing is released.
"""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Union

from dppspace.constants import CONTEXT_NOW
from dppspace.contracts.models import Clock, utcnow
from dppspace.contracts.store import ContractStore
from dppspace.events.bus import (
    EVENT_ACCESS_ALLOWED,
    EVENT_ACCESS_DENIED,
    Event,
    EventBus,
    InMemoryEventBus,
)
from dppspace.exceptions import NoSuchAgreementError, NotFoundError
from dppspace.governance.audit import AuditLog
from dppspace.policy.evaluator import AccessRequest, Decision, DecisionOutcome, Obligation, evaluate
from dppspace.policy.model import Action

logger = logging.getLogger(__name__)

Loader = Callable[[], Union[Any, Awaitable[Any]]]


@dataclass(frozen=True)
class ReleaseResult:
    """Outcome of a gated release."""

    decision: Decision
    data: Any = None

    @property
    def released(self) -> bool:
        return self.decision.allowed

    @property
    def obligations(self) -> tuple[Obligation, ...]:
        return self.decision.obligations


class EnforcementGate:
    """
    Policy enforcement point of one party.

    Agreements are immutable once settled, so concurrent checks read them
    without locking.
    """

    def __init__(
        self,
        store: ContractStore,
        party: str = "",
        audit: Optional[AuditLog] = None,
        events: Optional[EventBus] = None,
        clock: Optional[Clock] = None,
    ):
        self._store = store
        self._party = party
        self._clock = clock or utcnow
        self.audit = audit or AuditLog(clock=self._clock)
        self.events = events or InMemoryEventBus()

    async def authorize(
        self,
        agreement_id: str,
        action: Union[Action, str],
        target: Optional[str] = None,
        context: Optional[dict[str, Any]] = None,
        requesting_party: Optional[str] = None,
    ) -> Decision:
        """Decide an access attempt under a settled agreement.

        Args:
            agreement_id: Agreement the request claims to act under.
            action: Requested action.
            target: Resource class, e.g. a passport field set.
            context: Request attributes for condition evaluation; ``now``
                is injected when absent.
            requesting_party: Party asking for access; when given it must
                be the agreement's consumer.

        Returns:
            The evaluator's ``Decision``.

        Raises:
            NoSuchAgreementError: If no such agreement was settled.
        """
        action = Action(action)
        try:
            agreement = await self._store.get_agreement(agreement_id)
        except NotFoundError as e:
            reason = f"No agreement {agreement_id}"
            self._record(agreement_id, action, target, requesting_party, Decision.deny(reason))
            raise NoSuchAgreementError(reason) from e

        if requesting_party is not None and requesting_party != agreement.consumer:
            decision = Decision.deny(
                f"{requesting_party} is not the consumer of agreement {agreement_id}",
                policy_id=agreement.policy.policy_id,
            )
            self._record(agreement_id, action, target, requesting_party, decision)
            return decision

        ctx = dict(context or {})
        ctx.setdefault(CONTEXT_NOW, self._clock())
        request = AccessRequest(
            requesting_party=requesting_party,
            agreement_id=agreement_id,
            action=action,
            target=target,
            context=ctx,
        )
        decision = evaluate(agreement.policy, request)
        self._record(agreement_id, action, target, requesting_party, decision)
        return decision

    async def release(
        self,
        agreement_id: str,
        action: Union[Action, str],
        target: Optional[str],
        loader: Loader,
        context: Optional[dict[str, Any]] = None,
        requesting_party: Optional[str] = None,
    ) -> ReleaseResult:
        """Run ``loader`` only if the access is allowed.

        ``NoSuchAgreementError`` propagates; the loader never runs then.
        """
        decision = await self.authorize(agreement_id, action, target, context, requesting_party)
        if not decision.allowed:
            return ReleaseResult(decision=decision)
        data = loader()
        if inspect.isawaitable(data):
            data = await data
        return ReleaseResult(decision=decision, data=data)

    def _record(
        self,
        agreement_id: str,
        action: Action,
        target: Optional[str],
        requesting_party: Optional[str],
        decision: Decision,
    ) -> None:
        details = {
            "action": action.value,
            "target": target,
            "requesting_party": requesting_party,
            "matched_rules": list(decision.matched_rules),
            "obligations": [o.duty for o in decision.obligations],
        }
        self.audit.record_decision(
            self._party,
            agreement_id,
            decision.outcome.value,
            decision.reason,
            data=details,
        )
        if decision.outcome == DecisionOutcome.DENY:
            logger.info(
                "Denied %s on %s under %s: %s",
                action.value,
                target or "*",
                agreement_id,
                decision.reason,
            )
            event_type = EVENT_ACCESS_DENIED
        else:
            event_type = EVENT_ACCESS_ALLOWED
        self.events.emit(Event(
            event_type=event_type,
            source=self._party,
            payload={"agreement_id": agreement_id, "outcome": decision.outcome.value, **details},
        ))


__all__ = ["EnforcementGate", "ReleaseResult", "Loader"]
