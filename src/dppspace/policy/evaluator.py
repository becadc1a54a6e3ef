"""
Policy Evaluator

Pure, deterministic evaluation of a usage policy against an access request.

1. Rules whose target and condition match the request are collected.
2. A matching prohibition for the requested action denies (deny-overrides).
3. Otherwise a matching permission allows, surfacing matching obligations.
4. Otherwise the request is denied (default deny).

The evaluator never reads a clock. Time-bound conditions compare against
``request.context["now"]``, which the caller supplies.
"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from .model import Action, PolicyRule, RuleKind, UsagePolicy


class DecisionOutcome(str, Enum):
    """Possible outcomes of a policy evaluation."""

    ALLOW = "ALLOW"
    DENY = "DENY"
    ALLOW_WITH_OBLIGATIONS = "ALLOW_WITH_OBLIGATIONS"


class AccessRequest(BaseModel):
    """An access attempt, built by the enforcement gate at evaluation time."""

    model_config = ConfigDict(frozen=True)

    requesting_party: Optional[str] = None
    agreement_id: Optional[str] = None
    action: Action
    target: Optional[str] = None
    context: dict[str, Any] = Field(default_factory=dict)


class Obligation(BaseModel):
    """A duty the caller must discharge after an allowed access."""

    model_config = ConfigDict(frozen=True)

    duty: str
    action: Action
    target: Optional[str] = None
    parameters: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_rule(cls, rule: PolicyRule) -> "Obligation":
        return cls(
            duty=rule.duty or "",
            action=rule.action,
            target=rule.target,
            parameters=dict(rule.parameters),
        )


class Decision(BaseModel):
    """Result of policy evaluation."""

    model_config = ConfigDict(frozen=True)

    outcome: DecisionOutcome
    obligations: tuple[Obligation, ...] = Field(default_factory=tuple)
    reason: str
    matched_rules: tuple[str, ...] = Field(default_factory=tuple)
    policy_id: Optional[str] = None

    @property
    def allowed(self) -> bool:
        return self.outcome != DecisionOutcome.DENY

    @classmethod
    def deny(cls, reason: str, policy_id: Optional[str] = None, matched_rules: tuple[str, ...] = ()) -> "Decision":
        return cls(
            outcome=DecisionOutcome.DENY,
            reason=reason,
            policy_id=policy_id,
            matched_rules=matched_rules,
        )


def evaluate(policy: UsagePolicy, request: AccessRequest) -> Decision:
    """Evaluate ``request`` against ``policy``.

    Args:
        policy: The usage policy, typically taken from a settled agreement.
        request: The access attempt.

    Returns:
        A ``Decision``. Identical inputs always yield an identical decision.
    """
    matching = [
        rule for rule in policy.rules
        if rule.action == request.action and rule.matches(request.target, request.context)
    ]

    prohibitions = [r for r in matching if r.kind == RuleKind.PROHIBITION]
    if prohibitions:
        labels = tuple(sorted(r.label() for r in prohibitions))
        return Decision.deny(
            reason=f"{request.action.value} on '{request.target or '*'}' prohibited by {', '.join(labels)}",
            policy_id=policy.policy_id,
            matched_rules=labels,
        )

    permissions = [r for r in matching if r.kind == RuleKind.PERMISSION]
    if not permissions:
        return Decision.deny(
            reason=f"No permission grants {request.action.value} on '{request.target or '*'}'",
            policy_id=policy.policy_id,
        )

    duties = sorted(
        (r for r in matching if r.kind == RuleKind.OBLIGATION),
        key=lambda r: r.canonical(),
    )
    labels = tuple(sorted(r.label() for r in permissions + duties))
    if duties:
        return Decision(
            outcome=DecisionOutcome.ALLOW_WITH_OBLIGATIONS,
            obligations=tuple(Obligation.from_rule(r) for r in duties),
            reason=(
                f"{request.action.value} on '{request.target or '*'}' permitted with "
                f"{len(duties)} obligation(s)"
            ),
            matched_rules=labels,
            policy_id=policy.policy_id,
        )
    return Decision(
        outcome=DecisionOutcome.ALLOW,
        reason=f"{request.action.value} on '{request.target or '*'}' permitted",
        matched_rules=labels,
        policy_id=policy.policy_id,
    )


class PolicyEvaluator:
    """
    Stateless evaluator bound to one policy.

    Convenience wrapper for callers that check many requests against the
    same agreement; holds no mutable state, so it is safe to share.
    """

    def __init__(self, policy: UsagePolicy) -> None:
        self._policy = policy

    @property
    def policy(self) -> UsagePolicy:
        return self._policy

    def evaluate(self, request: AccessRequest) -> Decision:
        return evaluate(self._policy, request)

    def check(
        self,
        action: Action,
        target: Optional[str] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> Decision:
        return evaluate(
            self._policy,
            AccessRequest(action=action, target=target, context=context or {}),
        )
