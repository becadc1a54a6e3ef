"""
Offer Assessment

Compares a proposed usage policy against the policy a provider is willing
to grant and decides whether the proposal can be accepted as is, should be
countered with a stricter policy, or cannot be negotiated at all.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from .model import Action, Condition, PolicyRule, RuleKind, UsagePolicy


class OfferVerdict(str, Enum):
    """Outcome of assessing a proposed policy."""

    ACCEPTABLE = "acceptable"
    NEGOTIABLE = "negotiable"
    FORBIDDEN = "forbidden"


class OfferAssessment(BaseModel):
    """Result of ``assess_offer``."""

    model_config = ConfigDict(frozen=True)

    verdict: OfferVerdict
    reason: str
    counter_policy: Optional[UsagePolicy] = None
    forbidden_actions: tuple[Action, ...] = Field(default_factory=tuple)
    gaps: tuple[str, ...] = Field(default_factory=tuple)


def _is_unconditional(rule: PolicyRule) -> bool:
    return rule.condition is None or not rule.condition.constraints


def _targets_overlap(a: Optional[str], b: Optional[str]) -> bool:
    return a is None or b is None or a == b


def _condition_implies(stricter: Optional[Condition], weaker: Optional[Condition]) -> bool:
    if weaker is None or not weaker.constraints:
        return True
    if stricter is None:
        return False
    return stricter.implies(weaker)


def _hard_prohibitions(action: Action, target: Optional[str], acceptance: UsagePolicy) -> list[PolicyRule]:
    return [
        r for r in acceptance.prohibitions
        if r.action == action and _targets_overlap(r.target, target) and _is_unconditional(r)
    ]


def _soft_prohibitions(action: Action, target: Optional[str], acceptance: UsagePolicy) -> list[PolicyRule]:
    return [
        r for r in acceptance.prohibitions
        if r.action == action and _targets_overlap(r.target, target) and not _is_unconditional(r)
    ]


def _required_duties(action: Action, target: Optional[str], acceptance: UsagePolicy) -> list[PolicyRule]:
    return [o for o in acceptance.obligations if o.action == action and o.applies_to(target)]


def _covering_permission(rule: PolicyRule, acceptance: UsagePolicy) -> Optional[PolicyRule]:
    for granted in acceptance.permissions:
        if (
            granted.action == rule.action
            and granted.applies_to(rule.target)
            and _condition_implies(rule.condition, granted.condition)
        ):
            return granted
    return None


def _carries_duty(proposed: UsagePolicy, duty: PolicyRule, target: Optional[str]) -> bool:
    return any(
        o.action == duty.action
        and o.duty == duty.duty
        and o.parameters == duty.parameters
        and o.applies_to(target)
        for o in proposed.obligations
    )


def _carries_prohibition(proposed: UsagePolicy, prohibition: PolicyRule, target: Optional[str]) -> bool:
    # A carried prohibition may be broader (weaker condition) than required.
    return any(
        q.action == prohibition.action
        and q.applies_to(target)
        and _condition_implies(prohibition.condition, q.condition)
        for q in proposed.prohibitions
    )


def assess_offer(proposed: UsagePolicy, acceptance: UsagePolicy) -> OfferAssessment:
    """Decide how a provider should answer a proposed policy.

    Args:
        proposed: The policy carried by the incoming offer.
        acceptance: What the provider is willing to grant for the resource.

    Returns:
        ``ACCEPTABLE`` when the proposal is no more permissive than
        ``acceptance``; ``NEGOTIABLE`` with a counter policy when a
        stricter variant exists; ``FORBIDDEN`` otherwise.
    """
    requested = proposed.permissions
    if not requested:
        return OfferAssessment(
            verdict=OfferVerdict.FORBIDDEN,
            reason=f"Policy {proposed.policy_id} requests no permission",
        )

    forbidden = sorted(
        {p.action for p in requested if _hard_prohibitions(p.action, p.target, acceptance)},
        key=lambda a: a.value,
    )
    if forbidden:
        return OfferAssessment(
            verdict=OfferVerdict.FORBIDDEN,
            reason=f"Requested action(s) prohibited: {', '.join(a.value for a in forbidden)}",
            forbidden_actions=tuple(forbidden),
        )

    gaps: list[str] = []
    for permission in requested:
        if _covering_permission(permission, acceptance) is None:
            gaps.append(f"{permission.label()} is not granted")
            continue
        for duty in _required_duties(permission.action, permission.target, acceptance):
            if not _carries_duty(proposed, duty, permission.target):
                gaps.append(f"{permission.label()} lacks duty '{duty.duty}'")
        for prohibition in _soft_prohibitions(permission.action, permission.target, acceptance):
            if not _carries_prohibition(proposed, prohibition, permission.target):
                gaps.append(f"{permission.label()} lacks {prohibition.label()}")

    if not gaps:
        return OfferAssessment(
            verdict=OfferVerdict.ACCEPTABLE,
            reason=f"Policy {proposed.policy_id} is within the acceptance policy",
        )

    counter = build_counter_policy(proposed, acceptance)
    if counter is None:
        return OfferAssessment(
            verdict=OfferVerdict.FORBIDDEN,
            reason="Nothing grantable for the requested targets",
            gaps=tuple(gaps),
        )
    return OfferAssessment(
        verdict=OfferVerdict.NEGOTIABLE,
        reason="; ".join(gaps),
        counter_policy=counter,
        gaps=tuple(gaps),
    )


def build_counter_policy(proposed: UsagePolicy, acceptance: UsagePolicy) -> Optional[UsagePolicy]:
    """Build the strictest grantable variant of ``proposed``.

    For every requested target the counter grants the requested actions the
    provider allows, or, when none of them is allowed, everything the
    provider allows on that target. Duties and conditional prohibitions of
    the acceptance policy are attached, and the consumer's own prohibitions
    are kept.

    Returns:
        A new ``UsagePolicy``, or ``None`` when nothing can be granted.
    """
    requested = {(p.action, p.target): p for p in proposed.permissions}
    targets = sorted({p.target for p in proposed.permissions}, key=lambda t: t or "")

    rules: list[PolicyRule] = []
    seen: set[str] = set()

    def add(rule: PolicyRule) -> None:
        key = rule.canonical()
        if key not in seen:
            seen.add(key)
            rules.append(rule)

    for target in targets:
        candidates: list[tuple[PolicyRule, Optional[str]]] = []
        for granted in acceptance.permissions:
            if target is None:
                narrowed = granted.target
            elif granted.applies_to(target):
                narrowed = target
            else:
                continue
            if _hard_prohibitions(granted.action, narrowed, acceptance):
                continue
            candidates.append((granted, narrowed))

        wanted = [(g, t) for g, t in candidates if (g.action, target) in requested]
        for granted, narrowed in wanted or candidates:
            condition = granted.condition
            asked = requested.get((granted.action, target))
            if asked is not None and asked.condition is not None:
                condition = asked.condition.merge(granted.condition)
            add(PolicyRule(kind=RuleKind.PERMISSION, action=granted.action, target=narrowed, condition=condition))
            for duty in _required_duties(granted.action, narrowed, acceptance):
                add(PolicyRule(
                    kind=RuleKind.OBLIGATION,
                    action=duty.action,
                    target=narrowed,
                    condition=duty.condition,
                    duty=duty.duty,
                    parameters=dict(duty.parameters),
                ))
            for prohibition in _soft_prohibitions(granted.action, narrowed, acceptance):
                add(prohibition)

    if not any(r.kind == RuleKind.PERMISSION for r in rules):
        return None

    for prohibition in proposed.prohibitions:
        add(prohibition)

    return UsagePolicy(
        description=f"Counter-offer to {proposed.policy_id}",
        rules=tuple(rules),
    )
