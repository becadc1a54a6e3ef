"""
Usage Policy Layer

Typed usage policies, the pure evaluator and the provider-side tools
for judging proposed policies.
"""

from .model import (
    Action,
    Condition,
    Constraint,
    ConstraintOperator,
    PolicyRule,
    RuleKind,
    UsagePolicy,
)
from .evaluator import (
    AccessRequest,
    Decision,
    DecisionOutcome,
    Obligation,
    PolicyEvaluator,
    evaluate,
)
from .comparison import OfferAssessment, OfferVerdict, assess_offer, build_counter_policy
from .catalogue import PolicyCatalogue

__all__ = [
    "Action",
    "Condition",
    "Constraint",
    "ConstraintOperator",
    "PolicyRule",
    "RuleKind",
    "UsagePolicy",
    "AccessRequest",
    "Decision",
    "DecisionOutcome",
    "Obligation",
    "PolicyEvaluator",
    "evaluate",
    "OfferAssessment",
    "OfferVerdict",
    "assess_offer",
    "build_counter_policy",
    "PolicyCatalogue",
]
