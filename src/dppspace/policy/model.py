"""
Usage Policy Model

Typed permissions, prohibitions and obligations over a closed action
enumeration. Policies are immutable: editing one yields a new policy
with a new id, so a signed agreement never changes underneath its holder.
"""

from datetime import date, datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Mapping, Optional
import hashlib
import json
import uuid

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from dppspace.constants import CONDITION_VALID_FROM, CONDITION_VALID_UNTIL, CONTEXT_NOW
from dppspace.exceptions import PolicyError


class Action(str, Enum):
    """Actions a usage policy can govern."""

    READ = "READ"
    MODIFY = "MODIFY"
    DISTRIBUTE = "DISTRIBUTE"
    DELETE = "DELETE"
    DERIVE = "DERIVE"


class RuleKind(str, Enum):
    """The three rule variants of a usage policy."""

    PERMISSION = "permission"
    PROHIBITION = "prohibition"
    OBLIGATION = "obligation"


class ConstraintOperator(str, Enum):
    """Supported comparison operators for constraints."""

    eq = "eq"
    ne = "ne"
    gt = "gt"
    gte = "gte"
    lt = "lt"
    lte = "lte"
    in_ = "in"
    not_in = "not_in"


def _as_datetime(value: Any) -> Any:
    """Coerce ISO strings, dates and naive datetimes to aware UTC datetimes.

    A bare date means midnight UTC of that day.
    """
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return value
    elif isinstance(value, date) and not isinstance(value, datetime):
        value = datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if isinstance(value, datetime) and value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


class Constraint(BaseModel):
    """A single comparison between a context field and a fixed value."""

    model_config = ConfigDict(frozen=True)

    field: str = Field(..., min_length=1, description="Dot-notated context path (e.g. 'role', 'party.country')")
    operator: ConstraintOperator = Field(default=ConstraintOperator.eq)
    value: Any = Field(..., description="Value to compare against")

    @field_validator("value", mode="before")
    @classmethod
    def _normalize_temporal(cls, v: Any) -> Any:
        # Dates are held as aware UTC datetimes, matching their parsed JSON form.
        if isinstance(v, date):
            return _as_datetime(v)
        return v

    def evaluate(self, context: Mapping[str, Any]) -> bool:
        """Evaluate this constraint against a request context."""
        actual = self._resolve_field(context, self.field)
        if actual is None:
            return False
        try:
            return self._apply_operator(actual, self.operator, self.value)
        except TypeError:
            return False

    def key(self) -> str:
        """Canonical string identity, used for set comparisons."""
        return json.dumps(self.model_dump(mode="json"), sort_keys=True)

    @staticmethod
    def _resolve_field(context: Mapping[str, Any], path: str) -> Any:
        current: Any = context
        for part in path.split("."):
            if isinstance(current, Mapping):
                current = current.get(part)
            else:
                return None
        return current

    @staticmethod
    def _apply_operator(actual: Any, operator: ConstraintOperator, expected: Any) -> bool:
        if operator in (ConstraintOperator.in_, ConstraintOperator.not_in):
            members = expected if isinstance(expected, (list, tuple, set, frozenset)) else [expected]
            found = actual in members
            return found if operator == ConstraintOperator.in_ else not found

        if isinstance(actual, date) or isinstance(expected, date):
            actual, expected = _as_datetime(actual), _as_datetime(expected)

        if operator == ConstraintOperator.eq:
            return actual == expected
        elif operator == ConstraintOperator.ne:
            return actual != expected
        elif operator == ConstraintOperator.gt:
            return actual > expected
        elif operator == ConstraintOperator.gte:
            return actual >= expected
        elif operator == ConstraintOperator.lt:
            return actual < expected
        elif operator == ConstraintOperator.lte:
            return actual <= expected
        return False


def _shorthand_constraint(key: str, value: Any) -> Constraint:
    if key == CONDITION_VALID_UNTIL:
        return Constraint(field=CONTEXT_NOW, operator=ConstraintOperator.lte, value=value)
    if key == CONDITION_VALID_FROM:
        return Constraint(field=CONTEXT_NOW, operator=ConstraintOperator.gte, value=value)
    if isinstance(value, (list, tuple)):
        return Constraint(field=key, operator=ConstraintOperator.in_, value=list(value))
    return Constraint(field=key, value=value)


class Condition(BaseModel):
    """
    Conjunction of constraints.

    Accepts the mapping shorthand used in policy files::

        condition:
          role: Recycler
          validUntil: 2027-01-01T00:00:00Z

    which expands to ``role eq 'Recycler'`` and ``now lte 2027-01-01``.
    """

    model_config = ConfigDict(frozen=True)

    constraints: tuple[Constraint, ...] = Field(default_factory=tuple)

    @model_validator(mode="before")
    @classmethod
    def _expand_shorthand(cls, data: Any) -> Any:
        if isinstance(data, Mapping) and "constraints" not in data:
            return {"constraints": [_shorthand_constraint(k, v) for k, v in data.items()]}
        return data

    def matches(self, context: Mapping[str, Any]) -> bool:
        return all(c.evaluate(context) for c in self.constraints)

    def keys(self) -> frozenset[str]:
        return frozenset(c.key() for c in self.constraints)

    def implies(self, other: Optional["Condition"]) -> bool:
        """True when this condition is at least as strict as ``other``."""
        if other is None:
            return True
        return other.keys() <= self.keys()

    def merge(self, other: Optional["Condition"]) -> "Condition":
        if other is None:
            return self
        seen = self.keys()
        extra = tuple(c for c in other.constraints if c.key() not in seen)
        return Condition(constraints=self.constraints + extra)


class PolicyRule(BaseModel):
    """
    One rule of a usage policy.

    - permission: grants ``action`` on ``target`` when ``condition`` holds
    - prohibition: forbids it; always wins over a matching permission
    - obligation: a duty (``duty`` + ``parameters``) attached to ``action``
    """

    model_config = ConfigDict(frozen=True)

    kind: RuleKind
    action: Action
    target: Optional[str] = Field(None, description="Resource class the rule applies to; None means any")
    condition: Optional[Condition] = None

    # Obligations only
    duty: Optional[str] = Field(None, description="Duty to discharge, e.g. 'log' or 'notify'")
    parameters: dict[str, Any] = Field(default_factory=dict)

    @field_validator("target")
    @classmethod
    def _normalize_target(cls, value: Optional[str]) -> Optional[str]:
        if value is None or value.strip() in ("", "*"):
            return None
        return value.strip()

    @model_validator(mode="after")
    def _check_duty(self) -> "PolicyRule":
        if self.kind == RuleKind.OBLIGATION and not self.duty:
            raise ValueError("obligation rules require a duty")
        if self.kind != RuleKind.OBLIGATION and (self.duty or self.parameters):
            raise ValueError(f"{self.kind.value} rules cannot carry a duty")
        return self

    @classmethod
    def permission(cls, action: Action, target: Optional[str] = None, condition: Any = None) -> "PolicyRule":
        return cls(kind=RuleKind.PERMISSION, action=action, target=target, condition=condition)

    @classmethod
    def prohibition(cls, action: Action, target: Optional[str] = None, condition: Any = None) -> "PolicyRule":
        return cls(kind=RuleKind.PROHIBITION, action=action, target=target, condition=condition)

    @classmethod
    def obligation(
        cls,
        action: Action,
        duty: str,
        target: Optional[str] = None,
        condition: Any = None,
        **parameters: Any,
    ) -> "PolicyRule":
        return cls(
            kind=RuleKind.OBLIGATION,
            action=action,
            target=target,
            condition=condition,
            duty=duty,
            parameters=parameters,
        )

    def applies_to(self, target: Optional[str]) -> bool:
        """A rule without a target covers every target."""
        return self.target is None or self.target == target

    def matches(self, target: Optional[str], context: Mapping[str, Any]) -> bool:
        if not self.applies_to(target):
            return False
        return self.condition is None or self.condition.matches(context)

    def label(self) -> str:
        name = f"{self.kind.value}:{self.action.value}@{self.target or '*'}"
        if self.duty:
            name += f":{self.duty}"
        return name

    def canonical(self) -> str:
        return json.dumps(self.model_dump(mode="json"), sort_keys=True)


class UsagePolicy(BaseModel):
    """
    An immutable set of rules with a stable id.

    Rule order carries no meaning: evaluation is deny-overrides and the
    content hash is computed over the sorted canonical rules.
    """

    model_config = ConfigDict(frozen=True)

    policy_id: str = Field(default_factory=lambda: f"pol-{uuid.uuid4().hex[:16]}")
    description: Optional[str] = None
    rules: tuple[PolicyRule, ...] = Field(default_factory=tuple)

    @property
    def permissions(self) -> list[PolicyRule]:
        return [r for r in self.rules if r.kind == RuleKind.PERMISSION]

    @property
    def prohibitions(self) -> list[PolicyRule]:
        return [r for r in self.rules if r.kind == RuleKind.PROHIBITION]

    @property
    def obligations(self) -> list[PolicyRule]:
        return [r for r in self.rules if r.kind == RuleKind.OBLIGATION]

    def targets(self) -> set[Optional[str]]:
        return {r.target for r in self.permissions}

    def content_hash(self) -> str:
        """SHA-256 over the rule content, independent of id and rule order."""
        canonical = json.dumps(sorted(r.canonical() for r in self.rules))
        return hashlib.sha256(canonical.encode()).hexdigest()

    def derive(
        self,
        rules: Optional[list[PolicyRule]] = None,
        description: Optional[str] = None,
    ) -> "UsagePolicy":
        """Return a new policy (fresh id) with replaced rules."""
        return UsagePolicy(
            description=description if description is not None else self.description,
            rules=tuple(rules if rules is not None else self.rules),
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "UsagePolicy":
        try:
            return cls.model_validate(dict(data))
        except ValidationError as e:
            raise PolicyError(f"Invalid usage policy: {e}") from e

    @classmethod
    def from_yaml(cls, yaml_content: str) -> "UsagePolicy":
        """Load a policy from a YAML document."""
        data = yaml.safe_load(yaml_content)
        if not isinstance(data, Mapping):
            raise PolicyError("Policy document must be a mapping")
        return cls.from_dict(data)

    @classmethod
    def load(cls, path: str | Path) -> "UsagePolicy":
        """Load a policy from a YAML or JSON file."""
        path = Path(path)
        with open(path, "r") as f:
            return cls.from_yaml(f.read())

    def to_yaml(self) -> str:
        data = self.model_dump(mode="json", exclude_none=True)
        return yaml.dump(data, default_flow_style=False, sort_keys=False)
