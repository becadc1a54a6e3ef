"""
Tests for the usage policy model.

Covers constraints, the condition shorthand, rule validation and policy
identity (content hash, derive, YAML round trips).
"""

from datetime import date, datetime, timezone

import pytest
from pydantic import ValidationError

from dppspace.exceptions import PolicyError
from dppspace.policy import (
    AccessRequest,
    Action,
    Condition,
    Constraint,
    ConstraintOperator,
    PolicyRule,
    RuleKind,
    UsagePolicy,
    evaluate,
)


class TestConstraint:
    """Test single constraint evaluation."""

    @pytest.mark.parametrize(
        "operator,value,actual,expected",
        [
            (ConstraintOperator.eq, "Recycler", "Recycler", True),
            (ConstraintOperator.eq, "Recycler", "Supplier", False),
            (ConstraintOperator.ne, "Recycler", "Supplier", True),
            (ConstraintOperator.gt, 5, 6, True),
            (ConstraintOperator.gte, 5, 5, True),
            (ConstraintOperator.lt, 5, 5, False),
            (ConstraintOperator.lte, 5, 5, True),
            (ConstraintOperator.in_, ["EU", "CH"], "EU", True),
            (ConstraintOperator.not_in, ["EU", "CH"], "US", True),
            (ConstraintOperator.not_in, ["EU", "CH"], "CH", False),
        ],
    )
    def test_operators(self, operator, value, actual, expected):
        constraint = Constraint(field="attr", operator=operator, value=value)
        assert constraint.evaluate({"attr": actual}) is expected

    def test_missing_field_does_not_match(self):
        constraint = Constraint(field="role", value="Recycler")
        assert constraint.evaluate({}) is False

    def test_incomparable_types_do_not_match(self):
        constraint = Constraint(field="level", operator=ConstraintOperator.gt, value=3)
        assert constraint.evaluate({"level": "high"}) is False

    def test_dotted_field_path(self):
        constraint = Constraint(field="party.country", value="DE")
        assert constraint.evaluate({"party": {"country": "DE"}})
        assert not constraint.evaluate({"party": "DE"})

    def test_datetime_against_iso_string(self):
        constraint = Constraint(field="now", operator=ConstraintOperator.lte, value="2027-01-01T00:00:00Z")
        assert constraint.evaluate({"now": datetime(2026, 6, 1, tzinfo=timezone.utc)})
        assert not constraint.evaluate({"now": datetime(2027, 6, 1, tzinfo=timezone.utc)})

    def test_date_bound_is_midnight_utc(self):
        constraint = Constraint(field="now", operator=ConstraintOperator.lte, value=date(2027, 1, 1))
        assert constraint.value == datetime(2027, 1, 1, tzinfo=timezone.utc)
        assert constraint.evaluate({"now": datetime(2026, 6, 1, tzinfo=timezone.utc)})
        assert not constraint.evaluate({"now": datetime(2027, 1, 1, 0, 1, tzinfo=timezone.utc)})

    def test_date_string_and_date_agree(self):
        as_date = Constraint(field="now", operator=ConstraintOperator.lte, value=date(2027, 1, 1))
        as_string = Constraint(field="now", operator=ConstraintOperator.lte, value="2027-01-01")
        for now in (datetime(2026, 12, 31, 23, 59, tzinfo=timezone.utc), datetime(2027, 1, 2, tzinfo=timezone.utc)):
            assert as_date.evaluate({"now": now}) == as_string.evaluate({"now": now})


class TestCondition:
    """Test the mapping shorthand and condition algebra."""

    def test_plain_key_means_equality(self):
        condition = Condition.model_validate({"role": "Recycler"})
        assert condition.constraints == (Constraint(field="role", value="Recycler"),)

    def test_list_value_means_membership(self):
        condition = Condition.model_validate({"region": ["EU", "CH"]})
        assert condition.constraints[0].operator == ConstraintOperator.in_

    def test_valid_until_compares_now(self):
        condition = Condition.model_validate({"validUntil": "2027-01-01T00:00:00Z"})
        constraint = condition.constraints[0]
        assert constraint.field == "now"
        assert constraint.operator == ConstraintOperator.lte

    def test_valid_from_compares_now(self):
        condition = Condition.model_validate({"validFrom": "2026-01-01T00:00:00Z"})
        assert condition.constraints[0].operator == ConstraintOperator.gte

    def test_conjunction(self):
        condition = Condition.model_validate({"role": "Recycler", "region": "EU"})
        assert condition.matches({"role": "Recycler", "region": "EU"})
        assert not condition.matches({"role": "Recycler", "region": "US"})

    def test_implies(self):
        strict = Condition.model_validate({"role": "Recycler", "region": "EU"})
        loose = Condition.model_validate({"role": "Recycler"})
        assert strict.implies(loose)
        assert not loose.implies(strict)
        assert loose.implies(None)

    def test_merge_deduplicates(self):
        a = Condition.model_validate({"role": "Recycler"})
        b = Condition.model_validate({"role": "Recycler", "region": "EU"})
        merged = a.merge(b)
        assert len(merged.constraints) == 2
        assert merged.implies(a) and merged.implies(b)


class TestPolicyRule:
    """Test rule construction and validation."""

    def test_wildcard_target_normalised(self):
        assert PolicyRule.permission(Action.READ, target="*").target is None
        assert PolicyRule.permission(Action.READ, target="").target is None

    def test_rule_without_target_applies_everywhere(self):
        rule = PolicyRule.permission(Action.READ)
        assert rule.applies_to("materials")
        assert rule.applies_to(None)

    def test_obligation_requires_duty(self):
        with pytest.raises(ValidationError):
            PolicyRule(kind=RuleKind.OBLIGATION, action=Action.READ)

    def test_permission_cannot_carry_duty(self):
        with pytest.raises(ValidationError):
            PolicyRule(kind=RuleKind.PERMISSION, action=Action.READ, duty="log")

    def test_obligation_parameters(self):
        rule = PolicyRule.obligation(Action.READ, "notify", target="materials", within_hours=24)
        assert rule.duty == "notify"
        assert rule.parameters == {"within_hours": 24}

    def test_unknown_action_rejected(self):
        with pytest.raises(ValidationError):
            PolicyRule(kind=RuleKind.PERMISSION, action="SELL")

    def test_label(self):
        assert PolicyRule.permission(Action.READ, "materials").label() == "permission:READ@materials"
        assert PolicyRule.obligation(Action.READ, "log").label() == "obligation:READ@*:log"

    def test_rules_are_frozen(self):
        rule = PolicyRule.permission(Action.READ)
        with pytest.raises(ValidationError):
            rule.action = Action.DELETE


class TestUsagePolicy:
    """Test policy identity and serialisation."""

    def test_content_hash_ignores_order_and_id(self):
        a = PolicyRule.permission(Action.READ, "materials")
        b = PolicyRule.prohibition(Action.DISTRIBUTE)
        first = UsagePolicy(rules=(a, b))
        second = UsagePolicy(rules=(b, a))
        assert first.policy_id != second.policy_id
        assert first.content_hash() == second.content_hash()

    def test_content_hash_changes_with_rules(self):
        first = UsagePolicy(rules=(PolicyRule.permission(Action.READ),))
        second = UsagePolicy(rules=(PolicyRule.permission(Action.MODIFY),))
        assert first.content_hash() != second.content_hash()

    def test_derive_gets_new_id(self):
        policy = UsagePolicy(rules=(PolicyRule.permission(Action.READ),))
        derived = policy.derive(rules=[PolicyRule.permission(Action.READ, "materials")])
        assert derived.policy_id != policy.policy_id
        assert policy.rules[0].target is None

    def test_rule_partitions(self):
        policy = UsagePolicy(rules=(
            PolicyRule.permission(Action.READ),
            PolicyRule.prohibition(Action.DELETE),
            PolicyRule.obligation(Action.READ, "log"),
        ))
        assert len(policy.permissions) == 1
        assert len(policy.prohibitions) == 1
        assert len(policy.obligations) == 1

    def test_from_yaml(self):
        policy = UsagePolicy.from_yaml(
            """
policy_id: pol-recycler-read
rules:
  - kind: permission
    action: READ
    target: materials
    condition:
      role: Recycler
  - kind: obligation
    action: READ
    target: materials
    duty: notify
    parameters:
      within_hours: 24
"""
        )
        assert policy.policy_id == "pol-recycler-read"
        assert policy.permissions[0].condition.matches({"role": "Recycler"})
        assert policy.obligations[0].parameters == {"within_hours": 24}

    def test_yaml_round_trip_preserves_content(self):
        policy = UsagePolicy(rules=(
            PolicyRule.permission(Action.READ, "materials", {"role": "Recycler"}),
            PolicyRule.obligation(Action.READ, "log", target="materials"),
        ))
        assert UsagePolicy.from_yaml(policy.to_yaml()).content_hash() == policy.content_hash()

    def test_invalid_document_raises_policy_error(self):
        with pytest.raises(PolicyError):
            UsagePolicy.from_yaml("rules:\n  - kind: permission\n    action: FLY\n")

    def test_non_mapping_document(self):
        with pytest.raises(PolicyError):
            UsagePolicy.from_yaml("- just\n- a list\n")

    def test_load_from_file(self, tmp_path):
        path = tmp_path / "policy.yaml"
        path.write_text("rules:\n  - kind: permission\n    action: READ\n")
        assert UsagePolicy.load(path).permissions[0].action == Action.READ

    def test_date_valid_until_survives_json(self):
        """A YAML date bound decides the same before and after a JSON round trip."""
        policy = UsagePolicy.from_yaml(
            """
rules:
  - kind: permission
    action: READ
    target: materials
    condition:
      validUntil: 2027-01-01
"""
        )
        wire = UsagePolicy.model_validate_json(policy.model_dump_json())
        assert wire.content_hash() == policy.content_hash()

        for now, outcome in (
            (datetime(2026, 6, 1, tzinfo=timezone.utc), "ALLOW"),
            (datetime(2027, 6, 1, tzinfo=timezone.utc), "DENY"),
        ):
            request = AccessRequest(action=Action.READ, target="materials", context={"now": now})
            assert evaluate(policy, request).outcome.value == outcome
            assert evaluate(wire, request).outcome.value == outcome
