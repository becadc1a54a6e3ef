"""Tests for the provider acceptance catalogue."""

import pytest

from dppspace.exceptions import PolicyError
from dppspace.policy import Action, PolicyCatalogue, PolicyRule, UsagePolicy

CATALOGUE_YAML = """
policies:
  urn:dpp:passport:battery-42:
    policy_id: exact
    rules:
      - kind: permission
        action: MODIFY
  "urn:dpp:passport:battery-*":
    policy_id: batteries
    rules:
      - kind: permission
        action: READ
        target: materials
  "*":
    policy_id: fallback
    rules:
      - kind: permission
        action: READ
        target: carbon_footprint
"""


@pytest.fixture
def catalogue():
    return PolicyCatalogue.from_yaml(CATALOGUE_YAML)


class TestLookup:
    def test_exact_match_wins(self, catalogue):
        assert catalogue.lookup("urn:dpp:passport:battery-42").policy_id == "exact"

    def test_glob_match(self, catalogue):
        assert catalogue.lookup("urn:dpp:passport:battery-7").policy_id == "batteries"

    def test_fallback(self, catalogue):
        assert catalogue.lookup("urn:dpp:passport:textile-1").policy_id == "fallback"

    def test_no_fallback_returns_none(self):
        catalogue = PolicyCatalogue()
        catalogue.register("urn:dpp:passport:battery-*", UsagePolicy(rules=(PolicyRule.permission(Action.READ),)))
        assert catalogue.lookup("urn:dpp:passport:textile-1") is None
        assert "urn:dpp:passport:textile-1" not in catalogue
        assert "urn:dpp:passport:battery-1" in catalogue

    def test_register_and_remove(self):
        catalogue = PolicyCatalogue()
        catalogue.register("urn:a", UsagePolicy())
        assert len(catalogue) == 1
        assert catalogue.remove("urn:a")
        assert not catalogue.remove("urn:a")
        assert catalogue.patterns() == []


class TestLoading:
    def test_missing_policies_key(self):
        with pytest.raises(PolicyError):
            PolicyCatalogue.from_yaml("provider: urn:dpp:party:cellmaker\n")

    def test_policy_entry_must_be_mapping(self):
        with pytest.raises(PolicyError):
            PolicyCatalogue.from_yaml("policies:\n  urn:a: [1, 2]\n")

    def test_load_and_round_trip(self, tmp_path, catalogue):
        path = tmp_path / "catalogue.yaml"
        path.write_text(catalogue.to_yaml())
        loaded = PolicyCatalogue.load(path)
        assert loaded.patterns() == catalogue.patterns()
        ref = "urn:dpp:passport:battery-7"
        assert loaded.lookup(ref).content_hash() == catalogue.lookup(ref).content_hash()
