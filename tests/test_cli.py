"""Tests for the dppspace CLI."""

import json

import pytest
from click.testing import CliRunner

from dppspace.cli.main import cli
from dppspace.policy import Action, PolicyCatalogue, PolicyRule, UsagePolicy

from conftest import RESOURCE, acceptance_policy, read_materials_policy


@pytest.fixture
def runner():
    """Create CLI test runner."""
    return CliRunner()


@pytest.fixture
def files(tmp_path):
    """Acceptance policy, catalogue and two proposals on disk."""
    acceptance = tmp_path / "acceptance.yaml"
    acceptance.write_text(acceptance_policy().to_yaml())

    catalogue = PolicyCatalogue()
    catalogue.register("urn:dpp:passport:battery-*", acceptance_policy())
    catalogue_file = tmp_path / "catalogue.yaml"
    catalogue_file.write_text(catalogue.to_yaml())

    proposal = tmp_path / "proposal.yaml"
    proposal.write_text(read_materials_policy().to_yaml())

    distribute = tmp_path / "distribute.yaml"
    distribute.write_text(UsagePolicy(rules=(PolicyRule.permission(Action.DISTRIBUTE, "materials"),)).to_yaml())

    return {
        "acceptance": str(acceptance),
        "catalogue": str(catalogue_file),
        "proposal": str(proposal),
        "distribute": str(distribute),
    }


class TestCLI:
    """Tests for the command group."""

    def test_cli_help(self, runner):
        result = runner.invoke(cli, ["--help"])
        assert result.exit_code == 0
        for command in ("evaluate", "assess", "simulate"):
            assert command in result.output

    def test_cli_version(self, runner):
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert "0.1.0" in result.output


class TestEvaluateCommand:
    def test_allow_with_obligations_json(self, runner, files):
        result = runner.invoke(cli, [
            "evaluate", files["acceptance"],
            "--action", "read",
            "--target", "materials",
            "--json",
        ])
        assert result.exit_code == 0, result.output
        decision = json.loads(result.output)
        assert decision["outcome"] == "ALLOW_WITH_OBLIGATIONS"
        assert [o["duty"] for o in decision["obligations"]] == ["log"]

    def test_prohibited_action_denied(self, runner, files):
        result = runner.invoke(cli, [
            "evaluate", files["acceptance"], "-a", "DELETE", "-t", "materials", "--json",
        ])
        assert result.exit_code == 0
        assert json.loads(result.output)["outcome"] == "DENY"

    def test_table_output(self, runner, files):
        result = runner.invoke(cli, ["evaluate", files["acceptance"], "-a", "READ", "-t", "materials"])
        assert result.exit_code == 0
        assert "ALLOW_WITH_OBLIGATIONS" in result.output
        assert "log" in result.output

    def test_bad_context_pair(self, runner, files):
        result = runner.invoke(cli, [
            "evaluate", files["acceptance"], "-a", "READ", "--context", "role",
        ])
        assert result.exit_code == 2
        assert "key=value" in result.output

    def test_bad_timestamp(self, runner, files):
        result = runner.invoke(cli, [
            "evaluate", files["acceptance"], "-a", "READ", "--now", "yesterday",
        ])
        assert result.exit_code == 2

    def test_invalid_policy_file(self, runner, tmp_path):
        broken = tmp_path / "broken.yaml"
        broken.write_text("- not\n- a mapping\n")
        result = runner.invoke(cli, ["evaluate", str(broken), "-a", "READ"])
        assert result.exit_code == 1
        assert "mapping" in result.output


class TestAssessCommand:
    def test_acceptable(self, runner, files):
        result = runner.invoke(cli, [
            "assess", files["proposal"], "--acceptance", files["acceptance"], "--json",
        ])
        assert result.exit_code == 0, result.output
        assert json.loads(result.output)["verdict"] == "ACCEPTABLE"

    def test_negotiable_via_catalogue(self, runner, files):
        result = runner.invoke(cli, [
            "assess", files["distribute"],
            "--catalogue", files["catalogue"],
            "--resource", RESOURCE,
            "--json",
        ])
        assert result.exit_code == 0, result.output
        assessment = json.loads(result.output)
        assert assessment["verdict"] == "NEGOTIABLE"
        assert assessment["counter_policy"]["rules"][0]["action"] == "READ"

    def test_counter_offer_table(self, runner, files):
        result = runner.invoke(cli, ["assess", files["distribute"], "--acceptance", files["acceptance"]])
        assert result.exit_code == 0
        assert "NEGOTIABLE" in result.output
        assert "Counter-offer" in result.output

    def test_unknown_resource(self, runner, files):
        result = runner.invoke(cli, [
            "assess", files["proposal"],
            "--catalogue", files["catalogue"],
            "--resource", "urn:dpp:passport:textile-1",
        ])
        assert result.exit_code == 1
        assert "No acceptance policy" in result.output

    def test_requires_acceptance_source(self, runner, files):
        result = runner.invoke(cli, ["assess", files["proposal"], "--catalogue", files["catalogue"]])
        assert result.exit_code == 2
        assert "--resource" in result.output


class TestSimulateCommand:
    def test_agreement_reached(self, runner, files):
        result = runner.invoke(cli, [
            "simulate", files["catalogue"], files["proposal"],
            "--resource", RESOURCE,
            "--json",
        ])
        assert result.exit_code == 0, result.output
        outcome = json.loads(result.output)
        assert outcome["state"] == "Accepted"
        assert outcome["reject_reason"] is None
        assert outcome["agreement"]["resource_ref"] == RESOURCE
        assert [t["to"] for t in outcome["transitions"]] == ["Offered", "Accepted"]

    def test_counter_offer_round(self, runner, files):
        result = runner.invoke(cli, [
            "simulate", files["catalogue"], files["distribute"],
            "--resource", RESOURCE,
            "--json",
        ])
        assert result.exit_code == 0, result.output
        outcome = json.loads(result.output)
        assert outcome["state"] == "Accepted"
        assert "CounterOffered" in [t["to"] for t in outcome["transitions"]]

    def test_unknown_resource_rejected(self, runner, files):
        result = runner.invoke(cli, [
            "simulate", files["catalogue"], files["proposal"],
            "--resource", "urn:dpp:passport:textile-1",
        ])
        assert result.exit_code == 0
        assert "Rejected" in result.output
        assert "UnknownResource" in result.output
