"""
dppspace CLI

Developer commands for usage policies and negotiations:
- evaluate: Evaluate a policy against one access request
- assess: Judge a proposed policy against an acceptance policy or catalogue
- simulate: Run a consumer/provider negotiation on an in-memory network
"""

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

import click
import yaml
from rich import box
from rich.console import Console
from rich.table import Table

from dppspace import __version__
from dppspace.connector import DataspaceConnector, run_until_quiet
from dppspace.exceptions import DataspaceError
from dppspace.policy.catalogue import PolicyCatalogue
from dppspace.policy.comparison import OfferVerdict, assess_offer
from dppspace.policy.evaluator import AccessRequest, DecisionOutcome, evaluate
from dppspace.policy.model import Action, UsagePolicy
from dppspace.transport.memory import InMemoryNetwork

console = Console()

_ACTIONS = [a.value for a in Action]


def _output_json(data: object) -> None:
    """Print data as JSON to stdout."""
    click.echo(json.dumps(data, indent=2, default=str))


def _outcome_style(outcome: str) -> str:
    styles = {
        DecisionOutcome.ALLOW.value: "green",
        DecisionOutcome.ALLOW_WITH_OBLIGATIONS.value: "yellow",
        DecisionOutcome.DENY.value: "bold red",
        OfferVerdict.ACCEPTABLE.value: "green",
        OfferVerdict.NEGOTIABLE.value: "yellow",
        OfferVerdict.FORBIDDEN.value: "bold red",
    }
    return styles.get(outcome, "white")


def _parse_context(pairs: tuple[str, ...], now: Optional[str]) -> dict[str, Any]:
    """Turn ``key=value`` pairs into a context; values are parsed as YAML scalars."""
    context: dict[str, Any] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected key=value, got '{pair}'", param_hint="--context")
        context[key] = yaml.safe_load(value) if value else ""
    if now:
        try:
            context["now"] = datetime.fromisoformat(now.replace("Z", "+00:00"))
        except ValueError:
            raise click.BadParameter(f"'{now}' is not an ISO timestamp", param_hint="--now")
    else:
        context.setdefault("now", datetime.now(timezone.utc))
    return context


def _load_policy(path: str) -> UsagePolicy:
    try:
        return UsagePolicy.load(path)
    except DataspaceError as e:
        raise click.ClickException(str(e))


def _rules_table(policy: UsagePolicy, title: str) -> Table:
    table = Table(title=title, box=box.ROUNDED)
    table.add_column("Kind", style="cyan")
    table.add_column("Action")
    table.add_column("Target")
    table.add_column("Condition", style="dim")
    table.add_column("Duty")
    for rule in policy.rules:
        condition = ""
        if rule.condition is not None:
            condition = " and ".join(
                f"{c.field} {c.operator.value} {c.value}" for c in rule.condition.constraints
            )
        table.add_row(
            rule.kind.value,
            rule.action.value,
            rule.target or "*",
            condition,
            rule.duty or "",
        )
    return table


@click.group()
@click.version_option(__version__, prog_name="dppspace")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def cli(verbose: bool):
    """Negotiate and enforce usage policies for Digital Product Passports."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command("evaluate")
@click.argument("policy_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--action", "-a", type=click.Choice(_ACTIONS, case_sensitive=False), required=True)
@click.option("--target", "-t", default=None, help="Resource class, e.g. 'materials'.")
@click.option("--context", "-c", "context_pairs", multiple=True, help="Context attribute as key=value.")
@click.option("--now", default=None, help="Evaluation time (ISO 8601); defaults to the current time.")
@click.option("--json", "json_flag", is_flag=True, help="Output as JSON.")
def evaluate_cmd(
    policy_file: str,
    action: str,
    target: Optional[str],
    context_pairs: tuple[str, ...],
    now: Optional[str],
    json_flag: bool,
):
    """Evaluate POLICY_FILE against a single access request."""
    policy = _load_policy(policy_file)
    request = AccessRequest(
        action=Action(action.upper()),
        target=target,
        context=_parse_context(context_pairs, now),
    )
    decision = evaluate(policy, request)

    if json_flag:
        _output_json(decision.model_dump(mode="json"))
        return

    style = _outcome_style(decision.outcome.value)
    console.print(f"\n[{style}]{decision.outcome.value}[/{style}]  {decision.reason}\n")
    if decision.matched_rules:
        console.print("  Matched: " + ", ".join(decision.matched_rules))
    if decision.obligations:
        table = Table(title="Obligations", box=box.SIMPLE)
        table.add_column("Duty", style="cyan")
        table.add_column("Action")
        table.add_column("Parameters", style="dim")
        for obligation in decision.obligations:
            table.add_row(obligation.duty, obligation.action.value, json.dumps(obligation.parameters))
        console.print(table)
    console.print()


@cli.command("assess")
@click.argument("proposed_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--acceptance", type=click.Path(exists=True, dir_okay=False), help="Acceptance policy file.")
@click.option("--catalogue", type=click.Path(exists=True, dir_okay=False), help="Acceptance catalogue file.")
@click.option("--resource", default=None, help="Resource reference looked up in the catalogue.")
@click.option("--json", "json_flag", is_flag=True, help="Output as JSON.")
def assess_cmd(
    proposed_file: str,
    acceptance: Optional[str],
    catalogue: Optional[str],
    resource: Optional[str],
    json_flag: bool,
):
    """Judge PROPOSED_FILE the way a provider would answer it as an offer."""
    proposed = _load_policy(proposed_file)
    if acceptance:
        acceptance_policy = _load_policy(acceptance)
    elif catalogue and resource:
        try:
            found = PolicyCatalogue.load(catalogue).lookup(resource)
        except DataspaceError as e:
            raise click.ClickException(str(e))
        if found is None:
            raise click.ClickException(f"No acceptance policy for {resource}")
        acceptance_policy = found
    else:
        raise click.UsageError("Pass --acceptance, or --catalogue together with --resource")

    assessment = assess_offer(proposed, acceptance_policy)

    if json_flag:
        _output_json(assessment.model_dump(mode="json"))
        return

    style = _outcome_style(assessment.verdict.value)
    console.print(f"\n[{style}]{assessment.verdict.value}[/{style}]  {assessment.reason}\n")
    for gap in assessment.gaps:
        console.print(f"  - {gap}")
    if assessment.counter_policy is not None:
        console.print(_rules_table(assessment.counter_policy, "Counter-offer"))
    console.print()


async def _simulate(
    catalogue: PolicyCatalogue,
    policy: UsagePolicy,
    consumer: str,
    provider: str,
    resource: str,
    budget: int,
) -> dict[str, Any]:
    network = InMemoryNetwork()
    consumer_node = DataspaceConnector(consumer, network.endpoint(consumer), counter_offer_budget=budget)
    provider_node = DataspaceConnector(
        provider,
        network.endpoint(provider),
        catalogue=catalogue,
        counter_offer_budget=budget,
    )
    await consumer_node.start()
    await provider_node.start()
    try:
        negotiation = await consumer_node.negotiate(provider, resource, policy)
        messages = await run_until_quiet(consumer_node, provider_node)
        final = await consumer_node.manager.get(negotiation.negotiation_id)
        agreement = await consumer_node.agreement_for(negotiation.negotiation_id)
        return {
            "negotiation_id": final.negotiation_id,
            "state": final.state.value,
            "reject_reason": final.reject_reason.value if final.reject_reason else None,
            "messages": messages,
            "transitions": [
                {"from": t.from_state.value, "to": t.to_state.value, "reason": t.reason}
                for t in final.transitions
            ],
            "agreement": agreement.model_dump(mode="json") if agreement else None,
        }
    finally:
        await consumer_node.stop()
        await provider_node.stop()


@cli.command("simulate")
@click.argument("catalogue_file", type=click.Path(exists=True, dir_okay=False))
@click.argument("policy_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--resource", required=True, help="Resource reference to request.")
@click.option("--consumer", default="urn:dpp:party:consumer", show_default=True)
@click.option("--provider", default="urn:dpp:party:provider", show_default=True)
@click.option("--budget", type=int, default=5, show_default=True, help="Counter-offer budget.")
@click.option("--json", "json_flag", is_flag=True, help="Output as JSON.")
def simulate_cmd(
    catalogue_file: str,
    policy_file: str,
    resource: str,
    consumer: str,
    provider: str,
    budget: int,
    json_flag: bool,
):
    """Negotiate POLICY_FILE against CATALOGUE_FILE between two in-memory connectors."""
    try:
        catalogue = PolicyCatalogue.load(catalogue_file)
    except DataspaceError as e:
        raise click.ClickException(str(e))
    policy = _load_policy(policy_file)

    try:
        result = asyncio.run(_simulate(catalogue, policy, consumer, provider, resource, budget))
    except DataspaceError as e:
        raise click.ClickException(str(e))

    if json_flag:
        _output_json(result)
        return

    console.print(f"\n[bold blue]Negotiation {result['negotiation_id']}[/bold blue]\n")
    table = Table(box=box.ROUNDED)
    table.add_column("From", style="cyan")
    table.add_column("To", style="bold")
    table.add_column("Reason", style="dim")
    for step in result["transitions"]:
        table.add_row(step["from"], step["to"], step["reason"])
    console.print(table)

    state = result["state"]
    style = "green" if state == "Accepted" else "bold red"
    line = f"  Final state: [{style}]{state}[/{style}]"
    if result["reject_reason"]:
        line += f" ({result['reject_reason']})"
    console.print(line)
    if result["agreement"]:
        agreement = UsagePolicy.model_validate(result["agreement"]["policy"])
        console.print(f"  Agreement: {result['agreement']['agreement_id']}")
        console.print(_rules_table(agreement, "Agreed policy"))
    console.print()


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
