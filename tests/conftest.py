"""Shared fixtures for dppspace tests."""

from datetime import datetime, timedelta, timezone

import pytest

from dppspace.connector import DataspaceConnector
from dppspace.policy import Action, PolicyCatalogue, PolicyRule, UsagePolicy
from dppspace.transport import InMemoryNetwork

T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

CONSUMER = "urn:dpp:party:recycler"
PROVIDER = "urn:dpp:party:cellmaker"
RESOURCE = "urn:dpp:passport:battery-42"


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


def acceptance_policy() -> UsagePolicy:
    """What the cell maker grants on battery passports."""
    return UsagePolicy(
        policy_id="pol-battery-acceptance",
        rules=(
            PolicyRule.permission(Action.READ, "materials"),
            PolicyRule.obligation(Action.READ, "log", target="materials"),
            PolicyRule.prohibition(Action.DELETE),
        ),
    )


def read_materials_policy() -> UsagePolicy:
    """A consumer proposal the cell maker accepts as is."""
    return UsagePolicy(rules=(
        PolicyRule.permission(Action.READ, "materials"),
        PolicyRule.obligation(Action.READ, "log", target="materials"),
    ))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def acceptance_catalogue():
    catalogue = PolicyCatalogue()
    catalogue.register("urn:dpp:passport:battery-*", acceptance_policy())
    return catalogue


@pytest.fixture
def network():
    return InMemoryNetwork()


@pytest.fixture
async def make_connector(network, clock):
    """Factory for started connectors on the shared network and clock."""
    started = []

    async def _make(party, **kwargs):
        kwargs.setdefault("clock", clock)
        connector = DataspaceConnector(party, network.endpoint(party), **kwargs)
        await connector.start()
        started.append(connector)
        return connector

    yield _make
    for connector in started:
        await connector.stop()


@pytest.fixture
async def parties(make_connector, acceptance_catalogue):
    """A recycler (consumer) and a cell maker (provider with catalogue)."""
    consumer = await make_connector(CONSUMER)
    provider = await make_connector(PROVIDER, catalogue=acceptance_catalogue)
    return consumer, provider
