"""Tests for the enforcement gate."""

from datetime import timedelta

import pytest

from dppspace.contracts import ContractStore, Negotiation, NegotiationRole
from dppspace.enforcement import EnforcementGate
from dppspace.events import EVENT_ACCESS_ALLOWED, EVENT_ACCESS_DENIED, InMemoryEventBus
from dppspace.exceptions import NoSuchAgreementError
from dppspace.governance import EVENT_ACCESS_DECISION, AuditLog
from dppspace.policy import Action, DecisionOutcome, PolicyRule, UsagePolicy

from conftest import CONSUMER, PROVIDER, RESOURCE, T0


@pytest.fixture
async def gate(clock):
    store = ContractStore(namespace=PROVIDER)
    await store.put(Negotiation(
        negotiation_id="neg-1",
        consumer=CONSUMER,
        provider=PROVIDER,
        role=NegotiationRole.PROVIDER,
        resource_ref=RESOURCE,
        deadline=T0 + timedelta(minutes=5),
    ))
    policy = UsagePolicy(rules=(
        PolicyRule.permission(Action.READ, "materials"),
        PolicyRule.permission(Action.READ, "carbon_footprint", {"validUntil": (T0 + timedelta(days=1)).isoformat()}),
        PolicyRule.obligation(Action.READ, "log", target="materials"),
        PolicyRule.prohibition(Action.DISTRIBUTE),
    ))
    await store.settle_agreement("neg-1", policy, agreement_id="agr-1")
    return EnforcementGate(
        store,
        party=PROVIDER,
        audit=AuditLog(clock=clock),
        events=InMemoryEventBus(),
        clock=clock,
    )


class TestAuthorize:
    @pytest.mark.asyncio
    async def test_permitted_action_with_obligation(self, gate):
        decision = await gate.authorize("agr-1", Action.READ, "materials")
        assert decision.outcome == DecisionOutcome.ALLOW_WITH_OBLIGATIONS
        assert [o.duty for o in decision.obligations] == ["log"]

    @pytest.mark.asyncio
    async def test_action_given_as_string(self, gate):
        assert (await gate.authorize("agr-1", "READ", "materials")).allowed

    @pytest.mark.asyncio
    async def test_prohibited_action(self, gate):
        decision = await gate.authorize("agr-1", Action.DISTRIBUTE, "materials")
        assert decision.outcome == DecisionOutcome.DENY

    @pytest.mark.asyncio
    async def test_action_outside_agreement(self, gate):
        assert not (await gate.authorize("agr-1", Action.MODIFY, "materials")).allowed

    @pytest.mark.asyncio
    async def test_unknown_agreement_raises(self, gate):
        with pytest.raises(NoSuchAgreementError):
            await gate.authorize("agr-missing", Action.READ, "materials")
        entry = gate.audit.query(agreement_id="agr-missing")[0]
        assert entry.decision == DecisionOutcome.DENY.value

    @pytest.mark.asyncio
    async def test_validity_window_uses_gate_clock(self, gate, clock):
        assert (await gate.authorize("agr-1", Action.READ, "carbon_footprint")).allowed
        clock.advance(timedelta(days=2).total_seconds())
        assert not (await gate.authorize("agr-1", Action.READ, "carbon_footprint")).allowed

    @pytest.mark.asyncio
    async def test_context_now_overrides_clock(self, gate):
        late = T0 + timedelta(days=3)
        decision = await gate.authorize("agr-1", Action.READ, "carbon_footprint", context={"now": late})
        assert not decision.allowed

    @pytest.mark.asyncio
    async def test_requesting_party_must_be_consumer(self, gate):
        decision = await gate.authorize("agr-1", Action.READ, "materials", requesting_party="urn:dpp:party:mallory")
        assert decision.outcome == DecisionOutcome.DENY
        assert "not the consumer" in decision.reason
        assert (await gate.authorize("agr-1", Action.READ, "materials", requesting_party=CONSUMER)).allowed

    @pytest.mark.asyncio
    async def test_unknown_action_rejected(self, gate):
        with pytest.raises(ValueError):
            await gate.authorize("agr-1", "SELL", "materials")


class TestAuditAndEvents:
    @pytest.mark.asyncio
    async def test_every_decision_audited(self, gate):
        await gate.authorize("agr-1", Action.READ, "materials")
        await gate.authorize("agr-1", Action.DISTRIBUTE, "materials")
        entries = gate.audit.query(event_type=EVENT_ACCESS_DECISION)
        assert [e.decision for e in entries] == ["ALLOW_WITH_OBLIGATIONS", "DENY"]
        assert entries[0].data["obligations"] == ["log"]
        assert gate.audit.verify_integrity()[0]

    @pytest.mark.asyncio
    async def test_events_per_outcome(self, gate):
        allowed, denied = [], []
        gate.events.subscribe(EVENT_ACCESS_ALLOWED, allowed.append)
        gate.events.subscribe(EVENT_ACCESS_DENIED, denied.append)

        await gate.authorize("agr-1", Action.READ, "materials")
        await gate.authorize("agr-1", Action.DISTRIBUTE, "materials")

        assert len(allowed) == 1
        assert len(denied) == 1
        assert denied[0].payload["action"] == "DISTRIBUTE"
        assert denied[0].source == PROVIDER


class TestRelease:
    @pytest.mark.asyncio
    async def test_loader_runs_when_allowed(self, gate):
        result = await gate.release("agr-1", Action.READ, "materials", lambda: {"cobalt": 0.12})
        assert result.released
        assert result.data == {"cobalt": 0.12}
        assert [o.duty for o in result.obligations] == ["log"]

    @pytest.mark.asyncio
    async def test_async_loader(self, gate):
        async def load():
            return {"co2_kg": 61.5}

        result = await gate.release("agr-1", Action.READ, "materials", load)
        assert result.data == {"co2_kg": 61.5}

    @pytest.mark.asyncio
    async def test_loader_skipped_when_denied(self, gate):
        calls = []
        result = await gate.release("agr-1", Action.DISTRIBUTE, "materials", lambda: calls.append(1))
        assert not result.released
        assert result.data is None
        assert calls == []

    @pytest.mark.asyncio
    async def test_loader_skipped_for_unknown_agreement(self, gate):
        calls = []
        with pytest.raises(NoSuchAgreementError):
            await gate.release("agr-missing", Action.READ, "materials", lambda: calls.append(1))
        assert calls == []
