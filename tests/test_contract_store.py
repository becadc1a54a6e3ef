"""Tests for the per-party contract store."""

import asyncio
from datetime import timedelta

import pytest

from dppspace.contracts import (
    ContractStore,
    Negotiation,
    NegotiationRole,
    Offer,
    reconcile_agreements,
)
from dppspace.exceptions import (
    AlreadySettledError,
    NotFoundError,
    PolicyConflictError,
    StorageError,
)
from dppspace.policy import Action, PolicyRule, UsagePolicy
from dppspace.storage import MemoryStorageProvider

from conftest import T0

CONSUMER = "urn:dpp:party:recycler"
PROVIDER = "urn:dpp:party:cellmaker"
RESOURCE = "urn:dpp:passport:battery-42"


def _negotiation(role=NegotiationRole.CONSUMER, negotiation_id="neg-1"):
    return Negotiation(
        negotiation_id=negotiation_id,
        consumer=CONSUMER,
        provider=PROVIDER,
        role=role,
        resource_ref=RESOURCE,
        deadline=T0 + timedelta(minutes=5),
    )


@pytest.fixture
def policy():
    return UsagePolicy(rules=(PolicyRule.permission(Action.READ, "materials"),))


@pytest.fixture
async def store():
    store = ContractStore(MemoryStorageProvider(), namespace=CONSUMER)
    await store.put(_negotiation())
    return store


class TestNegotiations:
    @pytest.mark.asyncio
    async def test_get_returns_independent_copy(self, store):
        first = await store.get("neg-1")
        first.seen_messages.append("offer:x")
        second = await store.get("neg-1")
        assert second.seen_messages == []

    @pytest.mark.asyncio
    async def test_put_round_trip_keeps_offers(self, store, policy):
        negotiation = await store.get("neg-1")
        negotiation.offers.append(
            Offer(negotiation_id="neg-1", proposer=CONSUMER, policy=policy, resource_ref=RESOURCE)
        )
        await store.put(negotiation)
        loaded = await store.get("neg-1")
        assert loaded.last_offer.policy.content_hash() == policy.content_hash()
        assert loaded.peer == PROVIDER

    @pytest.mark.asyncio
    async def test_unknown_negotiation(self, store):
        with pytest.raises(NotFoundError):
            await store.get("neg-missing")
        assert not await store.exists("neg-missing")
        assert await store.exists("neg-1")

    @pytest.mark.asyncio
    async def test_list_negotiations(self, store):
        await store.put(_negotiation(negotiation_id="neg-2"))
        ids = [n.negotiation_id for n in await store.list_negotiations()]
        assert ids == ["neg-1", "neg-2"]

    @pytest.mark.asyncio
    async def test_namespaces_are_isolated(self):
        storage = MemoryStorageProvider()
        consumer = ContractStore(storage, namespace="consumer")
        provider = ContractStore(storage, namespace="provider")
        await consumer.put(_negotiation())
        assert not await provider.exists("neg-1")

    @pytest.mark.asyncio
    async def test_corrupt_record_raises_storage_error(self):
        storage = MemoryStorageProvider()
        store = ContractStore(storage, namespace="p")
        await storage.set("contracts:p:negotiation:neg-bad", "{not json")
        with pytest.raises(StorageError):
            await store.get("neg-bad")


class TestSettlement:
    @pytest.mark.asyncio
    async def test_settle_copies_policy(self, store, policy):
        agreement = await store.settle_agreement("neg-1", policy, agreement_id="agr-1", signed_at=T0)
        assert agreement.agreement_id == "agr-1"
        assert agreement.consumer == CONSUMER
        assert agreement.provider == PROVIDER
        assert agreement.resource_ref == RESOURCE
        assert agreement.signed_at == T0
        assert agreement.policy == policy
        assert agreement.policy is not policy
        assert await store.get_agreement("agr-1") is agreement

    @pytest.mark.asyncio
    async def test_second_settlement_rejected(self, store, policy):
        await store.settle_agreement("neg-1", policy, agreement_id="agr-1")
        with pytest.raises(AlreadySettledError) as exc_info:
            await store.settle_agreement("neg-1", policy, agreement_id="agr-2")
        assert exc_info.value.agreement_id == "agr-1"
        with pytest.raises(NotFoundError):
            await store.get_agreement("agr-2")

    @pytest.mark.asyncio
    async def test_concurrent_settlement_yields_one_agreement(self, store, policy):
        results = await asyncio.gather(
            *(store.settle_agreement("neg-1", policy) for _ in range(5)),
            return_exceptions=True,
        )
        settled = [r for r in results if not isinstance(r, Exception)]
        errors = [r for r in results if isinstance(r, AlreadySettledError)]
        assert len(settled) == 1
        assert len(errors) == 4
        assert [a.agreement_id for a in await store.list_agreements()] == [settled[0].agreement_id]

    @pytest.mark.asyncio
    async def test_settle_unknown_negotiation(self, store, policy):
        with pytest.raises(NotFoundError):
            await store.settle_agreement("neg-missing", policy)

    @pytest.mark.asyncio
    async def test_find_agreement(self, store, policy):
        assert await store.find_agreement("neg-1") is None
        agreement = await store.settle_agreement("neg-1", policy)
        assert (await store.find_agreement("neg-1")).agreement_id == agreement.agreement_id

    @pytest.mark.asyncio
    async def test_agreement_survives_new_store_instance(self, policy):
        storage = MemoryStorageProvider()
        first = ContractStore(storage, namespace="p")
        await first.put(_negotiation())
        await first.settle_agreement("neg-1", policy, agreement_id="agr-1")

        second = ContractStore(storage, namespace="p")
        loaded = await second.get_agreement("agr-1")
        assert loaded.policy_hash() == policy.content_hash()


class TestReconcile:
    @pytest.mark.asyncio
    async def test_matching_hash(self, store, policy):
        await store.settle_agreement("neg-1", policy)
        agreement = await store.reconcile("neg-1", policy.content_hash())
        assert agreement.negotiation_id == "neg-1"

    @pytest.mark.asyncio
    async def test_mismatched_hash(self, store, policy):
        await store.settle_agreement("neg-1", policy)
        with pytest.raises(PolicyConflictError) as exc_info:
            await store.reconcile("neg-1", "0" * 64)
        assert exc_info.value.local_hash == policy.content_hash()

    @pytest.mark.asyncio
    async def test_reconcile_without_agreement(self, store):
        with pytest.raises(NotFoundError):
            await store.reconcile("neg-1", "0" * 64)
        with pytest.raises(NotFoundError):
            await store.policy_hash("neg-1")

    @pytest.mark.asyncio
    async def test_reconcile_agreements_across_parties(self, store, policy):
        remote = ContractStore(MemoryStorageProvider(), namespace=PROVIDER)
        await remote.put(_negotiation(role=NegotiationRole.PROVIDER))
        await store.settle_agreement("neg-1", policy, agreement_id="agr-1")
        await remote.settle_agreement("neg-1", policy.derive(), agreement_id="agr-1")
        assert (await reconcile_agreements(store, remote, "neg-1")).agreement_id == "agr-1"

    @pytest.mark.asyncio
    async def test_reconcile_agreements_detects_divergence(self, store, policy):
        remote = ContractStore(MemoryStorageProvider(), namespace=PROVIDER)
        await remote.put(_negotiation(role=NegotiationRole.PROVIDER))
        await store.settle_agreement("neg-1", policy)
        wider = policy.derive(rules=[PolicyRule.permission(Action.READ)])
        await remote.settle_agreement("neg-1", wider)
        with pytest.raises(PolicyConflictError):
            await reconcile_agreements(store, remote, "neg-1")
