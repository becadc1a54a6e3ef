"""
Contract Store

Per-party store of negotiations and agreements on top of a storage
provider. Agreements are write-once: settlement claims a per-negotiation
index key with an atomic set-if-absent, so concurrent attempts yield one
agreement and ``AlreadySettledError`` for everyone else.

Usage:
    store = ContractStore(MemoryStorageProvider(), namespace="recycler")
    await store.put(negotiation)
    agreement = await store.settle_agreement(negotiation.negotiation_id, policy)
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional
import logging

from pydantic import ValidationError

from dppspace.constants import DEFAULT_STORE_NAMESPACE
from dppspace.exceptions import (
    AlreadySettledError,
    NotFoundError,
    PolicyConflictError,
    StorageError,
)
from dppspace.policy.model import UsagePolicy
from dppspace.storage.memory_provider import MemoryStorageProvider
from dppspace.storage.provider import AbstractStorageProvider

from .models import Agreement, Negotiation, new_agreement_id, utcnow

logger = logging.getLogger(__name__)


class ContractStore:
    """
    Negotiation and agreement records of one party.

    Negotiations are returned as fresh copies on every ``get``; callers
    mutate their copy and ``put`` it back. Agreements are immutable and
    cached in process once seen, so repeated enforcement lookups never
    touch the backend.
    """

    def __init__(
        self,
        storage: Optional[AbstractStorageProvider] = None,
        namespace: str = DEFAULT_STORE_NAMESPACE,
    ):
        """Initialise the contract store.

        Args:
            storage: Backend implementing ``AbstractStorageProvider``.
                Defaults to an in-memory provider.
            namespace: Key prefix isolating this party's records.
        """
        self._storage = storage or MemoryStorageProvider()
        self._namespace = namespace
        self._agreements: dict[str, Agreement] = {}

    @property
    def namespace(self) -> str:
        return self._namespace

    # ── Keys ──────────────────────────────────────────────────

    def _negotiation_key(self, negotiation_id: str) -> str:
        return f"contracts:{self._namespace}:negotiation:{negotiation_id}"

    def _agreement_key(self, agreement_id: str) -> str:
        return f"contracts:{self._namespace}:agreement:{agreement_id}"

    def _settled_key(self, negotiation_id: str) -> str:
        return f"contracts:{self._namespace}:settled:{negotiation_id}"

    # ── Negotiations ──────────────────────────────────────────

    async def put(self, negotiation: Negotiation) -> None:
        """Persist the given copy of a negotiation."""
        negotiation.updated_at = utcnow()
        await self._storage.set(
            self._negotiation_key(negotiation.negotiation_id),
            negotiation.model_dump_json(),
        )

    async def get(self, negotiation_id: str) -> Negotiation:
        """Load a negotiation.

        Raises:
            NotFoundError: If the negotiation is unknown to this party.
        """
        raw = await self._storage.get(self._negotiation_key(negotiation_id))
        if raw is None:
            raise NotFoundError(f"Negotiation {negotiation_id} not found")
        return self._decode(Negotiation, raw)

    async def exists(self, negotiation_id: str) -> bool:
        return await self._storage.exists(self._negotiation_key(negotiation_id))

    async def list_negotiations(self) -> list[Negotiation]:
        keys = sorted(await self._storage.keys(self._negotiation_key("*")))
        values = await self._storage.mget(keys)
        return [self._decode(Negotiation, raw) for raw in values if raw is not None]

    # ── Agreements ────────────────────────────────────────────

    async def settle_agreement(
        self,
        negotiation_id: str,
        policy: UsagePolicy,
        agreement_id: Optional[str] = None,
        signed_at: Optional[datetime] = None,
    ) -> Agreement:
        """Materialise the agreement of a negotiation exactly once.

        Args:
            negotiation_id: The negotiation being settled.
            policy: The last accepted offer's policy, copied by value.
            agreement_id: Id chosen by the accepting party; generated if omitted.
            signed_at: Signing time; defaults to now.

        Returns:
            The new ``Agreement``.

        Raises:
            NotFoundError: If the negotiation is unknown.
            AlreadySettledError: If an agreement already exists for it.
        """
        negotiation = await self.get(negotiation_id)
        agreement = Agreement(
            agreement_id=agreement_id or new_agreement_id(),
            negotiation_id=negotiation_id,
            policy=policy.model_copy(deep=True),
            consumer=negotiation.consumer,
            provider=negotiation.provider,
            resource_ref=negotiation.resource_ref,
            signed_at=signed_at or utcnow(),
        )

        if not await self._storage.set_if_absent(
            self._settled_key(negotiation_id), agreement.agreement_id
        ):
            existing = await self._storage.get(self._settled_key(negotiation_id))
            raise AlreadySettledError(negotiation_id, existing)

        await self._storage.set(
            self._agreement_key(agreement.agreement_id), agreement.model_dump_json()
        )
        self._agreements[agreement.agreement_id] = agreement
        logger.info(
            "Settled agreement %s for negotiation %s (policy %s)",
            agreement.agreement_id,
            negotiation_id,
            agreement.policy_hash()[:12],
        )
        return agreement

    async def get_agreement(self, agreement_id: str) -> Agreement:
        """Load an agreement by id.

        Raises:
            NotFoundError: If no such agreement was settled by this party.
        """
        cached = self._agreements.get(agreement_id)
        if cached is not None:
            return cached
        raw = await self._storage.get(self._agreement_key(agreement_id))
        if raw is None:
            raise NotFoundError(f"Agreement {agreement_id} not found")
        agreement = self._decode(Agreement, raw)
        self._agreements[agreement_id] = agreement
        return agreement

    async def find_agreement(self, negotiation_id: str) -> Optional[Agreement]:
        """Return the agreement settled for a negotiation, if any."""
        agreement_id = await self._storage.get(self._settled_key(negotiation_id))
        if agreement_id is None:
            return None
        try:
            return await self.get_agreement(agreement_id)
        except NotFoundError:
            # Index claimed but record not yet written by a concurrent settler.
            return None

    async def policy_hash(self, negotiation_id: str) -> str:
        """Content hash of the policy settled for a negotiation.

        Raises:
            NotFoundError: If the negotiation has no agreement.
        """
        agreement = await self.find_agreement(negotiation_id)
        if agreement is None:
            raise NotFoundError(f"Negotiation {negotiation_id} has no agreement")
        return agreement.policy_hash()

    async def reconcile(self, negotiation_id: str, peer_policy_hash: str) -> Agreement:
        """Compare the local agreement against the peer's policy hash.

        Raises:
            NotFoundError: If the negotiation has no local agreement.
            PolicyConflictError: If the hashes differ.
        """
        agreement = await self.find_agreement(negotiation_id)
        if agreement is None:
            raise NotFoundError(f"Negotiation {negotiation_id} has no agreement")
        local_hash = agreement.policy_hash()
        if local_hash != peer_policy_hash:
            logger.error(
                "Policy conflict on negotiation %s: local %s, peer %s",
                negotiation_id,
                local_hash[:12],
                peer_policy_hash[:12],
            )
            raise PolicyConflictError(negotiation_id, local_hash, peer_policy_hash)
        return agreement

    async def list_agreements(self) -> list[Agreement]:
        keys = sorted(await self._storage.keys(self._agreement_key("*")))
        values = await self._storage.mget(keys)
        return [self._decode(Agreement, raw) for raw in values if raw is not None]

    # ── Helpers ───────────────────────────────────────────────

    @staticmethod
    def _decode(model, raw: str):
        try:
            return model.model_validate_json(raw)
        except ValidationError as e:
            raise StorageError(f"Corrupt {model.__name__} record: {e}") from e


async def reconcile_agreements(
    local: ContractStore,
    remote: ContractStore,
    negotiation_id: str,
) -> Agreement:
    """Check that two parties settled identical policy content.

    Raises:
        NotFoundError: If either side has no agreement for the negotiation.
        PolicyConflictError: If the settled policies differ.
    """
    return await local.reconcile(negotiation_id, await remote.policy_hash(negotiation_id))
