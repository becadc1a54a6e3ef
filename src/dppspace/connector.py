# Copyright (c) DPP Dataspace Contributors. All rights reserved.
# Licensed under the MIT License.
"""
Dataspace Connector

Wires one stakeholder's contract store, negotiation manager, enforcement
gate, transport, audit log and event bus together.

Usage:
    network = InMemoryNetwork()
    recycler = DataspaceConnector("urn:dpp:party:recycler", network.endpoint("urn:dpp:party:recycler"))
    cellmaker = DataspaceConnector(
        "urn:dpp:party:cellmaker",
        network.endpoint("urn:dpp:party:cellmaker"),
        catalogue=PolicyCatalogue.load("catalogue.yaml"),
    )
    await recycler.start(); await cellmaker.start()
    negotiation = await recycler.negotiate(cellmaker.party, "urn:dpp:passport:battery-42", policy)
    await run_until_quiet(recycler, cellmaker)
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional, Union

from dppspace.config import ConnectorConfig
from dppspace.constants import DEFAULT_COUNTER_OFFER_BUDGET, DEFAULT_NEGOTIATION_TTL_SECONDS
from dppspace.contracts.models import Agreement, Clock, Negotiation, utcnow
from dppspace.contracts.store import ContractStore
from dppspace.enforcement.gate import EnforcementGate, Loader, ReleaseResult
from dppspace.events.bus import EventBus, InMemoryEventBus
from dppspace.exceptions import ConfigurationError, PolicyConflictError, TransportError
from dppspace.governance.audit import AuditLog
from dppspace.negotiation.manager import NegotiationManager
from dppspace.negotiation.messages import decode_message
from dppspace.negotiation.strategy import (
    AcceptWhenGranted,
    CatalogueStrategy,
    ManualStrategy,
    NegotiationStrategy,
    RoleStrategy,
)
from dppspace.policy.catalogue import PolicyCatalogue
from dppspace.policy.evaluator import Decision
from dppspace.policy.model import Action, UsagePolicy
from dppspace.storage import AbstractStorageProvider, MemoryStorageProvider, create_storage_provider
from dppspace.transport.base import Payload, Transport
from dppspace.transport.websocket import WebSocketTransport

logger = logging.getLogger(__name__)


class DataspaceConnector:
    """
    One stakeholder's connector.

    Args:
        party: Identifier of the stakeholder.
        transport: Transport addressed as ``party``.
        storage: Backend for the contract store; in-memory by default.
        catalogue: Acceptance catalogue answering offers as provider.
        strategy: Overrides the default role-based strategy.
        audit: Audit sink shared by negotiation and enforcement.
        events: Event bus shared by negotiation and enforcement.
        clock: Source of the current time.
        counter_offer_budget: Counter-offers allowed per negotiation.
        negotiation_ttl_seconds: Default and maximum negotiation lifetime.
        namespace: Store key prefix; defaults to ``party``.
    """

    def __init__(
        self,
        party: str,
        transport: Transport,
        storage: Optional[AbstractStorageProvider] = None,
        catalogue: Optional[PolicyCatalogue] = None,
        strategy: Optional[NegotiationStrategy] = None,
        audit: Optional[AuditLog] = None,
        events: Optional[EventBus] = None,
        clock: Optional[Clock] = None,
        counter_offer_budget: int = DEFAULT_COUNTER_OFFER_BUDGET,
        negotiation_ttl_seconds: int = DEFAULT_NEGOTIATION_TTL_SECONDS,
        namespace: Optional[str] = None,
    ):
        if transport.party and transport.party != party:
            raise ConfigurationError(
                f"Transport is addressed as {transport.party}, not {party}"
            )
        self.party = party
        self.transport = transport
        self.catalogue = catalogue
        self._storage = storage or MemoryStorageProvider()
        self._clock = clock or utcnow
        self.audit = audit or AuditLog(clock=self._clock)
        self.events = events or InMemoryEventBus()
        self.store = ContractStore(self._storage, namespace=namespace or party)

        if strategy is None:
            strategy = RoleStrategy(
                provider=CatalogueStrategy(catalogue) if catalogue is not None else ManualStrategy(),
                consumer=AcceptWhenGranted(),
            )
        self.manager = NegotiationManager(
            party,
            self.store,
            transport,
            strategy=strategy,
            audit=self.audit,
            events=self.events,
            clock=self._clock,
            counter_offer_budget=counter_offer_budget,
            negotiation_ttl_seconds=negotiation_ttl_seconds,
        )
        self.gate = EnforcementGate(
            self.store,
            party=party,
            audit=self.audit,
            events=self.events,
            clock=self._clock,
        )
        self.conflicts: list[PolicyConflictError] = []
        self._receive_task: Optional[asyncio.Task[None]] = None

    @classmethod
    def from_config(
        cls,
        config: ConnectorConfig,
        transport: Optional[Transport] = None,
        catalogue: Optional[PolicyCatalogue] = None,
        clock: Optional[Clock] = None,
    ) -> "DataspaceConnector":
        """Build a connector from its configuration.

        An in-memory transport cannot be built from configuration alone and
        must be passed in.
        """
        if transport is None:
            if config.transport.backend != "websocket":
                raise ConfigurationError("An in-memory transport must be passed explicitly")
            transport = WebSocketTransport(
                config.transport.to_transport_config(config.party),
                heartbeat_interval=config.transport.heartbeat_interval,
            )
        if catalogue is None and config.catalogue:
            catalogue = PolicyCatalogue.load(config.catalogue)
        try:
            storage = create_storage_provider(config.storage)
        except ValueError as e:
            raise ConfigurationError(str(e)) from e
        return cls(
            config.party,
            transport,
            storage=storage,
            catalogue=catalogue,
            clock=clock,
            counter_offer_budget=config.counter_offer_budget,
            negotiation_ttl_seconds=config.negotiation_ttl_seconds,
            namespace=config.store_namespace,
        )

    # ── Lifecycle ─────────────────────────────────────────────

    async def start(self, listen: bool = False) -> None:
        """Connect storage and transport.

        Args:
            listen: Also start a background task applying incoming messages.
                Without it, call ``drain`` to process pending messages.
        """
        await self._storage.connect()
        await self.transport.connect()
        if listen and self._receive_task is None:
            self._receive_task = asyncio.create_task(self._receive_loop())
        logger.info("Connector %s started", self.party)

    async def stop(self) -> None:
        if self._receive_task is not None:
            self._receive_task.cancel()
            try:
                await self._receive_task
            except asyncio.CancelledError:
                pass
            self._receive_task = None
        await self.transport.disconnect()
        await self._storage.disconnect()
        logger.info("Connector %s stopped", self.party)

    async def __aenter__(self) -> "DataspaceConnector":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    # ── Messages ──────────────────────────────────────────────

    async def handle(self, payload: Payload) -> Optional[Negotiation]:
        """Decode and apply one delivered message.

        Malformed documents are logged and dropped.

        Raises:
            PolicyConflictError: If the peer settled different policy content.
        """
        try:
            message = decode_message(payload)
        except TransportError as e:
            logger.warning("Connector %s dropped a malformed message: %s", self.party, e)
            return None
        try:
            return await self.manager.receive(message)
        except PolicyConflictError as e:
            self.conflicts.append(e)
            raise

    async def drain(self) -> int:
        """Apply every message already delivered to this connector.

        Returns:
            Number of messages processed.
        """
        processed = 0
        while self.transport.pending():
            payload = await self.transport.receive()
            await self.handle(payload)
            processed += 1
        return processed

    async def _receive_loop(self) -> None:
        while True:
            payload = await self.transport.receive()
            try:
                await self.handle(payload)
            except PolicyConflictError:
                logger.error("Connector %s recorded a policy conflict; operator action required", self.party)
            except Exception:
                logger.exception("Connector %s failed to apply a message", self.party)

    # ── Negotiation ───────────────────────────────────────────

    async def negotiate(
        self,
        provider: str,
        resource_ref: str,
        policy: UsagePolicy,
        ttl_seconds: Optional[int] = None,
    ) -> Negotiation:
        """Request ``resource_ref`` from ``provider`` under ``policy``."""
        return await self.manager.request(provider, resource_ref, policy, ttl_seconds)

    async def agreement_for(self, negotiation_id: str) -> Optional[Agreement]:
        return await self.store.find_agreement(negotiation_id)

    # ── Enforcement ───────────────────────────────────────────

    async def authorize(
        self,
        agreement_id: str,
        action: Union[Action, str],
        target: Optional[str] = None,
        context: Optional[dict[str, Any]] = None,
        requesting_party: Optional[str] = None,
    ) -> Decision:
        return await self.gate.authorize(agreement_id, action, target, context, requesting_party)

    async def release(
        self,
        agreement_id: str,
        action: Union[Action, str],
        target: Optional[str],
        loader: Loader,
        context: Optional[dict[str, Any]] = None,
        requesting_party: Optional[str] = None,
    ) -> ReleaseResult:
        return await self.gate.release(agreement_id, action, target, loader, context, requesting_party)


async def run_until_quiet(*connectors: DataspaceConnector, max_rounds: int = 1000) -> int:
    """Drain the given connectors until no message is pending anywhere.

    Returns:
        Total number of messages processed.

    Raises:
        TransportError: If traffic does not settle within ``max_rounds``.
    """
    total = 0
    for _ in range(max_rounds):
        processed = 0
        for connector in connectors:
            processed += await connector.drain()
        total += processed
        if processed == 0:
            return total
    raise TransportError(f"Connectors still busy after {max_rounds} rounds")
