# Copyright (c) DPP Dataspace Contributors. All rights reserved.
# Licensed under the MIT License.
"""In-process network for simulations and tests.

Every delivery is serialised to JSON and parsed again on the receiving
side, so two connectors in one process never share an object. The
network can duplicate and reorder deliveries to exercise the
negotiation protocol under an unreliable transport.
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
from typing import Any, Optional

from dppspace.exceptions import TransportError

from .base import Payload, Transport, TransportConfig, TransportState

logger = logging.getLogger(__name__)


class _Inbox:
    """Ordered mailbox of JSON documents for one party."""

    def __init__(self) -> None:
        self._items: list[str] = []
        self._ready = asyncio.Condition()

    def __len__(self) -> int:
        return len(self._items)

    async def put(self, document: str, position: Optional[int] = None) -> None:
        async with self._ready:
            if position is None:
                self._items.append(document)
            else:
                self._items.insert(position, document)
            self._ready.notify()

    async def get(self) -> str:
        async with self._ready:
            await self._ready.wait_for(lambda: bool(self._items))
            return self._items.pop(0)


class InMemoryNetwork:
    """
    Message fabric shared by the in-memory transports of one simulation.

    Args:
        duplicate: Deliver every message twice.
        reorder: Insert each delivery at a random position of the inbox.
        seed: Seed for the reordering RNG, for reproducible runs.
    """

    def __init__(self, duplicate: bool = False, reorder: bool = False, seed: Optional[int] = None) -> None:
        self.duplicate = duplicate
        self.reorder = reorder
        self._rng = random.Random(seed)
        self._inboxes: dict[str, _Inbox] = {}
        self.history: list[dict[str, Any]] = []

    def endpoint(self, party: str) -> "InMemoryTransport":
        """Create a transport addressed as ``party`` on this network."""
        return InMemoryTransport(self, TransportConfig(party=party))

    def parties(self) -> list[str]:
        return sorted(self._inboxes)

    def pending(self, party: Optional[str] = None) -> int:
        """Undelivered messages for ``party``, or for the whole network."""
        if party is not None:
            inbox = self._inboxes.get(party)
            return len(inbox) if inbox is not None else 0
        return sum(len(inbox) for inbox in self._inboxes.values())

    def _attach(self, party: str) -> _Inbox:
        if party in self._inboxes:
            raise TransportError(f"Party {party} is already attached")
        inbox = _Inbox()
        self._inboxes[party] = inbox
        return inbox

    def _detach(self, party: str) -> None:
        self._inboxes.pop(party, None)

    async def deliver(self, sender: str, recipient: str, payload: Payload) -> None:
        inbox = self._inboxes.get(recipient)
        if inbox is None:
            raise TransportError(f"Party {recipient} is not reachable")
        try:
            document = json.dumps(payload)
        except (TypeError, ValueError) as e:
            raise TransportError(f"Payload is not a JSON document: {e}") from e

        self.history.append({"sender": sender, "recipient": recipient, "payload": json.loads(document)})
        copies = 2 if self.duplicate else 1
        for _ in range(copies):
            position = self._rng.randint(0, len(inbox)) if self.reorder else None
            await inbox.put(document, position)
        logger.debug("Delivered %s from %s to %s", payload.get("type"), sender, recipient)


class InMemoryTransport(Transport):
    """Transport endpoint of one party on an ``InMemoryNetwork``."""

    def __init__(self, network: InMemoryNetwork, config: TransportConfig) -> None:
        if not config.party:
            raise TransportError("In-memory transport requires a party")
        super().__init__(config)
        self._network = network
        self._inbox: Optional[_Inbox] = None

    @property
    def network(self) -> InMemoryNetwork:
        return self._network

    async def connect(self) -> None:
        if self.is_connected:
            return
        self._inbox = self._network._attach(self.party)
        self._state = TransportState.CONNECTED

    async def disconnect(self) -> None:
        self._network._detach(self.party)
        self._inbox = None
        self._state = TransportState.DISCONNECTED

    async def send(self, recipient: str, payload: Payload) -> None:
        if not self.is_connected:
            raise TransportError("In-memory transport is not connected")
        await self._network.deliver(self.party, recipient, payload)

    async def receive(self, timeout: Optional[float] = None) -> Payload:
        if not self.is_connected or self._inbox is None:
            raise TransportError("In-memory transport is not connected")
        try:
            document = await asyncio.wait_for(self._inbox.get(), timeout=timeout)
        except asyncio.TimeoutError:
            raise TimeoutError("No message received within timeout")
        payload = json.loads(document)
        await self._notify_subscribers(payload)
        return payload

    def pending(self) -> int:
        return len(self._inbox) if self._inbox is not None else 0


__all__ = [
    "InMemoryNetwork",
    "InMemoryTransport",
]
