# Copyright (c) DPP Dataspace Contributors. All rights reserved.
# Licensed under the MIT License.
"""Abstract transport interface between dataspace connectors.

The negotiation core depends only on this narrow send/receive contract.
Payloads are JSON documents; no object is ever shared between parties.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

Payload = dict[str, Any]
PayloadCallback = Callable[[Payload], Awaitable[None]]


class TransportState(str, Enum):
    """Transport connection state."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


@dataclass
class TransportConfig:
    """Configuration for a transport backend.

    Args:
        party: Identifier this connector is addressed by.
        host: Relay hostname or IP address.
        port: Relay port number.
        use_tls: Whether to use TLS encryption.
        timeout_seconds: Connection and operation timeout.
        max_retries: Maximum reconnection attempts.
        retry_delay_seconds: Base delay between reconnection attempts.
        metadata: Additional transport-specific configuration.
    """

    party: str = ""
    host: str = "localhost"
    port: int = 8765
    use_tls: bool = False
    timeout_seconds: int = 30
    max_retries: int = 5
    retry_delay_seconds: float = 1.0
    metadata: dict[str, str] = field(default_factory=dict)

    @property
    def uri(self) -> str:
        """Build connection URI from host and port."""
        return f"{self.host}:{self.port}"


class Transport(ABC):
    """Abstract base class for connector transports.

    Implementations may reorder or duplicate deliveries; the negotiation
    manager is idempotent under both.
    """

    def __init__(self, config: TransportConfig) -> None:
        """Initialize transport with configuration."""
        self.config = config
        self._state = TransportState.DISCONNECTED
        self._subscribers: list[PayloadCallback] = []

    @property
    def party(self) -> str:
        return self.config.party

    @property
    def state(self) -> TransportState:
        """Current transport connection state."""
        return self._state

    @property
    def is_connected(self) -> bool:
        """Whether the transport is currently connected."""
        return self._state == TransportState.CONNECTED

    @abstractmethod
    async def connect(self) -> None:
        """Establish the connection.

        Raises:
            TransportError: If the connection cannot be established.
        """

    @abstractmethod
    async def disconnect(self) -> None:
        """Gracefully close the connection."""

    @abstractmethod
    async def send(self, recipient: str, payload: Payload) -> None:
        """Deliver a message document to another party.

        Args:
            recipient: Party the message is addressed to.
            payload: Message document.

        Raises:
            TransportError: If not connected or the recipient is unreachable.
        """

    @abstractmethod
    async def receive(self, timeout: Optional[float] = None) -> Payload:
        """Receive the next message addressed to this party.

        Args:
            timeout: Maximum seconds to wait. None means wait forever.

        Raises:
            TimeoutError: If timeout expires before a message arrives.
            TransportError: If not connected.
        """

    def pending(self) -> int:
        """Number of received messages waiting for ``receive``."""
        return 0

    def subscribe(self, callback: PayloadCallback) -> None:
        """Register an async callback invoked with every delivered payload."""
        self._subscribers.append(callback)

    def unsubscribe(self, callback: PayloadCallback) -> None:
        self._subscribers = [cb for cb in self._subscribers if cb is not callback]

    async def _notify_subscribers(self, payload: Payload) -> None:
        for callback in list(self._subscribers):
            await callback(payload)


__all__ = [
    "Payload",
    "PayloadCallback",
    "Transport",
    "TransportConfig",
    "TransportState",
]
