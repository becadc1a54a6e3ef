"""dppspace Transport Layer.

Provides the abstract transport contract, an in-process network for
simulations and a WebSocket relay client.
"""

from .base import Payload, PayloadCallback, Transport, TransportConfig, TransportState
from .memory import InMemoryNetwork, InMemoryTransport
from .websocket import HAS_WEBSOCKETS, WebSocketTransport

__all__ = [
    "Payload",
    "PayloadCallback",
    "Transport",
    "TransportConfig",
    "TransportState",
    "InMemoryNetwork",
    "InMemoryTransport",
    "HAS_WEBSOCKETS",
    "WebSocketTransport",
]
