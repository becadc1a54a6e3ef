# Copyright (c) DPP Dataspace Contributors. All rights reserved.
# Licensed under the MIT License.
"""WebSocket transport through a message relay.

The connector registers with the relay under its party identifier and
exchanges frames of the form ``{"type": "send", "recipient", "payload"}``
outbound and ``{"type": "deliver", "sender", "payload"}`` inbound.
Heartbeats keep the connection alive; a dropped connection is
re-established with exponential back-off.

Requires the ``websockets`` library::

    pip install dppspace[websocket]
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Optional

from dppspace.exceptions import TransportError

from .base import Payload, Transport, TransportConfig, TransportState

logger = logging.getLogger(__name__)

try:
    import websockets
    from websockets.asyncio.client import ClientConnection, connect

    HAS_WEBSOCKETS = True
except ImportError:  # pragma: no cover
    HAS_WEBSOCKETS = False
    websockets = None  # type: ignore[assignment]


def _require_websockets() -> None:
    """Raise if the websockets library is not installed."""
    if not HAS_WEBSOCKETS:
        raise ImportError(
            "The 'websockets' package is required for WebSocket transport. "
            "Install it with: pip install dppspace[websocket]"
        )


class WebSocketTransport(Transport):
    """WebSocket relay client with heartbeat and auto-reconnect.

    Args:
        config: Transport configuration; ``party`` is the relay address.
        heartbeat_interval: Seconds between heartbeat pings. 0 to disable.
    """

    def __init__(
        self,
        config: TransportConfig,
        heartbeat_interval: float = 30.0,
    ) -> None:
        _require_websockets()
        if not config.party:
            raise TransportError("WebSocket transport requires a party")
        super().__init__(config)
        self.heartbeat_interval = heartbeat_interval
        self._ws: Optional[ClientConnection] = None
        self._receive_queue: asyncio.Queue[Payload] = asyncio.Queue()
        self._heartbeat_task: Optional[asyncio.Task[None]] = None
        self._listener_task: Optional[asyncio.Task[None]] = None
        self._reconnect_task: Optional[asyncio.Task[None]] = None
        self._should_reconnect = True
        self._last_pong: float = 0.0

    # -- Connection lifecycle --------------------------------------------------

    async def connect(self) -> None:
        """Open the relay connection and register this party."""
        self._state = TransportState.CONNECTING
        scheme = "wss" if self.config.use_tls else "ws"
        uri = f"{scheme}://{self.config.uri}"
        try:
            self._ws = await connect(uri, open_timeout=self.config.timeout_seconds)
            await self._ws.send(json.dumps({"type": "hello", "party": self.party}))
        except Exception as e:
            self._state = TransportState.DISCONNECTED
            raise TransportError(f"Failed to connect to {uri}") from e

        self._state = TransportState.CONNECTED
        self._should_reconnect = True
        self._last_pong = time.monotonic()
        self._listener_task = asyncio.create_task(self._listen())
        if self.heartbeat_interval > 0:
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        logger.info("WebSocket connected to %s as %s", uri, self.party)

    async def disconnect(self) -> None:
        """Gracefully close the relay connection."""
        self._should_reconnect = False
        if self._heartbeat_task and not self._heartbeat_task.done():
            self._heartbeat_task.cancel()
        if self._listener_task and not self._listener_task.done():
            self._listener_task.cancel()
        if self._reconnect_task and not self._reconnect_task.done():
            self._reconnect_task.cancel()
        if self._ws:
            await self._ws.close()
            self._ws = None
        self._state = TransportState.DISCONNECTED
        logger.info("WebSocket disconnected")

    # -- Send / Receive --------------------------------------------------------

    async def send(self, recipient: str, payload: Payload) -> None:
        if not self.is_connected or self._ws is None:
            raise TransportError("WebSocket is not connected")
        frame = json.dumps({"type": "send", "recipient": recipient, "payload": payload})
        await self._ws.send(frame)

    async def receive(self, timeout: Optional[float] = None) -> Payload:
        if not self.is_connected:
            raise TransportError("WebSocket is not connected")
        try:
            return await asyncio.wait_for(self._receive_queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            raise TimeoutError("No message received within timeout")

    def pending(self) -> int:
        return self._receive_queue.qsize()

    # -- Internal: listener / heartbeat / reconnect ----------------------------

    async def _handle_frame(self, raw: Any) -> None:
        try:
            frame = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            logger.warning("Received non-JSON frame, ignoring")
            return
        if not isinstance(frame, dict) or frame.get("type") != "deliver":
            logger.debug("Ignoring relay frame %r", frame.get("type") if isinstance(frame, dict) else frame)
            return
        payload = frame.get("payload")
        if not isinstance(payload, dict):
            logger.warning("Relay delivered a frame without payload from %s", frame.get("sender"))
            return
        await self._notify_subscribers(payload)
        await self._receive_queue.put(payload)

    async def _listen(self) -> None:
        """Background task that reads frames from the relay."""
        try:
            assert self._ws is not None  # noqa: S101
            async for raw in self._ws:
                await self._handle_frame(raw)
        except asyncio.CancelledError:
            return
        except Exception:
            logger.warning("WebSocket listener disconnected")
            if self._should_reconnect:
                self._state = TransportState.RECONNECTING
                self._reconnect_task = asyncio.create_task(self._auto_reconnect())

    async def _heartbeat_loop(self) -> None:
        """Periodically send ping frames to keep the connection alive."""
        try:
            while self.is_connected and self._ws is not None:
                await asyncio.sleep(self.heartbeat_interval)
                if self._ws is not None and self.is_connected:
                    pong = await self._ws.ping()
                    await asyncio.wait_for(pong, timeout=self.config.timeout_seconds)
                    self._last_pong = time.monotonic()
        except asyncio.CancelledError:
            return
        except Exception:
            logger.warning("Heartbeat failed, triggering reconnect")
            if self._should_reconnect:
                self._state = TransportState.RECONNECTING
                self._reconnect_task = asyncio.create_task(self._auto_reconnect())

    async def _auto_reconnect(self) -> None:
        """Attempt to reconnect with exponential back-off."""
        for attempt in range(1, self.config.max_retries + 1):
            delay = self.config.retry_delay_seconds * (2 ** (attempt - 1))
            logger.info("Reconnect attempt %d/%d in %.1fs", attempt, self.config.max_retries, delay)
            await asyncio.sleep(delay)
            try:
                await self.connect()
                logger.info("Reconnected on attempt %d", attempt)
                return
            except TransportError:
                continue
        self._state = TransportState.DISCONNECTED
        logger.error("Failed to reconnect after %d attempts", self.config.max_retries)


__all__ = [
    "WebSocketTransport",
    "HAS_WEBSOCKETS",
]
