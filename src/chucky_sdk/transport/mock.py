"""In-memory transport for tests and embedding.

No actual I/O: outbound envelopes are recorded, and inbound envelopes are
injected by the test or scripted by a responder.

Usage:
    def responder(envelope: Envelope) -> list[Envelope]:
        if envelope.type == "init":
            return [Envelope.control("ready", {"sessionId": "sess_1"})]
        if envelope.type == "user":
            return [Envelope.result("hi", session_id="sess_1")]
        return []

    transport = MockTransport(responder=responder)
    session = Session(transport)
    result = await session.send("hello")

    assert transport.sent[0].type == "init"
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import deque
from collections.abc import Callable
from typing import Any

from ..errors import ConnectionFailedError, ProtocolError
from ..protocol.envelopes import Envelope
from .base import BaseTransport, ConnectionStatus, TransportConfig

logger = logging.getLogger(__name__)

# Receives every outbound envelope; returns the envelopes the "server" replies with
Responder = Callable[[Envelope], Any]


class MockTransport(BaseTransport):
    """Transport double that follows the same status and handler contract."""

    def __init__(
        self,
        config: TransportConfig | None = None,
        responder: Responder | None = None,
        connect_error: Exception | None = None,
    ):
        super().__init__(config or TransportConfig(url="mock://sandbox"))
        self._responder = responder
        self._connect_error = connect_error
        self._sent: list[Envelope] = []
        self._queue: deque[Envelope] = deque()
        self._terminal = False
        self.connect_calls = 0

    @property
    def sent(self) -> list[Envelope]:
        """Every envelope transmitted through this transport."""
        return self._sent.copy()

    def sent_of_type(self, envelope_type: str) -> list[Envelope]:
        return [envelope for envelope in self._sent if envelope.type == envelope_type]

    def set_responder(self, responder: Responder | None) -> None:
        self._responder = responder

    def clear(self) -> None:
        """Clear recorded envelopes."""
        self._sent.clear()

    async def connect(self) -> None:
        if self._status == ConnectionStatus.CONNECTED:
            return
        self.connect_calls += 1
        self._set_status(ConnectionStatus.CONNECTING)
        await asyncio.sleep(0)

        if self._connect_error is not None:
            error = ConnectionFailedError(f"Connection failed: {self._connect_error}")
            self._emit("on_error", error)
            self._set_status(ConnectionStatus.ERROR)
            raise error

        self._terminal = False
        self._set_status(ConnectionStatus.CONNECTED)
        while self._queue and self.is_connected:
            await self._transmit(self._queue.popleft())

    async def wait_for_ready(self) -> None:
        if self._status != ConnectionStatus.CONNECTED:
            await self.connect()

    async def disconnect(self) -> None:
        self._terminal = True
        self._queue.clear()
        self._set_status(ConnectionStatus.DISCONNECTED)

    async def send(self, envelope: Envelope) -> None:
        if self._status == ConnectionStatus.CONNECTED:
            await self._transmit(envelope)
        elif self._terminal:
            logger.warning(f"Dropping '{envelope.type}' message: transport is disconnected")
        else:
            self._queue.append(envelope)

    async def _transmit(self, envelope: Envelope) -> None:
        self._sent.append(envelope)
        self._emit("on_raw_message", "out", envelope.to_wire())
        if self._responder is None:
            return
        replies = self._responder(envelope)
        if inspect.isawaitable(replies):
            replies = await replies
        for reply in replies or []:
            self.inject(reply)

    def inject(self, envelope: Envelope) -> None:
        """Deliver an inbound envelope as if it arrived from the server."""
        self._emit("on_raw_message", "in", envelope.to_wire())
        if envelope.is_pong():
            return
        if envelope.is_error():
            payload = envelope.error_payload()
            self._emit("on_error", ProtocolError(payload.message, payload.code, payload.details))
        self._emit("on_message", envelope)

    def simulate_drop(self, code: int = 1006, reason: str = "Connection lost") -> None:
        """Simulate the server closing the connection unexpectedly."""
        self._set_status(ConnectionStatus.DISCONNECTED)
        self._emit("on_close", code, reason)
        if not self.config.auto_reconnect:
            self._terminal = True
