"""Transport abstraction for the session protocol.

A transport owns exactly one physical connection and its framing, and
presents a channel-oriented API independent of the wire technology:

- connect/disconnect: Lifecycle management
- send: Transmit an envelope (queued while a connection is being opened)
- wait_for_ready: Resolve once connected
- set_event_handlers: Observe inbound envelopes, status, errors, raw frames

Implementations:
- WebSocketTransport: The production transport (websockets library)
- MockTransport: In-memory transport for tests and embedding
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, fields, replace
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from ..protocol.envelopes import Envelope

logger = logging.getLogger(__name__)


class ConnectionStatus(str, Enum):
    """Connection state machine."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    ERROR = "error"


@dataclass
class TransportConfig:
    """Configuration for a transport.

    Durations are in seconds.
    """

    url: str = "wss://conjure.chucky.cloud/ws"
    # Opaque bearer token, added to the connection URL and never inspected
    token: str = ""

    # Connection attempt timeout; sandbox startup can take a while
    timeout: float = 60.0
    keepalive_interval: float = 300.0

    # Reconnection
    auto_reconnect: bool = False
    max_reconnect_attempts: int = 5
    reconnect_delay: float = 1.0
    max_reconnect_delay: float = 16.0
    reconnect_backoff: float = 2.0

    debug: bool = False


def backoff_delay(
    attempt: int,
    base: float = 1.0,
    factor: float = 2.0,
    cap: float = 16.0,
) -> float:
    """Delay before reconnect attempt number ``attempt`` (1-based).

    With the defaults: 1, 2, 4, 8, 16, 16, ... seconds.
    """
    if attempt < 1:
        raise ValueError(f"Attempt must be >= 1, got {attempt}")
    return min(base * factor ** (attempt - 1), cap)


MessageHandler = Callable[[Envelope], None]
StatusHandler = Callable[[ConnectionStatus], None]
ErrorHandler = Callable[[Exception], None]
RawMessageHandler = Callable[[str, Any], None]
CloseHandler = Callable[[int | None, str | None], None]


@dataclass
class TransportEventHandlers:
    """Callbacks registered on a transport.

    Attributes:
        on_message: Every parsed inbound envelope, in receipt order
        on_status_change: Each connection status transition
        on_error: Socket errors, connection failures and server error envelopes
        on_raw_message: Raw frame observation, ``("in" | "out", data)``
        on_close: Underlying socket closed, ``(code, reason)``
    """

    on_message: MessageHandler | None = None
    on_status_change: StatusHandler | None = None
    on_error: ErrorHandler | None = None
    on_raw_message: RawMessageHandler | None = None
    on_close: CloseHandler | None = None

    def merge(self, other: TransportEventHandlers) -> TransportEventHandlers:
        """Overlay the callbacks set on ``other`` onto a copy of these."""
        updates = {f.name: getattr(other, f.name) for f in fields(other)}
        return replace(self, **{k: v for k, v in updates.items() if v is not None})


@runtime_checkable
class Transport(Protocol):
    """Protocol for session transports."""

    @property
    def status(self) -> ConnectionStatus:
        """Current connection status."""
        ...

    async def connect(self) -> None:
        """Open the connection, joining an attempt already in flight.

        Raises:
            ConnectionFailedError: If the attempt fails or times out
        """
        ...

    async def disconnect(self) -> None:
        """Close the connection. Always ends in ``disconnected``."""
        ...

    async def send(self, envelope: Envelope) -> None:
        """Transmit now if connected, otherwise queue (or drop if terminal)."""
        ...

    def set_event_handlers(
        self,
        handlers: TransportEventHandlers | None = None,
        **callbacks: Any,
    ) -> None:
        """Register callbacks; new callbacks overlay existing ones."""
        ...

    async def wait_for_ready(self) -> None:
        """Resolve once connected, starting a connection attempt if needed."""
        ...


class BaseTransport(ABC):
    """Base class for transports with common functionality.

    Provides:
    - Status bookkeeping with exactly-once change notification
    - Handler merging and safe dispatch
    - Debug frame logging
    """

    def __init__(self, config: TransportConfig):
        self.config = config
        self._status = ConnectionStatus.DISCONNECTED
        self._handlers = TransportEventHandlers()

    @property
    def status(self) -> ConnectionStatus:
        """Current connection status."""
        return self._status

    @property
    def is_connected(self) -> bool:
        """Check if transport is connected."""
        return self._status == ConnectionStatus.CONNECTED

    @property
    def handlers(self) -> TransportEventHandlers:
        return self._handlers

    def set_event_handlers(
        self,
        handlers: TransportEventHandlers | None = None,
        **callbacks: Any,
    ) -> None:
        """Register callbacks. Callbacks not passed keep their previous value."""
        if handlers is not None:
            self._handlers = self._handlers.merge(handlers)
        if callbacks:
            self._handlers = self._handlers.merge(TransportEventHandlers(**callbacks))

    def _set_status(self, status: ConnectionStatus) -> None:
        if self._status == status:
            return
        previous = self._status
        self._status = status
        logger.debug(f"{self.__class__.__name__} status: {previous.value} -> {status.value}")
        self._emit("on_status_change", status)

    def _emit(self, name: str, *args: Any) -> None:
        """Invoke a registered callback; a failing callback is logged, not raised."""
        callback = getattr(self._handlers, name)
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            logger.exception(f"{self.__class__.__name__} {name} handler failed")

    def _log_frame(self, direction: str, envelope: Envelope) -> None:
        if self.config.debug:
            verb = "Sent" if direction == "out" else "Received"
            logger.debug(f"{verb}: {envelope.type}")

    @abstractmethod
    async def connect(self) -> None: ...

    @abstractmethod
    async def disconnect(self) -> None: ...

    @abstractmethod
    async def send(self, envelope: Envelope) -> None: ...

    @abstractmethod
    async def wait_for_ready(self) -> None: ...

    async def __aenter__(self) -> BaseTransport:
        await self.connect()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.disconnect()
