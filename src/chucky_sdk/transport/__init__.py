"""Transport abstraction layer.

A transport owns one connection to the sandbox agent service and delivers
parsed envelopes, in receipt order, to a single session:
- WebSocket - The production transport
- Mock - In-memory, for tests and embedding

The session depends only on the Transport protocol, so transports can be
swapped without touching session code.
"""

from .base import (
    BaseTransport,
    ConnectionStatus,
    Transport,
    TransportConfig,
    TransportEventHandlers,
    backoff_delay,
)
from .mock import MockTransport
from .websocket import WebSocketTransport

__all__ = [
    # Base abstractions
    "BaseTransport",
    "ConnectionStatus",
    "Transport",
    "TransportConfig",
    "TransportEventHandlers",
    "backoff_delay",
    # Implementations
    "MockTransport",
    "WebSocketTransport",
]
