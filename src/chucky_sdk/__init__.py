"""Chucky SDK - client for sandboxed agent sessions over WebSocket.

Usage:
    from chucky_sdk import ChuckyClient, ClientConfig, SessionOptions, result_text

    async with ChuckyClient(ClientConfig.from_env()) as client:
        result = await client.prompt("What is 2 + 2?")
        print(result_text(result))
"""

from .client import ChuckyClient
from .config import DEFAULT_BASE_URL, ClientConfig
from .errors import (
    ChuckyError,
    ConnectionFailedError,
    DisconnectedError,
    InvalidStateError,
    ProtocolError,
    SessionTimeoutError,
)
from .protocol import (
    ControlAction,
    Envelope,
    EnvelopeType,
    ToolCall,
    assistant_text,
    parse_envelope,
    result_text,
)
from .session import (
    AssistantMessageEvent,
    ErrorEvent,
    MessageChannel,
    ResultEvent,
    Session,
    SessionEventHandlers,
    SessionOptions,
    SessionState,
    StreamEvent,
    TextDelta,
    ThinkingDelta,
    ToolUseEvent,
)
from .tools import ExecutionLocation, McpServerDefinition, ToolDefinition, ToolResult
from .transport import (
    ConnectionStatus,
    MockTransport,
    Transport,
    TransportConfig,
    TransportEventHandlers,
    WebSocketTransport,
)

__version__ = "0.1.0"

__all__ = [
    # Client
    "ChuckyClient",
    "ClientConfig",
    "DEFAULT_BASE_URL",
    # Session
    "Session",
    "SessionEventHandlers",
    "SessionOptions",
    "SessionState",
    "MessageChannel",
    # Stream events
    "AssistantMessageEvent",
    "ErrorEvent",
    "ResultEvent",
    "StreamEvent",
    "TextDelta",
    "ThinkingDelta",
    "ToolUseEvent",
    # Protocol
    "ControlAction",
    "Envelope",
    "EnvelopeType",
    "ToolCall",
    "assistant_text",
    "parse_envelope",
    "result_text",
    # Tools
    "ExecutionLocation",
    "McpServerDefinition",
    "ToolDefinition",
    "ToolResult",
    # Transport
    "ConnectionStatus",
    "MockTransport",
    "Transport",
    "TransportConfig",
    "TransportEventHandlers",
    "WebSocketTransport",
    # Errors
    "ChuckyError",
    "ConnectionFailedError",
    "DisconnectedError",
    "InvalidStateError",
    "ProtocolError",
    "SessionTimeoutError",
]
