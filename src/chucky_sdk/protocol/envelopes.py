"""Envelope definitions for the wire protocol.

Every frame exchanged with the sandbox service is a JSON object with a
string ``type``. Two families share the channel:

- Transport envelopes carry a ``payload`` object:
  init, control, error, ping, pong, tool_call, tool_result
- Agent messages mirror the upstream agent SDK and keep their fields at the
  top level: user, assistant, result, system, stream_event

Agent payloads are opaque to the SDK and are relayed untouched. Unknown
``type`` values are accepted and treated as inert.

Example (outbound turn):
    {
        "type": "user",
        "session_id": "sess_123",
        "message": {"role": "user", "content": "Hello"},
        "parent_tool_use_id": null
    }

Example (inbound tool call):
    {
        "type": "tool_call",
        "payload": {"callId": "c1", "toolName": "add", "input": {"a": 2, "b": 3}}
    }
"""

from __future__ import annotations

import time
import uuid
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class EnvelopeType(str, Enum):
    """All envelope types on the wire."""

    # Client -> Server
    INIT = "init"
    USER = "user"
    PING = "ping"
    TOOL_RESULT = "tool_result"

    # Server -> Client (agent messages, relayed untouched)
    ASSISTANT = "assistant"
    RESULT = "result"
    SYSTEM = "system"
    STREAM_EVENT = "stream_event"

    # Server -> Client (transport)
    ERROR = "error"
    PONG = "pong"
    TOOL_CALL = "tool_call"

    # Both directions
    CONTROL = "control"


class ControlAction(str, Enum):
    """Actions carried by ``control`` envelopes."""

    READY = "ready"
    SESSION_INFO = "session_info"
    END_INPUT = "end_input"
    CLOSE = "close"


class ControlPayload(BaseModel):
    """Payload of a ``control`` envelope."""

    action: str
    data: dict[str, Any] | None = None


class ErrorPayload(BaseModel):
    """Payload of an ``error`` envelope."""

    message: str = "Unknown error"
    code: str | None = None
    details: dict[str, Any] | None = None


class ToolCall(BaseModel):
    """Payload of a ``tool_call`` envelope (server asks the client to run a tool)."""

    model_config = ConfigDict(populate_by_name=True)

    call_id: str = Field(alias="callId")
    tool_name: str = Field(alias="toolName")
    input: dict[str, Any] = Field(default_factory=dict)


class ToolResultPayload(BaseModel):
    """Payload of a ``tool_result`` envelope (client reply to a tool call)."""

    model_config = ConfigDict(populate_by_name=True)

    call_id: str = Field(alias="callId")
    result: dict[str, Any]


class Envelope(BaseModel):
    """One wire message.

    Transport envelopes use ``payload``; agent messages keep their own fields
    at the top level, which are preserved as extra attributes.
    """

    model_config = ConfigDict(extra="allow")

    type: str
    payload: dict[str, Any] | None = None

    def get(self, key: str, default: Any = None) -> Any:
        """Get a top-level field of an agent message."""
        extra = self.model_extra or {}
        return extra.get(key, default)

    def to_wire(self) -> dict[str, Any]:
        """Serialize to the JSON object sent over the socket."""
        data: dict[str, Any] = {"type": self.type}
        if self.payload is not None:
            data["payload"] = self.payload
        data.update(self.model_extra or {})
        return data

    # =========================================================================
    # Classifiers
    # =========================================================================

    def is_user(self) -> bool:
        return self.type == EnvelopeType.USER.value

    def is_assistant(self) -> bool:
        return self.type == EnvelopeType.ASSISTANT.value

    def is_result(self) -> bool:
        """Check if this is the terminal result of a turn."""
        return self.type == EnvelopeType.RESULT.value

    def is_success_result(self) -> bool:
        return self.is_result() and self.get("subtype") == "success"

    def is_error_result(self) -> bool:
        return self.is_result() and self.get("subtype") != "success"

    def is_system(self) -> bool:
        return self.type == EnvelopeType.SYSTEM.value

    def is_system_init(self) -> bool:
        return self.is_system() and self.get("subtype") == "init"

    def is_stream_event(self) -> bool:
        return self.type == EnvelopeType.STREAM_EVENT.value

    def is_control(self) -> bool:
        return self.type == EnvelopeType.CONTROL.value

    def is_error(self) -> bool:
        return self.type == EnvelopeType.ERROR.value

    def is_ping(self) -> bool:
        return self.type == EnvelopeType.PING.value

    def is_pong(self) -> bool:
        return self.type == EnvelopeType.PONG.value

    def is_tool_call(self) -> bool:
        return self.type == EnvelopeType.TOOL_CALL.value

    def is_tool_result(self) -> bool:
        return self.type == EnvelopeType.TOOL_RESULT.value

    @property
    def control_action(self) -> str | None:
        """Action of a control envelope, or None for any other type."""
        if not self.is_control() or not self.payload:
            return None
        return self.payload.get("action")

    def is_ready_ack(self) -> bool:
        """Check if this acknowledges session initialization.

        Two acknowledgement shapes are in use: a ``control`` envelope with
        action ``ready`` or ``session_info``, and a ``system`` message with
        subtype ``init``.
        """
        if self.control_action in (ControlAction.READY.value, ControlAction.SESSION_INFO.value):
            return True
        return self.is_system_init()

    # =========================================================================
    # Payload accessors
    # =========================================================================

    def control_payload(self) -> ControlPayload:
        return ControlPayload.model_validate(self.payload or {})

    def error_payload(self) -> ErrorPayload:
        return ErrorPayload.model_validate(self.payload or {})

    def tool_call_payload(self) -> ToolCall:
        return ToolCall.model_validate(self.payload or {})

    # =========================================================================
    # Constructors
    # =========================================================================

    @classmethod
    def init(cls, payload: dict[str, Any]) -> Envelope:
        """Create the session initialization envelope."""
        return cls(type=EnvelopeType.INIT.value, payload=payload)

    @classmethod
    def user_message(
        cls,
        content: str | list[dict[str, Any]],
        session_id: str = "",
        uuid: str | None = None,
        parent_tool_use_id: str | None = None,
    ) -> Envelope:
        """Create a user turn in the agent SDK message format."""
        fields: dict[str, Any] = {
            "session_id": session_id,
            "message": {"role": "user", "content": content},
            "parent_tool_use_id": parent_tool_use_id,
        }
        if uuid:
            fields["uuid"] = uuid
        return cls(type=EnvelopeType.USER.value, **fields)

    @classmethod
    def control(
        cls,
        action: str | ControlAction,
        data: dict[str, Any] | None = None,
    ) -> Envelope:
        """Create a control envelope."""
        payload: dict[str, Any] = {
            "action": action.value if isinstance(action, ControlAction) else action
        }
        if data is not None:
            payload["data"] = data
        return cls(type=EnvelopeType.CONTROL.value, payload=payload)

    @classmethod
    def ping(cls) -> Envelope:
        """Create a keepalive ping."""
        return cls(type=EnvelopeType.PING.value, payload={"timestamp": int(time.time() * 1000)})

    @classmethod
    def pong(cls) -> Envelope:
        return cls(type=EnvelopeType.PONG.value, payload={"timestamp": int(time.time() * 1000)})

    @classmethod
    def tool_call(cls, call_id: str, tool_name: str, input: dict[str, Any]) -> Envelope:
        """Create a tool call (sent by the server; used by mock transports)."""
        return cls(
            type=EnvelopeType.TOOL_CALL.value,
            payload={"callId": call_id, "toolName": tool_name, "input": input},
        )

    @classmethod
    def tool_result(cls, call_id: str, result: dict[str, Any]) -> Envelope:
        """Create a tool result correlated to a tool call by ``call_id``."""
        return cls(
            type=EnvelopeType.TOOL_RESULT.value,
            payload={"callId": call_id, "result": result},
        )

    @classmethod
    def error(
        cls,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> Envelope:
        """Create an error envelope."""
        payload: dict[str, Any] = {"message": message}
        if code:
            payload["code"] = code
        if details:
            payload["details"] = details
        return cls(type=EnvelopeType.ERROR.value, payload=payload)

    @classmethod
    def result(
        cls,
        result: str = "",
        session_id: str = "",
        subtype: str = "success",
        **fields: Any,
    ) -> Envelope:
        """Create a terminal result message (sent by the server; used by mocks)."""
        data: dict[str, Any] = {
            "subtype": subtype,
            "uuid": str(uuid.uuid4()),
            "session_id": session_id,
            "is_error": subtype != "success",
            "num_turns": 1,
        }
        if subtype == "success":
            data["result"] = result
        data.update(fields)
        return cls(type=EnvelopeType.RESULT.value, **data)


def parse_envelope(data: Any) -> Envelope:
    """Validate a decoded JSON frame as an envelope.

    Raises:
        ValueError: If the frame is not an object with a string ``type``
    """
    if not isinstance(data, dict):
        raise ValueError(f"Envelope must be a JSON object, got {type(data).__name__}")
    if not isinstance(data.get("type"), str):
        raise ValueError("Envelope is missing a string 'type'")
    payload = data.get("payload")
    if payload is not None and not isinstance(payload, dict):
        # Keep non-object payloads as opaque agent fields
        data = {k: v for k, v in data.items() if k != "payload"}
        data["raw_payload"] = payload
    return Envelope.model_validate(data)


def result_text(envelope: Envelope) -> str | None:
    """Text of a successful result message, or None."""
    if envelope.is_success_result():
        return envelope.get("result")
    return None


def assistant_text(envelope: Envelope) -> str:
    """Concatenate the text blocks of an assistant message."""
    message = envelope.get("message") or {}
    content = message.get("content") or []
    if isinstance(content, str):
        return content
    return "".join(
        block.get("text", "")
        for block in content
        if isinstance(block, dict) and block.get("type") == "text"
    )
