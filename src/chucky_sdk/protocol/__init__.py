"""Wire protocol for the sandbox agent service.

Envelopes are JSON objects tagged by ``type``. Transport envelopes carry a
``payload``; agent messages (user, assistant, result, system, stream_event)
mirror the upstream agent SDK and are relayed untouched.
"""

from .envelopes import (
    ControlAction,
    ControlPayload,
    Envelope,
    EnvelopeType,
    ErrorPayload,
    ToolCall,
    ToolResultPayload,
    assistant_text,
    parse_envelope,
    result_text,
)

__all__ = [
    "ControlAction",
    "ControlPayload",
    "Envelope",
    "EnvelopeType",
    "ErrorPayload",
    "ToolCall",
    "ToolResultPayload",
    "assistant_text",
    "parse_envelope",
    "result_text",
]
