"""Unit tests for wire envelopes.

Tests envelope construction, classification and parsing:
- Outbound constructors produce the documented wire shapes
- Inbound agent messages keep their top-level fields
- Malformed frames are rejected by parse_envelope
"""

from __future__ import annotations

import pytest

from chucky_sdk.protocol import (
    ControlAction,
    Envelope,
    EnvelopeType,
    assistant_text,
    parse_envelope,
    result_text,
)

# =============================================================================
# Constructors
# =============================================================================


class TestEnvelopeConstructors:
    """Tests for outbound envelope factories."""

    def test_init_wraps_payload(self) -> None:
        """init carries the session options as payload."""
        env = Envelope.init({"model": "claude-sonnet-4-5"})

        assert env.to_wire() == {"type": "init", "payload": {"model": "claude-sonnet-4-5"}}

    def test_user_message_uses_agent_format(self) -> None:
        """User turns keep their fields at the top level."""
        env = Envelope.user_message("Hello", session_id="sess_1")
        wire = env.to_wire()

        assert wire["type"] == "user"
        assert wire["session_id"] == "sess_1"
        assert wire["message"] == {"role": "user", "content": "Hello"}
        assert wire["parent_tool_use_id"] is None
        assert "payload" not in wire

    def test_user_message_with_content_blocks(self) -> None:
        """Content blocks are passed through untouched."""
        blocks = [{"type": "text", "text": "Look"}, {"type": "image", "source": {"data": "x"}}]
        env = Envelope.user_message(blocks)

        assert env.get("message")["content"] == blocks

    def test_control_accepts_enum_or_string(self) -> None:
        """control() takes an action enum or a raw string."""
        assert Envelope.control(ControlAction.CLOSE).payload == {"action": "close"}
        assert Envelope.control("end_input").payload == {"action": "end_input"}

    def test_control_with_data(self) -> None:
        env = Envelope.control(ControlAction.READY, {"sessionId": "s"})

        assert env.payload == {"action": "ready", "data": {"sessionId": "s"}}
        assert env.control_action == "ready"

    def test_ping_has_timestamp(self) -> None:
        env = Envelope.ping()

        assert env.type == "ping"
        assert isinstance(env.payload["timestamp"], int)

    def test_tool_result_correlates_call_id(self) -> None:
        """tool_result echoes the call id in camelCase."""
        result = {"content": [{"type": "text", "text": "5"}], "isError": False}
        env = Envelope.tool_result("c1", result)

        assert env.to_wire() == {
            "type": "tool_result",
            "payload": {"callId": "c1", "result": result},
        }

    def test_error_omits_empty_fields(self) -> None:
        env = Envelope.error("boom")

        assert env.payload == {"message": "boom"}

    def test_result_success(self) -> None:
        env = Envelope.result("done", session_id="sess_1")

        assert env.is_success_result()
        assert env.get("result") == "done"
        assert env.get("is_error") is False

    def test_result_error_subtype(self) -> None:
        env = Envelope.result(subtype="error_max_turns")

        assert env.is_error_result()
        assert env.get("is_error") is True
        assert env.get("result") is None


# =============================================================================
# Classification
# =============================================================================


class TestEnvelopeClassification:
    """Tests for envelope type checks."""

    def test_enum_values(self) -> None:
        assert EnvelopeType.TOOL_CALL.value == "tool_call"
        assert EnvelopeType.STREAM_EVENT.value == "stream_event"
        assert len(EnvelopeType) == 12

    def test_ready_ack_shapes(self) -> None:
        """Both ready acknowledgement shapes are recognized."""
        assert Envelope.control(ControlAction.READY).is_ready_ack()
        assert Envelope.control(ControlAction.SESSION_INFO, {"sessionId": "s"}).is_ready_ack()
        assert Envelope(type="system", subtype="init", session_id="s").is_ready_ack()

    def test_not_ready_ack(self) -> None:
        assert not Envelope.control(ControlAction.CLOSE).is_ready_ack()
        assert not Envelope(type="system", subtype="status").is_ready_ack()
        assert not Envelope.result("x").is_ready_ack()

    def test_control_action_for_other_types(self) -> None:
        assert Envelope.ping().control_action is None

    def test_tool_call_payload(self) -> None:
        env = Envelope.tool_call("c1", "add", {"a": 2, "b": 3})
        call = env.tool_call_payload()

        assert env.is_tool_call()
        assert call.call_id == "c1"
        assert call.tool_name == "add"
        assert call.input == {"a": 2, "b": 3}

    def test_error_payload_defaults(self) -> None:
        env = Envelope(type="error", payload={})

        assert env.error_payload().message == "Unknown error"


# =============================================================================
# Parsing
# =============================================================================


class TestParseEnvelope:
    """Tests for inbound frame validation."""

    def test_parse_agent_message_keeps_fields(self) -> None:
        env = parse_envelope({"type": "result", "subtype": "success", "result": "4", "num_turns": 1})

        assert env.is_result()
        assert env.get("result") == "4"
        assert env.get("num_turns") == 1
        assert env.payload is None

    def test_parse_unknown_type_is_accepted(self) -> None:
        """Unknown types parse and classify as nothing in particular."""
        env = parse_envelope({"type": "telemetry", "value": 1})

        assert env.type == "telemetry"
        assert not env.is_result()
        assert not env.is_error()

    @pytest.mark.parametrize("data", [[], "ping", 3, None, {"payload": {}}, {"type": 5}])
    def test_parse_rejects_malformed(self, data: object) -> None:
        with pytest.raises(ValueError):
            parse_envelope(data)

    def test_parse_non_object_payload(self) -> None:
        """A non-object payload is kept opaquely instead of failing."""
        env = parse_envelope({"type": "custom", "payload": [1, 2]})

        assert env.payload is None
        assert env.get("raw_payload") == [1, 2]

    def test_wire_round_trip_preserves_extra_fields(self) -> None:
        wire = {"type": "assistant", "message": {"role": "assistant", "content": []}, "uuid": "u"}

        assert parse_envelope(wire).to_wire() == wire


# =============================================================================
# Helpers
# =============================================================================


class TestTextHelpers:
    """Tests for result_text and assistant_text."""

    def test_result_text_success(self) -> None:
        assert result_text(Envelope.result("42")) == "42"

    def test_result_text_error(self) -> None:
        assert result_text(Envelope.result(subtype="error_during_execution")) is None

    def test_assistant_text_joins_text_blocks(self) -> None:
        env = Envelope(
            type="assistant",
            message={
                "content": [
                    {"type": "text", "text": "Hello, "},
                    {"type": "tool_use", "id": "t1", "name": "x", "input": {}},
                    {"type": "text", "text": "world"},
                ]
            },
        )

        assert assistant_text(env) == "Hello, world"

    def test_assistant_text_plain_string(self) -> None:
        env = Envelope(type="assistant", message={"content": "hi"})

        assert assistant_text(env) == "hi"

    def test_assistant_text_missing_message(self) -> None:
        assert assistant_text(Envelope(type="assistant")) == ""
