"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import pytest

from chucky_sdk.protocol import ControlAction, Envelope
from chucky_sdk.transport import MockTransport


@pytest.fixture(scope="module")
def anyio_backend():
    """Configure anyio to use asyncio backend."""
    return "asyncio"


class ScriptedServer:
    """Responder for MockTransport that plays a minimal sandbox server.

    Acknowledges ``init`` with a ready control message and answers each user
    turn with the envelopes queued in ``turns``. Tool results are answered
    with the envelopes queued in ``after_tool``.
    """

    def __init__(self, session_id: str = "sess_test"):
        self.session_id = session_id
        self.ack_init = True
        self.turns: list[list[Envelope]] = []
        self.after_tool: list[list[Envelope]] = []
        self.received: list[Envelope] = []

    def __call__(self, envelope: Envelope) -> list[Envelope]:
        self.received.append(envelope)
        if envelope.type == "init":
            if not self.ack_init:
                return []
            return [Envelope.control(ControlAction.READY, {"sessionId": self.session_id})]
        if envelope.is_user() and self.turns:
            return self.turns.pop(0)
        if envelope.is_tool_result() and self.after_tool:
            return self.after_tool.pop(0)
        return []

    def reply_text(self, text: str) -> None:
        """Queue a plain answer for the next turn."""
        self.turns.append([Envelope.result(text, session_id=self.session_id)])


@pytest.fixture
def server() -> ScriptedServer:
    return ScriptedServer()


@pytest.fixture
def transport(server: ScriptedServer) -> MockTransport:
    return MockTransport(responder=server)
