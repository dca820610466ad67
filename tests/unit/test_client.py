"""Unit tests for ChuckyClient and ClientConfig."""

from __future__ import annotations

import logging
from typing import Any
from unittest.mock import MagicMock, patch

import pytest

from chucky_sdk.client import ChuckyClient
from chucky_sdk.config import DEFAULT_BASE_URL, ClientConfig
from chucky_sdk.errors import ConnectionFailedError
from chucky_sdk.session import SessionOptions, SessionState
from chucky_sdk.transport import ConnectionStatus, MockTransport, TransportConfig, WebSocketTransport

TRANSPORT = "chucky_sdk.client.WebSocketTransport"


@pytest.fixture
def transports() -> list[MockTransport]:
    return []


@pytest.fixture
def patched_transport(server: Any, transports: list[MockTransport]):
    def factory(config: TransportConfig) -> MockTransport:
        transport = MockTransport(config, responder=server)
        transports.append(transport)
        return transport

    with patch(TRANSPORT, side_effect=factory) as mock:
        yield mock


# =============================================================================
# ClientConfig
# =============================================================================


class TestClientConfig:
    """Tests for configuration loading."""

    def test_defaults(self) -> None:
        config = ClientConfig()

        assert config.base_url == DEFAULT_BASE_URL
        assert config.auto_reconnect is False
        assert config.max_reconnect_attempts == 5
        assert config.init_timeout == 30.0

    def test_from_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("CHUCKY_TOKEN", "tok_env")
        monkeypatch.setenv("CHUCKY_URL", "wss://staging.test/ws")
        monkeypatch.setenv("CHUCKY_DEBUG", "true")
        monkeypatch.setenv("CHUCKY_TIMEOUT", "12.5")
        monkeypatch.setenv("CHUCKY_AUTO_RECONNECT", "1")
        monkeypatch.setenv("CHUCKY_MAX_RECONNECT_ATTEMPTS", "3")

        config = ClientConfig.from_env()

        assert config.token == "tok_env"
        assert config.base_url == "wss://staging.test/ws"
        assert config.debug is True
        assert config.timeout == 12.5
        assert config.auto_reconnect is True
        assert config.max_reconnect_attempts == 3

    def test_from_env_overrides(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("CHUCKY_TOKEN", "tok_env")

        config = ClientConfig.from_env(token="tok_arg", base_url=None)

        assert config.token == "tok_arg"
        assert config.base_url == DEFAULT_BASE_URL

    def test_from_env_rejects_unknown_override(self) -> None:
        with pytest.raises(TypeError):
            ClientConfig.from_env(colour="blue")

    def test_from_env_rejects_bad_number(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("CHUCKY_TIMEOUT", "soon")

        with pytest.raises(ValueError):
            ClientConfig.from_env()

    def test_transport_config(self) -> None:
        config = ClientConfig(base_url="wss://x.test", token="t", timeout=5, auto_reconnect=True)
        transport_config = config.transport_config()

        assert transport_config.url == "wss://x.test"
        assert transport_config.token == "t"
        assert transport_config.timeout == 5
        assert transport_config.auto_reconnect is True


# =============================================================================
# ChuckyClient
# =============================================================================


class TestChuckyClient:
    """Tests for the session factory."""

    def test_create_transport_uses_config(self) -> None:
        client = ChuckyClient(ClientConfig(base_url="wss://x.test/ws", token="tok"))
        transport = client.create_transport()

        assert isinstance(transport, WebSocketTransport)
        assert transport.build_url() == "wss://x.test/ws?token=tok"

    def test_debug_enables_sdk_logging(self) -> None:
        logger = logging.getLogger("chucky_sdk")
        previous = logger.level
        try:
            ChuckyClient(ClientConfig(debug=True))
            assert logger.level == logging.DEBUG
        finally:
            logger.setLevel(previous)

    @pytest.mark.asyncio
    async def test_create_session(self, patched_transport: MagicMock) -> None:
        client = ChuckyClient(ClientConfig(token="tok"))

        session = await client.create_session(SessionOptions(model="claude-sonnet-4-5"))

        assert session.state == SessionState.READY
        assert client.sessions == [session]
        assert patched_transport.call_args.args[0].token == "tok"
        assert session.init_timeout == 30.0
        await client.close()

    @pytest.mark.asyncio
    async def test_each_session_gets_its_own_transport(
        self, patched_transport: MagicMock, transports: list[MockTransport]
    ) -> None:
        async with ChuckyClient() as client:
            await client.create_session()
            await client.create_session()

        assert len(transports) == 2
        assert transports[0] is not transports[1]
        assert all(t.status == ConnectionStatus.DISCONNECTED for t in transports)

    @pytest.mark.asyncio
    async def test_resume_session_sends_session_id(
        self, patched_transport: MagicMock, transports: list[MockTransport]
    ) -> None:
        async with ChuckyClient() as client:
            session = await client.resume_session("sess_old", SessionOptions(model="m"))

            init = transports[0].sent_of_type("init")[0]
            assert init.payload["sessionId"] == "sess_old"
            assert init.payload["model"] == "m"
            assert session.options.session_id == "sess_old"

    @pytest.mark.asyncio
    async def test_prompt_closes_session(
        self, server: Any, patched_transport: MagicMock, transports: list[MockTransport]
    ) -> None:
        server.reply_text("4")
        client = ChuckyClient()

        result = await client.prompt("What is 2 + 2?")

        assert result.get("result") == "4"
        assert client.sessions == []
        assert transports[0].status == ConnectionStatus.DISCONNECTED
        assert any(env.control_action == "close" for env in transports[0].sent)

    @pytest.mark.asyncio
    async def test_failed_session_not_tracked(self) -> None:
        client = ChuckyClient()

        with patch(TRANSPORT, side_effect=lambda config: MockTransport(config, connect_error=OSError("down"))):
            with pytest.raises(ConnectionFailedError):
                await client.create_session()

        assert client.sessions == []

    @pytest.mark.asyncio
    async def test_on_handlers_attached_to_new_transports(
        self, patched_transport: MagicMock, transports: list[MockTransport]
    ) -> None:
        statuses: list[ConnectionStatus] = []
        client = ChuckyClient().on(on_status_change=statuses.append)

        session = await client.create_session()
        await client.close()

        assert statuses[:2] == [ConnectionStatus.CONNECTING, ConnectionStatus.CONNECTED]
        assert statuses[-1] == ConnectionStatus.DISCONNECTED
        assert session.state == SessionState.COMPLETED

    def test_on_rejects_message_handler(self) -> None:
        with pytest.raises(ValueError, match="on_message"):
            ChuckyClient().on(on_message=MagicMock())
