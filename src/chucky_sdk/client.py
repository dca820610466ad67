"""High-level client for the sandbox agent service.

Usage:
    async with ChuckyClient(ClientConfig(token=token)) as client:
        # One-shot prompt
        result = await client.prompt("What is 2 + 2?")
        print(result_text(result))

        # Multi-turn session
        session = await client.create_session(SessionOptions(model="claude-sonnet-4-5"))
        await session.send("Remember the number 7")
        result = await session.send("What number did I ask you to remember?")
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any

from .config import ClientConfig
from .protocol.envelopes import Envelope
from .session import Session, SessionOptions
from .transport.base import TransportEventHandlers
from .transport.websocket import WebSocketTransport

logger = logging.getLogger(__name__)


class ChuckyClient:
    """Factory for sessions sharing one configuration.

    Every session gets its own transport, so sessions never share a
    connection. Handlers registered with ``on()`` are attached to every
    transport the client creates.
    """

    def __init__(self, config: ClientConfig | None = None):
        self.config = config or ClientConfig()
        self._handlers = TransportEventHandlers()
        self._sessions: list[Session] = []

        if self.config.debug:
            logging.getLogger("chucky_sdk").setLevel(logging.DEBUG)

    @property
    def sessions(self) -> list[Session]:
        """Sessions created by this client that are still open."""
        return list(self._sessions)

    def on(self, handlers: TransportEventHandlers | None = None, **callbacks: Any) -> ChuckyClient:
        """Register transport-level handlers (status, raw frames, errors, close).

        ``on_message`` is reserved for the session and cannot be set here.
        """
        update = (handlers or TransportEventHandlers()).merge(TransportEventHandlers(**callbacks))
        if update.on_message is not None:
            raise ValueError("on_message is owned by the session; use Session.on() instead")
        self._handlers = self._handlers.merge(update)
        return self

    def create_transport(self) -> WebSocketTransport:
        transport = WebSocketTransport(self.config.transport_config())
        transport.set_event_handlers(self._handlers)
        return transport

    async def create_session(self, options: SessionOptions | None = None) -> Session:
        """Create and initialize a new session.

        Raises:
            ConnectionFailedError: If the connection cannot be opened
            SessionTimeoutError: If the server never acknowledges init
            ProtocolError: If the server rejects init
        """
        session = Session(
            self.create_transport(),
            options,
            init_timeout=self.config.init_timeout,
            debug=self.config.debug,
        )
        self._sessions.append(session)
        try:
            await session.connect()
        except Exception:
            self._sessions.remove(session)
            await session.close()
            raise
        logger.info(f"Created session {session.session_id or '(pending id)'}")
        return session

    async def resume_session(
        self,
        session_id: str,
        options: SessionOptions | None = None,
    ) -> Session:
        """Resume a previous conversation by its session id."""
        options = replace(options or SessionOptions(), session_id=session_id)
        return await self.create_session(options)

    async def prompt(self, message: str, options: SessionOptions | None = None) -> Envelope:
        """Send a single message in a throwaway session and return its result."""
        session = await self.create_session(options)
        try:
            return await session.send(message)
        finally:
            await self.close_session(session)

    async def close_session(self, session: Session) -> None:
        if session in self._sessions:
            self._sessions.remove(session)
        await session.close()

    async def close(self) -> None:
        """Close every open session."""
        sessions, self._sessions = self._sessions, []
        for session in sessions:
            await session.close()

    async def __aenter__(self) -> ChuckyClient:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()
