"""WebSocket transport implementation.

Client-side transport to the sandbox agent service over a single WebSocket.

Handles:
- Connection establishment with a bounded timeout
- Queuing of sends issued before the connection is open
- Application-level keepalive (``ping`` envelopes, ``pong`` consumed here)
- Reconnection with exponential backoff (opt-in)

Wire format:
- One JSON envelope per text frame, ``{"type": ..., ...}``
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections import deque
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import websockets
from websockets.exceptions import ConnectionClosed

from ..errors import ConnectionFailedError, DisconnectedError, ProtocolError
from ..protocol.envelopes import Envelope, parse_envelope
from .base import BaseTransport, ConnectionStatus, TransportConfig, backoff_delay

logger = logging.getLogger(__name__)


class WebSocketTransport(BaseTransport):
    """Transport over one WebSocket connection.

    ``connect()`` is idempotent: concurrent callers join the attempt already
    in flight, so only one socket is ever opened at a time.

    Sends while not connected are queued and flushed in order once the
    connection opens. Once the transport is terminally disconnected (after
    ``disconnect()``, after an unexpected close with reconnection disabled, or
    after reconnection gave up) sends are dropped and logged.
    """

    def __init__(self, config: TransportConfig | None = None):
        super().__init__(config or TransportConfig())
        self._ws: Any = None  # websockets ClientConnection
        self._connect_task: asyncio.Task[None] | None = None
        self._receive_task: asyncio.Task[None] | None = None
        self._keepalive_task: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._reconnect_attempts = 0
        self._queue: deque[Envelope] = deque()
        self._flushing = False
        self._terminal = False
        self.connection_attempts = 0

    @property
    def reconnect_attempts(self) -> int:
        """Consecutive reconnect attempts since the last successful connection."""
        return self._reconnect_attempts

    @property
    def queued(self) -> list[Envelope]:
        """Envelopes waiting for the connection to open."""
        return list(self._queue)

    def build_url(self) -> str:
        """Connection URL with the bearer token as the ``token`` query parameter."""
        parts = urlsplit(self.config.url)
        query = [
            (key, value)
            for key, value in parse_qsl(parts.query, keep_blank_values=True)
            if key != "token"
        ]
        if self.config.token:
            query.append(("token", self.config.token))
        return urlunsplit(parts._replace(query=urlencode(query)))

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def connect(self) -> None:
        """Connect to the server, joining an attempt already in flight."""
        if self._status == ConnectionStatus.CONNECTED:
            return
        self._terminal = False
        await self._run_attempt()

    async def wait_for_ready(self) -> None:
        """Resolve once connected, starting an attempt if none is running."""
        if self._status == ConnectionStatus.CONNECTED:
            return
        await self.connect()

    async def disconnect(self) -> None:
        """Close the connection. Cancels keepalive and any scheduled reconnect."""
        logger.info("Disconnecting WebSocket transport")
        self._terminal = True

        ws = self._ws
        self._ws = None
        tasks = [self._receive_task, self._keepalive_task, self._reconnect_task, self._connect_task]
        self._receive_task = None
        self._keepalive_task = None
        self._reconnect_task = None

        if ws is not None:
            try:
                await ws.close(code=1000, reason="Client disconnect")
            except Exception as e:
                logger.debug(f"Error closing WebSocket: {e}")

        current = asyncio.current_task()
        for task in tasks:
            if task is None or task.done() or task is current:
                continue
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        self._become_terminal()
        self._set_status(ConnectionStatus.DISCONNECTED)

    async def _run_attempt(self) -> None:
        """Start a connection attempt, or join the one in flight."""
        if self._status == ConnectionStatus.CONNECTED:
            return
        if self._connect_task is None or self._connect_task.done():
            self._connect_task = asyncio.create_task(self._establish())
        task = self._connect_task
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if task.cancelled() and not (current and current.cancelling()):
                raise ConnectionFailedError(
                    "Connection attempt aborted by disconnect", code="aborted"
                ) from None
            raise

    async def _establish(self) -> None:
        """Open the socket and bring the transport to ``connected``."""
        self._set_status(ConnectionStatus.CONNECTING)
        self.connection_attempts += 1
        logger.info(f"Connecting to {self.config.url}")

        try:
            ws = await asyncio.wait_for(self._open_socket(), timeout=self.config.timeout)
        except TimeoutError as e:
            raise self._attempt_failed(
                ConnectionFailedError(
                    f"Connection timeout after {self.config.timeout}s", code="timeout"
                )
            ) from e
        except Exception as e:
            raise self._attempt_failed(ConnectionFailedError(f"Connection failed: {e}")) from e

        self._ws = ws
        self._reconnect_attempts = 0
        self._set_status(ConnectionStatus.CONNECTED)
        logger.info("WebSocket connected")

        self._receive_task = asyncio.create_task(self._receive_loop(ws))
        self._start_keepalive()
        await self._flush_queue()

    async def _open_socket(self) -> Any:
        return await websockets.connect(
            self.build_url(),
            open_timeout=None,
            # Keepalive is done with protocol-level ping envelopes
            ping_interval=None,
        )

    def _attempt_failed(self, error: ConnectionFailedError) -> ConnectionFailedError:
        logger.error(error.message)
        self._emit("on_error", error)
        self._set_status(ConnectionStatus.ERROR)
        return error

    def _become_terminal(self) -> None:
        self._terminal = True
        if self._queue:
            logger.warning(f"Discarding {len(self._queue)} queued message(s): transport closed")
            self._queue.clear()

    # =========================================================================
    # Sending
    # =========================================================================

    async def send(self, envelope: Envelope) -> None:
        """Send an envelope, queueing it until the connection is open."""
        if self._status == ConnectionStatus.CONNECTED and self._ws is not None:
            if self._flushing:
                # Keep enqueue order while the backlog drains
                self._queue.append(envelope)
                return
            await self._transmit(envelope)
            return

        if self._terminal:
            logger.warning(
                f"Dropping '{envelope.type}' message: transport is disconnected "
                "and will not reconnect"
            )
            return

        self._queue.append(envelope)
        if self.config.debug:
            logger.debug(f"Message queued (not connected): {envelope.type}")

    async def _transmit(self, envelope: Envelope) -> None:
        ws = self._ws
        if ws is None:
            raise DisconnectedError("WebSocket not connected")

        data = envelope.to_wire()
        self._emit("on_raw_message", "out", data)
        try:
            await ws.send(json.dumps(data))
        except ConnectionClosed as e:
            logger.warning(f"Send failed, connection closed: {e}")
            raise DisconnectedError(f"Connection closed while sending '{envelope.type}'") from e
        self._log_frame("out", envelope)

    async def _flush_queue(self) -> None:
        self._flushing = True
        try:
            while self._queue and self.is_connected:
                envelope = self._queue.popleft()
                try:
                    await self._transmit(envelope)
                except DisconnectedError:
                    self._queue.appendleft(envelope)
                    break
        finally:
            self._flushing = False

    # =========================================================================
    # Receiving
    # =========================================================================

    async def _receive_loop(self, ws: Any) -> None:
        """Background task delivering inbound frames in receipt order."""
        try:
            async for data in ws:
                self._handle_frame(data)
        except ConnectionClosed as e:
            logger.warning(f"WebSocket connection closed: {e}")
        except Exception as e:
            logger.error(f"WebSocket receive error: {e}")
            self._emit("on_error", e)

        self._handle_socket_closed(
            ws,
            getattr(ws, "close_code", None),
            getattr(ws, "close_reason", None),
        )

    def _handle_frame(self, data: str | bytes) -> None:
        try:
            text = data.decode("utf-8") if isinstance(data, (bytes, bytearray)) else data
            raw = json.loads(text)
            envelope = parse_envelope(raw)
        except (UnicodeDecodeError, ValueError) as e:
            logger.warning(f"Dropping malformed frame: {e}")
            return

        self._emit("on_raw_message", "in", raw)
        self._log_frame("in", envelope)

        if envelope.is_pong():
            return

        if envelope.is_error():
            try:
                payload = envelope.error_payload()
                error = ProtocolError(payload.message, payload.code, payload.details)
            except ValueError:
                error = ProtocolError(f"Server error: {envelope.payload}")
            self._emit("on_error", error)

        self._emit("on_message", envelope)

    def _handle_socket_closed(self, ws: Any, code: int | None, reason: str | None) -> None:
        if ws is not self._ws:
            # Closed by disconnect(), already handled there
            return

        self._ws = None
        self._receive_task = None
        self._stop_keepalive()
        logger.info(f"WebSocket closed unexpectedly (code={code}, reason={reason or 'n/a'})")

        self._set_status(ConnectionStatus.DISCONNECTED)
        self._emit("on_close", code, reason)

        if self.config.auto_reconnect and self.config.max_reconnect_attempts > 0:
            self._reconnect_task = asyncio.create_task(self._reconnect_loop())
        else:
            self._become_terminal()

    # =========================================================================
    # Keepalive
    # =========================================================================

    def _start_keepalive(self) -> None:
        self._stop_keepalive()
        if self.config.keepalive_interval and self.config.keepalive_interval > 0:
            self._keepalive_task = asyncio.create_task(self._keepalive_loop())

    def _stop_keepalive(self) -> None:
        if self._keepalive_task is not None:
            if self._keepalive_task is not asyncio.current_task():
                self._keepalive_task.cancel()
            self._keepalive_task = None

    async def _keepalive_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.keepalive_interval)
            if not self.is_connected:
                continue
            try:
                await self._transmit(Envelope.ping())
            except DisconnectedError:
                return

    # =========================================================================
    # Reconnection
    # =========================================================================

    def next_reconnect_delay(self) -> float:
        """Delay before the next reconnect attempt."""
        return backoff_delay(
            self._reconnect_attempts + 1,
            base=self.config.reconnect_delay,
            factor=self.config.reconnect_backoff,
            cap=self.config.max_reconnect_delay,
        )

    async def _reconnect_loop(self) -> None:
        limit = self.config.max_reconnect_attempts
        try:
            while self._reconnect_attempts < limit:
                delay = self.next_reconnect_delay()
                self._reconnect_attempts += 1
                logger.warning(
                    f"Reconnecting in {delay:.1f}s (attempt {self._reconnect_attempts}/{limit})"
                )
                self._set_status(ConnectionStatus.RECONNECTING)
                await asyncio.sleep(delay)
                try:
                    await self._run_attempt()
                    return
                except ConnectionFailedError as e:
                    logger.warning(f"Reconnect attempt {self._reconnect_attempts} failed: {e}")

            logger.warning(f"Giving up after {limit} reconnect attempt(s)")
            self._become_terminal()
            self._set_status(ConnectionStatus.DISCONNECTED)
        finally:
            if self._reconnect_task is asyncio.current_task():
                self._reconnect_task = None
