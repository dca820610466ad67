"""Conversation sessions with the sandbox agent service.

A Session sequences the protocol on top of one Transport:
- Initialization: connect, send ``init``, wait for the ready acknowledgement
- Turns: send a user message, drain the response as one result or a stream
- Tool calls: run locally registered handlers and reply with ``tool_result``
- Close: send ``control: close`` and disconnect

State machine (turn subset):

    ready --send--> processing --tool_call--> waiting_tool
    waiting_tool --tool_result sent--> processing
    processing --terminal result--> ready
    any --unexpected disconnect--> error
    any --close()--> completed

Inbound envelopes flow through a single FIFO MessageChannel, so two logical
waits can never race for the same envelope.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field, fields, replace
from enum import Enum
from types import MappingProxyType
from typing import Any

from .errors import (
    ChuckyError,
    DisconnectedError,
    InvalidStateError,
    ProtocolError,
    SessionTimeoutError,
)
from .protocol.envelopes import ControlAction, Envelope, ToolCall, assistant_text
from .tools import (
    McpServerDefinition,
    ToolDefinition,
    ToolResult,
    collect_handlers,
    invoke_handler,
)
from .transport.base import ConnectionStatus, Transport, TransportEventHandlers

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    """Session lifecycle states."""

    IDLE = "idle"
    INITIALIZING = "initializing"
    READY = "ready"
    PROCESSING = "processing"
    WAITING_TOOL = "waiting_tool"
    COMPLETED = "completed"
    ERROR = "error"


# Option names whose wire name is not the plain camelCase form
_WIRE_NAMES = {"continue_conversation": "continue"}


def _to_camel(name: str) -> str:
    if name in _WIRE_NAMES:
        return _WIRE_NAMES[name]
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


@dataclass
class SessionOptions:
    """Configuration sent to the sandbox in the ``init`` envelope.

    ``tools`` is either a list of ToolDefinition (client-declared tools, with
    or without local handlers) or a list of tool names (an allowlist of the
    sandbox's built-in tools).
    """

    model: str | None = None
    fallback_model: str | None = None
    max_turns: int | None = None
    max_budget_usd: float | None = None
    max_thinking_tokens: int | None = None
    system_prompt: str | dict[str, Any] | None = None
    tools: list[ToolDefinition] | list[str] | None = None
    allowed_tools: list[str] | None = None
    disallowed_tools: list[str] | None = None
    mcp_servers: list[McpServerDefinition] | None = None
    agents: dict[str, dict[str, Any]] | None = None
    betas: list[str] | None = None
    permission_mode: str | None = None
    allow_dangerously_skip_permissions: bool | None = None
    env: dict[str, str] | None = None
    output_format: dict[str, Any] | None = None
    include_partial_messages: bool | None = None

    # Resume / fork
    session_id: str | None = None
    fork_session: bool | None = None
    resume_session_at: str | None = None
    continue_conversation: bool | None = None
    setting_sources: list[str] | None = None
    job_id: str | None = None

    def tool_definitions(self) -> list[ToolDefinition]:
        return [tool for tool in self.tools or [] if isinstance(tool, ToolDefinition)]

    def to_init_payload(self) -> dict[str, Any]:
        """Serialize to the camelCase init payload. Handlers are stripped."""
        payload: dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if value is None:
                continue
            if f.name == "tools":
                value = [
                    tool.to_wire() if isinstance(tool, ToolDefinition) else tool
                    for tool in value
                ]
            elif f.name == "mcp_servers":
                value = [server.to_wire() for server in value]
            payload[_to_camel(f.name)] = value
        return payload


# =============================================================================
# Stream events
# =============================================================================


@dataclass
class TextDelta:
    """Incremental assistant text."""

    text: str
    type: str = field(default="text", init=False)


@dataclass
class ThinkingDelta:
    """Incremental extended-thinking text."""

    thinking: str
    type: str = field(default="thinking", init=False)


@dataclass
class ToolUseEvent:
    """The server asked for a tool call."""

    id: str
    name: str
    input: dict[str, Any]
    type: str = field(default="tool_use", init=False)


@dataclass
class AssistantMessageEvent:
    """A complete assistant message."""

    message: Envelope
    text: str
    type: str = field(default="assistant", init=False)


@dataclass
class ErrorEvent:
    """The server reported an error; ends the stream."""

    error: ProtocolError
    type: str = field(default="error", init=False)


@dataclass
class ResultEvent:
    """Terminal result of the turn; ends the stream."""

    result: Envelope
    type: str = field(default="result", init=False)


StreamEvent = (
    TextDelta | ThinkingDelta | ToolUseEvent | AssistantMessageEvent | ErrorEvent | ResultEvent
)


def protocol_error(envelope: Envelope) -> ProtocolError:
    """Build the error raised for a server ``error`` envelope."""
    try:
        payload = envelope.error_payload()
    except ValueError:
        return ProtocolError(f"Server error: {envelope.payload}")
    return ProtocolError(payload.message, payload.code, payload.details)


def _content_delta(envelope: Envelope) -> dict[str, Any] | None:
    event = envelope.get("event")
    if not isinstance(event, dict) or event.get("type") != "content_block_delta":
        return None
    delta = event.get("delta")
    return delta if isinstance(delta, dict) else None


def stream_events(envelope: Envelope) -> list[StreamEvent]:
    """Translate one inbound envelope into granular stream events."""
    events: list[StreamEvent] = []

    if envelope.is_stream_event():
        delta = _content_delta(envelope)
        if delta and delta.get("type") == "text_delta" and delta.get("text"):
            events.append(TextDelta(text=delta["text"]))
        elif delta and delta.get("type") == "thinking_delta" and delta.get("thinking"):
            events.append(ThinkingDelta(thinking=delta["thinking"]))

    elif envelope.is_assistant():
        events.append(AssistantMessageEvent(message=envelope, text=assistant_text(envelope)))

    elif envelope.is_tool_call():
        try:
            call = envelope.tool_call_payload()
        except ValueError:
            return events
        events.append(ToolUseEvent(id=call.call_id, name=call.tool_name, input=call.input))

    elif envelope.is_error():
        events.append(ErrorEvent(error=protocol_error(envelope)))

    elif envelope.is_result():
        events.append(ResultEvent(result=envelope))

    return events


# =============================================================================
# Message channel
# =============================================================================


class MessageChannel:
    """FIFO handoff between the transport callback and session waiters.

    Holds a buffer of unclaimed envelopes and a queue of waiters. At any
    instant at least one of the two is empty: an envelope goes to the oldest
    waiter if there is one, otherwise to the buffer; a new waiter takes the
    oldest buffered envelope if there is one, otherwise it queues.
    """

    def __init__(self) -> None:
        self._buffer: deque[Envelope] = deque()
        self._waiters: deque[asyncio.Future[Envelope]] = deque()
        self._closed: Exception | None = None

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    @property
    def waiting(self) -> int:
        return sum(1 for waiter in self._waiters if not waiter.done())

    @property
    def closed(self) -> bool:
        return self._closed is not None

    def put(self, envelope: Envelope) -> None:
        """Hand an envelope to the oldest waiter, or buffer it."""
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(envelope)
                return
        self._buffer.append(envelope)

    def _put_front(self, envelope: Envelope) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(envelope)
                return
        self._buffer.appendleft(envelope)

    async def get(self) -> Envelope:
        """Take the oldest unclaimed envelope, waiting if there is none.

        Buffered envelopes are still drained after the channel is closed.
        """
        if self._buffer:
            return self._buffer.popleft()
        if self._closed is not None:
            raise self._closed

        waiter: asyncio.Future[Envelope] = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            return await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled() and waiter.exception() is None:
                # Delivered just before the cancellation landed: not ours to drop
                self._put_front(waiter.result())
            elif waiter in self._waiters:
                self._waiters.remove(waiter)
            raise

    def close(self, error: Exception) -> None:
        """Fail every pending waiter; later gets raise once the buffer is empty."""
        self._closed = error
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_exception(error)


# =============================================================================
# Session
# =============================================================================


def _chain(first: Callable[..., None] | None, second: Callable[..., None]) -> Callable[..., None]:
    if first is None:
        return second

    def chained(*args: Any) -> None:
        try:
            first(*args)
        except Exception:
            logger.exception("Transport handler failed")
        second(*args)

    return chained


@dataclass
class SessionEventHandlers:
    """Optional observers of session activity."""

    on_session_info: Callable[[dict[str, Any]], None] | None = None
    on_message: Callable[[Envelope], None] | None = None
    on_text: Callable[[str], None] | None = None
    on_thinking: Callable[[str], None] | None = None
    on_tool_use: Callable[[ToolCall], None] | None = None
    on_tool_result: Callable[[str, dict[str, Any]], None] | None = None
    on_complete: Callable[[Envelope], None] | None = None
    on_error: Callable[[Exception], None] | None = None

    def merge(self, other: SessionEventHandlers) -> SessionEventHandlers:
        updates = {f.name: getattr(other, f.name) for f in fields(other)}
        return replace(self, **{k: v for k, v in updates.items() if v is not None})


class Session:
    """A conversation with the sandbox agent over one transport.

    The session exclusively owns its transport; do not share a transport
    between sessions.

    Example:
        async with Session(WebSocketTransport(config), options) as session:
            result = await session.send("What is 2 + 2?")
            print(result_text(result))

            async for event in session.stream("Tell me a story"):
                if event.type == "text":
                    print(event.text, end="")
    """

    def __init__(
        self,
        transport: Transport,
        options: SessionOptions | None = None,
        init_timeout: float = 30.0,
        debug: bool = False,
    ):
        self.transport = transport
        self.options = options or SessionOptions()
        self.init_timeout = init_timeout
        self.debug = debug

        self._handlers = SessionEventHandlers()
        self._tool_handlers = MappingProxyType(
            collect_handlers(self.options.tool_definitions(), self.options.mcp_servers)
        )
        self._channel = MessageChannel()
        self._state = SessionState.IDLE
        self._session_id: str | None = self.options.session_id
        self._result: Envelope | None = None
        self._error: ChuckyError | None = None
        self._closing = False
        self._drain_task: asyncio.Task[None] | None = None
        self._tool_task: asyncio.Task[None] | None = None

        # Callbacks already registered on the transport keep firing
        previous = getattr(transport, "handlers", None) or TransportEventHandlers()
        transport.set_event_handlers(
            on_message=_chain(previous.on_message, self._handle_message),
            on_error=_chain(previous.on_error, self._handle_transport_error),
            on_status_change=_chain(previous.on_status_change, self._handle_status_change),
        )

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def session_id(self) -> str | None:
        return self._session_id

    @property
    def result(self) -> Envelope | None:
        """The last terminal result received."""
        return self._result

    @property
    def error(self) -> ChuckyError | None:
        """The failure that moved the session to ``error``, if any."""
        return self._error

    @property
    def tool_names(self) -> list[str]:
        """Names of tools with a local handler."""
        return list(self._tool_handlers)

    def on(self, handlers: SessionEventHandlers | None = None, **callbacks: Any) -> Session:
        """Register event handlers. New handlers overlay existing ones."""
        if handlers is not None:
            self._handlers = self._handlers.merge(handlers)
        if callbacks:
            self._handlers = self._handlers.merge(SessionEventHandlers(**callbacks))
        return self

    def build_init_payload(self) -> dict[str, Any]:
        payload = self.options.to_init_payload()
        if self._session_id:
            payload["sessionId"] = self._session_id
        return payload

    # =========================================================================
    # Initialization
    # =========================================================================

    async def connect(self) -> None:
        """Connect the transport and initialize the session.

        From ``error`` this re-runs initialization on a fresh channel,
        resuming the known session id.

        Raises:
            ConnectionFailedError: If the transport cannot connect
            ProtocolError: If the server answers init with an error
            SessionTimeoutError: If no ready acknowledgement arrives in time
            InvalidStateError: If the session is closed or already initializing
        """
        if self._state in (SessionState.READY, SessionState.PROCESSING, SessionState.WAITING_TOOL):
            return
        if self._state == SessionState.COMPLETED:
            raise InvalidStateError("Cannot connect: session is closed")
        if self._state == SessionState.INITIALIZING:
            raise InvalidStateError("Cannot connect: session is already initializing")

        if self._state == SessionState.ERROR:
            self._channel = MessageChannel()
            self._error = None

        self._state = SessionState.INITIALIZING
        try:
            await self.transport.connect()
            await self.transport.send(Envelope.init(self.build_init_payload()))
            await asyncio.wait_for(self._wait_for_ready(), timeout=self.init_timeout)
        except TimeoutError:
            error = SessionTimeoutError(
                f"Session initialization timeout after {self.init_timeout}s"
            )
            await self._abort(error)
            raise error from None
        except ChuckyError as e:
            await self._abort(e)
            raise

        if self._state == SessionState.COMPLETED:
            # close() ran while the acknowledgement was in flight
            raise DisconnectedError("Session closed", code="session_closed")
        self._state = SessionState.READY
        logger.info(f"Session ready (session_id={self._session_id})")

    async def _wait_for_ready(self) -> None:
        while True:
            envelope = await self._channel.get()
            if envelope.is_ready_ack():
                return
            if envelope.is_error():
                raise protocol_error(envelope)
            logger.debug(f"Ignoring '{envelope.type}' while waiting for ready")

    async def _abort(self, error: ChuckyError) -> None:
        """Record a failure and tear the transport down."""
        if self._state == SessionState.COMPLETED:
            # Closed during initialization; completed is terminal
            return
        logger.error(f"Session failed: {error}")
        self._state = SessionState.ERROR
        self._error = error
        self._closing = True
        try:
            await self.transport.disconnect()
        finally:
            self._closing = False
        self._channel.close(error)

    # =========================================================================
    # Turns
    # =========================================================================

    async def _begin_turn(self) -> None:
        if self._state == SessionState.IDLE:
            await self.connect()
        if self._state == SessionState.ERROR and self._error is not None:
            raise InvalidStateError(
                f"Cannot send: session state is error ({self._error})"
            ) from self._error
        if self._state != SessionState.READY:
            raise InvalidStateError(f"Cannot send: session state is {self._state.value}")

        self._state = SessionState.PROCESSING
        self._result = None

    async def send(self, content: str | list[dict[str, Any]]) -> Envelope:
        """Send a user turn and wait for its terminal result.

        Tool calls arriving during the turn are serviced transparently.

        Returns:
            The terminal ``result`` envelope

        Raises:
            InvalidStateError: If the session is not ready
            ProtocolError: If the server ends the turn with an error envelope
            DisconnectedError: If the connection drops mid-turn
        """
        await self._begin_turn()
        completed = False
        try:
            await self.transport.send(Envelope.user_message(content, self._session_id or ""))
            while True:
                envelope = await self._channel.get()
                if envelope.is_result():
                    completed = True
                    return envelope
                if envelope.is_error():
                    completed = True
                    raise protocol_error(envelope)
                if envelope.is_tool_call():
                    await self._answer_tool_call(envelope)
        except ChuckyError:
            completed = True
            raise
        finally:
            self._end_turn(completed)

    async def stream(self, content: str | list[dict[str, Any]]) -> AsyncIterator[StreamEvent]:
        """Send a user turn and yield granular events until the turn ends.

        The last event is a ResultEvent, or an ErrorEvent if the server
        reported an error. If the caller stops iterating early, the rest of
        the turn is drained in the background (tool calls are still
        answered) and the session returns to ``ready`` when it ends.
        """
        await self._begin_turn()
        turn_over = False
        try:
            await self.transport.send(Envelope.user_message(content, self._session_id or ""))
            while True:
                envelope = await self._channel.get()
                if envelope.is_result() or envelope.is_error():
                    # Ready before the last yield, so breaking out on it is safe
                    turn_over = True
                    self._end_turn(True)
                    for event in stream_events(envelope):
                        yield event
                    return
                # Started before yielding so an early exit cannot skip the reply
                tool_task = self._start_tool_call(envelope) if envelope.is_tool_call() else None
                for event in stream_events(envelope):
                    yield event
                if tool_task is not None:
                    await self._finish_tool_call(tool_task)
        except ChuckyError:
            turn_over = True
            self._end_turn(True)
            raise
        finally:
            if not turn_over:
                self._end_turn(False)

    def _end_turn(self, completed: bool) -> None:
        if self._state not in (SessionState.PROCESSING, SessionState.WAITING_TOOL):
            return
        if completed:
            self._state = SessionState.READY
            return
        logger.debug("Turn abandoned before its result, draining in background")
        self._drain_task = asyncio.get_running_loop().create_task(self._drain_turn())

    async def _drain_turn(self) -> None:
        try:
            # A round trip interrupted by the caller still finishes first
            tool_task, self._tool_task = self._tool_task, None
            if tool_task is not None:
                await tool_task
            while True:
                envelope = await self._channel.get()
                if envelope.is_result() or envelope.is_error():
                    break
                if envelope.is_tool_call():
                    await self._answer_tool_call(envelope)
        except ChuckyError as e:
            logger.debug(f"Abandoned turn ended: {e}")
            return
        if self._state in (SessionState.PROCESSING, SessionState.WAITING_TOOL):
            self._state = SessionState.READY

    async def _answer_tool_call(self, envelope: Envelope) -> None:
        tool_task = self._start_tool_call(envelope)
        if tool_task is not None:
            await self._finish_tool_call(tool_task)

    async def _finish_tool_call(self, tool_task: asyncio.Task[None]) -> None:
        try:
            # Cancelling the turn must not cancel the reply
            await asyncio.shield(tool_task)
        except asyncio.CancelledError:
            if tool_task.cancelled() and self._state == SessionState.COMPLETED:
                raise DisconnectedError("Session closed", code="session_closed") from None
            raise

    def _start_tool_call(self, envelope: Envelope) -> asyncio.Task[None] | None:
        """Start the round trip for a tool call with a local handler.

        The handler and the ``tool_result`` send run in their own task, so a
        caller that cancels or abandons the turn never leaves a call
        unanswered. Returns None when there is nothing to run locally.
        """
        try:
            call = envelope.tool_call_payload()
        except ValueError as e:
            logger.warning(f"Ignoring malformed tool call: {e}")
            return None

        handler = self._tool_handlers.get(call.tool_name)
        if handler is None:
            # Executed server-side
            logger.debug(f"No local handler for tool '{call.tool_name}'")
            return None

        self._state = SessionState.WAITING_TOOL
        logger.debug(f"Executing tool '{call.tool_name}' (call_id={call.call_id})")
        self._emit("on_tool_use", call)
        self._tool_task = asyncio.get_running_loop().create_task(self._run_tool_call(call, handler))
        return self._tool_task

    async def _run_tool_call(self, call: ToolCall, handler: Callable[..., Any]) -> None:
        try:
            try:
                result = await invoke_handler(handler, call.input)
            except Exception as e:
                logger.warning(f"Tool '{call.tool_name}' failed: {e}")
                result = ToolResult.error(str(e) or e.__class__.__name__).to_wire()

            self._emit("on_tool_result", call.call_id, result)
            await self.transport.send(Envelope.tool_result(call.call_id, result))
        finally:
            if self._state == SessionState.WAITING_TOOL:
                self._state = SessionState.PROCESSING
            if self._tool_task is asyncio.current_task():
                self._tool_task = None

    # =========================================================================
    # Close
    # =========================================================================

    async def close(self) -> None:
        """Close the session. Safe to call repeatedly and from any state."""
        if self._state == SessionState.COMPLETED:
            return

        self._closing = True
        try:
            if self.transport.status == ConnectionStatus.CONNECTED:
                try:
                    await self.transport.send(Envelope.control(ControlAction.CLOSE))
                except Exception as e:
                    logger.debug(f"Ignoring failure to send close: {e}")
            try:
                await self.transport.disconnect()
            except Exception as e:
                logger.warning(f"Error disconnecting transport: {e}")
        finally:
            self._state = SessionState.COMPLETED
            self._channel.close(DisconnectedError("Session closed", code="session_closed"))
            if self._drain_task is not None and not self._drain_task.done():
                self._drain_task.cancel()
            self._drain_task = None
            if self._tool_task is not None and not self._tool_task.done():
                self._tool_task.cancel()
            self._tool_task = None
            logger.info(f"Session closed (session_id={self._session_id})")

    async def __aenter__(self) -> Session:
        await self.connect()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    # =========================================================================
    # Transport callbacks
    # =========================================================================

    def _handle_message(self, envelope: Envelope) -> None:
        if self.debug:
            logger.debug(f"Received: {envelope.type}")

        if envelope.is_ready_ack():
            self._capture_session_info(envelope)
        elif envelope.is_result():
            self._result = envelope
            self._emit("on_complete", envelope)
        elif envelope.is_stream_event():
            for event in stream_events(envelope):
                if isinstance(event, TextDelta):
                    self._emit("on_text", event.text)
                elif isinstance(event, ThinkingDelta):
                    self._emit("on_thinking", event.thinking)

        self._emit("on_message", envelope)
        self._channel.put(envelope)

    def _capture_session_info(self, envelope: Envelope) -> None:
        if envelope.is_control():
            try:
                info = envelope.control_payload().data or {}
            except ValueError as e:
                logger.warning(f"Ignoring malformed session info: {e}")
                info = {}
            session_id = info.get("sessionId") or info.get("session_id")
        else:
            info = envelope.to_wire()
            session_id = envelope.get("session_id")

        if session_id:
            self._session_id = session_id
        if envelope.control_action != ControlAction.READY.value:
            self._emit("on_session_info", info)

    def _handle_transport_error(self, error: Exception) -> None:
        self._emit("on_error", error)

    def _handle_status_change(self, status: ConnectionStatus) -> None:
        if status != ConnectionStatus.DISCONNECTED:
            return
        if self._closing or self._state in (SessionState.IDLE, SessionState.COMPLETED):
            return

        error = DisconnectedError("Connection lost")
        logger.warning(f"Session {self._session_id or '(uninitialized)'} lost its connection")
        self._state = SessionState.ERROR
        self._error = error
        self._channel.close(error)

    def _emit(self, name: str, *args: Any) -> None:
        callback = getattr(self._handlers, name)
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            logger.exception(f"Session {name} handler failed")
