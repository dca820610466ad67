"""Client-declared tools.

Tools are declared by the application and sent to the sandbox in the
``init`` envelope. A tool with a local handler executes CLIENT-SIDE:

1. The SDK sends the tool schema with ``executeIn`` set to the client marker
2. The model decides to call the tool; the server sends a ``tool_call``
3. The session looks up the handler by name and runs it locally
4. The session replies with a ``tool_result`` correlated by call id

Tools without a handler are declarations only; the server executes them.

Usage:
    async def add(input: dict) -> ToolResult:
        return ToolResult.text(str(input["a"] + input["b"]))

    tool = ToolDefinition(
        name="add",
        description="Add two numbers",
        input_schema={
            "type": "object",
            "properties": {"a": {"type": "number"}, "b": {"type": "number"}},
            "required": ["a", "b"],
        },
        handler=add,
    )
"""

from __future__ import annotations

import inspect
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class ExecutionLocation(str, Enum):
    """Where a tool executes."""

    SERVER = "server"
    # Wire marker for client-side execution
    CLIENT = "browser"


@dataclass
class ToolResult:
    """Result of a tool execution, in MCP content-block form.

    Attributes:
        content: Content blocks (``{"type": "text", "text": ...}`` and friends)
        is_error: Whether the tool failed
    """

    content: list[dict[str, Any]] = field(default_factory=list)
    is_error: bool = False

    @classmethod
    def text(cls, text: str) -> ToolResult:
        """Create a successful single-text result."""
        return cls(content=[{"type": "text", "text": text}])

    @classmethod
    def error(cls, message: str) -> ToolResult:
        """Create an error-flagged result."""
        return cls(content=[{"type": "text", "text": message}], is_error=True)

    def to_wire(self) -> dict[str, Any]:
        return {"content": self.content, "isError": self.is_error}


# Handlers take the tool input and return a ToolResult, a wire dict, or a plain
# value; they may be sync or async.
ToolHandler = Callable[[dict[str, Any]], Any]


@dataclass
class ToolDefinition:
    """Definition of a tool declared by the client.

    Attributes:
        name: Unique identifier for the tool
        description: Human-readable description for the model
        input_schema: JSON Schema for the tool's input (sent as-is)
        execute_in: Where the tool runs; forced to the client marker when a
            handler is present
        handler: Optional local implementation
    """

    name: str
    description: str
    input_schema: dict[str, Any] = field(default_factory=lambda: {"type": "object"})
    execute_in: ExecutionLocation | None = None
    handler: ToolHandler | None = None

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("Tool name cannot be empty")
        if not self.description:
            raise ValueError("Tool description cannot be empty")
        if self.handler is not None and not callable(self.handler):
            raise ValueError("Tool handler must be callable")

    def to_wire(self) -> dict[str, Any]:
        """Serialize for the init payload. The handler never crosses the wire."""
        data: dict[str, Any] = {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.input_schema,
        }
        location = ExecutionLocation.CLIENT if self.handler is not None else self.execute_in
        if location is not None:
            data["executeIn"] = location.value
        return data


@dataclass
class McpServerDefinition:
    """A named group of tools exposed to the sandbox as an MCP server."""

    name: str
    tools: list[ToolDefinition] = field(default_factory=list)
    version: str | None = None

    def to_wire(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "name": self.name,
            "tools": [tool.to_wire() for tool in self.tools],
        }
        if self.version:
            data["version"] = self.version
        return data


def collect_handlers(
    tools: list[ToolDefinition] | None,
    mcp_servers: list[McpServerDefinition] | None = None,
) -> dict[str, ToolHandler]:
    """Build the name -> handler table for tools that execute client-side."""
    handlers: dict[str, ToolHandler] = {}
    definitions = list(tools or [])
    for server in mcp_servers or []:
        definitions.extend(server.tools)

    for tool in definitions:
        if tool.handler is None:
            continue
        if tool.name in handlers:
            logger.warning(f"Duplicate handler for tool '{tool.name}', keeping the first")
            continue
        handlers[tool.name] = tool.handler
    return handlers


def to_wire_result(value: Any) -> dict[str, Any]:
    """Coerce a handler's return value into a wire tool result."""
    if isinstance(value, ToolResult):
        return value.to_wire()
    if isinstance(value, dict) and "content" in value:
        return value
    if value is None:
        return ToolResult().to_wire()
    if isinstance(value, str):
        return ToolResult.text(value).to_wire()
    try:
        return ToolResult.text(json.dumps(value)).to_wire()
    except (TypeError, ValueError):
        return ToolResult.text(str(value)).to_wire()


async def invoke_handler(handler: ToolHandler, tool_input: dict[str, Any]) -> dict[str, Any]:
    """Run a tool handler, awaiting it if async, and return the wire result.

    Exceptions raised by the handler propagate to the caller.
    """
    value = handler(tool_input)
    if inspect.isawaitable(value):
        value = await value
    return to_wire_result(value)
