"""Error values raised by the SDK core.

Every failure carries a human-readable message and, optionally, a symbolic
code string. Richer mapping is left to the application.
"""

from __future__ import annotations

from typing import Any


class ChuckyError(Exception):
    """Base error carrying a message and an optional symbolic code."""

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.message = message
        self.code = code

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, code={self.code!r})"


class ConnectionFailedError(ChuckyError, ConnectionError):
    """The transport could not open a connection (socket error or timeout)."""

    def __init__(self, message: str, code: str | None = "connection_failed"):
        super().__init__(message, code)


class DisconnectedError(ChuckyError, ConnectionError):
    """The connection dropped while an operation was pending."""

    def __init__(self, message: str = "Transport disconnected", code: str | None = "disconnected"):
        super().__init__(message, code)


class SessionTimeoutError(ChuckyError, TimeoutError):
    """A bounded wait (connection attempt, initialization) elapsed."""

    def __init__(self, message: str, code: str | None = "timeout"):
        super().__init__(message, code)


class ProtocolError(ChuckyError):
    """The server answered with an ``error`` envelope."""

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, code)
        self.details = details or {}


class InvalidStateError(ChuckyError):
    """An operation was attempted in a session state that does not allow it."""

    def __init__(self, message: str, code: str | None = "invalid_state"):
        super().__init__(message, code)
