"""Error types raised by the command tools.

Every error surfaced to a calling agent is a ToolError carrying a kind:
- invalid_request: policy rejection, disabled feature, unknown identifier
- invalid_params: malformed call arguments
- internal_error: spawn failure, stream fault, timeout, remote-session failure
- method_not_found: unknown tool name

The numeric codes follow JSON-RPC so a transport can forward them as-is.
"""
from __future__ import annotations

from enum import Enum


class ToolErrorKind(str, Enum):
    """Category of a tool failure, with its JSON-RPC error code."""

    INVALID_REQUEST = "invalid_request"
    METHOD_NOT_FOUND = "method_not_found"
    INVALID_PARAMS = "invalid_params"
    INTERNAL_ERROR = "internal_error"

    @property
    def code(self) -> int:
        return _ERROR_CODES[self]


_ERROR_CODES = {
    ToolErrorKind.INVALID_REQUEST: -32600,
    ToolErrorKind.METHOD_NOT_FOUND: -32601,
    ToolErrorKind.INVALID_PARAMS: -32602,
    ToolErrorKind.INTERNAL_ERROR: -32603,
}


class ToolError(Exception):
    """Base error for tool calls."""

    kind = ToolErrorKind.INTERNAL_ERROR

    def __init__(self, message: str, kind: ToolErrorKind | None = None):
        super().__init__(message)
        self.message = message
        if kind is not None:
            self.kind = kind

    def to_dict(self) -> dict:
        return {"code": self.kind.code, "kind": self.kind.value, "message": self.message}


class PolicyError(ToolError):
    """Raised when a command is rejected by the security policy."""

    kind = ToolErrorKind.INVALID_REQUEST


class CommandParseError(PolicyError):
    """Raised when a command line has unterminated quoting."""


class InvalidParamsError(ToolError):
    """Raised when tool arguments fail validation."""

    kind = ToolErrorKind.INVALID_PARAMS


class UnknownToolError(ToolError):
    """Raised for a tool name this server does not provide."""

    kind = ToolErrorKind.METHOD_NOT_FOUND


class ExecutionError(ToolError):
    """Base error for failures after a command passed validation."""


class SpawnError(ExecutionError):
    """Raised when the shell process cannot be started."""


class StreamError(ExecutionError):
    """Raised when the output streams of a process fail."""


class CommandTimeoutError(ExecutionError):
    """Raised when a command outlives the configured timeout."""


class SessionError(ExecutionError):
    """Raised when a remote session cannot connect or run a command."""


__all__ = [
    "CommandParseError",
    "CommandTimeoutError",
    "ExecutionError",
    "InvalidParamsError",
    "PolicyError",
    "SessionError",
    "SpawnError",
    "StreamError",
    "ToolError",
    "ToolErrorKind",
    "UnknownToolError",
]
