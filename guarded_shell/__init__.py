"""guarded-shell: policy-checked shell execution for agents.

This package lets a calling agent run shell commands locally through a
selectable shell profile, or remotely over SSH, while an administrator-defined
security policy decides what may run.

Main entry points:
- CommandToolset: the four tools (PydanticAI toolset)
- guarded-shell CLI: one-off commands and a JSON-lines server

Security model: commands are validated before they reach a shell, but the
shell itself still runs with the server's privileges. Run the server as an
unprivileged user.
"""
from __future__ import annotations

from .config import (
    SSHConnectionConfig,
    SSHSettings,
    SecurityPolicy,
    ServerConfig,
    ShellProfile,
    create_default_config,
    load_config,
)
from .errors import (
    CommandParseError,
    CommandTimeoutError,
    ExecutionError,
    InvalidParamsError,
    PolicyError,
    SessionError,
    SpawnError,
    StreamError,
    ToolError,
    ToolErrorKind,
    UnknownToolError,
)
from .execution import ExecutionEngine, SubprocessSpawner, format_result
from .history import CommandHistory
from .parsing import ParsedCommand, extract_command_name, parse_command
from .policy import PolicyValidator
from .retention import sweep_output_files
from .ssh import ParamikoTransport, SessionHandle, SessionPool
from .toolset import CommandToolset
from .types import ExecutionResult, HistoryEntry, ToolResponse

__all__ = [
    # Configuration
    "SSHConnectionConfig",
    "SSHSettings",
    "SecurityPolicy",
    "ServerConfig",
    "ShellProfile",
    "create_default_config",
    "load_config",
    # Errors
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
    # Core
    "CommandHistory",
    "CommandToolset",
    "ExecutionEngine",
    "ParsedCommand",
    "PolicyValidator",
    "SessionHandle",
    "SessionPool",
    "ParamikoTransport",
    "SubprocessSpawner",
    "extract_command_name",
    "format_result",
    "parse_command",
    "sweep_output_files",
    # Results
    "ExecutionResult",
    "HistoryEntry",
    "ToolResponse",
    # Version
    "__version__",
]

__version__ = "0.1.0"
