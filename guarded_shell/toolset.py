"""Command execution tools as a PydanticAI toolset.

This module provides CommandToolset which:
1. Exposes execute_command, get_command_history, ssh_execute and
   ssh_disconnect to a calling agent
2. Validates call arguments against pydantic models (every violation reported)
3. Runs each command through the PolicyValidator before anything executes
4. Delegates to the ExecutionEngine (local) or SessionPool (remote) and
   records outcomes in the CommandHistory

`dispatch()` raises ToolError subclasses; `call_tool()` turns them into error
responses so an agent run can continue.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Type, TypeVar, cast

from pydantic import BaseModel, ConfigDict, Field, ValidationError, ValidationInfo, field_validator
from pydantic_ai.tools import ToolDefinition
from pydantic_ai.toolsets import AbstractToolset, ToolsetTool
from pydantic_ai.toolsets.abstract import SchemaValidatorProt

from .config import ServerConfig
from .errors import (
    ExecutionError,
    InvalidParamsError,
    PolicyError,
    SessionError,
    ToolError,
    UnknownToolError,
)
from .execution import ExecutionEngine, SubprocessSpawner, format_result
from .history import CommandHistory
from .policy import PolicyValidator
from .ssh import ParamikoTransport, SessionPool, TransportFactory
from .types import ABNORMAL_EXIT_CODE, ToolResponse

logger = logging.getLogger(__name__)

ArgsT = TypeVar("ArgsT", bound=BaseModel)

HISTORY_DISABLED_MESSAGE = (
    "Command history is disabled in configuration. "
    "Consult the server admin for configuration changes (log_commands)."
)


class ExecuteCommandArgs(BaseModel):
    """Arguments for execute_command."""

    model_config = ConfigDict(populate_by_name=True)

    shell: str = Field(description="Shell to use for command execution")
    command: str = Field(description="Command to execute")
    working_dir: Optional[str] = Field(
        default=None,
        alias="workingDir",
        description="Working directory for command execution (optional)",
    )

    @field_validator("shell")
    @classmethod
    def _enabled_shell(cls, value: str, info: ValidationInfo) -> str:
        shells = (info.context or {}).get("shells")
        if shells is not None and value not in shells:
            raise ValueError(f"Shell must be one of: {', '.join(shells) or '(none enabled)'}")
        return value


class CommandHistoryArgs(BaseModel):
    """Arguments for get_command_history."""

    limit: Optional[int] = Field(
        default=None,
        description="Maximum number of history entries to return (default: 10)",
    )


class SSHExecuteArgs(BaseModel):
    """Arguments for ssh_execute."""

    model_config = ConfigDict(populate_by_name=True)

    connection_id: str = Field(alias="connectionId", description="ID of the SSH connection to use")
    command: str = Field(description="Command to execute")


class SSHDisconnectArgs(BaseModel):
    """Arguments for ssh_disconnect."""

    model_config = ConfigDict(populate_by_name=True)

    connection_id: str = Field(
        alias="connectionId",
        description="ID of the SSH connection to disconnect",
    )


def format_validation_error(error: ValidationError) -> str:
    """List every violation in a ValidationError, not only the first."""
    problems = []
    for item in error.errors():
        location = ".".join(str(part) for part in item["loc"])
        problems.append(f"{location}: {item['msg']}" if location else item["msg"])
    return "Invalid arguments: " + "; ".join(problems)


class _ArgsValidator:
    """Validates tool arguments against a schema with context, returning dicts."""

    def __init__(self, schema: Type[BaseModel], context: Dict[str, Any]) -> None:
        self._schema = schema
        self._context = context

    def _to_dict(self, result: BaseModel) -> dict[str, Any]:
        return result.model_dump(by_alias=True)

    def validate_python(self, input: Any, *, allow_partial: Any = False, **kwargs: Any) -> dict[str, Any]:
        return self._to_dict(self._schema.model_validate(input, context=self._context))

    def validate_json(self, input: str | bytes | bytearray, *, allow_partial: Any = False, **kwargs: Any) -> dict[str, Any]:
        return self._to_dict(self._schema.model_validate_json(input, context=self._context))

    def validate_strings(self, data: Any, **kwargs: Any) -> dict[str, Any]:
        return self._to_dict(self._schema.model_validate_strings(data, context=self._context))


class CommandToolset(AbstractToolset[Any]):
    """Policy-checked local and remote command execution tools.

    The toolset owns the pieces an invocation needs: the immutable policy
    snapshot (through its PolicyValidator), the history buffer and the session
    pool. Use it as an async context manager, or call `close()`, so pooled
    sessions are torn down.
    """

    def __init__(
        self,
        config: ServerConfig,
        *,
        history: Optional[CommandHistory] = None,
        spawner: Optional[SubprocessSpawner] = None,
        transport_factory: TransportFactory = ParamikoTransport,
        id: Optional[str] = None,
        max_retries: int = 1,
    ):
        """Initialize the command toolset.

        Args:
            config: Loaded server configuration
            history: History buffer to record into (a new one by default)
            spawner: Process spawner for local commands
            transport_factory: Builds remote transports for the session pool
            id: Optional toolset ID for durable execution.
            max_retries: Maximum retries for tool calls.
        """
        self._config = config
        self._policy = config.security
        self._validator = PolicyValidator(config.security)
        self._engine = ExecutionEngine(self._validator, spawner)
        self._pool = SessionPool(transport_factory, close_timeout=config.ssh.close_timeout)
        if history is None:
            history = CommandHistory(config.security.max_history_size)
        self._history = history
        self._id = id
        self._max_retries = max_retries
        self._handlers: Dict[str, Callable[[Dict[str, Any]], Awaitable[ToolResponse]]] = {
            "execute_command": self.execute_command,
            "get_command_history": self.get_command_history,
            "ssh_execute": self.ssh_execute,
            "ssh_disconnect": self.ssh_disconnect,
        }

    @property
    def id(self) -> str | None:
        """Return toolset ID for durable execution."""
        return self._id

    @property
    def config(self) -> ServerConfig:
        return self._config

    @property
    def history(self) -> CommandHistory:
        return self._history

    @property
    def pool(self) -> SessionPool:
        return self._pool

    @property
    def tool_names(self) -> List[str]:
        return list(self._handlers)

    async def __aexit__(self, *args: Any) -> bool | None:
        await self.close()
        return None

    async def close(self) -> None:
        """Close every pooled remote session."""
        await self._pool.close_all()

    # -- tool catalog -------------------------------------------------------

    def _validation_context(self) -> Dict[str, Any]:
        return {"shells": self._config.enabled_shells}

    def _schemas(self) -> Dict[str, Type[BaseModel]]:
        return {
            "execute_command": ExecuteCommandArgs,
            "get_command_history": CommandHistoryArgs,
            "ssh_execute": SSHExecuteArgs,
            "ssh_disconnect": SSHDisconnectArgs,
        }

    def describe_tools(self) -> List[ToolDefinition]:
        """Return the tool definitions advertised to agents."""
        max_history = self._policy.max_history_size
        connections = list(self._config.ssh.connections)

        execute_schema = ExecuteCommandArgs.model_json_schema()
        execute_schema["properties"]["shell"]["enum"] = self._config.enabled_shells
        history_schema = CommandHistoryArgs.model_json_schema()
        history_schema["properties"]["limit"]["description"] = (
            f"Maximum number of history entries to return (default: 10, max: {max_history})"
        )
        ssh_schema = SSHExecuteArgs.model_json_schema()
        ssh_schema["properties"]["connectionId"]["enum"] = connections
        disconnect_schema = SSHDisconnectArgs.model_json_schema()
        disconnect_schema["properties"]["connectionId"]["enum"] = connections

        return [
            ToolDefinition(
                name="execute_command",
                description=(
                    f"Execute a command in the specified shell ({', '.join(self._config.enabled_shells)}). "
                    "Commands are checked against the security policy first; command chaining "
                    "and substitution operators outside quotes are rejected."
                ),
                parameters_json_schema=execute_schema,
            ),
            ToolDefinition(
                name="get_command_history",
                description="Get the history of executed commands, most recent last.",
                parameters_json_schema=history_schema,
            ),
            ToolDefinition(
                name="ssh_execute",
                description="Execute a command on a remote host via SSH.",
                parameters_json_schema=ssh_schema,
            ),
            ToolDefinition(
                name="ssh_disconnect",
                description=(
                    "Disconnect from an SSH server. Use this to cleanly close SSH "
                    "connections when they're no longer needed."
                ),
                parameters_json_schema=disconnect_schema,
            ),
        ]

    async def get_tools(self, ctx: Any) -> dict[str, ToolsetTool]:
        """Return the tool definitions."""
        schemas = self._schemas()
        context = self._validation_context()
        return {
            tool_def.name: ToolsetTool(
                toolset=self,
                tool_def=tool_def,
                max_retries=self._max_retries,
                args_validator=cast(
                    SchemaValidatorProt, _ArgsValidator(schemas[tool_def.name], context)
                ),
            )
            for tool_def in self.describe_tools()
        }

    async def call_tool(
        self,
        name: str,
        tool_args: dict[str, Any],
        ctx: Any,
        tool: ToolsetTool[Any],
    ) -> ToolResponse:
        """Run a tool call, reporting tool errors as an error response."""
        try:
            return await self.dispatch(name, tool_args)
        except ToolError as e:
            return ToolResponse(
                text=e.message,
                is_error=True,
                metadata={"code": e.kind.code, "kind": e.kind.value},
            )

    # -- dispatch -----------------------------------------------------------

    async def dispatch(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> ToolResponse:
        """Run the tool `name` with raw `arguments`.

        Raises:
            UnknownToolError: If `name` is not one of the four tools
            InvalidParamsError: If the arguments fail validation
            PolicyError: If the request is rejected
            ExecutionError: If execution fails after validation
        """
        handler = self._handlers.get(name)
        if handler is None:
            raise UnknownToolError(f"Unknown tool: {name}")
        return await handler(arguments if arguments is not None else {})

    def _parse_args(self, schema: Type[ArgsT], arguments: Any) -> ArgsT:
        try:
            return schema.model_validate(arguments, context=self._validation_context())
        except ValidationError as e:
            raise InvalidParamsError(format_validation_error(e)) from e

    def _record(
        self,
        command: str,
        output: str,
        exit_code: int,
        connection_id: Optional[str] = None,
    ) -> None:
        if self._policy.log_commands:
            self._history.record(command, output, exit_code, connection_id)

    async def execute_command(self, arguments: Dict[str, Any]) -> ToolResponse:
        args = self._parse_args(ExecuteCommandArgs, arguments)
        profile = self._config.shells[args.shell]
        self._validator.validate(profile, args.command)

        try:
            result = await self._engine.execute(profile, args.command, args.working_dir)
        except ExecutionError as e:
            self._record(args.command, e.message, ABNORMAL_EXIT_CODE)
            raise

        text = format_result(result, self._policy)
        self._record(args.command, text, result.exit_code)
        return ToolResponse(
            text=text,
            is_error=not result.succeeded,
            metadata={
                "exitCode": result.exit_code,
                "shell": args.shell,
                "workingDirectory": result.working_directory,
            },
        )

    async def get_command_history(self, arguments: Dict[str, Any]) -> ToolResponse:
        if not self._policy.log_commands:
            return ToolResponse(text=HISTORY_DISABLED_MESSAGE)
        args = self._parse_args(CommandHistoryArgs, arguments)
        entries = self._history.recent(args.limit)
        payload = [entry.model_dump(by_alias=True, exclude_none=True) for entry in entries]
        return ToolResponse(text=json.dumps(payload, indent=2))

    def _require_ssh(self) -> None:
        if not self._config.ssh.enabled:
            raise PolicyError("SSH support is disabled in configuration")

    async def ssh_execute(self, arguments: Dict[str, Any]) -> ToolResponse:
        self._require_ssh()
        args = self._parse_args(SSHExecuteArgs, arguments)
        connection = self._config.ssh.connections.get(args.connection_id)
        if connection is None:
            raise PolicyError(f"Unknown SSH connection ID: {args.connection_id}")

        profile = self._config.shells[self._config.ssh.validation_shell]
        self._validator.validate(profile, args.command)

        try:
            handle = await self._pool.get_or_create(args.connection_id, connection)
            result = await self._pool.execute(
                handle,
                args.command,
                timeout=self._policy.command_timeout,
                max_output=self._policy.max_output_size,
            )
        except SessionError as e:
            message = f"SSH error: {e.message}"
            logger.warning(f"{message} (connection {args.connection_id})")
            self._record(args.command, message, ABNORMAL_EXIT_CODE, args.connection_id)
            raise SessionError(message) from e

        text = format_result(result, self._policy)
        self._record(args.command, text, result.exit_code, args.connection_id)
        return ToolResponse(
            text=text,
            is_error=not result.succeeded,
            metadata={"exitCode": result.exit_code, "connectionId": args.connection_id},
        )

    async def ssh_disconnect(self, arguments: Dict[str, Any]) -> ToolResponse:
        self._require_ssh()
        args = self._parse_args(SSHDisconnectArgs, arguments)
        await self._pool.close(args.connection_id)
        return ToolResponse(text=f"Disconnected from {args.connection_id}")


__all__ = [
    "CommandHistoryArgs",
    "CommandToolset",
    "ExecuteCommandArgs",
    "SSHDisconnectArgs",
    "SSHExecuteArgs",
    "format_validation_error",
]
