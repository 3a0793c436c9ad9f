"""Configuration loading for guarded-shell.

Reads an optional YAML config file holding three sections:

- security: the SecurityPolicy enforced before anything runs
- shells: named ShellProfiles (merged over the platform defaults)
- ssh: remote connection settings

All models are frozen; a loaded ServerConfig is an immutable snapshot for the
lifetime of the process.
"""
from __future__ import annotations

import os
import re
import sys
import tempfile
from pathlib import Path
from typing import Any, Dict, Literal, Optional, Tuple

import yaml
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    ValidationError,
    field_validator,
    model_validator,
)

from .scanner import get_syntax

CONFIG_FILENAMES = ("guarded-shell.yaml", "guarded-shell.yml")
USER_CONFIG_PATH = Path("~/.guarded-shell/config.yaml")

REGEX_PREFIX = "re:"

DEFAULT_OUTPUT_DIRNAME = "guarded-shell-output"

DEFAULT_BLOCKED_COMMANDS = (
    "format", "shutdown", "restart", "reboot", "halt", "poweroff",
    "reg", "regedit", "net", "netsh", "takeown", "icacls",
    "mkfs", "dd", "diskpart", "bcdedit",
)

DEFAULT_BLOCKED_ARGUMENTS = (
    "--exec", "-e", "/c", "-enc", "-encodedcommand", "-command",
    "--interactive", "-i", "--login", "--system",
)


def _default_allowed_paths() -> Tuple[str, ...]:
    return (str(Path.home()), os.getcwd())


class SecurityPolicy(BaseModel):
    """Administrator-defined limits applied to every command."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_command_length: int = Field(default=2000, gt=0)
    blocked_commands: Tuple[str, ...] = DEFAULT_BLOCKED_COMMANDS
    blocked_arguments: Tuple[str, ...] = Field(
        default=DEFAULT_BLOCKED_ARGUMENTS,
        description="Literal argument values, or regular expressions prefixed with 're:'",
    )
    allowed_paths: Tuple[str, ...] = Field(default_factory=_default_allowed_paths)
    restrict_working_directory: bool = True
    log_commands: bool = True
    max_history_size: int = Field(default=1000, gt=0)
    command_timeout: float = Field(default=30, gt=0, description="Seconds")
    enable_injection_protection: bool = True
    max_output_size: int = Field(default=1024 * 1024, gt=0, description="Characters")
    enable_output_files: bool = True
    output_directory: Optional[Path] = None
    output_file_retention_hours: float = Field(default=24, ge=0)

    @field_validator("blocked_arguments")
    @classmethod
    def _check_patterns(cls, value: Tuple[str, ...]) -> Tuple[str, ...]:
        for pattern in value:
            if pattern.startswith(REGEX_PREFIX):
                try:
                    re.compile(pattern[len(REGEX_PREFIX):])
                except re.error as e:
                    raise ValueError(f"Invalid blocked argument pattern {pattern!r}: {e}") from e
        return value

    @property
    def effective_output_directory(self) -> Path:
        if self.output_directory is not None:
            return self.output_directory.expanduser()
        return Path(tempfile.gettempdir()) / DEFAULT_OUTPUT_DIRNAME


class ShellProfile(BaseModel):
    """A shell the agent may run commands through."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    enabled: bool = True
    command: str
    args: Tuple[str, ...] = ()
    syntax: Literal["posix", "powershell", "cmd"] = "posix"
    allowed_operators: Tuple[str, ...] = Field(
        default=(),
        description="Operators permitted despite injection protection",
    )

    @model_validator(mode="after")
    def _check_operators(self) -> "ShellProfile":
        known = get_syntax(self.syntax).operators
        unknown = [op for op in self.allowed_operators if op not in known]
        if unknown:
            raise ValueError(
                f"Unknown {self.syntax} operators in allowed_operators: {unknown}"
            )
        return self


class SSHConnectionConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    host: str
    port: int = Field(default=22, gt=0, lt=65536)
    username: str
    password: Optional[SecretStr] = None
    private_key_path: Optional[Path] = None
    passphrase: Optional[SecretStr] = None
    connect_timeout: float = Field(default=20, gt=0)
    keepalive_interval: int = Field(default=10, ge=0)
    strict_host_key_checking: bool = True


class SSHSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    enabled: bool = False
    validation_shell: str = Field(
        default="bash",
        description="Shell profile whose syntax validates remote commands",
    )
    close_timeout: float = Field(default=5, gt=0)
    connections: Dict[str, SSHConnectionConfig] = Field(default_factory=dict)


def default_shells(platform: str = sys.platform) -> Dict[str, ShellProfile]:
    """Return the shell profiles available out of the box on `platform`."""
    if platform.startswith("win"):
        return {
            "powershell": ShellProfile(
                command="powershell.exe",
                args=("-NoProfile", "-NonInteractive", "-Command"),
                syntax="powershell",
            ),
            "cmd": ShellProfile(command="cmd.exe", args=("/c",), syntax="cmd"),
            "gitbash": ShellProfile(
                command=r"C:\Program Files\Git\bin\bash.exe",
                args=("-c",),
                syntax="posix",
            ),
            "bash": ShellProfile(enabled=False, command="bash", args=("-c",)),
        }
    return {
        "bash": ShellProfile(command="/bin/bash", args=("-c",)),
        "sh": ShellProfile(command="/bin/sh", args=("-c",)),
        "pwsh": ShellProfile(
            enabled=False,
            command="pwsh",
            args=("-NoProfile", "-NonInteractive", "-Command"),
            syntax="powershell",
        ),
    }


class ServerConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    security: SecurityPolicy = Field(default_factory=SecurityPolicy)
    shells: Dict[str, ShellProfile] = Field(default_factory=default_shells)
    ssh: SSHSettings = Field(default_factory=SSHSettings)
    path: Optional[Path] = Field(default=None, exclude=True)

    @model_validator(mode="after")
    def _check_ssh_shell(self) -> "ServerConfig":
        if self.ssh.enabled and self.ssh.validation_shell not in self.shells:
            raise ValueError(
                f"ssh.validation_shell '{self.ssh.validation_shell}' is not a configured shell"
            )
        return self

    @property
    def enabled_shells(self) -> list[str]:
        return [name for name, profile in self.shells.items() if profile.enabled]


def _merge_shells(raw: Any) -> Dict[str, Any]:
    merged: Dict[str, Any] = {
        name: profile.model_dump() for name, profile in default_shells().items()
    }
    if not raw:
        return merged
    if not isinstance(raw, dict):
        raise ValueError("'shells' must be a mapping of shell name to profile")
    for name, overrides in raw.items():
        if name in merged and isinstance(overrides, dict):
            merged[name] = {**merged[name], **overrides}
        else:
            merged[name] = overrides
    return merged


def _find_config_file(base_dir: Path) -> Optional[Path]:
    for filename in CONFIG_FILENAMES:
        candidate = base_dir / filename
        if candidate.exists():
            return candidate
    user_config = USER_CONFIG_PATH.expanduser()
    if user_config.exists():
        return user_config
    return None


def load_config(path: Optional[Path] = None, base_dir: Optional[Path] = None) -> ServerConfig:
    """Load the server configuration.

    Lookup order: explicit `path`, a config file in `base_dir` (defaults to
    the working directory), then ~/.guarded-shell/config.yaml. Without any
    file the built-in defaults are used.

    Raises:
        FileNotFoundError: If an explicit path does not exist
        ValueError: If the file is not valid YAML or fails validation
    """
    if path is not None:
        config_path: Optional[Path] = Path(path).expanduser()
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
    else:
        config_path = _find_config_file(base_dir or Path.cwd())

    if config_path is None:
        return ServerConfig()

    try:
        content = config_path.read_text(encoding="utf-8")
        data = yaml.safe_load(content) or {}
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in {config_path}: {e}") from e
    if not isinstance(data, dict):
        raise ValueError(f"Invalid configuration in {config_path}: expected a mapping")

    data["shells"] = _merge_shells(data.get("shells"))
    try:
        config = ServerConfig.model_validate(data)
    except ValidationError as e:
        raise ValueError(f"Invalid configuration in {config_path}: {e}") from e
    return config.model_copy(update={"path": config_path})


def create_default_config(path: Path) -> Path:
    """Write the default configuration to `path` as YAML."""
    target = Path(path).expanduser()
    serialized = yaml.safe_dump(
        ServerConfig().model_dump(mode="json", exclude_none=True),
        sort_keys=False,
    )
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(serialized, encoding="utf-8")
    return target


__all__ = [
    "CONFIG_FILENAMES",
    "REGEX_PREFIX",
    "SSHConnectionConfig",
    "SSHSettings",
    "SecurityPolicy",
    "ServerConfig",
    "ShellProfile",
    "create_default_config",
    "default_shells",
    "load_config",
]
