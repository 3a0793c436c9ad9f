"""Security policy enforcement for raw command lines.

PolicyValidator decides whether a command may be handed to a shell. Checks
run in a fixed order and the first failure wins:

1. Shell operators (when injection protection is enabled)
2. Blocked executables
3. Blocked arguments
4. Command length

Rejections raise PolicyError before any process or session is touched.
Working-directory restriction lives here too; the execution engine applies it
before spawning.
"""
from __future__ import annotations

import logging
import os
import re
import sys
from pathlib import Path
from typing import List, Optional, Pattern, Sequence

from .config import REGEX_PREFIX, SecurityPolicy, ShellProfile
from .errors import PolicyError
from .parsing import (
    ParsedCommand,
    extract_command_name,
    parse_command,
    split_commands,
    strip_executable_extension,
)
from .scanner import POSIX, ShellSyntax, find_operators, get_syntax

logger = logging.getLogger(__name__)

_ASSIGNMENT = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*=")
_PATH_SEPARATORS = re.compile(r"[\\/]")


def normalize_executable(name: str) -> str:
    """Reduce an executable token to a lowercase bare name without extension."""
    base = _PATH_SEPARATORS.split(name)[-1]
    # Windows ignores trailing dots and spaces in file names
    base = base.rstrip(". ").lower()
    return strip_executable_extension(base)


def _is_within(path: str, prefix: str) -> bool:
    if sys.platform.startswith("win"):
        path, prefix = path.lower(), prefix.lower()
    if path == prefix:
        return True
    if not prefix.endswith(os.sep):
        prefix += os.sep
    return path.startswith(prefix)


class PolicyValidator:
    """Applies an immutable SecurityPolicy to commands."""

    def __init__(self, policy: SecurityPolicy):
        self._policy = policy
        self._blocked = {normalize_executable(name) for name in policy.blocked_commands}
        # Literal entries match a whole argument; "re:" entries are searched.
        self._literal_arguments = {
            p.lower() for p in policy.blocked_arguments if not p.startswith(REGEX_PREFIX)
        }
        self._argument_patterns: List[Pattern[str]] = [
            re.compile(p[len(REGEX_PREFIX):], re.IGNORECASE)
            for p in policy.blocked_arguments
            if p.startswith(REGEX_PREFIX)
        ]
        self._allowed_paths = [
            str(Path(p).expanduser().resolve()) for p in policy.allowed_paths
        ]

    @property
    def policy(self) -> SecurityPolicy:
        return self._policy

    def validate(
        self,
        profile: ShellProfile,
        command: str,
        parsed: Optional[ParsedCommand] = None,
    ) -> ParsedCommand:
        """Validate `command` for execution through `profile`.

        Args:
            profile: Shell profile the command will run under
            command: Raw command text
            parsed: Pre-parsed command (parsed here when omitted)

        Returns:
            The parsed command

        Raises:
            PolicyError: If any check fails (CommandParseError for bad quoting)
        """
        syntax = get_syntax(profile.syntax)
        if not command.strip():
            raise PolicyError("Command is empty")

        if self._policy.enable_injection_protection:
            self.check_operators(command, syntax, profile.allowed_operators)

        if parsed is None:
            parsed = parse_command(command, syntax)

        for executable in self._executables(command, syntax, parsed):
            if self.is_command_blocked(executable):
                logger.debug(f"Rejected blocked executable {executable!r}")
                raise PolicyError(
                    f'Command is blocked: "{extract_command_name(executable)}"'
                )

        if self.is_argument_blocked(parsed.args):
            raise PolicyError(
                "One or more arguments are blocked. Check configuration for blocked patterns."
            )

        if len(command) > self._policy.max_command_length:
            raise PolicyError(
                f"Command exceeds maximum length of {self._policy.max_command_length}"
            )
        return parsed

    def check_operators(
        self,
        command: str,
        syntax: ShellSyntax = POSIX,
        allowed: Sequence[str] = (),
    ) -> None:
        """Reject shell operators found outside quoted literals.

        Raises:
            PolicyError: If a non-whitelisted operator is active
        """
        for index, op in find_operators(command, syntax):
            if op in allowed:
                continue
            logger.debug(f"Rejected operator {op!r} at position {index}")
            raise PolicyError(
                f"Command contains blocked operator for {syntax.name} shell: {op!r}. "
                "Command chaining and substitution are not allowed."
            )

    def _executables(
        self,
        command: str,
        syntax: ShellSyntax,
        parsed: ParsedCommand,
    ) -> List[str]:
        # Each simple command joined by a whitelisted separator gets checked.
        segments = split_commands(command, syntax)
        if len(segments) <= 1:
            tokens = [parsed.executable, *parsed.args]
            return [self._command_word(tokens, syntax)]
        executables = []
        for segment in segments:
            part = parse_command(segment, syntax)
            executables.append(self._command_word([part.executable, *part.args], syntax))
        return executables

    @staticmethod
    def _command_word(tokens: List[str], syntax: ShellSyntax) -> str:
        if syntax is POSIX:
            while len(tokens) > 1 and _ASSIGNMENT.match(tokens[0]):
                tokens = tokens[1:]
        return tokens[0] if tokens else ""

    def is_command_blocked(self, executable: str) -> bool:
        """True if `executable` names a blocked command in any casing, path or extension."""
        if not executable:
            return False
        return normalize_executable(executable) in self._blocked

    def is_argument_blocked(self, args: Sequence[str]) -> bool:
        for arg in args:
            if arg.lower() in self._literal_arguments:
                return True
            if any(pattern.search(arg) for pattern in self._argument_patterns):
                return True
        return False

    def resolve_working_dir(self, working_dir: Optional[str]) -> Path:
        """Resolve the directory a command runs in and enforce the path restriction.

        Raises:
            PolicyError: If restriction is enabled and the directory is outside
                every allowed path
        """
        resolved = Path(working_dir).expanduser().resolve() if working_dir else Path.cwd().resolve()
        if not self._policy.restrict_working_directory:
            return resolved
        if not any(_is_within(str(resolved), prefix) for prefix in self._allowed_paths):
            raise PolicyError(
                f"Working directory ({resolved}) outside allowed paths. Consult the server "
                "admin for configuration changes (restrict_working_directory, allowed_paths)."
            )
        return resolved


__all__ = ["PolicyValidator", "normalize_executable"]
