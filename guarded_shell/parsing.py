"""Command line tokenizing.

Tokens are built from the shared quote scanner, so quoted spaces and
operators never split a token and quote/escape characters are removed the
way the target shell would remove them.
"""
from __future__ import annotations

import re
from typing import List, NamedTuple

from .scanner import POSIX, CharRole, OperatorKind, ShellSyntax, find_operators, scan

WHITESPACE = frozenset(" \t\r\n")

# Extensions stripped when naming or comparing executables
EXECUTABLE_EXTENSIONS = (
    ".exe", ".com", ".cmd", ".bat", ".ps1", ".psm1",
    ".vbs", ".vbe", ".js", ".wsf", ".msc", ".sh",
)

_PATH_SEPARATORS = re.compile(r"[\\/]")


class ParsedCommand(NamedTuple):
    executable: str
    args: List[str]


def tokenize(raw: str, syntax: ShellSyntax = POSIX) -> List[str]:
    """Split a command line into tokens.

    Raises:
        CommandParseError: If a quote is left unterminated
    """
    tokens: List[str] = []
    current: List[str] = []
    started = False
    for item in scan(raw, syntax):
        if item.role is CharRole.QUOTE:
            started = True
        elif item.role is CharRole.ESCAPE:
            started = True
        elif item.bare and item.char in WHITESPACE:
            if started:
                tokens.append("".join(current))
                current = []
                started = False
        else:
            current.append(item.char)
            started = True
    if started:
        tokens.append("".join(current))
    return tokens


def parse_command(raw: str, syntax: ShellSyntax = POSIX) -> ParsedCommand:
    """Parse a command line into its executable and arguments.

    Leading whitespace is ignored; the first token is the executable (a bare
    name or a path) and the rest are arguments. Only unterminated quoting is
    an error; everything else is tokenized best-effort.

    Args:
        raw: Command line as received from the caller
        syntax: Quoting rules of the shell that will run it

    Returns:
        ParsedCommand with the executable ("" for an empty line) and arguments

    Raises:
        CommandParseError: If a quote is left unterminated
    """
    tokens = tokenize(raw, syntax)
    if not tokens:
        return ParsedCommand("", [])
    return ParsedCommand(tokens[0], tokens[1:])


def split_commands(raw: str, syntax: ShellSyntax = POSIX) -> List[str]:
    """Split a command line into the simple commands joined by separators."""
    segments: List[str] = []
    start = 0
    for index, op in find_operators(raw, syntax):
        if syntax.operators[op] is not OperatorKind.SEPARATOR:
            continue
        segments.append(raw[start:index])
        start = index + len(op)
    segments.append(raw[start:])
    return [segment for segment in segments if segment.strip()]


def strip_executable_extension(name: str) -> str:
    lowered = name.lower()
    for ext in EXECUTABLE_EXTENSIONS:
        if lowered.endswith(ext) and len(name) > len(ext):
            return name[: -len(ext)]
    return name


def extract_command_name(executable: str) -> str:
    """Return a display name: last path segment without a known extension.

    Used in messages only; policy checks compare normalized full tokens.
    """
    base = _PATH_SEPARATORS.split(executable)[-1]
    return strip_executable_extension(base)


__all__ = [
    "EXECUTABLE_EXTENSIONS",
    "ParsedCommand",
    "extract_command_name",
    "parse_command",
    "split_commands",
    "strip_executable_extension",
    "tokenize",
]
