"""Quote-aware scanning of raw command lines.

Parsing and operator validation both walk a command line through `scan()`,
so they always agree on which characters sit inside quotes and which are
escaped. Each shell family gets a ShellSyntax describing its quoting rules
and the operators it understands:

- posix: single quotes are literal, double quotes honour backslash escapes
  and still expand `$(...)` and backticks, `$'...'` (ANSI-C quoting)
  decodes backslash escapes and may contain an escaped `'`
- powershell: backtick escapes, `$(...)` expands inside double quotes, and
  the typographic quotes U+2018-U+201E open and close strings like their
  ASCII counterparts
- cmd: double quotes only, caret escapes outside quotes
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, Iterator, List, Optional, Tuple

from .errors import CommandParseError


class CharRole(str, Enum):
    """What a scanned character contributes to the command line."""

    LITERAL = "literal"
    QUOTE = "quote"
    ESCAPE = "escape"


class OperatorKind(str, Enum):
    SEPARATOR = "separator"
    SUBSTITUTION = "substitution"


@dataclass(frozen=True)
class ScannedChar:
    index: int
    char: str
    role: CharRole
    quote: Optional[str] = None
    escaped: bool = False

    @property
    def bare(self) -> bool:
        """True for an unquoted, unescaped literal character."""
        return self.role is CharRole.LITERAL and self.quote is None and not self.escaped


@dataclass(frozen=True)
class ShellSyntax:
    """Quoting and operator rules of one shell family."""

    name: str
    quote_chars: FrozenSet[str]
    escape_char: Optional[str]
    escape_in_double_quotes: bool
    operators: Dict[str, OperatorKind]
    live_in_double_quotes: FrozenSet[str] = frozenset()
    inert: Tuple[str, ...] = ()
    # Characters the escape char may escape inside double quotes; None = any.
    double_quote_escapable: Optional[FrozenSet[str]] = None
    # Extra characters that behave as one of the quote_chars.
    quote_classes: Dict[str, str] = field(default_factory=dict)
    ansi_c_quotes: bool = False
    _ordered: Tuple[str, ...] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        ordered = tuple(sorted(self.operators, key=len, reverse=True))
        object.__setattr__(self, "_ordered", ordered)

    def quote_class(self, ch: str) -> Optional[str]:
        """Return the quote character `ch` acts as, or None."""
        if ch in self.quote_chars:
            return ch
        return self.quote_classes.get(ch)

    def match_operator(self, text: str, index: int) -> Optional[str]:
        """Return the longest operator starting at `index`, if any."""
        for op in self._ordered:
            if text.startswith(op, index):
                return op
        return None

    def match_inert(self, text: str, index: int) -> Optional[str]:
        for seq in self.inert:
            if text.startswith(seq, index):
                return seq
        return None


_SEP = OperatorKind.SEPARATOR
_SUB = OperatorKind.SUBSTITUTION

POSIX = ShellSyntax(
    name="posix",
    quote_chars=frozenset({"'", '"'}),
    escape_char="\\",
    escape_in_double_quotes=True,
    operators={
        ";": _SEP, "&&": _SEP, "||": _SEP, "|": _SEP, "&": _SEP,
        "\n": _SEP, "\r": _SEP,
        "$(": _SUB, "`": _SUB, "<(": _SUB, ">(": _SUB,
    },
    live_in_double_quotes=frozenset({"$(", "`"}),
    inert=(">&", "<&"),
    double_quote_escapable=frozenset({"$", "`", '"', "\\", "\n"}),
    ansi_c_quotes=True,
)

POWERSHELL = ShellSyntax(
    name="powershell",
    quote_chars=frozenset({"'", '"'}),
    escape_char="`",
    escape_in_double_quotes=True,
    operators={
        ";": _SEP, "&&": _SEP, "||": _SEP, "|": _SEP, "&": _SEP,
        "\n": _SEP, "\r": _SEP,
        "$(": _SUB, "@(": _SUB,
    },
    live_in_double_quotes=frozenset({"$("}),
    quote_classes={
        "\u2018": "'", "\u2019": "'", "\u201a": "'", "\u201b": "'",
        "\u201c": '"', "\u201d": '"', "\u201e": '"',
    },
)

CMD = ShellSyntax(
    name="cmd",
    quote_chars=frozenset({'"'}),
    escape_char="^",
    escape_in_double_quotes=False,
    operators={
        "&": _SEP, "&&": _SEP, "||": _SEP, "|": _SEP,
        "\n": _SEP, "\r": _SEP,
    },
)

SYNTAXES: Dict[str, ShellSyntax] = {s.name: s for s in (POSIX, POWERSHELL, CMD)}


def get_syntax(name: str) -> ShellSyntax:
    try:
        return SYNTAXES[name]
    except KeyError:
        raise ValueError(
            f"Unknown shell syntax: {name}. Supported: {', '.join(SYNTAXES)}"
        ) from None


ANSI_C_QUOTE = "$'"

_QUOTE_NAMES = {"'": "single", '"': "double", ANSI_C_QUOTE: "ANSI-C"}

_ANSI_C_SIMPLE = {
    "a": "\a", "b": "\b", "e": "\x1b", "E": "\x1b", "f": "\f", "n": "\n",
    "r": "\r", "t": "\t", "v": "\v", "\\": "\\", "'": "'", '"': '"', "?": "?",
}
# escape letter -> maximum number of hex digits
_ANSI_C_HEX = {"x": 2, "u": 4, "U": 8}
_HEX_DIGITS = frozenset("0123456789abcdefABCDEF")
_OCT_DIGITS = frozenset("01234567")


def _decode_ansi_c(text: str, i: int) -> Tuple[Optional[str], int]:
    """Decode the backslash escape at `text[i]` inside `$'...'`.

    Returns the decoded character and how many characters it spans, or
    (None, 1) when bash keeps the backslash as a literal.
    """
    nxt = text[i + 1]
    if nxt in _ANSI_C_SIMPLE:
        return _ANSI_C_SIMPLE[nxt], 2
    if nxt in _OCT_DIGITS:
        end = i + 1
        while end < min(i + 4, len(text)) and text[end] in _OCT_DIGITS:
            end += 1
        return chr(int(text[i + 1:end], 8) & 0xFF), end - i
    if nxt in _ANSI_C_HEX:
        end = i + 2
        while end < min(i + 2 + _ANSI_C_HEX[nxt], len(text)) and text[end] in _HEX_DIGITS:
            end += 1
        if end > i + 2:
            value = int(text[i + 2:end], 16)
            if value <= 0x10FFFF:
                return chr(value), end - i
        return None, 1
    if nxt == "c" and i + 2 < len(text) and text[i + 2] != "'":
        return chr(ord(text[i + 2]) & 0x1F), 3
    return None, 1


def scan(text: str, syntax: ShellSyntax) -> Iterator[ScannedChar]:
    """Classify every character of `text` under the quoting rules of `syntax`.

    Quoted characters carry the canonical quote they sit in (`'`, `"` or
    ANSI_C_QUOTE), whichever character actually opened the string.

    Raises:
        CommandParseError: If a quote is left unterminated
    """
    quote: Optional[str] = None
    quote_start = 0
    i = 0
    n = len(text)
    while i < n:
        ch = text[i]
        if quote is None:
            if ch == syntax.escape_char and i + 1 < n:
                yield ScannedChar(i, ch, CharRole.ESCAPE)
                yield ScannedChar(i + 1, text[i + 1], CharRole.LITERAL, escaped=True)
                i += 2
                continue
            if syntax.ansi_c_quotes and ch == "$" and i + 1 < n:
                if text[i + 1] == "$":
                    # $$ expands to the shell's pid and never opens $'...'
                    yield ScannedChar(i, ch, CharRole.LITERAL)
                    yield ScannedChar(i + 1, ch, CharRole.LITERAL)
                    i += 2
                    continue
                if text[i + 1] == "'":
                    quote = ANSI_C_QUOTE
                    quote_start = i
                    yield ScannedChar(i, ch, CharRole.QUOTE, quote=quote)
                    yield ScannedChar(i + 1, "'", CharRole.QUOTE, quote=quote)
                    i += 2
                    continue
            kind = syntax.quote_class(ch)
            if kind:
                quote = kind
                quote_start = i
                yield ScannedChar(i, ch, CharRole.QUOTE, quote=kind)
            else:
                yield ScannedChar(i, ch, CharRole.LITERAL)
        elif quote == ANSI_C_QUOTE:
            if ch == "'":
                yield ScannedChar(i, ch, CharRole.QUOTE, quote=quote)
                quote = None
            elif ch == "\\" and i + 1 < n:
                decoded, length = _decode_ansi_c(text, i)
                if decoded is None:
                    yield ScannedChar(i, ch, CharRole.LITERAL, quote=quote)
                else:
                    yield ScannedChar(i, ch, CharRole.ESCAPE, quote=quote)
                    yield ScannedChar(i + 1, decoded, CharRole.LITERAL, quote=quote, escaped=True)
                    i += length
                    continue
            else:
                yield ScannedChar(i, ch, CharRole.LITERAL, quote=quote)
        elif syntax.quote_class(ch) == quote:
            yield ScannedChar(i, ch, CharRole.QUOTE, quote=quote)
            quote = None
        elif (
            quote == '"'
            and syntax.escape_in_double_quotes
            and ch == syntax.escape_char
            and i + 1 < n
            and (
                syntax.double_quote_escapable is None
                or text[i + 1] in syntax.double_quote_escapable
            )
        ):
            yield ScannedChar(i, ch, CharRole.ESCAPE, quote=quote)
            yield ScannedChar(i + 1, text[i + 1], CharRole.LITERAL, quote=quote, escaped=True)
            i += 2
            continue
        else:
            yield ScannedChar(i, ch, CharRole.LITERAL, quote=quote)
        i += 1

    if quote is not None:
        raise CommandParseError(
            f"Unterminated {_QUOTE_NAMES[quote]} quote starting at position {quote_start}"
        )


def find_operators(text: str, syntax: ShellSyntax) -> List[Tuple[int, str]]:
    """Return (index, operator) for every active operator in `text`.

    An operator is active when it starts on an unquoted, unescaped character,
    or when it is a substitution that the shell still expands inside double
    quotes.
    """
    found: List[Tuple[int, str]] = []
    skip_until = -1
    for item in scan(text, syntax):
        if item.index < skip_until or item.role is not CharRole.LITERAL or item.escaped:
            continue
        if item.quote is None:
            inert = syntax.match_inert(text, item.index)
            if inert:
                skip_until = item.index + len(inert)
                continue
            op = syntax.match_operator(text, item.index)
        elif item.quote == '"':
            op = syntax.match_operator(text, item.index)
            if op not in syntax.live_in_double_quotes:
                op = None
        else:
            op = None
        if op:
            found.append((item.index, op))
            skip_until = item.index + len(op)
    return found


__all__ = [
    "ANSI_C_QUOTE",
    "CMD",
    "POSIX",
    "POWERSHELL",
    "SYNTAXES",
    "CharRole",
    "OperatorKind",
    "ScannedChar",
    "ShellSyntax",
    "find_operators",
    "get_syntax",
    "scan",
]
