"""Tests for quote-aware scanning and operator detection."""
from __future__ import annotations

import pytest

from guarded_shell.errors import CommandParseError
from guarded_shell.scanner import (
    ANSI_C_QUOTE,
    CMD,
    POSIX,
    POWERSHELL,
    CharRole,
    find_operators,
    get_syntax,
    scan,
)


class TestScan:
    def test_roles_for_quoted_text(self):
        items = list(scan("a'b'", POSIX))
        assert [item.role for item in items] == [
            CharRole.LITERAL,
            CharRole.QUOTE,
            CharRole.LITERAL,
            CharRole.QUOTE,
        ]
        assert items[2].quote == "'"
        assert items[0].bare

    def test_escaped_character_is_not_bare(self):
        items = list(scan("\\;", POSIX))
        assert items[0].role is CharRole.ESCAPE
        assert items[1].char == ";"
        assert items[1].escaped
        assert not items[1].bare

    def test_other_quote_is_literal_inside_quotes(self):
        items = list(scan('"it\'s"', POSIX))
        assert items[3].char == "'"
        assert items[3].role is CharRole.LITERAL
        assert items[3].quote == '"'

    def test_unterminated_single_quote(self):
        with pytest.raises(CommandParseError, match="Unterminated single quote starting at position 5"):
            list(scan("echo 'abc", POSIX))

    def test_unterminated_double_quote(self):
        with pytest.raises(CommandParseError, match="Unterminated double quote"):
            list(scan('echo "abc', POSIX))

    def test_cmd_single_quote_is_literal(self):
        """cmd has no single-quote quoting."""
        items = list(scan("echo 'a", CMD))
        assert all(item.role is CharRole.LITERAL for item in items)


class TestAnsiCQuoting:
    """bash `$'...'` strings, where a backslash escapes a single quote."""

    def test_escaped_quote_does_not_close(self):
        items = list(scan("$'a\\'b'", POSIX))
        assert [item.role for item in items] == [
            CharRole.QUOTE,
            CharRole.QUOTE,
            CharRole.LITERAL,
            CharRole.ESCAPE,
            CharRole.LITERAL,
            CharRole.LITERAL,
            CharRole.QUOTE,
        ]
        assert all(item.quote == ANSI_C_QUOTE for item in items)

    @pytest.mark.parametrize(
        "body, expected",
        [
            ("\\n", "\n"),
            ("\\x72", "r"),
            ("\\162", "r"),
            ("\\u00e9", "é"),
            ("\\cA", "\x01"),
            ("\\z", "\\z"),
            ("\\x", "\\x"),
        ],
    )
    def test_escapes_decode(self, body, expected):
        decoded = "".join(
            item.char for item in scan(f"$'{body}'", POSIX) if item.role is CharRole.LITERAL
        )
        assert decoded == expected

    def test_dollar_dollar_is_not_ansi_c(self):
        items = list(scan("$$'\\'", POSIX))
        assert items[0].bare and items[1].bare
        assert items[2].quote == "'"
        assert items[3].char == "\\"

    def test_plain_single_quote_has_no_escapes(self):
        with pytest.raises(CommandParseError, match="Unterminated single quote"):
            list(scan("echo '\\'' x", POSIX))

    def test_unterminated(self):
        with pytest.raises(CommandParseError, match="Unterminated ANSI-C quote starting at position 5"):
            list(scan("echo $'abc\\'", POSIX))

    def test_not_recognised_outside_posix(self):
        items = list(scan("$'a'", POWERSHELL))
        assert items[0].bare
        assert items[1].quote == "'"


class TestTypographicQuotes:
    """PowerShell treats the Unicode quotes as ASCII quotes."""

    def test_curly_double_quote_closes_ascii_double_quote(self):
        items = list(scan('"a” b', POWERSHELL))
        assert items[2].role is CharRole.QUOTE
        assert items[3].bare

    def test_canonical_quote_recorded(self):
        items = list(scan("‘a’", POWERSHELL))
        assert [item.role for item in items] == [CharRole.QUOTE, CharRole.LITERAL, CharRole.QUOTE]
        assert items[1].quote == "'"

    def test_unterminated_low_quote(self):
        with pytest.raises(CommandParseError, match="Unterminated double quote"):
            list(scan("echo „abc", POWERSHELL))

    def test_posix_treats_them_as_text(self):
        assert all(item.bare for item in scan("“a”", POSIX))


class TestFindOperators:
    def test_clean_command(self):
        assert find_operators("git status --short", POSIX) == []

    def test_longest_operator_wins(self):
        assert find_operators("a && b", POSIX) == [(2, "&&")]
        assert find_operators("a || b", POSIX) == [(2, "||")]

    @pytest.mark.parametrize("command", ["echo 'a;b'", 'echo "a|b"', "echo 'a && b'"])
    def test_quoted_operators_are_inert(self, command):
        assert find_operators(command, POSIX) == []

    def test_escaped_operator_is_inert(self):
        assert find_operators("echo a\\;b", POSIX) == []

    def test_substitution_live_in_double_quotes(self):
        assert find_operators('echo "$(whoami)"', POSIX) == [(6, "$(")]
        assert find_operators('echo "`whoami`"', POSIX) == [(6, "`"), (13, "`")]

    def test_substitution_inert_in_single_quotes(self):
        assert find_operators("echo '$(whoami)'", POSIX) == []

    def test_escaped_substitution_in_double_quotes(self):
        assert find_operators('echo "\\$(whoami)"', POSIX) == []

    def test_redirection_duplication_is_not_background(self):
        assert find_operators("make 2>&1", POSIX) == []

    def test_newline_separates_commands(self):
        assert find_operators("ls\nwhoami", POSIX) == [(2, "\n")]

    def test_process_substitution(self):
        assert find_operators("diff <(ls a) b", POSIX) == [(5, "<(")]

    def test_powershell_subexpression(self):
        assert find_operators("Write-Output $(Get-Date)", POWERSHELL) == [(13, "$(")]
        assert find_operators('Write-Output "$(Get-Date)"', POWERSHELL) == [(14, "$(")]
        assert find_operators("Write-Output '$(Get-Date)'", POWERSHELL) == []

    def test_powershell_backtick_escapes(self):
        assert find_operators("echo a`;b", POWERSHELL) == []

    def test_cmd_caret_escapes(self):
        assert find_operators("echo a ^& b", CMD) == []
        assert find_operators("echo a & b", CMD) == [(7, "&")]
        assert find_operators('echo "a & b"', CMD) == []

    def test_ansi_c_escaped_quote_keeps_string_open(self):
        assert find_operators("echo $'a\\';b'", POSIX) == []

    def test_ansi_c_chained_command(self):
        command = "echo $'\\'' ; reboot ; echo ''"
        assert [op for _, op in find_operators(command, POSIX)] == [";", ";"]

    def test_powershell_typographic_quotes_close_strings(self):
        command = 'echo "a”; whoami; “b"'
        assert find_operators(command, POWERSHELL) == [(8, ";"), (16, ";")]

    def test_powershell_typographic_quotes_hide_operators(self):
        assert find_operators("echo ‘a;b’", POWERSHELL) == []
        assert find_operators("echo “a;b”", POWERSHELL) == []


class TestGetSyntax:
    def test_known(self):
        assert get_syntax("powershell") is POWERSHELL

    def test_unknown(self):
        with pytest.raises(ValueError, match="Unknown shell syntax: zsh"):
            get_syntax("zsh")
