#!/usr/bin/env python3
# CUI // SP-CTI
"""Tests for crport/translation/go_lexer.py: tokens and semicolon insertion."""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from crport.translation.errors import ParseError
from crport.translation.go_lexer import (
    EOF,
    FLOAT,
    IDENT,
    IMAG,
    INT,
    KEYWORD,
    OP,
    RUNE,
    STRING,
    tokenize,
)


def _kinds_values(source):
    tokens, _ = tokenize(source, "t.go")
    return [(t.kind, t.value) for t in tokens]


# ---------------------------------------------------------------------------
# Automatic semicolons
# ---------------------------------------------------------------------------

class TestSemicolons:
    def test_inserted_after_literal_and_return(self):
        assert _kinds_values("x := 1\nreturn\n") == [
            (IDENT, "x"), (OP, ":="), (INT, "1"), (OP, ";"),
            (KEYWORD, "return"), (OP, ";"), (EOF, ""),
        ]

    def test_inserted_semicolons_are_marked_auto(self):
        tokens, _ = tokenize("f()\n", "t.go")
        semi = [t for t in tokens if t.is_op(";")]
        assert len(semi) == 1
        assert semi[0].auto is True

    def test_explicit_semicolon_not_auto(self):
        tokens, _ = tokenize("a; b", "t.go")
        assert tokens[1].is_op(";")
        assert tokens[1].auto is False

    def test_not_inserted_after_operator(self):
        values = [v for _, v in _kinds_values("a +\nb")]
        assert values == ["a", "+", "b", ";", ""]

    def test_inserted_after_closing_brace(self):
        values = [v for _, v in _kinds_values("}\n")]
        assert values == ["}", ";", ""]

    def test_multiline_block_comment_acts_as_newline(self):
        values = [v for _, v in _kinds_values("x /* a\nb */ y")]
        assert values[:3] == ["x", ";", "y"]


# ---------------------------------------------------------------------------
# Literals and comments
# ---------------------------------------------------------------------------

class TestLiterals:
    @pytest.mark.parametrize("text,kind", [
        ("42", INT),
        ("0x1F", INT),
        ("0b1010", INT),
        ("1_000", INT),
        ("1.5", FLOAT),
        ("1e3", FLOAT),
        (".5", FLOAT),
        ("0x1p-2", FLOAT),
        ("2i", IMAG),
    ])
    def test_number_kinds(self, text, kind):
        tokens, _ = tokenize(text, "t.go")
        assert tokens[0].kind == kind

    def test_string_and_rune(self):
        tokens, _ = tokenize('s := "a\\"b"\nc := \'\\n\'', "t.go")
        strings = [t.value for t in tokens if t.kind == STRING]
        runes = [t.value for t in tokens if t.kind == RUNE]
        assert strings == ['"a\\"b"']
        assert runes == ["'\\n'"]

    def test_raw_string_tracks_lines(self):
        tokens, _ = tokenize("`a\nb`\nx", "t.go")
        x = [t for t in tokens if t.kind == IDENT][0]
        assert x.line == 3

    def test_keywords_recognised(self):
        tokens, _ = tokenize("func range struct", "t.go")
        assert [t.kind for t in tokens[:3]] == [KEYWORD, KEYWORD, KEYWORD]

    def test_longest_operator_wins(self):
        values = [v for _, v in _kinds_values("a <<= b &^ c")]
        assert "<<=" in values
        assert "&^" in values

    def test_comments_collected_separately(self):
        tokens, comments = tokenize("// hello\nx", "t.go")
        assert comments[0].text == " hello"
        assert comments[0].line_start == 1
        assert all(t.value != "hello" for t in tokens)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class TestErrors:
    def test_unterminated_string(self):
        with pytest.raises(ParseError, match="string literal not terminated"):
            tokenize('x := "abc\n', "bad.go")

    def test_unterminated_comment(self):
        with pytest.raises(ParseError, match="comment not terminated"):
            tokenize("/* open", "bad.go")

    def test_invalid_character_reports_location(self):
        with pytest.raises(ParseError) as exc_info:
            tokenize("x\n  @", "bad.go")
        err = exc_info.value
        assert err.location.file == "bad.go"
        assert err.location.line_start == 2
        assert "invalid character" in err.reason
        assert str(err).startswith("bad.go:2")
