#!/usr/bin/env python3
# CUI // SP-CTI
"""Go tokenizer with automatic semicolon insertion.

Follows Go's lexical rules: a newline (or a general
comment spanning lines) after an identifier, literal, one of the keywords
break/continue/fallthrough/return, or one of ++ -- ) ] } becomes ';'.
Comments are returned separately so the extractor can attach doc text
to the declaration that follows them.
"""

import re
from dataclasses import dataclass
from typing import List, Tuple

from crport.translation.construct_model import SourceLocation
from crport.translation.errors import ParseError

KEYWORDS = frozenset({
    "break", "case", "chan", "const", "continue", "default", "defer", "else",
    "fallthrough", "for", "func", "go", "goto", "if", "import", "interface",
    "map", "package", "range", "return", "select", "struct", "switch", "type",
    "var",
})

# Longest first so "<<=" wins over "<<" and "<"
OPERATORS = (
    "<<=", ">>=", "&^=", "...", "&&", "||", "<-", "++", "--", "==", "!=",
    "<=", ">=", ":=", "+=", "-=", "*=", "/=", "%=", "&=", "|=", "^=", "<<",
    ">>", "&^", "+", "-", "*", "/", "%", "&", "|", "^", "<", ">", "=", "!",
    "(", ")", "[", "]", "{", "}", ",", ";", ".", ":", "~",
)

IDENT = "ident"
KEYWORD = "keyword"
INT = "int"
FLOAT = "float"
IMAG = "imag"
RUNE = "rune"
STRING = "string"
OP = "op"
EOF = "eof"

_IDENT_RE = re.compile(r"[^\W\d]\w*")
_NUMBER_RE = re.compile(
    r"""
    0[xX](?:_?[0-9a-fA-F])*(?:\.(?:[0-9a-fA-F](?:_?[0-9a-fA-F])*)?)?(?:[pP][+-]?\d(?:_?\d)*)?
    | 0[bB](?:_?[01])+
    | 0[oO](?:_?[0-7])+
    | (?:\d(?:_?\d)*)?\.\d(?:_?\d)*(?:[eE][+-]?\d(?:_?\d)*)?
    | \d(?:_?\d)*\.(?:\d(?:_?\d)*)?(?:[eE][+-]?\d(?:_?\d)*)?
    | \d(?:_?\d)*[eE][+-]?\d(?:_?\d)*
    | \d(?:_?\d)*
    """,
    re.VERBOSE,
)
_STRING_RE = re.compile(r'"(?:[^"\\\n]|\\.)*"')
_RUNE_RE = re.compile(r"'(?:[^'\\\n]|\\(?:[abfnrtv\\'\"]|[0-7]{3}|x[0-9a-fA-F]{2}|u[0-9a-fA-F]{4}|U[0-9a-fA-F]{8}))'")

_SEMI_TRIGGER_OPS = frozenset({"++", "--", ")", "]", "}"})
_SEMI_TRIGGER_KEYWORDS = frozenset({"break", "continue", "fallthrough", "return"})


@dataclass(frozen=True)
class Token:
    kind: str
    value: str
    line: int
    col: int
    offset: int = 0
    auto: bool = False  # semicolon inserted at a line break

    def is_op(self, *values) -> bool:
        return self.kind == OP and self.value in values

    def is_keyword(self, *values) -> bool:
        return self.kind == KEYWORD and self.value in values


@dataclass(frozen=True)
class Comment:
    text: str
    line_start: int
    line_end: int


def _float_kind(text: str) -> str:
    lower = text.lower()
    if lower.startswith("0x"):
        return FLOAT if ("." in lower or "p" in lower) else INT
    if lower.startswith(("0b", "0o")):
        return INT
    return FLOAT if ("." in lower or "e" in lower) else INT


def tokenize(source: str, path: str = "<source>") -> Tuple[List[Token], List[Comment]]:
    """Split Go source into tokens and comments.

    Raises:
        ParseError: on an unterminated literal or a character Go does not allow.
    """
    tokens: List[Token] = []
    comments: List[Comment] = []
    pos = 0
    line = 1
    line_start = 0
    n = len(source)

    def needs_semicolon() -> bool:
        if not tokens:
            return False
        last = tokens[-1]
        if last.kind in (IDENT, INT, FLOAT, IMAG, RUNE, STRING):
            return True
        if last.kind == KEYWORD:
            return last.value in _SEMI_TRIGGER_KEYWORDS
        return last.kind == OP and last.value in _SEMI_TRIGGER_OPS

    def error(reason):
        return ParseError(SourceLocation(path, line, line, pos - line_start + 1), reason)

    while pos < n:
        ch = source[pos]
        col = pos - line_start + 1

        if ch == "\n":
            if needs_semicolon():
                tokens.append(Token(OP, ";", line, col, pos, auto=True))
            pos += 1
            line += 1
            line_start = pos
            continue
        if ch in " \t\r\ufeff":
            pos += 1
            continue

        if source.startswith("//", pos):
            end = source.find("\n", pos)
            end = n if end == -1 else end
            comments.append(Comment(source[pos + 2:end], line, line))
            pos = end
            continue
        if source.startswith("/*", pos):
            end = source.find("*/", pos + 2)
            if end == -1:
                raise error("comment not terminated")
            text = source[pos + 2:end]
            newlines = text.count("\n")
            comments.append(Comment(text, line, line + newlines))
            if newlines:
                if needs_semicolon():
                    tokens.append(Token(OP, ";", line, col, pos, auto=True))
                line += newlines
                line_start = pos + 2 + text.rfind("\n") + 1
            pos = end + 2
            continue

        m = _IDENT_RE.match(source, pos)
        if m:
            word = m.group(0)
            tokens.append(Token(KEYWORD if word in KEYWORDS else IDENT, word, line, col, pos))
            pos = m.end()
            continue

        if ch.isdigit() or (ch == "." and pos + 1 < n and source[pos + 1].isdigit()):
            m = _NUMBER_RE.match(source, pos)
            text = m.group(0)
            end = m.end()
            if end < n and source[end] == "i":
                tokens.append(Token(IMAG, text + "i", line, col, pos))
                end += 1
            else:
                tokens.append(Token(_float_kind(text), text, line, col, pos))
            pos = end
            continue

        if ch == '"':
            m = _STRING_RE.match(source, pos)
            if not m:
                raise error("string literal not terminated")
            tokens.append(Token(STRING, m.group(0), line, col, pos))
            pos = m.end()
            continue
        if ch == "`":
            end = source.find("`", pos + 1)
            if end == -1:
                raise error("raw string literal not terminated")
            text = source[pos:end + 1]
            tokens.append(Token(STRING, text, line, col, pos))
            newlines = text.count("\n")
            if newlines:
                line += newlines
                line_start = pos + text.rfind("\n") + 1
            pos = end + 1
            continue
        if ch == "'":
            m = _RUNE_RE.match(source, pos)
            if not m:
                raise error("invalid rune literal")
            tokens.append(Token(RUNE, m.group(0), line, col, pos))
            pos = m.end()
            continue

        for op in OPERATORS:
            if source.startswith(op, pos):
                tokens.append(Token(OP, op, line, col, pos))
                pos += len(op)
                break
        else:
            raise error(f"invalid character {ch!r}")

    if needs_semicolon():
        tokens.append(Token(OP, ";", line, pos - line_start + 1, pos, auto=True))
    tokens.append(Token(EOF, "", line, pos - line_start + 1, pos))
    return tokens, comments
