#!/usr/bin/env python3
# CUI // SP-CTI
"""Go -> Crystal identifier conventions.

Crystal methods and locals are snake_case, constants SCREAMING_SNAKE_CASE,
types and modules PascalCase. Names that collide with Crystal keywords or
with top-level methods a module method would shadow get a trailing '_'.
"""

import re

# Keywords plus top-level methods that a same-named module method would shadow
RESERVED = frozenset({
    "abstract", "alias", "annotation", "as", "asm", "begin", "break", "case",
    "class", "def", "do", "else", "elsif", "end", "ensure", "enum", "extend",
    "false", "for", "fun", "if", "in", "include", "instance_sizeof", "is_a",
    "lib", "macro", "module", "next", "nil", "of", "offsetof", "out",
    "pointerof", "private", "protected", "require", "rescue", "responds_to",
    "return", "select", "self", "sizeof", "struct", "super", "then", "true",
    "type", "typeof", "uninitialized", "union", "unless", "until", "verbatim",
    "when", "while", "with", "yield",
    "abort", "at_exit", "caller", "exit", "gets", "loop", "p", "pp", "print",
    "printf", "puts", "raise", "rand", "read_line", "record", "sleep",
    "spawn", "sprintf", "system",
})

_ACRONYM_RE = re.compile(r"([A-Z]+)([A-Z][a-z])")
_WORD_RE = re.compile(r"([a-z\d])([A-Z])")


def snake(name: str) -> str:
    """parseHTTPHeader -> parse_http_header."""
    if not name or name == "_":
        return name
    text = _ACRONYM_RE.sub(r"\1_\2", name)
    text = _WORD_RE.sub(r"\1_\2", text).lower()
    return text


def method_name(name: str) -> str:
    """Crystal method / local / field name for a Go identifier."""
    if name == "_":
        return "_"
    text = snake(name)
    return text + "_" if text in RESERVED else text


def constant_name(name: str) -> str:
    """maxSize -> MAX_SIZE; NUL stays NUL."""
    return snake(name).upper()


def type_name(name: str) -> str:
    """Crystal type name; dotted names keep only the last part."""
    base = name.rsplit(".", 1)[-1]
    if not base:
        return base
    return base[0].upper() + base[1:]


def module_name(package: str) -> str:
    """Go package name -> Crystal module name (my_pkg -> MyPkg)."""
    parts = re.split(r"[_\-./]+", package)
    return "".join(p[:1].upper() + p[1:] for p in parts if p) or "Main"


def file_stem(package_or_path: str) -> str:
    """Target file stem for a Go file name (parseUtil.go -> parse_util)."""
    stem = package_or_path.rsplit("/", 1)[-1]
    if stem.endswith(".go"):
        stem = stem[:-3]
    return snake(stem).replace("-", "_")
