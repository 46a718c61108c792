#!/usr/bin/env python3
# CUI // SP-CTI
"""Source Extractor -- stage 1 of the Go -> Crystal pipeline.

Parses Go source files into the language-neutral construct model
(TranslationUnit / ConstructNode). A recursive-descent parser runs over
the go_lexer token stream in two passes:

  1. headers: package-level constants, types, function signatures and
     methods are collected into a PackageEnv (function bodies skipped,
     but scanned for appends to struct fields);
  2. full: every declaration, statement and expression becomes a node,
     typed from the PackageEnv plus local scopes.

Facts the mapping stage needs but Go leaves implicit are made explicit
here: fixed integer widths, (value, error) result shapes, slices that
grow via append at their declaring site, iota and implicit repetition in
constant groups, and the concrete type of untyped constants.

Usage:
    python -m crport.translation.source_extractor --source-path ./pkg --json
    python -m crport.translation.source_extractor --source-path calc.go --output-ir ir.json
"""

import argparse
import json
import logging
import sys
import textwrap
from dataclasses import dataclass, field, replace
from functools import lru_cache
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple

from crport.translation import go_lexer
from crport.translation.config import load_config
from crport.translation.construct_model import (
    ANY,
    BOOL,
    ERROR,
    FLOAT64,
    INT32,
    PLATFORM_INT,
    PLATFORM_UINT,
    STRING,
    UINT8,
    VOID,
    ConstructKind,
    SourceLocation,
    TranslationUnit,
    TypeKind,
    TypeSig,
    float_sig,
    int_sig,
    make_node,
    named_sig,
    slice_sig,
    source_hash,
    tuple_sig,
)
from crport.translation.errors import ParseError

logger = logging.getLogger("crport.translation.source_extractor")

SOURCE_EXTENSION = ".go"
TEST_SUFFIX = "_test.go"

BASIC_TYPES = {
    "bool": BOOL,
    "string": STRING,
    "error": ERROR,
    "any": ANY,
    "int": PLATFORM_INT,
    "uint": PLATFORM_UINT,
    "uintptr": TypeSig(TypeKind.INT, width=64, signed=False, name="uintptr"),
    "int8": int_sig(8),
    "int16": int_sig(16),
    "int32": INT32,
    "int64": int_sig(64),
    "uint8": UINT8,
    "uint16": int_sig(16, signed=False),
    "uint32": int_sig(32, signed=False),
    "uint64": int_sig(64, signed=False),
    "byte": UINT8,
    "rune": INT32,
    "float32": float_sig(32),
    "float64": FLOAT64,
    "complex64": TypeSig(TypeKind.COMPLEX, width=64),
    "complex128": TypeSig(TypeKind.COMPLEX, width=128),
}

BUILTIN_FUNCS = frozenset({
    "append", "cap", "clear", "close", "complex", "copy", "delete", "imag",
    "len", "make", "max", "min", "new", "panic", "print", "println", "real",
    "recover",
})

# Standard library signatures the extractor types calls against
STDLIB_SIGNATURES = {
    "errors.New": "func(text string) error",
    "fmt.Errorf": "func(format string, a ...any) error",
    "fmt.Sprintf": "func(format string, a ...any) string",
    "fmt.Sprint": "func(a ...any) string",
    "fmt.Println": "func(a ...any)",
    "fmt.Printf": "func(format string, a ...any)",
    "strings.ToUpper": "func(s string) string",
    "strings.ToLower": "func(s string) string",
    "strings.TrimSpace": "func(s string) string",
    "strings.TrimPrefix": "func(s, prefix string) string",
    "strings.TrimSuffix": "func(s, suffix string) string",
    "strings.Repeat": "func(s string, count int) string",
    "strings.Contains": "func(s, substr string) bool",
    "strings.HasPrefix": "func(s, prefix string) bool",
    "strings.HasSuffix": "func(s, suffix string) bool",
    "strings.Index": "func(s, substr string) int",
    "strings.Split": "func(s, sep string) []string",
    "strings.Fields": "func(s string) []string",
    "strings.Join": "func(elems []string, sep string) string",
    "strings.ReplaceAll": "func(s, old, new string) string",
    "strconv.Itoa": "func(i int) string",
    "strconv.Atoi": "func(s string) (int, error)",
    "strconv.FormatInt": "func(i int64, base int) string",
    "strconv.ParseFloat": "func(s string, bitSize int) (float64, error)",
    "math.Sqrt": "func(x float64) float64",
    "math.Abs": "func(x float64) float64",
    "math.Floor": "func(x float64) float64",
    "math.Ceil": "func(x float64) float64",
    "math.Pow": "func(x, y float64) float64",
    "math.Max": "func(x, y float64) float64",
    "math.Min": "func(x, y float64) float64",
    "bytes.Equal": "func(a, b []byte) bool",
    "unicode.IsUpper": "func(r rune) bool",
    "unicode.IsDigit": "func(r rune) bool",
    "unicode.ToUpper": "func(r rune) rune",
}

STDLIB_VALUES = {
    "math.MaxInt8": "int8", "math.MinInt8": "int8",
    "math.MaxInt16": "int16", "math.MinInt16": "int16",
    "math.MaxInt32": "int32", "math.MinInt32": "int32",
    "math.MaxInt64": "int64", "math.MinInt64": "int64",
    "math.MaxUint8": "uint8", "math.MaxUint16": "uint16",
    "math.MaxUint32": "uint32", "math.MaxUint64": "uint64",
    "math.Pi": "float64", "math.E": "float64",
}

ASSIGN_OPS = frozenset({"+=", "-=", "*=", "/=", "%=", "&=", "|=", "^=", "<<=", ">>=", "&^="})
COMPARISON_OPS = frozenset({"==", "!=", "<", "<=", ">", ">="})
BINARY_PRECEDENCE = {
    "||": 1,
    "&&": 2,
    "==": 3, "!=": 3, "<": 3, "<=": 3, ">": 3, ">=": 3,
    "+": 4, "-": 4, "|": 4, "^": 4,
    "*": 5, "/": 5, "%": 5, "<<": 5, ">>": 5, "&": 5, "&^": 5,
}
UNARY_OPS = frozenset({"+", "-", "!", "^", "*", "&", "<-"})
_TYPE_START_OPS = frozenset({"*", "[", "(", "...", "<-"})
_TYPE_START_KEYWORDS = frozenset({"map", "chan", "func", "struct", "interface"})


# ---------------------------------------------------------------------------
# Package-level symbol table
# ---------------------------------------------------------------------------

@dataclass
class PackageEnv:
    """Package symbols gathered by the header pass, shared across files."""

    package: str = ""
    imports: Dict[str, str] = field(default_factory=dict)
    consts: Dict[str, TypeSig] = field(default_factory=dict)
    untyped_consts: Set[str] = field(default_factory=set)
    const_defaults: Dict[str, TypeSig] = field(default_factory=dict)
    const_values: Dict[str, int] = field(default_factory=dict)
    vars: Dict[str, TypeSig] = field(default_factory=dict)
    funcs: Dict[str, TypeSig] = field(default_factory=dict)
    types: Dict[str, Tuple[str, TypeSig]] = field(default_factory=dict)
    methods: Dict[Tuple[str, str], TypeSig] = field(default_factory=dict)
    ptr_receivers: Set[str] = field(default_factory=set)
    method_types: Set[str] = field(default_factory=set)
    grown_fields: Set[str] = field(default_factory=set)
    grown_vars: Set[str] = field(default_factory=set)
    conversions: Dict[str, Set[str]] = field(default_factory=dict)

    def merge(self, other: "PackageEnv") -> None:
        if not self.package:
            self.package = other.package
        self.imports.update(other.imports)
        self.consts.update(other.consts)
        self.untyped_consts |= other.untyped_consts
        self.const_defaults.update(other.const_defaults)
        self.const_values.update(other.const_values)
        self.vars.update(other.vars)
        self.funcs.update(other.funcs)
        self.types.update(other.types)
        self.methods.update(other.methods)
        self.ptr_receivers |= other.ptr_receivers
        self.method_types |= other.method_types
        self.grown_fields |= other.grown_fields
        self.grown_vars |= other.grown_vars
        for name, targets in other.conversions.items():
            self.conversions.setdefault(name, set()).update(targets)

    def receiver_form(self, type_name: str) -> str:
        """How a method's receiver type will be represented: struct, class, defined, alias or unknown."""
        entry = self.types.get(type_name)
        if entry is None:
            return "unknown"
        form = entry[0]
        if form == "struct":
            return "class" if type_name in self.ptr_receivers else "struct"
        return form


@dataclass
class _FuncContext:
    result: TypeSig = VOID
    result_names: Tuple[str, ...] = ()
    grown: Set[str] = field(default_factory=set)
    grown_results: Tuple[bool, ...] = ()
    error_vars: Set[str] = field(default_factory=set)
    type_params: Set[str] = field(default_factory=set)


def _is_exported(name: str) -> bool:
    return bool(name) and name[0].isupper()


def _result_signature(results) -> TypeSig:
    """Collapse a Go result list into one signature.

    (T, error) -> error_union<T,error>; (T, ok bool) -> error_union<T,bool>;
    other multi-results -> tuple.
    """
    types = [sig for _, sig in results]
    names = [name for name, _ in results]
    if not types:
        return VOID
    if types[-1] == ERROR:
        value = tuple_sig(types[:-1])
        return TypeSig(TypeKind.ERROR_UNION, elem=value, key=ERROR)
    if len(types) == 2 and types[1] == BOOL and names[1] in ("", "ok"):
        return TypeSig(TypeKind.ERROR_UNION, elem=types[0], key=BOOL)
    return tuple_sig(types)


def _truncated_div(a: int, b: int) -> int:
    q = abs(a) // abs(b)
    return q if (a >= 0) == (b >= 0) else -q


def _union_values(sig: TypeSig) -> List[TypeSig]:
    """Value types a multi-value assignment receives from ``sig``."""
    if sig.kind == TypeKind.ERROR_UNION:
        value = sig.elem
        values = [] if value.kind == TypeKind.VOID else (
            list(value.params) if value.kind == TypeKind.TUPLE else [value])
        return values + [sig.key]
    if sig.kind == TypeKind.TUPLE:
        return list(sig.params)
    return [sig]


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

class _Parser:
    def __init__(self, tokens, comments, path: str, source: str, env: PackageEnv,
                 headers_only: bool = False):
        self.toks = tokens
        self.pos = 0
        self.path = path
        self.source = source
        self.env = env
        self.headers_only = headers_only
        self.scopes: List[Dict[str, TypeSig]] = []
        self.func = _FuncContext()
        self.no_lit = False
        self.iota: Optional[int] = None
        self._docs = self._index_comments(comments)

    # -- token helpers -----------------------------------------------------

    @property
    def tok(self):
        return self.toks[self.pos]

    def peek(self, k: int = 1):
        return self.toks[min(self.pos + k, len(self.toks) - 1)]

    def advance(self):
        tok = self.toks[self.pos]
        if tok.kind != go_lexer.EOF:
            self.pos += 1
        return tok

    def at_op(self, *values) -> bool:
        return self.tok.is_op(*values)

    def at_keyword(self, *values) -> bool:
        return self.tok.is_keyword(*values)

    def accept_op(self, value: str) -> bool:
        if self.tok.is_op(value):
            self.advance()
            return True
        return False

    def expect_op(self, value: str):
        if not self.tok.is_op(value):
            raise self.error(f"expected '{value}', found {self._describe(self.tok)}")
        return self.advance()

    def expect_ident(self):
        if self.tok.kind != go_lexer.IDENT:
            raise self.error(f"expected identifier, found {self._describe(self.tok)}")
        return self.advance()

    def expect_semi(self):
        if self.tok.is_op(";"):
            self.advance()
        elif not (self.tok.is_op(")", "}") or self.tok.kind == go_lexer.EOF):
            raise self.error(f"expected ';', found {self._describe(self.tok)}")

    def error(self, reason: str, tok=None) -> ParseError:
        tok = tok or self.tok
        return ParseError(SourceLocation(self.path, tok.line, tok.line, tok.col), reason)

    @staticmethod
    def _describe(tok) -> str:
        if tok.kind == go_lexer.EOF:
            return "EOF"
        if tok.auto:
            return "newline"
        return repr(tok.value)

    def location(self, start_tok, end_index: Optional[int] = None) -> SourceLocation:
        end = self.toks[max((end_index if end_index is not None else self.pos) - 1, 0)]
        return SourceLocation(self.path, start_tok.line, max(end.line, start_tok.line), start_tok.col)

    def span_text(self, start: int, end: int) -> str:
        """Source text of tokens[start:end] (trailing auto semicolons excluded)."""
        while end > start and self.toks[end - 1].auto:
            end -= 1
        if end <= start:
            return ""
        first, last = self.toks[start], self.toks[end - 1]
        return self.source[first.offset:last.offset + len(last.value)]

    def matching(self, index: int) -> int:
        """Index of the bracket closing the one at ``index``."""
        pairs = {"{": "}", "(": ")", "[": "]"}
        opener = self.toks[index].value
        closer = pairs[opener]
        depth = 0
        for i in range(index, len(self.toks)):
            tok = self.toks[i]
            if tok.is_op(opener):
                depth += 1
            elif tok.is_op(closer):
                depth -= 1
                if depth == 0:
                    return i
        raise self.error(f"unbalanced '{opener}'", self.toks[index])

    # -- comments ------------------------------------------------------------

    def _index_comments(self, comments):
        # Trailing comments share a line with code and are not doc text
        code_lines = {t.line for t in self.toks if not t.auto}
        return {c.line_end: c for c in comments if c.line_start not in code_lines}

    def doc_for(self, line: int) -> str:
        parts = []
        current = self._docs.get(line - 1)
        while current is not None:
            parts.append(current)
            current = self._docs.get(current.line_start - 1)
        lines = []
        for c in reversed(parts):
            for raw in c.text.splitlines() or [""]:
                text = raw[1:] if raw.startswith(" ") else raw
                if text.startswith("go:") or text.startswith("nolint"):
                    continue
                lines.append(text.rstrip())
        return "\n".join(lines).strip()

    # -- scopes --------------------------------------------------------------

    def push(self):
        self.scopes.append({})

    def pop(self):
        self.scopes.pop()

    def declare(self, name: str, sig: TypeSig):
        if name != "_" and self.scopes:
            self.scopes[-1][name] = sig

    def lookup_local(self, name: str) -> Optional[TypeSig]:
        for scope in reversed(self.scopes):
            if name in scope:
                return scope[name]
        return None

    # -- file ----------------------------------------------------------------

    def parse_file(self):
        if not self.at_keyword("package"):
            raise self.error("expected 'package' clause")
        self.advance()
        package = self.expect_ident().value
        if self.headers_only:
            self.env.package = self.env.package or package
        self.expect_semi()

        imports: List[str] = []
        while self.at_keyword("import"):
            imports.extend(self.parse_import_decl())
            self.expect_semi()

        nodes = []
        while self.tok.kind != go_lexer.EOF:
            if self.at_op(";"):
                self.advance()
                continue
            if self.at_keyword("const"):
                nodes.extend(self.parse_const_decl())
            elif self.at_keyword("var"):
                nodes.extend(self.parse_var_decl(package_level=True))
            elif self.at_keyword("type"):
                nodes.extend(self.parse_type_decl())
            elif self.at_keyword("func"):
                node = self.parse_func_decl()
                if node is not None:
                    nodes.append(node)
            else:
                raise self.error(
                    f"non-declaration statement outside function body: {self._describe(self.tok)}")
            self.expect_semi()
        return package, imports, nodes

    def parse_import_decl(self) -> List[str]:
        self.advance()
        paths = []

        def spec():
            alias = ""
            if self.tok.kind == go_lexer.IDENT:
                alias = self.advance().value
            elif self.at_op("."):
                self.advance()
                alias = "."
            if self.tok.kind != go_lexer.STRING:
                raise self.error("expected import path")
            path = self.advance().value.strip('"`')
            local = alias or path.rsplit("/", 1)[-1]
            if local not in (".", "_") and self.headers_only:
                self.env.imports[local] = path
            paths.append(path)

        if self.accept_op("("):
            while not self.at_op(")"):
                spec()
                self.expect_semi()
            self.expect_op(")")
        else:
            spec()
        return paths

    # -- const ---------------------------------------------------------------

    def parse_const_decl(self, local: bool = False):
        self.advance()
        nodes = []
        if self.accept_op("("):
            prev = None
            index = 0
            while not self.at_op(")"):
                if self.at_op(";"):
                    self.advance()
                    continue
                spec_nodes, prev = self.parse_const_spec(index, prev, local)
                nodes.extend(spec_nodes)
                index += 1
                self.expect_semi()
            self.expect_op(")")
        else:
            nodes, _ = self.parse_const_spec(0, None, local)
        return nodes

    def parse_const_spec(self, iota: int, prev, local: bool):
        start_tok = self.tok
        doc = self.doc_for(start_tok.line)
        names = [self.expect_ident().value]
        while self.accept_op(","):
            names.append(self.expect_ident().value)
        declared = None
        if not self.at_op("=", ";", ")"):
            declared = self.parse_type()
        if self.accept_op("="):
            span = self.pos
            values = self._with_iota(iota, self.parse_expr_list)
            current = (declared, span)
        elif prev is not None:
            declared, span = prev
            saved = self.pos
            self.pos = span
            values = self._with_iota(iota, self.parse_expr_list)
            self.pos = saved
            current = prev
        else:
            raise self.error("missing init expr for const declaration", start_tok)
        if len(values) != len(names):
            raise self.error("constant count does not match value count", start_tok)

        nodes = []
        for name, value in zip(names, values):
            untyped = declared is None and bool(value.attr("untyped"))
            inferred_from = "declared"
            if declared is not None:
                sig = declared
            elif untyped:
                sig, inferred_from = self._infer_untyped_const(name, value)
            else:
                sig, inferred_from = value.signature, "expression"
            number = self.eval_const(value)
            if local:
                self.declare(name, sig)
            elif self.headers_only:
                self.env.consts[name] = sig
                if untyped:
                    self.env.untyped_consts.add(name)
                    self.env.const_defaults[name] = self._default_type(value)
                if number is not None:
                    self.env.const_values[name] = number
            nodes.append(make_node(
                ConstructKind.CONSTANT, name, sig,
                self.location(start_tok),
                form="untyped" if untyped else "typed",
                doc=doc,
                exported=_is_exported(name),
                attrs={"iota": iota, "untyped": untyped, "inferred_from": inferred_from,
                       "value_text": self._text(value)},
                children={"value": [value]},
            ))
        return nodes, current

    def _with_iota(self, iota, fn):
        saved = self.iota
        self.iota = iota
        try:
            return fn()
        finally:
            self.iota = saved

    def _default_type(self, value) -> TypeSig:
        """Type a variable takes from ``value``; untyped constants get Go's default type."""
        if value.form == "ident" and value.attr("ref") == "const" and value.attr("untyped"):
            return self.env.const_defaults.get(value.name, value.signature)
        return value.signature

    def _infer_untyped_const(self, name: str, value):
        literal = value.signature
        targets = {t for t in self.env.conversions.get(name, set()) if t in BASIC_TYPES}
        if literal.is_numeric:
            numeric = {t for t in targets if BASIC_TYPES[t].is_numeric}
            if len({BASIC_TYPES[t].canonical() for t in numeric}) == 1:
                target = sorted(numeric)[0]
                return BASIC_TYPES[target], f"usage:{target}"
        return literal, "literal-default"

    def eval_const(self, node) -> Optional[int]:
        """Integer value of a constant expression, when it can be computed."""
        form = node.form
        if form == "int":
            try:
                return int(node.name.replace("_", ""), 0)
            except ValueError:
                try:
                    return int(node.name.replace("_", ""), 8)
                except ValueError:
                    return None
        if form == "paren":
            return self.eval_const(node.first("inner"))
        if form == "ident":
            return self.env.const_values.get(node.name)
        if form == "unary" and node.name in ("-", "+", "^"):
            inner = self.eval_const(node.first("operand"))
            if inner is None:
                return None
            return {"-": -inner, "+": inner, "^": ~inner}[node.name]
        if form == "binary":
            left = self.eval_const(node.first("left"))
            right = self.eval_const(node.first("right"))
            if left is None or right is None:
                return None
            ops = {
                "+": lambda a, b: a + b, "-": lambda a, b: a - b, "*": lambda a, b: a * b,
                "<<": lambda a, b: a << b, ">>": lambda a, b: a >> b,
                "&": lambda a, b: a & b, "|": lambda a, b: a | b, "^": lambda a, b: a ^ b,
                "&^": lambda a, b: a & ~b,
                "/": lambda a, b: _truncated_div(a, b) if b else None,
                "%": lambda a, b: a - b * _truncated_div(a, b) if b else None,
            }
            fn = ops.get(node.name)
            return fn(left, right) if fn else None
        if form == "convert":
            return self.eval_const(node.first("operand"))
        return None

    # -- var -----------------------------------------------------------------

    def parse_var_decl(self, package_level: bool = False):
        self.advance()
        nodes = []
        if self.accept_op("("):
            while not self.at_op(")"):
                if self.at_op(";"):
                    self.advance()
                    continue
                nodes.append(self.parse_var_spec(package_level))
                self.expect_semi()
            self.expect_op(")")
        else:
            nodes.append(self.parse_var_spec(package_level))
        return nodes

    def parse_var_spec(self, package_level: bool):
        start_index = self.pos
        start_tok = self.tok
        doc = self.doc_for(start_tok.line) if package_level else ""
        names = [self.expect_ident().value]
        while self.accept_op(","):
            names.append(self.expect_ident().value)
        declared = None
        if not self.at_op("="):
            declared = self.parse_type()
        values = []
        if self.accept_op("="):
            values = self.parse_expr_list()

        if declared is not None:
            types = [declared] * len(names)
        elif len(values) == len(names):
            types = [self._default_type(v) for v in values]
        elif len(values) == 1:
            types = _union_values(values[0].signature)
        else:
            types = []
        types = (types + [ANY] * len(names))[:len(names)]
        grown_names = self.env.grown_vars if package_level else self.func.grown
        grown = any(n in grown_names for n in names)
        if grown:
            types = [t.with_growth() for t in types]
            values = [self._grow_expr(v) for v in values]
        sig = types[0]
        for name, item in zip(names, types):
            if not package_level:
                self.declare(name, item)
            elif self.headers_only:
                self.env.vars[name] = item

        if declared is None:
            shape = "inferred"
        elif values:
            shape = "typed"
        else:
            shape = "zero"
        if package_level:
            shape = "package"
        elif values and len(values) != len(names):
            shape = "multi"
        return make_node(
            ConstructKind.STATEMENT, ",".join(names), sig,
            self.location(start_tok),
            form="var",
            doc=doc,
            exported=package_level and any(_is_exported(n) for n in names),
            attrs={"names": names, "shape": shape, "declared": declared is not None,
                   "scope": "package" if package_level else "local",
                   "source": self.span_text(start_index, self.pos)},
            children={"values": values},
        )

    # -- type ----------------------------------------------------------------

    def parse_type_decl(self, local: bool = False):
        self.advance()
        nodes = []
        if self.accept_op("("):
            while not self.at_op(")"):
                if self.at_op(";"):
                    self.advance()
                    continue
                nodes.append(self.parse_type_spec(local))
                self.expect_semi()
            self.expect_op(")")
        else:
            nodes.append(self.parse_type_spec(local))
        return nodes

    def _at_type_params(self) -> bool:
        # "[" IDENT followed by a constraint (not "]") opens a type parameter list
        return (self.at_op("[") and self.peek().kind == go_lexer.IDENT
                and not self.peek(2).is_op("]"))

    def parse_type_params(self) -> List[Tuple[str, str]]:
        self.expect_op("[")
        params = []
        pending = []
        while not self.at_op("]"):
            pending.append(self.expect_ident().value)
            if self.accept_op(","):
                continue
            start = self.pos
            depth = 0
            while not (depth == 0 and self.at_op(",", "]")):
                if self.at_op("[", "(", "{"):
                    depth += 1
                elif self.at_op("]", ")", "}"):
                    depth -= 1
                self.advance()
            constraint = self.span_text(start, self.pos)
            params.extend((name, constraint) for name in pending)
            pending = []
            self.accept_op(",")
        self.expect_op("]")
        return params

    def parse_type_spec(self, local: bool):
        start_tok = self.tok
        doc = self.doc_for(start_tok.line)
        name = self.expect_ident().value
        type_params = []
        if self._at_type_params():
            type_params = self.parse_type_params()
        alias = self.accept_op("=")
        saved_params = self.func.type_params
        self.func.type_params = saved_params | {p for p, _ in type_params}
        try:
            underlying = self.parse_type(struct_owner=name)
        finally:
            self.func.type_params = saved_params

        if alias:
            form = "alias"
        elif underlying.kind == TypeKind.STRUCT:
            form = "struct"
        elif underlying.kind == TypeKind.INTERFACE:
            form = "interface"
        else:
            form = "defined"
        if not local and self.headers_only:
            self.env.types[name] = (form, underlying)

        attrs = {
            "type_params": [p for p, _ in type_params],
            "constraints": [c for _, c in type_params],
            "reference": name in self.env.ptr_receivers,
            "has_methods": name in self.env.method_types,
        }
        if form == "struct":
            attrs["fields"] = [n for n, _ in underlying.members if not n.startswith("~")]
            attrs["embedded"] = [n[1:] for n, _ in underlying.members if n.startswith("~")]
        if form == "interface":
            attrs["methods"] = [n for n, _ in underlying.members if not n.startswith("~")]
            attrs["embedded"] = [n[1:] for n, _ in underlying.members if n.startswith("~")]
            attrs["constraint"] = any(n == "~union" for n, _ in underlying.members)
        return make_node(
            ConstructKind.TYPE_DECL, name, underlying,
            self.location(start_tok),
            form=form,
            doc=doc,
            exported=_is_exported(name),
            attrs=attrs,
        )

    # -- types ---------------------------------------------------------------

    def parse_type(self, struct_owner: str = "") -> TypeSig:
        tok = self.tok
        if tok.kind == go_lexer.IDENT:
            self.advance()
            if self.at_op(".") and tok.value in self.env.imports:
                self.advance()
                member = self.expect_ident().value
                return named_sig(f"{tok.value}.{member}", self._type_args())
            if tok.value in self.func.type_params:
                return TypeSig(TypeKind.TYPE_PARAM, name=tok.value)
            if tok.value in BASIC_TYPES and tok.value not in self.env.types:
                return BASIC_TYPES[tok.value]
            if tok.value == "comparable":
                return ANY
            return named_sig(tok.value, self._type_args())
        if tok.is_op("*"):
            self.advance()
            return TypeSig(TypeKind.OPTIONAL, elem=self.parse_type())
        if tok.is_op("("):
            self.advance()
            inner = self.parse_type()
            self.expect_op(")")
            return inner
        if tok.is_op("["):
            self.advance()
            if self.accept_op("]"):
                return slice_sig(self.parse_type())
            if self.accept_op("..."):
                self.expect_op("]")
                return TypeSig(TypeKind.ARRAY, elem=self.parse_type(), length=-1)
            length_expr = self._no_lit_off(self.parse_expr)
            self.expect_op("]")
            length = self.eval_const(length_expr)
            return TypeSig(TypeKind.ARRAY, elem=self.parse_type(),
                           length=length if length is not None else 0)
        if tok.is_keyword("map"):
            self.advance()
            self.expect_op("[")
            key = self.parse_type()
            self.expect_op("]")
            return TypeSig(TypeKind.MAP, key=key, elem=self.parse_type())
        if tok.is_keyword("chan") or tok.is_op("<-"):
            self.advance()
            if tok.is_op("<-"):
                if not self.at_keyword("chan"):
                    raise self.error("expected 'chan'")
                self.advance()
            else:
                self.accept_op("<-")
            return TypeSig(TypeKind.CHAN, elem=self.parse_type())
        if tok.is_keyword("func"):
            self.advance()
            params, variadic, results = self.parse_signature()
            return self._func_sig(params, variadic, results)
        if tok.is_keyword("struct"):
            self.advance()
            return self.parse_struct_body(struct_owner)
        if tok.is_keyword("interface"):
            self.advance()
            return self.parse_interface_body()
        raise self.error(f"expected type, found {self._describe(tok)}")

    def _type_args(self) -> Tuple[TypeSig, ...]:
        if not self.at_op("["):
            return ()
        # "Name[" in type context is an instantiation unless "[]" follows
        if self.peek().is_op("]"):
            return ()
        self.advance()
        args = [self.parse_type()]
        while self.accept_op(","):
            if self.at_op("]"):
                break
            args.append(self.parse_type())
        self.expect_op("]")
        return tuple(args)

    def parse_struct_body(self, owner: str = "") -> TypeSig:
        self.expect_op("{")
        members = []
        while not self.at_op("}"):
            if self.at_op(";"):
                self.advance()
                continue
            embedded = (self.tok.kind == go_lexer.IDENT
                        and (self.peek().is_op(";", "}") or self.peek().kind == go_lexer.STRING
                             or (self.peek().is_op(".") and self.tok.value in self.env.imports)))
            if self.at_op("*") or embedded:
                sig = self.parse_type()
                base = sig.elem if sig.kind == TypeKind.OPTIONAL else sig
                members.append(("~" + base.name, sig))
            else:
                names = [self.expect_ident().value]
                while self.accept_op(","):
                    names.append(self.expect_ident().value)
                sig = self.parse_type()
                for name in names:
                    members.append((name, sig.with_growth(name in self.env.grown_fields)))
            if self.tok.kind == go_lexer.STRING:
                self.advance()
            self.expect_semi()
        self.expect_op("}")
        return TypeSig(TypeKind.STRUCT, members=tuple(members))

    def parse_interface_body(self) -> TypeSig:
        self.expect_op("{")
        members = []
        while not self.at_op("}"):
            if self.at_op(";"):
                self.advance()
                continue
            if self.tok.kind == go_lexer.IDENT and self.peek().is_op("("):
                name = self.advance().value
                params, variadic, results = self.parse_signature()
                members.append((name, self._func_sig(params, variadic, results)))
            else:
                start = self.pos
                union = False
                while not self.at_op(";", "}"):
                    if self.at_op("|", "~"):
                        union = True
                    self.advance()
                if union:
                    members.append(("~union", ANY))
                else:
                    members.append(("~" + self.span_text(start, self.pos), ANY))
            self.expect_semi()
        self.expect_op("}")
        return TypeSig(TypeKind.INTERFACE, members=tuple(members))

    # -- signatures ----------------------------------------------------------

    def _param_entry_named(self) -> bool:
        """True when the IDENT at the cursor is a parameter name followed by its type."""
        nxt = self.peek()
        if nxt.kind == go_lexer.IDENT or nxt.is_keyword(*_TYPE_START_KEYWORDS):
            return True
        if nxt.is_op("*", "(", "...", "<-"):
            return True
        if nxt.is_op("["):
            after = self.peek(2)
            if after.is_op("]", "...") or after.kind == go_lexer.INT:
                return True
            # "a [N]T" versus generic "List[T]": a type must follow the "]"
            close = self.matching(self.pos + 1)
            follow = self.toks[close + 1]
            return (follow.kind == go_lexer.IDENT or follow.is_op(*_TYPE_START_OPS)
                    or follow.is_keyword(*_TYPE_START_KEYWORDS))
        return False

    def parse_params(self) -> Tuple[List[Tuple[str, TypeSig]], bool]:
        self.expect_op("(")
        entries = []  # (name or None, type or None, variadic)
        while not self.at_op(")"):
            if self.tok.kind == go_lexer.IDENT and self._param_entry_named():
                name = self.advance().value
                variadic = self.accept_op("...")
                entries.append((name, self.parse_type(), variadic))
            elif self.tok.kind == go_lexer.IDENT and self.peek().is_op(",", ")"):
                # bare identifier: a name sharing a later type, or a type on its own
                entries.append((self.advance().value, None, False))
            else:
                variadic = self.accept_op("...")
                entries.append((None, self.parse_type(), variadic))
            if not self.accept_op(","):
                break
        self.expect_op(")")

        named = any(name is not None and sig is not None for name, sig, _ in entries)
        params = []
        variadic = False
        if named:
            pending = []
            for name, sig, is_variadic in entries:
                if sig is None:
                    pending.append(name)
                    continue
                for pending_name in pending:
                    params.append((pending_name, sig))
                pending = []
                if is_variadic:
                    variadic = True
                    sig = slice_sig(sig)
                params.append((name or "_", sig))
            if pending:
                raise self.error("mixed named and unnamed parameters")
        else:
            for name, sig, is_variadic in entries:
                if sig is None:
                    sig = self._type_from_name(name)
                if is_variadic:
                    variadic = True
                    sig = slice_sig(sig)
                params.append(("", sig))
        return params, variadic

    def _type_from_name(self, name: str) -> TypeSig:
        if name in self.func.type_params:
            return TypeSig(TypeKind.TYPE_PARAM, name=name)
        if name in BASIC_TYPES and name not in self.env.types:
            return BASIC_TYPES[name]
        return named_sig(name)

    def parse_signature(self):
        params, variadic = self.parse_params()
        results: List[Tuple[str, TypeSig]] = []
        if self.at_op("("):
            results, _ = self.parse_params()
        elif not (self.at_op("{", ";", ")", ",", "]", "}", "=") or self.tok.kind in (
                go_lexer.STRING, go_lexer.EOF)):
            results = [("", self.parse_type())]
        return params, variadic, results

    def _func_sig(self, params, variadic, results) -> TypeSig:
        return TypeSig(
            TypeKind.FUNC,
            params=tuple(sig for _, sig in params),
            results=(_result_signature(results),),
            variadic=variadic,
        )

    # -- functions -----------------------------------------------------------

    def parse_func_decl(self):
        start_index = self.pos
        start_tok = self.tok
        doc = self.doc_for(start_tok.line)
        self.advance()

        receiver = None
        if self.at_op("("):
            recv_params, _ = self.parse_params()
            if len(recv_params) != 1:
                raise self.error("method has multiple receivers", start_tok)
            receiver = recv_params[0]
        name = self.expect_ident().value
        type_params = []
        if self.at_op("["):
            type_params = self.parse_type_params()

        recv_type_params = set()
        if receiver is not None:
            rsig = receiver[1]
            base = rsig.elem if rsig.kind == TypeKind.OPTIONAL else rsig
            recv_type_params = {a.name for a in base.args if a.kind == TypeKind.NAMED}
        saved_params = self.func.type_params
        self.func.type_params = {p for p, _ in type_params} | recv_type_params
        try:
            params, variadic, results = self.parse_signature()
        finally:
            self.func.type_params = saved_params

        body_lo = self.pos if self.at_op("{") else None
        body_hi = self.matching(body_lo) if body_lo is not None else None

        recv_name, recv_type, pointer = "", "", False
        if receiver is not None:
            rsig = receiver[1]
            pointer = rsig.kind == TypeKind.OPTIONAL
            base = rsig.elem if pointer else rsig
            recv_name, recv_type = receiver[0], base.name

        if self.headers_only:
            sig = self._func_sig(params, variadic, results)
            if receiver is not None:
                self.env.methods[(recv_type, name)] = sig
                self.env.method_types.add(recv_type)
                if pointer:
                    self.env.ptr_receivers.add(recv_type)
            else:
                self.env.funcs[name] = sig
            if body_lo is not None:
                self.env.grown_fields |= _scan_field_appends(self.toks, body_lo, body_hi)
                self.env.grown_vars |= _scan_appends(self.toks, body_lo, body_hi)
                self.pos = body_hi + 1
            return None

        grown, grown_results = set(), ()
        if body_lo is not None:
            grown = _scan_appends(self.toks, body_lo, body_hi)
            grown_results = _scan_grown_returns(self.toks, body_lo, body_hi, grown, len(results))
        params = [(n, s.with_growth(n in grown)) for n, s in params]
        results = [(n, s.with_growth(n in grown or (i < len(grown_results) and grown_results[i])))
                   for i, (n, s) in enumerate(results)]
        sig = self._func_sig(params, variadic, results)
        mutates = bool(receiver is not None and not pointer and body_lo is not None
                       and _scan_receiver_mutation(self.toks, body_lo, body_hi, recv_name))

        saved_func = self.func
        self.func = _FuncContext(
            result=sig.result(),
            result_names=tuple(n for n, _ in results if n),
            grown=grown,
            grown_results=tuple(s.growable for _, s in results),
            type_params={p for p, _ in type_params} | recv_type_params,
        )
        self.push()
        if receiver is not None and recv_name:
            self.declare(recv_name, receiver[1])
        for pname, psig in params:
            self.declare(pname, psig)
        for rname, rsig in results:
            if rname:
                self.declare(rname, rsig)
        try:
            body = self.parse_block() if body_lo is not None else None
        finally:
            self.pop()
            self.func = saved_func

        attrs = {
            "params": [n for n, _ in params],
            "results": [n for n, _ in results],
            "type_params": [p for p, _ in type_params],
            "constraints": [c for _, c in type_params],
            "has_body": body is not None,
            "source": self.span_text(start_index, body_lo if body_lo is not None else self.pos),
        }
        if receiver is not None:
            attrs.update({
                "receiver": recv_name,
                "receiver_type": recv_type,
                "receiver_args": [a.name for a in (receiver[1].elem if pointer else receiver[1]).args],
                "pointer_receiver": pointer,
                "receiver_form": self.env.receiver_form(recv_type),
                "mutates_receiver": mutates,
            })
        return make_node(
            ConstructKind.FUNCTION, name, sig,
            self.location(start_tok),
            form="method" if receiver is not None else "function",
            doc=doc,
            exported=_is_exported(name),
            attrs=attrs,
            children={"body": body or []},
        )

    # -- statements ----------------------------------------------------------

    def parse_block(self):
        self.expect_op("{")
        self.push()
        stmts = []
        try:
            while not self.at_op("}"):
                if self.tok.kind == go_lexer.EOF:
                    raise self.error("unexpected EOF in block")
                if self.at_op(";"):
                    self.advance()
                    continue
                stmt = self.parse_stmt()
                if stmt is not None:
                    stmts.append(stmt)
                if not self.at_op("}"):
                    self.expect_semi()
        finally:
            self.pop()
        self.expect_op("}")
        return stmts

    def _stmt(self, form: str, start_index: int, start_tok, attrs=None, children=None,
              name: str = "", sig: TypeSig = VOID):
        attrs = dict(attrs or {})
        attrs.setdefault("source", self.span_text(start_index, self.pos).split("\n", 1)[0])
        return make_node(ConstructKind.STATEMENT, name or form, sig,
                         self.location(start_tok), form=form, attrs=attrs, children=children)

    def parse_stmt(self):
        tok = self.tok
        start = self.pos
        if tok.kind == go_lexer.KEYWORD:
            kw = tok.value
            if kw == "var":
                nodes = self.parse_var_decl()
                return nodes[0] if len(nodes) == 1 else self._stmt(
                    "block", start, tok, children={"body": nodes})
            if kw == "const":
                consts = self.parse_const_decl(local=True)
                return self._stmt("const_local", start, tok, children={"consts": consts})
            if kw == "type":
                self.parse_type_decl(local=True)
                return self._stmt("type_local", start, tok)
            if kw == "return":
                return self.parse_return()
            if kw == "if":
                return self.parse_if()
            if kw == "for":
                return self.parse_for()
            if kw == "switch":
                return self.parse_switch()
            if kw in ("break", "continue"):
                self.advance()
                label = self.advance().value if self.tok.kind == go_lexer.IDENT else ""
                return self._stmt(kw, start, tok, attrs={"label": label})
            if kw == "goto":
                self.advance()
                self.expect_ident()
                return self._stmt("goto", start, tok)
            if kw == "fallthrough":
                self.advance()
                return self._stmt("fallthrough", start, tok)
            if kw in ("defer", "go"):
                self.advance()
                call = self.parse_expr()
                return self._stmt(kw, start, tok, children={"call": [call]})
            if kw == "select":
                self.advance()
                end = self.matching(self.pos)
                self.pos = end + 1
                return self._stmt("select", start, tok)
        if tok.is_op("{"):
            body = self.parse_block()
            return self._stmt("block", start, tok, children={"body": body})
        if tok.kind == go_lexer.IDENT and self.peek().is_op(":"):
            label = self.advance().value
            self.advance()
            while self.at_op(";"):
                self.advance()
            inner = self.parse_stmt() if not self.at_op("}") else None
            return self._stmt("labeled", start, tok, attrs={"label": label},
                              children={"body": [inner] if inner else []})
        return self.parse_simple_stmt()

    def parse_simple_stmt(self, allow_range: bool = False):
        start = self.pos
        tok = self.tok
        if allow_range and self.at_keyword("range"):
            self.advance()
            return _RangeClause([], self.parse_expr(), True, start, tok)
        lhs = self.parse_expr_list()
        if self.at_op(":=", "="):
            op = self.advance().value
            if allow_range and self.at_keyword("range"):
                self.advance()
                return _RangeClause(lhs, self.parse_expr(), op == ":=", start, tok)
            rhs = self.parse_expr_list()
            return self.make_assign(lhs, rhs, op == ":=", start, tok)
        if self.tok.kind == go_lexer.OP and self.tok.value in ASSIGN_OPS:
            op = self.advance().value
            value = self.parse_expr()
            target = lhs[0]
            return self._stmt("op_assign", start, tok,
                              attrs={"op": op, "operand_type": self._resolved_name(target.signature)},
                              children={"target": [target], "value": [value]},
                              name=op, sig=target.signature)
        if self.at_op("++", "--"):
            op = self.advance().value
            return self._stmt("incdec", start, tok,
                              attrs={"op": op, "operand_type": self._resolved_name(lhs[0].signature)},
                              children={"target": [lhs[0]]}, name=op, sig=lhs[0].signature)
        if self.at_op("<-"):
            self.advance()
            value = self.parse_expr()
            return self._stmt("send", start, tok, children={"chan": [lhs[0]], "value": [value]})
        if len(lhs) != 1:
            raise self.error("expected 1 expression", tok)
        return self._stmt("expr", start, tok, children={"expr": lhs}, sig=lhs[0].signature)

    def make_assign(self, lhs, rhs, define: bool, start: int, tok):
        form = "define" if define else "assign"
        attrs = {"shape": "plain"}
        names = [n.name if n.form in ("ident", "blank") else "" for n in lhs]
        if define and not all(names):
            raise self.error("non-name on left side of :=", tok)

        if len(rhs) == 1 and (len(lhs) > 1 or rhs[0].signature.kind == TypeKind.ERROR_UNION):
            source = rhs[0]
            sig = source.signature
            types = _union_values(sig)
            if source.form == "call" and sig.kind == TypeKind.ERROR_UNION:
                if sig.key == ERROR:
                    attrs["shape"] = "error_call"
                    if len(lhs) == len(types):
                        attrs["error_var"] = names[-1]
                        self.func.error_vars.add(names[-1])
                        attrs["value_count"] = len(lhs) - 1
                    else:
                        attrs["value_count"] = len(lhs)
                else:
                    attrs["shape"] = "optional_call"
                    attrs["ok_var"] = names[-1] if len(lhs) == len(types) else ""
                    attrs["value_count"] = len(lhs) - 1 if attrs["ok_var"] else len(lhs)
            elif source.form == "index" and len(lhs) == 2:
                attrs["shape"] = "comma_ok"
                attrs["comma_ok"] = "index"
                types = [source.signature, BOOL]
            elif source.form == "type_assert" and len(lhs) == 2:
                attrs["shape"] = "comma_ok"
                attrs["comma_ok"] = "type_assert"
                types = [source.signature, BOOL]
            elif source.form == "unary" and source.name == "<-" and len(lhs) == 2:
                attrs["shape"] = "comma_ok"
                attrs["comma_ok"] = "recv"
                types = [source.signature, BOOL]
            elif len(lhs) > 1 and sig.kind == TypeKind.ANY:
                # Result count of a call we have no signature for
                attrs["shape"] = "unknown_call"
                types = [ANY] * len(lhs)
            elif len(lhs) > 1 and sig.kind != TypeKind.TUPLE:
                raise self.error(f"assignment mismatch: {len(lhs)} variables but 1 value", tok)
        else:
            if len(lhs) != len(rhs):
                raise self.error(
                    f"assignment mismatch: {len(lhs)} variables but {len(rhs)} values", tok)
            types = [self._default_type(v) for v in rhs]

        if define:
            new_rhs = []
            for i, value in enumerate(rhs):
                if len(rhs) == len(lhs) and names[i] in self.func.grown:
                    value = self._grow_expr(value)
                new_rhs.append(value)
            rhs = new_rhs
            for i, name in enumerate(names):
                sig = types[i] if i < len(types) else ANY
                if name in self.func.grown:
                    sig = sig.with_growth()
                self.declare(name, sig)
            lhs = [make_node(ConstructKind.EXPRESSION, node.name,
                             self.lookup_local(node.name) or ANY, node.location,
                             form="ident", attrs={"ref": "local"})
                   if node.form == "ident" else node for node in lhs]
        attrs["names"] = names
        return self._stmt(form, start, tok, attrs=attrs,
                          children={"targets": lhs, "values": rhs})

    def parse_return(self):
        start = self.pos
        tok = self.advance()
        values = []
        if not self.at_op(";", "}"):
            values = self.parse_expr_list()
        result = self.func.result
        attrs = {"shape": "plain"}
        if not values and result.kind != TypeKind.VOID and self.func.result_names:
            attrs["shape"] = "named_bare"
            attrs["names"] = list(self.func.result_names)
        elif result.kind == TypeKind.ERROR_UNION and values:
            last = values[-1]
            if result.key == ERROR:
                attrs["shape"] = "raise_ok" if _is_nil(last) else "raise_err"
            elif last.form == "ident" and last.name == "true":
                attrs["shape"] = "optional_ok"
            elif last.form == "ident" and last.name == "false":
                attrs["shape"] = "optional_none"
            else:
                attrs["shape"] = "optional_dynamic"
        if self.func.grown_results:
            values = [self._grow_expr(v) if i < len(self.func.grown_results)
                      and self.func.grown_results[i] else v for i, v in enumerate(values)]
        return self._stmt("return", start, tok, attrs=attrs, children={"values": values},
                          sig=result)

    def _header(self, fn):
        saved = self.no_lit
        self.no_lit = True
        try:
            return fn()
        finally:
            self.no_lit = saved

    def parse_if(self):
        start = self.pos
        tok = self.advance()
        self.push()
        try:
            init = None
            stmt = self._header(self.parse_simple_stmt)
            if self.accept_op(";"):
                init = stmt
                cond = self._header(self.parse_expr)
            else:
                if stmt.form != "expr":
                    raise self.error("missing condition in if statement", tok)
                cond = stmt.first("expr")
            body = self.parse_block()
            else_ = []
            if self.at_keyword("else"):
                self.advance()
                if self.at_keyword("if"):
                    else_ = [self.parse_if()]
                else:
                    else_ = self.parse_block()
        finally:
            self.pop()

        attrs = {"has_init": init is not None, "has_else": bool(else_), "err_check": ""}
        err_name = _error_check_name(cond)
        if err_name and err_name in self.func.error_vars:
            result = self.func.result
            raising = result.kind == TypeKind.ERROR_UNION and result.key == ERROR
            returns_err = (raising and len(body) == 1 and body[0].form == "return"
                           and body[0].child("values")
                           and body[0].child("values")[-1].form == "ident"
                           and body[0].child("values")[-1].name == err_name)
            attrs["err_check"] = "propagate" if returns_err and not else_ else "handle"
        return self._stmt("if", start, tok, attrs=attrs, children={
            "init": [init] if init else [],
            "cond": [cond],
            "body": body,
            "else": else_,
        })

    def parse_for(self):
        start = self.pos
        tok = self.advance()
        self.push()
        try:
            if self.at_op("{"):
                body = self.parse_block()
                return self._stmt("for", start, tok, attrs={"loop": "ever"},
                                  children={"body": body})
            init = cond = post = None
            clause = None
            if not self.at_op(";"):
                clause = self._header(lambda: self.parse_simple_stmt(allow_range=True))
            if isinstance(clause, _RangeClause):
                return self.finish_range(clause, start, tok)
            if self.at_op(";") and not (self.tok.auto and self.peek().is_op("{")):
                init = clause
                self.advance()
                if not self.at_op(";"):
                    cond = self._header(self.parse_expr)
                self.expect_op(";")
                if not self.at_op("{"):
                    post = self._header(self.parse_simple_stmt)
                body = self.parse_block()
                attrs = {"loop": "clause"}
                attrs.update(_counting_shape(init, cond, post, body))
                attrs["has_continue"] = _has_continue(body)
                return self._stmt("for", start, tok, attrs=attrs, children={
                    "init": [init] if init else [],
                    "cond": [cond] if cond else [],
                    "post": [post] if post else [],
                    "body": body,
                })
            if clause is None or clause.form != "expr":
                raise self.error("expected for loop condition", tok)
            cond = clause.first("expr")
            body = self.parse_block()
            return self._stmt("for", start, tok, attrs={"loop": "cond"},
                              children={"cond": [cond], "body": body})
        finally:
            self.pop()

    def finish_range(self, clause: "_RangeClause", start: int, tok):
        coll = clause.collection
        csig = self._resolve(coll.signature)
        key_sig, value_sig = _range_types(csig)
        names = [n.name if n.form in ("ident", "blank") else "" for n in clause.targets]
        key = names[0] if names else ""
        value = names[1] if len(names) > 1 else ""
        if clause.define:
            if key:
                self.declare(key, key_sig)
            if value:
                self.declare(value, value_sig)
        has_key = bool(key) and key != "_"
        has_value = bool(value) and value != "_"
        shape = {(True, True): "kv", (True, False): "k", (False, True): "v",
                 (False, False): "none"}[(has_key, has_value)]
        body = self.parse_block()
        return self._stmt("for", start, tok,
                          attrs={"loop": "range", "key": key, "value": value,
                                 "shape": shape, "define": clause.define,
                                 "has_continue": _has_continue(body)},
                          children={"collection": [coll], "body": body},
                          sig=csig)

    def parse_switch(self):
        start = self.pos
        tok = self.advance()
        self.push()
        try:
            init = tag = None
            if not self.at_op("{"):
                stmt = self._header(self.parse_simple_stmt)
                if self.accept_op(";"):
                    init = stmt
                    if not self.at_op("{"):
                        stmt = self._header(self.parse_simple_stmt)
                    else:
                        stmt = None
                if stmt is not None:
                    inner = stmt.first("expr") if stmt.form == "expr" else None
                    if stmt.form == "define" and stmt.child("values"):
                        inner = stmt.child("values")[0]
                    if inner is not None and inner.form == "type_assert" and inner.attr("type_switch"):
                        end = self.matching(self.pos)
                        self.pos = end + 1
                        return self._stmt("type_switch", start, tok)
                    if stmt.form != "expr":
                        raise self.error("switch expression must be an expression", tok)
                    tag = inner

            self.expect_op("{")
            clauses = []
            while not self.at_op("}"):
                if self.at_op(";"):
                    self.advance()
                    continue
                ctok = self.tok
                cstart = self.pos
                if self.at_keyword("case"):
                    self.advance()
                    values = self.parse_expr_list()
                elif self.at_keyword("default"):
                    self.advance()
                    values = []
                else:
                    raise self.error(f"expected case or default, found {self._describe(self.tok)}")
                self.expect_op(":")
                self.push()
                body = []
                try:
                    while not (self.at_keyword("case", "default") or self.at_op("}")):
                        if self.at_op(";"):
                            self.advance()
                            continue
                        stmt = self.parse_stmt()
                        if stmt is not None:
                            body.append(stmt)
                        if not (self.at_keyword("case", "default") or self.at_op("}")):
                            self.expect_semi()
                finally:
                    self.pop()
                clauses.append(self._stmt("case", cstart, ctok,
                                          attrs={"default": not values},
                                          children={"values": values, "body": body}))
            self.expect_op("}")
        finally:
            self.pop()
        fallthrough = any(s.form == "fallthrough" for c in clauses for s in c.child("body"))
        return self._stmt("switch", start, tok,
                          attrs={"tagless": tag is None, "fallthrough": fallthrough,
                                 "has_init": init is not None},
                          children={"init": [init] if init else [],
                                    "tag": [tag] if tag else [],
                                    "clauses": clauses})

    # -- expressions ---------------------------------------------------------

    def _no_lit_off(self, fn):
        saved = self.no_lit
        self.no_lit = False
        try:
            return fn()
        finally:
            self.no_lit = saved

    def parse_expr_list(self):
        items = [self.parse_expr()]
        while self.accept_op(","):
            items.append(self.parse_expr())
        return items

    def _expr(self, form: str, name: str, sig: TypeSig, start_tok, start_index=None,
              attrs=None, children=None):
        attrs = dict(attrs or {})
        if start_index is not None and form not in ("ident", "int", "float", "string",
                                                    "rune", "imag"):
            attrs.setdefault("text", self.span_text(start_index, self.pos))
        return make_node(ConstructKind.EXPRESSION, name, sig, self.location(start_tok),
                         form=form, attrs=attrs, children=children)

    def _text(self, node) -> str:
        return node.attr("text") or node.name

    def parse_expr(self, min_prec: int = 1):
        start = self.pos
        start_tok = self.tok
        left = self.parse_unary()
        while True:
            tok = self.tok
            prec = BINARY_PRECEDENCE.get(tok.value) if tok.kind == go_lexer.OP else None
            if prec is None or prec < min_prec:
                return left
            self.advance()
            right = self.parse_expr(prec + 1)
            left = self._binary(tok.value, left, right, start_tok, start)

    def _binary(self, op, left, right, start_tok, start):
        lu, ru = bool(left.attr("untyped")), bool(right.attr("untyped"))
        if op in COMPARISON_OPS or op in ("&&", "||"):
            sig = BOOL
            untyped = lu and ru and op not in COMPARISON_OPS
        elif op in ("<<", ">>"):
            sig = left.signature
            untyped = lu
        else:
            if lu and not ru:
                sig = right.signature
            elif lu and ru:
                kinds = (left.signature.kind, right.signature.kind)
                sig = FLOAT64 if TypeKind.FLOAT in kinds else left.signature
            else:
                sig = left.signature
            untyped = lu and ru
        operand = right.signature if lu and not ru else left.signature
        return self._expr("binary", op, sig, start_tok, start,
                          attrs={"op": op, "untyped": untyped,
                                 "operand_type": self._resolved_name(operand)},
                          children={"left": [left], "right": [right]})

    def parse_unary(self):
        tok = self.tok
        start = self.pos
        if tok.kind == go_lexer.OP and tok.value in UNARY_OPS:
            self.advance()
            operand = self.parse_unary()
            osig = operand.signature
            op = tok.value
            if op == "!":
                sig = BOOL
            elif op == "&":
                sig = TypeSig(TypeKind.OPTIONAL, elem=osig)
            elif op == "*":
                sig = osig.elem if osig.kind == TypeKind.OPTIONAL else ANY
            elif op == "<-":
                sig = osig.elem if osig.kind == TypeKind.CHAN else ANY
            else:
                sig = osig
            return self._expr("unary", op, sig, tok, start,
                              attrs={"op": op, "untyped": bool(operand.attr("untyped")),
                                     "operand_form": operand.form,
                                     "operand_type": self._resolved_name(osig)},
                              children={"operand": [operand]})
        return self.parse_primary()

    def parse_primary(self):
        start = self.pos
        start_tok = self.tok
        node = self.parse_operand()
        while True:
            if self.at_op("."):
                self.advance()
                if self.accept_op("("):
                    if self.at_keyword("type"):
                        self.advance()
                        self.expect_op(")")
                        node = self._expr("type_assert", "type", ANY, start_tok, start,
                                          attrs={"type_switch": True},
                                          children={"operand": [node]})
                        continue
                    target = self.parse_type()
                    self.expect_op(")")
                    node = self._expr("type_assert", target.canonical(), target, start_tok, start,
                                      children={"operand": [node]})
                    continue
                member = self.expect_ident().value
                node = self._selector(node, member, start_tok, start)
            elif self.at_op("["):
                node = self._index_or_slice(node, start_tok, start)
            elif self.at_op("("):
                node = self._call(node, start_tok, start)
            elif self.at_op("{") and node.form == "type" and (
                    not self.no_lit or node.attr("explicit")):
                node = self.parse_composite(node.signature, start_tok, start)
            else:
                return node

    def parse_operand(self):
        tok = self.tok
        start = self.pos
        kind = tok.kind
        if kind == go_lexer.INT:
            self.advance()
            return self._expr("int", tok.value, PLATFORM_INT, tok, attrs={"untyped": True})
        if kind == go_lexer.FLOAT:
            self.advance()
            return self._expr("float", tok.value, FLOAT64, tok, attrs={"untyped": True})
        if kind == go_lexer.IMAG:
            self.advance()
            return self._expr("imag", tok.value, BASIC_TYPES["complex128"], tok,
                              attrs={"untyped": True})
        if kind == go_lexer.RUNE:
            self.advance()
            return self._expr("rune", tok.value, INT32, tok, attrs={"untyped": True})
        if kind == go_lexer.STRING:
            self.advance()
            return self._expr("string", tok.value, STRING, tok,
                              attrs={"untyped": True, "raw": tok.value.startswith("`")})
        if kind == go_lexer.IDENT:
            self.advance()
            return self._ident(tok)
        if tok.is_op("("):
            self.advance()
            inner = self._no_lit_off(self.parse_expr_or_type)
            self.expect_op(")")
            if inner.form == "type":
                return inner
            return self._expr("paren", "()", inner.signature, tok, start,
                              attrs={"untyped": bool(inner.attr("untyped"))},
                              children={"inner": [inner]})
        if tok.is_keyword("func"):
            return self.parse_func_lit()
        if tok.is_op("[", "*") or tok.is_keyword("map", "chan", "struct", "interface"):
            sig = self.parse_type()
            return self._expr("type", sig.canonical(), sig, tok, start,
                              attrs={"ref": "type", "explicit": True})
        raise self.error(f"expected operand, found {self._describe(tok)}")

    def parse_expr_or_type(self):
        if self.at_op("*") or self.at_op("["):
            # "(*T)" or "([]T)" in conversion position
            saved = self.pos
            try:
                sig = self.parse_type()
                if self.at_op(")") and self._is_known_type(sig):
                    return self._expr("type", sig.canonical(), sig, self.toks[saved], saved,
                                      attrs={"ref": "type", "explicit": True})
            except ParseError:
                pass
            self.pos = saved
        return self.parse_expr()

    def _is_known_type(self, sig: TypeSig) -> bool:
        if sig.kind == TypeKind.NAMED:
            return "." in sig.name or sig.name in self.env.types
        inner = sig.element() if sig.kind != TypeKind.MAP else sig.elem
        return inner is None or self._is_known_type(inner)

    def _resolved_name(self, sig: TypeSig) -> str:
        return self._resolve(sig).canonical()

    def _ident(self, tok):
        name = tok.value
        if name == "_":
            return self._expr("blank", "_", ANY, tok, attrs={"ref": "blank"})
        if name == "iota" and self.iota is not None:
            return self._expr("int", str(self.iota), PLATFORM_INT, tok,
                              attrs={"untyped": True, "iota": True})
        local = self.lookup_local(name)
        if local is not None:
            return self._expr("ident", name, local, tok, attrs={"ref": "local"})
        env = self.env
        if name in env.consts:
            attrs = {"ref": "const", "untyped": name in env.untyped_consts}
            if name in env.const_defaults:
                attrs["default_type"] = env.const_defaults[name].canonical()
            return self._expr("ident", name, env.consts[name], tok, attrs=attrs)
        if name in env.vars:
            return self._expr("ident", name, env.vars[name], tok, attrs={"ref": "var_pkg"})
        if name in env.funcs:
            return self._expr("ident", name, env.funcs[name], tok, attrs={"ref": "func"})
        if name in env.types or name in self.func.type_params:
            sig = self._type_from_name(name)
            if self.at_op("[") and name in env.types:
                args = self._type_args()
                sig = named_sig(name, args)
            return self._expr("type", name, sig, tok, attrs={"ref": "type"})
        if name in ("true", "false"):
            return self._expr("ident", name, BOOL, tok, attrs={"ref": "bool", "untyped": True})
        if name == "nil":
            return self._expr("ident", name, ANY, tok, attrs={"ref": "nil"})
        if name in BASIC_TYPES or name == "comparable":
            return self._expr("type", name, self._type_from_name(name), tok, attrs={"ref": "type"})
        if name in BUILTIN_FUNCS:
            return self._expr("ident", name, VOID, tok, attrs={"ref": "builtin"})
        if name in env.imports:
            return self._expr("ident", name, VOID, tok, attrs={"ref": "package"})
        return self._expr("ident", name, ANY, tok, attrs={"ref": "unknown"})

    def _selector(self, node, member: str, start_tok, start):
        if node.form == "ident" and node.attr("ref") == "package":
            qualified = f"{node.name}.{member}"
            if qualified in STDLIB_SIGNATURES:
                sig = _stdlib_signature(qualified)
            elif qualified in STDLIB_VALUES:
                sig = BASIC_TYPES[STDLIB_VALUES[qualified]]
            elif member[:1].isupper() and self.at_op("{"):
                # imported struct type opening a composite literal
                return self._expr("type", qualified, named_sig(qualified), start_tok, start,
                                  attrs={"ref": "type"})
            else:
                sig = ANY
            return self._expr("selector", qualified, sig, start_tok, start,
                              attrs={"recv_kind": "package", "package": node.name,
                                     "member": member, "untyped": qualified in STDLIB_VALUES},
                              children={"recv": [node]})
        recv_sig = node.signature
        base = recv_sig.elem if recv_sig.kind == TypeKind.OPTIONAL else recv_sig
        method_sig = self._method_sig(base, member)
        if method_sig is not None:
            return self._expr("selector", member, method_sig, start_tok, start,
                              attrs={"recv_kind": "method_value"},
                              children={"recv": [node]})
        return self._expr("selector", member, self._field_sig(base, member), start_tok, start,
                          attrs={"recv_kind": "field"}, children={"recv": [node]})

    def _struct_members(self, sig: TypeSig):
        if sig.kind == TypeKind.NAMED:
            entry = self.env.types.get(sig.name)
            if entry is None:
                return ()
            sig = entry[1]
        if sig.kind in (TypeKind.STRUCT, TypeKind.INTERFACE):
            return sig.members
        return ()

    def _field_sig(self, sig: TypeSig, member: str) -> TypeSig:
        for name, msig in self._struct_members(sig):
            if name == member:
                return msig
        return ANY

    def _method_sig(self, sig: TypeSig, member: str) -> Optional[TypeSig]:
        if sig.kind == TypeKind.ERROR and member == "Error":
            return TypeSig(TypeKind.FUNC, results=(STRING,))
        if sig.kind == TypeKind.NAMED:
            found = self.env.methods.get((sig.name, member))
            if found is not None:
                return found
            entry = self.env.types.get(sig.name)
            if entry is not None and entry[0] == "interface":
                for name, msig in entry[1].members:
                    if name == member:
                        return msig
        return None

    def _index_or_slice(self, node, start_tok, start):
        self.expect_op("[")
        saved = self.no_lit
        self.no_lit = False
        try:
            low = high = cap = None
            is_slice = False
            if not self.at_op(":"):
                low = self.parse_expr()
            if self.accept_op(":"):
                is_slice = True
                if not self.at_op("]", ":"):
                    high = self.parse_expr()
                if self.accept_op(":"):
                    cap = self.parse_expr()
            extra = []
            while not is_slice and self.accept_op(","):
                extra.append(self.parse_expr())
            self.expect_op("]")
        finally:
            self.no_lit = saved
        base = node.signature
        if is_slice:
            if base.kind == TypeKind.ARRAY:
                sig = slice_sig(base.elem)
            elif base.kind == TypeKind.OPTIONAL and base.elem.kind == TypeKind.ARRAY:
                sig = slice_sig(base.elem.elem)
            else:
                sig = base.with_growth(False)
            children = {"base": [node], "low": [low] if low else [],
                        "high": [high] if high else [], "max": [cap] if cap else []}
            return self._expr("slice_expr", "[:]", sig, start_tok, start,
                              attrs={"three_index": cap is not None,
                                     "base_type": self._resolved_name(base)},
                              children=children)
        if node.form == "type" or (node.attr("ref") == "func" and low is not None
                                   and low.form == "type"):
            # explicit instantiation of a generic type or function
            return node
        resolved = self._resolve(base)
        if resolved.kind == TypeKind.MAP:
            sig = resolved.elem
        elif resolved.kind == TypeKind.STRING:
            sig = UINT8
        elif resolved.kind in (TypeKind.SLICE, TypeKind.BYTES, TypeKind.ARRAY):
            sig = resolved.element()
        elif resolved.kind == TypeKind.OPTIONAL and resolved.elem.kind == TypeKind.ARRAY:
            sig = resolved.elem.elem
        else:
            sig = ANY
        return self._expr("index", "[]", sig, start_tok, start,
                          attrs={"base_kind": resolved.kind.value,
                                 "base_type": resolved.canonical()},
                          children={"base": [node], "index": [low]})

    def _resolve(self, sig: TypeSig) -> TypeSig:
        """Follow package-local named types to their underlying signature."""
        seen = set()
        while sig.kind == TypeKind.NAMED and sig.name in self.env.types and sig.name not in seen:
            seen.add(sig.name)
            form, underlying = self.env.types[sig.name]
            if form in ("struct", "interface"):
                return sig
            sig = underlying
        return sig

    def _call(self, callee, start_tok, start):
        self.expect_op("(")
        saved = self.no_lit
        self.no_lit = False
        try:
            args = []
            type_arg = None
            builtin = callee.form == "ident" and callee.attr("ref") == "builtin"
            if builtin and callee.name in ("make", "new") and not self.at_op(")"):
                type_arg = self.parse_type()
                self.accept_op(",")
            spread = False
            while not self.at_op(")"):
                args.append(self.parse_expr())
                if self.accept_op("..."):
                    spread = True
                if not self.accept_op(","):
                    break
            self.expect_op(")")
        finally:
            self.no_lit = saved

        if callee.form == "type":
            target = callee.signature
            operand = args[0] if args else None
            return self._expr("convert", target.canonical(), target, start_tok, start,
                              attrs={"target_type": self._resolved_name(target),
                                     "source_type": (self._resolved_name(operand.signature)
                                                     if operand else "void")},
                              children={"operand": [operand] if operand else []})

        attrs = {"spread": spread,
                 "arg_type": self._resolved_name(args[0].signature) if args else "void"}
        children = {"args": args}
        if builtin:
            name = callee.name
            attrs["callee"] = name
            sig = self._builtin_result(name, args, type_arg)
            if type_arg is not None:
                attrs["type_arg"] = type_arg.canonical()
        elif callee.form == "selector" and callee.attr("recv_kind") == "package":
            attrs["callee"] = callee.name
            sig = callee.signature.result() if callee.signature.kind == TypeKind.FUNC else ANY
        elif callee.form == "selector" and callee.attr("recv_kind") == "method_value":
            attrs["callee"] = "method"
            attrs["method"] = callee.name
            attrs["recv_form"] = self._recv_form(callee.first("recv").signature)
            sig = callee.signature.result()
        elif callee.form == "ident" and callee.attr("ref") == "func":
            attrs["callee"] = "local"
            attrs["function"] = callee.name
            sig = callee.signature.result()
        else:
            attrs["callee"] = "value"
            sig = callee.signature.result() if callee.signature.kind == TypeKind.FUNC else ANY
        children["func"] = [callee]
        name = attrs.get("function") or attrs.get("method") or callee.name
        if sig.kind == TypeKind.TYPE_PARAM and args:
            sig = args[0].signature
        return self._expr("call", name, sig, start_tok, start, attrs=attrs, children=children)

    def _recv_form(self, sig: TypeSig) -> str:
        base = sig.elem if sig.kind == TypeKind.OPTIONAL else sig
        if base.kind == TypeKind.ERROR:
            return "error"
        if base.kind == TypeKind.TYPE_PARAM:
            return "typeparam"
        return self.env.receiver_form(base.name) if base.kind == TypeKind.NAMED else "unknown"

    def _builtin_result(self, name, args, type_arg) -> TypeSig:
        if name in ("len", "cap", "copy"):
            return PLATFORM_INT
        if name == "append":
            return args[0].signature if args else ANY
        if name == "make":
            return type_arg if type_arg is not None else ANY
        if name == "new":
            return TypeSig(TypeKind.OPTIONAL, elem=type_arg or ANY)
        if name in ("min", "max"):
            typed = [a.signature for a in args if not a.attr("untyped")]
            return typed[0] if typed else (args[0].signature if args else ANY)
        if name == "recover":
            return ANY
        return VOID

    def parse_composite(self, sig: TypeSig, start_tok, start):
        self.expect_op("{")
        saved = self.no_lit
        self.no_lit = False
        resolved = self._resolve(sig)
        elems = []
        keyed = False
        try:
            while not self.at_op("}"):
                if self.at_op(";"):
                    self.advance()
                    continue
                etok = self.tok
                estart = self.pos
                first = self._composite_element(resolved, key=True)
                if self.accept_op(":"):
                    keyed = True
                    value = self._composite_element(resolved, key=False)
                    elems.append(self._expr("kv", ":", value.signature, etok, estart,
                                            children={"key": [first], "value": [value]}))
                else:
                    elems.append(first)
                if not self.accept_op(","):
                    while self.at_op(";"):
                        self.advance()
                    break
            self.expect_op("}")
        finally:
            self.no_lit = saved
        if sig.kind == TypeKind.ARRAY and sig.length == -1:
            sig = replace(sig, length=len(elems))
        attrs = {"keyed": keyed, "count": len(elems), "composite_type": resolved.canonical()}
        if resolved.kind == TypeKind.ARRAY:
            attrs["partial"] = len(elems) != (sig.length if sig.length is not None else 0)
        return self._expr("composite", sig.canonical(), sig, start_tok, start,
                          attrs=attrs, children={"elems": elems})

    def _composite_element(self, container: TypeSig, key: bool):
        if self.at_op("{"):
            if container.kind == TypeKind.MAP:
                inner = container.key if key else container.elem
            else:
                inner = container.element() if container.kind != TypeKind.NAMED else ANY
            inner = inner or ANY
            if inner.kind == TypeKind.OPTIONAL:
                inner = inner.elem
            return self.parse_composite(inner, self.tok, self.pos)
        if key and container.kind == TypeKind.NAMED and self.tok.kind == go_lexer.IDENT \
                and self.peek().is_op(":"):
            tok = self.advance()
            return self._expr("ident", tok.value, self._field_sig(container, tok.value), tok,
                              attrs={"ref": "field"})
        return self.parse_expr()

    def parse_func_lit(self):
        start = self.pos
        tok = self.advance()
        params, variadic, results = self.parse_signature()
        sig = self._func_sig(params, variadic, results)
        body_lo = self.pos
        body_hi = self.matching(body_lo)
        saved_func = self.func
        grown = _scan_appends(self.toks, body_lo, body_hi)
        self.func = _FuncContext(result=sig.result(),
                                 result_names=tuple(n for n, _ in results if n),
                                 grown=grown,
                                 type_params=saved_func.type_params)
        self.push()
        for pname, psig in params:
            self.declare(pname, psig.with_growth(pname in grown))
        try:
            body = self.parse_block()
        finally:
            self.pop()
            self.func = saved_func
        return self._expr("func_lit", "func", sig, tok, start,
                          attrs={"params": [n for n, _ in params]},
                          children={"body": body})

    # -- type helpers --------------------------------------------------------

    def _grow_expr(self, node):
        """Mark a slice-producing expression as growable."""
        if node.signature.is_sequence and node.form in ("composite", "call", "slice_expr",
                                                         "convert", "ident"):
            return replace(node, signature=node.signature.with_growth())
        return node


@dataclass
class _RangeClause:
    targets: list
    collection: object
    define: bool
    start: int
    tok: object

    form = "range"


# ---------------------------------------------------------------------------
# Token scans
# ---------------------------------------------------------------------------

def _scan_appends(tokens, lo: int, hi: int) -> Set[str]:
    """Names that are the first argument of append() within tokens[lo:hi]."""
    grown = set()
    for i in range(lo, hi - 2):
        tok = tokens[i]
        if tok.kind == go_lexer.IDENT and tok.value == "append" and tokens[i + 1].is_op("("):
            arg = tokens[i + 2]
            if arg.kind == go_lexer.IDENT and tokens[i + 3].is_op(",", ")", "..."):
                grown.add(arg.value)
    return grown


def _scan_field_appends(tokens, lo: int, hi: int) -> Set[str]:
    """Struct field names appended to as ``append(x.field, ...)``."""
    grown = set()
    for i in range(lo, hi - 4):
        tok = tokens[i]
        if tok.kind == go_lexer.IDENT and tok.value == "append" and tokens[i + 1].is_op("("):
            if (tokens[i + 2].kind == go_lexer.IDENT and tokens[i + 3].is_op(".")
                    and tokens[i + 4].kind == go_lexer.IDENT
                    and tokens[i + 5].is_op(",", ")", "...")):
                grown.add(tokens[i + 4].value)
    return grown


def _scan_grown_returns(tokens, lo: int, hi: int, grown: Set[str], count: int) -> Tuple[bool, ...]:
    """Per result position: does some return statement yield a grown slice?"""
    flags = [False] * count
    i = lo
    while i < hi:
        if tokens[i].is_keyword("return"):
            position = 0
            j = i + 1
            depth = 0
            at_start = True
            while j < hi and not (depth == 0 and tokens[j].is_op(";", "}")):
                tok = tokens[j]
                if at_start and position < count:
                    if tok.kind == go_lexer.IDENT and (
                            tok.value == "append" or (tok.value in grown
                                                      and tokens[j + 1].is_op(",", ";", "}"))):
                        flags[position] = True
                at_start = False
                if tok.is_op("(", "[", "{"):
                    depth += 1
                elif tok.is_op(")", "]", "}"):
                    depth -= 1
                elif depth == 0 and tok.is_op(","):
                    position += 1
                    at_start = True
                j += 1
            i = j
        i += 1
    return tuple(flags)


def _scan_receiver_mutation(tokens, lo: int, hi: int, receiver: str) -> bool:
    """True when the body assigns to a field of the value receiver."""
    if not receiver or receiver == "_":
        return False
    assign = {"=", "++", "--"} | ASSIGN_OPS
    for i in range(lo, hi - 3):
        tok = tokens[i]
        if tok.kind == go_lexer.IDENT and tok.value == receiver and tokens[i + 1].is_op("."):
            j = i + 3
            if tokens[j].is_op("["):
                depth = 0
                while j < hi:
                    if tokens[j].is_op("["):
                        depth += 1
                    elif tokens[j].is_op("]"):
                        depth -= 1
                        if depth == 0:
                            j += 1
                            break
                    j += 1
            if tokens[j].kind == go_lexer.OP and tokens[j].value in assign:
                return True
    return False


def _scan_conversions(tokens) -> Dict[str, Set[str]]:
    """``T(NAME)`` call-shaped conversions, keyed by NAME."""
    found: Dict[str, Set[str]] = {}
    for i in range(len(tokens) - 3):
        t, lp, name, rp = tokens[i:i + 4]
        if (t.kind == go_lexer.IDENT and lp.is_op("(") and name.kind == go_lexer.IDENT
                and rp.is_op(")")):
            found.setdefault(name.value, set()).add(t.value)
    return found


# ---------------------------------------------------------------------------
# Node shape helpers
# ---------------------------------------------------------------------------

def _is_nil(node) -> bool:
    return node.form == "ident" and node.name == "nil"


def _error_check_name(cond) -> str:
    """Name X for a condition of the form ``X != nil``."""
    if cond.form == "binary" and cond.name == "!=":
        left, right = cond.first("left"), cond.first("right")
        if left.form == "ident" and _is_nil(right):
            return left.name
    return ""


def _range_types(sig: TypeSig) -> Tuple[TypeSig, TypeSig]:
    kind = sig.kind
    if kind in (TypeKind.SLICE, TypeKind.BYTES, TypeKind.ARRAY):
        return PLATFORM_INT, sig.element()
    if kind == TypeKind.STRING:
        return PLATFORM_INT, INT32
    if kind == TypeKind.MAP:
        return sig.key, sig.elem
    if kind == TypeKind.INT:
        return sig, VOID
    if kind == TypeKind.CHAN:
        return sig.elem, VOID
    return ANY, ANY


def _counting_shape(init, cond, post, body) -> dict:
    """Detect ``for i := a; i < b; i++`` loops whose body leaves i alone."""
    if init is None or cond is None or post is None:
        return {"counting": False}
    if init.form != "define" or len(init.child("targets")) != 1 or len(init.child("values")) != 1:
        return {"counting": False}
    var = init.child("targets")[0].name
    if cond.form != "binary" or cond.name not in ("<", "<="):
        return {"counting": False}
    left = cond.first("left")
    if left.form != "ident" or left.name != var:
        return {"counting": False}
    if post.form != "incdec" or post.attr("op") != "++":
        return {"counting": False}
    target = post.first("target")
    if target.form != "ident" or target.name != var:
        return {"counting": False}
    for stmt in body:
        for node in stmt.walk():
            if node.form in ("define", "assign", "op_assign", "incdec"):
                for t in node.child("targets") + node.child("target"):
                    if t.form == "ident" and t.name == var:
                        return {"counting": False}
    return {"counting": True, "var": var, "inclusive": cond.name == "<="}


def _has_continue(body) -> bool:
    """True if a ``continue`` may target this loop.

    Unlabeled continues inside a nested loop belong to that loop; a labeled
    continue anywhere counts.
    """
    for stmt in body:
        if stmt.form == "continue":
            return True
        if stmt.form == "for":
            if any(n.form == "continue" and n.attr("label") for n in stmt.walk()):
                return True
            continue
        for role, nodes in stmt.children:
            if role in ("body", "else", "clauses") and _has_continue(nodes):
                return True
    return False


@lru_cache(maxsize=None)
def _stdlib_signature(qualified: str) -> TypeSig:
    text = STDLIB_SIGNATURES[qualified]
    tokens, comments = go_lexer.tokenize(text, "<stdlib>")
    parser = _Parser(tokens, comments, "<stdlib>", text, PackageEnv())
    return parser.parse_type()


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def scan_headers(text: str, path: str, env: Optional[PackageEnv] = None) -> PackageEnv:
    """Header pass: collect package-level symbols from one file into ``env``."""
    env = env if env is not None else PackageEnv()
    tokens, comments = go_lexer.tokenize(text, path)
    for name, targets in _scan_conversions(tokens).items():
        env.conversions.setdefault(name, set()).update(targets)
    # Types first so later declarations resolve against them
    _Parser(tokens, comments, path, text, env, headers_only=True).parse_file()
    _Parser(tokens, comments, path, text, env, headers_only=True).parse_file()
    return env


def extract_file(text: str, path: str, env: Optional[PackageEnv] = None) -> TranslationUnit:
    """Parse one Go file into a TranslationUnit.

    ``env`` carries symbols from sibling files of the same package; when
    omitted only this file's declarations are known.

    Raises:
        ParseError: the file is not syntactically valid Go.
    """
    if env is None:
        env = scan_headers(text, path)
    tokens, comments = go_lexer.tokenize(text, path)
    package, imports, nodes = _Parser(tokens, comments, path, text, env).parse_file()
    logger.debug("Extracted %d top-level constructs from %s", len(nodes), path)
    return TranslationUnit(
        path=path,
        package=package,
        imports=tuple(imports),
        nodes=tuple(nodes),
        source_hash=source_hash(text),
        line_count=text.count("\n") + (0 if text.endswith("\n") else 1),
    )


def discover_files(source_path, exclude_dirs=None, max_file_size=500000, include_tests=False):
    """Go files under ``source_path`` in sorted order."""
    source_path = Path(source_path)
    exclude = set(exclude_dirs or ())
    if source_path.is_file():
        return [source_path]
    files = []
    for fpath in sorted(source_path.rglob(f"*{SOURCE_EXTENSION}")):
        rel_parts = fpath.relative_to(source_path).parts
        if any(part in exclude for part in rel_parts[:-1]):
            continue
        if fpath.name.endswith(TEST_SUFFIX) != include_tests:
            continue
        try:
            if fpath.stat().st_size > max_file_size:
                logger.warning("Skipping %s: larger than %d bytes", fpath, max_file_size)
                continue
        except OSError as exc:
            logger.warning("Skipping %s: %s", fpath, exc)
            continue
        files.append(fpath)
    return files


def decode_source(data: bytes, path: str) -> str:
    """Strict UTF-8 decode of a Go file; invalid bytes raise ParseError."""
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError as exc:
        line = data.count(b"\n", 0, exc.start) + 1
        column = exc.start - (data.rfind(b"\n", 0, exc.start) + 1) + 1
        raise ParseError(SourceLocation(path, line, line, column),
                         f"invalid UTF-8 byte 0x{data[exc.start]:02x} in source") from exc


def read_sources(files: List[Path], rel_of) -> Tuple[Dict[Path, str], Dict[Path, ParseError]]:
    """Decoded text per file, plus the files that are not valid UTF-8."""
    texts, undecodable = {}, {}
    for fpath in files:
        try:
            texts[fpath] = decode_source(fpath.read_bytes(), rel_of(fpath))
        except ParseError as exc:
            logger.error("Cannot decode %s: %s", fpath, exc.reason)
            undecodable[fpath] = exc
    return texts, undecodable


def package_envs(files: List[Path], texts: Dict[Path, str]) -> Dict[Path, PackageEnv]:
    """One shared PackageEnv per directory (Go package), keyed by file.

    Files that fail the header pass are left out; extract_file reports them.
    """
    by_dir: Dict[Path, PackageEnv] = {}
    result = {}
    for fpath in files:
        env = by_dir.setdefault(fpath.parent, PackageEnv())
        try:
            scan_headers(texts[fpath], str(fpath), env)
        except ParseError:
            continue
    for fpath in files:
        result[fpath] = by_dir[fpath.parent]
    return result


def extract_source(source_path, config=None, include_tests=False) -> dict:
    """Extract every Go file under ``source_path``.

    Returns dict with ``units`` (TranslationUnit list), ``errors`` (file,
    location, reason) and counts. A file that fails to parse is reported
    and skipped; the remaining files are still extracted.
    """
    config = config or load_config()
    extraction = config.get("extraction", {})
    source_path = Path(source_path)
    files = discover_files(
        source_path,
        exclude_dirs=extraction.get("exclude_dirs", []),
        max_file_size=extraction.get("max_file_size", 500000),
        include_tests=include_tests,
    )

    def rel_of(fpath):
        return str(fpath.relative_to(source_path)) if source_path.is_dir() else fpath.name

    texts, undecodable = read_sources(files, rel_of)
    envs = package_envs(list(texts), texts)
    units, errors = [], []
    for fpath in files:
        rel = rel_of(fpath)
        if fpath in undecodable:
            exc = undecodable[fpath]
            errors.append({"file": rel, "location": str(exc.location), "reason": exc.reason})
            continue
        try:
            units.append(extract_file(texts[fpath], rel, envs[fpath]))
        except ParseError as exc:
            logger.error("Parse failed for %s: %s", rel, exc)
            errors.append({"file": rel, "location": str(exc.location), "reason": exc.reason})
    return {
        "source_path": str(source_path),
        "file_count": len(files),
        "total_lines": sum(u.line_count for u in units),
        "total_units": sum(len(u.nodes) for u in units),
        "units": units,
        "errors": errors,
    }


def main():
    parser = argparse.ArgumentParser(
        description="crport Source Extractor: Go source -> construct model JSON",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=textwrap.dedent("""\
            Examples:
              python -m crport.translation.source_extractor \\
                --source-path ./pkg --output-ir ir.json --json
        """),
    )
    parser.add_argument("--source-path", required=True, help="Go source directory or file")
    parser.add_argument("--output-ir", help="Write the construct model as JSON to this path")
    parser.add_argument("--include-tests", action="store_true", help="Extract _test.go files instead")
    parser.add_argument("--json", action="store_true", dest="json_output", help="JSON output")
    args = parser.parse_args()

    source_path = Path(args.source_path).resolve()
    if not source_path.exists():
        print(f"[ERROR] Source path does not exist: {source_path}", file=sys.stderr)
        sys.exit(1)

    result = extract_source(source_path, include_tests=args.include_tests)
    payload = dict(result)
    payload["units"] = [u.to_dict() for u in result["units"]]

    if args.output_ir:
        output_path = Path(args.output_ir)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        with open(output_path, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2)
        payload["output_ir_path"] = str(output_path)

    if args.json_output:
        summary = {k: v for k, v in payload.items() if k != "units"}
        summary["units"] = [{"path": u["path"], "package": u["package"],
                             "total_nodes": u["total_nodes"]} for u in payload["units"]]
        print(json.dumps(summary, indent=2))
    else:
        print(f"[INFO] Extracted {result['total_units']} constructs from "
              f"{result['file_count']} Go files ({result['total_lines']} lines)")
        for err in result["errors"]:
            print(f"[ERROR] {err['location']}: {err['reason']}")
    sys.exit(1 if result["errors"] else 0)


if __name__ == "__main__":
    main()
