#!/usr/bin/env python3
# CUI // SP-CTI
"""Mapping Engine -- stage 2 of the Go -> Crystal pipeline.

Turns each top-level ConstructNode of a TranslationUnit into target text by
selecting rules from the RuleTable. Every construct is rendered bottom-up:
types, expressions and statements each compute a canonical match subject
(e.g. ``binary:add:int32``, ``range:map<string,int64>:kv``), look up the
most specific rule of their kind and render its Jinja2 template.

Each lookup is recorded as a Decision. A construct's confidence is the
weakest confidence among its decisions; when any decision is UNSUPPORTED
the whole construct is replaced by the kind's fallback template (a comment,
or for functions a type-compatible stub raising NotImplementedError).

Equal-specificity ties raise AmbiguousMappingError in strict mode and are
recorded as advisory Ambiguity entries otherwise.

Usage:
    python -m crport.translation.mapping_engine --source-path ./pkg --json
    python -m crport.translation.mapping_engine --source-path calc.go --show-text
"""

import argparse
import json
import logging
import re
import sys
import textwrap
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import jinja2

from crport.schemas.pipeline import Ambiguity, Decision, MappedConstruct, MappedUnit
from crport.translation import naming
from crport.translation.construct_model import (
    BOOL,
    ERROR,
    FLOAT64,
    INT32,
    PLATFORM_INT,
    STRING,
    VOID,
    Confidence,
    ConstructKind,
    ConstructNode,
    TypeKind,
    TypeSig,
)
from crport.translation.dependency_mapper import requires_for
from crport.translation.errors import AmbiguousMappingError, TemplateRenderError
from crport.translation.rule_table import RuleTable, load_rule_table

logger = logging.getLogger("crport.translation.mapping_engine")

BINARY_OP_NAMES = {
    "+": "add", "-": "sub", "*": "mul", "/": "quo", "%": "rem",
    "&": "and", "|": "or", "^": "xor", "<<": "shl", ">>": "shr", "&^": "andnot",
    "==": "eq", "!=": "ne", "<": "lt", "<=": "le", ">": "gt", ">=": "ge",
    "&&": "land", "||": "lor",
}
UNARY_OP_NAMES = {
    "-": "neg", "+": "pos", "!": "not", "^": "bitnot", "*": "deref", "&": "addr", "<-": "recv",
}
ASSIGN_OP_NAMES = {
    "+=": "add", "-=": "sub", "*=": "mul", "/=": "quo", "%=": "rem",
    "&=": "and", "|=": "or", "^=": "xor", "<<=": "shl", ">>=": "shr", "&^=": "andnot",
}
INCDEC_OP_NAMES = {"++": "inc", "--": "dec"}
COMPARISON_NAMES = frozenset({"eq", "ne", "lt", "le", "gt", "ge"})

FORMAT_CALLS = frozenset({"fmt.Sprintf", "fmt.Errorf", "fmt.Printf"})
_VERB_RE = re.compile(r"%[-+# 0]*(?:\d+|\*)?(?:\.(?:\d+|\*))?([a-zA-Z%])")
_GO_VERB_RE = re.compile(r"%%|%([-+# 0]*)(\d*(?:\.\d+)?)([vwqT])")

# Marker for "no literal suffix": the literal keeps Crystal's default type
_BARE = TypeSig(TypeKind.ANY, name="<bare>")

DEFAULT_FALLBACKS = {
    "function": (
        "{% if doc %}\n{{ doc | comment }}\n{% endif %}\n"
        "# UNSUPPORTED: {{ source }}\n"
        "{% for r in reasons %}\n#   {{ r }}\n{% endfor %}\n"
        "def {{ name }}{{ \"(\" ~ params|join(\", \") ~ \")\" if params else \"\" }}"
        "{{ \" : \" ~ result if result else \"\" }}"
        "{{ \" forall \" ~ type_params|join(\", \") if type_params else \"\" }}\n"
        "  raise NotImplementedError.new({{ name | crystal_string }})\nend"
    ),
    "constant": "# UNSUPPORTED: {{ source }}\n{% for r in reasons %}\n#   {{ r }}\n{% endfor %}",
    "type_decl": "# UNSUPPORTED: {{ source }}\n{% for r in reasons %}\n#   {{ r }}\n{% endfor %}",
    "statement": "# UNSUPPORTED: {{ source }}\n{% for r in reasons %}\n#   {{ r }}\n{% endfor %}",
    "expression": "raise NotImplementedError.new({{ source | crystal_string }})",
}

_MAX_REASONS = 8


# ---------------------------------------------------------------------------
# Literal conversion
# ---------------------------------------------------------------------------

def crystal_int_literal(text: str) -> str:
    """Go integer literal -> Crystal integer literal (without type suffix).

    Legacy octal ``0755`` becomes ``0o755``; prefixes are lowercased and an
    underscore right after the prefix is dropped.
    """
    lower = text.lower()
    if lower.startswith(("0x", "0o", "0b")):
        return lower[:2] + text[2:].lstrip("_")
    digits = text.replace("_", "")
    if len(digits) > 1 and digits[0] == "0" and digits.isdigit():
        return "0o" + text[1:].lstrip("_")
    return text


def _int_value(text: str) -> int:
    cleaned = text.replace("_", "")
    try:
        return int(cleaned, 0)
    except ValueError:
        return int(cleaned, 8)


def crystal_float_literal(text: str) -> Optional[str]:
    """Go float literal -> Crystal float literal; None for hex floats."""
    if text.lower().startswith("0x"):
        return None
    result = "0" + text if text.startswith(".") else text
    return re.sub(r"\.(?=[eE]|$)", ".0", result)


def crystal_string_literal(value: str) -> str:
    """Quote a Python string as a Crystal string literal."""
    out = ['"']
    for ch in value:
        code = ord(ch)
        if ch == '"':
            out.append('\\"')
        elif ch == "\\":
            out.append("\\\\")
        elif ch == "#":
            out.append("\\#")
        elif ch == "\n":
            out.append("\\n")
        elif ch == "\t":
            out.append("\\t")
        elif ch == "\r":
            out.append("\\r")
        elif code < 0x20 or code == 0x7F:
            out.append(f"\\u{{{code:x}}}")
        else:
            out.append(ch)
    out.append('"')
    return "".join(out)


def crystal_string_from_go(text: str) -> str:
    """Go string literal token (quotes included) -> Crystal string literal."""
    if text.startswith("`"):
        return crystal_string_literal(text[1:-1].replace("\r", ""))
    body = text[1:-1]
    out = []
    i = 0
    while i < len(body):
        ch = body[i]
        if ch == "\\" and i + 1 < len(body):
            nxt = body[i + 1]
            if nxt == "U":
                code = int(body[i + 2:i + 10], 16)
                out.append(f"\\u{{{code:x}}}")
                i += 10
                continue
            out.append(body[i:i + 2])
            i += 2
            continue
        if ch == "#" and body[i + 1:i + 2] == "{":
            out.append("\\#")
        else:
            out.append(ch)
        i += 1
    return '"' + "".join(out) + '"'


_SIMPLE_ESCAPES = {"a": 7, "b": 8, "f": 12, "n": 10, "r": 13, "t": 9, "v": 11,
                   "\\": 92, "'": 39, '"': 34}


def go_rune_value(text: str) -> int:
    """Code point of a Go rune literal such as ``'a'``, ``'\\n'`` or ``'\\u00e9'``."""
    body = text[1:-1]
    if not body.startswith("\\"):
        return ord(body)
    kind = body[1]
    if kind in _SIMPLE_ESCAPES:
        return _SIMPLE_ESCAPES[kind]
    if kind in "xuU":
        return int(body[2:], 16)
    return int(body[1:], 8)


def crystal_char_literal(code: int) -> str:
    ch = chr(code)
    if ch == "'":
        return "'\\''"
    if ch == "\\":
        return "'\\\\'"
    if code < 0x20 or code == 0x7F or not ch.isprintable():
        return f"'\\u{{{code:x}}}'"
    return f"'{ch}'"


# ---------------------------------------------------------------------------
# Template environment
# ---------------------------------------------------------------------------

def _block(text) -> str:
    """Indent non-empty text one level and end it with a newline."""
    text = str(text)
    if not text:
        return ""
    return "\n".join(("  " + line) if line else "" for line in text.split("\n")) + "\n"


def _comment(text) -> str:
    return "\n".join(("# " + line).rstrip() for line in str(text).split("\n"))


def _go_format(text) -> str:
    """Rewrite Go-only printf verbs (%v, %w, %q, %T) to %s."""

    def sub(match):
        if match.group(0) == "%%":
            return "%%"
        flags = match.group(1).replace("#", "").replace("+", "")
        return "%" + flags + match.group(2) + "s"

    return _GO_VERB_RE.sub(sub, str(text))


@lru_cache(maxsize=1)
def _environment() -> jinja2.Environment:
    env = jinja2.Environment(
        loader=jinja2.BaseLoader(),
        undefined=jinja2.StrictUndefined,
        keep_trailing_newline=True,
        trim_blocks=True,
        lstrip_blocks=True,
    )
    env.filters["block"] = _block
    env.filters["comment"] = _comment
    env.filters["go_format"] = _go_format
    env.filters["crystal_string"] = crystal_string_literal
    return env


@lru_cache(maxsize=2048)
def _template(text: str) -> jinja2.Template:
    return _environment().from_string(text)


class _Lazy:
    """Template value computed (once) only if the template uses it."""

    def __init__(self, fn):
        self._fn = fn
        self._value = None
        self._done = False

    def _get(self) -> str:
        if not self._done:
            self._value = str(self._fn())
            self._done = True
        return self._value

    def __str__(self):
        return self._get()

    def __bool__(self):
        return bool(self._get())


def _identifier(node: ConstructNode) -> str:
    text = node.attr("text") or node.attr("source") or node.name
    text = " ".join(str(text).split())
    return text if len(text) <= 60 else text[:57] + "..."


def _first_line(text: str) -> str:
    return str(text).strip().split("\n", 1)[0]


# ---------------------------------------------------------------------------
# Match subjects
# ---------------------------------------------------------------------------

def function_subject(node: ConstructNode) -> str:
    """Match subject of a function or method declaration."""
    sig = node.signature.canonical()
    if not node.attr("has_body", True):
        return f"extern:{sig}"
    if node.form != "method":
        return sig
    pointer = "ptr" if node.attr("pointer_receiver") else "value"
    mut = "+mut" if node.attr("mutates_receiver") else ""
    return f"method/{node.attr('receiver_form', 'unknown')}/{pointer}{mut}:{sig}"


def constant_subject(node: ConstructNode) -> str:
    """Untyped constants whose type came from the literal default are marked."""
    sig = node.signature.canonical()
    if node.form == "untyped" and node.attr("inferred_from") == "literal-default":
        return f"untyped:{sig}"
    return sig


def _result_values(result: TypeSig) -> List[TypeSig]:
    """Per-position types of a Go return list for ``result``."""
    if result.kind == TypeKind.ERROR_UNION:
        value = result.elem
        if value.kind == TypeKind.VOID:
            values = []
        elif value.kind == TypeKind.TUPLE:
            values = list(value.params)
        else:
            values = [value]
        return values + [result.key]
    if result.kind == TypeKind.TUPLE:
        return list(result.params)
    if result.kind == TypeKind.VOID:
        return []
    return [result]


def _arg_expectations(fsig: TypeSig, count: int) -> List[Optional[TypeSig]]:
    params = list(fsig.params) if fsig.kind == TypeKind.FUNC else []
    out: List[Optional[TypeSig]] = []
    for i in range(count):
        if fsig.kind == TypeKind.FUNC and fsig.variadic and params and i >= len(params) - 1:
            out.append(params[-1].element())
        elif i < len(params):
            out.append(params[i])
        else:
            out.append(None)
    return out


_UNTYPED_DEFAULTS = {sig.canonical(): sig for sig in (PLATFORM_INT, FLOAT64, INT32, STRING, BOOL)}


def _untyped_default(node: Optional[ConstructNode]) -> Optional[TypeSig]:
    """Go's default type for a reference to an untyped constant, or None."""
    if node is None or node.form != "ident" or node.attr("ref") != "const" or not node.attr("untyped"):
        return None
    return _UNTYPED_DEFAULTS.get(node.attr("default_type", ""))


def _is_blank(node: Optional[ConstructNode]) -> bool:
    return node is None or node.form == "blank" or node.name == "_"


@dataclass
class _FuncState:
    result: TypeSig = VOID
    receiver: str = ""
    result_names: Tuple[str, ...] = ()
    propagating: frozenset = frozenset()
    in_type: bool = False
    body: Tuple[ConstructNode, ...] = field(default_factory=tuple)


# ---------------------------------------------------------------------------
# Mapper
# ---------------------------------------------------------------------------

class _Mapper:
    """Per-unit mapping state. Not shared between threads."""

    def __init__(self, table: RuleTable, units=(), strict: bool = True, module: str = "Main"):
        self.table = table
        self.strict = strict
        self.module = module
        self.types: Dict[str, Tuple[str, TypeSig]] = {}
        self.methods: Dict[str, set] = {}
        for unit in units:
            for node in unit.nodes:
                if node.kind == ConstructKind.TYPE_DECL:
                    self.types[node.name] = (node.form, node.signature)
                elif node.kind == ConstructKind.FUNCTION and node.form == "method":
                    self.methods.setdefault(node.attr("receiver_type", ""), set()).add(node.name)
        self.ambiguities: List[Ambiguity] = []
        self._reset(None)

    def _reset(self, node):
        self.decisions: List[Decision] = []
        self._types: Dict[str, Tuple[object, str]] = {}
        self._fn = _FuncState()
        self._breakable: List[str] = []
        self._temp = 0
        self._node = node
        self._top_rule = None

    # -- rule lookup -----------------------------------------------------------

    def lookup(self, kind: str, subject: str, node=None, identifier: str = ""):
        is_top = node is not None and node is self._node and kind == node.kind.value
        node = node if node is not None else self._node
        ident = identifier or _identifier(node)
        best = self.table.best_matches(kind, subject)
        if len(best) > 1:
            if self.strict:
                raise AmbiguousMappingError(node, subject, best)
            ids = tuple(r.rule_id for r in best)
            logger.warning("%s: ambiguous %s mapping for '%s': %s",
                           node.location, kind, subject, ", ".join(ids))
            self.ambiguities.append(Ambiguity(ident, subject, ids, node.location))
            self.decisions.append(Decision(kind, ident, subject, "", Confidence.UNSUPPORTED,
                                           node.location, f"ambiguous: {', '.join(ids)}"))
            return None
        rule = best[0] if best else None
        confidence = rule.confidence if rule else Confidence.UNSUPPORTED
        note = (rule.note if rule else "") or ("" if rule else "no rule")
        self.decisions.append(Decision(kind, ident, subject, rule.rule_id if rule else "",
                                       confidence, node.location, note))
        logger.debug("%s %s -> %s", kind, subject, rule.rule_id if rule else "UNSUPPORTED")
        if is_top:
            self._top_rule = rule
        if rule is None or rule.confidence == Confidence.UNSUPPORTED:
            return None
        return rule

    def render(self, rule, ctx: dict, template: Optional[str] = None) -> str:
        try:
            return _template(rule.template if template is None else template).render(**ctx).rstrip()
        except jinja2.TemplateError as exc:
            raise TemplateRenderError(f"Rule {rule.rule_id}: {exc}", rule_id=rule.rule_id) from exc

    def apply(self, kind: str, subject: str, node, ctx: dict) -> str:
        rule = self.lookup(kind, subject, node)
        if rule is None:
            source = _first_line(node.attr("source") or node.attr("text") or node.name)
            if kind == "expression":
                return f"raise NotImplementedError.new({crystal_string_literal(source)})"
            return f"# UNSUPPORTED: {source}"
        return self.render(rule, ctx)

    def _next_temp(self) -> int:
        self._temp += 1
        return self._temp

    def _qualify(self, name: str) -> str:
        return f"{self.module}.{name}" if self._fn.in_type else name

    # -- types -----------------------------------------------------------------

    def _underlying(self, sig: TypeSig) -> TypeSig:
        seen = set()
        while sig.kind == TypeKind.NAMED and sig.name in self.types and sig.name not in seen:
            seen.add(sig.name)
            form, underlying = self.types[sig.name]
            if form in ("struct", "interface"):
                return sig
            sig = underlying
        return sig

    def _type_context(self, sig: TypeSig) -> dict:
        ctx = {"name": "", "args": [], "elem": "", "key": "", "length": "",
               "params": [], "result": "", "items": [], "interface": False}
        kind = sig.kind
        if kind in (TypeKind.NAMED, TypeKind.TYPE_PARAM):
            ctx["name"] = naming.type_name(sig.name)
            ctx["args"] = [self.type_text(a) for a in sig.args]
            ctx["interface"] = self._is_interface(sig)
        elif kind == TypeKind.ERROR_UNION:
            ctx["elem"] = self.type_text(sig.elem)
        elif kind == TypeKind.MAP:
            ctx["key"] = self.type_text(sig.key)
            ctx["elem"] = self.type_text(sig.elem)
        elif kind == TypeKind.FUNC:
            ctx["params"] = [self.type_text(p) for p in sig.params]
            ctx["result"] = self.type_text(sig.result())
        elif kind == TypeKind.TUPLE:
            ctx["items"] = [self.type_text(p) for p in sig.params]
        elif sig.elem is not None:
            ctx["elem"] = self.type_text(sig.elem)
            if kind == TypeKind.ARRAY:
                ctx["length"] = str(sig.length)
        return ctx

    def _type_entry(self, sig: TypeSig):
        key = sig.canonical()
        entry = self._types.get(key)
        if entry is None:
            rule = self.lookup("type", key, None, key)
            text = self.render(rule, self._type_context(sig)) if rule else "Unsupported"
            entry = (rule, text)
            self._types[key] = entry
        return entry

    def type_text(self, sig: TypeSig) -> str:
        return self._type_entry(sig)[1]

    def _type_ok(self, sig: TypeSig) -> bool:
        return "Unsupported" not in self.type_text(sig)

    def zero_text(self, sig: Optional[TypeSig], depth: int = 0) -> str:
        """Crystal zero value for ``sig``; "" when there is none."""
        if sig is None or depth > 8:
            return ""
        if sig.kind == TypeKind.NAMED and sig.name in self.types:
            form, underlying = self.types[sig.name]
            if form == "interface":
                return "nil"
            if form in ("defined", "alias"):
                return self.zero_text(underlying, depth + 1)
        rule, text = self._type_entry(sig)
        if rule is None or not rule.zero:
            return ""
        ctx = self._type_context(sig)
        element = sig.element() if sig.kind != TypeKind.MAP else sig.elem
        ctx["type"] = text
        ctx["elem_zero"] = _Lazy(lambda: self.zero_text(element, depth + 1)) if element else ""
        return self.render(rule, ctx, template=rule.zero)

    def _zero_or_missing(self, sig: TypeSig, node) -> str:
        zero = self.zero_text(sig)
        if zero:
            return zero
        return self.apply("expression", "zero:missing", node, {"type": self.type_text(sig)})

    def _numeric_rule(self, sig):
        if sig is None or sig is _BARE:
            return None
        resolved = self._underlying(sig)
        if not resolved.is_numeric:
            return None
        return self._type_entry(resolved)[0]

    def suffix_of(self, sig) -> str:
        rule = self._numeric_rule(sig)
        return rule.suffix if rule else ""

    def cast_of(self, sig) -> str:
        rule = self._numeric_rule(sig)
        return rule.cast if rule else ""

    def _needs_cast(self, node, expected) -> bool:
        """Untyped constant used where a different numeric type is expected."""
        if expected is None or expected is _BARE or not node.attr("untyped"):
            return False
        want = self._underlying(expected)
        have = self._underlying(node.signature)
        return want.is_numeric and have.is_numeric and want.canonical() != have.canonical()

    def _check_untyped_default(self, value) -> None:
        """Flag an untyped constant expression typed away from Go's default type.

        A bare constant reference is cast to its default type by the caller;
        inside a larger expression the usage-inferred type is kept and the
        decision is recorded as LOSSY.
        """
        if _untyped_default(value) is not None or not value.attr("untyped"):
            return
        for sub in value.walk():
            default = sub.attr("default_type") if sub.form == "ident" else None
            have = sub.signature.canonical()
            if default and default != have:
                self.decisions.append(Decision(
                    "expression", sub.name, f"untyped:{have}", "", Confidence.LOSSY, sub.location,
                    f"untyped constant typed {have} by usage; Go defaults to {default}"))
                return

    # -- expressions -------------------------------------------------------------

    def expr(self, node: ConstructNode, expected=None, wrap: bool = False) -> str:
        if expected is not None and expected is not _BARE and expected.kind in (
                TypeKind.ANY, TypeKind.TYPE_PARAM):
            expected = None
        handler = getattr(self, f"_expr_{node.form}", None)
        if handler is None:
            text = self.apply("expression", f"form:{node.form}", node, {})
        else:
            text = handler(node, expected)
        if wrap and node.form in ("binary", "unary"):
            text = f"({text})"
        return text

    def _expr_int(self, node, expected):
        target = expected if expected is not None else node.signature
        if target is not _BARE and self._underlying(target).kind == TypeKind.FLOAT:
            return self.apply("expression", "literal:float", node, {
                "text": f"{_int_value(node.name)}.0", "suffix": self.suffix_of(target)})
        return self.apply("expression", "literal:int", node, {
            "text": crystal_int_literal(node.name), "suffix": self.suffix_of(target)})

    def _expr_float(self, node, expected):
        target = expected if expected is not None else node.signature
        text = crystal_float_literal(node.name)
        if text is None:
            return self.apply("expression", "literal:hexfloat", node, {"text": node.name})
        if target is not _BARE and self._underlying(target).is_integer:
            value = float(node.name.replace("_", ""))
            if value.is_integer():
                return self.apply("expression", "literal:int", node, {
                    "text": str(int(value)), "suffix": self.suffix_of(target)})
        return self.apply("expression", "literal:float", node, {
            "text": text, "suffix": self.suffix_of(target)})

    def _expr_imag(self, node, expected):
        return self.apply("expression", "literal:imag", node, {"text": node.name})

    def _expr_rune(self, node, expected):
        target = expected if expected is not None else INT32
        code = go_rune_value(node.name)
        plain = target is _BARE or self._underlying(target).canonical() == INT32.canonical()
        return self.apply("expression", "literal:rune", node, {
            "char": crystal_char_literal(code),
            "code": str(code),
            "suffix": self.suffix_of(target),
            "plain": plain,
        })

    def _expr_string(self, node, expected):
        subject = "literal:raw_string" if node.attr("raw") else "literal:string"
        return self.apply("expression", subject, node, {"text": crystal_string_from_go(node.name)})

    def _expr_blank(self, node, expected):
        return self.apply("expression", "ident:blank", node, {"name": "_"})

    def _expr_ident(self, node, expected):
        ref = node.attr("ref", "unknown")
        if ref == "nil":
            if expected is not None and expected is not _BARE and self._underlying(
                    expected).kind in (TypeKind.SLICE, TypeKind.BYTES, TypeKind.MAP):
                return self.apply("expression", "ident:nil/empty", node,
                                  {"name": "nil", "zero": self.zero_text(expected)})
            return self.apply("expression", "ident:nil", node, {"name": "nil"})
        if ref == "const":
            name = naming.constant_name(node.name)
        else:
            name = naming.method_name(node.name)
        ctx = {"name": name, "module": self.module, "types": []}
        if ref == "func":
            ctx["types"] = [self.type_text(p) for p in node.signature.params]
        text = self.apply("expression", f"ident:{ref}", node, ctx)
        if self._needs_cast(node, expected):
            text = f"{text}.{self.cast_of(expected)}"
        return text

    def _expr_type(self, node, expected):
        return self.apply("expression", "type_expr", node, {"type": self.type_text(node.signature)})

    def _expr_paren(self, node, expected):
        return self.apply("expression", "paren", node,
                          {"inner": self.expr(node.first("inner"), expected)})

    def _expr_binary(self, node, expected):
        op = node.attr("op")
        name = BINARY_OP_NAMES[op]
        left, right = node.first("left"), node.first("right")
        lu, ru = bool(left.attr("untyped")), bool(right.attr("untyped"))
        operand = node.attr("operand_type")
        lexp = rexp = None
        if op in ("<<", ">>"):
            if lu and expected is not None:
                lexp = expected
                if expected is not _BARE:
                    operand = self._underlying(expected).canonical()
            rexp = _BARE
        elif lu and ru:
            logical = name in COMPARISON_NAMES or op in ("&&", "||")
            if not logical:
                chosen = expected if expected is not None else node.signature
                lexp = rexp = chosen
                if chosen is not _BARE:
                    operand = self._underlying(chosen).canonical()
        elif lu:
            lexp = right.signature
        elif ru:
            rexp = left.signature

        nil_side = None
        if name in ("eq", "ne"):
            for side, other in ((right, left), (left, right)):
                if side.form == "ident" and side.name == "nil" and self._underlying(
                        other.signature).kind in (TypeKind.SLICE, TypeKind.BYTES, TypeKind.MAP):
                    nil_side = other
                    break
        if nil_side is not None:
            return self.apply("expression", f"binary:{name}:nil_seq", node,
                              {"operand": self.expr(nil_side, None, wrap=True)})
        return self.apply("expression", f"binary:{name}:{operand}", node, {
            "left": self.expr(left, lexp, wrap=True),
            "right": self.expr(right, rexp, wrap=True),
            "op": op,
        })

    def _expr_unary(self, node, expected):
        op = node.attr("op")
        name = UNARY_OP_NAMES[op]
        operand = node.first("operand")
        if op == "&":
            detail = "composite" if operand.form == "composite" else "value"
        elif node.attr("untyped") and op in ("-", "+", "^"):
            detail = "untyped"
        else:
            detail = node.attr("operand_type")
        inner_expected = expected if op in ("-", "+", "^") and node.attr("untyped") else None
        target = expected if expected is not None else node.signature
        return self.apply("expression", f"unary:{name}:{detail}", node, {
            "operand": self.expr(operand, inner_expected, wrap=True),
            "suffix": self.suffix_of(target),
            "op": op,
        })

    def _receiver_text(self, recv) -> str:
        text = self.expr(recv, None, wrap=True)
        bound = recv.form == "ident" and recv.name == self._fn.receiver and self._fn.receiver
        if (recv.signature.kind == TypeKind.OPTIONAL or self._is_interface(recv.signature)) and not bound:
            text = self.apply("expression", "deref:implicit", recv, {"operand": text})
        return text

    def _is_interface(self, sig: TypeSig) -> bool:
        return sig.kind == TypeKind.NAMED and self.types.get(sig.name, ("",))[0] == "interface"

    def _expr_selector(self, node, expected):
        recv_kind = node.attr("recv_kind")
        if recv_kind == "package":
            text = self.apply("expression", f"selector:package:{node.name}", node, {
                "package": node.attr("package"), "member": node.attr("member")})
            if self._needs_cast(node, expected):
                text = f"{text}.{self.cast_of(expected)}"
            return text
        if recv_kind == "method_value":
            return self.apply("expression", "selector:method_value", node, {
                "recv": self._receiver_text(node.first("recv")),
                "member": naming.method_name(node.name)})
        return self.apply("expression", "selector:field", node, {
            "recv": self._receiver_text(node.first("recv")),
            "member": naming.method_name(node.name)})

    def _expr_index(self, node, expected, target: bool = False):
        base = node.first("base")
        index = node.first("index")
        resolved = self._underlying(base.signature)
        index_expected = resolved.key if resolved.kind == TypeKind.MAP else _BARE
        prefix = "index_target" if target else "index"
        return self.apply("expression", f"{prefix}:{node.attr('base_type')}", node, {
            "base": self.expr(base, None, wrap=True),
            "index": self.expr(index, index_expected) if index is not None else "",
            "zero": _Lazy(lambda: self.zero_text(node.signature)),
        })

    def _expr_slice_expr(self, node, expected):
        prefix = "slice_expr3" if node.attr("three_index") else "slice_expr"
        low, high = node.first("low"), node.first("high")
        return self.apply("expression", f"{prefix}:{node.attr('base_type')}", node, {
            "base": self.expr(node.first("base"), None, wrap=True),
            "low": self.expr(low, _BARE, wrap=True) if low is not None else "",
            "high": self.expr(high, _BARE, wrap=True) if high is not None else "",
        })

    def _expr_type_assert(self, node, expected):
        return self.apply("expression", "type_assert", node, {
            "operand": self.expr(node.first("operand"), None, wrap=True),
            "type": self.type_text(node.signature)})

    def _expr_convert(self, node, expected):
        operand = node.first("operand")
        target = node.signature
        if operand is None:
            return self.apply("expression", "convert:empty", node, {})
        target_u = self._underlying(target)
        source_u = self._underlying(operand.signature)
        ctx = {"cast": self.cast_of(target), "type": _Lazy(lambda: self.type_text(target))}
        if target_u.is_numeric and (operand.attr("untyped") and (
                source_u.is_numeric or operand.form == "rune")):
            ctx["operand"] = self.expr(operand, target)
            return self.apply("expression", "convert/untyped", node, ctx)
        ctx["operand"] = self.expr(operand, None, wrap=True)
        if target_u.canonical() == source_u.canonical():
            return self.apply("expression", "convert/same", node, ctx)
        return self.apply("expression", f"convert:{target_u.canonical()}:{source_u.canonical()}",
                          node, ctx)

    def _struct_members(self, sig: TypeSig):
        if sig.kind == TypeKind.NAMED and sig.name in self.types:
            form, underlying = self.types[sig.name]
            if form == "struct":
                return underlying.members
        return ()

    def _expr_composite(self, node, expected):
        sig = node.signature
        resolved = self._underlying(sig)
        elems = node.child("elems")
        keyed = node.attr("keyed")
        seq = resolved.kind in (TypeKind.SLICE, TypeKind.BYTES, TypeKind.ARRAY)
        if resolved.kind == TypeKind.ARRAY and node.attr("partial"):
            subject = f"composite_partial:{resolved.canonical()}"
        elif keyed and seq:
            subject = f"composite_keyed:{resolved.canonical()}"
        else:
            subject = f"composite:{resolved.canonical()}"

        rendered = []
        if resolved.kind == TypeKind.MAP:
            for e in elems:
                key_node = e.first("key") if e.form == "kv" else e
                value_node = e.first("value") if e.form == "kv" else None
                key = self.expr(key_node, resolved.key)
                value = self.expr(value_node, resolved.elem) if value_node is not None else ""
                rendered.append(f"{key} => {value}")
        elif resolved.kind == TypeKind.NAMED:
            members = [(n[1:] if n.startswith("~") else n, t) for n, t in self._struct_members(resolved)]
            lookup = dict(members)
            for i, e in enumerate(elems):
                if e.form == "kv":
                    field_name = e.first("key").name
                    value = self.expr(e.first("value"), lookup.get(field_name))
                    rendered.append(f"{naming.method_name(naming.snake(field_name))}: {value}")
                else:
                    fsig = members[i][1] if i < len(members) else None
                    rendered.append(self.expr(e, fsig))
        else:
            element = resolved.element() if seq else None
            for e in elems:
                if e.form == "kv":
                    rendered.append(self.expr(e.first("value"), element))
                else:
                    rendered.append(self.expr(e, element))

        element = resolved.elem if resolved.kind == TypeKind.MAP else (
            resolved.element() if seq else None)
        return self.apply("expression", subject, node, {
            "elems": rendered,
            "type": _Lazy(lambda: self.type_text(sig)),
            "elem": _Lazy(lambda: self.type_text(element)) if element is not None else "",
            "key": _Lazy(lambda: self.type_text(resolved.key)) if resolved.key is not None else "",
            "count": len(rendered),
        })

    def _expr_func_lit(self, node, expected):
        sig = node.signature
        names = node.attr("params") or []
        params = []
        for i, psig in enumerate(sig.params):
            pname = names[i] if i < len(names) and names[i] not in ("", "_") else f"_arg{i}"
            params.append(f"{naming.method_name(pname)} : {self.type_text(psig)}")
        saved_fn, saved_breakable = self._fn, self._breakable
        self._fn = _FuncState(result=sig.result(), receiver=saved_fn.receiver,
                              in_type=saved_fn.in_type, body=tuple(node.child("body")))
        self._fn.propagating = self._propagating(self._fn)
        self._breakable = []
        try:
            body = self._stmts(node.child("body"))
        finally:
            self._fn, self._breakable = saved_fn, saved_breakable
        result = sig.result()
        return self.apply("expression", "func_lit", node, {
            "params": params, "body": body,
            "result": self.type_text(result) if result.kind != TypeKind.VOID else ""})

    # -- calls -------------------------------------------------------------------

    def _call_args(self, fsig: TypeSig, args, spread: bool, node) -> List[str]:
        expectations = _arg_expectations(fsig, len(args))
        rendered = [self.expr(a, expectations[i]) for i, a in enumerate(args)]
        if fsig.kind != TypeKind.FUNC or not fsig.variadic or spread or not fsig.params:
            return rendered
        fixed = len(fsig.params) - 1
        vsig = fsig.params[-1]
        rest = rendered[fixed:]
        packed = self.apply("expression", f"composite:{vsig.canonical()}", node, {
            "elems": rest,
            "type": _Lazy(lambda: self.type_text(vsig)),
            "elem": _Lazy(lambda: self.type_text(vsig.element())),
            "key": "",
            "count": len(rest),
        })
        return rendered[:fixed] + [packed]

    def _format_class(self, args) -> str:
        """plain: every verb maps 1:1 onto Crystal sprintf; approx: some may differ."""
        if not args or args[0].form != "string":
            return "dynamic"
        index = 1
        for match in _VERB_RE.finditer(args[0].name):
            verb = match.group(1)
            if verb == "%":
                continue
            if "*" in match.group(0) or index >= len(args):
                return "approx"
            kind = self._underlying(args[index].signature).kind
            index += 1
            if verb in "dxXob" and kind == TypeKind.INT:
                continue
            if verb in "feE" and kind == TypeKind.FLOAT:
                continue
            if verb == "s" and kind in (TypeKind.STRING, TypeKind.ERROR):
                continue
            if verb in "vw" and kind in (TypeKind.INT, TypeKind.STRING, TypeKind.BOOL, TypeKind.ERROR):
                continue
            return "approx"
        return "plain" if index == len(args) else "approx"

    def _expr_call(self, node, expected):
        callee_kind = node.attr("callee")
        callee = node.first("func")
        args = list(node.child("args"))
        spread = bool(node.attr("spread"))
        arg_type = node.attr("arg_type", "void")

        if callee_kind == "method":
            recv = callee.first("recv")
            rendered = self._call_args(callee.signature, args, spread, node)
            recv_sig = recv.signature.elem if recv.signature.kind == TypeKind.OPTIONAL else recv.signature
            method = naming.method_name(node.attr("method"))
            recv_form = node.attr("recv_form")
            if recv_form == "error":
                recv_form = f"error.{node.attr('method')}"
            return self.apply("expression", f"call:method/{recv_form}:{arg_type}", node, {
                "recv": self._receiver_text(recv),
                "method": method,
                "args": rendered,
                "recv_function": self._qualify(f"{naming.snake(recv_sig.name)}_{naming.snake(node.attr('method'))}"),
            })
        if callee_kind == "local":
            rendered = self._call_args(callee.signature, args, spread, node)
            return self.apply("expression", f"call:local:{arg_type}", node, {
                "function": self._qualify(naming.method_name(node.attr("function"))),
                "args": rendered,
            })
        if callee_kind == "value":
            rendered = self._call_args(callee.signature, args, spread, node)
            return self.apply("expression", f"call:value:{arg_type}", node, {
                "func": self.expr(callee, None, wrap=True) if callee.form != "func_lit"
                else f"({self.expr(callee)})",
                "args": rendered,
            })
        if "." in (callee_kind or ""):
            qualified = callee_kind
            rendered = [self.expr(a, e, wrap=True)
                        for a, e in zip(args, _arg_expectations(callee.signature, len(args)))]
            detail = self._format_class(args) if qualified in FORMAT_CALLS else arg_type
            result = self._underlying(node.signature)
            return self.apply("expression", f"call:{qualified}:{detail}", node, {
                "args": rendered,
                "growable": result.growable,
            })
        return self._builtin_call(node, callee_kind, args, spread, arg_type)

    def _builtin_call(self, node, name, args, spread, arg_type):
        sig = node.signature
        resolved = self._underlying(sig)
        if name == "make":
            subject = f"call:make:{resolved.canonical()}"
            rendered = [self.expr(a, _BARE) for a in args]
        elif name == "new":
            pointee = sig.elem if sig.kind == TypeKind.OPTIONAL else sig
            subject = f"call:new:{self._underlying(pointee).canonical()}"
            rendered = []
        else:
            subject = f"call:{name}{'...' if spread else ''}:{arg_type}"
            if name == "append" and args:
                element = self._underlying(args[0].signature).element()
                rendered = [self.expr(args[0])] + [
                    self.expr(a, None if spread else element, wrap=True) for a in args[1:]]
            elif name in ("min", "max"):
                rendered = [self.expr(a, sig, wrap=True) for a in args]
            elif name == "delete" and len(args) == 2:
                key = self._underlying(args[0].signature).key
                rendered = [self.expr(args[0], None, wrap=True), self.expr(args[1], key)]
            else:
                rendered = [self.expr(a, None, wrap=True) for a in args]
        element = resolved.element() if resolved.kind != TypeKind.MAP else resolved.elem
        pointee = sig.elem if sig.kind == TypeKind.OPTIONAL else sig
        return self.apply("expression", subject, node, {
            "args": rendered,
            "size": rendered[0] if name == "make" and rendered else "0",
            "type": _Lazy(lambda: self.type_text(sig)),
            "elem": _Lazy(lambda: self.type_text(element)) if element is not None else "",
            "elem_zero": _Lazy(lambda: self.zero_text(element)) if element is not None else "",
            "growable": resolved.growable,
            "target_zero": _Lazy(lambda: self.zero_text(pointee)),
        })

    # -- statements --------------------------------------------------------------

    def stmt(self, node: ConstructNode) -> str:
        handler = getattr(self, f"_stmt_{node.form}", None)
        if handler is None:
            return self.apply("statement", node.form, node, {"source": node.attr("source", "")})
        return handler(node)

    def _stmts(self, nodes) -> str:
        parts = [self.stmt(n) for n in nodes]
        return "\n".join(p for p in parts if p)

    def _target(self, node) -> str:
        if node.form == "paren":
            return self._target(node.first("inner"))
        if node.form == "index":
            return self._expr_index(node, None, target=True)
        if node.form == "unary" and node.attr("op") == "*":
            return self.apply("expression", "deref_target", node, {
                "operand": self.expr(node.first("operand"), None, wrap=True)})
        return self.expr(node)

    def _propagating(self, fn: _FuncState) -> frozenset:
        """Error variables that are only ever checked-and-returned.

        Calls assigning such a variable can let the exception propagate and
        drop the check altogether.
        """
        result = fn.result
        if result.kind != TypeKind.ERROR_UNION or result.key != ERROR:
            return frozenset()
        error_vars = set()
        for stmt in fn.body:
            for n in stmt.walk():
                if n.form in ("define", "assign") and n.attr("error_var"):
                    error_vars.add(n.attr("error_var"))
        used = set()

        def visit(n):
            if n.form == "func_lit":
                return
            if n.form == "if" and n.attr("err_check") == "propagate":
                for child in n.child("init") + n.child("else"):
                    visit(child)
                return
            if n.form in ("define", "assign") and n.attr("shape") == "error_call":
                for child in n.child("values"):
                    visit(child)
                return
            if n.form == "ident" and n.name in error_vars:
                used.add(n.name)
            for _, nodes in n.children:
                for child in nodes:
                    visit(child)

        for stmt in fn.body:
            visit(stmt)
        return frozenset(error_vars - used)

    def _stmt_return(self, node):
        shape = node.attr("shape", "plain")
        values = list(node.child("values"))
        result = self._fn.result
        if (len(values) == 1 and result.kind == TypeKind.ERROR_UNION
                and values[0].signature.kind == TypeKind.ERROR_UNION):
            shape = "forward"
        expectations = _result_values(result)
        if shape == "forward":
            rendered = [self.expr(values[0])]
        else:
            rendered = [self.expr(v, expectations[i] if i < len(expectations) else None)
                        for i, v in enumerate(values)]
        ctx = {"values": rendered, "value": ", ".join(rendered), "error": "", "ok": "",
               "dynamic": False, "names": []}
        if shape in ("raise_ok", "raise_err", "optional_ok", "optional_none", "optional_dynamic"):
            ctx["value"] = ", ".join(rendered[:-1])
        if shape == "raise_err":
            last = values[-1]
            ctx["error"] = rendered[-1]
            ctx["dynamic"] = not (last.form == "call"
                                  and last.attr("callee") in ("errors.New", "fmt.Errorf"))
        elif shape == "optional_dynamic":
            ctx["ok"] = rendered[-1]
        elif shape == "named_bare":
            names = [naming.method_name(n) for n in node.attr("names") or []]
            if result.kind == TypeKind.ERROR_UNION and names:
                if result.key == ERROR:
                    ctx["error"] = names[-1]
                else:
                    ctx["ok"] = names[-1]
                names = names[:-1]
            ctx["names"] = names
            ctx["value"] = ", ".join(names)
        return self.apply("statement", f"return/{shape}", node, ctx)

    def _stmt_define(self, node):
        return self._assignment(node, "define")

    def _stmt_assign(self, node):
        return self._assignment(node, "assign")

    def _assignment(self, node, form: str) -> str:
        shape = node.attr("shape", "plain")
        targets = list(node.child("targets"))
        values = list(node.child("values"))
        if shape == "error_call":
            return self._error_call(node, form, targets, values[0])
        if shape == "optional_call":
            return self._optional_call(node, form, targets, values[0])
        if shape == "comma_ok":
            return self._comma_ok(node, form, targets, values[0])
        if shape == "unknown_call":
            return self.apply("statement", f"{form}/unknown_call", node, {})
        if form == "assign":
            appended = self._append_assign(node, targets, values)
            if appended is not None:
                return appended
        if form == "assign" and len(targets) == len(values):
            rendered = [self.expr(v, t.signature) for t, v in zip(targets, values)]
        else:
            for v in values:
                self._check_untyped_default(v)
            rendered = [self.expr(v, _untyped_default(v)) for v in values]
        return self.apply("statement", f"{form}/plain", node, {
            "targets": [self._target(t) for t in targets],
            "values": rendered,
        })

    def _error_call(self, node, form, targets, call) -> str:
        error_var = node.attr("error_var", "")
        count = node.attr("value_count", len(targets))
        value_targets = targets[:count]
        if error_var == "_":
            mode = "ignore"
        elif not error_var or error_var in self._fn.propagating:
            mode = "propagate"
        else:
            mode = "handle"
        rendered = [self._target(t) for t in value_targets]
        lhs = ""
        if value_targets and not all(_is_blank(t) for t in value_targets):
            lhs = ", ".join(rendered) + " = "
        zeros = []
        if form == "define" and mode in ("handle", "ignore"):
            for t in value_targets:
                if _is_blank(t):
                    continue
                zero = self._zero_or_missing(t.signature, node)
                name = naming.method_name(t.name)
                if zero == "nil":
                    zeros.append(f"{name} = nil.as({self.type_text(t.signature)})")
                else:
                    zeros.append(f"{name} = {zero}")
        return self.apply("statement", f"{form}/error_call:{mode}", node, {
            "lhs": lhs,
            "targets": rendered,
            "value": self.expr(call),
            "error": naming.method_name(error_var) if error_var and error_var != "_" else "",
            "zeros": zeros,
        })

    def _optional_call(self, node, form, targets, call) -> str:
        ok_var = node.attr("ok_var", "")
        count = node.attr("value_count", len(targets))
        value_sig = call.signature.elem
        subject = f"{form}/optional_call" if count <= 1 else f"{form}/optional_call:multi"
        target = targets[0] if count else None
        return self.apply("statement", subject, node, {
            "tmp": f"_opt{self._next_temp()}",
            "value": self.expr(call),
            "target": self._target(target) if target is not None and not _is_blank(target) else "",
            "ok": naming.method_name(ok_var) if ok_var and ok_var != "_" else "",
            "zero": _Lazy(lambda: self._zero_or_missing(value_sig, node)),
        })

    def _comma_ok(self, node, form, targets, source) -> str:
        kind = node.attr("comma_ok")
        target, ok = targets[0], targets[1]
        ctx = {
            "tmp": f"_opt{self._next_temp()}",
            "target": "" if _is_blank(target) else self._target(target),
            "ok": "" if _is_blank(ok) else self._target(ok),
            "zero": _Lazy(lambda: self._zero_or_missing(source.signature, node)),
            "base": "", "index": "", "operand": "", "type": "", "chan": "",
        }
        if kind == "index":
            base = source.first("base")
            resolved = self._underlying(base.signature)
            if resolved.kind != TypeKind.MAP:
                return self.apply("statement", f"{form}/comma_ok:index:{resolved.canonical()}", node, ctx)
            ctx["base"] = self.expr(base, None, wrap=True)
            ctx["index"] = self.expr(source.first("index"), resolved.key)
        elif kind == "type_assert":
            ctx["operand"] = self.expr(source.first("operand"), None, wrap=True)
            ctx["type"] = self.type_text(source.signature)
        else:
            ctx["chan"] = self.expr(source.first("operand"), None, wrap=True)
        return self.apply("statement", f"{form}/comma_ok:{kind}", node, ctx)

    def _append_assign(self, node, targets, values) -> Optional[str]:
        """``s = append(s, ...)`` grows ``s`` in place."""
        if len(targets) != 1 or len(values) != 1:
            return None
        target, call = targets[0], values[0]
        if target.form not in ("ident", "selector") or call.form != "call":
            return None
        args = list(call.child("args"))
        if call.attr("callee") != "append" or len(args) < 2:
            return None
        if args[0].attr("text", args[0].name) != target.attr("text", target.name):
            return None
        if call.attr("spread"):
            subject = "assign/append_spread"
            items = [self.expr(args[1])]
        else:
            subject = "assign/append"
            element = self._underlying(target.signature).element()
            items = [self.expr(a, element) for a in args[1:]]
        return self.apply("statement", subject, node, {"target": self._target(target), "items": items})

    def _stmt_var(self, node):
        shape = node.attr("shape", "inferred")
        names = node.attr("names") or [node.name]
        values = list(node.child("values"))
        declared = node.attr("declared")
        package = node.attr("scope") == "package"
        multi = bool(values) and len(values) != len(names)
        decls = []
        value = ""
        if multi:
            subject = "var/package+multi" if package else "var/multi"
            value = self.expr(values[0])
        else:
            subject = f"var/{shape}"
            for i, name in enumerate(names):
                value_node = values[i] if i < len(values) else None
                default = None if declared else _untyped_default(value_node)
                if declared or value_node is None:
                    vsig = node.signature
                else:
                    vsig = default or value_node.signature
                if value_node is not None:
                    if not declared:
                        self._check_untyped_default(value_node)
                    text = self.expr(value_node, vsig if declared else default)
                else:
                    text = self._zero_or_missing(vsig, node)
                decls.append({
                    "name": naming.method_name(name),
                    "type": _Lazy(lambda s=vsig: self.type_text(s)),
                    "value": text,
                })
        return self.apply("statement", subject, node, {
            "decls": decls,
            "names": [naming.method_name(n) for n in names],
            "value": value,
            "doc": node.doc,
            "module": self.module,
        })

    def _stmt_op_assign(self, node):
        name = ASSIGN_OP_NAMES[node.attr("op")]
        target, value = node.first("target"), node.first("value")
        shift = name in ("shl", "shr")
        return self.apply("statement", f"op_assign:{name}:{node.attr('operand_type')}", node, {
            "target": self._target(target),
            "read": _Lazy(lambda: self.expr(target, None, wrap=True)),
            "simple": self._simple_target(target),
            "value": self.expr(value, _BARE if shift else target.signature, wrap=True),
            "op": node.attr("op")[:-1],
        })

    def _simple_target(self, target) -> bool:
        """Targets Crystal can update with an operator assignment."""
        if target.form in ("ident", "selector"):
            return True
        if target.form == "index":
            return self._underlying(target.first("base").signature).kind != TypeKind.MAP
        return False

    def _stmt_incdec(self, node):
        name = INCDEC_OP_NAMES[node.attr("op")]
        target = node.first("target")
        return self.apply("statement", f"incdec:{name}:{node.attr('operand_type')}", node, {
            "target": self._target(target),
            "read": _Lazy(lambda: self.expr(target, None, wrap=True)),
            "simple": self._simple_target(target),
        })

    def _stmt_if(self, node):
        init = self._stmts(node.child("init"))
        if node.attr("err_check") == "propagate":
            name = node.first("cond").first("left").name
            if name in self._fn.propagating:
                return self.apply("statement", "if/err_propagate", node, {"init": init})
        branches = [{"cond": self.expr(node.first("cond"), BOOL),
                     "body": self._stmts(node.child("body"))}]
        else_nodes = list(node.child("else"))
        while (len(else_nodes) == 1 and else_nodes[0].form == "if"
               and not else_nodes[0].attr("has_init") and not else_nodes[0].attr("err_check")):
            nested = else_nodes[0]
            branches.append({"cond": self.expr(nested.first("cond"), BOOL),
                             "body": self._stmts(nested.child("body"))})
            else_nodes = list(nested.child("else"))
        return self.apply("statement", "if", node, {
            "init": init,
            "branches": branches,
            "else_body": self._stmts(else_nodes),
            "has_else": bool(else_nodes),
        })

    def _stmt_for(self, node):
        loop = node.attr("loop")
        self._breakable.append("loop")
        try:
            body = self._stmts(node.child("body"))
        finally:
            self._breakable.pop()
        if loop == "ever":
            return self.apply("statement", "for/ever", node, {"body": body})
        if loop == "cond":
            return self.apply("statement", "for/cond", node, {
                "cond": self.expr(node.first("cond"), BOOL), "body": body})
        if loop == "range":
            key, value = node.attr("key", ""), node.attr("value", "")
            suffix = "" if node.attr("define") else "+assign"
            return self.apply("statement",
                              f"range:{node.signature.canonical()}:{node.attr('shape')}{suffix}", node, {
                                  "coll": self.expr(node.first("collection"), None, wrap=True),
                                  "key": naming.method_name(key) if key and key != "_" else "",
                                  "value": naming.method_name(value) if value and value != "_" else "",
                                  "body": body,
                              })
        init, cond, post = node.first("init"), node.first("cond"), node.first("post")
        if node.attr("counting"):
            var_node = init.child("targets")[0]
            return self.apply("statement", "for/counting", node, {
                "var": naming.method_name(node.attr("var")),
                "start": self.expr(init.child("values")[0], var_node.signature),
                "stop": self.expr(cond.first("right"), var_node.signature, wrap=True),
                "inclusive": bool(node.attr("inclusive")),
                "body": body,
            })
        subject = "for/clause+continue" if node.attr("has_continue") and post is not None else "for/clause"
        return self.apply("statement", subject, node, {
            "init": self.stmt(init) if init is not None else "",
            "cond": self.expr(cond, BOOL) if cond is not None else "true",
            "post": self.stmt(post) if post is not None else "",
            "body": body,
        })

    def _stmt_switch(self, node):
        init = self._stmts(node.child("init"))
        tag = node.first("tag")
        label_expected = tag.signature if tag is not None else BOOL
        clauses, default_body, has_default = [], "", False
        self._breakable.append("switch")
        try:
            for clause in node.child("clauses"):
                body_nodes = list(clause.child("body"))
                if body_nodes and body_nodes[-1].form == "break" and not body_nodes[-1].attr("label"):
                    self.lookup("statement", "break/switch_tail", body_nodes[-1])
                    body_nodes = body_nodes[:-1]
                body = self._stmts(body_nodes)
                if clause.attr("default"):
                    has_default, default_body = True, body
                else:
                    clauses.append({
                        "labels": [self.expr(v, label_expected) for v in clause.child("values")],
                        "body": body,
                    })
        finally:
            self._breakable.pop()
        if node.attr("fallthrough"):
            subject = "switch/fallthrough"
        elif tag is None:
            subject = "switch/tagless"
        else:
            subject = "switch"
        return self.apply("statement", subject, node, {
            "init": init,
            "tag": self.expr(tag) if tag is not None else "",
            "clauses": clauses,
            "default_body": default_body,
            "has_default": has_default,
        })

    def _stmt_break(self, node):
        if node.attr("label"):
            subject = "break/label"
        elif self._breakable and self._breakable[-1] == "switch":
            subject = "break/switch"
        else:
            subject = "break"
        return self.apply("statement", subject, node, {"label": node.attr("label", "")})

    def _stmt_continue(self, node):
        subject = "continue/label" if node.attr("label") else "continue"
        return self.apply("statement", subject, node, {"label": node.attr("label", "")})

    def _stmt_block(self, node):
        return self.apply("statement", "block", node, {"body": self._stmts(node.child("body"))})

    def _stmt_const_local(self, node):
        decls = [{"name": naming.method_name(c.name),
                  "value": self.expr(c.first("value"), c.signature)}
                 for c in node.child("consts")]
        return self.apply("statement", "const_local", node, {"decls": decls})

    def _stmt_expr(self, node):
        inner = node.first("expr")
        sig = inner.signature
        raising = (inner.form == "call" and sig.kind == TypeKind.ERROR_UNION and sig.key == ERROR)
        return self.apply("statement", "expr/error_call" if raising else "expr", node,
                          {"expr": self.expr(inner)})

    def _stmt_go(self, node):
        return self.apply("statement", "go", node, {"call": self.expr(node.first("call"))})

    def _stmt_send(self, node):
        chan = node.first("chan")
        resolved = self._underlying(chan.signature)
        return self.apply("statement", "send", node, {
            "chan": self.expr(chan, None, wrap=True),
            "value": self.expr(node.first("value"), resolved.elem if resolved.kind == TypeKind.CHAN else None),
        })

    # -- top-level constructs ----------------------------------------------------

    def _signature_parts(self, node):
        """(name, params, result, type_params) of a function or method."""
        sig = node.signature
        method = node.form == "method"
        in_type = method and node.attr("receiver_form") in ("struct", "class")
        if in_type:
            name = naming.method_name(node.name)
        elif method:
            name = f"{naming.snake(node.attr('receiver_type'))}_{naming.snake(node.name)}"
        else:
            name = naming.method_name(node.name)
        params = []
        if method and not in_type:
            recv = node.attr("receiver", "")
            recv_sig = TypeSig(TypeKind.NAMED, name=node.attr("receiver_type"))
            recv_name = naming.method_name(recv) if recv and recv != "_" else "_recv"
            params.append((recv_name, recv_sig))
        names = node.attr("params") or []
        for i, psig in enumerate(sig.params):
            pname = names[i] if i < len(names) and names[i] not in ("", "_") else f"_arg{i}"
            params.append((naming.method_name(pname), psig))
        result = sig.result()
        type_params = [naming.type_name(p) for p in node.attr("type_params") or []]
        return name, params, result, type_params

    def _function(self, node) -> str:
        method = node.form == "method"
        in_type = method and node.attr("receiver_form") in ("struct", "class")
        result_names = tuple(node.attr("results") or [])
        self._fn = _FuncState(
            result=node.signature.result(),
            receiver=node.attr("receiver", "") if in_type else "",
            result_names=tuple(n for n in result_names if n),
            in_type=in_type,
            body=tuple(node.child("body")),
        )
        self._fn.propagating = self._propagating(self._fn)
        name, params, result, type_params = self._signature_parts(node)

        prelude = []
        recv = node.attr("receiver", "")
        if in_type and recv and recv != "_" and any(
                n.form == "ident" and n.name == recv for s in self._fn.body for n in s.walk()):
            prelude.append(f"{naming.method_name(recv)} = self")
        for rname, rsig in zip(result_names, _result_values(result)):
            if rname and rname != "_":
                prelude.append(f"{naming.method_name(rname)} : {self.type_text(rsig)} = "
                               f"{self._zero_or_missing(rsig, node)}")

        body = self._stmts(node.child("body"))
        return self.apply("function", function_subject(node), node, {
            "name": name,
            "params": [f"{n} : {self.type_text(s)}" for n, s in params],
            "result": self.type_text(result) if result.kind != TypeKind.VOID else "",
            "type_params": type_params,
            "prelude": prelude,
            "body": body,
            "doc": node.doc,
            "receiver": naming.type_name(node.attr("receiver_type", "")) if method else "",
        })

    def _constant(self, node) -> str:
        return self.apply("constant", constant_subject(node), node, {
            "name": naming.constant_name(node.name),
            "value": self.expr(node.first("value"), node.signature),
            "doc": node.doc,
            "type": _Lazy(lambda: self.type_text(node.signature)),
        })

    def _includes(self, struct_name: str) -> List[str]:
        """Same-package interfaces whose method set the struct implements."""
        own = self.methods.get(struct_name, set())
        found = []
        for name, (form, sig) in sorted(self.types.items()):
            if form != "interface":
                continue
            wanted = [m for m, _ in sig.members]
            if wanted and not any(m.startswith("~") for m in wanted) and set(wanted) <= own:
                found.append(naming.type_name(name))
        return found

    def _type_decl(self, node) -> str:
        form = node.form
        sig = node.signature
        tparams = [naming.type_name(p) for p in node.attr("type_params") or []]
        base = naming.type_name(node.name)
        name = f"{base}({', '.join(tparams)})" if tparams else base
        ctx = {"name": name, "doc": node.doc, "type": _Lazy(lambda: self.type_text(sig))}
        if form == "struct":
            fields = []
            for member, msig in sig.members:
                embedded = member.startswith("~")
                fields.append({
                    "name": naming.method_name(member[1:] if embedded else member),
                    "type": self.type_text(msig),
                    "zero": self.zero_text(msig),
                    "embedded": embedded,
                })
            ctx.update({
                "fields": fields,
                "defaults": all(f["zero"] for f in fields),
                "forward": next((f["name"] for f in fields if f["embedded"]), ""),
                "includes": self._includes(node.name),
                "keyword": "class" if node.attr("reference") else "struct",
            })
            subject = "struct" + ("+ref" if node.attr("reference") else "") + (
                "+embed" if node.attr("embedded") else "")
        elif form == "interface":
            methods = []
            for member, msig in sig.members:
                if member.startswith("~"):
                    continue
                methods.append({
                    "name": naming.method_name(member),
                    "params": [f"arg{i} : {self.type_text(p)}" for i, p in enumerate(msig.params)],
                    "result": self.type_text(msig.result()) if msig.result().kind != TypeKind.VOID else "",
                })
            ctx.update({
                "methods": methods,
                "embedded": [naming.type_name(e) for e in node.attr("embedded") or []],
            })
            if node.attr("constraint"):
                subject = "interface+constraint"
            elif node.attr("embedded"):
                subject = "interface+embed"
            else:
                subject = "interface"
        else:
            canonical = sig.canonical()
            if tparams:
                subject = f"{form}+generic<{canonical}>"
            elif form == "defined" and node.attr("has_methods"):
                subject = f"defined+methods<{canonical}>"
            else:
                subject = f"{form}<{canonical}>"
        return self.apply("type_decl", subject, node, ctx)

    def _source_of(self, node) -> str:
        if node.kind == ConstructKind.CONSTANT:
            return f"const {node.name} = {node.attr('value_text', '')}"
        if node.kind == ConstructKind.TYPE_DECL:
            detail = node.form if node.form in ("struct", "interface") else node.signature.canonical()
            return f"type {node.name} {detail}"
        return _first_line(node.attr("source") or node.attr("text") or node.name)

    def _target_name(self, node) -> str:
        if node.kind == ConstructKind.FUNCTION:
            return self._signature_parts(node)[0]
        if node.kind == ConstructKind.CONSTANT:
            return naming.constant_name(node.name)
        if node.kind == ConstructKind.TYPE_DECL:
            return naming.type_name(node.name)
        if node.form == "var":
            return ", ".join(f"{self.module}.{naming.method_name(n)}"
                             for n in node.attr("names") or [node.name])
        return node.name

    def map_node(self, node: ConstructNode) -> MappedConstruct:
        self._reset(node)
        if node.kind == ConstructKind.FUNCTION:
            text = self._function(node)
        elif node.kind == ConstructKind.CONSTANT:
            text = self._constant(node)
        elif node.kind == ConstructKind.TYPE_DECL:
            text = self._type_decl(node)
        elif node.kind == ConstructKind.STATEMENT:
            text = self.stmt(node)
        else:
            text = self.expr(node)
        rule = self._top_rule
        confidence = Confidence.weakest(d.confidence for d in self.decisions)
        decisions = list(self.decisions)
        target_name = self._target_name(node)
        if rule is None or confidence == Confidence.UNSUPPORTED:
            confidence = Confidence.UNSUPPORTED
            text = self._fallback(node, decisions)
            rule = None
        elif confidence.needs_review:
            logger.info("%s %s mapped as %s", node.kind.value, node.name, confidence.value)
        return MappedConstruct(node=node, rule=rule, text=text, confidence=confidence,
                               target_name=target_name, decisions=tuple(decisions))

    def _fallback(self, node, decisions) -> str:
        kind = node.kind.value
        reasons = []
        for d in decisions:
            if d.confidence != Confidence.UNSUPPORTED:
                continue
            reason = f"{d.kind} '{d.subject}': {d.note or 'no rule'}"
            if reason not in reasons:
                reasons.append(reason)
        ctx = {
            "reasons": reasons[:_MAX_REASONS],
            "source": self._source_of(node),
            "doc": node.doc,
            "name": node.name,
            "params": [],
            "result": "",
            "type_params": [],
        }
        if node.kind == ConstructKind.FUNCTION:
            name, params, result, type_params = self._signature_parts(node)
            rendered = []
            typed = True
            for pname, psig in params:
                if self._type_ok(psig):
                    rendered.append(f"{pname} : {self.type_text(psig)}")
                else:
                    rendered.append(pname)
                    typed = False
            ctx.update({
                "name": name,
                "params": rendered,
                "result": self.type_text(result)
                if result.kind != TypeKind.VOID and self._type_ok(result) else "",
                "type_params": type_params if typed else [],
            })
        logger.warning("%s: %s %s has no supported mapping (%s)", node.location, kind,
                       node.name, "; ".join(reasons[:2]) or "no rule")
        template = self.table.fallbacks.get(kind) or DEFAULT_FALLBACKS[kind]
        try:
            return _template(template).render(**ctx).rstrip()
        except jinja2.TemplateError as exc:
            raise TemplateRenderError(f"Fallback for {kind}: {exc}") from exc


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def map_unit(unit, rule_table: RuleTable, strict: bool = True, mappings=None,
             package_units=None) -> MappedUnit:
    """Map every construct of ``unit``.

    ``package_units`` are the units of the same Go package; their types and
    methods are visible to this unit (defaults to the unit alone).

    Raises AmbiguousMappingError in strict mode on an equal-specificity tie.
    """
    module = naming.module_name(unit.package)
    mapper = _Mapper(rule_table, package_units or (unit,), strict=strict, module=module)
    constructs = tuple(mapper.map_node(node) for node in unit.nodes)
    requires, unmapped = requires_for(unit.imports, mappings)
    for imp in unmapped:
        logger.warning("%s: no Crystal equivalent for import %s", unit.path, imp)
    return MappedUnit(
        path=unit.path,
        package=unit.package,
        module=module,
        constructs=constructs,
        requires=requires,
        unmapped_imports=unmapped,
        ambiguities=tuple(mapper.ambiguities),
    )


def render_expression(node: ConstructNode, rule_table: RuleTable, expected: Optional[TypeSig] = None,
                      units=(), module: str = "Main") -> Tuple[str, Confidence]:
    """Render a standalone expression (test arguments and expected values)."""
    mapper = _Mapper(rule_table, units, strict=False, module=module)
    mapper._reset(node)
    text = mapper.expr(node, expected)
    return text, Confidence.weakest(d.confidence for d in mapper.decisions)


def group_by_package(units) -> Dict[Tuple[str, str], list]:
    """Units keyed by (directory, package name)."""
    groups: Dict[Tuple[str, str], list] = {}
    for unit in units:
        directory = str(Path(unit.path).parent)
        groups.setdefault((directory, unit.package), []).append(unit)
    return groups


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------
def main():
    from crport.translation.source_extractor import extract_source

    parser = argparse.ArgumentParser(
        description="crport Mapping Engine: construct model -> Crystal constructs",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=textwrap.dedent("""\
            Examples:
              python -m crport.translation.mapping_engine --source-path ./calc --json
              python -m crport.translation.mapping_engine --source-path calc.go --show-text
        """),
    )
    parser.add_argument("--source-path", required=True, help="Go file or package directory")
    parser.add_argument("--rules", help="Rule table YAML (default: from config)")
    parser.add_argument("--non-strict", action="store_true",
                        help="Record rule ties as advisories instead of failing")
    parser.add_argument("--show-text", action="store_true", help="Print rendered Crystal text")
    parser.add_argument("--json", action="store_true", dest="json_output", help="JSON output")
    args = parser.parse_args()

    logging.basicConfig(level=logging.WARNING, format="%(levelname)s %(name)s: %(message)s")
    try:
        table = load_rule_table(args.rules)
        extracted = extract_source(args.source_path)
        mapped = []
        for _, units in sorted(group_by_package(extracted["units"]).items()):
            for unit in units:
                mapped.append(map_unit(unit, table, strict=not args.non_strict, package_units=units))
    except (AmbiguousMappingError, TemplateRenderError) as exc:
        print(f"[ERROR] {exc}", file=sys.stderr)
        sys.exit(1)

    if args.json_output:
        print(json.dumps({
            "units": [m.to_dict(include_text=args.show_text) for m in mapped],
            "errors": extracted["errors"],
        }, indent=2))
        return

    for m in mapped:
        print(f"{m.path} -> module {m.module}")
        for c in m.constructs:
            print(f"  [{c.confidence.value}] {c.node.kind.value} {c.node.name} -> {c.target_name}")
            if args.show_text:
                print(textwrap.indent(c.text, "      "))
        for a in m.ambiguities:
            print(f"  [WARN] ambiguous {a.subject}: {', '.join(a.rule_ids)}")
    for err in extracted["errors"]:
        print(f"[ERROR] {err['location']}: {err['reason']}")


if __name__ == "__main__":
    main()
