#!/usr/bin/env python3
# CUI // SP-CTI
"""Construct Model: language-neutral IR for the translation pipeline.

The IR is a closed tagged variant: every ConstructNode carries one
ConstructKind out of a fixed set, and every node carries exactly one
canonical TypeSig. Nodes are frozen; stages build new nodes instead of
editing old ones.

TypeSig canonical strings are the match subjects of the rule table, e.g.:

    uint8                       8-bit unsigned integer
    bytes / bytes+grow          binary data (view / growable)
    slice<int64>+grow           growable sequence of int64
    array<uint8,4>              fixed-size array
    map<string,int64>           unordered key-unique map
    optional<named<Node>>       nullable reference (Go pointer)
    error_union<int64,error>    result + independent failure indicator
    func(bytes,...int64)->error_union<string,error>
"""

import hashlib
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Iterator, Optional, Tuple


class ConstructKind(str, Enum):
    """Closed set of construct kinds. Adding one needs a reviewed change
    here and in the mapping engine's subject dispatch."""

    CONSTANT = "constant"
    FUNCTION = "function"
    TYPE_DECL = "type_decl"
    STATEMENT = "statement"
    EXPRESSION = "expression"


class Confidence(str, Enum):
    """How faithfully a mapping preserves source semantics."""

    EXACT = "EXACT"
    IDIOMATIC_EQUIVALENT = "IDIOMATIC-EQUIVALENT"
    LOSSY = "LOSSY"
    UNSUPPORTED = "UNSUPPORTED"

    @property
    def rank(self) -> int:
        return _CONFIDENCE_RANK[self]

    @property
    def needs_review(self) -> bool:
        return self in (Confidence.LOSSY, Confidence.UNSUPPORTED)

    @classmethod
    def parse(cls, value) -> "Confidence":
        if isinstance(value, cls):
            return value
        text = str(value).strip().upper().replace("_", "-")
        for member in cls:
            if member.value == text:
                return member
        raise ValueError(f"Unknown confidence tag: {value!r}")

    @classmethod
    def weakest(cls, values) -> "Confidence":
        """Return the least faithful tag among ``values`` (EXACT if empty)."""
        result = cls.EXACT
        for value in values:
            if value.rank > result.rank:
                result = value
        return result


_CONFIDENCE_RANK = {
    Confidence.EXACT: 0,
    Confidence.IDIOMATIC_EQUIVALENT: 1,
    Confidence.LOSSY: 2,
    Confidence.UNSUPPORTED: 3,
}


class TypeKind(str, Enum):
    INT = "int"
    FLOAT = "float"
    COMPLEX = "complex"
    STRING = "string"
    BOOL = "bool"
    BYTES = "bytes"
    SLICE = "slice"
    ARRAY = "array"
    MAP = "map"
    FUNC = "func"
    OPTIONAL = "optional"
    ERROR_UNION = "error_union"
    ERROR = "error"
    STRUCT = "struct"
    INTERFACE = "interface"
    NAMED = "named"
    TYPE_PARAM = "typeparam"
    TUPLE = "tuple"
    CHAN = "chan"
    ANY = "any"
    VOID = "void"


# ---------------------------------------------------------------------------
# Type signatures
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TypeSig:
    """Language-neutral type signature.

    Field use by kind:
        INT/FLOAT/COMPLEX: width, signed
        SLICE/ARRAY/CHAN/OPTIONAL: elem (+ length for ARRAY)
        BYTES/SLICE: growable (appended to at the declaring site)
        MAP: key, elem
        FUNC: params, results (one TypeSig: void, a value, tuple or error_union)
        ERROR_UNION: elem is the value, key is the failure indicator
        STRUCT/INTERFACE: members as (name, TypeSig) pairs
        NAMED/TYPE_PARAM: name, args (type arguments)
        TUPLE: params (the element types)
    """

    kind: TypeKind
    width: int = 0
    signed: bool = True
    elem: Optional["TypeSig"] = None
    key: Optional["TypeSig"] = None
    length: Optional[int] = None
    params: Tuple["TypeSig", ...] = ()
    results: Tuple["TypeSig", ...] = ()
    members: Tuple[Tuple[str, "TypeSig"], ...] = ()
    name: str = ""
    args: Tuple["TypeSig", ...] = ()
    growable: bool = False
    variadic: bool = False

    def canonical(self) -> str:
        k = self.kind
        if k == TypeKind.INT:
            if self.name:
                return self.name
            return f"{'int' if self.signed else 'uint'}{self.width}"
        if k in (TypeKind.FLOAT, TypeKind.COMPLEX):
            return f"{k.value}{self.width}"
        if k == TypeKind.BYTES:
            return "bytes+grow" if self.growable else "bytes"
        if k == TypeKind.SLICE:
            text = f"slice<{self.elem.canonical()}>"
            return text + "+grow" if self.growable else text
        if k == TypeKind.ARRAY:
            return f"array<{self.elem.canonical()},{self.length}>"
        if k == TypeKind.MAP:
            return f"map<{self.key.canonical()},{self.elem.canonical()}>"
        if k in (TypeKind.OPTIONAL, TypeKind.CHAN):
            return f"{k.value}<{self.elem.canonical()}>"
        if k == TypeKind.ERROR_UNION:
            return f"error_union<{self.elem.canonical()},{self.key.canonical()}>"
        if k == TypeKind.FUNC:
            params = []
            for i, p in enumerate(self.params):
                last = i == len(self.params) - 1
                if last and self.variadic:
                    elem = p.elem.canonical() if p.elem is not None else "uint8"
                    params.append("..." + elem)
                else:
                    params.append(p.canonical())
            result = self.results[0].canonical() if self.results else "void"
            return f"func({','.join(params)})->{result}"
        if k == TypeKind.STRUCT:
            inner = ",".join(f"{n}:{t.canonical()}" for n, t in self.members)
            return f"struct{{{inner}}}"
        if k == TypeKind.INTERFACE:
            inner = ",".join(f"{n}:{t.canonical()}" for n, t in self.members)
            return f"interface{{{inner}}}"
        if k in (TypeKind.NAMED, TypeKind.TYPE_PARAM):
            if self.args:
                return f"{k.value}<{self.name}[{','.join(a.canonical() for a in self.args)}]>"
            return f"{k.value}<{self.name}>"
        if k == TypeKind.TUPLE:
            return f"tuple<{','.join(p.canonical() for p in self.params)}>"
        return k.value

    def __str__(self):
        return self.canonical()

    @property
    def is_integer(self) -> bool:
        return self.kind == TypeKind.INT

    @property
    def is_numeric(self) -> bool:
        return self.kind in (TypeKind.INT, TypeKind.FLOAT, TypeKind.COMPLEX)

    @property
    def is_sequence(self) -> bool:
        return self.kind in (TypeKind.SLICE, TypeKind.BYTES)

    def element(self) -> Optional["TypeSig"]:
        """Element signature of a sequence, array, map, chan or optional."""
        if self.kind == TypeKind.BYTES:
            return UINT8
        return self.elem

    def with_growth(self, growable: bool = True) -> "TypeSig":
        """Return this signature with the growable flag set (sequences only)."""
        if not self.is_sequence or self.growable == growable:
            return self
        return replace(self, growable=growable)

    def result(self) -> "TypeSig":
        """Result signature of a FUNC (VOID when it returns nothing)."""
        return self.results[0] if self.results else VOID

    def to_dict(self) -> dict:
        data: Dict[str, Any] = {"kind": self.kind.value, "canonical": self.canonical()}
        if self.width:
            data["width"] = self.width
            data["signed"] = self.signed
        if self.elem is not None:
            data["elem"] = self.elem.to_dict()
        if self.key is not None:
            data["key"] = self.key.to_dict()
        if self.length is not None:
            data["length"] = self.length
        if self.params:
            data["params"] = [p.to_dict() for p in self.params]
        if self.results:
            data["results"] = [r.to_dict() for r in self.results]
        if self.members:
            data["members"] = [[n, t.to_dict()] for n, t in self.members]
        if self.name:
            data["name"] = self.name
        if self.args:
            data["args"] = [a.to_dict() for a in self.args]
        if self.growable:
            data["growable"] = True
        if self.variadic:
            data["variadic"] = True
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "TypeSig":
        def sub(key):
            return cls.from_dict(data[key]) if data.get(key) else None

        return cls(
            kind=TypeKind(data["kind"]),
            width=data.get("width", 0),
            signed=data.get("signed", True),
            elem=sub("elem"),
            key=sub("key"),
            length=data.get("length"),
            params=tuple(cls.from_dict(p) for p in data.get("params", [])),
            results=tuple(cls.from_dict(r) for r in data.get("results", [])),
            members=tuple((n, cls.from_dict(t)) for n, t in data.get("members", [])),
            name=data.get("name", ""),
            args=tuple(cls.from_dict(a) for a in data.get("args", [])),
            growable=data.get("growable", False),
            variadic=data.get("variadic", False),
        )


def int_sig(width: int = 64, signed: bool = True) -> TypeSig:
    return TypeSig(TypeKind.INT, width=width, signed=signed)


def float_sig(width: int = 64) -> TypeSig:
    return TypeSig(TypeKind.FLOAT, width=width)


def slice_sig(elem: TypeSig, growable: bool = False) -> TypeSig:
    if elem.kind == TypeKind.INT and elem.width == 8 and not elem.signed:
        return TypeSig(TypeKind.BYTES, growable=growable)
    return TypeSig(TypeKind.SLICE, elem=elem, growable=growable)


def named_sig(name: str, args=()) -> TypeSig:
    return TypeSig(TypeKind.NAMED, name=name, args=tuple(args))


def tuple_sig(items) -> TypeSig:
    items = tuple(items)
    if not items:
        return VOID
    if len(items) == 1:
        return items[0]
    return TypeSig(TypeKind.TUPLE, params=items)


VOID = TypeSig(TypeKind.VOID)
ANY = TypeSig(TypeKind.ANY)
BOOL = TypeSig(TypeKind.BOOL)
STRING = TypeSig(TypeKind.STRING)
ERROR = TypeSig(TypeKind.ERROR)
UINT8 = int_sig(8, signed=False)
INT32 = int_sig(32)
INT64 = int_sig(64)
# Platform-sized integers keep their own canonical name
PLATFORM_INT = TypeSig(TypeKind.INT, width=64, signed=True, name="int")
PLATFORM_UINT = TypeSig(TypeKind.INT, width=64, signed=False, name="uint")
FLOAT64 = float_sig(64)


# ---------------------------------------------------------------------------
# Nodes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SourceLocation:
    """Position of a construct in its source file (1-based lines)."""

    file: str
    line_start: int
    line_end: int = 0
    column: int = 0

    def __str__(self):
        if self.line_end and self.line_end != self.line_start:
            return f"{self.file}:{self.line_start}-{self.line_end}"
        return f"{self.file}:{self.line_start}"

    def to_dict(self) -> dict:
        return {
            "file": self.file,
            "line_start": self.line_start,
            "line_end": self.line_end or self.line_start,
            "column": self.column,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SourceLocation":
        known = {f for f in cls.__dataclass_fields__}
        return cls(**{k: v for k, v in data.items() if k in known})


def _freeze(value):
    if isinstance(value, (list, tuple)):
        return tuple(_freeze(v) for v in value)
    return value


def _thaw(value):
    if isinstance(value, tuple):
        return [_thaw(v) for v in value]
    return value


@dataclass(frozen=True)
class ConstructNode:
    """One construct of the source program.

    ``attrs`` holds scalar facts (names, operators, flags) as sorted
    key/value pairs; ``children`` holds named slots of nested nodes, e.g.
    ("cond", (expr,)), ("body", (stmt, stmt)).
    """

    kind: ConstructKind
    name: str
    signature: TypeSig
    location: SourceLocation
    form: str = ""
    doc: str = ""
    exported: bool = False
    attrs: Tuple[Tuple[str, Any], ...] = ()
    children: Tuple[Tuple[str, Tuple["ConstructNode", ...]], ...] = field(default=())

    def attr(self, key: str, default=None):
        for k, v in self.attrs:
            if k == key:
                return v
        return default

    def child(self, role: str) -> Tuple["ConstructNode", ...]:
        for r, nodes in self.children:
            if r == role:
                return nodes
        return ()

    def first(self, role: str) -> Optional["ConstructNode"]:
        nodes = self.child(role)
        return nodes[0] if nodes else None

    @property
    def node_id(self) -> str:
        return f"{self.location.file}:{self.location.line_start}:{self.kind.value}:{self.name}"

    def walk(self) -> Iterator["ConstructNode"]:
        """Pre-order traversal over this node and all descendants."""
        yield self
        for _, nodes in self.children:
            for node in nodes:
                yield from node.walk()

    def to_dict(self) -> dict:
        data = {
            "kind": self.kind.value,
            "name": self.name,
            "form": self.form,
            "signature": self.signature.to_dict(),
            "location": self.location.to_dict(),
            "exported": self.exported,
        }
        if self.doc:
            data["doc"] = self.doc
        if self.attrs:
            data["attrs"] = {k: _thaw(v) for k, v in self.attrs}
        if self.children:
            data["children"] = {
                role: [n.to_dict() for n in nodes] for role, nodes in self.children
            }
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "ConstructNode":
        return make_node(
            ConstructKind(data["kind"]),
            data["name"],
            TypeSig.from_dict(data["signature"]),
            SourceLocation.from_dict(data["location"]),
            form=data.get("form", ""),
            doc=data.get("doc", ""),
            exported=data.get("exported", False),
            attrs=data.get("attrs"),
            children={
                role: [cls.from_dict(n) for n in nodes]
                for role, nodes in (data.get("children") or {}).items()
            },
        )


def make_node(kind, name, signature, location, form="", doc="", exported=False,
              attrs=None, children=None) -> ConstructNode:
    """Build a ConstructNode from plain dicts/lists (frozen on the way in)."""
    frozen_attrs = tuple(sorted((k, _freeze(v)) for k, v in (attrs or {}).items()))
    frozen_children = tuple(
        (role, tuple(nodes)) for role, nodes in (children or {}).items() if nodes is not None
    )
    return ConstructNode(
        kind=kind,
        name=name,
        signature=signature,
        location=location,
        form=form,
        doc=doc,
        exported=exported,
        attrs=frozen_attrs,
        children=frozen_children,
    )


@dataclass(frozen=True)
class TranslationUnit:
    """One source file's ordered top-level constructs."""

    path: str
    package: str
    imports: Tuple[str, ...]
    nodes: Tuple[ConstructNode, ...]
    source_hash: str = ""
    line_count: int = 0

    def to_dict(self) -> dict:
        return {
            "path": self.path,
            "package": self.package,
            "imports": list(self.imports),
            "source_hash": self.source_hash,
            "line_count": self.line_count,
            "total_nodes": len(self.nodes),
            "nodes": [n.to_dict() for n in self.nodes],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "TranslationUnit":
        return cls(
            path=data["path"],
            package=data["package"],
            imports=tuple(data.get("imports", [])),
            nodes=tuple(ConstructNode.from_dict(n) for n in data.get("nodes", [])),
            source_hash=data.get("source_hash", ""),
            line_count=data.get("line_count", 0),
        )


def source_hash(text: str) -> str:
    """Truncated SHA-256 of source text."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()[:16]
