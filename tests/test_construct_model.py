#!/usr/bin/env python3
# CUI // SP-CTI
"""Tests for crport/translation/construct_model.py: nodes, signatures, confidence."""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from crport.translation.construct_model import (
    PLATFORM_INT,
    STRING,
    UINT8,
    Confidence,
    ConstructKind,
    ConstructNode,
    SourceLocation,
    TypeKind,
    TypeSig,
    int_sig,
    make_node,
    slice_sig,
    source_hash,
    tuple_sig,
)


@pytest.fixture
def loc():
    return SourceLocation("pkg/a.go", 3, 5)


# ---------------------------------------------------------------------------
# Confidence
# ---------------------------------------------------------------------------

class TestConfidence:
    def test_weakest_picks_least_faithful(self):
        tags = [Confidence.EXACT, Confidence.LOSSY, Confidence.IDIOMATIC_EQUIVALENT]
        assert Confidence.weakest(tags) == Confidence.LOSSY

    def test_weakest_of_nothing_is_exact(self):
        assert Confidence.weakest([]) == Confidence.EXACT

    @pytest.mark.parametrize("raw", ["IDIOMATIC-EQUIVALENT", "idiomatic_equivalent",
                                     " Idiomatic-Equivalent "])
    def test_parse_normalises(self, raw):
        assert Confidence.parse(raw) == Confidence.IDIOMATIC_EQUIVALENT

    def test_parse_rejects_unknown(self):
        with pytest.raises(ValueError):
            Confidence.parse("MAYBE")

    def test_needs_review(self):
        assert Confidence.LOSSY.needs_review
        assert Confidence.UNSUPPORTED.needs_review
        assert not Confidence.EXACT.needs_review


# ---------------------------------------------------------------------------
# TypeSig
# ---------------------------------------------------------------------------

class TestTypeSig:
    def test_fixed_width_canonical(self):
        assert int_sig(8, signed=False).canonical() == "uint8"
        assert int_sig(32).canonical() == "int32"

    def test_platform_int_keeps_name(self):
        assert PLATFORM_INT.canonical() == "int"

    def test_byte_slice_becomes_bytes(self):
        sig = slice_sig(UINT8)
        assert sig.kind == TypeKind.BYTES
        assert sig.canonical() == "bytes"
        assert sig.with_growth().canonical() == "bytes+grow"

    def test_slice_and_map(self):
        assert slice_sig(STRING).canonical() == "slice<string>"
        m = TypeSig(TypeKind.MAP, key=STRING, elem=int_sig(64))
        assert m.canonical() == "map<string,int64>"

    def test_func_canonical_and_result(self):
        fn = TypeSig(TypeKind.FUNC, params=(PLATFORM_INT, PLATFORM_INT), results=(PLATFORM_INT,))
        assert fn.canonical() == "func(int,int)->int"
        assert fn.result() == PLATFORM_INT

    def test_tuple_sig_collapses(self):
        assert tuple_sig([STRING]) == STRING
        assert tuple_sig([]).kind == TypeKind.VOID

    def test_dict_round_trip(self):
        sig = TypeSig(TypeKind.MAP, key=STRING, elem=slice_sig(UINT8, growable=True))
        assert TypeSig.from_dict(sig.to_dict()) == sig


# ---------------------------------------------------------------------------
# ConstructNode
# ---------------------------------------------------------------------------

class TestConstructNode:
    def test_node_id_and_location(self, loc):
        node = make_node(ConstructKind.CONSTANT, "NUL", UINT8, loc)
        assert node.node_id == "pkg/a.go:3:constant:NUL"
        assert str(loc) == "pkg/a.go:3-5"

    def test_attrs_and_children(self, loc):
        left = make_node(ConstructKind.EXPRESSION, "a", PLATFORM_INT, loc, form="ident")
        right = make_node(ConstructKind.EXPRESSION, "b", PLATFORM_INT, loc, form="ident")
        expr = make_node(ConstructKind.EXPRESSION, "+", PLATFORM_INT, loc, form="binary",
                         attrs={"op": "+", "names": ["a", "b"]},
                         children={"left": [left], "right": [right]})
        assert expr.attr("op") == "+"
        assert expr.attr("names") == ("a", "b")
        assert expr.attr("missing", "x") == "x"
        assert expr.first("left") is left
        assert expr.child("nothing") == ()
        assert [n.name for n in expr.walk()] == ["+", "a", "b"]

    def test_node_is_immutable(self, loc):
        node = make_node(ConstructKind.CONSTANT, "NUL", UINT8, loc)
        with pytest.raises(Exception):
            node.name = "other"

    def test_dict_round_trip(self, loc):
        inner = make_node(ConstructKind.EXPRESSION, "0x00", UINT8, loc, form="int")
        node = make_node(ConstructKind.CONSTANT, "NUL", UINT8, loc, doc="zero byte",
                         exported=True, attrs={"typed": True}, children={"value": [inner]})
        assert ConstructNode.from_dict(node.to_dict()) == node


def test_source_hash_is_stable():
    assert source_hash("package a\n") == source_hash("package a\n")
    assert len(source_hash("x")) == 16
