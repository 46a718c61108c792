#!/usr/bin/env python3
# CUI // SP-CTI
"""Tests for crport/translation/source_extractor.py: Go -> construct model."""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from crport.translation.construct_model import ConstructKind, TypeKind
from crport.translation.errors import ParseError
from crport.translation.source_extractor import (
    PackageEnv,
    decode_source,
    discover_files,
    extract_file,
    extract_source,
    scan_headers,
)


def _by_name(unit):
    return {n.name: n for n in unit.nodes}


# ---------------------------------------------------------------------------
# Declarations
# ---------------------------------------------------------------------------

class TestDeclarations:
    def test_typed_constant(self):
        unit = extract_file("package p\n\n// NUL is the zero byte.\nconst NUL uint8 = 0x00\n", "p.go")
        (node,) = unit.nodes
        assert node.kind == ConstructKind.CONSTANT
        assert node.name == "NUL"
        assert node.signature.canonical() == "uint8"
        assert node.form == "typed"
        assert node.doc == "NUL is the zero byte."
        assert node.exported is True
        assert node.first("value").name == "0x00"

    def test_iota_group_repeats_implicit_values(self):
        source = "package p\n\nconst (\n\tA int = iota\n\tB\n\tC\n)\n"
        env = scan_headers(source, "p.go")
        unit = extract_file(source, "p.go", env)
        assert [n.attr("iota") for n in unit.nodes] == [0, 1, 2]
        assert env.const_values == {"A": 0, "B": 1, "C": 2}

    def test_function_signature(self):
        unit = extract_file("package p\n\nfunc Add(a, b int) int {\n\treturn a + b\n}\n", "p.go")
        (fn,) = unit.nodes
        assert fn.kind == ConstructKind.FUNCTION
        assert fn.form == "function"
        assert fn.signature.canonical() == "func(int,int)->int"
        assert fn.attr("params") == ("a", "b")
        (ret,) = fn.child("body")
        assert ret.form == "return"

    def test_byte_slice_parameter_is_bytes(self):
        unit = extract_file("package p\n\nfunc Sum(data []byte) uint8 {\n\treturn 0\n}\n", "p.go")
        assert unit.nodes[0].signature.params[0].kind == TypeKind.BYTES

    def test_value_error_result_becomes_error_union(self):
        source = ('package p\n\nimport "errors"\n\n'
                  'func Parse(s string) (int, error) {\n'
                  '\tif s == "" {\n\t\treturn 0, errors.New("empty")\n\t}\n'
                  '\treturn len(s), nil\n}\n')
        unit = extract_file(source, "p.go")
        result = unit.nodes[0].signature.result()
        assert result.kind == TypeKind.ERROR_UNION
        assert result.elem.canonical() == "int"
        assert unit.imports == ("errors",)

    def test_appended_result_slice_is_growable(self):
        source = ("package p\n\nfunc Evens(n int) []int {\n\tvar out []int\n"
                  "\tfor i := 0; i < n; i += 2 {\n\t\tout = append(out, i)\n\t}\n"
                  "\treturn out\n}\n")
        unit = extract_file(source, "p.go")
        assert unit.nodes[0].signature.result().canonical() == "slice<int>+grow"

    def test_method_records_receiver(self):
        source = ("package p\n\ntype Counter struct {\n\tn int\n}\n\n"
                  "func (c *Counter) Inc() {\n\tc.n++\n}\n")
        unit = extract_file(source, "p.go")
        nodes = _by_name(unit)
        assert nodes["Counter"].kind == ConstructKind.TYPE_DECL
        inc = nodes["Inc"]
        assert inc.form == "method"
        assert inc.attr("receiver_type") == "Counter"
        assert inc.attr("pointer_receiver") is True

    def test_untyped_constant_typed_from_conversion(self):
        source = "package p\n\nconst K = 300\n\nfunc F() uint16 {\n\treturn uint16(K)\n}\n"
        k = _by_name(extract_file(source, "p.go"))["K"]
        assert k.form == "untyped"
        assert k.signature.canonical() == "uint16"
        assert k.attr("inferred_from") == "usage:uint16"

    def test_untyped_constant_with_conflicting_uses_keeps_default(self):
        source = ("package p\n\nconst K = 3\n\nfunc F() (uint16, int8) {\n"
                  "\treturn uint16(K), int8(K)\n}\n")
        k = _by_name(extract_file(source, "p.go"))["K"]
        assert k.signature.canonical() == "int"
        assert k.attr("inferred_from") == "literal-default"

    def test_untyped_constant_reference_carries_default_type(self):
        source = ("package p\n\nconst K = 300\n\nfunc F() uint16 {\n\treturn uint16(K)\n}\n\n"
                  "func G() int {\n\tx := K\n\treturn x\n}\n")
        g = _by_name(extract_file(source, "p.go"))["G"]
        define = g.child("body")[0]
        ref = define.first("values")
        assert ref.signature.canonical() == "uint16"
        assert ref.attr("default_type") == "int"
        assert define.first("targets").signature.canonical() == "int"

    def test_generic_function_signature(self):
        source = ("package p\n\nfunc Map[T any](xs []T, f func(T) T) []T {\n"
                  "\treturn xs\n}\n")
        fn = extract_file(source, "p.go").nodes[0]
        assert fn.attr("type_params") == ("T",)
        assert fn.attr("constraints") == ("any",)
        first = fn.signature.params[0]
        assert first.kind == TypeKind.SLICE
        assert first.elem.kind == TypeKind.TYPE_PARAM
        assert first.elem.name == "T"
        assert fn.signature.result().elem.kind == TypeKind.TYPE_PARAM

    def test_variadic_function_signature(self):
        source = ("package p\n\nfunc Sum(base int, xs ...int) int {\n"
                  "\tfor _, x := range xs {\n\t\tbase += x\n\t}\n\treturn base\n}\n")
        fn = extract_file(source, "p.go").nodes[0]
        assert fn.signature.variadic is True
        assert fn.signature.params[1].kind == TypeKind.SLICE
        assert fn.signature.canonical() == "func(int,...int)->int"

    def test_call_to_package_function_is_local(self):
        source = ("package p\n\nfunc double(x int) int {\n\treturn x * 2\n}\n\n"
                  "func Quad(x int) int {\n\treturn double(double(x))\n}\n")
        unit = extract_file(source, "p.go")
        quad = _by_name(unit)["Quad"]
        call = quad.child("body")[0].first("values")
        assert call.form == "call"
        assert call.attr("callee") == "local"
        assert call.attr("function") == "double"


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class TestParseErrors:
    def test_multi_value_call_without_signature_types_targets_any(self):
        source = ('package p\n\nimport "example.com/foo"\n\n'
                  'func F() {\n\ta, err := foo.Bar()\n}\n')
        unit = extract_file(source, "p.go")
        (stmt,) = unit.nodes[0].child("body")
        assert stmt.form == "define"
        assert stmt.attr("shape") == "unknown_call"
        assert [t.signature.kind for t in stmt.child("targets")] == [TypeKind.ANY, TypeKind.ANY]

    def test_count_mismatch_against_known_signature_still_fails(self):
        source = "package p\n\nfunc one() int {\n\treturn 1\n}\n\nfunc F() {\n\ta, b := one()\n}\n"
        with pytest.raises(ParseError, match="assignment mismatch"):
            extract_file(source, "p.go")

    def test_missing_package_clause(self):
        with pytest.raises(ParseError, match="expected 'package' clause"):
            extract_file("func f() {}\n", "bad.go")

    def test_unbalanced_function(self):
        with pytest.raises(ParseError) as exc_info:
            extract_file("package p\n\nfunc f( {\n", "bad.go")
        assert exc_info.value.location.file == "bad.go"

    def test_statement_outside_function(self):
        with pytest.raises(ParseError, match="outside function body"):
            extract_file("package p\n\nx := 1\n", "bad.go")


# ---------------------------------------------------------------------------
# Package walking
# ---------------------------------------------------------------------------

class TestExtractSource:
    def test_tests_excluded_by_default(self, go_package):
        files = discover_files(go_package)
        assert [f.name for f in files] == ["mathx.go"]
        tests = discover_files(go_package, include_tests=True)
        assert [f.name for f in tests] == ["mathx_test.go"]

    def test_excluded_dirs_skipped(self, go_package):
        vendor = go_package / "vendor"
        vendor.mkdir()
        (vendor / "dep.go").write_text("package dep\n", encoding="utf-8")
        files = discover_files(go_package, exclude_dirs=["vendor"])
        assert all("vendor" not in f.parts for f in files)

    def test_extract_package(self, go_package):
        result = extract_source(go_package)
        assert result["errors"] == []
        (unit,) = result["units"]
        assert unit.path == "mathx.go"
        assert unit.package == "mathx"
        assert [n.name for n in unit.nodes] == ["NUL", "Add", "Checksum"]

    def test_bad_file_reported_and_rest_extracted(self, go_package):
        (go_package / "broken.go").write_text("package mathx\n\nfunc Oops( {\n", encoding="utf-8")
        result = extract_source(go_package)
        assert [u.path for u in result["units"]] == ["mathx.go"]
        assert len(result["errors"]) == 1
        assert result["errors"][0]["file"] == "broken.go"

    def test_invalid_utf8_reported_as_parse_error(self, go_package):
        (go_package / "latin.go").write_bytes(b'package mathx\n\nvar S = "\xff\xfe"\n')
        result = extract_source(go_package)
        assert [u.path for u in result["units"]] == ["mathx.go"]
        (err,) = result["errors"]
        assert err["file"] == "latin.go"
        assert err["location"] == "latin.go:3"
        assert "invalid UTF-8" in err["reason"]

    def test_sibling_files_share_symbols(self, tmp_path):
        (tmp_path / "a.go").write_text(
            "package p\n\nfunc Twice(x int) int {\n\treturn helper(x) * 2\n}\n", encoding="utf-8")
        (tmp_path / "b.go").write_text(
            "package p\n\nfunc helper(x int) int {\n\treturn x + 1\n}\n", encoding="utf-8")
        result = extract_source(tmp_path)
        twice = _by_name(result["units"][0])["Twice"]
        mul = twice.child("body")[0].first("values")
        call = mul.first("left")
        assert call.attr("callee") == "local"
        assert call.signature.canonical() == "int"


def test_package_env_merge():
    a = PackageEnv(package="p")
    a.funcs["F"] = None
    b = PackageEnv(package="p")
    b.consts["K"] = None
    a.merge(b)
    assert set(a.funcs) == {"F"}
    assert set(a.consts) == {"K"}


def test_decode_source_is_strict():
    assert decode_source("package p // é\n".encode("utf-8"), "p.go") == "package p // é\n"
    with pytest.raises(ParseError) as exc_info:
        decode_source(b"package p\n// \xc3\n", "p.go")
    assert exc_info.value.location.line_start == 2
    assert exc_info.value.location.column == 4
