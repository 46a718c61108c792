#!/usr/bin/env python3
# CUI // SP-CTI
"""Tests for crport/translation/test_translator.py: Go test assertions -> TestCases."""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from crport.translation.errors import ParseError
from crport.translation.source_extractor import PackageEnv, scan_headers
from crport.translation.test_translator import port_source, port_tests

PRODUCTION = """\
package calc

import "errors"

func Add(a, b int) int {
	return a + b
}

func Parse(s string) (int, error) {
	if s == "" {
		return 0, errors.New("empty input")
	}
	return len(s), nil
}

func Split(s string) []string {
	return []string{s}
}
"""


def _port(test_source, production=PRODUCTION):
    env = PackageEnv()
    scan_headers(production, "calc.go", env)
    scan_headers(test_source, "calc_test.go", env)
    return port_tests(test_source, "calc_test.go", env)


def _test_file(*funcs, imports=('"testing"',)):
    header = "package calc\n\nimport (\n" + "".join(f"\t{i}\n" for i in imports) + ")\n\n"
    return header + "\n".join(funcs)


# ---------------------------------------------------------------------------
# Comparison assertions
# ---------------------------------------------------------------------------

class TestComparisons:
    def test_if_init_compare(self):
        suite = _port(_test_file(
            "func TestAdd(t *testing.T) {\n"
            "\tif got := Add(2, 3); got != 5 {\n\t\tt.Errorf(\"got %d\", got)\n\t}\n}\n"))
        (case,) = suite.cases
        assert case.case_id == "TestAdd#1"
        assert case.test_name == "TestAdd"
        assert case.function == "Add"
        assert case.args == ("2", "3")
        assert case.expected == "5"
        assert case.expect_error is False
        assert case.location.line_start == 8

    def test_direct_call_compare(self):
        suite = _port(_test_file(
            "func TestAddDirect(t *testing.T) {\n"
            "\tif Add(1, 1) != 2 {\n\t\tt.Fatal(\"bad\")\n\t}\n}\n"))
        (case,) = suite.cases
        assert (case.function, case.args, case.expected) == ("Add", ("1", "1"), "2")

    def test_got_then_compare_with_want(self):
        suite = _port(_test_file(
            "func TestAddWant(t *testing.T) {\n"
            "\tgot := Add(4, 4)\n\twant := 8\n"
            "\tif got != want {\n\t\tt.Errorf(\"got %d want %d\", got, want)\n\t}\n}\n"))
        (case,) = suite.cases
        assert case.function == "Add"
        assert case.expected == "8"

    def test_deep_equal(self):
        suite = _port(_test_file(
            "func TestSplit(t *testing.T) {\n"
            "\tif got := Split(\"a\"); !reflect.DeepEqual(got, []string{\"a\"}) {\n"
            "\t\tt.Errorf(\"got %v\", got)\n\t}\n}\n",
            imports=('"reflect"', '"testing"')))
        (case,) = suite.cases
        assert case.function == "Split"
        assert case.args == ('"a"',)
        assert case.expected == '[]string{"a"}'


# ---------------------------------------------------------------------------
# Table-driven tests
# ---------------------------------------------------------------------------

class TestTables:
    def test_positional_rows_with_subtests(self, go_package):
        result = port_source(go_package)
        assert result["errors"] == []
        (suite,) = result["suites"]
        assert suite.path == "mathx_test.go"
        table = [c for c in suite.cases if c.case_id.startswith("TestAddTable#")]
        assert [c.test_name for c in table] == ["TestAddTable/small", "TestAddTable/negative"]
        assert [c.args for c in table] == [("1", "2"), ("-4", "1")]
        assert [c.expected for c in table] == ["3", "-3"]
        assert table[0].location.line_start != table[1].location.line_start

    def test_keyed_rows(self):
        suite = _port(_test_file(
            "func TestAddKeyed(t *testing.T) {\n"
            "\ttests := []struct {\n\t\tin   int\n\t\twant int\n\t}{\n"
            "\t\t{in: 1, want: 2},\n\t\t{want: 4, in: 3},\n\t}\n"
            "\tfor _, tt := range tests {\n"
            "\t\tif got := Add(tt.in, 1); got != tt.want {\n\t\t\tt.Errorf(\"got %d\", got)\n\t\t}\n"
            "\t}\n}\n"))
        assert [(c.args, c.expected) for c in suite.cases] == [(("1", "1"), "2"), (("3", "1"), "4")]

    def test_range_over_non_literal_is_pending(self):
        suite = _port(_test_file(
            "func loadCases() []int {\n\treturn nil\n}\n",
            "func TestDynamic(t *testing.T) {\n"
            "\tfor _, n := range loadCases() {\n"
            "\t\tif Add(n, 0) != n {\n\t\t\tt.Error(\"bad\")\n\t\t}\n\t}\n}\n"))
        (case,) = suite.cases
        assert not case.ported
        assert case.note == "range over a non-literal table"


# ---------------------------------------------------------------------------
# Error expectations
# ---------------------------------------------------------------------------

class TestErrorCases:
    def test_err_nil_check_expects_error(self):
        suite = _port(_test_file(
            "func TestParseEmpty(t *testing.T) {\n"
            "\tif _, err := Parse(\"\"); err == nil {\n\t\tt.Fatal(\"expected error\")\n\t}\n}\n"))
        (case,) = suite.cases
        assert case.function == "Parse"
        assert case.expect_error is True
        assert case.expected == "error"

    def test_err_not_nil_check_expects_success(self):
        suite = _port(_test_file(
            "func TestParseOK(t *testing.T) {\n"
            "\tif _, err := Parse(\"abc\"); err != nil {\n\t\tt.Fatal(err)\n\t}\n}\n"))
        (case,) = suite.cases
        assert case.expect_error is False
        assert case.expected == "nil"
        assert case.expected_node is None


# ---------------------------------------------------------------------------
# testify
# ---------------------------------------------------------------------------

class TestTestify:
    def test_assert_equal_expected_first(self):
        suite = _port(_test_file(
            "func TestAddAssert(t *testing.T) {\n\tassert.Equal(t, 5, Add(2, 3))\n}\n",
            imports=('"testing"', '"github.com/stretchr/testify/assert"')))
        (case,) = suite.cases
        assert (case.function, case.expected) == ("Add", "5")

    def test_assert_error(self):
        suite = _port(_test_file(
            "func TestParseAssert(t *testing.T) {\n"
            "\t_, err := Parse(\"\")\n\trequire.Error(t, err)\n}\n",
            imports=('"testing"', '"github.com/stretchr/testify/require"')))
        (case,) = suite.cases
        assert case.expect_error is True

    def test_unknown_testify_member_is_pending(self):
        suite = _port(_test_file(
            "func TestContains(t *testing.T) {\n\tassert.Contains(t, \"abc\", \"b\")\n}\n",
            imports=('"testing"', '"github.com/stretchr/testify/assert"')))
        (case,) = suite.cases
        assert not case.ported
        assert "Contains" in case.note


# ---------------------------------------------------------------------------
# Pending and filtering
# ---------------------------------------------------------------------------

class TestPending:
    def test_unrecognised_assertion_kept_as_pending(self):
        suite = _port(_test_file(
            "func TestTooBig(t *testing.T) {\n"
            "\tif Add(1, 2) > 10 {\n\t\tt.Error(\"too big\")\n\t}\n}\n"))
        (case,) = suite.cases
        assert case.function == ""
        assert case.note.startswith("unrecognised assertion: if Add(1, 2) > 10")
        assert suite.unported == (case,)

    def test_function_without_assertion(self):
        suite = _port(_test_file("func TestNothing(t *testing.T) {\n\t_ = Add(1, 2)\n}\n"))
        (case,) = suite.cases
        assert case.note == "no assertion found in test function"

    def test_helpers_and_test_main_ignored(self):
        suite = _port(_test_file(
            "func TestMain(m *testing.M) {\n}\n",
            "func helper() int {\n\treturn 1\n}\n",
            "func BenchmarkAdd(b *testing.B) {\n}\n"))
        assert suite.cases == ()

    def test_external_test_package(self):
        source = ("package calc_test\n\nimport (\n\t\"testing\"\n\n\t\"example.com/calc\"\n)\n\n"
                  "func TestAddExternal(t *testing.T) {\n"
                  "\tif got := calc.Add(1, 2); got != 3 {\n\t\tt.Errorf(\"got %d\", got)\n\t}\n}\n")
        suite = _port(source)
        assert suite.package == "calc"
        (case,) = suite.cases
        assert case.function == "Add"

    def test_to_dict_counts(self):
        suite = _port(_test_file(
            "func TestAdd(t *testing.T) {\n"
            "\tif got := Add(2, 3); got != 5 {\n\t\tt.Errorf(\"got %d\", got)\n\t}\n}\n",
            "func TestNothing(t *testing.T) {\n}\n"))
        data = suite.to_dict()
        assert data["total_cases"] == 2
        assert data["unported"] == 1


def test_port_source_reports_bad_test_file(go_package):
    (go_package / "broken_test.go").write_text("package mathx\n\nfunc TestX( {\n", encoding="utf-8")
    result = port_source(go_package)
    assert [e["file"] for e in result["errors"]] == ["broken_test.go"]
    assert [s.path for s in result["suites"]] == ["mathx_test.go"]


def test_port_source_reports_undecodable_test_file(go_package):
    (go_package / "latin_test.go").write_bytes(b'package mathx\n\nvar S = "\xff\xfe"\n')
    result = port_source(go_package)
    (err,) = result["errors"]
    assert err["file"] == "latin_test.go"
    assert "invalid UTF-8" in err["error"]
    assert [s.path for s in result["suites"]] == ["mathx_test.go"]


def test_port_tests_raises_parse_error():
    with pytest.raises(ParseError):
        port_tests("package calc\n\nfunc TestX( {\n", "x_test.go")
