#!/usr/bin/env python3
# CUI // SP-CTI
"""Tests for crport/translation/code_emitter.py: file skeleton, placement, atomic writes."""

import copy
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from crport.translation.code_emitter import CUI_HEADER, emit, target_path_for, write_atomic
from crport.translation.config import DEFAULT_CONFIG
from crport.translation.mapping_engine import map_unit
from crport.translation.source_extractor import extract_file

SOURCE = """\
package mathx

import "math/big"

const NUL uint8 = 0x00

func Add(a, b int) int {
	return a + b
}

func Z() complex128 {
	return 0
}
"""


@pytest.fixture
def mapped(rule_table):
    unit = extract_file(SOURCE, "mathx/mathx.go")
    return unit, map_unit(unit, rule_table)


# ---------------------------------------------------------------------------
# Skeleton
# ---------------------------------------------------------------------------

class TestSkeleton:
    def test_cui_marking_first_line(self, mapped):
        unit, mu = mapped
        emitted = emit(mu, unit.source_hash)
        assert emitted.text.splitlines()[0] == CUI_HEADER

    def test_provenance_and_requires(self, mapped):
        unit, mu = mapped
        text = emit(mu, unit.source_hash).text
        assert "# Translated from mathx/mathx.go (Go package mathx) by crport." in text
        assert f"# Source SHA-256: {unit.source_hash}" in text
        assert 'require "big"' in text

    def test_module_wraps_constructs(self, mapped):
        _, mu = mapped
        text = emit(mu).text
        assert "module Mathx\n  extend self\n" in text
        assert "\n  NUL = 0x00_u8\n" in text
        assert "\n  def add(a : Int64, b : Int64) : Int64\n" in text
        assert text.endswith("end\n")

    def test_cui_marking_can_be_disabled(self, mapped):
        _, mu = mapped
        config = copy.deepcopy(DEFAULT_CONFIG)
        config["emitter"]["cui_marking"] = False
        text = emit(mu, config=config).text
        assert not text.startswith(CUI_HEADER)
        assert text.startswith("# Translated from")


# ---------------------------------------------------------------------------
# Placement records
# ---------------------------------------------------------------------------

class TestPlacement:
    def test_locations_point_at_construct_lines(self, mapped):
        _, mu = mapped
        emitted = emit(mu)
        lines = emitted.text.splitlines()
        nul = next(mc for mc in mu.constructs if mc.node.name == "NUL")
        start, end = emitted.location_of(nul.node.node_id)
        assert start == end
        assert lines[start - 1] == "  NUL = 0x00_u8"

    def test_function_map_lists_only_implemented(self, mapped):
        _, mu = mapped
        functions = emit(mu).function_map()
        assert functions == {"Add": "add"}

    def test_struct_methods_reopen_the_type(self, rule_table):
        source = ("package geo\n\ntype Point struct {\n\tX, Y int\n}\n\n"
                  "func (p Point) Sum() int {\n\treturn p.X + p.Y\n}\n")
        unit = extract_file(source, "geo.go")
        text = emit(map_unit(unit, rule_table)).text
        assert "\n  struct Point\n" in text
        assert "\n    def sum : Int64\n" in text

    def test_target_path(self):
        assert target_path_for("pkg/parseUtil.go", "out") == str(Path("out") / "pkg" / "parse_util.cr")
        assert target_path_for("calc.go") == "calc.cr"


# ---------------------------------------------------------------------------
# Atomic writes
# ---------------------------------------------------------------------------

class TestWriteAtomic:
    def test_writes_and_creates_parents(self, tmp_path):
        target = tmp_path / "out" / "pkg" / "a.cr"
        written = write_atomic(target, "module A\nend\n")
        assert written == target
        assert target.read_text(encoding="utf-8") == "module A\nend\n"
        assert [p.name for p in target.parent.iterdir()] == ["a.cr"]

    def test_overwrites_existing(self, tmp_path):
        target = tmp_path / "a.cr"
        target.write_text("old", encoding="utf-8")
        write_atomic(target, "new")
        assert target.read_text(encoding="utf-8") == "new"
