#!/usr/bin/env python3
# CUI // SP-CTI
"""Tests for crport/translation/rule_table.py: loading, selection, lint."""

import sys
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from crport.translation.construct_model import Confidence
from crport.translation.errors import RuleTableError
from crport.translation.rule_table import (
    _patterns_overlap,
    load_rule_table,
    parse_rule_table,
)


def _table(*type_rules, **extra):
    data = {"version": "t", "rules": {"type": list(type_rules)}}
    data.update(extra)
    return parse_rule_table(data, source="test")


# ---------------------------------------------------------------------------
# Shipped table
# ---------------------------------------------------------------------------

class TestShippedTable:
    def test_loads(self, rule_table):
        assert len(rule_table) > 100
        assert rule_table.get("T-UINT8").template == "UInt8"

    def test_uint8_is_exact_with_suffix(self, rule_table):
        best = rule_table.best_matches("type", "uint8")
        assert [r.rule_id for r in best] == ["T-UINT8"]
        assert best[0].confidence == Confidence.EXACT
        assert best[0].suffix == "_u8"

    def test_platform_int_is_idiomatic(self, rule_table):
        (rule,) = rule_table.best_matches("type", "int")
        assert rule.rule_id == "T-INT"
        assert rule.confidence == Confidence.IDIOMATIC_EQUIVALENT

    def test_every_rule_kind_populated(self, rule_table):
        summary = rule_table.to_dict()["by_kind"]
        for kind in ("constant", "function", "type_decl", "statement", "expression", "type"):
            assert summary[kind] > 0, kind

    def test_load_from_missing_path_raises(self, tmp_path):
        with pytest.raises(RuleTableError, match="not found"):
            load_rule_table(tmp_path / "missing.yaml")


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------

class TestSelection:
    def test_most_specific_wins(self):
        table = _table(
            {"id": "T-SLICE", "pattern": "slice<*>", "template": "Array", "confidence": "EXACT"},
            {"id": "T-SLICE-STR", "pattern": "slice<string>", "template": "Array(String)",
             "confidence": "EXACT"},
        )
        assert [r.rule_id for r in table.best_matches("type", "slice<string>")] == ["T-SLICE-STR"]
        assert [r.rule_id for r in table.best_matches("type", "slice<int8>")] == ["T-SLICE"]

    def test_no_match_is_empty(self):
        table = _table({"id": "T-A", "pattern": "int8", "template": "Int8", "confidence": "EXACT"})
        assert table.best_matches("type", "chan<int8>") == ()

    def test_tie_returns_both_sorted(self):
        table = _table(
            {"id": "T-B", "pattern": "slice<*", "template": "B", "confidence": "EXACT"},
            {"id": "T-A", "pattern": "*ice<x>", "template": "A", "confidence": "EXACT"},
        )
        assert [r.rule_id for r in table.best_matches("type", "slice<x>")] == ["T-A", "T-B"]

    def test_concurrent_lookups_share_one_result(self):
        table = load_rule_table()
        subjects = [("type", s) for s in ("int8", "uint16", "slice<int8>", "map<string,int>",
                                          "chan<int8>", "complex128", "no-such-type")] * 20
        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(lambda ks: table.best_matches(*ks), subjects))
        fresh = load_rule_table()
        for (kind, subject), got in zip(subjects, results):
            assert got is table.best_matches(kind, subject)
            assert got == fresh.best_matches(kind, subject)

    def test_conflicts_reports_equal_specificity_overlap(self):
        table = _table(
            {"id": "T-B", "pattern": "slice<*", "template": "B", "confidence": "EXACT"},
            {"id": "T-A", "pattern": "*ice<x>", "template": "A", "confidence": "EXACT"},
            {"id": "T-C", "pattern": "map<*>", "template": "C", "confidence": "EXACT"},
        )
        conflicts = table.conflicts()
        assert len(conflicts) == 1
        assert sorted(conflicts[0]["rule_ids"]) == ["T-A", "T-B"]

    @pytest.mark.parametrize("a,b,expected", [
        ("slice<*>", "*<int8>", True),
        ("int8", "int16", False),
        ("*", "anything", True),
        ("map<*>", "slice<*>", False),
    ])
    def test_patterns_overlap(self, a, b, expected):
        assert _patterns_overlap(a, b) is expected


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

class TestValidation:
    def test_missing_field(self):
        with pytest.raises(RuleTableError, match="missing fields"):
            _table({"id": "T-X", "pattern": "int8", "template": "Int8"})

    def test_duplicate_id(self):
        rule = {"id": "T-X", "pattern": "int8", "template": "Int8", "confidence": "EXACT"}
        with pytest.raises(RuleTableError, match="Duplicate"):
            _table(rule, dict(rule))

    def test_bad_confidence(self):
        with pytest.raises(RuleTableError):
            _table({"id": "T-X", "pattern": "int8", "template": "Int8", "confidence": "GOOD"})

    def test_bad_template_syntax(self):
        with pytest.raises(RuleTableError, match="invalid template"):
            _table({"id": "T-X", "pattern": "int8", "template": "{{ oops", "confidence": "EXACT"})

    def test_unknown_kind(self):
        with pytest.raises(RuleTableError, match="Unknown rule kind"):
            parse_rule_table({"rules": {"widgets": []}})

    def test_unknown_field(self):
        with pytest.raises(RuleTableError, match="unknown fields"):
            _table({"id": "T-X", "pattern": "int8", "template": "Int8", "confidence": "EXACT",
                    "priority": 3})
