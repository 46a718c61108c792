#!/usr/bin/env python3
# CUI // SP-CTI
"""Tests for crport/translation/translation_report.py."""

import json
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from crport.schemas.pipeline import VerificationResult, VerificationStatus
from crport.translation.code_emitter import emit
from crport.translation.construct_model import SourceLocation
from crport.translation.mapping_engine import map_unit
from crport.translation.source_extractor import extract_file
from crport.translation.translation_report import (
    VERDICT_FAIL,
    VERDICT_PASS,
    VERDICT_REVIEW,
    TranslationReport,
    build_report,
    check_api_surface,
    write_report,
)

CLEAN = """\
package mathx

const NUL uint8 = 0x00

func Add(a, b int) int {
	return a + b
}
"""

UNSUPPORTED = CLEAN + """
func Z() complex128 {
	return 0
}
"""


def _mapped(source, rule_table):
    unit = extract_file(source, "mathx/mathx.go")
    mapped = map_unit(unit, rule_table)
    return mapped, emit(mapped, unit.source_hash)


def _result(status, case_id="TestAdd#1", **kwargs):
    return VerificationResult(case_id=case_id, status=status, expected="5",
                              location=SourceLocation("mathx/mathx_test.go", 8), **kwargs)


# ---------------------------------------------------------------------------
# Verdicts
# ---------------------------------------------------------------------------

class TestVerdict:
    def test_pass_when_everything_matches(self, rule_table):
        mapped, emitted = _mapped(CLEAN, rule_table)
        report = build_report([mapped], [_result(VerificationStatus.MATCH)], emitted=[emitted])
        assert report.verdict == VERDICT_PASS
        assert report.by_confidence["EXACT"] == 1
        assert report.by_confidence["IDIOMATIC-EQUIVALENT"] == 1
        assert report.verification["match"] == 1

    def test_unsupported_construct_needs_review(self, rule_table):
        mapped, emitted = _mapped(UNSUPPORTED, rule_table)
        report = build_report([mapped], [], emitted=[emitted])
        assert report.verdict == VERDICT_REVIEW
        assert any(e["construct"] == "Z" for e in report.unsupported)

    def test_pending_case_needs_review(self, rule_table):
        mapped, _ = _mapped(CLEAN, rule_table)
        report = build_report([mapped], [_result(VerificationStatus.PENDING, detail="test not ported")])
        assert report.verdict == VERDICT_REVIEW
        assert report.verification["pending"] == 1

    @pytest.mark.parametrize("status", [VerificationStatus.MISMATCH, VerificationStatus.ERROR])
    def test_failing_case_fails(self, rule_table, status):
        mapped, _ = _mapped(CLEAN, rule_table)
        report = build_report([mapped], [_result(status, actual="4")])
        assert report.verdict == VERDICT_FAIL

    def test_file_failure_fails(self, rule_table):
        mapped, _ = _mapped(CLEAN, rule_table)
        failure = {"file": "mathx/broken.go", "kind": "ParseError",
                   "location": "mathx/broken.go:3:12", "reason": "expected ')'"}
        report = build_report([mapped], [], failures=[failure])
        assert report.verdict == VERDICT_FAIL
        assert report.totals["failed_files"] == 1


# ---------------------------------------------------------------------------
# Contents
# ---------------------------------------------------------------------------

class TestContents:
    def test_constructs_carry_source_and_target_locations(self, rule_table):
        mapped, emitted = _mapped(CLEAN, rule_table)
        report = build_report([mapped], [], emitted=[emitted])
        nul = next(c for c in report.constructs if c["identifier"] == "NUL")
        assert nul["source_location"].startswith("mathx/mathx.go:3")
        assert nul["target_location"].startswith(emitted.target_path + ":")
        assert nul["rule_id"] == "C-TYPED"

    def test_api_surface_reports_missing_symbols(self, rule_table):
        mapped, _ = _mapped(UNSUPPORTED, rule_table)
        score, findings = check_api_surface([mapped])
        assert score == 0.5
        assert len(findings) == 1
        assert findings[0].startswith("Missing: Z (")

    def test_render_text_lists_mismatches(self, rule_table):
        mapped, _ = _mapped(CLEAN, rule_table)
        report = build_report([mapped], [_result(VerificationStatus.MISMATCH, actual="4")])
        text = report.render_text()
        assert text.startswith("crport translation report: FAIL\n")
        assert "[MISMATCH] TestAdd#1 (mathx/mathx_test.go:8): expected 5, got 4" in text

    def test_round_trip_through_json(self, rule_table, tmp_path):
        mapped, emitted = _mapped(UNSUPPORTED, rule_table)
        report = build_report([mapped], [_result(VerificationStatus.MATCH)], emitted=[emitted])
        path = write_report(report, tmp_path / "reports" / "report.json")
        data = json.loads(path.read_text(encoding="utf-8"))
        restored = TranslationReport.from_dict(data)
        assert restored.to_dict() == report.to_dict()
        assert restored.render_text() == report.render_text()
