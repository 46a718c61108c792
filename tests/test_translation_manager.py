#!/usr/bin/env python3
# CUI // SP-CTI
"""Tests for crport/translation/translation_manager.py: batch pipeline and CLI."""

import json
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from crport.schemas.pipeline import VerificationStatus
from crport.translation.rule_table import parse_rule_table
from crport.translation.source_extractor import extract_source
from crport.translation.translation_manager import main, run_batch, translate_units
from crport.translation.translation_report import VERDICT_FAIL, VERDICT_REVIEW


@pytest.fixture
def tied_table():
    """A rule table where two constant rules match uint8 equally well."""
    return parse_rule_table({"rules": {"constant": [
        {"id": "C-A", "pattern": "uint*", "template": "{{ name }}", "confidence": "EXACT"},
        {"id": "C-B", "pattern": "*int8", "template": "{{ name }}", "confidence": "EXACT"},
    ]}})


# ---------------------------------------------------------------------------
# run_batch
# ---------------------------------------------------------------------------

class TestRunBatch:
    def test_full_pipeline(self, go_package, tmp_path, fake_runner):
        out = tmp_path / "out"
        report_file = tmp_path / "report.json"
        result = run_batch(go_package, output_dir=out, runner=fake_runner, max_workers=2,
                           report_path=report_file)
        assert result["exit_code"] == 0
        assert result["status"] == "completed"
        assert result["stages"]["extract"]["file_count"] == 1
        assert result["stages"]["translate"]["emitted"] == 1
        written = out / "mathx.cr"
        assert result["stages"]["translate"]["written"] == [str(written)]
        assert written.read_text(encoding="utf-8").startswith("# CUI // SP-CTI\n")
        assert result["stages"]["verify"]["cases"] == 3
        assert {r.status for r in result["results"]} == {VerificationStatus.MATCH}
        saved = json.loads(report_file.read_text(encoding="utf-8"))
        assert saved["verdict"] == result["verdict"]
        assert saved["verification"]["match"] == 3

    def test_mismatch_does_not_fail_batch(self, go_package, make_runner):
        runner = make_runner({"TestAdd#1": "CRPORT:MISMATCH\n6\n"})
        result = run_batch(go_package, runner=runner)
        assert result["exit_code"] == 0
        assert result["verdict"] == VERDICT_FAIL

    def test_verification_can_be_disabled(self, go_package, fake_runner):
        result = run_batch(go_package, verify_tests=False, runner=fake_runner)
        assert result["stages"]["verify"] == {"status": "skipped", "reason": "disabled"}
        assert fake_runner.calls == []
        assert result["results"] == []

    def test_parse_error_fails_batch_but_other_files_emit(self, go_package, tmp_path):
        (go_package / "broken.go").write_text("package mathx\n\nfunc Oops( {\n", encoding="utf-8")
        result = run_batch(go_package, output_dir=tmp_path / "out", verify_tests=False)
        assert result["exit_code"] == 1
        assert result["status"] == "failed"
        assert result["report"].verdict == VERDICT_FAIL
        assert [f["file"] for f in result["report"].failures] == ["broken.go"]
        assert (tmp_path / "out" / "mathx.cr").exists()

    def test_unwritable_output_is_per_file_failure(self, tmp_path):
        src = tmp_path / "src"
        src.mkdir()
        (src / "a.go").write_text("package p\n\nconst A uint8 = 1\n", encoding="utf-8")
        (src / "b.go").write_text("package p\n\nconst B uint8 = 2\n", encoding="utf-8")
        out = tmp_path / "out"
        (out / "a.cr").mkdir(parents=True)
        result = run_batch(src, output_dir=out, verify_tests=False)
        assert result["exit_code"] == 1
        (failure,) = result["report"].failures
        assert failure["file"] == "a.go"
        assert failure["kind"] == "IsADirectoryError"
        assert (out / "b.cr").is_file()
        assert result["stages"]["translate"]["emitted"] == 1

    def test_strict_ambiguity_aborts(self, go_package, tied_table, fake_runner):
        result = run_batch(go_package, rule_table=tied_table, runner=fake_runner)
        assert result["exit_code"] == 1
        assert result["stages"]["translate"]["status"] == "aborted"
        assert result["stages"]["verify"]["reason"] == "strict-mode abort"
        (failure,) = result["report"].failures
        assert failure["kind"] == "AmbiguousMappingError"
        assert "C-A" in failure["reason"]

    def test_non_strict_ambiguity_is_reported(self, go_package, tied_table):
        result = run_batch(go_package, rule_table=tied_table, strict=False, verify_tests=False)
        assert result["exit_code"] == 0
        assert result["verdict"] == VERDICT_REVIEW
        (ambiguity,) = result["report"].ambiguities
        assert ambiguity["rule_ids"] == ["C-A", "C-B"]


def test_translate_units_accounts_for_every_file(tmp_path, tied_table):
    for name in ("a", "b", "c"):
        (tmp_path / f"{name}.go").write_text(f"package p\n\nconst K{name} uint8 = 1\n",
                                             encoding="utf-8")
    units = extract_source(tmp_path)["units"]
    outcome = translate_units(units, tied_table, strict=True, max_workers=1)
    assert outcome["failures"]
    assert all(f["kind"] == "AmbiguousMappingError" for f in outcome["failures"])
    accounted = len(outcome["mapped"]) + len(outcome["failures"]) + len(outcome["cancelled"])
    assert accounted == 3


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

class TestCli:
    def test_no_command_prints_help(self):
        with pytest.raises(SystemExit) as exc_info:
            main([])
        assert exc_info.value.code == 1

    def test_extract_json(self, go_package, tmp_path, capsys):
        ir = tmp_path / "ir.json"
        with pytest.raises(SystemExit) as exc_info:
            main(["extract", "--source-path", str(go_package), "--output-ir", str(ir), "--json"])
        assert exc_info.value.code == 0
        summary = json.loads(capsys.readouterr().out)
        assert summary["file_count"] == 1
        assert summary["errors"] == []
        assert json.loads(ir.read_text(encoding="utf-8"))["units"][0]["package"] == "mathx"

    def test_map_json(self, go_package, capsys):
        with pytest.raises(SystemExit) as exc_info:
            main(["map", "--source-path", str(go_package), "--json"])
        assert exc_info.value.code == 0
        payload = json.loads(capsys.readouterr().out)
        assert payload["failures"] == []
        assert len(payload["units"]) == 1

    def test_emit_writes_files(self, go_package, tmp_path, capsys):
        out = tmp_path / "out"
        with pytest.raises(SystemExit) as exc_info:
            main(["emit", "--source-path", str(go_package), "--output-dir", str(out)])
        assert exc_info.value.code == 0
        assert "[INFO] mathx.go ->" in capsys.readouterr().out
        assert (out / "mathx.cr").exists()

    def test_run_then_report(self, go_package, tmp_path, capsys):
        report_file = tmp_path / "report.json"
        with pytest.raises(SystemExit) as exc_info:
            main(["run", "--source-path", str(go_package), "--no-verify",
                  "--report-file", str(report_file)])
        assert exc_info.value.code == 0
        capsys.readouterr()
        with pytest.raises(SystemExit):
            main(["report", "--report-file", str(report_file)])
        assert capsys.readouterr().out.startswith("crport translation report: ")

    def test_report_missing_file(self, tmp_path, capsys):
        with pytest.raises(SystemExit) as exc_info:
            main(["report", "--report-file", str(tmp_path / "nope.json")])
        assert exc_info.value.code == 1
        assert "Report not found" in capsys.readouterr().err

    def test_bad_config_path(self, go_package, tmp_path, capsys):
        with pytest.raises(SystemExit) as exc_info:
            main(["--config", str(tmp_path / "missing.yaml"), "map", "--source-path", str(go_package)])
        assert exc_info.value.code == 1
        assert "[ERROR]" in capsys.readouterr().err
