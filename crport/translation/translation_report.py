#!/usr/bin/env python3
# CUI // SP-CTI
"""Translation Report: read-only aggregation of one translation run.

Collects every mapping decision, every per-file failure and every
verification outcome into one structure rendered as JSON (``to_dict``)
or as a human summary (``render_text``). The report replaces prose
review: LOSSY and UNSUPPORTED constructs, rule ties and non-matching
tests are listed with their source locations.

Verdict:
    FAIL    a file failed (ParseError, AmbiguousMappingError) or a test
            case ended MISMATCH / ERROR
    REVIEW  no failures, but LOSSY / UNSUPPORTED constructs, ambiguities
            or PENDING test cases remain
    PASS    everything EXACT / IDIOMATIC-EQUIVALENT and every case matched
"""

import argparse
import json
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from crport.schemas.pipeline import VerificationStatus
from crport.translation.construct_model import Confidence, ConstructKind

VERDICT_PASS = "PASS"
VERDICT_REVIEW = "REVIEW"
VERDICT_FAIL = "FAIL"

_FAILING_STATUSES = (VerificationStatus.MISMATCH, VerificationStatus.ERROR)


def check_api_surface(mapped_units) -> Tuple[float, List[str]]:
    """Share of exported source functions and types present (non-stub) in the target.

    Returns (score, findings) where findings name each missing symbol.
    """
    total = 0
    present = 0
    findings = []
    for unit in mapped_units:
        for mc in unit.constructs:
            node = mc.node
            if not node.exported or node.kind not in (ConstructKind.FUNCTION, ConstructKind.TYPE_DECL):
                continue
            total += 1
            if mc.implemented:
                present += 1
            else:
                label = node.name
                if node.attr("receiver_type"):
                    label = f"{node.attr('receiver_type')}.{node.name}"
                findings.append(f"Missing: {label} ({node.kind.value}) at {node.location}")
    score = present / total if total else 1.0
    return round(score, 3), findings


@dataclass(frozen=True)
class TranslationReport:
    totals: dict
    by_confidence: Dict[str, int]
    constructs: Tuple[dict, ...]
    unsupported: Tuple[dict, ...]
    lossy: Tuple[dict, ...]
    ambiguities: Tuple[dict, ...]
    failures: Tuple[dict, ...]
    verification: Dict[str, int]
    verification_results: Tuple[dict, ...]
    api_surface: dict
    verdict: str

    def to_dict(self) -> dict:
        return {
            "verdict": self.verdict,
            "totals": dict(self.totals),
            "by_confidence": dict(self.by_confidence),
            "api_surface": dict(self.api_surface),
            "verification": dict(self.verification),
            "failures": list(self.failures),
            "ambiguities": list(self.ambiguities),
            "unsupported": list(self.unsupported),
            "lossy": list(self.lossy),
            "constructs": list(self.constructs),
            "verification_results": list(self.verification_results),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "TranslationReport":
        return cls(
            totals=data["totals"],
            by_confidence=data["by_confidence"],
            constructs=tuple(data.get("constructs", [])),
            unsupported=tuple(data.get("unsupported", [])),
            lossy=tuple(data.get("lossy", [])),
            ambiguities=tuple(data.get("ambiguities", [])),
            failures=tuple(data.get("failures", [])),
            verification=data["verification"],
            verification_results=tuple(data.get("verification_results", [])),
            api_surface=data["api_surface"],
            verdict=data["verdict"],
        )

    def render_text(self) -> str:
        lines = [
            f"crport translation report: {self.verdict}",
            f"  Files:      {self.totals['files']} translated, {self.totals['failed_files']} failed",
            f"  Constructs: {self.totals['constructs']}",
        ]
        for tag in Confidence:
            lines.append(f"    {tag.value:<22} {self.by_confidence.get(tag.value, 0)}")
        surface = self.api_surface
        lines.append(f"  API surface: {surface['present']}/{surface['total']} "
                     f"({surface['score'] * 100:.1f}%)")
        v = self.verification
        lines.append(f"  Tests:      {v['total']} cases: {v['match']} match, {v['mismatch']} mismatch, "
                     f"{v['error']} error, {v['pending']} pending")
        if self.failures:
            lines.append("")
            lines.append("Failures:")
            for f in self.failures:
                lines.append(f"  [{f['kind']}] {f['location'] or f['file']}: {f['reason']}")
        if self.ambiguities:
            lines.append("")
            lines.append("Ambiguous mappings:")
            for a in self.ambiguities:
                lines.append(f"  {a['location']} {a['identifier']} ({a['subject']}): "
                             f"{', '.join(a['rule_ids'])}")
        for title, entries in (("Unsupported", self.unsupported), ("Lossy", self.lossy)):
            if not entries:
                continue
            lines.append("")
            lines.append(f"{title}:")
            for e in entries:
                note = f" - {e['note']}" if e.get("note") else ""
                lines.append(f"  {e['location']} {e['kind']} {e['identifier']} [{e['subject']}]{note}")
        bad = [r for r in self.verification_results
               if r["status"] in (VerificationStatus.MISMATCH.value, VerificationStatus.ERROR.value)]
        if bad:
            lines.append("")
            lines.append("Test failures:")
            for r in bad:
                if r["status"] == VerificationStatus.MISMATCH.value:
                    lines.append(f"  [MISMATCH] {r['case_id']} ({r.get('location', '')}): "
                                 f"expected {r['expected']}, got {r.get('actual', '')}")
                else:
                    detail = (r.get("detail") or "").splitlines()
                    lines.append(f"  [ERROR] {r['case_id']} ({r.get('location', '')}): "
                                 f"{detail[0] if detail else ''}")
        return "\n".join(lines) + "\n"


def _target_location(mc, emitted_by_source) -> Optional[str]:
    unit = emitted_by_source.get(mc.node.location.file)
    if unit is None:
        return None
    span = unit.location_of(mc.node.node_id)
    if span is None:
        return None
    start, end = span
    return f"{unit.target_path}:{start}" if start == end else f"{unit.target_path}:{start}-{end}"


def _review_entries(mc, tag: Confidence) -> List[dict]:
    """One entry per nested decision carrying ``tag`` (or the construct itself)."""
    entries = [{
        "kind": d.kind,
        "identifier": d.identifier,
        "subject": d.subject,
        "rule_id": d.rule_id or None,
        "location": str(d.location),
        "note": d.note,
        "construct": mc.node.name,
    } for d in mc.decisions if d.confidence == tag]
    if not entries:
        entries.append({
            "kind": mc.node.kind.value,
            "identifier": mc.node.name,
            "subject": "",
            "rule_id": mc.rule.rule_id if mc.rule else None,
            "location": str(mc.node.location),
            "note": "",
            "construct": mc.node.name,
        })
    return entries


def _failure_entry(failure: dict) -> dict:
    return {
        "file": failure.get("file") or failure.get("path", ""),
        "kind": failure.get("kind", "ParseError"),
        "location": failure.get("location", ""),
        "reason": failure.get("reason") or failure.get("error", ""),
    }


def build_report(mapped_units, results, emitted=None, failures=None) -> TranslationReport:
    """Aggregate mapped units, verification results and per-file failures."""
    mapped_units = list(mapped_units)
    results = list(results or ())
    emitted_by_source = {e.source_path: e for e in (emitted or ())}

    by_confidence = {tag.value: 0 for tag in Confidence}
    constructs, unsupported, lossy, ambiguities = [], [], [], []
    for unit in mapped_units:
        for mc in unit.constructs:
            by_confidence[mc.confidence.value] += 1
            constructs.append({
                "kind": mc.node.kind.value,
                "identifier": mc.node.name,
                "target_name": mc.target_name,
                "confidence": mc.confidence.value,
                "rule_id": mc.rule.rule_id if mc.rule else None,
                "source_location": str(mc.node.location),
                "target_location": _target_location(mc, emitted_by_source),
            })
            if mc.confidence == Confidence.UNSUPPORTED:
                unsupported.extend(_review_entries(mc, Confidence.UNSUPPORTED))
            elif mc.confidence == Confidence.LOSSY:
                lossy.extend(_review_entries(mc, Confidence.LOSSY))
        ambiguities.extend(a.to_dict() for a in unit.ambiguities)

    verification = {"total": len(results)}
    for status in VerificationStatus:
        verification[status.value.lower()] = sum(1 for r in results if r.status == status)

    failure_entries = tuple(_failure_entry(f) for f in (failures or ()))
    score, findings = check_api_surface(mapped_units)
    surface_total = sum(1 for u in mapped_units for mc in u.constructs
                        if mc.node.exported
                        and mc.node.kind in (ConstructKind.FUNCTION, ConstructKind.TYPE_DECL))
    api_surface = {
        "score": score,
        "total": surface_total,
        "present": surface_total - len(findings),
        "missing": findings,
    }

    if failure_entries or any(r.status in _FAILING_STATUSES for r in results):
        verdict = VERDICT_FAIL
    elif unsupported or lossy or ambiguities or verification["pending"]:
        verdict = VERDICT_REVIEW
    else:
        verdict = VERDICT_PASS

    return TranslationReport(
        totals={
            "files": len(mapped_units),
            "failed_files": len({f["file"] for f in failure_entries}),
            "constructs": len(constructs),
        },
        by_confidence=by_confidence,
        constructs=tuple(constructs),
        unsupported=tuple(unsupported),
        lossy=tuple(lossy),
        ambiguities=tuple(ambiguities),
        failures=failure_entries,
        verification=verification,
        verification_results=tuple(r.to_dict() for r in results),
        api_surface=api_surface,
        verdict=verdict,
    )


def write_report(report: TranslationReport, path) -> Path:
    """Write the report JSON atomically."""
    from crport.translation.code_emitter import write_atomic
    return write_atomic(path, json.dumps(report.to_dict(), indent=2) + "\n")


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------
def main():
    parser = argparse.ArgumentParser(
        description="crport Translation Report: render a saved report JSON as text",
    )
    parser.add_argument("--report-file", required=True, help="Report JSON written by 'crport run'")
    parser.add_argument("--json", action="store_true", dest="json_output", help="Re-emit as JSON")
    args = parser.parse_args()

    path = Path(args.report_file)
    if not path.exists():
        print(f"[ERROR] Report not found: {path}", file=sys.stderr)
        sys.exit(1)
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    report = TranslationReport.from_dict(data)
    if args.json_output:
        print(json.dumps(report.to_dict(), indent=2))
    else:
        print(report.render_text(), end="")
    sys.exit(1 if report.verdict == VERDICT_FAIL else 0)


if __name__ == "__main__":
    main()
