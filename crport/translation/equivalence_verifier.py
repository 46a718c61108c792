#!/usr/bin/env python3
# CUI // SP-CTI
"""Equivalence Verifier: run ported Go tests against emitted Crystal.

Each ported TestCase becomes a small Crystal harness that reopens the
emitted module, calls the translated function with the rendered source
arguments and compares the result with the rendered expected literal.
The harness prints one marker line the verifier classifies:

    CRPORT:MATCH              -> MATCH
    CRPORT:MISMATCH + value   -> MISMATCH(expected, actual)
    CRPORT:RAISED message     -> MATCH when the Go test expected an error,
                                 otherwise MISMATCH(actual="raised: ...")
    (no marker / timeout)     -> ERROR(detail)

Cases whose function is missing from the artifact, is a stub, or whose
arguments cannot be rendered are PENDING. Nothing is retried. Cases run
concurrently, each in its own temporary directory; results come back in
case order.

Usage:
    python -m crport.translation.equivalence_verifier --source-path ./calc --json
"""

import argparse
import json
import logging
import os
import signal
import subprocess
import sys
import tempfile
import textwrap
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import jinja2

from crport.schemas.pipeline import (
    EmittedUnit,
    TestCase,
    VerificationResult,
    VerificationStatus,
)
from crport.translation.config import load_config
from crport.translation.construct_model import (
    Confidence,
    ConstructKind,
    TypeKind,
    make_node,
)
from crport.translation.errors import CrportError
from crport.translation.mapping_engine import render_expression

logger = logging.getLogger("crport.translation.equivalence_verifier")

MARKER = "CRPORT:"
HARNESS_FILE = "crport_verify.cr"
_DETAIL_LINES = 12

HARNESS_TEMPLATE = """\
# CUI // SP-CTI
# crport verification harness: {{ case_id }} ({{ test_name }})
{% for r in requires %}
require "./{{ r }}"
{% endfor %}

module {{ module }}
  def self.crport_verify
{% if expect_error %}
    begin
      actual = {{ call }}
    rescue ex
      puts "CRPORT:RAISED #{ex.message}"
      return
    end
    puts "CRPORT:MISMATCH"
    puts actual.inspect
{% elif expected is none %}
    {{ call }}
    puts "CRPORT:MATCH"
{% else %}
    actual = {{ call }}
    expected = {{ expected }}
    if actual == expected
      puts "CRPORT:MATCH"
    else
      puts "CRPORT:MISMATCH"
      puts actual.inspect
    end
{% endif %}
  rescue ex
    puts "CRPORT:RAISED #{ex.message}"
  end
end

{{ module }}.crport_verify
"""


@lru_cache(maxsize=1)
def _harness_template() -> jinja2.Template:
    env = jinja2.Environment(
        loader=jinja2.BaseLoader(),
        undefined=jinja2.StrictUndefined,
        keep_trailing_newline=True,
        trim_blocks=True,
        lstrip_blocks=True,
    )
    return env.from_string(HARNESS_TEMPLATE)


@dataclass(frozen=True)
class RunOutcome:
    """What one harness execution produced."""

    returncode: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False


class CrystalRunner:
    """Runs a harness with ``crystal run`` in a fresh temporary directory."""

    def __init__(self, command: Optional[Sequence[str]] = None, config=None):
        if command is None:
            config = config or load_config()
            command = config.get("verification", {}).get("runner_command",
                                                          ["crystal", "run", "--no-color"])
        self.command = list(command)

    def run(self, files: Dict[str, str], entry: str, timeout: float) -> RunOutcome:
        with tempfile.TemporaryDirectory(prefix="crport-verify-") as workdir:
            for name, text in files.items():
                (Path(workdir) / name).write_text(text, encoding="utf-8")
            cmd = self.command + [entry]
            try:
                # Own session so a timeout can kill the compiled program too
                process = subprocess.Popen(
                    cmd, cwd=workdir, stdin=subprocess.DEVNULL, stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE, text=True, start_new_session=True,
                )
            except FileNotFoundError as exc:
                return RunOutcome(returncode=127, stderr=f"runner not available: {exc}")
            try:
                stdout, stderr = process.communicate(timeout=timeout)
            except subprocess.TimeoutExpired:
                _kill_group(process)
                process.communicate()
                return RunOutcome(returncode=-1, timed_out=True)
        return RunOutcome(process.returncode, stdout, stderr)


def _kill_group(process: subprocess.Popen) -> None:
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass


def _artifact_units(artifact) -> List[EmittedUnit]:
    if isinstance(artifact, EmittedUnit):
        return [artifact]
    return list(artifact or ())


def _function_signature(name: str, units):
    for unit in units:
        for node in unit.nodes:
            if node.kind == ConstructKind.FUNCTION and node.form == "function" and node.name == name:
                return node.signature
    return None


def _local_call(case: TestCase, units):
    """The case's call as a same-module call with the production signature."""
    call = case.call_node
    callee = call.first("func")
    signature = _function_signature(case.function, units) or callee.signature
    func = make_node(ConstructKind.EXPRESSION, case.function, signature, callee.location,
                     form="ident", attrs={"ref": "func"})
    attrs = dict(call.attrs)
    attrs.update({"callee": "local", "function": case.function})
    result = signature.result() if signature.kind == TypeKind.FUNC else call.signature
    return make_node(ConstructKind.EXPRESSION, case.function, result, call.location,
                     form="call", attrs=attrs,
                     children={"func": [func], "args": list(call.child("args"))})


def _value_type(sig):
    return sig.elem if sig.kind == TypeKind.ERROR_UNION else sig


def build_harness(case: TestCase, module: str, requires: Sequence[str], rule_table,
                  units=()) -> Optional[str]:
    """Crystal harness text for ``case``, or None when it cannot be rendered."""
    call = _local_call(case, units)
    call_text, confidence = render_expression(call, rule_table, units=units, module=module)
    if confidence == Confidence.UNSUPPORTED:
        return None
    expected_text = None
    if case.expected_node is not None:
        expected_text, confidence = render_expression(
            case.expected_node, rule_table, expected=_value_type(call.signature),
            units=units, module=module)
        if confidence == Confidence.UNSUPPORTED:
            return None
    return _harness_template().render(
        case_id=case.case_id,
        test_name=case.test_name,
        requires=[Path(r).stem for r in requires],
        module=module,
        call=call_text,
        expected=expected_text,
        expect_error=case.expect_error,
    )


def classify(case: TestCase, outcome: RunOutcome) -> VerificationResult:
    """Turn a harness run into a VerificationResult."""
    base = {"case_id": case.case_id, "expected": case.expected, "location": case.location}
    if outcome.timed_out:
        return VerificationResult(status=VerificationStatus.ERROR, detail="timeout", **base)
    lines = outcome.stdout.splitlines()
    for i, line in enumerate(lines):
        if not line.startswith(MARKER):
            continue
        marker, _, rest = line[len(MARKER):].partition(" ")
        if marker == "MATCH":
            return VerificationResult(status=VerificationStatus.MATCH, **base)
        if marker == "MISMATCH":
            actual = lines[i + 1] if i + 1 < len(lines) else ""
            return VerificationResult(status=VerificationStatus.MISMATCH, actual=actual, **base)
        if marker == "RAISED":
            if case.expect_error:
                return VerificationResult(status=VerificationStatus.MATCH, **base)
            return VerificationResult(status=VerificationStatus.MISMATCH,
                                      actual=f"raised: {rest}", **base)
    output = (outcome.stderr or outcome.stdout or "").strip().splitlines()
    detail = "\n".join(output[-_DETAIL_LINES:]) or f"exit status {outcome.returncode}"
    return VerificationResult(status=VerificationStatus.ERROR, detail=detail, **base)


def _pending(case: TestCase, detail: str) -> VerificationResult:
    return VerificationResult(case_id=case.case_id, status=VerificationStatus.PENDING,
                              expected=case.expected, detail=detail, location=case.location)


def verify(cases, artifact, runner=None, timeout: Optional[float] = None,
           max_workers: Optional[int] = None, rule_table=None, units=(),
           config=None) -> List[VerificationResult]:
    """Verify ``cases`` against the emitted ``artifact`` (EmittedUnit or list).

    ``units`` are the production TranslationUnits of the package, used to
    type the rendered arguments. Returns one result per case, in case order.
    """
    config = config or load_config()
    vcfg = config.get("verification", {})
    timeout = timeout if timeout is not None else float(vcfg.get("timeout_seconds", 60))
    max_workers = max_workers or int(vcfg.get("max_workers", 4))
    runner = runner or CrystalRunner(config=config)
    if rule_table is None:
        from crport.translation.rule_table import load_rule_table
        rule_table = load_rule_table(config=config)

    emitted = _artifact_units(artifact)
    owners: Dict[str, EmittedUnit] = {}
    for unit in emitted:
        for source_name in unit.function_map():
            owners.setdefault(source_name, unit)
    files = {Path(u.target_path).name: u.text for u in emitted}

    def run_case(case: TestCase) -> VerificationResult:
        if not case.ported:
            return _pending(case, case.note or "test not ported")
        owner = owners.get(case.function)
        if owner is None:
            return _pending(case, f"function {case.function} not implemented in target")
        try:
            harness = build_harness(case, owner.module, sorted(files), rule_table, units)
        except CrportError as exc:
            return VerificationResult(case_id=case.case_id, status=VerificationStatus.ERROR,
                                      expected=case.expected, detail=str(exc),
                                      location=case.location)
        if harness is None:
            return _pending(case, "test arguments not translatable")
        outcome = runner.run(dict(files, **{HARNESS_FILE: harness}), HARNESS_FILE, timeout)
        result = classify(case, outcome)
        logger.debug("%s %s -> %s", case.case_id, case.call_text(), result.status.value)
        return result

    cases = list(cases)
    if not cases:
        return []
    with ThreadPoolExecutor(max_workers=max_workers) as pool:
        results = list(pool.map(run_case, cases))
    counts = {}
    for r in results:
        counts[r.status.value] = counts.get(r.status.value, 0) + 1
    logger.info("Verified %d cases: %s", len(results),
                ", ".join(f"{k}={v}" for k, v in sorted(counts.items())))
    return results


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------
def main():
    from crport.translation.code_emitter import emit
    from crport.translation.mapping_engine import group_by_package, map_unit
    from crport.translation.rule_table import load_rule_table
    from crport.translation.source_extractor import extract_source
    from crport.translation.test_translator import port_source

    parser = argparse.ArgumentParser(
        description="crport Equivalence Verifier: run ported Go tests against Crystal output",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=textwrap.dedent("""\
            Examples:
              python -m crport.translation.equivalence_verifier --source-path ./calc --json
              python -m crport.translation.equivalence_verifier --source-path ./calc --timeout 30
        """),
    )
    parser.add_argument("--source-path", required=True, help="Go package directory")
    parser.add_argument("--rules", help="Rule table YAML (default: from config)")
    parser.add_argument("--timeout", type=float, help="Per-case timeout in seconds")
    parser.add_argument("--workers", type=int, help="Concurrent cases")
    parser.add_argument("--json", action="store_true", dest="json_output", help="JSON output")
    args = parser.parse_args()

    try:
        table = load_rule_table(args.rules)
        extraction = extract_source(args.source_path)
        ported = port_source(args.source_path)
    except CrportError as exc:
        print(f"[ERROR] {exc}", file=sys.stderr)
        sys.exit(1)

    results = []
    groups = group_by_package(extraction["units"])
    for suite in ported["suites"]:
        key = (str(Path(suite.path).parent), suite.package)
        units = groups.get(key, [])
        emitted = [emit(map_unit(u, table, strict=False, package_units=units), u.source_hash)
                   for u in units]
        results.extend(verify(suite.cases, emitted, timeout=args.timeout,
                              max_workers=args.workers, rule_table=table, units=units))

    if args.json_output:
        print(json.dumps({"results": [r.to_dict() for r in results],
                          "errors": ported["errors"]}, indent=2))
    else:
        for r in results:
            line = f"[{r.status.value}] {r.case_id} ({r.location})"
            if r.status == VerificationStatus.MISMATCH:
                line += f": expected {r.expected}, got {r.actual}"
            elif r.detail:
                line += f": {r.detail.splitlines()[0]}"
            print(line)
    failed = any(r.status in (VerificationStatus.MISMATCH, VerificationStatus.ERROR)
                 for r in results)
    sys.exit(1 if failed or ported["errors"] else 0)


if __name__ == "__main__":
    main()
