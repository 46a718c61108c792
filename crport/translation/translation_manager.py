#!/usr/bin/env python3
# CUI // SP-CTI
"""Full pipeline orchestrator for Go -> Crystal translation.

Runs the 5-stage pipeline over a Go source tree:
  Stage 1: Extract (source_extractor.py)
  Stage 2: Map (mapping_engine.py + rule table)
  Stage 3: Emit (code_emitter.py, atomic per-file writes)
  Stage 4: Verify (test_translator.py + equivalence_verifier.py)
  Stage 5: Report (translation_report.py)

Files are mapped and emitted in parallel (ThreadPoolExecutor). The rule
table and dependency mappings are loaded once per batch and shared
read-only. In strict mode the first AmbiguousMappingError aborts the
batch: files not yet started are cancelled.

The batch fails (exit 1) when a file hit a ParseError, or an
AmbiguousMappingError in strict mode. UNSUPPORTED / LOSSY / MISMATCH
alone never fail the batch; they surface in the report.

Usage:
    crport run --source-path ./calc --output-dir ./out --report-file report.json
    crport extract --source-path ./calc --output-ir ir.json
    crport map --source-path ./calc --non-strict --json
    crport emit --source-path ./calc --output-dir ./out
    crport verify --source-path ./calc --timeout 30
    crport report --report-file report.json
"""

import argparse
import json
import logging
import sys
import textwrap
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path

from crport.translation.code_emitter import emit, write_atomic
from crport.translation.config import load_config
from crport.translation.dependency_mapper import load_mappings
from crport.translation.equivalence_verifier import verify
from crport.translation.errors import AmbiguousMappingError, CrportError
from crport.translation.mapping_engine import group_by_package, map_unit
from crport.translation.rule_table import load_rule_table
from crport.translation.source_extractor import extract_source
from crport.translation.test_translator import port_source
from crport.translation.translation_report import (
    VERDICT_FAIL,
    TranslationReport,
    build_report,
    write_report,
)

logger = logging.getLogger("crport.translation.translation_manager")


def _failure(unit_path, exc) -> dict:
    location = getattr(exc, "location", None)
    node = getattr(exc, "node", None)
    if location is None and node is not None:
        location = node.location
    return {
        "file": unit_path,
        "kind": type(exc).__name__,
        "location": str(location) if location is not None else "",
        "reason": getattr(exc, "reason", None) or str(exc),
    }


def translate_units(units, rule_table, strict=True, max_workers=4, output_dir=None,
                    mappings=None, emitter_config=None) -> dict:
    """Map and emit ``units`` concurrently.

    Returns dict with ``mapped`` / ``emitted`` (input order), ``failures``
    and ``cancelled`` (files skipped after a strict-mode abort).
    """
    units = list(units)
    groups = group_by_package(units)
    package_of = {id(u): members for members in groups.values() for u in members}
    abort = threading.Event()

    def job(unit):
        if abort.is_set():
            return None
        mapped = map_unit(unit, rule_table, strict=strict, mappings=mappings,
                          package_units=package_of[id(unit)])
        emitted = emit(mapped, source_hash=unit.source_hash, config=emitter_config,
                       output_dir=output_dir)
        if output_dir is not None:
            write_atomic(emitted.target_path, emitted.text)
        return mapped, emitted

    outcomes = {}
    failures = []
    cancelled = []
    with ThreadPoolExecutor(max_workers=max_workers) as pool:
        futures = {pool.submit(job, unit): i for i, unit in enumerate(units)}
        for future in as_completed(futures):
            i = futures[future]
            unit = units[i]
            if future.cancelled():
                cancelled.append(unit.path)
                continue
            try:
                outcome = future.result()
            except AmbiguousMappingError as exc:
                logger.error("%s", exc)
                failures.append(_failure(unit.path, exc))
                if strict:
                    abort.set()
                    for other in futures:
                        other.cancel()
                continue
            except CrportError as exc:
                logger.error("Translation failed for %s: %s", unit.path, exc)
                failures.append(_failure(unit.path, exc))
                continue
            except OSError as exc:
                logger.error("Could not write output for %s: %s", unit.path, exc)
                failures.append(_failure(unit.path, exc))
                continue
            if outcome is None:
                cancelled.append(unit.path)
            else:
                outcomes[i] = outcome

    order = sorted(outcomes)
    failures.sort(key=lambda f: f["file"])
    return {
        "mapped": [outcomes[i][0] for i in order],
        "emitted": [outcomes[i][1] for i in order],
        "failures": failures,
        "cancelled": sorted(cancelled),
    }


def verify_package_tests(source_path, units, emitted, rule_table, config=None,
                         runner=None, timeout=None, max_workers=None) -> dict:
    """Port the ``_test.go`` files under ``source_path`` and verify them.

    Returns dict with ``results`` (VerificationResults), ``suites`` and
    ``failures`` (test files that failed to parse).
    """
    ported = port_source(source_path, config=config)
    groups = group_by_package(units)
    emitted_by_source = {e.source_path: e for e in emitted}
    results = []
    for suite in ported["suites"]:
        key = (str(Path(suite.path).parent), suite.package)
        package_units = groups.get(key, [])
        artifact = [emitted_by_source[u.path] for u in package_units if u.path in emitted_by_source]
        results.extend(verify(suite.cases, artifact, runner=runner, timeout=timeout,
                              max_workers=max_workers, rule_table=rule_table,
                              units=package_units, config=config))
    failures = [{"file": e["file"], "kind": "ParseError", "location": "", "reason": e["error"]}
                for e in ported["errors"]]
    return {"results": results, "suites": ported["suites"], "failures": failures}


def run_batch(source_path, output_dir=None, rule_table=None, config=None, strict=None,
              max_workers=None, verify_tests=True, runner=None, timeout=None,
              report_path=None) -> dict:
    """Run the full pipeline over ``source_path``.

    Returns pipeline result dict with per-stage summaries, the
    TranslationReport, the mapped/emitted units and ``exit_code``.
    """
    start_time = time.time()
    config = config or load_config()
    batch_cfg = config.get("batch", {})
    strict = batch_cfg.get("strict", True) if strict is None else strict
    max_workers = max_workers or int(batch_cfg.get("max_workers", 4))

    result = {
        "source_path": str(source_path),
        "output_dir": str(output_dir) if output_dir else None,
        "strict": strict,
        "stages": {},
        "status": "running",
    }

    table = rule_table or load_rule_table(config=config)
    mappings = load_mappings(config=config)

    # ========== Stage 1: Extract ==========
    extraction = extract_source(source_path, config=config)
    failures = [{"file": e["file"], "kind": "ParseError", "location": e["location"],
                 "reason": e["reason"]} for e in extraction["errors"]]
    result["stages"]["extract"] = {
        "status": "completed",
        "file_count": extraction["file_count"],
        "construct_count": extraction["total_units"],
        "total_lines": extraction["total_lines"],
        "failed_files": len(extraction["errors"]),
    }

    # ========== Stage 2+3: Map + Emit ==========
    translated = translate_units(
        extraction["units"], table, strict=strict, max_workers=max_workers,
        output_dir=output_dir, mappings=mappings, emitter_config=config,
    )
    failures.extend(translated["failures"])
    aborted = strict and any(f["kind"] == "AmbiguousMappingError" for f in translated["failures"])
    result["stages"]["translate"] = {
        "status": "aborted" if aborted else "completed",
        "mapped": len(translated["mapped"]),
        "emitted": len(translated["emitted"]),
        "failed": len(translated["failures"]),
        "cancelled": translated["cancelled"],
    }
    if output_dir is not None:
        result["stages"]["translate"]["written"] = [e.target_path for e in translated["emitted"]]

    # ========== Stage 4: Verify ==========
    results = []
    if verify_tests and not aborted:
        verification = verify_package_tests(
            source_path, extraction["units"], translated["emitted"], table, config=config,
            runner=runner, timeout=timeout,
        )
        results = verification["results"]
        failures.extend(verification["failures"])
        result["stages"]["verify"] = {
            "status": "completed",
            "suites": len(verification["suites"]),
            "cases": len(results),
        }
    else:
        result["stages"]["verify"] = {
            "status": "skipped",
            "reason": "strict-mode abort" if aborted else "disabled",
        }

    # ========== Stage 5: Report ==========
    report = build_report(translated["mapped"], results, emitted=translated["emitted"],
                          failures=failures)
    if report_path is not None:
        write_report(report, report_path)
        result["stages"]["report"] = {"status": "completed", "report_file": str(report_path)}
    else:
        result["stages"]["report"] = {"status": "completed"}

    # Non-strict mapping records ties instead of raising, so every failure here is fatal
    batch_failed = bool(failures)
    result.update({
        "status": "failed" if batch_failed else "completed",
        "exit_code": 1 if batch_failed else 0,
        "verdict": report.verdict,
        "report": report,
        "mapped": translated["mapped"],
        "emitted": translated["emitted"],
        "results": results,
        "elapsed_seconds": round(time.time() - start_time, 2),
    })
    logger.info("Batch %s: %d files, verdict %s", result["status"],
                len(translated["mapped"]), report.verdict)
    return result


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------
def _cmd_extract(args, config):
    extraction = extract_source(args.source_path, config=config, include_tests=args.include_tests)
    payload = dict(extraction)
    payload["units"] = [u.to_dict() for u in extraction["units"]]
    if args.output_ir:
        write_atomic(args.output_ir, json.dumps(payload, indent=2) + "\n")
    if args.json_output:
        summary = {k: v for k, v in payload.items() if k != "units"}
        summary["output_ir"] = args.output_ir
        print(json.dumps(summary, indent=2))
    else:
        print(f"[INFO] Extracted {extraction['total_units']} constructs from "
              f"{extraction['file_count']} Go files ({extraction['total_lines']} lines)")
        for err in extraction["errors"]:
            print(f"[ERROR] {err['location']}: {err['reason']}", file=sys.stderr)
    return 1 if extraction["errors"] else 0


def _cmd_translate(args, config, write: bool):
    table = load_rule_table(args.rules, config=config)
    extraction = extract_source(args.source_path, config=config)
    strict = not args.non_strict
    translated = translate_units(
        extraction["units"], table, strict=strict,
        max_workers=int(config["batch"].get("max_workers", 4)),
        output_dir=args.output_dir if write else None,
        mappings=load_mappings(config=config), emitter_config=config,
    )
    failures = [{"file": e["file"], "kind": "ParseError", "location": e["location"],
                 "reason": e["reason"]} for e in extraction["errors"]] + translated["failures"]
    if args.json_output:
        payload = {"failures": failures, "cancelled": translated["cancelled"]}
        if write:
            payload["emitted"] = [{"source_path": e.source_path, "target_path": e.target_path,
                                   "module": e.module, "functions": e.function_map()}
                                  for e in translated["emitted"]]
        else:
            payload["units"] = [m.to_dict(include_text=args.show_text) for m in translated["mapped"]]
        print(json.dumps(payload, indent=2))
    else:
        if write:
            for e in translated["emitted"]:
                if args.output_dir:
                    print(f"[INFO] {e.source_path} -> {e.target_path}")
                else:
                    print(e.text)
        else:
            for m in translated["mapped"]:
                print(f"{m.path} -> module {m.module}")
                for c in m.constructs:
                    print(f"  [{c.confidence.value}] {c.node.kind.value} {c.node.name} -> {c.target_name}")
                    if args.show_text:
                        print(textwrap.indent(c.text, "      "))
                for a in m.ambiguities:
                    print(f"  [WARN] ambiguous {a.subject}: {', '.join(a.rule_ids)}")
        for f in failures:
            print(f"[ERROR] {f['location'] or f['file']}: {f['reason']}", file=sys.stderr)
        for path in translated["cancelled"]:
            print(f"[WARN] {path}: cancelled", file=sys.stderr)
    return 1 if failures else 0


def _cmd_verify(args, config):
    table = load_rule_table(args.rules, config=config)
    extraction = extract_source(args.source_path, config=config)
    translated = translate_units(extraction["units"], table, strict=False,
                                 mappings=load_mappings(config=config), emitter_config=config)
    verification = verify_package_tests(args.source_path, extraction["units"],
                                        translated["emitted"], table, config=config,
                                        timeout=args.timeout, max_workers=args.workers)
    results = verification["results"]
    if args.json_output:
        print(json.dumps({"results": [r.to_dict() for r in results],
                          "failures": verification["failures"]}, indent=2))
    else:
        for r in results:
            line = f"[{r.status.value}] {r.case_id} ({r.location})"
            if r.status.value == "MISMATCH":
                line += f": expected {r.expected}, got {r.actual}"
            elif r.detail:
                line += f": {r.detail.splitlines()[0]}"
            print(line)
        for f in verification["failures"]:
            print(f"[ERROR] {f['file']}: {f['reason']}", file=sys.stderr)
    failed = any(r.status.value in ("MISMATCH", "ERROR") for r in results)
    return 1 if failed or verification["failures"] else 0


def _cmd_report(args, config):
    path = Path(args.report_file)
    if not path.exists():
        print(f"[ERROR] Report not found: {path}", file=sys.stderr)
        return 1
    with open(path, encoding="utf-8") as f:
        report = TranslationReport.from_dict(json.load(f))
    if args.json_output:
        print(json.dumps(report.to_dict(), indent=2))
    else:
        print(report.render_text(), end="")
    return 1 if report.verdict == VERDICT_FAIL else 0


def _cmd_run(args, config):
    result = run_batch(
        args.source_path,
        output_dir=args.output_dir,
        rule_table=load_rule_table(args.rules, config=config) if args.rules else None,
        config=config,
        strict=False if args.non_strict else None,
        max_workers=args.workers,
        verify_tests=not args.no_verify,
        timeout=args.timeout,
        report_path=args.report_file,
    )
    report = result["report"]
    if args.json_output:
        payload = {k: v for k, v in result.items()
                   if k not in ("report", "mapped", "emitted", "results")}
        payload["report"] = report.to_dict()
        print(json.dumps(payload, indent=2))
    else:
        print(f"crport: {args.source_path} -> {args.output_dir or '(not written)'}")
        print(f"  Status:   {result['status'].upper()}")
        print(f"  Elapsed:  {result['elapsed_seconds']}s")
        for stage, info in result["stages"].items():
            print(f"  Stage [{stage}]: {info['status'].upper()}")
        print()
        print(report.render_text(), end="")
    return result["exit_code"]


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="crport",
        description="crport: deterministic Go -> Crystal translation with equivalence checks",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=textwrap.dedent("""\
            Examples:
              crport run --source-path ./calc --output-dir ./out --report-file report.json
              crport map --source-path ./calc --non-strict --show-text
              crport verify --source-path ./calc --json
        """),
    )
    parser.add_argument("--config",
                        help="Translation config YAML (default: crport/args/translation_config.yaml)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", help="Pipeline command")

    def add(name, help_text):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("--json", action="store_true", dest="json_output", help="JSON output")
        return p

    p_extract = add("extract", "Go source -> construct model")
    p_extract.add_argument("--source-path", required=True, help="Go file or directory")
    p_extract.add_argument("--output-ir", help="Write the construct model JSON here")
    p_extract.add_argument("--include-tests", action="store_true", help="Extract _test.go files instead")

    p_map = add("map", "Map constructs through the rule table")
    p_map.add_argument("--source-path", required=True, help="Go file or directory")
    p_map.add_argument("--rules", help="Rule table YAML (default: from config)")
    p_map.add_argument("--non-strict", action="store_true", help="Record rule ties instead of failing")
    p_map.add_argument("--show-text", action="store_true", help="Include rendered Crystal text")

    p_emit = add("emit", "Emit Crystal files")
    p_emit.add_argument("--source-path", required=True, help="Go file or directory")
    p_emit.add_argument("--output-dir", help="Write .cr files here (default: print)")
    p_emit.add_argument("--rules", help="Rule table YAML (default: from config)")
    p_emit.add_argument("--non-strict", action="store_true", help="Record rule ties instead of failing")

    p_verify = add("verify", "Run ported Go tests against the emitted Crystal")
    p_verify.add_argument("--source-path", required=True, help="Go package directory")
    p_verify.add_argument("--rules", help="Rule table YAML (default: from config)")
    p_verify.add_argument("--timeout", type=float, help="Per-case timeout in seconds")
    p_verify.add_argument("--workers", type=int, help="Concurrent cases")

    p_report = add("report", "Render a saved report")
    p_report.add_argument("--report-file", required=True, help="Report JSON written by 'run'")

    p_run = add("run", "Full pipeline: extract, map, emit, verify, report")
    p_run.add_argument("--source-path", required=True, help="Go file or directory")
    p_run.add_argument("--output-dir", help="Write .cr files here")
    p_run.add_argument("--rules", help="Rule table YAML (default: from config)")
    p_run.add_argument("--non-strict", action="store_true", help="Record rule ties instead of failing")
    p_run.add_argument("--no-verify", action="store_true", help="Skip test porting and verification")
    p_run.add_argument("--timeout", type=float, help="Per-case timeout in seconds")
    p_run.add_argument("--workers", type=int, help="Concurrent files")
    p_run.add_argument("--report-file", help="Write the report JSON here")

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )

    if not args.command:
        parser.print_help()
        sys.exit(1)

    try:
        config = load_config(args.config)
        if args.command == "extract":
            code = _cmd_extract(args, config)
        elif args.command == "map":
            code = _cmd_translate(args, config, write=False)
        elif args.command == "emit":
            code = _cmd_translate(args, config, write=True)
        elif args.command == "verify":
            code = _cmd_verify(args, config)
        elif args.command == "report":
            code = _cmd_report(args, config)
        else:
            code = _cmd_run(args, config)
    except CrportError as exc:
        print(f"[ERROR] {exc}", file=sys.stderr)
        sys.exit(1)
    sys.exit(code)


if __name__ == "__main__":
    main()
