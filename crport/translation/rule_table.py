#!/usr/bin/env python3
# CUI // SP-CTI
"""Rule Table: declarative Go -> Crystal mapping rules.

Rules live in crport/context/translation/go_crystal_rules.yaml, grouped by
construct kind. Each rule maps a canonical match subject pattern (``*``
matches any run of characters) to a Jinja2 target template and a
confidence tag. Add or retune mappings without code changes.

Selection: among the rules of the node's kind whose pattern matches the
subject, the one with the most literal characters wins. Two winners of
equal specificity are an ambiguity; the mapping engine decides what that
means (error in strict mode, advisory entry otherwise).

The table is loaded once per batch and never mutated.

Usage:
    python -m crport.translation.rule_table --json
    python -m crport.translation.rule_table --subject type int8 --json
    python -m crport.translation.rule_table --lint
"""

import argparse
import json
import logging
import sys
import textwrap
import threading
from functools import lru_cache
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import jinja2
import yaml

from crport.schemas.pipeline import RULE_KINDS, MappingRule
from crport.translation.config import BASE_DIR, load_config, resolve_path
from crport.translation.construct_model import Confidence
from crport.translation.errors import RuleTableError

logger = logging.getLogger("crport.translation.rule_table")

DEFAULT_RULES_PATH = BASE_DIR / "context" / "translation" / "go_crystal_rules.yaml"

_REQUIRED_FIELDS = ("id", "pattern", "template", "confidence")
_OPTIONAL_FIELDS = ("note", "zero", "suffix", "cast")


def _patterns_overlap(a: str, b: str) -> bool:
    """True if some subject string matches both wildcard patterns."""

    @lru_cache(maxsize=None)
    def walk(i: int, j: int) -> bool:
        if i == len(a) and j == len(b):
            return True
        if i < len(a) and a[i] == "*":
            return walk(i + 1, j) or (j < len(b) and walk(i, j + 1))
        if j < len(b) and b[j] == "*":
            return walk(i, j + 1) or (i < len(a) and walk(i + 1, j))
        return i < len(a) and j < len(b) and a[i] == b[j] and walk(i + 1, j + 1)

    return walk(0, 0)


class RuleTable:
    """Read-only, indexed collection of MappingRules plus fallback templates."""

    def __init__(self, rules, fallbacks=None, source: str = "", version: str = ""):
        self.rules: Tuple[MappingRule, ...] = tuple(rules)
        self.fallbacks: Dict[str, str] = dict(fallbacks or {})
        self.source = source
        self.version = version
        self._by_kind: Dict[str, Tuple[MappingRule, ...]] = {
            kind: tuple(r for r in self.rules if r.kind == kind) for kind in RULE_KINDS
        }
        self._by_id = {r.rule_id: r for r in self.rules}
        self._cache: Dict[Tuple[str, str], Tuple[MappingRule, ...]] = {}
        self._cache_lock = threading.Lock()

    def __len__(self):
        return len(self.rules)

    def get(self, rule_id: str) -> Optional[MappingRule]:
        return self._by_id.get(rule_id)

    def rules_for(self, kind: str) -> Tuple[MappingRule, ...]:
        return self._by_kind.get(kind, ())

    def candidates(self, kind: str, subject: str) -> List[MappingRule]:
        """Every rule of ``kind`` whose pattern matches ``subject``."""
        return [r for r in self.rules_for(kind) if r.matches(subject)]

    def best_matches(self, kind: str, subject: str) -> Tuple[MappingRule, ...]:
        """The most specific matching rules: () for no match, 2+ for a tie.

        Safe to call from the batch worker threads. Results are memoised per
        (kind, subject); the first stored tuple is the one every caller gets.
        """
        key = (kind, subject)
        cached = self._cache.get(key)
        if cached is not None:
            return cached
        matches = self.candidates(kind, subject)
        if not matches:
            best = ()
        else:
            top = max(r.specificity for r in matches)
            best = tuple(sorted((r for r in matches if r.specificity == top),
                                key=lambda r: r.rule_id))
        with self._cache_lock:
            return self._cache.setdefault(key, best)

    def conflicts(self) -> List[dict]:
        """Pairs of same-kind rules that tie on some subject.

        Two patterns conflict when they have equal specificity and at least
        one subject string matches both.
        """
        found = []
        for kind in RULE_KINDS:
            rules = self.rules_for(kind)
            for i, first in enumerate(rules):
                for second in rules[i + 1:]:
                    if first.specificity != second.specificity:
                        continue
                    if _patterns_overlap(first.pattern, second.pattern):
                        found.append({
                            "kind": kind,
                            "rule_ids": [first.rule_id, second.rule_id],
                            "patterns": [first.pattern, second.pattern],
                            "specificity": first.specificity,
                        })
        return found

    def to_dict(self) -> dict:
        return {
            "source": self.source,
            "version": self.version,
            "total_rules": len(self.rules),
            "by_kind": {kind: len(self.rules_for(kind)) for kind in RULE_KINDS},
            "rules": [r.to_dict() for r in self.rules],
            "fallbacks": sorted(self.fallbacks),
        }


def _parse_rule(kind: str, entry, seen_ids: set, env: jinja2.Environment) -> MappingRule:
    if not isinstance(entry, dict):
        raise RuleTableError(f"Rule under '{kind}' must be a mapping, got {type(entry).__name__}")
    missing = [f for f in _REQUIRED_FIELDS if f not in entry]
    if missing:
        raise RuleTableError(f"Rule under '{kind}' missing fields: {', '.join(missing)}",
                             rule_id=str(entry.get("id", "")))
    rule_id = str(entry["id"])
    if rule_id in seen_ids:
        raise RuleTableError(f"Duplicate rule id: {rule_id}", rule_id=rule_id)
    seen_ids.add(rule_id)
    unknown = set(entry) - set(_REQUIRED_FIELDS) - set(_OPTIONAL_FIELDS)
    if unknown:
        raise RuleTableError(f"Rule {rule_id} has unknown fields: {', '.join(sorted(unknown))}",
                             rule_id=rule_id)
    try:
        confidence = Confidence.parse(entry["confidence"])
    except ValueError as exc:
        raise RuleTableError(f"Rule {rule_id}: {exc}", rule_id=rule_id) from exc

    template = str(entry["template"]).rstrip("\n")
    for field_name, text in (("template", template), ("zero", entry.get("zero", "")),
                             ("suffix", entry.get("suffix", ""))):
        try:
            env.parse(str(text))
        except jinja2.TemplateSyntaxError as exc:
            raise RuleTableError(f"Rule {rule_id}: invalid {field_name} template: {exc}",
                                 rule_id=rule_id) from exc

    return MappingRule(
        rule_id=rule_id,
        kind=kind,
        pattern=str(entry["pattern"]),
        template=template,
        confidence=confidence,
        note=str(entry.get("note", "")),
        zero=str(entry.get("zero", "")),
        suffix=str(entry.get("suffix", "")),
        cast=str(entry.get("cast", "")),
    )


def parse_rule_table(data, source: str = "<memory>") -> RuleTable:
    """Validate a loaded YAML document and build a RuleTable.

    Raises:
        RuleTableError: on any structural problem (unknown kind, missing
            field, duplicate id, bad confidence tag, template syntax).
    """
    if not isinstance(data, dict):
        raise RuleTableError(f"Rule table root must be a mapping: {source}")
    rules_section = data.get("rules")
    if not isinstance(rules_section, dict):
        raise RuleTableError(f"Rule table needs a 'rules' mapping keyed by kind: {source}")

    env = jinja2.Environment(loader=jinja2.BaseLoader())
    seen_ids: set = set()
    rules = []
    for kind, entries in rules_section.items():
        if kind not in RULE_KINDS:
            raise RuleTableError(f"Unknown rule kind '{kind}' (expected one of {', '.join(RULE_KINDS)})")
        for entry in entries or []:
            rules.append(_parse_rule(kind, entry, seen_ids, env))

    fallbacks = {}
    for kind, text in (data.get("fallbacks") or {}).items():
        if kind not in RULE_KINDS:
            raise RuleTableError(f"Unknown fallback kind '{kind}'")
        try:
            env.parse(str(text))
        except jinja2.TemplateSyntaxError as exc:
            raise RuleTableError(f"Invalid fallback template for '{kind}': {exc}") from exc
        fallbacks[kind] = str(text).rstrip("\n")

    table = RuleTable(rules, fallbacks, source=source, version=str(data.get("version", "")))
    logger.debug("Loaded %d rules from %s", len(table), source)
    return table


def load_rule_table(path=None, config=None) -> RuleTable:
    """Load the rule table YAML (path, else config rules.table_path, else default)."""
    if path is None:
        config = config or load_config()
        table_path = config.get("rules", {}).get("table_path")
        path = resolve_path(table_path) if table_path else DEFAULT_RULES_PATH
    path = Path(path)
    if not path.exists():
        raise RuleTableError(f"Rule table not found: {path}")
    with open(path, "r", encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as exc:
            raise RuleTableError(f"Invalid YAML in {path}: {exc}") from exc
    return parse_rule_table(data, source=str(path))


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------
def main():
    parser = argparse.ArgumentParser(
        description="crport Rule Table: inspect and lint Go -> Crystal mapping rules",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=textwrap.dedent("""\
            Examples:
              python -m crport.translation.rule_table --json
              python -m crport.translation.rule_table --subject type "slice<int64>+grow"
              python -m crport.translation.rule_table --lint
        """),
    )
    parser.add_argument("--rules", help="Rule table YAML (default: from config)")
    parser.add_argument("--subject", nargs=2, metavar=("KIND", "SUBJECT"),
                        help="Show the rule(s) selected for one subject")
    parser.add_argument("--lint", action="store_true", help="List equal-specificity conflicts")
    parser.add_argument("--json", action="store_true", dest="json_output", help="JSON output")
    args = parser.parse_args()

    try:
        table = load_rule_table(args.rules)
    except RuleTableError as exc:
        print(f"[ERROR] {exc}", file=sys.stderr)
        sys.exit(1)

    if args.subject:
        kind, subject = args.subject
        best = table.best_matches(kind, subject)
        result = {
            "kind": kind,
            "subject": subject,
            "selected": [r.to_dict() for r in best],
            "ambiguous": len(best) > 1,
            "candidates": [r.rule_id for r in table.candidates(kind, subject)],
        }
        if args.json_output:
            print(json.dumps(result, indent=2))
        elif not best:
            print(f"[WARN] No rule for {kind} '{subject}' (UNSUPPORTED)")
        else:
            for rule in best:
                print(f"[INFO] {rule.rule_id} ({rule.confidence.value}): {rule.pattern}")
            if len(best) > 1:
                print("[ERROR] Ambiguous: equal specificity")
        sys.exit(1 if len(best) > 1 else 0)

    if args.lint:
        conflicts = table.conflicts()
        if args.json_output:
            print(json.dumps({"source": table.source, "conflicts": conflicts}, indent=2))
        else:
            for c in conflicts:
                print(f"[WARN] {c['kind']}: {c['rule_ids'][0]} ({c['patterns'][0]}) ties "
                      f"{c['rule_ids'][1]} ({c['patterns'][1]})")
            print(f"[INFO] {len(conflicts)} conflict(s) in {len(table)} rules")
        sys.exit(1 if conflicts else 0)

    if args.json_output:
        print(json.dumps(table.to_dict(), indent=2))
    else:
        print(f"[INFO] {len(table)} rules loaded from {table.source}")
        for kind in RULE_KINDS:
            print(f"  {kind:<12} {len(table.rules_for(kind))}")


if __name__ == "__main__":
    main()
