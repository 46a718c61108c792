#!/usr/bin/env python3
# CUI // SP-CTI
"""Pipeline artifact models.

MappingRule, MappedUnit, EmittedUnit, TestCase and VerificationResult are
passed immutably from the stage that produces them to the stages that
consume them. No stage edits another stage's output.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from functools import lru_cache
from typing import Dict, Optional, Tuple

from crport.translation.construct_model import (
    Confidence,
    ConstructNode,
    SourceLocation,
)

# Construct kinds plus "type" (type-signature rules used inside other rules)
RULE_KINDS = ("constant", "function", "type_decl", "statement", "expression", "type")


@lru_cache(maxsize=4096)
def _pattern_regex(pattern: str):
    return re.compile("".join(".*" if part == "*" else re.escape(part)
                              for part in re.split(r"(\*)", pattern) if part))


@dataclass(frozen=True)
class MappingRule:
    """One source pattern -> one target template, with a confidence tag.

    ``pattern`` is a canonical match subject in which ``*`` matches any run
    of characters. Specificity is the count of literal characters, so
    ``slice<uint8>`` beats ``slice<*>``.
    """

    rule_id: str
    kind: str
    pattern: str
    template: str
    confidence: Confidence
    note: str = ""
    zero: str = ""
    suffix: str = ""
    cast: str = ""

    @property
    def specificity(self) -> int:
        return len(self.pattern.replace("*", ""))

    def matches(self, subject: str) -> bool:
        return _pattern_regex(self.pattern).fullmatch(subject) is not None

    def to_dict(self) -> dict:
        data = {
            "id": self.rule_id,
            "kind": self.kind,
            "pattern": self.pattern,
            "template": self.template,
            "confidence": self.confidence.value,
        }
        for key in ("note", "zero", "suffix", "cast"):
            if getattr(self, key):
                data[key] = getattr(self, key)
        return data


@dataclass(frozen=True)
class Decision:
    """Record of one rule lookup (top-level or nested)."""

    kind: str
    identifier: str
    subject: str
    rule_id: str
    confidence: Confidence
    location: SourceLocation
    note: str = ""

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "identifier": self.identifier,
            "subject": self.subject,
            "rule_id": self.rule_id or None,
            "confidence": self.confidence.value,
            "location": str(self.location),
            "note": self.note,
        }


@dataclass(frozen=True)
class Ambiguity:
    """Equal-specificity rule tie recorded in non-strict mode."""

    identifier: str
    subject: str
    rule_ids: Tuple[str, ...]
    location: SourceLocation

    def to_dict(self) -> dict:
        return {
            "identifier": self.identifier,
            "subject": self.subject,
            "rule_ids": list(self.rule_ids),
            "location": str(self.location),
        }


@dataclass(frozen=True)
class MappedConstruct:
    """(node, chosen rule, rendered target text) plus its decision trail."""

    node: ConstructNode
    rule: Optional[MappingRule]
    text: str
    confidence: Confidence
    target_name: str
    decisions: Tuple[Decision, ...] = ()

    @property
    def implemented(self) -> bool:
        return self.rule is not None and self.confidence != Confidence.UNSUPPORTED

    def to_dict(self, include_text: bool = True) -> dict:
        data = {
            "node_id": self.node.node_id,
            "kind": self.node.kind.value,
            "name": self.node.name,
            "target_name": self.target_name,
            "rule_id": self.rule.rule_id if self.rule else None,
            "confidence": self.confidence.value,
            "implemented": self.implemented,
            "decisions": [d.to_dict() for d in self.decisions],
        }
        if include_text:
            data["text"] = self.text
        return data


@dataclass(frozen=True)
class MappedUnit:
    path: str
    package: str
    module: str
    constructs: Tuple[MappedConstruct, ...]
    requires: Tuple[str, ...] = ()
    unmapped_imports: Tuple[str, ...] = ()
    ambiguities: Tuple[Ambiguity, ...] = ()

    def to_dict(self, include_text: bool = True) -> dict:
        return {
            "path": self.path,
            "package": self.package,
            "module": self.module,
            "requires": list(self.requires),
            "unmapped_imports": list(self.unmapped_imports),
            "ambiguities": [a.to_dict() for a in self.ambiguities],
            "constructs": [c.to_dict(include_text) for c in self.constructs],
        }


@dataclass(frozen=True)
class EmittedUnit:
    """Rendered target file.

    ``locations`` maps node ids to (first, last) target lines;
    ``functions`` maps implemented source function names to target names.
    """

    source_path: str
    target_path: str
    module: str
    text: str
    locations: Tuple[Tuple[str, int, int], ...] = ()
    functions: Tuple[Tuple[str, str], ...] = ()

    def location_of(self, node_id: str) -> Optional[Tuple[int, int]]:
        for nid, start, end in self.locations:
            if nid == node_id:
                return start, end
        return None

    def function_map(self) -> Dict[str, str]:
        return dict(self.functions)


@dataclass(frozen=True)
class TestCase:
    """A source test assertion ported 1:1 (expected literal kept verbatim).

    ``function`` is empty for test functions that could not be ported; those
    are verified as PENDING. ``call_node`` and ``expected_node`` are the
    parsed source expressions the verifier renders into the harness.
    """

    __test__ = False

    case_id: str
    test_name: str
    function: str
    args: Tuple[str, ...]
    expected: str
    location: SourceLocation
    expect_error: bool = False
    call_node: Optional[ConstructNode] = None
    expected_node: Optional[ConstructNode] = None
    note: str = ""

    @property
    def ported(self) -> bool:
        return bool(self.function)

    def call_text(self) -> str:
        return f"{self.function}({', '.join(self.args)})"

    def to_dict(self) -> dict:
        return {
            "case_id": self.case_id,
            "test_name": self.test_name,
            "function": self.function,
            "args": list(self.args),
            "expected": self.expected,
            "expect_error": self.expect_error,
            "location": str(self.location),
            "note": self.note,
        }


@dataclass(frozen=True)
class TestSuite:
    __test__ = False

    path: str
    package: str
    cases: Tuple[TestCase, ...] = ()

    @property
    def unported(self) -> Tuple[TestCase, ...]:
        return tuple(c for c in self.cases if not c.ported)

    def to_dict(self) -> dict:
        return {
            "path": self.path,
            "package": self.package,
            "total_cases": len(self.cases),
            "unported": len(self.unported),
            "cases": [c.to_dict() for c in self.cases],
        }


class VerificationStatus(str, Enum):
    MATCH = "MATCH"
    MISMATCH = "MISMATCH"
    ERROR = "ERROR"
    PENDING = "PENDING"


@dataclass(frozen=True)
class VerificationResult:
    case_id: str
    status: VerificationStatus
    expected: str = ""
    actual: str = ""
    detail: str = ""
    location: Optional[SourceLocation] = field(default=None, compare=True)

    def to_dict(self) -> dict:
        data = {
            "case_id": self.case_id,
            "status": self.status.value,
            "expected": self.expected,
        }
        if self.status == VerificationStatus.MISMATCH:
            data["actual"] = self.actual
        if self.detail:
            data["detail"] = self.detail
        if self.location is not None:
            data["location"] = str(self.location)
        return data
