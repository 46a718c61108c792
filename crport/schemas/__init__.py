#!/usr/bin/env python3
# CUI // SP-CTI
"""Shared schema models for crport pipeline artifacts.

Stdlib dataclass models passed between the mapping engine, emitter,
verifier and report. All are frozen; dict output via to_dict().
"""

from crport.schemas.pipeline import (
    Ambiguity,
    Decision,
    EmittedUnit,
    MappedConstruct,
    MappedUnit,
    MappingRule,
    TestCase,
    TestSuite,
    VerificationResult,
    VerificationStatus,
)

__all__ = [
    "Ambiguity",
    "Decision",
    "EmittedUnit",
    "MappedConstruct",
    "MappedUnit",
    "MappingRule",
    "TestCase",
    "TestSuite",
    "VerificationResult",
    "VerificationStatus",
]
