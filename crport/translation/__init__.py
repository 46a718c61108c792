#!/usr/bin/env python3
# CUI // SP-CTI
"""crport Cross-Language Translation Module.

Deterministic Go -> Crystal translation with automated equivalence checks.

Architecture: 5-stage pipeline
  1. Extract (deterministic) - Go source -> Construct Model (IR)
  2. Map (deterministic) - rule table lookup, confidence tagging
  3. Emit (deterministic) - Crystal module text, atomic writes
  4. Verify (deterministic) - ported Go tests run against emitted code
  5. Report - structured summary of every decision and outcome
"""

__version__ = "0.1.0"
