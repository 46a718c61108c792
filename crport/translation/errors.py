#!/usr/bin/env python3
# CUI // SP-CTI
"""crport Translation: Structured Exception Hierarchy.

Every failure the pipeline can raise derives from CrportError. Translation
and verification are deterministic, so none of these errors is retryable:
only an edit to the source file or the rule table changes the outcome.

Unsupported constructs, mismatches and timeouts are *values* (report entries
and VerificationResults), not exceptions.

Usage:
    from crport.translation.errors import ParseError, AmbiguousMappingError

    raise ParseError(location, "expected '}'")
"""


class CrportError(Exception):
    """Base exception for all crport errors.

    Attributes:
        retryable: Whether the caller should retry the operation. Always
            False for pipeline errors.
    """

    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


class ParseError(CrportError):
    """Malformed source text. Fatal for the file, not for the batch.

    Attributes:
        location: SourceLocation of the offending token.
        reason: Human-readable description of what was expected.
    """

    def __init__(self, location, reason: str):
        super().__init__(f"{location}: {reason}")
        self.location = location
        self.reason = reason


class AmbiguousMappingError(CrportError):
    """Two or more rules of equal specificity match the same construct.

    This is a rule-table defect. Fatal in strict mode, advisory otherwise.

    Attributes:
        node: The ConstructNode being mapped.
        subject: The canonical match subject computed for the node.
        candidates: The tied MappingRules (sorted by rule id).
    """

    def __init__(self, node, subject: str, candidates):
        ids = ", ".join(rule.rule_id for rule in candidates)
        super().__init__(
            f"{node.location}: ambiguous mapping for {node.kind.value} "
            f"'{node.name}' (subject '{subject}'): rules {ids} tie"
        )
        self.node = node
        self.subject = subject
        self.candidates = tuple(candidates)


class TemplateRenderError(CrportError):
    """A rule or emitter template failed to render.

    Programming error in the rule table, never a runtime condition.
    """

    def __init__(self, message: str, rule_id: str = ""):
        super().__init__(message)
        self.rule_id = rule_id


class RuleTableError(CrportError):
    """The rule table data file is malformed."""

    def __init__(self, message: str, rule_id: str = ""):
        super().__init__(message)
        self.rule_id = rule_id


class ConfigurationError(CrportError):
    """Missing or invalid configuration."""

    def __init__(self, message: str, config_key: str = ""):
        super().__init__(message)
        self.config_key = config_key
