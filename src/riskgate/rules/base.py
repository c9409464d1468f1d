# SPDX-License-Identifier: MIT
"""Rule classes, blocking levels, finding/diagnostic dataclasses, and the error taxonomy."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum, StrEnum


class RuleClass(StrEnum):
    """Risk class: A = blocking-capable (human in the loop), B = suggestion-capable."""

    A = "A"
    B = "B"


class BlockingLevel(IntEnum):
    """Resolved blocking level, ordered for gate comparison."""

    ADVISORY = 0
    NON_BLOCKING = 1
    BLOCKING = 2


class PolicyKind(StrEnum):
    ALWAYS = "always"
    CONDITIONAL = "conditional"
    NEVER = "never"


class MatcherKind(StrEnum):
    LITERAL = "literal"
    REGEX = "regex"
    STRUCTURAL = "structural"


class FindingState(StrEnum):
    """Per-finding lifecycle: raw -> (suppressed | active) -> resolved."""

    RAW = "raw"
    ACTIVE = "active"
    SUPPRESSED = "suppressed"
    RESOLVED = "resolved"


class DiagnosticKind(StrEnum):
    RULE_ERROR = "rule-error"
    UNUSED_EXEMPTION = "unused-exemption"
    MALFORMED_EXEMPTION = "malformed-exemption"
    SKIPPED_UNIT = "skipped-unit"


FULL_CONFIDENCE = 1.0


@dataclass(frozen=True)
class Finding:
    """A single rule match inside one change unit."""

    rule_id: str
    rule_class: RuleClass
    category: str
    file: str
    unit_index: int
    line_start: int
    line_end: int
    message: str
    evidence: str
    captures: dict[str, str] = field(default_factory=dict)
    confidence: float = FULL_CONFIDENCE
    state: FindingState = FindingState.RAW
    exemption_id: str | None = None
    justification: str | None = None

    @property
    def suppression(self) -> str:
        """Return ``active`` or ``suppressed:<exemption-id>``."""
        if self.state == FindingState.SUPPRESSED:
            return f"suppressed:{self.exemption_id}"
        return "active"

    def sort_key(self) -> tuple[str, int, str, int, str]:
        return (self.file, self.line_start, self.rule_id, self.line_end, self.evidence)


@dataclass(frozen=True)
class Diagnostic:
    """Non-fatal scan signal: rule errors, stale exemptions, skipped units."""

    kind: DiagnosticKind
    detail: str
    rule_id: str | None = None
    file: str | None = None
    line: int | None = None
    unit_index: int | None = None

    def sort_key(self) -> tuple[str, str, int, str, str]:
        return (
            self.kind.value,
            self.file or "",
            self.line if self.line is not None else -1,
            self.rule_id or "",
            self.detail,
        )


# --- Errors ---


class RiskGateError(Exception):
    """Base class for all riskgate errors."""


class RuleCorpusError(RiskGateError):
    """Raised when rule source text fails validation. The corpus is rejected in full."""

    def __init__(self, errors: list[str]) -> None:
        self.errors = errors
        super().__init__(f"Invalid rule corpus ({len(errors)} problem(s)): {'; '.join(errors)}")


class ConfigurationError(RiskGateError):
    """Raised when the blocking-level mapping is incomplete or contradictory."""

    def __init__(self, errors: list[str]) -> None:
        self.errors = errors
        super().__init__(f"Invalid configuration: {'; '.join(errors)}")


class DiffParseError(RiskGateError):
    """Raised when a unified diff cannot be segmented completely."""

    def __init__(self, message: str, line_number: int | None = None) -> None:
        self.line_number = line_number
        where = f" (diff line {line_number})" if line_number is not None else ""
        super().__init__(f"{message}{where}")


class RuleEvaluationError(RiskGateError):
    """One rule failed on one unit. Isolated into a diagnostic, never fatal."""

    def __init__(self, rule_id: str, unit_index: int, detail: str) -> None:
        self.rule_id = rule_id
        self.unit_index = unit_index
        self.detail = detail
        super().__init__(f"Rule {rule_id} failed on unit {unit_index}: {detail}")


class ScanCancelledError(RiskGateError):
    """Raised when a caller cancels an in-flight scan. No decision is produced."""
