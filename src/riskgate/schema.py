# SPDX-License-Identifier: MIT
"""GateDecision — the one artifact a scan hands to external collaborators.

Frozen pydantic models. Field order is the serialization order, and nothing
time- or host-dependent is recorded, so identical scans serialize to
identical bytes.
"""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field


class Level(StrEnum):
    ADVISORY = "advisory"
    NON_BLOCKING = "non-blocking"
    BLOCKING = "blocking"


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class ReportFinding(_Frozen):
    rule_id: str
    rule_class: str
    category: str
    file: str
    line_start: int
    line_end: int
    level: Level
    policy: str
    confidence: float = Field(ge=0.0, le=1.0)
    message: str
    evidence: str
    suppression: str = "active"


class ReportSuppressed(ReportFinding):
    exemption_id: str
    justification: str


class ReportSuggestion(_Frozen):
    rule_id: str
    file: str
    line: int
    kind: str
    original: str
    replacement: str
    auto_apply: bool


class ReportDiagnostic(_Frozen):
    kind: str
    detail: str
    rule_id: str | None = None
    file: str | None = None
    line: int | None = None
    unit_index: int | None = None


class GateDecision(_Frozen):
    """Terminal scan artifact: the gate verdict plus the full audit trail."""

    blocked: bool
    profile: str
    corpus_version: str
    corpus_digest: str
    units_scanned: int = 0
    findings: tuple[ReportFinding, ...] = ()
    suppressed: tuple[ReportSuppressed, ...] = ()
    suggestions: tuple[ReportSuggestion, ...] = ()
    diagnostics: tuple[ReportDiagnostic, ...] = ()

    @property
    def blocking_findings(self) -> list[ReportFinding]:
        return [f for f in self.findings if f.level == Level.BLOCKING]

    def to_json(self) -> str:
        return self.model_dump_json(indent=2)
