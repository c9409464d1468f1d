# SPDX-License-Identifier: MIT
"""Exemption resolver — in-source acceptance markers that suppress findings with a reason.

Marker syntax, anywhere on a right-side line (usually inside a comment)::

    # RISK-ACCEPT(A5): legacy shim, removed with the v2 importer

Markers are read from the diff itself on every scan; removed lines never count.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Collection, Iterable
from dataclasses import dataclass, replace

from riskgate.rules.base import Diagnostic, DiagnosticKind, Finding, FindingState
from riskgate.rules.config import DEFAULT_EXEMPTION_PREFIX
from riskgate.rules.context import ChangeUnit

log = logging.getLogger(__name__)

_TRAILING_CLOSERS_RE = re.compile(r"\s*(?:\*/|-->|\"\"\"|''')\s*$")


@dataclass(frozen=True)
class Exemption:
    """An acceptance marker found in the diff."""

    id: str
    rule_id: str
    justification: str
    file: str
    line: int
    unit_index: int

    def covers(self, finding: Finding) -> bool:
        """Same file and rule, on the finding's lines or the line immediately before."""
        return (
            self.file == finding.file
            and self.rule_id == finding.rule_id
            and finding.line_start - 1 <= self.line <= finding.line_end
        )


@dataclass(frozen=True)
class Resolution:
    findings: tuple[Finding, ...]
    exemptions: tuple[Exemption, ...]
    diagnostics: tuple[Diagnostic, ...]


class ExemptionResolver:
    """Parses markers from change units and partitions findings into active/suppressed."""

    def __init__(self, prefix: str = DEFAULT_EXEMPTION_PREFIX) -> None:
        self.prefix = prefix
        self._marker_re = re.compile(
            re.escape(prefix) + r"\((?P<rule_id>[^)]*)\)\s*:?(?P<justification>.*)$"
        )

    def parse(self, units: Iterable[ChangeUnit]) -> tuple[list[Exemption], list[Diagnostic]]:
        exemptions: list[Exemption] = []
        diagnostics: list[Diagnostic] = []
        for unit in units:
            for dl in unit.lines:
                if dl.type == "remove" or dl.new_lineno is None:
                    continue
                match = self._marker_re.search(dl.content)
                if match is None:
                    continue
                rule_id = match.group("rule_id").strip()
                justification = _TRAILING_CLOSERS_RE.sub("", match.group("justification")).strip()
                if not rule_id or not justification:
                    diagnostics.append(
                        Diagnostic(
                            kind=DiagnosticKind.MALFORMED_EXEMPTION,
                            detail=(
                                f"{self.prefix} marker needs a rule id and a justification; "
                                "marker ignored"
                            ),
                            rule_id=rule_id or None,
                            file=unit.path,
                            line=dl.new_lineno,
                            unit_index=unit.index,
                        )
                    )
                    continue
                exemptions.append(
                    Exemption(
                        id=f"{unit.path}:{dl.new_lineno}:{rule_id}",
                        rule_id=rule_id,
                        justification=justification,
                        file=unit.path,
                        line=dl.new_lineno,
                        unit_index=unit.index,
                    )
                )
        return exemptions, diagnostics

    def resolve(
        self,
        findings: Iterable[Finding],
        exemptions: list[Exemption],
        known_rule_ids: Collection[str] = (),
    ) -> Resolution:
        """Mark each raw finding suppressed or active; report exemptions nothing used."""
        ordered = sorted(exemptions, key=lambda e: (e.file, e.line, e.rule_id))
        by_key: dict[tuple[str, str], list[Exemption]] = {}
        for exemption in ordered:
            by_key.setdefault((exemption.file, exemption.rule_id), []).append(exemption)

        used: set[str] = set()
        resolved: list[Finding] = []
        for finding in findings:
            covering = [e for e in by_key.get((finding.file, finding.rule_id), []) if e.covers(finding)]
            if covering:
                used.update(e.id for e in covering)
                first = covering[0]
                resolved.append(
                    replace(
                        finding,
                        state=FindingState.SUPPRESSED,
                        exemption_id=first.id,
                        justification=first.justification,
                    )
                )
                log.debug("Suppressed %s at %s:%d via %s", finding.rule_id, finding.file, finding.line_start, first.id)
            else:
                resolved.append(replace(finding, state=FindingState.ACTIVE))

        diagnostics: list[Diagnostic] = []
        for exemption in ordered:
            if exemption.id in used:
                continue
            if known_rule_ids and exemption.rule_id not in known_rule_ids:
                detail = f"exemption references rule {exemption.rule_id}, which is not in the corpus"
            else:
                detail = f"no {exemption.rule_id} finding at or after this marker"
            diagnostics.append(
                Diagnostic(
                    kind=DiagnosticKind.UNUSED_EXEMPTION,
                    detail=detail,
                    rule_id=exemption.rule_id,
                    file=exemption.file,
                    line=exemption.line,
                    unit_index=exemption.unit_index,
                )
            )
        return Resolution(
            findings=tuple(resolved), exemptions=tuple(ordered), diagnostics=tuple(diagnostics)
        )
