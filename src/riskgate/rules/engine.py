# SPDX-License-Identifier: MIT
"""Detector engine — runs the applicable corpus rules against each change unit."""

from __future__ import annotations

import logging
import os
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from riskgate.rules.base import (
    FULL_CONFIDENCE,
    Diagnostic,
    DiagnosticKind,
    Finding,
    MatcherKind,
    RuleEvaluationError,
    ScanCancelledError,
)
from riskgate.rules.tokens import CODE, UnitView, ViewLine, build_view

if TYPE_CHECKING:
    from riskgate.rules.config import ProfileConfig
    from riskgate.rules.context import ChangeUnit
    from riskgate.rules.corpus import Corpus, Matcher, Rule
    from riskgate.rules.structural import StructuralMatch

log = logging.getLogger(__name__)


class CancellationToken:
    """Caller-held flag for aborting a scan. Checked before every unit and rule."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise ScanCancelledError("Scan cancelled by caller")


@dataclass(frozen=True)
class UnitResult:
    """Raw findings and diagnostics for one unit."""

    unit_index: int
    findings: tuple[Finding, ...] = ()
    diagnostics: tuple[Diagnostic, ...] = ()


@dataclass(frozen=True)
class _Hit:
    start: int  # index into view.lines
    end: int
    captures: dict[str, str] = field(default_factory=dict)
    in_code: bool = True


def _base_captures(line: ViewLine, matched: str) -> dict[str, str]:
    return {"match": matched, "line": line.text, "indent": line.indent}


class DetectorEngine:
    """Evaluates compiled rules over change units. Holds no per-scan mutable state."""

    def __init__(self, corpus: Corpus, config: ProfileConfig) -> None:
        self._corpus = corpus
        self._config = config

    # --- Fan-out ---

    def run(
        self, units: list[ChangeUnit], cancel: CancellationToken | None = None
    ) -> list[UnitResult]:
        """Evaluate every unit, in parallel when worthwhile. Results follow input order."""
        if not units:
            return []
        workers = self._config.max_workers or min(len(units), os.cpu_count() or 4)
        workers = max(1, min(workers, len(units)))
        if workers == 1:
            return [self.detect(unit, cancel) for unit in units]

        log.debug("Detecting over %d units with %d workers", len(units), workers)
        executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="riskgate-detect")
        try:
            futures = [executor.submit(self.detect, unit, cancel) for unit in units]
            return [future.result() for future in futures]
        finally:
            # On cancellation, pending units never start
            executor.shutdown(wait=True, cancel_futures=True)

    def detect(self, unit: ChangeUnit, cancel: CancellationToken | None = None) -> UnitResult:
        """Run the rules applicable to the unit's language. A failing rule becomes a diagnostic."""
        if cancel is not None:
            cancel.raise_if_cancelled()
        view = build_view(unit)
        findings: list[Finding] = []
        diagnostics: list[Diagnostic] = []
        for rule in self._corpus.rules_for(unit.language):
            if cancel is not None:
                cancel.raise_if_cancelled()
            try:
                findings.extend(self.evaluate(rule, view))
            except Exception as exc:
                err = RuleEvaluationError(rule.id, unit.index, f"{type(exc).__name__}: {exc}")
                log.warning("%s", err)
                diagnostics.append(
                    Diagnostic(
                        kind=DiagnosticKind.RULE_ERROR,
                        detail=err.detail,
                        rule_id=rule.id,
                        file=unit.path,
                        line=unit.new_range[0],
                        unit_index=unit.index,
                    )
                )
        return UnitResult(
            unit_index=unit.index, findings=tuple(findings), diagnostics=tuple(diagnostics)
        )

    # --- Single rule ---

    def evaluate(self, rule: Rule, view: UnitView) -> list[Finding]:
        anchor = rule.anchor
        structural_cache: dict[int, list[StructuralMatch]] = {}
        hits = self._anchor_hits(anchor, view, structural_cache)
        if len(hits) < anchor.min_count:
            return []

        unit = view.unit
        findings: list[Finding] = []
        for hit in hits:
            captures = dict(hit.captures)
            keep = True
            for matcher in rule.matchers[1:]:
                count, extra = self._context_hits(matcher, view, hit, structural_cache)
                if matcher.negate:
                    if count >= matcher.min_count:
                        keep = False
                        break
                elif count < matcher.min_count:
                    keep = False
                    break
                else:
                    for key, value in extra.items():
                        captures.setdefault(key, value)
            if not keep:
                continue

            line_start = view.lines[hit.start].lineno
            line_end = view.lines[hit.end].lineno
            if not unit.contains(line_start, line_end):
                msg = f"match range {line_start}-{line_end} outside unit range {unit.new_range}"
                raise ValueError(msg)
            findings.append(
                Finding(
                    rule_id=rule.id,
                    rule_class=rule.rule_class,
                    category=rule.category,
                    file=unit.path,
                    unit_index=unit.index,
                    line_start=line_start,
                    line_end=line_end,
                    message=rule.message,
                    evidence=view.lines[hit.start].text.strip(),
                    captures=captures,
                    confidence=(
                        FULL_CONFIDENCE
                        if hit.in_code or anchor.expect_comment
                        else self._config.reduced_confidence
                    ),
                )
            )
        return findings

    def _structural(
        self, matcher: Matcher, view: UnitView, cache: dict[int, list[StructuralMatch]]
    ) -> list[StructuralMatch]:
        key = id(matcher)
        if key not in cache:
            if matcher.predicate is None:
                msg = f"structural matcher {matcher.pattern} has no compiled predicate"
                raise ValueError(msg)
            cache[key] = matcher.predicate.fn(view, matcher.args)
        return cache[key]

    def _anchor_hits(
        self,
        matcher: Matcher,
        view: UnitView,
        cache: dict[int, list[StructuralMatch]],
    ) -> list[_Hit]:
        hits: list[_Hit] = []
        if matcher.kind == MatcherKind.STRUCTURAL:
            index = {line.lineno: i for i, line in enumerate(view.lines)}
            for match in self._structural(matcher, view, cache):
                start = index.get(match.line_start)
                end = index.get(match.line_end)
                if start is None or end is None:
                    msg = f"predicate {matcher.pattern} returned lines outside the unit"
                    raise ValueError(msg)
                if not view.lines[start].is_added:
                    continue
                line = view.lines[start]
                captures = _base_captures(line, line.text.strip())
                captures.update(match.captures)
                hits.append(_Hit(start=start, end=end, captures=captures))
            return hits

        for i, line in enumerate(view.lines):
            if not line.is_added:
                continue
            hit = self._line_hit(matcher, line, i)
            if hit is not None:
                hits.append(hit)
        return hits

    def _line_hit(self, matcher: Matcher, line: ViewLine, i: int) -> _Hit | None:
        """First match on the line, preferring one that lands in code over comments/strings."""
        text = line.text
        if matcher.kind == MatcherKind.LITERAL:
            offsets: list[int] = []
            pos = text.find(matcher.pattern)
            while pos >= 0:
                offsets.append(pos)
                pos = text.find(matcher.pattern, pos + 1)
            if not offsets:
                return None
            in_code = [o for o in offsets if line.tokens.kind_at(o) == CODE]
            return _Hit(
                start=i,
                end=i,
                captures=_base_captures(line, matcher.pattern),
                in_code=bool(in_code),
            )

        if matcher.regex is None:
            msg = f"regex matcher {matcher.pattern!r} is not compiled"
            raise ValueError(msg)
        matches = list(matcher.regex.finditer(text))
        if not matches:
            return None
        chosen = next((m for m in matches if line.tokens.kind_at(m.start()) == CODE), None)
        in_code = chosen is not None
        if chosen is None:
            chosen = matches[0]
        captures = _base_captures(line, chosen.group(0))
        captures.update({k: v for k, v in chosen.groupdict().items() if v is not None})
        return _Hit(start=i, end=i, captures=captures, in_code=in_code)

    def _context_hits(
        self,
        matcher: Matcher,
        view: UnitView,
        hit: _Hit,
        cache: dict[int, list[StructuralMatch]],
    ) -> tuple[int, dict[str, str]]:
        """Count matcher hits within ±window of the anchor hit (added and context lines)."""
        lo = max(0, hit.start - matcher.window)
        hi = min(len(view.lines) - 1, hit.end + matcher.window)
        if matcher.kind == MatcherKind.STRUCTURAL:
            lo_line, hi_line = view.lines[lo].lineno, view.lines[hi].lineno
            overlapping = [
                m
                for m in self._structural(matcher, view, cache)
                if m.line_start <= hi_line and m.line_end >= lo_line
            ]
            captures = dict(overlapping[0].captures) if overlapping else {}
            return len(overlapping), captures

        count = 0
        captures: dict[str, str] = {}
        for line in view.lines[lo : hi + 1]:
            if matcher.kind == MatcherKind.LITERAL:
                if matcher.pattern in line.text:
                    count += 1
                continue
            if matcher.regex is None:
                msg = f"regex matcher {matcher.pattern!r} is not compiled"
                raise ValueError(msg)
            match = matcher.regex.search(line.text)
            if match is None:
                continue
            count += 1
            if not captures:
                captures = {k: v for k, v in match.groupdict().items() if v is not None}
        return count, captures
